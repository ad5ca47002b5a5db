"""
Drink issuance pipeline: the selection flow of one serving.

    recipe -> [category]* -> [strength] -> [ice] -> commit

The step list is planned once from the recipe when it is picked. The last
planned step commits: a recipe with nothing to ask is served on the tap
that picks it. Every step first checks the session; an absent or expired
session raises SessionExpired and leaves the state untouched.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from core.errors import MissingCategorySelection, ValidationError
from core.volume import (
    LINE_CATEGORY,
    RecipeLineSpec,
    available_liquid_capacity_ml,
    compute_line_quantities,
    fill_height_fraction,
    liquid_total_ml,
    scale_for_servings,
)

logger = logging.getLogger(__name__)

MIN_SERVINGS = 1
MAX_SERVINGS = 99

STRENGTHS = ("single", "double")


@dataclass(frozen=True)
class RecipeStep:
    pass


@dataclass(frozen=True)
class CategoryStep:
    line_id: str
    category_id: Optional[str] = None
    category_name: Optional[str] = None


@dataclass(frozen=True)
class StrengthStep:
    pass


@dataclass(frozen=True)
class IceStep:
    pass


Step = Union[RecipeStep, CategoryStep, StrengthStep, IceStep]


def plan_steps(recipe: Optional[Dict[str, Any]]) -> Tuple[Step, ...]:
    steps: list = [RecipeStep()]
    if recipe is None:
        return tuple(steps)
    for line in recipe.get("lines") or []:
        if line.get("line_type") == LINE_CATEGORY and not line.get("is_optional"):
            steps.append(
                CategoryStep(
                    line_id=str(line["id"]),
                    category_id=str(line["category_id"]) if line.get("category_id") else None,
                    category_name=line.get("category_name"),
                )
            )
    if recipe.get("ask_strength"):
        steps.append(StrengthStep())
    if recipe.get("has_ice"):
        steps.append(IceStep())
    return tuple(steps)


class IssuancePipeline:
    """
    `submit` receives the payload and a label and returns the queue entry,
    normally `SyncEngine.queue_drink_issue`.
    """

    def __init__(
        self,
        sessions,
        submit: Callable[..., Awaitable[Any]],
    ) -> None:
        self.sessions = sessions
        self.submit = submit
        self.servings = MIN_SERVINGS
        self.is_staff_drink = False
        self._lock = asyncio.Lock()
        self._reset()

    def _reset(self) -> None:
        self.recipe: Optional[Dict[str, Any]] = None
        self.steps: Tuple[Step, ...] = plan_steps(None)
        self.index = 0
        self.selections: Dict[str, str] = {}
        self.strength: Optional[str] = None
        self.include_ice: Optional[bool] = None

    @property
    def step(self) -> Step:
        return self.steps[self.index]

    # servings and the staff flag live outside the per-recipe state

    def set_servings(self, servings: int) -> int:
        self.servings = max(MIN_SERVINGS, min(MAX_SERVINGS, int(servings)))
        return self.servings

    def set_staff_drink(self, value: bool) -> None:
        self.is_staff_drink = bool(value)

    def _expect(self, kind) -> Step:
        step = self.step
        if not isinstance(step, kind):
            raise ValidationError(f"Expected {type(step).__name__}, not {kind.__name__}")
        return step

    def _advance(self) -> bool:
        """Move to the next unmet step. True when the flow is complete."""
        self.index += 1
        while self.index < len(self.steps):
            step = self.steps[self.index]
            if isinstance(step, CategoryStep) and step.line_id in self.selections:
                self.index += 1
                continue
            return False
        self.index = len(self.steps) - 1
        return True

    async def choose_recipe(self, recipe: Dict[str, Any]):
        """Returns the queue entry when the recipe has nothing to ask, else None."""
        async with self._lock:
            self.sessions.guard()
            self._expect(RecipeStep)
            self._reset()
            self.recipe = recipe
            self.steps = plan_steps(recipe)
            if self._advance():
                return await self._commit()
            return None

    async def choose_ingredient(self, ingredient_id):
        async with self._lock:
            self.sessions.guard()
            step = self._expect(CategoryStep)
            self.selections[step.line_id] = str(ingredient_id)
            if self._advance():
                return await self._commit()
            return None

    async def choose_strength(self, strength: str):
        async with self._lock:
            self.sessions.guard()
            if strength not in STRENGTHS:
                raise ValidationError(f"strength must be one of {', '.join(STRENGTHS)}")
            self._expect(StrengthStep)
            self.strength = strength
            if self._advance():
                return await self._commit()
            return None

    async def choose_ice(self, include_ice: bool):
        async with self._lock:
            self.sessions.guard()
            self._expect(IceStep)
            self.include_ice = bool(include_ice)
            self._advance()
            return await self._commit()

    async def back(self) -> Step:
        """Step back once, dropping only the choice of the step being left."""
        async with self._lock:
            self.sessions.guard()
            if self.index == 0:
                return self.step
            leaving = self.step
            if isinstance(leaving, CategoryStep):
                self.selections.pop(leaving.line_id, None)
            elif isinstance(leaving, StrengthStep):
                self.strength = None
            elif isinstance(leaving, IceStep):
                self.include_ice = None
            self.index -= 1
            return self.step

    async def cancel(self) -> None:
        async with self._lock:
            self._reset()

    async def commit(self):
        async with self._lock:
            return await self._commit()

    def build_payload(self) -> Dict[str, Any]:
        recipe = self.recipe
        if recipe is None:
            raise ValidationError("Pick a recipe first")
        missing = [
            str(line["id"])
            for line in recipe.get("lines") or []
            if line.get("line_type") == LINE_CATEGORY and not line.get("is_optional") and str(line["id"]) not in self.selections
        ]
        if missing:
            raise MissingCategorySelection(missing)

        payload: Dict[str, Any] = {
            "session_id": self.sessions.session_id,
            "recipe_id": str(recipe["id"]),
            "servings": self.servings,
            "is_staff_drink": self.is_staff_drink,
            "category_selections": [
                {"recipe_line_id": line_id, "ingredient_id": ingredient_id}
                for line_id, ingredient_id in self.selections.items()
            ],
            # commit time; the drink may reach the ledger much later
            "issued_at": self.sessions.clock.now().isoformat(),
        }
        # recipe flags are frozen into the payload here, a retry never re-reads the recipe
        if recipe.get("ask_strength"):
            payload["strength"] = self.strength or "single"
        if recipe.get("has_ice"):
            payload["include_ice"] = True if self.include_ice is None else self.include_ice
        return payload

    async def _commit(self):
        self.sessions.guard()
        payload = self.build_payload()
        label = f"{self.recipe.get('name')} x{self.servings}"
        entry = await self.submit(payload, label=label)
        logger.debug("Drink committed: %s", label)
        self._reset()
        self.servings = MIN_SERVINGS
        self.is_staff_drink = False
        return entry

    def preview(self) -> Optional[Dict[str, Any]]:
        """Per-line quantities for the current choices and how full the cup gets."""
        recipe = self.recipe
        if recipe is None:
            return None
        specs = []
        active_top_ups = []
        for line in recipe.get("lines") or []:
            line_id = str(line["id"])
            if line.get("line_type") == LINE_CATEGORY and line.get("is_optional") and line_id not in self.selections:
                continue
            spec = RecipeLineSpec.from_dict({**line, "id": line_id})
            specs.append(spec)
            if spec.is_top_up:
                active_top_ups.append(line_id)

        ask_strength = bool(recipe.get("ask_strength"))
        strength = self.strength or "single"
        include_ice = bool(recipe.get("has_ice")) if self.include_ice is None else self.include_ice
        capacity = available_liquid_capacity_ml(recipe.get("cup_capacity_ml"), include_ice, recipe.get("ice_cubes"))
        per_serving = compute_line_quantities(specs, strength, ask_strength, capacity, active_top_ups)

        liquid = liquid_total_ml(specs, strength, ask_strength) + sum(per_serving[i] for i in active_top_ups)
        fill = None
        if capacity:
            fill = fill_height_fraction(min(liquid, capacity), capacity)
        return {
            "per_serving": per_serving,
            "total": scale_for_servings(per_serving, self.servings),
            "capacity_ml": capacity,
            "liquid_ml": liquid,
            "fill_fraction": fill,
        }
