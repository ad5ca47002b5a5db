"""
Recipe/volume model.

Pure functions that turn a recipe (cup, ice, lines) plus serving options into
concrete per-line quantities, and the capacity check recipes must pass before
they are saved. Used by the API (recipe save, drink issue) and by the bar
client (previews). No I/O here.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from core.errors import RecipeCapacityExceeded

STOCK_EPSILON = 0.000001
DEFAULT_ICE_CUBES = 3
ICE_CUBE_VOLUME_ML = 25.0
ICE_SUBMERGED_RATIO = 0.917

LINE_FIXED = "fixed_ingredient"
LINE_CATEGORY = "category_selector"

DEFAULT_LABEL_MODE_BY_DRINK_TYPE = {
    "classic": "recipe_with_ingredients",
    "cocktail": "recipe_name",
    "beer": "recipe_name",
    "soft": "recipe_name",
    "custom": "recipe_name",
}


@dataclass(frozen=True)
class RecipeLineSpec:
    line_id: Any
    line_type: str
    quantity: float = 0.0
    is_optional: bool = False
    affects_strength: bool = False
    is_top_up: bool = False
    # None while a category line has no concrete ingredient yet; counted as liquid
    base_unit: Optional[str] = None
    ingredient_id: Any = None
    category_id: Any = None

    @property
    def is_liquid(self) -> bool:
        return self.base_unit is None or self.base_unit == "ml"

    @classmethod
    def from_row(cls, line, ingredient=None) -> "RecipeLineSpec":
        """Build from a RecipeLine ORM row (and its resolved ingredient, if any)."""
        ing = ingredient if ingredient is not None else getattr(line, "ingredient", None)
        return cls(
            line_id=line.id,
            line_type=line.line_type,
            quantity=float(line.quantity or 0),
            is_optional=bool(line.is_optional),
            affects_strength=bool(line.affects_strength),
            is_top_up=bool(line.is_top_up),
            base_unit=getattr(ing, "base_unit", None) if ing is not None else None,
            ingredient_id=getattr(ing, "id", None) if ing is not None else line.ingredient_id,
            category_id=line.category_id,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RecipeLineSpec":
        """Build from a recipe line as serialized in the bootstrap snapshot."""
        return cls(
            line_id=data.get("id"),
            line_type=data.get("line_type") or LINE_FIXED,
            quantity=float(data.get("quantity") or 0),
            is_optional=bool(data.get("is_optional")),
            affects_strength=bool(data.get("affects_strength")),
            is_top_up=bool(data.get("is_top_up")),
            base_unit=data.get("base_unit"),
            ingredient_id=data.get("ingredient_id"),
            category_id=data.get("category_id"),
        )


def resolve_ice_cubes(has_ice: bool, ice_cubes: Any) -> int:
    if not has_ice:
        return 0
    try:
        value = float(ice_cubes)
    except (TypeError, ValueError):
        return DEFAULT_ICE_CUBES
    if not math.isfinite(value):
        return DEFAULT_ICE_CUBES
    return max(0, math.floor(value))


def ice_displacement_ml(has_ice: bool, ice_cubes: Any) -> float:
    return resolve_ice_cubes(has_ice, ice_cubes) * ICE_CUBE_VOLUME_ML * ICE_SUBMERGED_RATIO


def available_liquid_capacity_ml(cup_capacity_ml: Optional[float], has_ice: bool, ice_cubes: Any) -> Optional[float]:
    """Cup capacity minus ice displacement. None when the recipe has no bound cup."""
    if cup_capacity_ml is None:
        return None
    return max(float(cup_capacity_ml) - ice_displacement_ml(has_ice, ice_cubes), 0.0)


def strength_multiplier(line: RecipeLineSpec, strength: Optional[str], ask_strength: bool) -> int:
    if ask_strength and strength == "double" and line.affects_strength:
        return 2
    return 1


def liquid_total_ml(
    lines: Iterable[RecipeLineSpec],
    strength: Optional[str] = "single",
    ask_strength: bool = False,
) -> float:
    """Sum of the non top-up liquid lines for one serving."""
    return sum(
        line.quantity * strength_multiplier(line, strength, ask_strength)
        for line in lines
        if not line.is_top_up and line.is_liquid
    )


def compute_line_quantities(
    lines: Sequence[RecipeLineSpec],
    strength: Optional[str] = "single",
    ask_strength: bool = False,
    capacity_ml: Optional[float] = None,
    active_top_up_line_ids: Optional[Iterable[Any]] = None,
) -> Dict[Any, float]:
    """
    Per-serving quantity for every line, keyed by line id (line order kept).

    Fixed and non top-up category lines get `quantity x strength multiplier`.
    Active top-up lines share what is left of the cup evenly; they get 0 when
    the capacity is unknown. `active_top_up_line_ids=None` means every top-up
    line is active.
    """
    active = None if active_top_up_line_ids is None else set(active_top_up_line_ids)
    out: Dict[Any, float] = {}
    top_ups: List[Any] = []
    for line in lines:
        if line.is_top_up:
            out[line.line_id] = 0.0
            if active is None or line.line_id in active:
                top_ups.append(line.line_id)
            continue
        out[line.line_id] = line.quantity * strength_multiplier(line, strength, ask_strength)

    if top_ups and capacity_ml is not None:
        remaining = max(capacity_ml - liquid_total_ml(lines, strength, ask_strength), 0.0)
        share = remaining / len(top_ups)
        for line_id in top_ups:
            out[line_id] = share
    return out


def validate_recipe_capacity(lines: Sequence[RecipeLineSpec], capacity_ml: Optional[float]) -> None:
    """Raise RecipeCapacityExceeded when the fixed liquid does not fit the cup."""
    if capacity_ml is None:
        return
    fixed = liquid_total_ml(lines)
    if fixed > capacity_ml + STOCK_EPSILON:
        raise RecipeCapacityExceeded(fixed - capacity_ml, capacity_ml)
    needs_top_up = any(line.is_top_up and not line.is_optional for line in lines)
    if needs_top_up and capacity_ml - fixed <= STOCK_EPSILON:
        raise RecipeCapacityExceeded(max(fixed - capacity_ml, 0.0), capacity_ml)


def scale_for_servings(quantities: Mapping[Any, float], servings: int) -> Dict[Any, float]:
    return {key: qty * servings for key, qty in quantities.items()}


def estimated_cost_per_serving(items: Iterable[Tuple[float, Optional[float]]]) -> Optional[float]:
    """Sum of quantity x cost per base unit. Items without a cost are skipped."""
    total = None
    for quantity, cost in items:
        if cost is None:
            continue
        total = (total or 0.0) + float(quantity) * float(cost)
    return total


def label_ingredient_names(ingredients) -> List[str]:
    """Names shown in an issue label. Cups and ice are never part of it."""
    return [
        i.name for i in ingredients
        if i is not None and not getattr(i, "is_cup", False) and not getattr(i, "is_ice", False)
    ]


def build_display_name(mode: Optional[str], recipe_name: str, ingredient_names: Sequence[str]) -> str:
    names = [n for n in ingredient_names if n]
    if mode == "ingredients_only" and names:
        return " + ".join(names)
    if mode == "recipe_with_ingredients" and names:
        return f"{recipe_name} ({' + '.join(names)})"
    return recipe_name


# --- cup geometry (display only) ---

def _frustum_volume(fraction: float, bottom_radius: float, top_radius: float) -> float:
    # Integral of pi * r(y)^2 dy for y in [0, fraction], r linear in y, height 1
    r = bottom_radius + (top_radius - bottom_radius) * fraction
    return math.pi * fraction * (bottom_radius ** 2 + bottom_radius * r + r ** 2) / 3.0


def fill_height_fraction(
    volume_ml: float,
    capacity_ml: Optional[float],
    top_radius: float = 1.0,
    bottom_radius: float = 0.75,
    iterations: int = 40,
) -> float:
    """Height (0..1) a tapered cup is filled to when holding `volume_ml`."""
    if not capacity_ml or capacity_ml <= 0:
        return 0.0
    target = min(max(float(volume_ml) / float(capacity_ml), 0.0), 1.0)
    if target in (0.0, 1.0):
        return target
    full = _frustum_volume(1.0, bottom_radius, top_radius)
    lo, hi = 0.0, 1.0
    for _ in range(iterations):
        mid = (lo + hi) / 2.0
        if _frustum_volume(mid, bottom_radius, top_radius) / full < target:
            lo = mid
        else:
            hi = mid
    return (lo + hi) / 2.0
