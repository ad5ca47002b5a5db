"""
Tests for the drink issuance pipeline.
"""

from datetime import datetime

import pytest

from bar_client.pipeline import (
    MAX_SERVINGS,
    CategoryStep,
    IceStep,
    IssuancePipeline,
    RecipeStep,
    StrengthStep,
    plan_steps,
)
from bar_client.session import SessionManager
from core.clock import FixedClock
from core.errors import MissingCategorySelection, SessionExpired, ValidationError

START = datetime(2026, 3, 14, 18, 0, 0)

GIN_TONIC = {
    "id": "r-gt",
    "name": "Gin & Tonic",
    "cup_capacity_ml": 350.0,
    "has_ice": True,
    "ice_cubes": 3,
    "ask_strength": True,
    "lines": [
        {"id": "l-gin", "line_type": "fixed_ingredient", "ingredient_id": "gin", "base_unit": "ml",
         "quantity": 50, "affects_strength": True},
        {"id": "l-mix", "line_type": "category_selector", "category_id": "mixers", "category_name": "Mixers",
         "is_top_up": True},
        {"id": "l-garnish", "line_type": "category_selector", "category_id": "garnish", "is_optional": True},
        {"id": "l-lime", "line_type": "fixed_ingredient", "ingredient_id": "lime", "base_unit": "unit", "quantity": 1},
    ],
}

BEER = {
    "id": "r-beer",
    "name": "Draft beer",
    "cup_capacity_ml": 500.0,
    "lines": [{"id": "l-beer", "line_type": "fixed_ingredient", "ingredient_id": "beer", "base_unit": "ml", "quantity": 500}],
}


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def sessions(clock):
    manager = SessionManager(None, clock)
    manager.refresh({
        "sessions": [],
        "current_user_session": {"id": "s1", "status": "active", "expected_end_at": "2026-03-14T20:00:00"},
    })
    return manager


@pytest.fixture
def submitted():
    return []


@pytest.fixture
def pipeline(sessions, submitted):
    async def submit(payload, label=None):
        submitted.append((payload, label))
        return {"local_id": f"q{len(submitted)}"}

    return IssuancePipeline(sessions, submit)


class TestPlan:
    def test_steps_follow_the_recipe(self):
        steps = plan_steps(GIN_TONIC)
        assert steps == (RecipeStep(), CategoryStep("l-mix", "mixers", "Mixers"), StrengthStep(), IceStep())

    def test_nothing_to_ask(self):
        assert plan_steps(BEER) == (RecipeStep(),)


class TestFlow:
    @pytest.mark.asyncio
    async def test_full_selection_commits_on_the_last_step(self, pipeline, submitted):
        pipeline.set_servings(2)
        pipeline.set_staff_drink(True)
        assert await pipeline.choose_recipe(GIN_TONIC) is None
        assert isinstance(pipeline.step, CategoryStep)
        assert await pipeline.choose_ingredient("tonic") is None
        assert isinstance(pipeline.step, StrengthStep)
        assert await pipeline.choose_strength("double") is None
        assert isinstance(pipeline.step, IceStep)

        entry = await pipeline.choose_ice(False)
        assert entry == {"local_id": "q1"}
        payload, label = submitted[0]
        assert label == "Gin & Tonic x2"
        assert payload == {
            "session_id": "s1",
            "recipe_id": "r-gt",
            "servings": 2,
            "is_staff_drink": True,
            "category_selections": [{"recipe_line_id": "l-mix", "ingredient_id": "tonic"}],
            "issued_at": "2026-03-14T18:00:00",
            "strength": "double",
            "include_ice": False,
        }

    @pytest.mark.asyncio
    async def test_state_resets_after_commit(self, pipeline):
        pipeline.set_servings(4)
        pipeline.set_staff_drink(True)
        await pipeline.choose_recipe(BEER)
        assert pipeline.recipe is None
        assert pipeline.step == RecipeStep()
        assert pipeline.servings == 1
        assert pipeline.is_staff_drink is False

    @pytest.mark.asyncio
    async def test_recipe_with_nothing_to_ask_commits_at_once(self, pipeline, submitted):
        entry = await pipeline.choose_recipe(BEER)
        assert entry is not None
        payload, label = submitted[0]
        assert label == "Draft beer x1"
        assert payload["category_selections"] == []
        assert "strength" not in payload
        assert "include_ice" not in payload

    @pytest.mark.asyncio
    async def test_unanswered_flags_get_defaults(self, pipeline):
        await pipeline.choose_recipe(GIN_TONIC)
        await pipeline.choose_ingredient("soda")
        payload = pipeline.build_payload()
        assert payload["strength"] == "single"
        assert payload["include_ice"] is True

    @pytest.mark.asyncio
    async def test_wrong_step_is_rejected(self, pipeline):
        await pipeline.choose_recipe(GIN_TONIC)
        with pytest.raises(ValidationError):
            await pipeline.choose_strength("single")

    @pytest.mark.asyncio
    async def test_unknown_strength(self, pipeline):
        await pipeline.choose_recipe(GIN_TONIC)
        await pipeline.choose_ingredient("tonic")
        with pytest.raises(ValidationError):
            await pipeline.choose_strength("triple")
        assert pipeline.strength is None

    @pytest.mark.asyncio
    async def test_commit_with_missing_selection(self, pipeline, submitted):
        await pipeline.choose_recipe(GIN_TONIC)
        with pytest.raises(MissingCategorySelection) as exc:
            await pipeline.commit()
        assert exc.value.line_ids == ["l-mix"]
        assert submitted == []

    def test_servings_are_clamped(self, pipeline):
        assert pipeline.set_servings(0) == 1
        assert pipeline.set_servings(150) == MAX_SERVINGS
        assert pipeline.set_servings(7) == 7


class TestBack:
    @pytest.mark.asyncio
    async def test_back_drops_the_choice_of_the_step_left(self, pipeline):
        await pipeline.choose_recipe(GIN_TONIC)
        await pipeline.choose_ingredient("tonic")
        await pipeline.choose_strength("double")

        assert isinstance(await pipeline.back(), StrengthStep)
        assert pipeline.strength == "double"

        assert isinstance(await pipeline.back(), CategoryStep)
        assert pipeline.strength is None
        assert pipeline.selections == {"l-mix": "tonic"}

        assert await pipeline.back() == RecipeStep()
        assert pipeline.selections == {}

    @pytest.mark.asyncio
    async def test_back_on_the_first_step_stays(self, pipeline):
        assert await pipeline.back() == RecipeStep()

    @pytest.mark.asyncio
    async def test_cancel(self, pipeline):
        await pipeline.choose_recipe(GIN_TONIC)
        await pipeline.cancel()
        assert pipeline.recipe is None
        assert pipeline.step == RecipeStep()


class TestSessionGuard:
    @pytest.mark.asyncio
    async def test_every_step_stops_once_the_session_ends(self, pipeline, clock, submitted):
        await pipeline.choose_recipe(GIN_TONIC)
        await pipeline.choose_ingredient("tonic")
        clock.set(datetime(2026, 3, 14, 20, 0, 0))

        with pytest.raises(SessionExpired):
            await pipeline.choose_strength("single")
        with pytest.raises(SessionExpired):
            await pipeline.back()
        with pytest.raises(SessionExpired):
            await pipeline.commit()
        with pytest.raises(SessionExpired):
            await pipeline.choose_recipe(BEER)

        assert isinstance(pipeline.step, StrengthStep)
        assert pipeline.selections == {"l-mix": "tonic"}
        assert submitted == []

    @pytest.mark.asyncio
    async def test_expiry_is_reported_before_a_bad_strength(self, pipeline, clock):
        await pipeline.choose_recipe(GIN_TONIC)
        await pipeline.choose_ingredient("tonic")
        clock.set(datetime(2026, 3, 14, 20, 0, 0))
        with pytest.raises(SessionExpired):
            await pipeline.choose_strength("triple")

    @pytest.mark.asyncio
    async def test_no_current_session(self, pipeline, sessions, submitted):
        sessions.refresh({"current_user_session": None})
        with pytest.raises(SessionExpired):
            await pipeline.choose_recipe(BEER)
        assert submitted == []

    @pytest.mark.asyncio
    async def test_closed_session(self, pipeline, sessions):
        sessions.refresh({"current_user_session": {"id": "s1", "status": "closed", "expected_end_at": None}})
        with pytest.raises(SessionExpired):
            await pipeline.choose_recipe(BEER)


class TestPreview:
    @pytest.mark.asyncio
    async def test_top_up_fills_the_rest_of_the_cup(self, pipeline):
        pipeline.set_servings(2)
        await pipeline.choose_recipe(GIN_TONIC)
        await pipeline.choose_ingredient("tonic")

        preview = pipeline.preview()
        assert preview["capacity_ml"] == pytest.approx(281.225)
        assert preview["per_serving"]["l-gin"] == pytest.approx(50)
        assert preview["per_serving"]["l-mix"] == pytest.approx(231.225)
        assert preview["per_serving"]["l-lime"] == pytest.approx(1)
        assert "l-garnish" not in preview["per_serving"]
        assert preview["total"]["l-gin"] == pytest.approx(100)
        assert preview["fill_fraction"] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_double_strength_shrinks_the_top_up(self, pipeline):
        await pipeline.choose_recipe(GIN_TONIC)
        await pipeline.choose_ingredient("tonic")
        await pipeline.choose_strength("double")
        preview = pipeline.preview()
        assert preview["per_serving"]["l-gin"] == pytest.approx(100)
        assert preview["per_serving"]["l-mix"] == pytest.approx(281.225 - 100)

    def test_nothing_chosen(self, pipeline):
        assert pipeline.preview() is None
