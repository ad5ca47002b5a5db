import logging
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.errors import RecipeCapacityExceeded
from core.volume import (
    DEFAULT_LABEL_MODE_BY_DRINK_TYPE,
    LINE_FIXED,
    RecipeLineSpec,
    available_liquid_capacity_ml,
    validate_recipe_capacity,
)
from db.database import (
    get_async_session,
    Ingredient as IngredientModel,
    IngredientCategory as IngredientCategoryModel,
    Recipe as RecipeModel,
    RecipeLine as RecipeLineModel,
)
from db.users import User
from routers.inventory import require_manager
from schemas.recipes import RecipeCreate, RecipeLineInput, RecipeUpdate

logger = logging.getLogger(__name__)

router = APIRouter()


async def load_recipe(db: AsyncSession, recipe_id: UUID) -> Optional[RecipeModel]:
    res = await db.execute(
        select(RecipeModel).where(RecipeModel.id == recipe_id).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


def _bad_request(detail) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


async def _validate_recipe(db: AsyncSession, payload: RecipeCreate) -> Dict[UUID, IngredientModel]:
    """
    Check cup, lines and capacity before anything is written.
    Returns the fixed-line ingredients by id.
    """
    cup = None
    if payload.cup_ingredient_id:
        res = await db.execute(select(IngredientModel).where(IngredientModel.id == payload.cup_ingredient_id))
        cup = res.scalar_one_or_none()
        if not cup or not cup.is_cup or not cup.is_active:
            raise _bad_request("Cup must be an active cup ingredient")
        if cup.base_unit != "unit":
            raise _bad_request("Cup ingredient must use base unit 'unit'")
        if not cup.cup_capacity_ml or float(cup.cup_capacity_ml) <= 0:
            raise _bad_request("Cup ingredient has no capacity")

    seen_ingredients = set()
    seen_categories = set()
    for line in payload.lines:
        if line.ingredient_id:
            if line.ingredient_id in seen_ingredients:
                raise _bad_request("Duplicate ingredient line in recipe")
            seen_ingredients.add(line.ingredient_id)
        if line.category_id:
            if line.category_id in seen_categories:
                raise _bad_request("Duplicate category line in recipe")
            seen_categories.add(line.category_id)

    ingredients: Dict[UUID, IngredientModel] = {}
    if seen_ingredients:
        res = await db.execute(select(IngredientModel).where(IngredientModel.id.in_(seen_ingredients)))
        ingredients = {i.id: i for i in res.scalars().all()}
        if len(ingredients) != len(seen_ingredients):
            raise _bad_request("Recipe references an unknown ingredient")
        if any(i.is_cup or i.is_ice for i in ingredients.values()):
            raise _bad_request("Cup and ice ingredients cannot be recipe lines")
    if seen_categories:
        res = await db.execute(
            select(func.count()).select_from(IngredientCategoryModel).where(IngredientCategoryModel.id.in_(seen_categories))
        )
        if res.scalar_one() != len(seen_categories):
            raise _bad_request("Recipe references an unknown ingredient category")

    specs = [
        RecipeLineSpec(
            line_id=idx,
            line_type=line.line_type,
            quantity=line.quantity,
            is_optional=line.is_optional,
            affects_strength=line.affects_strength,
            is_top_up=line.is_top_up,
            base_unit=ingredients[line.ingredient_id].base_unit if line.line_type == LINE_FIXED else None,
        )
        for idx, line in enumerate(payload.lines)
    ]
    capacity = available_liquid_capacity_ml(
        float(cup.cup_capacity_ml) if cup else None,
        payload.has_ice,
        payload.ice_cubes,
    )
    try:
        validate_recipe_capacity(specs, capacity)
    except RecipeCapacityExceeded as e:
        raise _bad_request({"message": str(e), "overage_ml": e.overage_ml})
    return ingredients


def _line_models(lines: List[RecipeLineInput]) -> List[RecipeLineModel]:
    return [
        RecipeLineModel(
            line_type=line.line_type,
            ingredient_id=line.ingredient_id,
            category_id=line.category_id,
            quantity=line.quantity,
            is_optional=line.is_optional,
            affects_strength=line.affects_strength,
            is_top_up=line.is_top_up,
            sort_order=idx,
        )
        for idx, line in enumerate(lines)
    ]


async def _ensure_unique_name(db: AsyncSession, name: str, exclude_id: Optional[UUID] = None):
    stmt = select(RecipeModel.id).where(func.lower(RecipeModel.name) == name.lower())
    if exclude_id:
        stmt = stmt.where(RecipeModel.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Recipe name already exists")


@router.get("/", response_model=List[Dict])
async def list_recipes(
    include_inactive: bool = False,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    stmt = select(RecipeModel).order_by(RecipeModel.sort_order, RecipeModel.name)
    if not include_inactive:
        stmt = stmt.where(RecipeModel.is_active == True)  # noqa: E712
    res = await db.execute(stmt)
    return [r.to_schema for r in res.scalars().all()]


@router.get("/{recipe_id}", response_model=Dict)
async def get_recipe(recipe_id: UUID, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    recipe = await load_recipe(db, recipe_id)
    if not recipe:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recipe not found")
    return recipe.to_schema


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_recipe(payload: RecipeCreate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    require_manager(user)
    await _ensure_unique_name(db, payload.name)
    await _validate_recipe(db, payload)

    recipe = RecipeModel(
        name=payload.name,
        drink_type=payload.drink_type,
        cup_ingredient_id=payload.cup_ingredient_id,
        has_ice=payload.has_ice,
        ice_cubes=payload.ice_cubes,
        ask_strength=payload.ask_strength,
        label_display_mode=payload.label_display_mode or DEFAULT_LABEL_MODE_BY_DRINK_TYPE[payload.drink_type],
        sort_order=payload.sort_order,
        lines=_line_models(payload.lines),
    )
    db.add(recipe)
    await db.commit()
    logger.info("Recipe %s created with %d line(s)", recipe.id, len(payload.lines))
    return (await load_recipe(db, recipe.id)).to_schema


@router.put("/{recipe_id}", response_model=Dict)
async def update_recipe(recipe_id: UUID, payload: RecipeUpdate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    """Replace the recipe, lines included"""
    require_manager(user)
    recipe = await load_recipe(db, recipe_id)
    if not recipe:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recipe not found")
    await _ensure_unique_name(db, payload.name, exclude_id=recipe_id)
    await _validate_recipe(db, payload)

    recipe.name = payload.name
    recipe.drink_type = payload.drink_type
    recipe.cup_ingredient_id = payload.cup_ingredient_id
    recipe.has_ice = payload.has_ice
    recipe.ice_cubes = payload.ice_cubes
    recipe.ask_strength = payload.ask_strength
    recipe.label_display_mode = payload.label_display_mode or DEFAULT_LABEL_MODE_BY_DRINK_TYPE[payload.drink_type]
    recipe.sort_order = payload.sort_order
    recipe.is_active = payload.is_active
    recipe.lines.clear()
    await db.flush()
    recipe.lines.extend(_line_models(payload.lines))
    await db.commit()
    return (await load_recipe(db, recipe_id)).to_schema


@router.delete("/{recipe_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_recipe(recipe_id: UUID, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    """Recipes are referenced by past issues, so they are only deactivated"""
    require_manager(user)
    recipe = await load_recipe(db, recipe_id)
    if not recipe:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recipe not found")
    recipe.is_active = False
    await db.commit()
