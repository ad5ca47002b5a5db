from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_
from schemas.ingredient import IngredientCreate, IngredientUpdate
from db.database import (
    get_async_session,
    Ingredient as IngredientModel,
    IngredientCategory as IngredientCategoryModel,
    IngredientVariant as IngredientVariantModel,
    Recipe as RecipeModel,
    RecipeLine as RecipeLineModel,
)
from typing import List, Dict
from uuid import UUID
from core.auth import current_active_user
from db.users import User
from routers.inventory import require_manager

router = APIRouter()

DEFAULT_VARIANT_NAME = "Generic"


async def _get_ingredient_or_404(db: AsyncSession, ingredient_id: UUID) -> IngredientModel:
    result = await db.execute(select(IngredientModel).where(IngredientModel.id == ingredient_id).execution_options(populate_existing=True))
    ingredient = result.scalar_one_or_none()
    if not ingredient:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Ingredient with id {ingredient_id} not found"
        )
    return ingredient


async def _ensure_category(db: AsyncSession, category_id):
    if category_id is None:
        return
    res = await db.execute(select(IngredientCategoryModel.id).where(IngredientCategoryModel.id == category_id))
    if res.scalar_one_or_none() is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Ingredient category not found")


@router.get("/", response_model=List[Dict])
async def get_ingredients(user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    """Get all ingredients with their stock figures"""
    result = await db.execute(select(IngredientModel).order_by(IngredientModel.name))
    return [ingredient.to_schema for ingredient in result.scalars().all()]


@router.get("/{ingredient_id}", response_model=Dict)
async def get_ingredient(ingredient_id: UUID, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    """Get an ingredient by ID"""
    ingredient = await _get_ingredient_or_404(db, ingredient_id)
    return ingredient.to_schema


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_ingredient(ingredient: IngredientCreate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    """Create an ingredient together with its default "Generic" variant"""
    require_manager(user)
    result = await db.execute(
        select(IngredientModel).where(
            func.lower(IngredientModel.name) == ingredient.name.lower()
        )
    )
    if result.scalar_one_or_none():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Ingredient name already exists")
    await _ensure_category(db, ingredient.category_id)

    ingredient_model = IngredientModel(**ingredient.model_dump(), current_stock=0)
    db.add(ingredient_model)
    await db.flush()
    db.add(
        IngredientVariantModel(
            ingredient_id=ingredient_model.id,
            name=DEFAULT_VARIANT_NAME,
            base_quantity=1,
        )
    )
    await db.commit()
    return (await _get_ingredient_or_404(db, ingredient_model.id)).to_schema


@router.patch("/{ingredient_id}", response_model=Dict)
async def update_ingredient(ingredient_id: UUID, ingredient: IngredientUpdate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    """Update an existing ingredient (stock is changed through movements only)"""
    require_manager(user)
    ingredient_model = await _get_ingredient_or_404(db, ingredient_id)
    data = ingredient.model_dump(exclude_unset=True)

    if "name" in data:
        dup = await db.execute(
            select(IngredientModel.id).where(
                func.lower(IngredientModel.name) == data["name"].lower(),
                IngredientModel.id != ingredient_id,
            )
        )
        if dup.scalar_one_or_none():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Ingredient name already exists")
    if "category_id" in data:
        await _ensure_category(db, data["category_id"])

    is_cup = data.get("is_cup", ingredient_model.is_cup)
    is_ice = data.get("is_ice", ingredient_model.is_ice)
    base_unit = data.get("base_unit", ingredient_model.base_unit)
    if is_cup and is_ice:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="An ingredient cannot be both a cup and ice")
    if is_cup and base_unit != "unit":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cup ingredients must use base unit 'unit'")
    if not is_cup:
        data["cup_type"] = None
        data["cup_capacity_ml"] = None
    elif (data.get("cup_capacity_ml", ingredient_model.cup_capacity_ml) or 0) <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cup ingredients require cup_capacity_ml > 0")

    for key, value in data.items():
        setattr(ingredient_model, key, value)
    await db.commit()
    return (await _get_ingredient_or_404(db, ingredient_id)).to_schema


@router.delete("/{ingredient_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ingredient(ingredient_id: UUID, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    """Delete an ingredient that no recipe uses"""
    require_manager(user)
    ingredient_model = await _get_ingredient_or_404(db, ingredient_id)
    used = await db.execute(
        select(RecipeModel.id)
        .outerjoin(RecipeLineModel, RecipeLineModel.recipe_id == RecipeModel.id)
        .where(or_(RecipeLineModel.ingredient_id == ingredient_id, RecipeModel.cup_ingredient_id == ingredient_id))
        .limit(1)
    )
    if used.scalar_one_or_none():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Ingredient is used by a recipe")
    await db.delete(ingredient_model)
    await db.commit()
