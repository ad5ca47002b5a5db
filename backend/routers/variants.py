from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from schemas.ingredient import VariantCreate, VariantUpdate
from db.database import (
    get_async_session,
    Ingredient as IngredientModel,
    IngredientVariant as IngredientVariantModel,
)
from typing import List, Dict, Optional
from uuid import UUID
from core.auth import current_active_user
from db.users import User
from routers.inventory import require_manager

router = APIRouter()


async def _get_variant_or_404(db: AsyncSession, variant_id: UUID) -> IngredientVariantModel:
    res = await db.execute(select(IngredientVariantModel).where(IngredientVariantModel.id == variant_id).execution_options(populate_existing=True))
    variant = res.scalar_one_or_none()
    if not variant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Variant not found")
    return variant


@router.get("/", response_model=List[Dict])
async def list_variants(ingredient_id: Optional[UUID] = None, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    stmt = select(IngredientVariantModel).order_by(IngredientVariantModel.name)
    if ingredient_id:
        stmt = stmt.where(IngredientVariantModel.ingredient_id == ingredient_id)
    res = await db.execute(stmt)
    return [v.to_schema for v in res.scalars().all()]


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_variant(payload: VariantCreate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    require_manager(user)
    res = await db.execute(select(IngredientModel.id).where(IngredientModel.id == payload.ingredient_id))
    if res.scalar_one_or_none() is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ingredient not found")
    variant = IngredientVariantModel(**payload.model_dump())
    db.add(variant)
    await db.commit()
    return (await _get_variant_or_404(db, variant.id)).to_schema


@router.patch("/{variant_id}", response_model=Dict)
async def update_variant(variant_id: UUID, payload: VariantUpdate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    require_manager(user)
    variant = await _get_variant_or_404(db, variant_id)
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(variant, key, value)
    await db.commit()
    return (await _get_variant_or_404(db, variant_id)).to_schema
