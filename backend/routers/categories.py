from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from schemas.ingredient import CategoryCreate, CategoryUpdate
from db.database import get_async_session, IngredientCategory as IngredientCategoryModel
from typing import List, Dict
from uuid import UUID
from core.auth import current_active_user
from db.users import User
from routers.inventory import require_manager

router = APIRouter()


async def _name_taken(db: AsyncSession, name: str, exclude_id=None) -> bool:
    stmt = select(IngredientCategoryModel.id).where(func.lower(IngredientCategoryModel.name) == name.lower())
    if exclude_id:
        stmt = stmt.where(IngredientCategoryModel.id != exclude_id)
    return (await db.execute(stmt)).scalar_one_or_none() is not None


@router.get("/", response_model=List[Dict])
async def list_categories(user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    res = await db.execute(select(IngredientCategoryModel).order_by(IngredientCategoryModel.sort_order, IngredientCategoryModel.name))
    return [c.to_schema for c in res.scalars().all()]


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_category(payload: CategoryCreate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    require_manager(user)
    if await _name_taken(db, payload.name):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Category name already exists")
    category = IngredientCategoryModel(name=payload.name, sort_order=payload.sort_order)
    db.add(category)
    await db.commit()
    return category.to_schema


@router.patch("/{category_id}", response_model=Dict)
async def update_category(category_id: UUID, payload: CategoryUpdate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    require_manager(user)
    res = await db.execute(select(IngredientCategoryModel).where(IngredientCategoryModel.id == category_id))
    category = res.scalar_one_or_none()
    if not category:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
    data = payload.model_dump(exclude_unset=True)
    if "name" in data and await _name_taken(db, data["name"], exclude_id=category_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Category name already exists")
    for key, value in data.items():
        setattr(category, key, value)
    await db.commit()
    return category.to_schema
