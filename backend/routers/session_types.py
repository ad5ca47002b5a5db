from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from schemas.sessions import SessionTypeCreate, SessionTypeUpdate
from db.database import get_async_session, SessionType as SessionTypeModel
from typing import List, Dict
from uuid import UUID
from core.auth import current_active_user
from db.users import User
from routers.inventory import require_manager

router = APIRouter()


@router.get("/", response_model=List[Dict])
async def list_session_types(user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    res = await db.execute(select(SessionTypeModel).order_by(SessionTypeModel.sort_order, SessionTypeModel.name))
    return [t.to_schema for t in res.scalars().all()]


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_session_type(payload: SessionTypeCreate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    require_manager(user)
    dup = await db.execute(select(SessionTypeModel.id).where(func.lower(SessionTypeModel.name) == payload.name.lower()))
    if dup.scalar_one_or_none():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Session type name already exists")
    session_type = SessionTypeModel(**payload.model_dump())
    db.add(session_type)
    await db.commit()
    return session_type.to_schema


@router.patch("/{session_type_id}", response_model=Dict)
async def update_session_type(session_type_id: UUID, payload: SessionTypeUpdate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    require_manager(user)
    res = await db.execute(select(SessionTypeModel).where(SessionTypeModel.id == session_type_id))
    session_type = res.scalar_one_or_none()
    if not session_type:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session type not found")
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(session_type, key, value)
    await db.commit()
    return session_type.to_schema
