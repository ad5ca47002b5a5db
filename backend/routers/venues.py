from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from schemas.sessions import VenueCreate
from db.database import get_async_session, Venue as VenueModel
from typing import List, Dict
from core.auth import current_active_user
from db.users import User
from routers.inventory import require_manager

router = APIRouter()


@router.get("/", response_model=List[Dict])
async def list_venues(user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    res = await db.execute(select(VenueModel).where(VenueModel.is_active == True).order_by(VenueModel.name))  # noqa: E712
    return [v.to_schema for v in res.scalars().all()]


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_venue(payload: VenueCreate, user: User = Depends(current_active_user), db: AsyncSession = Depends(get_async_session)):
    require_manager(user)
    dup = await db.execute(select(VenueModel.id).where(func.lower(VenueModel.name) == payload.name.lower()))
    if dup.scalar_one_or_none():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Venue name already exists")
    venue = VenueModel(name=payload.name)
    db.add(venue)
    await db.commit()
    return venue.to_schema
