import logging
from datetime import date, datetime
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.clock import Clock, get_clock, is_session_expired, session_expected_end
from core.volume import STOCK_EPSILON
from db.database import (
    get_async_session,
    DrinkIssue as DrinkIssueModel,
    Ingredient as IngredientModel,
    InventoryMovement as InventoryMovementModel,
    OpenBarSession as OpenBarSessionModel,
    SessionMember as SessionMemberModel,
    SessionType as SessionTypeModel,
    Venue as VenueModel,
)
from db.users import User
from routers.inventory import load_ingredients_for_update, post_movement, to_decimal
from schemas.sessions import SessionClose, SessionCreate

logger = logging.getLogger(__name__)

router = APIRouter()

SESSION_EXPIRED_DETAIL = "Open Bar Finished! Do not serve more drinks."


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def serialize_session(session: OpenBarSessionModel, members: List[SessionMemberModel], now: datetime) -> dict:
    return {
        "id": session.id,
        "name": session.name,
        "business_date": session.business_date.isoformat(),
        "venue_id": session.venue_id,
        "venue_name": session.venue.name if session.venue else None,
        "session_type_id": session.session_type_id,
        "session_type_name": session.session_type.name if session.session_type else None,
        "status": session.status,
        "time_limit_minutes": session.time_limit_minutes,
        "notes": session.notes,
        "opened_at": _iso(session.opened_at),
        "expected_end_at": _iso(session.expected_end_at),
        "closed_at": _iso(session.closed_at),
        "is_expired": session.status == "active" and is_session_expired(session.expected_end_at, now),
        "created_by_user_id": session.created_by_user_id,
        "members": [
            {
                "user_id": m.user_id,
                "name": m.user.label if m.user else None,
                "is_active": bool(m.is_active),
                "joined_at": _iso(m.joined_at),
                "left_at": _iso(m.left_at),
            }
            for m in members
        ],
    }


async def members_by_session(db: AsyncSession, session_ids: List[UUID]) -> Dict[UUID, List[SessionMemberModel]]:
    out: Dict[UUID, List[SessionMemberModel]] = {sid: [] for sid in session_ids}
    if not session_ids:
        return out
    res = await db.execute(
        select(SessionMemberModel)
        .where(SessionMemberModel.session_id.in_(session_ids))
        .order_by(SessionMemberModel.joined_at)
        .execution_options(populate_existing=True)
    )
    for m in res.scalars().all():
        out[m.session_id].append(m)
    return out


async def serialize_sessions(db: AsyncSession, sessions: List[OpenBarSessionModel], now: datetime) -> List[dict]:
    members = await members_by_session(db, [s.id for s in sessions])
    return [serialize_session(s, members[s.id], now) for s in sessions]


async def get_session_or_404(db: AsyncSession, session_id: UUID) -> OpenBarSessionModel:
    res = await db.execute(
        select(OpenBarSessionModel)
        .where(OpenBarSessionModel.id == session_id)
        .execution_options(populate_existing=True)
    )
    session = res.scalar_one_or_none()
    if not session:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session


async def get_membership(db: AsyncSession, session_id: UUID, user_id: UUID) -> Optional[SessionMemberModel]:
    res = await db.execute(
        select(SessionMemberModel).where(
            SessionMemberModel.session_id == session_id,
            SessionMemberModel.user_id == user_id,
        )
    )
    return res.scalar_one_or_none()


def can_manage_session(session: OpenBarSessionModel, user: User) -> bool:
    return bool(user.is_superuser) or session.created_by_user_id == user.id


def visible_sessions_filter(user: User):
    """Managers see every session, everyone else what they created or joined."""
    if user.is_superuser:
        return None
    joined = select(SessionMemberModel.session_id).where(SessionMemberModel.user_id == user.id)
    return or_(OpenBarSessionModel.created_by_user_id == user.id, OpenBarSessionModel.id.in_(joined))


async def attach_member(db: AsyncSession, session: OpenBarSessionModel, user: User, now: datetime) -> SessionMemberModel:
    """Make `user` an active member of `session`, detaching them from any other active session."""
    others = await db.execute(
        select(SessionMemberModel).where(
            SessionMemberModel.user_id == user.id,
            SessionMemberModel.session_id != session.id,
            SessionMemberModel.is_active == True,  # noqa: E712
        )
    )
    for m in others.scalars().all():
        m.is_active = False
        m.left_at = now

    membership = await get_membership(db, session.id, user.id)
    if membership is None:
        membership = SessionMemberModel(session_id=session.id, user_id=user.id, joined_at=now, is_active=True)
        db.add(membership)
    elif not membership.is_active:
        membership.is_active = True
        membership.joined_at = now
        membership.left_at = None
    return membership


def _open(session: OpenBarSessionModel, now: datetime) -> None:
    session.status = "active"
    session.opened_at = now
    session.expected_end_at = session_expected_end(now, session.time_limit_minutes)


async def _respond(db: AsyncSession, session_id: UUID, now: datetime) -> dict:
    session = await get_session_or_404(db, session_id)
    return (await serialize_sessions(db, [session], now))[0]


@router.get("/", response_model=List[Dict])
async def list_sessions(
    business_date: Optional[date] = None,
    limit: int = Query(60, ge=1, le=200),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    stmt = select(OpenBarSessionModel)
    visible = visible_sessions_filter(user)
    if visible is not None:
        stmt = stmt.where(visible)
    if business_date:
        stmt = stmt.where(OpenBarSessionModel.business_date == business_date)
    stmt = stmt.order_by(OpenBarSessionModel.business_date.desc(), OpenBarSessionModel.created_at.desc()).limit(limit)
    res = await db.execute(stmt)
    return await serialize_sessions(db, list(res.scalars().all()), clock.now())


@router.get("/{session_id}", response_model=Dict)
async def get_session(
    session_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    return await _respond(db, session_id, clock.now())


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: SessionCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    """Create a session from a session type, either launched (active) or as a draft."""
    now = clock.now()
    res = await db.execute(select(SessionTypeModel).where(SessionTypeModel.id == payload.session_type_id))
    session_type = res.scalar_one_or_none()
    if not session_type or not session_type.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Session type not found or inactive")
    if payload.venue_id:
        venue = (await db.execute(select(VenueModel).where(VenueModel.id == payload.venue_id))).scalar_one_or_none()
        if not venue or not venue.is_active:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Venue not found or inactive")

    business_date = payload.business_date or now.date()
    name = (payload.name or "").strip()
    if not name:
        count = await db.execute(
            select(func.count()).select_from(OpenBarSessionModel).where(
                OpenBarSessionModel.session_type_id == session_type.id,
                OpenBarSessionModel.business_date == business_date,
            )
        )
        name = f"{session_type.name} {business_date.isoformat()} #{count.scalar_one() + 1}"

    try:
        session = OpenBarSessionModel(
            name=name,
            business_date=business_date,
            venue_id=payload.venue_id,
            session_type_id=session_type.id,
            status="draft",
            time_limit_minutes=session_type.default_time_limit_minutes or 60,
            notes=payload.notes,
            created_by_user_id=user.id,
        )
        db.add(session)
        await db.flush()
        if payload.status == "active":
            _open(session, now)
            await attach_member(db, session, user, now)
        await db.commit()
        logger.info("Session %s created (%s) by %s", session.id, session.status, user.id)
        return await _respond(db, session.id, now)
    except HTTPException:
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("create_session failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to create session: {e}")


@router.post("/{session_id}/start", response_model=Dict)
async def start_session(
    session_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    session = await get_session_or_404(db, session_id)
    if not can_manage_session(session, user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the creator or a manager can start this session")
    if session.status != "draft":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only draft sessions can be started")
    _open(session, now)
    await attach_member(db, session, user, now)
    await db.commit()
    return await _respond(db, session_id, now)


@router.post("/{session_id}/join", response_model=Dict)
async def join_session(
    session_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    session = await get_session_or_404(db, session_id)
    if session.status != "active":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only active sessions can be joined")
    if is_session_expired(session.expected_end_at, now):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=SESSION_EXPIRED_DETAIL)
    await attach_member(db, session, user, now)
    await db.commit()
    return await _respond(db, session_id, now)


@router.post("/{session_id}/leave", response_model=Dict)
async def leave_session(
    session_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    await get_session_or_404(db, session_id)
    membership = await get_membership(db, session_id, user.id)
    if membership is None or not membership.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You are not part of this session")
    membership.is_active = False
    membership.left_at = now
    await db.commit()
    return await _respond(db, session_id, now)


@router.post("/{session_id}/close", response_model=Dict)
async def close_session(
    session_id: UUID,
    payload: Optional[SessionClose] = None,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    """
    Close an active session. With `reconciliation`, every counted stock that
    differs from the system stock posts one correction movement.
    """
    now = clock.now()
    session = await get_session_or_404(db, session_id)
    if not can_manage_session(session, user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the creator or a manager can close this session")
    if session.status != "active":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only active sessions can be closed")

    lines = (payload.reconciliation if payload else None) or []
    ingredient_ids = [line.ingredient_id for line in lines]
    if len(set(ingredient_ids)) != len(ingredient_ids):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Duplicate ingredient in reconciliation")

    try:
        ingredients = await load_ingredients_for_update(db, ingredient_ids)
        unknown = [str(i) for i in ingredient_ids if i not in ingredients]
        if unknown:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Ingredient not found: {unknown[0]}")

        summary = []
        for line in lines:
            ingredient: IngredientModel = ingredients[line.ingredient_id]
            system_stock = float(ingredient.current_stock or 0)
            counted = float(to_decimal(line.counted_stock))
            delta = counted - system_stock
            if abs(delta) <= STOCK_EPSILON:
                continue
            await post_movement(
                db=db,
                user=user,
                ingredient=ingredient,
                movement_type="correction",
                delta=delta,
                now=now,
                session_id=session.id,
                note=f"Session close reconciliation #{session.id}",
            )
            summary.append(
                {
                    "ingredient_id": ingredient.id,
                    "ingredient_name": ingredient.name,
                    "base_unit": ingredient.base_unit,
                    "system_stock": system_stock,
                    "counted_stock": counted,
                    "quantity_delta": float(to_decimal(delta)),
                }
            )

        session.status = "closed"
        session.closed_at = now
        active_members = await db.execute(
            select(SessionMemberModel).where(
                SessionMemberModel.session_id == session.id,
                SessionMemberModel.is_active == True,  # noqa: E712
            )
        )
        for m in active_members.scalars().all():
            m.is_active = False
            m.left_at = now

        await db.commit()
        logger.info("Session %s closed with %d correction(s)", session.id, len(summary))
        return {"session": await _respond(db, session_id, now), "reconciliation": summary}
    except HTTPException:
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("close_session failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to close session: {e}")


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Remove a session with its issues and movements; stock is moved back by the removed deltas."""
    session = await get_session_or_404(db, session_id)
    if not can_manage_session(session, user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the creator or a manager can delete this session")

    try:
        issue_ids = select(DrinkIssueModel.id).where(DrinkIssueModel.session_id == session_id)
        movement_filter = or_(
            InventoryMovementModel.session_id == session_id,
            InventoryMovementModel.issue_id.in_(issue_ids),
        )
        totals = await db.execute(
            select(InventoryMovementModel.ingredient_id, func.sum(InventoryMovementModel.quantity_delta))
            .where(movement_filter)
            .group_by(InventoryMovementModel.ingredient_id)
        )
        totals = {ingredient_id: total for ingredient_id, total in totals.all()}
        ingredients = await load_ingredients_for_update(db, totals.keys())
        for ingredient_id, total in totals.items():
            ingredient = ingredients[ingredient_id]
            ingredient.current_stock = to_decimal(float(ingredient.current_stock or 0) - float(total or 0))

        await db.execute(delete(InventoryMovementModel).where(movement_filter))
        await db.execute(delete(DrinkIssueModel).where(DrinkIssueModel.session_id == session_id))
        await db.execute(delete(SessionMemberModel).where(SessionMemberModel.session_id == session_id))
        await db.delete(session)
        await db.commit()
        logger.info("Session %s deleted by %s", session_id, user.id)
    except HTTPException:
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("delete_session failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to delete session: {e}")
