from datetime import date
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.clock import Clock, get_clock, is_session_expired
from db.database import (
    get_async_session,
    Delivery as DeliveryModel,
    DrinkIssue as DrinkIssueModel,
    Ingredient as IngredientModel,
    IngredientCategory as IngredientCategoryModel,
    IngredientVariant as IngredientVariantModel,
    OpenBarSession as OpenBarSessionModel,
    Recipe as RecipeModel,
    SessionMember as SessionMemberModel,
    SessionType as SessionTypeModel,
    Venue as VenueModel,
)
from db.users import User
from routers.drink_issues import serialize_issue
from routers.sessions import serialize_sessions, visible_sessions_filter

router = APIRouter()


@router.get("/bootstrap", response_model=Dict)
async def get_bootstrap(
    business_date: Optional[date] = None,
    session_limit: int = Query(60, ge=1, le=200),
    delivery_limit: int = Query(100, ge=1, le=300),
    session_issue_limit: int = Query(300, ge=1, le=1000),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    """
    Everything a bar terminal needs in one call: catalog, stock, the sessions
    of `business_date` visible to the user, sessions they could join, and the
    issues of their current session.

    `current_user_session` is the user's active session whatever its business
    date, so a session that crosses midnight stays current.
    """
    now = clock.now()
    business_date = business_date or now.date()

    ingredients = (await db.execute(select(IngredientModel).order_by(IngredientModel.name))).scalars().all()
    categories = (
        await db.execute(select(IngredientCategoryModel).order_by(IngredientCategoryModel.sort_order, IngredientCategoryModel.name))
    ).scalars().all()
    variants = (await db.execute(select(IngredientVariantModel).order_by(IngredientVariantModel.name))).scalars().all()
    recipes = (
        await db.execute(
            select(RecipeModel)
            .where(RecipeModel.is_active == True)  # noqa: E712
            .order_by(RecipeModel.sort_order, RecipeModel.name)
        )
    ).scalars().all()
    session_types = (
        await db.execute(select(SessionTypeModel).order_by(SessionTypeModel.sort_order, SessionTypeModel.name))
    ).scalars().all()
    venues = (
        await db.execute(select(VenueModel).where(VenueModel.is_active == True).order_by(VenueModel.name))  # noqa: E712
    ).scalars().all()

    stmt = select(OpenBarSessionModel).where(OpenBarSessionModel.business_date == business_date)
    visible = visible_sessions_filter(user)
    if visible is not None:
        stmt = stmt.where(visible)
    stmt = stmt.order_by(OpenBarSessionModel.created_at.desc()).limit(session_limit)
    sessions = list((await db.execute(stmt)).scalars().all())
    visible_ids = {s.id for s in sessions}

    active_memberships = await db.execute(
        select(SessionMemberModel.session_id)
        .join(OpenBarSessionModel, OpenBarSessionModel.id == SessionMemberModel.session_id)
        .where(
            and_(
                SessionMemberModel.user_id == user.id,
                SessionMemberModel.is_active == True,  # noqa: E712
                OpenBarSessionModel.status == "active",
            )
        )
        .order_by(SessionMemberModel.joined_at.desc())
    )
    current_session_id = next(iter(active_memberships.scalars().all()), None)

    joined_ids = select(SessionMemberModel.session_id).where(
        SessionMemberModel.user_id == user.id,
        SessionMemberModel.is_active == True,  # noqa: E712
    )
    joinable_raw = (
        await db.execute(
            select(OpenBarSessionModel)
            .where(
                OpenBarSessionModel.business_date == business_date,
                OpenBarSessionModel.status == "active",
                OpenBarSessionModel.id.not_in(joined_ids),
            )
            .order_by(OpenBarSessionModel.created_at.desc())
            .limit(session_limit)
        )
    ).scalars().all()
    joinable = [
        s for s in joinable_raw
        if s.id not in visible_ids and not is_session_expired(s.expected_end_at, now)
    ]

    session_issues = []
    if current_session_id is not None:
        res = await db.execute(
            select(DrinkIssueModel)
            .where(DrinkIssueModel.session_id == current_session_id)
            .order_by(DrinkIssueModel.issued_at.desc())
            .limit(session_issue_limit)
        )
        session_issues = [serialize_issue(i) for i in res.scalars().all()]

    deliveries = (
        await db.execute(select(DeliveryModel).order_by(DeliveryModel.delivered_at.desc()).limit(delivery_limit))
    ).scalars().all()

    sessions_out = await serialize_sessions(db, sessions, now)
    current_user_session = next((s for s in sessions_out if s["id"] == current_session_id), None)
    if current_user_session is None and current_session_id is not None:
        current = await db.get(OpenBarSessionModel, current_session_id)
        current_user_session = (await serialize_sessions(db, [current], now))[0]

    return {
        "business_date": business_date.isoformat(),
        "server_time": now.isoformat(),
        "ingredients": [i.to_schema for i in ingredients],
        "categories": [c.to_schema for c in categories],
        "variants": [v.to_schema for v in variants],
        "recipes": [r.to_schema for r in recipes],
        "session_types": [t.to_schema for t in session_types],
        "venues": [v.to_schema for v in venues],
        "sessions": sessions_out,
        "joinable_sessions": await serialize_sessions(db, joinable, now),
        "current_user_session": current_user_session,
        "session_issues": session_issues,
        "deliveries": [d.to_schema for d in deliveries],
    }
