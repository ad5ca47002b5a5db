import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.clock import Clock, get_clock, is_session_expired, to_naive_utc
from core.errors import RecipeCapacityExceeded
from core.volume import (
    LINE_CATEGORY,
    LINE_FIXED,
    STOCK_EPSILON,
    RecipeLineSpec,
    available_liquid_capacity_ml,
    build_display_name,
    compute_line_quantities,
    label_ingredient_names,
    liquid_total_ml,
    resolve_ice_cubes,
)
from db.database import (
    get_async_session,
    DrinkIssue as DrinkIssueModel,
    Ingredient as IngredientModel,
    InventoryMovement as InventoryMovementModel,
    Recipe as RecipeModel,
)
from db.users import User
from routers.events import broker
from routers.inventory import load_ingredients_for_update, post_movement
from routers.recipes import load_recipe
from routers.sessions import (
    SESSION_EXPIRED_DETAIL,
    can_manage_session,
    get_membership,
    get_session_or_404,
)
from schemas.drink_issues import DrinkIssueCreate

logger = logging.getLogger(__name__)

router = APIRouter()

INSUFFICIENT_STOCK_MESSAGE = "Insufficient ingredient stock for this issue"


def serialize_issue(issue: DrinkIssueModel) -> dict:
    return {
        "id": issue.id,
        "session_id": issue.session_id,
        "recipe_id": issue.recipe_id,
        "recipe_name": issue.recipe_name,
        "display_name": issue.display_name,
        "servings": issue.servings,
        "strength": issue.strength,
        "include_ice": bool(issue.include_ice),
        "is_staff_drink": bool(issue.is_staff_drink),
        "category_selections": issue.category_selections or [],
        "notes": issue.notes,
        "client_ref": issue.client_ref,
        "issued_by_user_id": issue.issued_by_user_id,
        "issued_by_name": issue.issued_by.label if issue.issued_by else None,
        "issued_at": issue.issued_at.isoformat() if issue.issued_at else None,
    }


def _event_payload(issue_id, session_id, actor_id, now: datetime) -> dict:
    return {
        "session_id": str(session_id),
        "issue_id": str(issue_id),
        "actor_id": str(actor_id),
        "occurred_at": now.isoformat(),
    }


def _compose_notes(
    note: Optional[str],
    recipe: RecipeModel,
    strength: Optional[str],
    include_ice: bool,
    is_staff_drink: bool,
    selection_labels: List[str],
) -> Optional[str]:
    parts = [note.strip()] if note and note.strip() else []
    if strength:
        parts.append(f"Strength: {strength}")
    if recipe.has_ice or include_ice:
        if include_ice:
            parts.append(f"Ice: Yes ({resolve_ice_cubes(True, recipe.ice_cubes)} cubes)")
        else:
            parts.append("Ice: No")
    if is_staff_drink:
        parts.append("Staff drink")
    if selection_labels:
        parts.append("Selections: " + ", ".join(selection_labels))
    return " | ".join(parts) or None


def _bad_request(detail) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


async def _find_by_client_ref(db: AsyncSession, client_ref: Optional[str], user: User) -> Optional[DrinkIssueModel]:
    if not client_ref:
        return None
    res = await db.execute(select(DrinkIssueModel).where(DrinkIssueModel.client_ref == client_ref))
    issue = res.scalar_one_or_none()
    if issue is not None and issue.issued_by_user_id != user.id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="client_ref belongs to another drink issue")
    return issue


@router.get("/", response_model=List[Dict])
async def list_drink_issues(
    session_id: UUID,
    limit: int = Query(300, ge=1, le=1000),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    session = await get_session_or_404(db, session_id)
    if not can_manage_session(session, user) and await get_membership(db, session_id, user.id) is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    res = await db.execute(
        select(DrinkIssueModel)
        .where(DrinkIssueModel.session_id == session_id)
        .order_by(DrinkIssueModel.issued_at.desc())
        .limit(limit)
    )
    return [serialize_issue(i) for i in res.scalars().all()]


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_drink_issue(
    payload: DrinkIssueCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    """
    Serve `servings` of a recipe inside a session.

    Resolves category selections, derives per-line quantities from the cup
    capacity, checks stock for every ingredient and posts one `issue`
    movement per ingredient. Fails as a whole (409 with `shortages`) when any
    ingredient is short.

    A `client_ref` seen before returns the issue it created, without
    deducting stock again.
    """
    now = clock.now()
    is_manager = bool(user.is_superuser)

    try:
        existing = await _find_by_client_ref(db, payload.client_ref, user)
        if existing is not None:
            logger.info("Drink issue %s replayed (client_ref=%s)", existing.id, payload.client_ref)
            return {"issue": serialize_issue(existing)}

        session = await get_session_or_404(db, payload.session_id)
        if payload.allow_inactive_session and not is_manager:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only managers can issue into an inactive session",
            )
        if not is_manager:
            membership = await get_membership(db, session.id, user.id)
            if membership is None or not membership.is_active:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Join the session before issuing drinks")
        if not payload.allow_inactive_session:
            if session.status != "active":
                raise _bad_request("Session is not active")
            if is_session_expired(session.expected_end_at, now):
                raise _bad_request(SESSION_EXPIRED_DETAIL)

        recipe = await load_recipe(db, payload.recipe_id)
        if not recipe or not recipe.is_active:
            raise _bad_request("Recipe not found or inactive")
        if not recipe.lines:
            raise _bad_request("Recipe has no lines")
        cup = recipe.cup_ingredient
        if cup is None:
            raise _bad_request("Recipe has no cup")
        if not cup.is_cup or not cup.is_active or cup.base_unit != "unit" or not cup.cup_capacity_ml:
            raise _bad_request("Recipe cup is not a valid cup ingredient")

        lines_by_id = {line.id: line for line in recipe.lines}
        selections: Dict[UUID, UUID] = {}
        for sel in payload.category_selections:
            line = lines_by_id.get(sel.recipe_line_id)
            if line is None or line.line_type != LINE_CATEGORY:
                raise _bad_request("Selection references an unknown category line")
            if line.id in selections:
                raise _bad_request("Duplicate selection for a recipe line")
            selections[line.id] = sel.ingredient_id

        selected: Dict[UUID, IngredientModel] = {}
        if selections:
            res = await db.execute(select(IngredientModel).where(IngredientModel.id.in_(set(selections.values()))))
            selected = {i.id: i for i in res.scalars().all()}
        for line_id, ingredient_id in selections.items():
            line = lines_by_id[line_id]
            ing = selected.get(ingredient_id)
            if ing is None or not ing.is_active or ing.is_cup or ing.is_ice or ing.category_id != line.category_id:
                raise _bad_request(f"Selected ingredient is not valid for {line.category.name if line.category else 'this line'}")
            if line.is_top_up and ing.base_unit != "ml":
                raise _bad_request("Top-up ingredients must be measured in ml")

        missing = [
            str(line.id)
            for line in recipe.lines
            if line.line_type == LINE_CATEGORY and not line.is_optional and line.id not in selections
        ]
        if missing:
            raise _bad_request({"message": "Missing ingredient selection for required recipe lines", "line_ids": missing})

        resolved = []
        for line in recipe.lines:
            if line.line_type == LINE_FIXED:
                ing = line.ingredient
            else:
                ing = selected.get(selections.get(line.id))
            if ing is not None:
                resolved.append((line, ing))
        specs = [RecipeLineSpec.from_row(line, ing) for line, ing in resolved]

        # strength/include_ice come from the bartender's commit, not the current recipe flags
        strength = payload.strength
        ask_strength = strength is not None
        include_ice = payload.include_ice if payload.include_ice is not None else bool(recipe.has_ice)
        capacity = available_liquid_capacity_ml(float(cup.cup_capacity_ml), include_ice, recipe.ice_cubes)

        fixed = liquid_total_ml(specs, strength, ask_strength)
        if fixed > capacity + STOCK_EPSILON:
            err = RecipeCapacityExceeded(fixed - capacity, capacity)
            raise _bad_request({"message": str(err), "overage_ml": err.overage_ml})
        if any(s.is_top_up and not s.is_optional for s in specs) and capacity - fixed <= STOCK_EPSILON:
            err = RecipeCapacityExceeded(0.0, capacity)
            raise _bad_request({"message": str(err), "overage_ml": err.overage_ml})

        per_serving = compute_line_quantities(specs, strength, ask_strength, capacity)
        totals: Dict[UUID, float] = defaultdict(float)
        for spec in specs:
            totals[spec.ingredient_id] += per_serving[spec.line_id] * payload.servings
        if cup.cup_type == "disposable":
            totals[cup.id] += payload.servings
        totals = {k: v for k, v in totals.items() if v > STOCK_EPSILON}

        ingredients = await load_ingredients_for_update(db, totals.keys())
        shortages = []
        for ingredient_id, required in totals.items():
            ing = ingredients[ingredient_id]
            available = float(ing.current_stock or 0)
            if required - available > STOCK_EPSILON:
                shortages.append(
                    {
                        "ingredient_id": str(ing.id),
                        "ingredient_name": ing.name,
                        "base_unit": ing.base_unit,
                        "required": round(required, 4),
                        "available": round(available, 4),
                        "missing": round(required - available, 4),
                    }
                )
        if shortages:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": INSUFFICIENT_STOCK_MESSAGE, "shortages": shortages},
            )

        selection_labels = []
        for line, ing in resolved:
            if line.line_type == LINE_CATEGORY:
                category_name = line.category.name if line.category else "Category"
                selection_labels.append(f"{category_name}={ing.name}")

        issue = DrinkIssueModel(
            id=uuid.uuid4(),
            session_id=session.id,
            recipe_id=recipe.id,
            recipe_name=recipe.name,
            display_name=build_display_name(
                recipe.label_display_mode,
                recipe.name,
                label_ingredient_names(ing for _, ing in resolved),
            ),
            servings=payload.servings,
            strength=strength,
            include_ice=include_ice,
            is_staff_drink=payload.is_staff_drink,
            category_selections=[
                {"recipe_line_id": str(line_id), "ingredient_id": str(ingredient_id)}
                for line_id, ingredient_id in selections.items()
            ],
            notes=_compose_notes(payload.notes, recipe, strength, include_ice, payload.is_staff_drink, selection_labels),
            client_ref=payload.client_ref,
            issued_by_user_id=user.id,
            issued_at=to_naive_utc(payload.issued_at) if payload.issued_at else now,
        )
        db.add(issue)

        for ingredient_id, quantity in totals.items():
            await post_movement(
                db=db,
                user=user,
                ingredient=ingredients[ingredient_id],
                movement_type="issue",
                delta=-quantity,
                now=now,
                session_id=session.id,
                issue_id=issue.id,
                note=f"Drink issue {issue.display_name} x{payload.servings}",
            )

        await db.commit()
        res = await db.execute(
            select(DrinkIssueModel).where(DrinkIssueModel.id == issue.id).execution_options(populate_existing=True)
        )
        issue = res.scalar_one()
        broker.publish(session.id, "drink_issue_created", _event_payload(issue.id, session.id, user.id, now))
        return {"issue": serialize_issue(issue)}
    except HTTPException:
        raise
    except IntegrityError:
        # a concurrent submission with the same client_ref won the insert
        await db.rollback()
        existing = await _find_by_client_ref(db, payload.client_ref, user)
        if existing is None:
            logger.exception("create_drink_issue failed")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create drink issue")
        return {"issue": serialize_issue(existing)}
    except Exception as e:
        await db.rollback()
        logger.exception("create_drink_issue failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to create drink issue: {e}")


@router.delete("/{issue_id}", response_model=Dict)
async def delete_drink_issue(
    issue_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    """Remove an issue and put its stock back with reversal movements."""
    now = clock.now()
    try:
        res = await db.execute(select(DrinkIssueModel).where(DrinkIssueModel.id == issue_id))
        issue = res.scalar_one_or_none()
        if not issue:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Drink issue not found")
        session = await get_session_or_404(db, issue.session_id)
        if session.status == "closed":
            raise _bad_request("Drinks of a closed session cannot be deleted")
        if issue.issued_by_user_id != user.id and not can_manage_session(session, user):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to delete this drink")

        mv_res = await db.execute(
            select(InventoryMovementModel)
            .where(InventoryMovementModel.issue_id == issue.id)
            .where(InventoryMovementModel.movement_type == "issue")
            .where(InventoryMovementModel.is_reversed == False)  # noqa: E712
        )
        to_reverse = mv_res.scalars().all() or []
        ingredients = await load_ingredients_for_update(db, [mv.ingredient_id for mv in to_reverse])

        movements_out: List[dict] = []
        for mv in to_reverse:
            mv.is_reversed = True
            movements_out.append(
                await post_movement(
                    db=db,
                    user=user,
                    ingredient=ingredients[mv.ingredient_id],
                    movement_type="issue_reversal",
                    delta=-mv.quantity_delta,
                    now=now,
                    session_id=issue.session_id,
                    issue_id=issue.id,
                    is_reversal=True,
                    reversal_of_id=mv.id,
                    note=f"Drink issue deleted: {issue.display_name}",
                )
            )

        session_id = issue.session_id
        await db.delete(issue)
        await db.commit()
        broker.publish(session_id, "drink_issue_deleted", _event_payload(issue_id, session_id, user.id, now))
        return {"id": issue_id, "movements_count": len(movements_out), "movements": movements_out}
    except HTTPException:
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("delete_drink_issue failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to delete drink issue: {e}")
