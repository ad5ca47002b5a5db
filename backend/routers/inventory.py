import logging
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.clock import Clock, get_clock
from core.volume import STOCK_EPSILON
from db.database import (
    get_async_session,
    Delivery as DeliveryModel,
    DeliveryItem as DeliveryItemModel,
    Ingredient as IngredientModel,
    IngredientVariant as IngredientVariantModel,
    InventoryMovement as InventoryMovementModel,
)
from db.users import User
from schemas.inventory import AdjustmentCreate, DeliveryCreate

logger = logging.getLogger(__name__)

router = APIRouter()

QUANTITY_STEP = Decimal("0.0001")
COST_STEP = Decimal("0.000001")


def to_decimal(x, step: Decimal = QUANTITY_STEP) -> Decimal:
    return Decimal(str(x)).quantize(step)


def _as_float(x) -> Optional[float]:
    return float(x) if x is not None else None


def require_manager(user: User) -> None:
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")


def serialize_movement(mv: InventoryMovementModel, ingredient: Optional[IngredientModel] = None) -> dict:
    ing = ingredient or mv.ingredient
    return {
        "id": mv.id,
        "created_at": mv.created_at.isoformat() if mv.created_at else None,
        "ingredient_id": mv.ingredient_id,
        "ingredient_name": ing.name if ing else None,
        "base_unit": ing.base_unit if ing else None,
        "movement_type": mv.movement_type,
        "quantity_delta": float(mv.quantity_delta),
        "unit_cost": _as_float(mv.unit_cost),
        "note": mv.note,
        "delivery_id": mv.delivery_id,
        "session_id": mv.session_id,
        "issue_id": mv.issue_id,
        "is_reversal": bool(mv.is_reversal),
        "is_reversed": bool(mv.is_reversed),
        "reversal_of_id": mv.reversal_of_id,
        "created_by_user_id": mv.created_by_user_id,
    }


async def load_ingredients_for_update(db: AsyncSession, ingredient_ids: Iterable[UUID]) -> Dict[UUID, IngredientModel]:
    """Lock the ingredient rows whose stock is about to change."""
    ids = list(set(ingredient_ids))
    if not ids:
        return {}
    res = await db.execute(
        select(IngredientModel)
        .where(IngredientModel.id.in_(ids))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {ing.id: ing for ing in res.scalars().all()}


async def post_movement(
    *,
    db: AsyncSession,
    user: User,
    ingredient: IngredientModel,
    movement_type: str,
    delta,
    now: datetime,
    note: Optional[str] = None,
    unit_cost=None,
    delivery_id: Optional[UUID] = None,
    session_id: Optional[UUID] = None,
    issue_id: Optional[UUID] = None,
    is_reversal: bool = False,
    reversal_of_id: Optional[UUID] = None,
) -> dict:
    """
    Append one ledger row and move ingredient.current_stock by the same delta.
    The caller owns the transaction (commit/rollback).
    """
    quantity_delta = to_decimal(delta)
    movement = InventoryMovementModel(
        id=uuid.uuid4(),
        ingredient_id=ingredient.id,
        movement_type=movement_type,
        quantity_delta=quantity_delta,
        unit_cost=to_decimal(unit_cost, COST_STEP) if unit_cost is not None else None,
        note=note,
        delivery_id=delivery_id,
        session_id=session_id,
        issue_id=issue_id,
        is_reversal=is_reversal,
        reversal_of_id=reversal_of_id,
        created_at=now,
        created_by_user_id=user.id,
    )
    db.add(movement)
    ingredient.current_stock = to_decimal(Decimal(ingredient.current_stock or 0) + quantity_delta)
    return {
        "movement": serialize_movement(movement, ingredient),
        "stock": {
            "ingredient_id": ingredient.id,
            "current_stock": float(ingredient.current_stock),
        },
    }


def weighted_average_cost(
    current_cost: Optional[float],
    current_stock: float,
    incoming_qty: float,
    incoming_value: float,
) -> Optional[float]:
    if incoming_qty <= 0:
        return current_cost
    incoming_avg = incoming_value / incoming_qty
    if current_cost is None or current_stock <= 0:
        return incoming_avg
    return (current_cost * current_stock + incoming_value) / (current_stock + incoming_qty)


@router.post("/deliveries", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_delivery(
    payload: DeliveryCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    """Receive stock. Variant items are converted to base units via variant.base_quantity."""
    require_manager(user)
    now = clock.now()

    try:
        variant_ids = [it.variant_id for it in payload.items if it.variant_id]
        variants: Dict[UUID, IngredientVariantModel] = {}
        if variant_ids:
            res = await db.execute(select(IngredientVariantModel).where(IngredientVariantModel.id.in_(variant_ids)))
            variants = {v.id: v for v in res.scalars().all()}

        resolved = []
        for idx, it in enumerate(payload.items):
            if it.variant_id:
                variant = variants.get(it.variant_id)
                if not variant or not variant.is_active:
                    raise HTTPException(
                        status_code=status.HTTP_400_BAD_REQUEST,
                        detail=f"Item {idx + 1}: variant not found or inactive",
                    )
                base_quantity = float(variant.base_quantity)
                quantity = it.purchase_units * base_quantity
                unit_cost = it.purchase_unit_cost / base_quantity if it.purchase_unit_cost is not None else None
                resolved.append((variant.ingredient_id, variant.id, it.purchase_units, it.purchase_unit_cost, quantity, unit_cost))
            else:
                resolved.append((it.ingredient_id, None, None, None, it.quantity, it.unit_cost))

        ingredients = await load_ingredients_for_update(db, [r[0] for r in resolved])
        missing = [str(r[0]) for r in resolved if r[0] not in ingredients]
        if missing:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Ingredient not found: {missing[0]}")

        delivery = DeliveryModel(
            id=uuid.uuid4(),
            supplier_name=(payload.supplier_name or "").strip() or None,
            invoice_ref=(payload.invoice_ref or "").strip() or None,
            delivered_at=payload.delivered_at.replace(tzinfo=None) if payload.delivered_at else now,
            notes=payload.notes,
            created_by_user_id=user.id,
        )
        db.add(delivery)

        movements_out: List[dict] = []
        for ingredient_id, variant_id, purchase_units, purchase_unit_cost, quantity, unit_cost in resolved:
            ingredient = ingredients[ingredient_id]
            stock_before = float(ingredient.current_stock or 0)
            if unit_cost is not None:
                new_cost = weighted_average_cost(
                    _as_float(ingredient.cost_per_unit),
                    stock_before,
                    quantity,
                    quantity * unit_cost,
                )
                ingredient.cost_per_unit = to_decimal(new_cost, COST_STEP) if new_cost is not None else None

            db.add(
                DeliveryItemModel(
                    delivery_id=delivery.id,
                    ingredient_id=ingredient_id,
                    variant_id=variant_id,
                    purchase_units=to_decimal(purchase_units) if purchase_units is not None else None,
                    purchase_unit_cost=to_decimal(purchase_unit_cost, COST_STEP) if purchase_unit_cost is not None else None,
                    quantity=to_decimal(quantity),
                    unit_cost=to_decimal(unit_cost, COST_STEP) if unit_cost is not None else None,
                )
            )
            movements_out.append(
                await post_movement(
                    db=db,
                    user=user,
                    ingredient=ingredient,
                    movement_type="delivery",
                    delta=quantity,
                    now=now,
                    unit_cost=unit_cost,
                    delivery_id=delivery.id,
                    note=f"Delivery {delivery.invoice_ref or delivery.id}",
                )
            )

        await db.commit()
        logger.info("Delivery %s received with %d item(s)", delivery.id, len(resolved))
        return {
            "id": delivery.id,
            "delivered_at": delivery.delivered_at.isoformat(),
            "items": [
                {
                    "ingredient_id": ingredient_id,
                    "variant_id": variant_id,
                    "quantity": float(to_decimal(quantity)),
                    "unit_cost": unit_cost,
                }
                for ingredient_id, variant_id, _, _, quantity, unit_cost in resolved
            ],
            "movements": movements_out,
        }
    except HTTPException:
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("create_delivery failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to create delivery: {e}")


@router.get("/deliveries", response_model=List[Dict])
async def list_deliveries(
    limit: int = Query(100, ge=1, le=300),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    res = await db.execute(select(DeliveryModel).order_by(DeliveryModel.delivered_at.desc()).limit(limit))
    return [d.to_schema for d in res.scalars().all()]


@router.post("/inventory/adjustments", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_adjustment(
    payload: AdjustmentCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
    clock: Clock = Depends(get_clock),
):
    require_manager(user)

    delta = float(payload.quantity_delta)
    if payload.movement_type == "waste":
        delta = -abs(delta)

    try:
        ingredients = await load_ingredients_for_update(db, [payload.ingredient_id])
        ingredient = ingredients.get(payload.ingredient_id)
        if not ingredient:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ingredient not found")

        if float(ingredient.current_stock or 0) + delta < -STOCK_EPSILON:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Adjustment would make {ingredient.name} stock negative",
            )

        out = await post_movement(
            db=db,
            user=user,
            ingredient=ingredient,
            movement_type=payload.movement_type,
            delta=delta,
            now=clock.now(),
            note=(payload.note or "").strip() or None,
        )
        await db.commit()
        return out
    except HTTPException:
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("create_adjustment failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to create adjustment: {e}")


@router.get("/inventory/movements", response_model=List[Dict])
async def list_movements(
    ingredient_id: Optional[UUID] = None,
    movement_type: Optional[str] = None,
    session_id: Optional[UUID] = None,
    issue_id: Optional[UUID] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    limit: int = Query(200, ge=1, le=1000),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    require_manager(user)

    stmt = select(InventoryMovementModel)
    if ingredient_id:
        stmt = stmt.where(InventoryMovementModel.ingredient_id == ingredient_id)
    if movement_type:
        stmt = stmt.where(InventoryMovementModel.movement_type == movement_type)
    if session_id:
        stmt = stmt.where(InventoryMovementModel.session_id == session_id)
    if issue_id:
        stmt = stmt.where(InventoryMovementModel.issue_id == issue_id)
    if from_date:
        stmt = stmt.where(InventoryMovementModel.created_at >= datetime.combine(from_date, time.min))
    if to_date:
        end_excl = datetime.combine(to_date, time.min) + timedelta(days=1)
        stmt = stmt.where(InventoryMovementModel.created_at < end_excl)

    stmt = stmt.order_by(InventoryMovementModel.created_at.desc()).limit(limit)
    res = await db.execute(stmt)
    return [serialize_movement(mv) for mv in res.scalars().all()]
