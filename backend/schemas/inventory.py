from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator, model_validator


AdjustmentType = Literal["adjustment", "waste", "correction"]


class DeliveryItemInput(BaseModel):
    # Variant mode: variant_id + purchase_units (+ purchase_unit_cost)
    variant_id: Optional[UUID] = None
    purchase_units: Optional[float] = None
    purchase_unit_cost: Optional[float] = None
    # Ingredient mode: ingredient_id + quantity in base units (+ unit_cost)
    ingredient_id: Optional[UUID] = None
    quantity: Optional[float] = None
    unit_cost: Optional[float] = None

    @model_validator(mode="after")
    def _validate_mode(self):
        if self.variant_id:
            if self.ingredient_id or self.quantity is not None:
                raise ValueError("Variant items cannot also carry ingredient_id/quantity")
            if self.purchase_units is None or self.purchase_units <= 0:
                raise ValueError("purchase_units must be > 0")
            if self.purchase_unit_cost is not None and self.purchase_unit_cost < 0:
                raise ValueError("purchase_unit_cost cannot be negative")
        elif self.ingredient_id:
            if self.quantity is None or self.quantity <= 0:
                raise ValueError("quantity must be > 0")
            if self.unit_cost is not None and self.unit_cost < 0:
                raise ValueError("unit_cost cannot be negative")
        else:
            raise ValueError("Each item needs variant_id or ingredient_id")
        return self


class DeliveryCreate(BaseModel):
    supplier_name: Optional[str] = None
    invoice_ref: Optional[str] = None
    delivered_at: Optional[datetime] = None
    notes: Optional[str] = None
    items: List[DeliveryItemInput]

    @field_validator("items")
    @classmethod
    def _non_empty(cls, v: List[DeliveryItemInput]) -> List[DeliveryItemInput]:
        if not v:
            raise ValueError("A delivery needs at least one item")
        return v


class AdjustmentCreate(BaseModel):
    ingredient_id: UUID
    movement_type: AdjustmentType = "adjustment"
    quantity_delta: float
    note: Optional[str] = None

    @field_validator("quantity_delta")
    @classmethod
    def _non_zero(cls, v: float) -> float:
        if v == 0:
            raise ValueError("quantity_delta cannot be 0")
        return v
