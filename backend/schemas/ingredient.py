from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator, model_validator


BaseUnit = Literal["ml", "unit"]
CupType = Literal["disposable", "reusable"]


def _strip(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    if not v:
        raise ValueError("cannot be empty")
    return v


class IngredientCreate(BaseModel):
    name: str
    category_id: Optional[UUID] = None
    base_unit: BaseUnit = "ml"
    par_level: Optional[float] = None
    reorder_level: Optional[float] = None
    cost_per_unit: Optional[float] = None
    is_cup: bool = False
    is_ice: bool = False
    cup_type: Optional[CupType] = None
    cup_capacity_ml: Optional[float] = None
    notes: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        return _strip(v or "")

    @model_validator(mode="after")
    def _validate_cup(self):
        if self.is_cup and self.is_ice:
            raise ValueError("An ingredient cannot be both a cup and ice")
        if self.is_cup:
            if self.base_unit != "unit":
                raise ValueError("Cup ingredients must use base unit 'unit'")
            if self.cup_capacity_ml is None or self.cup_capacity_ml <= 0:
                raise ValueError("Cup ingredients require cup_capacity_ml > 0")
        else:
            self.cup_type = None
            self.cup_capacity_ml = None
        return self


class IngredientUpdate(BaseModel):
    name: Optional[str] = None
    category_id: Optional[UUID] = None
    base_unit: Optional[BaseUnit] = None
    par_level: Optional[float] = None
    reorder_level: Optional[float] = None
    cost_per_unit: Optional[float] = None
    is_cup: Optional[bool] = None
    is_ice: Optional[bool] = None
    cup_type: Optional[CupType] = None
    cup_capacity_ml: Optional[float] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _strip_optional(cls, v: Optional[str]) -> Optional[str]:
        return _strip(v)


class CategoryCreate(BaseModel):
    name: str
    sort_order: int = 0

    @field_validator("name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        return _strip(v or "")


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def _strip_optional(cls, v: Optional[str]) -> Optional[str]:
        return _strip(v)


class VariantCreate(BaseModel):
    ingredient_id: UUID
    name: str
    brand: Optional[str] = None
    package_label: Optional[str] = None
    base_quantity: float

    @field_validator("name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        return _strip(v or "")

    @field_validator("base_quantity")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("base_quantity must be > 0")
        return v


class VariantUpdate(BaseModel):
    name: Optional[str] = None
    brand: Optional[str] = None
    package_label: Optional[str] = None
    base_quantity: Optional[float] = None
    is_active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def _strip_optional(cls, v: Optional[str]) -> Optional[str]:
        return _strip(v)

    @field_validator("base_quantity")
    @classmethod
    def _positive(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("base_quantity must be > 0")
        return v
