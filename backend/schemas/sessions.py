from datetime import date
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator


SessionStatus = Literal["draft", "active", "closed"]


class SessionTypeCreate(BaseModel):
    name: str
    default_time_limit_minutes: int = 60
    sort_order: int = 0

    @field_validator("name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("field is required")
        return v

    @field_validator("default_time_limit_minutes")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("default_time_limit_minutes must be > 0")
        return v


class SessionTypeUpdate(BaseModel):
    name: Optional[str] = None
    default_time_limit_minutes: Optional[int] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None

    @field_validator("default_time_limit_minutes")
    @classmethod
    def _positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("default_time_limit_minutes must be > 0")
        return v


class VenueCreate(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("field is required")
        return v


class SessionCreate(BaseModel):
    session_type_id: UUID
    name: Optional[str] = None
    business_date: Optional[date] = None
    venue_id: Optional[UUID] = None
    notes: Optional[str] = None
    # "active" is the launch flow, "draft" needs an explicit start
    status: Literal["draft", "active"] = "active"


class ReconciliationLine(BaseModel):
    ingredient_id: UUID
    counted_stock: float

    @field_validator("counted_stock")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("counted_stock cannot be negative")
        return v


class SessionClose(BaseModel):
    reconciliation: Optional[List[ReconciliationLine]] = None
