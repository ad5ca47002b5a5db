from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


Strength = Literal["single", "double"]

MAX_SERVINGS_PER_ISSUE = 1000


class CategorySelection(BaseModel):
    recipe_line_id: UUID
    ingredient_id: UUID


class DrinkIssueCreate(BaseModel):
    session_id: UUID
    recipe_id: UUID
    servings: int = Field(1, ge=1, le=MAX_SERVINGS_PER_ISSUE)
    # Omitted when the recipe did not ask for strength at commit time
    strength: Optional[Strength] = None
    # Omitted means "use the recipe's has_ice"
    include_ice: Optional[bool] = None
    is_staff_drink: bool = False
    category_selections: List[CategorySelection] = []
    allow_inactive_session: bool = False
    # Commit time on the terminal; queued drinks arrive later
    issued_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)
    # Queue id of the drink, so a resent submission is applied once
    client_ref: Optional[str] = Field(None, min_length=1, max_length=64)
