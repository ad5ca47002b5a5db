from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator, model_validator


DrinkType = Literal["classic", "cocktail", "beer", "soft", "custom"]
LabelDisplayMode = Literal["recipe_name", "recipe_with_ingredients", "ingredients_only"]
LineType = Literal["fixed_ingredient", "category_selector"]


class RecipeLineInput(BaseModel):
    line_type: LineType
    ingredient_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    quantity: float = 0
    is_optional: bool = False
    affects_strength: bool = False
    is_top_up: bool = False

    @model_validator(mode="after")
    def _validate_line(self):
        if self.line_type == "fixed_ingredient":
            if not self.ingredient_id or self.category_id:
                raise ValueError("fixed_ingredient lines require ingredient_id and no category_id")
            if self.is_top_up:
                raise ValueError("Top-up lines must be category selectors")
        else:
            if not self.category_id or self.ingredient_id:
                raise ValueError("category_selector lines require category_id and no ingredient_id")
        if self.is_top_up:
            if self.quantity != 0:
                raise ValueError("Top-up lines carry no fixed quantity")
            if self.affects_strength:
                raise ValueError("Top-up lines cannot affect strength")
        elif self.quantity <= 0:
            raise ValueError("Line quantity must be > 0")
        return self


class RecipeCreate(BaseModel):
    name: str
    drink_type: DrinkType = "cocktail"
    cup_ingredient_id: Optional[UUID] = None
    has_ice: bool = False
    ice_cubes: Optional[int] = None
    ask_strength: bool = False
    label_display_mode: Optional[LabelDisplayMode] = None
    sort_order: int = 0
    lines: List[RecipeLineInput]

    @field_validator("name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("field is required")
        return v

    @model_validator(mode="after")
    def _validate_ice(self):
        if not self.lines:
            raise ValueError("A recipe needs at least one line")
        if self.has_ice and (self.ice_cubes is None or self.ice_cubes <= 0):
            raise ValueError("ice_cubes must be > 0 when has_ice is set")
        if not self.has_ice:
            self.ice_cubes = None
        return self


class RecipeUpdate(RecipeCreate):
    """Full replacement, lines included."""
    is_active: bool = True
