import uuid
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base

from core.volume import (
    RecipeLineSpec,
    available_liquid_capacity_ml,
    compute_line_quantities,
    estimated_cost_per_serving,
    ice_displacement_ml,
    resolve_ice_cubes,
)


class Recipe(Base):
    __tablename__ = "recipes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, unique=True)
    drink_type = Column(String, nullable=False, default="cocktail")  # classic|cocktail|beer|soft|custom
    cup_ingredient_id = Column(Uuid, ForeignKey("ingredients.id", ondelete="SET NULL"), nullable=True, index=True)
    has_ice = Column(Boolean, nullable=False, default=False)
    ice_cubes = Column(Integer, nullable=True)
    ask_strength = Column(Boolean, nullable=False, default=False)
    label_display_mode = Column(String, nullable=False, default="recipe_name")
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    cup_ingredient = relationship("Ingredient", lazy="selectin")
    lines = relationship(
        "RecipeLine",
        back_populates="recipe",
        cascade="all, delete-orphan",
        order_by="RecipeLine.sort_order",
        lazy="selectin",
    )

    @property
    def cup_capacity_ml(self):
        cup = self.cup_ingredient
        if cup is None or cup.cup_capacity_ml is None:
            return None
        return float(cup.cup_capacity_ml)

    @property
    def line_specs(self):
        return [RecipeLineSpec.from_row(line) for line in self.lines]

    @property
    def to_schema(self):
        """Recipe with lines and the derived capacity numbers used by bar terminals."""
        capacity = available_liquid_capacity_ml(self.cup_capacity_ml, bool(self.has_ice), self.ice_cubes)
        quantities = compute_line_quantities(self.line_specs, capacity_ml=capacity)
        cost_items = [
            (quantities.get(line.id, 0.0), float(line.ingredient.cost_per_unit))
            for line in self.lines
            if line.ingredient is not None and line.ingredient.cost_per_unit is not None
        ]
        if self.cup_ingredient is not None and self.cup_ingredient.cost_per_unit is not None:
            cost_items.append((1.0, float(self.cup_ingredient.cost_per_unit)))
        return {
            "id": self.id,
            "name": self.name,
            "drink_type": self.drink_type,
            "cup_ingredient_id": self.cup_ingredient_id,
            "cup_name": self.cup_ingredient.name if self.cup_ingredient else None,
            "cup_capacity_ml": self.cup_capacity_ml,
            "has_ice": bool(self.has_ice),
            "ice_cubes": resolve_ice_cubes(bool(self.has_ice), self.ice_cubes),
            "ask_strength": bool(self.ask_strength),
            "label_display_mode": self.label_display_mode,
            "is_active": bool(self.is_active),
            "sort_order": self.sort_order,
            "ice_displacement_ml": ice_displacement_ml(bool(self.has_ice), self.ice_cubes),
            "available_liquid_capacity_ml": capacity,
            "estimated_cost_per_serving": estimated_cost_per_serving(cost_items),
            "lines": [line.to_schema for line in self.lines],
        }
