import uuid
from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import relationship
from .database import Base


class RecipeLine(Base):
    """One requirement of a recipe: a fixed ingredient or a category picked at service time."""
    __tablename__ = "recipe_lines"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    recipe_id = Column(Uuid, ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True)
    line_type = Column(String, nullable=False)  # 'fixed_ingredient' | 'category_selector'
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id", ondelete="RESTRICT"), nullable=True, index=True)
    category_id = Column(Uuid, ForeignKey("ingredient_categories.id", ondelete="RESTRICT"), nullable=True, index=True)
    quantity = Column(Numeric(10, 3), nullable=False, default=0)  # per serving, in the ingredient base unit
    is_optional = Column(Boolean, nullable=False, default=False)
    affects_strength = Column(Boolean, nullable=False, default=False)
    is_top_up = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)

    recipe = relationship("Recipe", back_populates="lines")
    ingredient = relationship("Ingredient", lazy="selectin")
    category = relationship("IngredientCategory", lazy="selectin")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "line_type": self.line_type,
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient.name if self.ingredient else None,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "base_unit": self.ingredient.base_unit if self.ingredient else None,
            "quantity": float(self.quantity or 0),
            "is_optional": bool(self.is_optional),
            "affects_strength": bool(self.affects_strength),
            "is_top_up": bool(self.is_top_up),
            "sort_order": self.sort_order,
        }
