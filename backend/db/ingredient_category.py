import uuid
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base


class IngredientCategory(Base):
    """Grouping used by category_selector recipe lines (e.g. Gin, Tonic)."""
    __tablename__ = "ingredient_categories"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, unique=True)
    sort_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    ingredients = relationship("Ingredient", back_populates="category")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "name": self.name,
            "sort_order": self.sort_order,
            "is_active": bool(self.is_active),
        }
