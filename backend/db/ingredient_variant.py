import uuid
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base


class IngredientVariant(Base):
    """Purchasable SKU. One purchased unit yields `base_quantity` base units."""
    __tablename__ = "ingredient_variants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    brand = Column(String, nullable=True)
    package_label = Column(String, nullable=True)
    base_quantity = Column(Numeric(14, 4), nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    ingredient = relationship("Ingredient", back_populates="variants", lazy="selectin")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient.name if self.ingredient else None,
            "name": self.name,
            "brand": self.brand,
            "package_label": self.package_label,
            "base_quantity": float(self.base_quantity or 0),
            "is_active": bool(self.is_active),
        }
