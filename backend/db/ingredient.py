import uuid
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base


def _num(value):
    return float(value) if value is not None else None


class Ingredient(Base):
    """Stock-keeping ingredient. Stock is kept in the base unit ('ml' or 'unit')."""
    __tablename__ = "ingredients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, unique=True)
    category_id = Column(Uuid, ForeignKey("ingredient_categories.id", ondelete="SET NULL"), nullable=True, index=True)
    base_unit = Column(String, nullable=False, default="ml")  # 'ml' | 'unit'

    # Materialized sum of inventory_movements.quantity_delta for this ingredient
    current_stock = Column(Numeric(14, 4), nullable=False, default=0)
    par_level = Column(Numeric(14, 4), nullable=True)
    reorder_level = Column(Numeric(14, 4), nullable=True)
    cost_per_unit = Column(Numeric(14, 6), nullable=True)

    is_cup = Column(Boolean, nullable=False, default=False)
    is_ice = Column(Boolean, nullable=False, default=False)
    cup_type = Column(String, nullable=True)  # 'disposable' | 'reusable'
    cup_capacity_ml = Column(Numeric(10, 2), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    category = relationship("IngredientCategory", back_populates="ingredients", lazy="selectin")
    variants = relationship(
        "IngredientVariant",
        back_populates="ingredient",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def to_schema(self):
        """Convert Ingredient model to schema dictionary format"""
        stock = _num(self.current_stock) or 0.0
        par = _num(self.par_level)
        reorder = _num(self.reorder_level)
        return {
            "id": self.id,
            "name": self.name,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "base_unit": self.base_unit,
            "current_stock": stock,
            "par_level": par,
            "reorder_level": reorder,
            "needed_to_par": max(par - stock, 0.0) if par is not None else None,
            "below_reorder": reorder is not None and stock <= reorder,
            "cost_per_unit": _num(self.cost_per_unit),
            "is_cup": bool(self.is_cup),
            "is_ice": bool(self.is_ice),
            "cup_type": self.cup_type,
            "cup_capacity_ml": _num(self.cup_capacity_ml),
            "is_active": bool(self.is_active),
            "notes": self.notes,
        }
