import uuid
from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base


class Delivery(Base):
    __tablename__ = "open_bar_deliveries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    supplier_name = Column(String, nullable=True)
    invoice_ref = Column(String, nullable=True)
    delivered_at = Column(DateTime, nullable=False, index=True)
    notes = Column(Text, nullable=True)
    created_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    items = relationship("DeliveryItem", back_populates="delivery", cascade="all, delete-orphan", lazy="selectin")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "supplier_name": self.supplier_name,
            "invoice_ref": self.invoice_ref,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "items": [item.to_schema for item in self.items],
        }


class DeliveryItem(Base):
    __tablename__ = "open_bar_delivery_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    delivery_id = Column(Uuid, ForeignKey("open_bar_deliveries.id", ondelete="CASCADE"), nullable=False, index=True)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_id = Column(Uuid, ForeignKey("ingredient_variants.id", ondelete="SET NULL"), nullable=True)
    purchase_units = Column(Numeric(14, 4), nullable=True)
    purchase_unit_cost = Column(Numeric(14, 6), nullable=True)
    quantity = Column(Numeric(14, 4), nullable=False)  # base units added to stock
    unit_cost = Column(Numeric(14, 6), nullable=True)  # per base unit

    delivery = relationship("Delivery", back_populates="items")
    ingredient = relationship("Ingredient", lazy="selectin")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient.name if self.ingredient else None,
            "variant_id": self.variant_id,
            "purchase_units": float(self.purchase_units) if self.purchase_units is not None else None,
            "purchase_unit_cost": float(self.purchase_unit_cost) if self.purchase_unit_cost is not None else None,
            "quantity": float(self.quantity),
            "unit_cost": float(self.unit_cost) if self.unit_cost is not None else None,
        }
