import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ingredient_id = Column(
        Uuid,
        ForeignKey("ingredients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # delivery | adjustment | waste | correction | issue | issue_reversal
    movement_type = Column(String, nullable=False, index=True)
    quantity_delta = Column(Numeric(14, 4), nullable=False)
    unit_cost = Column(Numeric(14, 6), nullable=True)
    note = Column(Text, nullable=True)

    # Source references, no FKs: rows outlive the issue they came from
    delivery_id = Column(Uuid, nullable=True, index=True)
    session_id = Column(Uuid, nullable=True, index=True)
    issue_id = Column(Uuid, nullable=True, index=True)

    is_reversal = Column(Boolean, nullable=False, default=False)
    is_reversed = Column(Boolean, nullable=False, default=False)
    reversal_of_id = Column(Uuid, ForeignKey("inventory_movements.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    created_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    ingredient = relationship("Ingredient", lazy="selectin")
