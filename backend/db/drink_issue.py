import uuid
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from .database import Base


class DrinkIssue(Base):
    """Server-confirmed serving. Its stock deduction lives in inventory_movements (issue_id)."""
    __tablename__ = "open_bar_drink_issues"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("open_bar_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    recipe_id = Column(Uuid, ForeignKey("recipes.id", ondelete="SET NULL"), nullable=True, index=True)
    recipe_name = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    servings = Column(Integer, nullable=False, default=1)
    strength = Column(String, nullable=True)  # 'single' | 'double'
    include_ice = Column(Boolean, nullable=False, default=False)
    is_staff_drink = Column(Boolean, nullable=False, default=False)
    # [{"recipe_line_id": ..., "ingredient_id": ...}]
    category_selections = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    # terminal-side id of the queued drink; a replayed submission finds the same row
    client_ref = Column(String, nullable=True, unique=True, index=True)

    issued_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    issued_at = Column(DateTime, nullable=False, index=True)

    issued_by = relationship("User", lazy="selectin")
