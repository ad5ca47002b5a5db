import uuid
from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base


class OpenBarSession(Base):
    """One bartender-service window. status: draft -> active -> closed."""
    __tablename__ = "open_bar_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    business_date = Column(Date, nullable=False, index=True)
    venue_id = Column(Uuid, ForeignKey("venues.id", ondelete="SET NULL"), nullable=True, index=True)
    session_type_id = Column(Uuid, ForeignKey("open_bar_session_types.id", ondelete="SET NULL"), nullable=True)
    status = Column(String, nullable=False, default="draft", index=True)
    time_limit_minutes = Column(Integer, nullable=False, default=60)
    notes = Column(Text, nullable=True)

    opened_at = Column(DateTime, nullable=True)
    expected_end_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    created_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    venue = relationship("Venue", lazy="selectin")
    session_type = relationship("SessionType", lazy="selectin")


class SessionMember(Base):
    __tablename__ = "open_bar_session_members"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("open_bar_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(DateTime, nullable=False)
    left_at = Column(DateTime, nullable=True)

    user = relationship("User", lazy="selectin")
