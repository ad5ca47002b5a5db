import uuid
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Uuid
from sqlalchemy.sql import func
from .database import Base


class SessionType(Base):
    __tablename__ = "open_bar_session_types"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, unique=True)
    default_time_limit_minutes = Column(Integer, nullable=False, default=60)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "name": self.name,
            "default_time_limit_minutes": self.default_time_limit_minutes,
            "is_active": bool(self.is_active),
            "sort_order": self.sort_order,
        }
