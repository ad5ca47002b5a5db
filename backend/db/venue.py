import uuid
from sqlalchemy import Boolean, Column, DateTime, String, Uuid
from sqlalchemy.sql import func
from .database import Base


class Venue(Base):
    __tablename__ = "venues"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    @property
    def to_schema(self):
        return {"id": self.id, "name": self.name, "is_active": bool(self.is_active)}
