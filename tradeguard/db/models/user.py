from sqlalchemy import Column, String, DateTime, Boolean

from tradeguard.core.clock import utcnow
from tradeguard.db.base import Base


class User(Base):
    """Application user as seen by the approval engine.

    Identity is owned by the surrounding application; only the role and
    active flag matter here.
    """
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    role = Column(String(50), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<User {self.id} [{self.role}]>"
