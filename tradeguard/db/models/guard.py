import uuid
from sqlalchemy import Column, String, DateTime, JSON, Boolean, Numeric, Text, Uuid

from tradeguard.core.clock import utcnow
from tradeguard.core.roles import RoleSet
from tradeguard.db.base import Base


class ApprovalGuard(Base):
    """Per-operation-type safety policy evaluated before any chain lookup."""
    __tablename__ = "approval_guards"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    operation_type = Column(String(50), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    is_enabled = Column(Boolean, nullable=False, default=True, index=True)
    amount_threshold = Column(Numeric(12, 2), nullable=True)
    role_exceptions = Column(JSON, nullable=False, default=list)

    block_if_no_approver = Column(Boolean, nullable=False, default=True)
    allow_emergency_override = Column(Boolean, nullable=False, default=False)
    emergency_override_roles = Column(JSON, nullable=False, default=list)

    notify_on_bypass = Column(Boolean, nullable=False, default=True)
    audit_all_attempts = Column(Boolean, nullable=False, default=True)

    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def role_exception_set(self) -> RoleSet:
        return RoleSet(self.role_exceptions or [])

    @property
    def emergency_override_role_set(self) -> RoleSet:
        return RoleSet(self.emergency_override_roles or [])

    def __repr__(self) -> str:
        return f"<ApprovalGuard {self.name} ({self.operation_type})>"
