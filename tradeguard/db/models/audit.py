"""Audit log model for TradeGuard.

This table is IMMUTABLE - ORM hooks and database triggers prevent UPDATE
and DELETE operations. Entries carry a checksum that chains them to the
previous entry with the same correlation id; corrections are new rows
pointing at the original through ``parent_audit_id``.
"""

import uuid
from enum import Enum
from sqlalchemy import Column, String, DateTime, JSON, Integer, Text, Uuid, ForeignKey, Index, UniqueConstraint, event

from tradeguard.core.clock import utcnow
from tradeguard.core.errors import IntegrityError
from tradeguard.db.base import Base


class AuditAction(str, Enum):
    """Actions recorded in the audit log."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    VIEW = "view"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    ESCALATE = "escalate"
    AUTO_APPROVE = "auto_approve"
    CONSUME = "consume"
    GUARD_EVALUATE = "guard_evaluate"
    GUARD_BYPASS = "guard_bypass"
    GUARD_BLOCK = "guard_block"
    CORRECT = "correct"
    EXPORT = "export"
    LOGIN = "login"
    LOGOUT = "logout"


class RiskLevel(str, Enum):
    """Impact assessment of an audited action."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditSource(str, Enum):
    """Where the audited action originated."""
    APPLICATION = "application"
    API = "api"
    ADMIN = "admin"
    SYSTEM = "system"


class AuditLog(Base):
    """
    Immutable, checksummed audit log entry.

    Records every significant action in the system, not only approval
    transitions; external callers append through AuditLogService.
    """
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Action details
    action = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(100), nullable=True)
    description = Column(Text, nullable=False)

    # Actor information
    user_id = Column(String(64), nullable=True, index=True)
    user_name = Column(String(255), nullable=True)
    user_role = Column(String(50), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    session_id = Column(String(128), nullable=True)

    # Change tracking
    previous_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    business_context = Column(JSON, nullable=True)

    # Impact
    risk_level = Column(String(20), nullable=False, default=RiskLevel.MEDIUM.value, index=True)
    compliance_flags = Column(JSON, nullable=False, default=list)

    # Linking
    source = Column(String(20), nullable=False, default=AuditSource.APPLICATION.value)
    correlation_id = Column(String(64), nullable=True, index=True)
    sequence = Column(Integer, nullable=True)
    parent_audit_id = Column(Uuid, ForeignKey("audit_logs.id"), nullable=True)

    # Integrity
    checksum = Column(String(64), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        UniqueConstraint("correlation_id", "sequence", name="uq_audit_logs_correlation_sequence"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} on {self.entity_type}:{self.entity_id} by {self.user_id}>"


@event.listens_for(AuditLog, "before_update")
def _prevent_audit_update(mapper, connection, target):
    raise IntegrityError(
        f"Audit logs are immutable and cannot be updated. Record ID: {target.id}",
        correlation_id=target.correlation_id,
        audit_id=str(target.id),
    )


@event.listens_for(AuditLog, "before_delete")
def _prevent_audit_delete(mapper, connection, target):
    raise IntegrityError(
        f"Audit logs are immutable and cannot be deleted. Record ID: {target.id}",
        correlation_id=target.correlation_id,
        audit_id=str(target.id),
    )
