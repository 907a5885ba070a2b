"""Approval request database model.

One row tracks one decision process for one ``(entity_type, entity_id)``
pair. At most one row per entity may be open (pending or escalated); the
partial unique index enforces this atomically at the store level.
"""

import uuid
from sqlalchemy import (
    CheckConstraint, Column, String, DateTime, JSON, Boolean, ForeignKey, Integer, Numeric, Text, Uuid, Index, text,
)
from sqlalchemy.orm import relationship

from tradeguard.core.clock import utcnow
from tradeguard.db.base import Base

OPEN_STATUS_PREDICATE = "status IN ('pending', 'escalated')"


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    request_number = Column(String(40), nullable=False, unique=True)

    # What is being approved
    operation_type = Column(String(50), nullable=False, index=True)
    chain_id = Column(Uuid, ForeignKey("approval_chains.id"), nullable=False, index=True)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(100), nullable=False)

    # Business context
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True, default="USD")
    description = Column(Text, nullable=False)
    request_data = Column(JSON, nullable=False, default=dict)  # snapshot for audit replay
    business_context = Column(JSON, nullable=True)

    # Workflow state
    status = Column(String(20), nullable=False, default="pending", index=True)
    total_required_approvals = Column(Integer, nullable=False)
    current_approvals = Column(Integer, nullable=False, default=0)
    current_approver_level = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)

    # Timing
    requested_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    escalated_at = Column(DateTime, nullable=True)
    auto_approval_at = Column(DateTime, nullable=True)

    # People
    requested_by = Column(String(64), nullable=False, index=True)
    requester_role = Column(String(50), nullable=True)
    final_approved_by = Column(String(64), nullable=True)
    final_rejected_by = Column(String(64), nullable=True)
    cancelled_by = Column(String(64), nullable=True)

    # Decision trail
    approval_history = Column(JSON, nullable=False, default=list)
    rejection_reason = Column(Text, nullable=True)
    escalation_reason = Column(Text, nullable=True)

    # Single-use consumption by the protected operation
    is_consumed = Column(Boolean, nullable=False, default=False)
    consumed_at = Column(DateTime, nullable=True)
    consumed_by = Column(String(64), nullable=True)
    consumed_operation_id = Column(String(100), nullable=True)
    operation_checksum = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    chain = relationship("ApprovalChain", back_populates="requests")

    __table_args__ = (
        Index("ix_approval_requests_entity", "entity_type", "entity_id"),
        Index(
            "uq_approval_requests_open_entity",
            "entity_type",
            "entity_id",
            unique=True,
            postgresql_where=text(OPEN_STATUS_PREDICATE),
            sqlite_where=text(OPEN_STATUS_PREDICATE),
        ),
        CheckConstraint(
            "current_approvals >= 0 AND current_approvals <= total_required_approvals",
            name="ck_approval_requests_approval_count",
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<ApprovalRequest {self.request_number} {self.entity_type}:{self.entity_id} [{self.status}]>"
