"""Approval chain configuration model.

A chain is a named approval policy for one operation type. Chains form a
directed graph through ``escalation_chain_id``; the graph is kept acyclic
by the chain registry at configuration time.
"""

import uuid
from sqlalchemy import CheckConstraint, Column, String, DateTime, JSON, Boolean, ForeignKey, Integer, Numeric, Text, Uuid, Index
from sqlalchemy.orm import relationship

from tradeguard.core.clock import utcnow
from tradeguard.core.roles import RoleSet
from tradeguard.db.base import Base


class ApprovalChain(Base):
    __tablename__ = "approval_chains"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    operation_type = Column(String(50), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Resolution ordering (higher wins)
    priority = Column(Integer, nullable=False, default=0, index=True)

    # Quorum
    min_approvers = Column(Integer, nullable=False, default=1)
    require_all_approvers = Column(Boolean, nullable=False, default=False)
    approver_roles = Column(JSON, nullable=False, default=list)

    # Trigger conditions
    amount_threshold = Column(Numeric(12, 2), nullable=True)
    role_restrictions = Column(JSON, nullable=False, default=list)
    conditions_json = Column(JSON, nullable=True)

    # Timing
    auto_approve_after_hours = Column(Integer, nullable=True)
    escalate_after_hours = Column(Integer, nullable=True)
    escalation_chain_id = Column(Uuid, ForeignKey("approval_chains.id", ondelete="SET NULL"), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    escalation_chain = relationship("ApprovalChain", remote_side=[id])
    requests = relationship("ApprovalRequest", back_populates="chain")

    __table_args__ = (
        Index("ix_approval_chains_operation_active", "operation_type", "is_active"),
        CheckConstraint("min_approvers >= 1", name="ck_approval_chains_min_approvers"),
    )

    @property
    def approver_role_set(self) -> RoleSet:
        return RoleSet(self.approver_roles or [])

    @property
    def role_restriction_set(self) -> RoleSet:
        return RoleSet(self.role_restrictions or [])

    def __repr__(self) -> str:
        return f"<ApprovalChain {self.name} ({self.operation_type}) p={self.priority}>"
