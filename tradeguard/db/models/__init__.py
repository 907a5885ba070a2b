"""Database models for TradeGuard."""

from tradeguard.db.models.user import User
from tradeguard.db.models.chain import ApprovalChain
from tradeguard.db.models.approval import ApprovalRequest
from tradeguard.db.models.guard import ApprovalGuard
from tradeguard.db.models.audit import AuditLog, AuditAction, AuditSource, RiskLevel

__all__ = [
    "User",
    "ApprovalChain",
    "ApprovalRequest",
    "ApprovalGuard",
    "AuditLog",
    "AuditAction",
    "AuditSource",
    "RiskLevel",
]
