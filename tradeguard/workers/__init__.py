"""Celery workers for TradeGuard."""

from tradeguard.workers.approval_tasks import (
    celery_app,
    sweep_approvals,
    verify_audit_chain,
)

__all__ = [
    "celery_app",
    "sweep_approvals",
    "verify_audit_chain",
]
