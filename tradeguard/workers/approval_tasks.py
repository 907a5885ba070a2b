"""Celery tasks for time-driven approval transitions.

Provides:
- Periodic escalation / auto-approval sweep (beat schedule)
- On-demand audit chain verification
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from celery import Celery, shared_task

from tradeguard.core.approval import ApprovalScheduler, ApprovalService
from tradeguard.core.audit import AuditLogService
from tradeguard.core.config import get_settings
from tradeguard.db.session import SessionLocal
from tradeguard.services.notifications import get_event_bus

logger = logging.getLogger(__name__)
settings = get_settings()

celery_app = Celery(
    'tradeguard',
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_routes={
        'tradeguard.workers.approval_tasks.sweep_approvals': {'queue': 'approvals'},
        'tradeguard.workers.approval_tasks.verify_audit_chain': {'queue': 'audit'},
    },
    task_default_queue='default',
    beat_schedule={
        'sweep-approvals': {
            'task': 'tradeguard.workers.approval_tasks.sweep_approvals',
            'schedule': float(settings.scheduler_interval_seconds),
        },
    },
)


@shared_task(name='tradeguard.workers.approval_tasks.sweep_approvals')
def sweep_approvals(now: Optional[str] = None) -> Dict[str, Any]:
    """
    Run one escalation / auto-approval sweep.

    Args:
        now: ISO timestamp to sweep as of (defaults to the current time)

    Returns:
        Sweep counts
    """
    db = SessionLocal()
    try:
        service = ApprovalService(db, event_bus=get_event_bus(), settings=settings)
        scheduler = ApprovalScheduler(db, service)
        result = scheduler.sweep(datetime.fromisoformat(now) if now else None)
        return result.to_dict()
    except Exception as e:
        logger.exception(f"Approval sweep failed: {e}")
        raise
    finally:
        db.close()


@shared_task(name='tradeguard.workers.approval_tasks.verify_audit_chain')
def verify_audit_chain(correlation_id: str) -> Dict[str, Any]:
    """Recompute the checksum chain for one correlation id."""
    db = SessionLocal()
    try:
        audit = AuditLogService(db, event_bus=get_event_bus())
        return audit.verify(correlation_id).to_dict()
    finally:
        db.close()
