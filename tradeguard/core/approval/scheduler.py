"""Escalation and auto-approval sweep.

Time-based transitions have no triggering caller, so a periodic sweep
fires them. Each request is handled in its own transaction through the
service's optimistic version check: if another sweeper already moved a
request, the re-read state no longer qualifies and the request is skipped.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tradeguard.core.audit import AuditContext
from tradeguard.core.clock import utcnow
from tradeguard.core.errors import ApprovalEngineError
from tradeguard.db.models.approval import ApprovalRequest
from tradeguard.db.models.chain import ApprovalChain

from .machine import ApprovalStateMachine, TransitionOutcome
from .service import OPEN_STATUS_VALUES, ApprovalService
from .states import ApprovalTransition

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Counts from one sweep."""
    scanned: int = 0
    auto_approved: List[str] = field(default_factory=list)
    escalated: List[str] = field(default_factory=list)
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "auto_approved": len(self.auto_approved),
            "escalated": len(self.escalated),
            "skipped": self.skipped,
            "errors": len(self.errors),
        }


class ApprovalScheduler:
    """
    Periodic sweep over open approval requests.

    Auto-approval takes precedence over escalation when both are due.
    """

    def __init__(self, db: Session, service: Optional[ApprovalService] = None):
        self.db = db
        self.service = service or ApprovalService(db)
        self.batch_size = max(1, self.service.settings.scheduler_batch_size)

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Fire due auto-approvals and escalations.

        Args:
            now: Sweep time (defaults to the current UTC time)
        """
        now = now or utcnow()
        result = SweepResult()

        for request_id in self._candidate_ids(now):
            result.scanned += 1
            try:
                outcome = self._process(request_id, now)
            except ApprovalEngineError as e:
                logger.error("Sweep failed for approval request %s: %s", request_id, e)
                result.errors.append(str(request_id))
                continue

            if outcome is None:
                result.skipped += 1
            elif outcome.transition == ApprovalTransition.AUTO_APPROVE:
                result.auto_approved.append(str(request_id))
            elif outcome.transition == ApprovalTransition.ESCALATE:
                result.escalated.append(str(request_id))

        if result.auto_approved or result.escalated or result.errors:
            logger.info(
                "Approval sweep: scanned=%d auto_approved=%d escalated=%d errors=%d",
                result.scanned, len(result.auto_approved), len(result.escalated), len(result.errors),
            )
        return result

    def _candidate_ids(self, now: datetime) -> Iterator[uuid.UUID]:
        """
        Open requests that may be due, in id order, one page at a time.

        A request qualifies when its auto-approval deadline has passed or its
        current chain escalates somewhere; the escalation clock itself is
        checked per request. Keyset paging lets later pages be reached even
        when earlier requests are never transitioned.
        """
        query = (
            self.db.query(ApprovalRequest.id)
            .join(ApprovalChain, ApprovalRequest.chain_id == ApprovalChain.id)
            .filter(ApprovalRequest.status.in_(OPEN_STATUS_VALUES))
            .filter(
                or_(
                    ApprovalRequest.auto_approval_at <= now,
                    ApprovalChain.escalation_chain_id.isnot(None),
                )
            )
        )
        last_id = None
        while True:
            page = query if last_id is None else query.filter(ApprovalRequest.id > last_id)
            ids = [request_id for (request_id,) in page.order_by(ApprovalRequest.id).limit(self.batch_size).all()]
            self.db.rollback()
            yield from ids
            if len(ids) < self.batch_size:
                return
            last_id = ids[-1]

    def _process(self, request_id: uuid.UUID, now: datetime) -> Optional[TransitionOutcome]:
        def apply(machine: ApprovalStateMachine) -> Optional[TransitionOutcome]:
            if machine.due_for_auto_approval():
                return machine.auto_approve()
            if machine.due_for_escalation():
                target = self._escalation_target(machine.chain)
                if target is None:
                    return None
                eligible = 0
                if target.require_all_approvers:
                    eligible = len(
                        self.service.eligible_approver_ids(target, exclude=machine.request.requested_by)
                    )
                return machine.escalate(target, eligible_approver_count=eligible)
            return None

        _, outcome = self.service.transition(
            request_id, apply, actor=AuditContext.system(), now=now,
        )
        return outcome

    def _escalation_target(self, chain: ApprovalChain) -> Optional[ApprovalChain]:
        target = self.db.get(ApprovalChain, chain.escalation_chain_id)
        if target is None or not target.is_active:
            logger.warning(
                "Chain %s escalates to missing or inactive chain %s; not escalating",
                chain.name, chain.escalation_chain_id,
            )
            return None
        return target
