"""Approval request state machine.

Applies approve/reject/cancel/escalate/auto-approve to an ``ApprovalRequest``
row in memory, enforcing the transition graph, approver eligibility, quorum
and unanimity rules. It never touches the session; persistence, retries and
audit logging are the service's job.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set

from tradeguard.core.clock import utcnow
from tradeguard.core.errors import AuthorizationError, StateError, ValidationError
from tradeguard.core.roles import ADMIN_ROLES, Role, RoleSet
from tradeguard.db.models.approval import ApprovalRequest
from tradeguard.db.models.chain import ApprovalChain

from .states import (
    ApprovalStatus,
    ApprovalTransition,
    TERMINAL_STATES,
    can_transition,
    get_transition_rule,
)

SYSTEM_ACTOR = "system"

# History actions that are not credited approvals
DUPLICATE_APPROVAL = "duplicate_approve"


@dataclass
class TransitionOutcome:
    """What an operation did to the request."""
    action: str
    from_status: ApprovalStatus
    to_status: ApprovalStatus
    transition: Optional[ApprovalTransition] = None  # None when the status did not change
    counted: bool = False
    history_entry: Dict[str, Any] = field(default_factory=dict)

    @property
    def resolved(self) -> bool:
        return self.to_status in TERMINAL_STATES and self.from_status not in TERMINAL_STATES


def eligible_roles(chain: ApprovalChain) -> RoleSet:
    """Roles that may approve or reject under a chain."""
    return chain.approver_role_set or ADMIN_ROLES


def auto_approval_deadline(chain: ApprovalChain, start: datetime) -> Optional[datetime]:
    if not chain.auto_approve_after_hours:
        return None
    return start + timedelta(hours=chain.auto_approve_after_hours)


class ApprovalStateMachine:
    """
    Rules for one approval request under its current chain.

    ``current_approver_level`` starts at 0 and is incremented by each
    escalation. Approvals are credited per approver per level, so an
    approver who approved before an escalation may approve again under the
    escalation chain.
    """

    def __init__(self, request: ApprovalRequest, chain: ApprovalChain, *, now: Optional[datetime] = None):
        self.request = request
        self.chain = chain
        self.now = now or utcnow()

    @property
    def status(self) -> ApprovalStatus:
        return ApprovalStatus(self.request.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def level(self) -> int:
        return self.request.current_approver_level or 0

    def can_perform(self, transition: ApprovalTransition) -> bool:
        return can_transition(self.status, transition)

    def approvers_at_level(self) -> Set[str]:
        """Distinct approvers credited at the current level."""
        return {
            entry["actor"]
            for entry in self.request.approval_history or []
            if entry.get("action") == ApprovalTransition.APPROVE.value and entry.get("level") == self.level
        }

    def has_approved(self, approver_id: str) -> bool:
        return approver_id in self.approvers_at_level()

    def is_eligible(self, role) -> bool:
        return role in eligible_roles(self.chain)

    # ------------------------------------------------------------------
    # Caller-driven operations
    # ------------------------------------------------------------------

    def approve(
        self,
        approver_id: str,
        approver_role: Role,
        *,
        comment: Optional[str] = None,
        eligible_approver_ids: Optional[Set[str]] = None,
    ) -> TransitionOutcome:
        """
        Credit an approval and resolve the request when the rule is met.

        Args:
            approver_id: Approving user
            approver_role: That user's role
            comment: Optional comment
            eligible_approver_ids: Everyone who may approve at this level,
                used when the chain requires all approvers

        Raises:
            StateError: If the request is terminal
            AuthorizationError: If the approver is not eligible
        """
        self._require_open(ApprovalTransition.APPROVE, approver_role)
        self._require_approver(approver_id, approver_role, "approve")
        from_status = self.status

        if self.has_approved(approver_id):
            entry = self._record(approver_id, approver_role, DUPLICATE_APPROVAL, comment)
            return TransitionOutcome(
                action=DUPLICATE_APPROVAL,
                from_status=from_status,
                to_status=from_status,
                history_entry=entry,
            )

        entry = self._record(approver_id, approver_role, ApprovalTransition.APPROVE.value, comment)
        request = self.request

        if self.chain.require_all_approvers:
            eligible = set(eligible_approver_ids or ()) | self.approvers_at_level()
            request.total_required_approvals = max(
                request.total_required_approvals or 0,
                self.chain.min_approvers,
                len(eligible),
            )
            request.current_approvals = len(self.approvers_at_level())
            done = eligible <= self.approvers_at_level() and request.current_approvals >= self.chain.min_approvers
        else:
            request.current_approvals = (request.current_approvals or 0) + 1
            done = request.current_approvals >= request.total_required_approvals

        if not done:
            return TransitionOutcome(
                action=ApprovalTransition.APPROVE.value,
                from_status=from_status,
                to_status=from_status,
                counted=True,
                history_entry=entry,
            )

        request.status = ApprovalStatus.APPROVED.value
        request.approved_at = self.now
        request.final_approved_by = approver_id
        return TransitionOutcome(
            action=ApprovalTransition.APPROVE.value,
            from_status=from_status,
            to_status=ApprovalStatus.APPROVED,
            transition=ApprovalTransition.APPROVE,
            counted=True,
            history_entry=entry,
        )

    def reject(self, approver_id: str, approver_role: Role, reason: str) -> TransitionOutcome:
        """
        Veto the request. One eligible rejection is final.

        Raises:
            StateError: If the request is terminal
            AuthorizationError: If the approver is not eligible
            ValidationError: If no reason is given
        """
        self._require_open(ApprovalTransition.REJECT, approver_role, comment=reason)
        self._require_approver(approver_id, approver_role, "reject")

        from_status = self.status
        entry = self._record(approver_id, approver_role, ApprovalTransition.REJECT.value, reason)
        request = self.request
        request.status = ApprovalStatus.REJECTED.value
        request.rejected_at = self.now
        request.final_rejected_by = approver_id
        request.rejection_reason = reason.strip()
        return TransitionOutcome(
            action=ApprovalTransition.REJECT.value,
            from_status=from_status,
            to_status=ApprovalStatus.REJECTED,
            transition=ApprovalTransition.REJECT,
            history_entry=entry,
        )

    def cancel(self, actor_id: str, actor_role: Role, reason: Optional[str] = None) -> TransitionOutcome:
        """
        Withdraw the request. Only the requester or an admin may cancel.

        Raises:
            StateError: If the request is terminal
            AuthorizationError: If the actor is neither requester nor admin
        """
        self._require_open(ApprovalTransition.CANCEL, actor_role)
        if actor_id != self.request.requested_by and actor_role not in ADMIN_ROLES:
            raise AuthorizationError("Only the requester or an administrator can cancel this request")

        from_status = self.status
        entry = self._record(actor_id, actor_role, ApprovalTransition.CANCEL.value, reason)
        request = self.request
        request.status = ApprovalStatus.CANCELLED.value
        request.cancelled_at = self.now
        request.cancelled_by = actor_id
        return TransitionOutcome(
            action=ApprovalTransition.CANCEL.value,
            from_status=from_status,
            to_status=ApprovalStatus.CANCELLED,
            transition=ApprovalTransition.CANCEL,
            history_entry=entry,
        )

    # ------------------------------------------------------------------
    # Time-driven operations (scheduler only)
    # ------------------------------------------------------------------

    def due_for_auto_approval(self) -> bool:
        return (
            not self.is_terminal
            and self.request.auto_approval_at is not None
            and self.now >= self.request.auto_approval_at
        )

    def due_for_escalation(self) -> bool:
        hours = self.chain.escalate_after_hours
        if self.is_terminal or not hours or self.chain.escalation_chain_id is None:
            return False
        since = self.request.escalated_at or self.request.requested_at
        return self.now - since >= timedelta(hours=hours)

    def auto_approve(self, actor_role: Role = Role.SYSTEM) -> TransitionOutcome:
        self._require_open(ApprovalTransition.AUTO_APPROVE, actor_role)
        from_status = self.status
        entry = self._record(
            SYSTEM_ACTOR, Role.SYSTEM, ApprovalTransition.AUTO_APPROVE.value,
            f"Auto-approved after {self.chain.auto_approve_after_hours}h without rejection",
        )
        request = self.request
        request.status = ApprovalStatus.APPROVED.value
        request.approved_at = self.now
        request.final_approved_by = SYSTEM_ACTOR
        return TransitionOutcome(
            action=ApprovalTransition.AUTO_APPROVE.value,
            from_status=from_status,
            to_status=ApprovalStatus.APPROVED,
            transition=ApprovalTransition.AUTO_APPROVE,
            history_entry=entry,
        )

    def escalate(
        self,
        target: ApprovalChain,
        *,
        reason: Optional[str] = None,
        eligible_approver_count: int = 0,
        actor_role: Role = Role.SYSTEM,
    ) -> TransitionOutcome:
        """Move the request to the escalation chain and restart counting there."""
        self._require_open(ApprovalTransition.ESCALATE, actor_role)
        from_status = self.status
        reason = reason or (
            f"No decision within {self.chain.escalate_after_hours}h under '{self.chain.name}'; "
            f"escalated to '{target.name}'"
        )
        entry = self._record(SYSTEM_ACTOR, Role.SYSTEM, ApprovalTransition.ESCALATE.value, reason)
        entry["from_chain"] = str(self.chain.id)
        entry["to_chain"] = str(target.id)

        request = self.request
        request.status = ApprovalStatus.ESCALATED.value
        request.chain_id = target.id
        request.chain = target
        request.current_approver_level = self.level + 1
        request.current_approvals = 0
        request.total_required_approvals = (
            max(target.min_approvers, eligible_approver_count)
            if target.require_all_approvers
            else target.min_approvers
        )
        request.escalated_at = self.now
        request.escalation_reason = reason
        request.auto_approval_at = auto_approval_deadline(target, self.now)

        self.chain = target
        return TransitionOutcome(
            action=ApprovalTransition.ESCALATE.value,
            from_status=from_status,
            to_status=ApprovalStatus.ESCALATED,
            transition=ApprovalTransition.ESCALATE,
            history_entry=entry,
        )

    # ------------------------------------------------------------------

    def _require_open(self, transition: ApprovalTransition, actor_role, comment: Optional[str] = None) -> None:
        rule = get_transition_rule(self.status, transition)
        if rule is None:
            raise StateError(
                f"Cannot {transition.value} request {self.request.request_number} in state {self.status.value}",
                status=self.status.value,
            )
        if rule.system_only and Role.parse(actor_role) != Role.SYSTEM:
            raise AuthorizationError(f"Only the scheduler may {transition.value} a request")
        if rule.requires_comment and not (comment and comment.strip()):
            raise ValidationError(f"A reason is required to {transition.value} a request")

    def _require_approver(self, approver_id: str, approver_role: Role, verb: str) -> None:
        if approver_id == self.request.requested_by:
            raise AuthorizationError(f"Requesters cannot {verb} their own request")
        if not self.is_eligible(approver_role):
            raise AuthorizationError(
                f"Role {Role.parse(approver_role).value} cannot {verb} under chain '{self.chain.name}'",
                details={"eligible_roles": eligible_roles(self.chain).to_list()},
            )

    def _record(self, actor: str, role, action: str, comment: Optional[str]) -> Dict[str, Any]:
        entry = {
            "actor": actor,
            "role": Role.parse(role).value,
            "action": action,
            "timestamp": self.now.isoformat(),
            "comment": comment,
            "level": self.level,
        }
        # Reassign so the JSON column is flagged dirty
        self.request.approval_history = [*(self.request.approval_history or []), entry]
        return entry
