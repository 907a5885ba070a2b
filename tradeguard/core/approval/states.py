"""Approval request states and transitions.

State Machine Diagram:

    ┌──────────┐
    │ PENDING  │ ← Initial state (request created)
    └────┬─────┘
         │
         ├──────────────┬──────────────┬──────────────┐
         │              │              │              │
    ┌────▼─────┐   ┌────▼─────┐   ┌────▼──────┐  ┌────▼──────┐
    │ APPROVED │   │ REJECTED │   │ CANCELLED │  │ ESCALATED │◄─┐
    └──────────┘   └──────────┘   └───────────┘  └────┬──────┘  │
                                                      │  re-escalate
                                                      ├─────────┘
                                                      │
                                        approve / reject / cancel

APPROVED, REJECTED and CANCELLED are terminal. An escalated request may be
escalated again to a further chain.
"""

from enum import Enum
from typing import Dict, NamedTuple, Optional, Set


class ApprovalStatus(str, Enum):
    """Lifecycle states of an approval request."""

    PENDING = "pending"        # Awaiting approvals under the original chain
    ESCALATED = "escalated"    # Moved to an escalation chain after a timeout
    APPROVED = "approved"      # Quorum reached or auto-approved
    REJECTED = "rejected"      # Vetoed by an eligible approver
    CANCELLED = "cancelled"    # Withdrawn by the requester or an admin


class ApprovalTransition(str, Enum):
    """Actions that trigger state transitions."""

    APPROVE = "approve"            # quorum reached
    REJECT = "reject"              # single-rejection veto
    CANCEL = "cancel"              # requester/admin withdrawal
    ESCALATE = "escalate"          # scheduler: escalation timeout
    AUTO_APPROVE = "auto_approve"  # scheduler: auto-approval timeout


class TransitionRule(NamedTuple):
    """Defines a valid state transition."""
    from_state: ApprovalStatus
    to_state: ApprovalStatus
    transition: ApprovalTransition
    system_only: bool = False
    requires_comment: bool = False


TRANSITION_RULES: list[TransitionRule] = [
    TransitionRule(ApprovalStatus.PENDING, ApprovalStatus.APPROVED, ApprovalTransition.APPROVE),
    TransitionRule(ApprovalStatus.PENDING, ApprovalStatus.REJECTED, ApprovalTransition.REJECT, requires_comment=True),
    TransitionRule(ApprovalStatus.PENDING, ApprovalStatus.CANCELLED, ApprovalTransition.CANCEL),
    TransitionRule(ApprovalStatus.PENDING, ApprovalStatus.ESCALATED, ApprovalTransition.ESCALATE, system_only=True),
    TransitionRule(ApprovalStatus.PENDING, ApprovalStatus.APPROVED, ApprovalTransition.AUTO_APPROVE, system_only=True),

    TransitionRule(ApprovalStatus.ESCALATED, ApprovalStatus.APPROVED, ApprovalTransition.APPROVE),
    TransitionRule(ApprovalStatus.ESCALATED, ApprovalStatus.REJECTED, ApprovalTransition.REJECT, requires_comment=True),
    TransitionRule(ApprovalStatus.ESCALATED, ApprovalStatus.CANCELLED, ApprovalTransition.CANCEL),
    TransitionRule(ApprovalStatus.ESCALATED, ApprovalStatus.ESCALATED, ApprovalTransition.ESCALATE, system_only=True),
    TransitionRule(ApprovalStatus.ESCALATED, ApprovalStatus.APPROVED, ApprovalTransition.AUTO_APPROVE, system_only=True),
]

# Build lookup tables for efficient access
VALID_TRANSITIONS: Dict[ApprovalStatus, Set[ApprovalTransition]] = {}
TRANSITION_TARGETS: Dict[tuple[ApprovalStatus, ApprovalTransition], TransitionRule] = {}

for rule in TRANSITION_RULES:
    VALID_TRANSITIONS.setdefault(rule.from_state, set()).add(rule.transition)
    TRANSITION_TARGETS[(rule.from_state, rule.transition)] = rule


TERMINAL_STATES: Set[ApprovalStatus] = {
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.CANCELLED,
}

# At most one request per entity may be in one of these
OPEN_STATES: Set[ApprovalStatus] = {
    ApprovalStatus.PENDING,
    ApprovalStatus.ESCALATED,
}


def is_terminal(status: str) -> bool:
    return ApprovalStatus(status) in TERMINAL_STATES


def can_transition(from_state: ApprovalStatus, transition: ApprovalTransition) -> bool:
    """Check if a transition is valid from the given state."""
    return transition in VALID_TRANSITIONS.get(from_state, set())


def get_transition_rule(from_state: ApprovalStatus, transition: ApprovalTransition) -> Optional[TransitionRule]:
    """Get the transition rule for a state/action combination."""
    return TRANSITION_TARGETS.get((from_state, transition))


def get_target_state(from_state: ApprovalStatus, transition: ApprovalTransition) -> Optional[ApprovalStatus]:
    """Get the target state for a transition."""
    rule = get_transition_rule(from_state, transition)
    return rule.to_state if rule else None
