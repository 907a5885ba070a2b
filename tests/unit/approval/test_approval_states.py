"""Tests for approval request states and the transition table."""

import pytest

from tradeguard.core.approval.states import (
    OPEN_STATES,
    TERMINAL_STATES,
    ApprovalStatus,
    ApprovalTransition,
    can_transition,
    get_target_state,
    get_transition_rule,
    is_terminal,
)


class TestTransitionTable:
    """Allowed and forbidden transitions."""

    @pytest.mark.parametrize("status", [ApprovalStatus.PENDING, ApprovalStatus.ESCALATED])
    def test_open_states_allow_every_transition(self, status):
        """Pending and escalated requests accept all five transitions."""
        for transition in ApprovalTransition:
            assert can_transition(status, transition)

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_allow_nothing(self, status):
        """No transition leaves approved, rejected or cancelled."""
        for transition in ApprovalTransition:
            assert not can_transition(status, transition)
            assert get_target_state(status, transition) is None

    def test_escalation_targets(self):
        """Escalation lands in escalated, including re-escalation."""
        assert get_target_state(ApprovalStatus.PENDING, ApprovalTransition.ESCALATE) == ApprovalStatus.ESCALATED
        assert get_target_state(ApprovalStatus.ESCALATED, ApprovalTransition.ESCALATE) == ApprovalStatus.ESCALATED

    def test_auto_approve_targets_approved(self):
        assert get_target_state(ApprovalStatus.PENDING, ApprovalTransition.AUTO_APPROVE) == ApprovalStatus.APPROVED

    def test_scheduler_transitions_are_system_only(self):
        """Escalation and auto-approval are not caller actions."""
        for transition in (ApprovalTransition.ESCALATE, ApprovalTransition.AUTO_APPROVE):
            assert get_transition_rule(ApprovalStatus.PENDING, transition).system_only
        assert not get_transition_rule(ApprovalStatus.PENDING, ApprovalTransition.APPROVE).system_only

    def test_reject_requires_comment(self):
        assert get_transition_rule(ApprovalStatus.PENDING, ApprovalTransition.REJECT).requires_comment


class TestStateSets:
    """Open and terminal state groupings."""

    def test_open_and_terminal_partition_statuses(self):
        assert OPEN_STATES | TERMINAL_STATES == set(ApprovalStatus)
        assert not OPEN_STATES & TERMINAL_STATES

    def test_is_terminal_accepts_strings(self):
        assert is_terminal("approved")
        assert not is_terminal("escalated")

    def test_is_terminal_rejects_unknown_status(self):
        with pytest.raises(ValueError):
            is_terminal("archived")
