"""Integration tests for the escalation / auto-approval sweep."""

from datetime import timedelta

import pytest

from tradeguard.core.approval import ApprovalScheduler, ApprovalService
from tradeguard.core.approval.machine import ApprovalStateMachine
from tradeguard.core.audit import AuditLogService
from tradeguard.db.models import AuditLog
from tradeguard.services.notifications import ApprovalEventType

from tests.factories import create_chain, create_user, make_context


@pytest.fixture()
def requester(db_session):
    create_user(db_session, role="finance", user_id="fin-1")
    create_user(db_session, role="super_admin", user_id="cfo")
    return create_user(db_session, role="purchasing", user_id="buyer")


@pytest.fixture()
def escalating_chains(db_session):
    cfo = create_chain(db_session, name="CFO review", min_approvers=1, approver_roles=["super_admin"], priority=-1)
    first = create_chain(
        db_session,
        name="Finance review",
        min_approvers=2,
        approver_roles=["finance"],
        escalate_after_hours=48,
        escalation_chain=cfo,
    )
    return first, cfo


class TestEscalation:

    def test_escalates_after_timeout(self, db_session, approval_service, scheduler, requester, escalating_chains, published):
        """No decision within 48h moves the request to the escalation chain with a fresh count."""
        first, cfo = escalating_chains
        request = approval_service.create_request("purchase", "purchase_order", "po-1", make_context(requester))
        approval_service.approve(request.id, "fin-1")

        result = scheduler.sweep(now=request.requested_at + timedelta(hours=50))

        assert result.escalated == [str(request.id)]
        escalated = approval_service.get_request(request.id)
        assert escalated.status == "escalated"
        assert escalated.chain_id == cfo.id
        assert escalated.current_approvals == 0
        assert escalated.total_required_approvals == 1
        assert escalated.current_approver_level == 1
        assert escalated.escalation_reason
        assert published[-1].event_type == ApprovalEventType.APPROVAL_ESCALATED

        entry = (
            db_session.query(AuditLog)
            .filter(AuditLog.correlation_id == str(request.id))
            .order_by(AuditLog.sequence.desc())
            .first()
        )
        assert entry.action == "escalate"
        assert entry.source == "system"

    def test_not_escalated_before_timeout(self, approval_service, scheduler, requester, escalating_chains):
        request = approval_service.create_request("purchase", "purchase_order", "po-1", make_context(requester))

        result = scheduler.sweep(now=request.requested_at + timedelta(hours=47))

        assert result.escalated == []
        assert result.skipped == 1
        assert approval_service.get_request(request.id).status == "pending"

    def test_escalated_request_resolves_under_new_chain(self, approval_service, scheduler, requester, escalating_chains):
        request = approval_service.create_request("purchase", "purchase_order", "po-1", make_context(requester))
        scheduler.sweep(now=request.requested_at + timedelta(hours=50))

        resolved = approval_service.approve(request.id, "cfo")

        assert resolved.status == "approved"
        assert resolved.final_approved_by == "cfo"

    def test_repeated_sweeps_are_idempotent(self, db_session, approval_service, scheduler, requester, escalating_chains):
        request = approval_service.create_request("purchase", "purchase_order", "po-1", make_context(requester))
        later = request.requested_at + timedelta(hours=50)

        scheduler.sweep(now=later)
        second = scheduler.sweep(now=later)

        assert second.escalated == []
        assert db_session.query(AuditLog).filter(
            AuditLog.correlation_id == str(request.id), AuditLog.action == "escalate",
        ).count() == 1

    def test_inactive_target_is_not_used(self, db_session, approval_service, scheduler, requester, escalating_chains):
        first, cfo = escalating_chains
        cfo.is_active = False
        db_session.commit()
        request = approval_service.create_request("purchase", "purchase_order", "po-1", make_context(requester))

        result = scheduler.sweep(now=request.requested_at + timedelta(hours=50))

        assert result.skipped == 1
        assert approval_service.get_request(request.id).status == "pending"


class TestAutoApproval:

    def test_auto_approves_after_timeout(self, db_session, approval_service, scheduler, requester, published):
        """After 24h without rejection the system approves, recorded as a system action."""
        create_chain(db_session, name="Routine", min_approvers=1, approver_roles=["finance"], auto_approve_after_hours=24)
        request = approval_service.create_request("purchase", "purchase_order", "po-1", make_context(requester))

        result = scheduler.sweep(now=request.requested_at + timedelta(hours=25))

        assert result.auto_approved == [str(request.id)]
        approved = approval_service.get_request(request.id)
        assert approved.status == "approved"
        assert approved.final_approved_by == "system"
        assert published[-1].event_type == ApprovalEventType.APPROVAL_APPROVED

        system_entries = (
            db_session.query(AuditLog)
            .filter(AuditLog.correlation_id == str(request.id), AuditLog.source == "system")
            .all()
        )
        assert len(system_entries) == 1
        assert system_entries[0].action == "auto_approve"
        assert system_entries[0].user_id == "system"

    def test_rejected_request_is_not_auto_approved(self, approval_service, scheduler, requester, db_session):
        create_chain(db_session, min_approvers=1, approver_roles=["finance"], auto_approve_after_hours=24)
        request = approval_service.create_request("purchase", "purchase_order", "po-1", make_context(requester))
        approval_service.reject(request.id, "fin-1", "not now")

        result = scheduler.sweep(now=request.requested_at + timedelta(hours=25))

        assert result.scanned == 0
        assert approval_service.get_request(request.id).status == "rejected"

    def test_auto_approval_wins_over_escalation(self, db_session, approval_service, scheduler, requester):
        cfo = create_chain(db_session, name="CFO", approver_roles=["super_admin"], priority=-1)
        create_chain(
            db_session, min_approvers=1, approver_roles=["finance"],
            auto_approve_after_hours=24, escalate_after_hours=24, escalation_chain=cfo,
        )
        request = approval_service.create_request("purchase", "purchase_order", "po-1", make_context(requester))

        result = scheduler.sweep(now=request.requested_at + timedelta(hours=30))

        assert result.auto_approved == [str(request.id)]
        assert result.escalated == []


class TestSweepResult:

    def test_to_dict_counts(self, scheduler):
        assert scheduler.sweep().to_dict() == {
            "scanned": 0, "auto_approved": 0, "escalated": 0, "skipped": 0, "errors": 0,
        }


class TestSweepPaging:
    """Requests that never become due must not hide the ones that do."""

    def test_due_requests_behind_idle_ones_are_reached(self, db_session, approval_service, scheduler, requester):
        scheduler.batch_size = 2
        create_chain(db_session, operation_type="purchase", name="Manual", approver_roles=["finance"])
        create_chain(
            db_session, operation_type="capital_entry", name="Routine capital",
            approver_roles=["finance"], auto_approve_after_hours=24,
        )
        idle = [
            approval_service.create_request("purchase", "purchase_order", f"po-{i}", make_context(requester))
            for i in range(2)
        ]
        due = [
            approval_service.create_request("capital_entry", "capital_entry", f"cap-{i}", make_context(requester))
            for i in range(3)
        ]

        result = scheduler.sweep(now=due[-1].requested_at + timedelta(hours=25))

        assert result.scanned == 3
        assert sorted(result.auto_approved) == sorted(str(r.id) for r in due)
        assert [approval_service.get_request(r.id).status for r in idle] == ["pending", "pending"]

    def test_every_page_of_escalations_is_visited(self, approval_service, scheduler, requester, escalating_chains):
        scheduler.batch_size = 1
        requests = [
            approval_service.create_request("purchase", "purchase_order", f"po-{i}", make_context(requester))
            for i in range(3)
        ]

        result = scheduler.sweep(now=requests[-1].requested_at + timedelta(hours=50))

        assert sorted(result.escalated) == sorted(str(r.id) for r in requests)


class TestConcurrentSweepers:
    """Two scheduler instances racing for the same due request."""

    def make_scheduler(self, session, settings):
        service = ApprovalService(session, audit=AuditLogService(session), settings=settings)
        return ApprovalScheduler(session, service)

    def test_request_is_transitioned_once(
        self, db_session, session_factory, settings, approval_service, requester, monkeypatch,
    ):
        """The slower sweeper hits a stale version, re-reads and skips."""
        create_chain(db_session, min_approvers=1, approver_roles=["finance"], auto_approve_after_hours=24)
        request = approval_service.create_request("purchase", "purchase_order", "po-1", make_context(requester))
        later = request.requested_at + timedelta(hours=25)

        session_a, session_b = session_factory(), session_factory()
        try:
            sweeper_a = self.make_scheduler(session_a, settings)
            sweeper_b = self.make_scheduler(session_b, settings)
            rival = []
            auto_approve = ApprovalStateMachine.auto_approve

            def auto_approve_after_rival(machine, *args, **kwargs):
                # B sweeps to completion while A holds the request it loaded
                if not rival:
                    rival.append(None)
                    rival[0] = sweeper_b.sweep(now=later)
                return auto_approve(machine, *args, **kwargs)

            monkeypatch.setattr(ApprovalStateMachine, "auto_approve", auto_approve_after_rival)
            result_a = sweeper_a.sweep(now=later)
        finally:
            session_a.close()
            session_b.close()

        assert rival[0].auto_approved == [str(request.id)]
        assert result_a.auto_approved == []
        assert result_a.skipped == 1

        db_session.expire_all()
        assert db_session.query(AuditLog).filter(
            AuditLog.correlation_id == str(request.id), AuditLog.action == "auto_approve",
        ).count() == 1
        history = approval_service.get_request(request.id).approval_history
        assert [h["action"] for h in history] == ["auto_approve"]
