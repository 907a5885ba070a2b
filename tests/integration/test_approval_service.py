"""Integration tests for the approval request lifecycle.

Covers creation, quorum approval, veto, cancellation, idempotent repeat
approvals and optimistic-concurrency retries against a real database.
"""

import uuid

import pytest
from sqlalchemy.orm.exc import StaleDataError

from tradeguard.core.approval import ApprovalService, BlockingReason
from tradeguard.core.audit import AuditLogService
from tradeguard.core.errors import (
    AuthorizationError,
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from tradeguard.db.models import AuditLog
from tradeguard.services.notifications import ApprovalEventType

from tests.factories import create_chain, create_user, make_context


@pytest.fixture()
def people(db_session):
    """A purchasing requester and two eligible approvers."""
    return {
        "requester": create_user(db_session, role="purchasing", user_id="buyer"),
        "finance": create_user(db_session, role="finance", user_id="fin-1"),
        "admin": create_user(db_session, role="admin", user_id="admin-1"),
    }


@pytest.fixture()
def purchase_chain(db_session):
    return create_chain(
        db_session,
        operation_type="purchase",
        name="Large purchases",
        min_approvers=2,
        approver_roles=["finance", "admin"],
        amount_threshold=10000,
    )


@pytest.fixture()
def open_request(approval_service, people, purchase_chain):
    context = make_context(people["requester"], amount=15000, request_data={"total": 15000, "supplierId": "s-9"})
    return approval_service.create_request("purchase", "purchase_order", "po-1", context)


def audit_actions(db_session, request):
    return [
        e.action
        for e in db_session.query(AuditLog)
        .filter(AuditLog.correlation_id == str(request.id))
        .order_by(AuditLog.sequence)
        .all()
    ]


class TestCreateRequest:

    def test_create_pending_request(self, db_session, open_request, purchase_chain, published):
        assert open_request.status == "pending"
        assert open_request.chain_id == purchase_chain.id
        assert open_request.total_required_approvals == 2
        assert open_request.current_approvals == 0
        assert open_request.requested_by == "buyer"
        assert open_request.request_number.startswith("APR-")
        assert open_request.version == 1
        assert audit_actions(db_session, open_request) == ["create"]
        assert [e.event_type for e in published] == [ApprovalEventType.APPROVAL_CREATED]

    def test_second_open_request_for_entity_conflicts(self, approval_service, open_request, people):
        """Only one unresolved request may exist per entity."""
        context = make_context(people["requester"], amount=15000)
        with pytest.raises(ConflictError) as exc_info:
            approval_service.create_request("purchase", "purchase_order", "po-1", context)
        assert exc_info.value.existing_request_id == str(open_request.id)

    def test_unique_index_catches_a_racing_create(self, approval_service, open_request, people, monkeypatch):
        """A create that slips past the open-request lookup is stopped by the store."""
        lookups = []
        find_open = approval_service.get_open_request_for_entity

        def miss_first_lookup(entity_type, entity_id):
            lookups.append(entity_id)
            return None if len(lookups) == 1 else find_open(entity_type, entity_id)

        monkeypatch.setattr(approval_service, "get_open_request_for_entity", miss_first_lookup)
        context = make_context(people["requester"], amount=15000)

        with pytest.raises(ConflictError) as exc_info:
            approval_service.create_request("purchase", "purchase_order", "po-1", context)

        assert len(lookups) == 2
        assert exc_info.value.existing_request_id == str(open_request.id)
        assert approval_service.count_requests(entity_type="purchase_order", entity_id="po-1") == 1

    def test_new_request_allowed_after_resolution(self, approval_service, open_request, people):
        approval_service.cancel(open_request.id, "buyer", "re-quote")
        context = make_context(people["requester"], amount=15000)
        second = approval_service.create_request("purchase", "purchase_order", "po-1", context)
        assert second.id != open_request.id

    def test_no_matching_chain(self, approval_service, people, purchase_chain):
        context = make_context(people["requester"], amount=500)
        with pytest.raises(ValidationError):
            approval_service.create_request("purchase", "purchase_order", "po-2", context)

    def test_explicit_chain_must_match_operation(self, approval_service, people, purchase_chain):
        context = make_context(people["requester"], amount=15000)
        with pytest.raises(ValidationError):
            approval_service.create_request("sale_order", "sale_order", "so-1", context, chain=purchase_chain)


class TestApproveFlow:

    def test_quorum_of_two(self, db_session, approval_service, open_request, published):
        """finance then admin approve; the request resolves on the second approval."""
        after_first = approval_service.approve(open_request.id, "fin-1")
        assert after_first.status == "pending"
        assert after_first.current_approvals == 1

        after_second = approval_service.approve(open_request.id, "admin-1", "fine")
        assert after_second.status == "approved"
        assert after_second.current_approvals == 2
        assert after_second.final_approved_by == "admin-1"
        assert after_second.approved_at is not None

        assert audit_actions(db_session, open_request) == ["create", "approve", "approve"]
        assert [e.event_type for e in published][-1] == ApprovalEventType.APPROVAL_APPROVED

    def test_repeat_approval_is_idempotent(self, db_session, approval_service, open_request):
        approval_service.approve(open_request.id, "fin-1")
        request = approval_service.approve(open_request.id, "fin-1")

        assert request.current_approvals == 1
        assert request.status == "pending"
        entries = db_session.query(AuditLog).filter(AuditLog.correlation_id == str(open_request.id)).all()
        assert sorted(e.risk_level for e in entries if e.action == "approve") == ["low", "low"]

    def test_ineligible_approver(self, db_session, approval_service, open_request):
        create_user(db_session, role="warehouse", user_id="wh-1")
        with pytest.raises(AuthorizationError):
            approval_service.approve(open_request.id, "wh-1")
        assert approval_service.get_request(open_request.id).current_approvals == 0

    def test_unknown_or_inactive_approver(self, db_session, approval_service, open_request):
        create_user(db_session, role="finance", user_id="fin-gone", is_active=False)
        with pytest.raises(AuthorizationError):
            approval_service.approve(open_request.id, "fin-gone")
        with pytest.raises(AuthorizationError):
            approval_service.approve(open_request.id, "nobody")

    def test_requester_cannot_approve(self, db_session, approval_service, people, purchase_chain):
        requester = create_user(db_session, role="finance", user_id="fin-requester")
        request = approval_service.create_request(
            "purchase", "purchase_order", "po-3", make_context(requester, amount=20000),
        )
        with pytest.raises(AuthorizationError):
            approval_service.approve(request.id, "fin-requester")

    def test_approving_terminal_request(self, approval_service, open_request):
        approval_service.reject(open_request.id, "fin-1", "over budget")
        with pytest.raises(StateError):
            approval_service.approve(open_request.id, "admin-1")

    def test_missing_request(self, approval_service, people):
        with pytest.raises(NotFoundError):
            approval_service.approve(uuid.uuid4(), "fin-1")


class TestRequireAllApprovers:

    def test_every_eligible_user_must_approve(self, db_session, approval_service, people):
        create_user(db_session, role="finance", user_id="fin-2")
        create_chain(
            db_session, operation_type="financial_adjustment",
            min_approvers=1, require_all_approvers=True, approver_roles=["finance"],
        )
        request = approval_service.create_request(
            "financial_adjustment", "ledger", "adj-1", make_context(people["requester"], amount=100),
        )
        assert request.total_required_approvals == 2

        approval_service.approve(request.id, "fin-1")
        assert approval_service.get_request(request.id).status == "pending"

        done = approval_service.approve(request.id, "fin-2")
        assert done.status == "approved"
        assert done.current_approvals == 2


class TestRejectAndCancel:

    def test_single_rejection_vetoes(self, db_session, approval_service, open_request, published):
        approval_service.approve(open_request.id, "fin-1")
        request = approval_service.reject(open_request.id, "admin-1", "Supplier not vetted")

        assert request.status == "rejected"
        assert request.final_rejected_by == "admin-1"
        assert request.rejection_reason == "Supplier not vetted"
        assert published[-1].event_type == ApprovalEventType.APPROVAL_REJECTED

    def test_rejection_requires_reason(self, approval_service, open_request):
        with pytest.raises(ValidationError):
            approval_service.reject(open_request.id, "fin-1", "")
        assert approval_service.get_request(open_request.id).status == "pending"

    def test_requester_cancels(self, approval_service, open_request, published):
        request = approval_service.cancel(open_request.id, "buyer", "not needed")
        assert request.status == "cancelled"
        assert request.cancelled_by == "buyer"
        assert published[-1].event_type == ApprovalEventType.APPROVAL_CANCELLED

    def test_other_user_cannot_cancel(self, approval_service, open_request):
        with pytest.raises(AuthorizationError):
            approval_service.cancel(open_request.id, "fin-1")

    def test_cannot_cancel_resolved_request(self, approval_service, open_request):
        approval_service.reject(open_request.id, "fin-1", "no")
        with pytest.raises(StateError):
            approval_service.cancel(open_request.id, "buyer")


class TestQueries:

    def test_blocking_reason(self, approval_service, open_request):
        assert approval_service.blocking_reason("purchase_order", "po-1") == BlockingReason.AWAITING_APPROVAL
        approval_service.reject(open_request.id, "fin-1", "no")
        assert approval_service.blocking_reason("purchase_order", "po-1") == BlockingReason.REJECTED
        assert approval_service.blocking_reason("purchase_order", "po-unknown") is None

    def test_pending_for_approver(self, approval_service, open_request):
        assert [r.id for r in approval_service.list_pending_for_approver("fin-1")] == [open_request.id]
        approval_service.approve(open_request.id, "fin-1")
        assert approval_service.list_pending_for_approver("fin-1") == []
        assert [r.id for r in approval_service.list_pending_for_approver("admin-1")] == [open_request.id]
        assert approval_service.list_pending_for_approver("buyer") == []

    def test_list_and_count(self, approval_service, open_request):
        assert [r.id for r in approval_service.list_requests(status="pending")] == [open_request.id]
        assert approval_service.list_requests(status="approved") == []
        assert approval_service.count_requests() == 1
        assert approval_service.list_requests(entity_type="purchase_order", entity_id="po-1")[0].id == open_request.id

    def test_count_applies_every_filter(self, db_session, approval_service, open_request, people):
        create_chain(db_session, operation_type="sale_order", name="Sales", approver_roles=["finance"])
        approval_service.create_request(
            "sale_order", "sale_order", "so-1", make_context(people["requester"], amount=15000),
        )

        assert approval_service.count_requests() == 2
        assert approval_service.count_requests(operation_type="purchase") == 1
        assert approval_service.count_requests(status="pending", operation_type="sale_order") == 1
        assert approval_service.count_requests(requested_by="someone-else") == 0

    def test_unknown_status_filter(self, approval_service):
        with pytest.raises(ValidationError):
            approval_service.list_requests(status="lost")
        with pytest.raises(ValidationError):
            approval_service.count_requests(status="lost")


class TestOptimisticConcurrency:
    """Two sessions acting on the same request."""

    def make_service(self, session, settings):
        return ApprovalService(session, audit=AuditLogService(session), settings=settings)

    def test_stale_writer_retries_against_fresh_state(self, session_factory, settings, open_request):
        """A holds a stale copy; B commits first; A's approval is re-applied and both count."""
        session_a, session_b = session_factory(), session_factory()
        try:
            service_a = self.make_service(session_a, settings)
            service_b = self.make_service(session_b, settings)

            stale = service_a.get_request(open_request.id)
            assert stale.current_approvals == 0

            service_b.approve(open_request.id, "fin-1")
            request = service_a.approve(open_request.id, "admin-1")

            assert request.status == "approved"
            assert request.current_approvals == 2
            assert request.version == 3
        finally:
            session_a.close()
            session_b.close()

    def test_concurrent_duplicate_is_not_double_counted(self, session_factory, settings, open_request):
        session_a, session_b = session_factory(), session_factory()
        try:
            service_a = self.make_service(session_a, settings)
            service_b = self.make_service(session_b, settings)
            service_a.get_request(open_request.id)

            service_b.approve(open_request.id, "fin-1")
            request = service_a.approve(open_request.id, "fin-1")

            assert request.current_approvals == 1
            assert request.status == "pending"
        finally:
            session_a.close()
            session_b.close()

    def test_gives_up_after_retry_limit(self, approval_service, open_request, monkeypatch):
        def always_stale():
            raise StaleDataError("simulated")

        monkeypatch.setattr(approval_service.db, "flush", always_stale)
        with pytest.raises(ConcurrentModificationError):
            approval_service.approve(open_request.id, "fin-1")
