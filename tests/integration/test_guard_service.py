"""Integration tests for approval guards."""

import pytest

from tradeguard.core.approval import GuardDecision, GuardReason
from tradeguard.core.errors import ConflictError, GuardBlockedError, NotFoundError, ValidationError
from tradeguard.db.models import AuditLog
from tradeguard.services.notifications import ApprovalEventType

from tests.factories import create_chain, create_guard, create_user, make_context


@pytest.fixture()
def worker(db_session):
    return create_user(db_session, role="worker", user_id="worker-1")


class TestGuardDecisions:
    """The decision ladder."""

    def test_blocks_when_no_approver_configured(self, db_session, guard_service, worker, published):
        """A worker entering capital above the threshold with no chain is blocked and audited."""
        create_guard(db_session, operation_type="capital_entry", amount_threshold=5000)

        evaluation = guard_service.evaluate(
            "capital_entry", make_context(worker, amount=10000, entity_type="capital_entry", entity_id="ce-1"),
        )

        assert evaluation.blocked
        assert evaluation.decision == GuardDecision.BLOCKED
        assert evaluation.reason == GuardReason.NO_APPROVER_CONFIGURED
        assert evaluation.message == "No approver is configured for this operation"

        entry = db_session.get(AuditLog, evaluation.audit_id)
        assert entry.action == "guard_block"
        assert entry.risk_level == "high"
        assert entry.user_id == "worker-1"
        assert entry.entity_id == "ce-1"

        assert [e.event_type for e in published] == [ApprovalEventType.GUARD_BLOCKED]

    def test_enforce_raises_with_reason(self, db_session, guard_service, worker):
        create_guard(db_session, operation_type="capital_entry", amount_threshold=5000)

        with pytest.raises(GuardBlockedError) as exc_info:
            guard_service.enforce("capital_entry", make_context(worker, amount=10000))

        assert exc_info.value.reason == "no_approver_configured"
        assert exc_info.value.operation_type == "capital_entry"

    def test_below_threshold_proceeds(self, db_session, guard_service, worker):
        create_guard(db_session, operation_type="capital_entry", amount_threshold=5000)
        evaluation = guard_service.evaluate("capital_entry", make_context(worker, amount=4999.99))
        assert evaluation.proceed
        assert evaluation.reason == GuardReason.BELOW_THRESHOLD

    def test_missing_amount_is_not_below_threshold(self, db_session, guard_service, worker):
        create_guard(db_session, operation_type="capital_entry", amount_threshold=5000)
        assert guard_service.evaluate("capital_entry", make_context(worker)).blocked

    def test_matching_chain_requires_approval(self, db_session, guard_service, worker):
        create_guard(db_session, operation_type="capital_entry", amount_threshold=5000)
        chain = create_chain(db_session, operation_type="capital_entry", amount_threshold=5000)

        evaluation = guard_service.evaluate("capital_entry", make_context(worker, amount=10000))

        assert evaluation.requires_approval
        assert evaluation.chain == chain
        assert evaluation.to_dict()["chain_id"] == str(chain.id)

    def test_role_exception_proceeds(self, db_session, guard_service):
        create_guard(db_session, operation_type="capital_entry", role_exceptions=["super_admin"])
        owner = create_user(db_session, role="super_admin")
        evaluation = guard_service.evaluate("capital_entry", make_context(owner, amount=10 ** 6))
        assert evaluation.reason == GuardReason.ROLE_EXCEPTION

    def test_disabled_guard_proceeds(self, db_session, guard_service, worker):
        create_guard(db_session, operation_type="capital_entry", is_enabled=False)
        evaluation = guard_service.evaluate("capital_entry", make_context(worker, amount=10 ** 6))
        assert evaluation.reason == GuardReason.GUARD_DISABLED

    def test_non_blocking_guard_proceeds_without_chain(self, db_session, guard_service, worker):
        create_guard(db_session, operation_type="capital_entry", block_if_no_approver=False)
        evaluation = guard_service.evaluate("capital_entry", make_context(worker, amount=10 ** 6))
        assert evaluation.proceed
        assert evaluation.reason == GuardReason.NO_CHAIN_NOT_BLOCKING

    def test_unconfigured_operation_fails_closed(self, guard_service, worker):
        """Without a guard row the default guard blocks when no chain applies."""
        evaluation = guard_service.evaluate("document_deletion", make_context(worker))
        assert evaluation.blocked
        assert evaluation.guard_id is None

    def test_unconfigured_operation_can_fail_open(self, guard_service, worker, settings):
        settings.default_block_if_no_approver = False
        assert guard_service.evaluate("document_deletion", make_context(worker)).proceed


class TestEmergencyOverride:

    def test_override_role_bypasses_with_high_risk_audit(self, db_session, guard_service, published):
        create_guard(
            db_session,
            operation_type="capital_entry",
            allow_emergency_override=True,
            emergency_override_roles=["super_admin"],
        )
        owner = create_user(db_session, role="super_admin", user_id="owner")

        evaluation = guard_service.evaluate("capital_entry", make_context(owner, amount=10000))

        assert evaluation.proceed
        assert evaluation.reason == GuardReason.EMERGENCY_OVERRIDE
        entry = db_session.get(AuditLog, evaluation.audit_id)
        assert entry.action == "guard_bypass"
        assert entry.risk_level == "high"
        assert "emergency_override" in entry.compliance_flags
        assert [e.event_type for e in published] == [ApprovalEventType.GUARD_BYPASS]

    def test_override_not_available_to_other_roles(self, db_session, guard_service, worker):
        create_guard(
            db_session,
            operation_type="capital_entry",
            allow_emergency_override=True,
            emergency_override_roles=["super_admin"],
        )
        assert guard_service.evaluate("capital_entry", make_context(worker, amount=10000)).blocked

    def test_bypass_notification_can_be_disabled(self, db_session, guard_service, published):
        create_guard(
            db_session,
            operation_type="capital_entry",
            allow_emergency_override=True,
            emergency_override_roles=["admin"],
            notify_on_bypass=False,
        )
        admin = create_user(db_session, role="admin")
        guard_service.evaluate("capital_entry", make_context(admin, amount=10000))
        assert published == []


class TestGuardAuditing:

    def test_routine_decisions_audited_at_low_risk(self, db_session, guard_service, worker):
        create_guard(db_session, operation_type="capital_entry", amount_threshold=5000)
        evaluation = guard_service.evaluate("capital_entry", make_context(worker, amount=10))
        entry = db_session.get(AuditLog, evaluation.audit_id)
        assert entry.action == "guard_evaluate"
        assert entry.risk_level == "low"

    def test_routine_decisions_skipped_when_not_auditing_all(self, db_session, guard_service, worker):
        create_guard(db_session, operation_type="capital_entry", amount_threshold=5000, audit_all_attempts=False)
        evaluation = guard_service.evaluate("capital_entry", make_context(worker, amount=10))
        assert evaluation.audit_id is None
        assert db_session.query(AuditLog).count() == 0

    def test_blocks_always_audited(self, db_session, guard_service, worker):
        create_guard(db_session, operation_type="capital_entry", audit_all_attempts=False)
        evaluation = guard_service.evaluate("capital_entry", make_context(worker, amount=10))
        assert evaluation.blocked
        assert evaluation.audit_id is not None


class TestGuardConfiguration:

    def test_configure_guard(self, db_session, guard_service):
        guard = guard_service.configure_guard(
            "capital_entry",
            created_by="admin-1",
            amount_threshold="5000",
            role_exceptions=["Super_Admin"],
        )
        assert guard.role_exceptions == ["super_admin"]
        assert guard_service.get_guard("capital_entry") == guard
        entry = db_session.query(AuditLog).filter(AuditLog.correlation_id == str(guard.id)).one()
        assert entry.source == "admin"

    def test_one_guard_per_operation(self, guard_service):
        guard_service.configure_guard("capital_entry", created_by="admin-1")
        with pytest.raises(ConflictError):
            guard_service.configure_guard("capital_entry", created_by="admin-1")

    @pytest.mark.parametrize("settings_", [
        {"unknown": True},
        {"amount_threshold": -1},
        {"role_exceptions": ["janitor"]},
        {"allow_emergency_override": True},
    ])
    def test_invalid_settings(self, guard_service, settings_):
        with pytest.raises(ValidationError):
            guard_service.configure_guard("capital_entry", created_by="admin-1", **settings_)

    def test_disabling_guard_is_high_risk(self, db_session, guard_service):
        guard = guard_service.configure_guard("capital_entry", created_by="admin-1")
        guard_service.update_guard("capital_entry", is_enabled=False)
        entry = (
            db_session.query(AuditLog)
            .filter(AuditLog.correlation_id == str(guard.id))
            .order_by(AuditLog.sequence.desc())
            .first()
        )
        assert entry.risk_level == "high"
        assert entry.previous_values["is_enabled"] is True
        assert entry.new_values["is_enabled"] is False

    def test_update_missing_guard(self, guard_service):
        with pytest.raises(NotFoundError):
            guard_service.update_guard("capital_entry", is_enabled=False)
