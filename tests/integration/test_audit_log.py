"""Integration tests for the tamper-evident audit log."""

import uuid

import pytest
from sqlalchemy import delete, update

from tradeguard.core.audit import AuditContext
from tradeguard.core.audit.checksum import compute_checksum, entry_fields
from tradeguard.core.errors import IntegrityError, NotFoundError
from tradeguard.db.models import AuditAction, AuditLog, RiskLevel
from tradeguard.services.notifications import ApprovalEventType

audit_table = AuditLog.__table__


@pytest.fixture()
def chain_of_three(audit_service, db_session):
    """Three entries appended to one correlation chain."""
    entries = [
        audit_service.append(
            action,
            "approval_request",
            entity_id="req-1",
            description=f"step {i}",
            context=AuditContext(user_id="fin-1", user_role="finance"),
            new_values={"step": i, "amount": "15000.00"},
            correlation_id="req-1",
        )
        for i, action in enumerate((AuditAction.CREATE, AuditAction.APPROVE, AuditAction.APPROVE), start=1)
    ]
    db_session.commit()
    return entries


class TestAppend:

    def test_sequences_and_links_checksums(self, chain_of_three):
        assert [e.sequence for e in chain_of_three] == [1, 2, 3]
        assert len({e.checksum for e in chain_of_three}) == 3

    def test_standalone_entry_has_no_sequence(self, audit_service, db_session):
        entry = audit_service.append(AuditAction.LOGIN, "user", entity_id="u-1", description="login")
        db_session.commit()
        assert entry.sequence is None
        assert audit_service.verify_entry(entry.id)

    def test_chains_are_independent(self, audit_service, db_session, chain_of_three):
        other = audit_service.append(AuditAction.CREATE, "approval_request", description="x", correlation_id="req-2")
        assert other.sequence == 1

    def test_defaults(self, audit_service):
        entry = audit_service.append("export", "report", description="monthly export")
        assert entry.risk_level == RiskLevel.MEDIUM.value
        assert entry.source == "application"
        assert entry.compliance_flags == []


class TestImmutability:
    """ORM-level guards against changing history."""

    def test_update_is_refused(self, db_session, chain_of_three):
        chain_of_three[0].description = "rewritten"
        with pytest.raises(IntegrityError):
            db_session.flush()
        db_session.rollback()

    def test_delete_is_refused(self, db_session, chain_of_three):
        db_session.delete(chain_of_three[1])
        with pytest.raises(IntegrityError):
            db_session.flush()
        db_session.rollback()

    def test_corrections_are_new_linked_entries(self, audit_service, db_session, chain_of_three):
        original = chain_of_three[1]
        correction = audit_service.append_correction(
            original.id,
            description="approval was recorded against the wrong user",
            new_values={"step": 2, "approver": "fin-2"},
        )
        db_session.commit()

        assert correction.action == "correct"
        assert correction.parent_audit_id == original.id
        assert correction.previous_values == original.new_values
        assert correction.sequence == 4
        assert audit_service.verify("req-1").valid

    def test_correction_of_missing_entry(self, audit_service):
        with pytest.raises(NotFoundError):
            audit_service.append_correction(uuid.uuid4(), description="x")


class TestVerify:

    def test_intact_chain_verifies(self, audit_service, chain_of_three):
        result = audit_service.verify("req-1")
        assert result.valid
        assert result.entries_checked == 3
        assert all(audit_service.verify_entry(e.id) for e in chain_of_three)

    def test_field_tampering_is_detected(self, audit_service, db_session, chain_of_three, published):
        """Rewriting a row behind the ORM's back breaks its checksum."""
        target = chain_of_three[1]
        db_session.execute(
            update(audit_table).where(audit_table.c.id == target.id).values(new_values={"step": 2, "amount": "1.00"})
        )
        db_session.commit()

        result = audit_service.verify("req-1")

        assert not result.valid
        assert result.first_invalid_sequence == 2
        assert result.first_invalid_id == str(target.id)
        assert result.reason == "checksum mismatch"
        assert not audit_service.verify_entry(target.id)
        assert published[-1].event_type == ApprovalEventType.AUDIT_INTEGRITY_FAILURE

    def test_rewritten_checksum_breaks_next_entry(self, audit_service, db_session, chain_of_three):
        """Re-sealing a tampered entry moves the failure to its successor."""
        target = chain_of_three[0]
        forged = dict(entry_fields(target), description="rewritten")
        db_session.execute(
            update(audit_table)
            .where(audit_table.c.id == target.id)
            .values(description="rewritten", checksum=compute_checksum(forged))
        )
        db_session.commit()

        result = audit_service.verify("req-1")

        assert not result.valid
        assert result.first_invalid_sequence == 2

    def test_removed_entry_is_detected(self, audit_service, db_session, chain_of_three):
        db_session.execute(delete(audit_table).where(audit_table.c.id == chain_of_three[1].id))
        db_session.commit()
        db_session.expunge_all()

        result = audit_service.verify("req-1")

        assert not result.valid
        assert "sequence gap" in result.reason

    def test_raise_on_failure(self, audit_service, db_session, chain_of_three, caplog):
        db_session.execute(update(audit_table).where(audit_table.c.id == chain_of_three[2].id).values(user_id="mallory"))
        db_session.commit()

        with pytest.raises(IntegrityError) as exc_info:
            audit_service.verify("req-1", raise_on_failure=True)

        assert exc_info.value.correlation_id == "req-1"
        assert exc_info.value.audit_id == str(chain_of_three[2].id)
        assert any(record.levelname == "CRITICAL" for record in caplog.records)

    def test_unknown_chain_is_trivially_valid(self, audit_service):
        result = audit_service.verify("nothing-here")
        assert result.valid
        assert result.entries_checked == 0
