"""Tests for roles, operation types, request context and error payloads."""

from decimal import Decimal

import pytest

from tradeguard.core.approval.context import ApprovalContext, OperationType, to_amount
from tradeguard.core.errors import ConflictError, GuardBlockedError, StateError, ValidationError
from tradeguard.core.roles import ADMIN_ROLES, Role, RoleSet


class TestRoles:

    def test_parse_is_case_insensitive(self):
        assert Role.parse(" Finance ") == Role.FINANCE

    def test_unknown_role_is_a_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            Role.parse("janitor")
        assert "finance" in exc_info.value.details["allowed"]

    def test_role_set_is_immutable(self):
        """extend returns a new set and leaves the original alone."""
        base = RoleSet(["finance"])
        extended = base.extend("admin")
        assert base.to_list() == ["finance"]
        assert extended.to_list() == ["admin", "finance"]

    def test_role_set_membership(self):
        roles = RoleSet(["finance", Role.ADMIN])
        assert "finance" in roles
        assert Role.ADMIN in roles
        assert "worker" not in roles
        assert "not-a-role" not in roles
        assert None not in roles

    def test_from_config_rejects_bare_string(self):
        with pytest.raises(ValidationError):
            RoleSet.from_config("admin")

    def test_admin_roles(self):
        assert ADMIN_ROLES.to_list() == ["admin", "super_admin"]


class TestOperationType:

    def test_parse_known_type(self):
        assert OperationType.parse("capital_entry") is OperationType.CAPITAL_ENTRY

    def test_unknown_type_is_rejected(self):
        with pytest.raises(ValidationError):
            OperationType.parse("launch_rocket")


class TestApprovalContext:

    def test_normalises_fields(self):
        context = ApprovalContext(requester_id="u-1", requester_role="Purchasing", amount="1500.50", currency="eur")
        assert context.requester_role is Role.PURCHASING
        assert context.amount == Decimal("1500.50")
        assert context.currency == "EUR"

    def test_requires_requester(self):
        with pytest.raises(ValidationError):
            ApprovalContext(requester_id="", requester_role="worker")

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", [1]])
    def test_rejects_invalid_amounts(self, value):
        with pytest.raises(ValidationError):
            to_amount(value)

    def test_blank_amount_is_none(self):
        assert to_amount("") is None
        assert to_amount(None) is None

    def test_unknown_field_is_rejected(self):
        context = ApprovalContext(requester_id="u-1", requester_role="worker")
        with pytest.raises(ValidationError):
            context.field_value("salary")


class TestErrorPayloads:
    """Error codes distinguish the failure kinds for callers."""

    def test_conflict_carries_existing_request(self):
        error = ConflictError("open request exists", existing_request_id="abc")
        assert error.to_dict() == {"error": "conflict", "detail": "open request exists", "existing_request_id": "abc"}

    def test_guard_blocked_carries_reason(self):
        error = GuardBlockedError("blocked", operation_type="capital_entry", reason="no_approver_configured")
        payload = error.to_dict()
        assert payload["error"] == "guard_blocked"
        assert payload["reason"] == "no_approver_configured"

    def test_state_error_carries_status(self):
        assert StateError("terminal", status="approved").to_dict()["status"] == "approved"
