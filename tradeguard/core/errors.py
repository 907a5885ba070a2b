"""Error taxonomy for the approval engine.

Every error carries a stable ``code`` so callers (and the HTTP layer) can
tell a missing approver apart from a pending or rejected approval.
"""

from typing import Any, Dict, Optional


class ApprovalEngineError(Exception):
    """Base class for all approval engine errors."""

    code = "approval_engine_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.details}


class ValidationError(ApprovalEngineError):
    """Malformed chain/guard configuration or unknown operation type."""

    code = "validation_error"


class NotFoundError(ApprovalEngineError):
    """Referenced chain, guard, request or user does not exist."""

    code = "not_found"


class ConflictError(ApprovalEngineError):
    """An unresolved approval request already exists for the entity."""

    code = "conflict"

    def __init__(self, message: str, *, existing_request_id: Optional[str] = None):
        details = {"existing_request_id": existing_request_id} if existing_request_id else None
        super().__init__(message, details=details)
        self.existing_request_id = existing_request_id


class AuthorizationError(ApprovalEngineError):
    """The actor's role is not eligible for the attempted action."""

    code = "not_authorized"


class StateError(ApprovalEngineError):
    """Action attempted on a terminal or already-superseded request."""

    code = "invalid_state"

    def __init__(self, message: str, *, status: Optional[str] = None):
        super().__init__(message, details={"status": status} if status else None)
        self.status = status


class ConcurrentModificationError(StateError):
    """Request kept changing underneath us; retries were exhausted."""

    code = "concurrent_modification"


class GuardBlockedError(ApprovalEngineError):
    """No approver path exists and no emergency override is available."""

    code = "guard_blocked"

    def __init__(self, message: str, *, operation_type: str, reason: str):
        super().__init__(message, details={"operation_type": operation_type, "reason": reason})
        self.operation_type = operation_type
        self.reason = reason


class IntegrityError(ApprovalEngineError):
    """Audit checksum verification failed or an audit row was mutated."""

    code = "audit_integrity_failure"

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        audit_id: Optional[str] = None,
    ):
        super().__init__(
            message,
            details={"correlation_id": correlation_id, "audit_id": audit_id},
        )
        self.correlation_id = correlation_id
        self.audit_id = audit_id
