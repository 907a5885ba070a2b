"""Tamper-evident audit log."""

from .checksum import canonicalize, compute_checksum, to_jsonable
from .service import AuditContext, AuditLogService, VerificationResult

__all__ = [
    "AuditContext",
    "AuditLogService",
    "VerificationResult",
    "canonicalize",
    "compute_checksum",
    "to_jsonable",
]
