"""Canonical serialization and hash chaining for audit entries."""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

# Every persisted column except the checksum itself
CHECKSUM_FIELDS = (
    "id",
    "action",
    "entity_type",
    "entity_id",
    "description",
    "user_id",
    "user_name",
    "user_role",
    "ip_address",
    "user_agent",
    "session_id",
    "previous_values",
    "new_values",
    "business_context",
    "risk_level",
    "compliance_flags",
    "source",
    "correlation_id",
    "sequence",
    "parent_audit_id",
    "timestamp",
)


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if hasattr(value, "to_list"):
        return value.to_list()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_jsonable(value: Any) -> Any:
    """Normalise a payload to plain JSON types (as it will read back from the store)."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=_json_default))


def canonicalize(fields: Dict[str, Any]) -> str:
    """Deterministic JSON encoding: sorted keys, no whitespace."""
    return json.dumps(
        fields,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def entry_fields(entry: Any) -> Dict[str, Any]:
    """Extract the checksummed fields from an AuditLog row."""
    return {name: getattr(entry, name) for name in CHECKSUM_FIELDS}


def compute_checksum(fields: Dict[str, Any], previous_checksum: Optional[str] = None) -> str:
    """checksum = sha256(canonical(entry) || previous checksum in the chain)."""
    material = canonicalize(fields) + (previous_checksum or "")
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
