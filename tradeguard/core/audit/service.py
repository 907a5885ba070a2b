"""Append-only audit log with per-correlation hash chains.

Each entry's checksum covers its canonical serialization plus the checksum
of the previous entry sharing its correlation id (one chain per approval
request, for example). Rewriting any field of any entry therefore breaks
that entry's checksum, and rewriting the checksum as well breaks the next
one. Entries without a correlation id are checksummed on their own.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from tradeguard.core.clock import utcnow
from tradeguard.core.errors import IntegrityError, NotFoundError
from tradeguard.db.models.audit import AuditAction, AuditLog, AuditSource, RiskLevel
from tradeguard.services.notifications import ApprovalEvent, ApprovalEventBus, ApprovalEventType

from .checksum import compute_checksum, entry_fields, to_jsonable

logger = logging.getLogger(__name__)


@dataclass
class AuditContext:
    """Who performed an action, and from where."""
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_role: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    source: AuditSource = AuditSource.APPLICATION

    @classmethod
    def system(cls, name: str = "scheduler") -> "AuditContext":
        return cls(user_id="system", user_name=name, user_role="system", source=AuditSource.SYSTEM)


@dataclass
class VerificationResult:
    """Outcome of replaying one correlation chain."""
    correlation_id: str
    valid: bool
    entries_checked: int
    first_invalid_id: Optional[str] = None
    first_invalid_sequence: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "valid": self.valid,
            "entries_checked": self.entries_checked,
            "first_invalid_id": self.first_invalid_id,
            "first_invalid_sequence": self.first_invalid_sequence,
            "reason": self.reason,
        }


def _enum_value(value: Union[str, Any]) -> str:
    return value.value if hasattr(value, "value") else str(value)


class AuditLogService:
    """
    Appends and verifies audit entries.

    Entries are only ever inserted. The service flushes every entry so the
    next append in the same transaction sees it as the chain head.
    """

    def __init__(self, db: Session, event_bus: Optional[ApprovalEventBus] = None):
        self.db = db
        self.event_bus = event_bus

    def append(
        self,
        action: Union[AuditAction, str],
        entity_type: str,
        *,
        description: str,
        entity_id: Optional[str] = None,
        context: Optional[AuditContext] = None,
        previous_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        business_context: Optional[Dict[str, Any]] = None,
        risk_level: Union[RiskLevel, str] = RiskLevel.MEDIUM,
        compliance_flags: Optional[Iterable[str]] = None,
        source: Optional[Union[AuditSource, str]] = None,
        correlation_id: Optional[str] = None,
        parent_audit_id: Optional[uuid.UUID] = None,
    ) -> AuditLog:
        """
        Append a new audit entry and return it (flushed, not committed).

        Args:
            action: Action performed
            entity_type: Type of the affected entity (e.g. 'approval_request')
            description: Human-readable summary
            entity_id: ID of the affected entity
            context: Actor context; defaults to an anonymous application actor
            previous_values: State before the action
            new_values: State after the action
            business_context: Additional business metadata
            risk_level: Impact assessment
            compliance_flags: Compliance-related tags
            source: Overrides the context's source
            correlation_id: Chain to append to (None = standalone entry)
            parent_audit_id: Entry this one corrects or follows up on
        """
        context = context or AuditContext()
        entry = AuditLog(
            id=uuid.uuid4(),
            action=_enum_value(action),
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            description=description,
            user_id=context.user_id,
            user_name=context.user_name,
            user_role=_enum_value(context.user_role) if context.user_role else None,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            session_id=context.session_id,
            previous_values=to_jsonable(previous_values),
            new_values=to_jsonable(new_values),
            business_context=to_jsonable(business_context),
            risk_level=_enum_value(risk_level),
            compliance_flags=list(compliance_flags or []),
            source=_enum_value(source or context.source),
            correlation_id=str(correlation_id) if correlation_id is not None else None,
            parent_audit_id=parent_audit_id,
            timestamp=utcnow(),
        )

        previous_checksum = None
        if entry.correlation_id is not None:
            head = self._chain_head(entry.correlation_id)
            entry.sequence = (head.sequence if head else 0) + 1
            previous_checksum = head.checksum if head else None

        entry.checksum = compute_checksum(entry_fields(entry), previous_checksum)

        self.db.add(entry)
        self.db.flush()

        if entry.risk_level in (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value):
            logger.warning(
                "High-risk audit event: %s on %s:%s by %s (%s)",
                entry.action, entry.entity_type, entry.entity_id, entry.user_id, entry.description,
            )
        return entry

    def append_correction(
        self,
        original_id: uuid.UUID,
        *,
        description: str,
        new_values: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None,
        risk_level: Union[RiskLevel, str] = RiskLevel.MEDIUM,
    ) -> AuditLog:
        """Record a correction as a new entry linked to the original."""
        original = self.db.get(AuditLog, original_id)
        if original is None:
            raise NotFoundError(f"Audit entry {original_id} not found")

        return self.append(
            AuditAction.CORRECT,
            original.entity_type,
            entity_id=original.entity_id,
            description=description,
            context=context,
            previous_values=original.new_values,
            new_values=new_values,
            risk_level=risk_level,
            correlation_id=original.correlation_id,
            parent_audit_id=original.id,
        )

    def list_entries(
        self,
        *,
        correlation_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
        risk_level: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLog]:
        query = self.db.query(AuditLog)
        if correlation_id is not None:
            query = query.filter(AuditLog.correlation_id == correlation_id)
        if entity_type:
            query = query.filter(AuditLog.entity_type == entity_type)
        if entity_id:
            query = query.filter(AuditLog.entity_id == entity_id)
        if action:
            query = query.filter(AuditLog.action == action)
        if risk_level:
            query = query.filter(AuditLog.risk_level == risk_level)

        if correlation_id is not None:
            query = query.order_by(AuditLog.sequence.asc())
        else:
            query = query.order_by(AuditLog.timestamp.desc())
        return query.offset(offset).limit(limit).all()

    def verify(self, correlation_id: str, *, raise_on_failure: bool = False) -> VerificationResult:
        """
        Replay a correlation chain and recompute every checksum.

        Reports the first entry whose checksum does not match, or whose
        sequence number breaks the chain (a removed or injected entry).

        Raises:
            IntegrityError: If raise_on_failure and the chain is broken
        """
        entries = (
            self.db.query(AuditLog)
            .filter(AuditLog.correlation_id == correlation_id)
            .order_by(AuditLog.sequence.asc())
            .populate_existing()
            .all()
        )

        previous_checksum = None
        for expected_sequence, entry in enumerate(entries, start=1):
            reason = None
            if entry.sequence != expected_sequence:
                reason = f"sequence gap: expected {expected_sequence}, found {entry.sequence}"
            elif compute_checksum(entry_fields(entry), previous_checksum) != entry.checksum:
                reason = "checksum mismatch"

            if reason:
                result = VerificationResult(
                    correlation_id=correlation_id,
                    valid=False,
                    entries_checked=expected_sequence,
                    first_invalid_id=str(entry.id),
                    first_invalid_sequence=entry.sequence,
                    reason=reason,
                )
                self._report_failure(result)
                if raise_on_failure:
                    raise IntegrityError(
                        f"Audit chain {correlation_id} failed verification at entry {entry.id}: {reason}",
                        correlation_id=correlation_id,
                        audit_id=str(entry.id),
                    )
                return result
            previous_checksum = entry.checksum

        return VerificationResult(
            correlation_id=correlation_id,
            valid=True,
            entries_checked=len(entries),
        )

    def verify_entry(self, audit_id: uuid.UUID) -> bool:
        """Check a single entry against its stored predecessor."""
        entry = self.db.get(AuditLog, audit_id, populate_existing=True)
        if entry is None:
            raise NotFoundError(f"Audit entry {audit_id} not found")

        previous_checksum = None
        if entry.correlation_id is not None and entry.sequence and entry.sequence > 1:
            previous = (
                self.db.query(AuditLog)
                .filter(
                    AuditLog.correlation_id == entry.correlation_id,
                    AuditLog.sequence == entry.sequence - 1,
                )
                .first()
            )
            if previous is None:
                return False
            previous_checksum = previous.checksum
        return compute_checksum(entry_fields(entry), previous_checksum) == entry.checksum

    def _chain_head(self, correlation_id: str) -> Optional[AuditLog]:
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.correlation_id == correlation_id)
            .order_by(AuditLog.sequence.desc())
            .first()
        )

    def _report_failure(self, result: VerificationResult) -> None:
        logger.critical(
            "AUDIT INTEGRITY FAILURE: chain %s broken at entry %s (%s)",
            result.correlation_id, result.first_invalid_id, result.reason,
        )
        if self.event_bus is not None:
            self.event_bus.publish(
                ApprovalEvent(
                    event_type=ApprovalEventType.AUDIT_INTEGRITY_FAILURE,
                    entity_type="audit_log",
                    entity_id=result.first_invalid_id,
                    payload=result.to_dict(),
                )
            )
