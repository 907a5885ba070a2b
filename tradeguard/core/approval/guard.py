"""Approval guards: pre-flight checks before a protected operation.

A guard is evaluated before any approval request exists. It decides whether
the operation may proceed without approval, needs an approval request, or
must be blocked because no approver path exists. Guards fail closed: an
operation type without a configured guard is treated as if it had one that
blocks when no chain applies.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from tradeguard.core.audit import AuditContext, AuditLogService
from tradeguard.core.config import Settings, get_settings
from tradeguard.core.errors import ConflictError, GuardBlockedError, NotFoundError, ValidationError
from tradeguard.core.roles import RoleSet
from tradeguard.db.models.audit import AuditAction, AuditSource, RiskLevel
from tradeguard.db.models.chain import ApprovalChain
from tradeguard.db.models.guard import ApprovalGuard
from tradeguard.services.notifications import ApprovalEvent, ApprovalEventBus, ApprovalEventType

from .chains import ChainRegistry
from .context import ApprovalContext, OperationType, to_amount

logger = logging.getLogger(__name__)


class GuardDecision(str, Enum):
    """Outcome of a guard evaluation."""
    PROCEED_WITHOUT_APPROVAL = "proceed_without_approval"
    REQUIRE_APPROVAL = "require_approval"
    BLOCKED = "blocked"


class GuardReason(str, Enum):
    """Why the guard reached its decision."""
    GUARD_DISABLED = "guard_disabled"
    BELOW_THRESHOLD = "below_threshold"
    ROLE_EXCEPTION = "role_exception"
    CHAIN_MATCHED = "chain_matched"
    NO_CHAIN_NOT_BLOCKING = "no_chain_not_blocking"
    EMERGENCY_OVERRIDE = "emergency_override"
    NO_APPROVER_CONFIGURED = "no_approver_configured"


REASON_MESSAGES = {
    GuardReason.GUARD_DISABLED: "Guard is disabled for this operation",
    GuardReason.BELOW_THRESHOLD: "Amount is below the guard threshold",
    GuardReason.ROLE_EXCEPTION: "Requester role is exempt from approval",
    GuardReason.CHAIN_MATCHED: "Approval required",
    GuardReason.NO_CHAIN_NOT_BLOCKING: "No approval chain applies; guard does not block",
    GuardReason.EMERGENCY_OVERRIDE: "Emergency override by authorised role",
    GuardReason.NO_APPROVER_CONFIGURED: "No approver is configured for this operation",
}

GUARD_FIELDS = {
    "name",
    "description",
    "is_enabled",
    "amount_threshold",
    "role_exceptions",
    "block_if_no_approver",
    "allow_emergency_override",
    "emergency_override_roles",
    "notify_on_bypass",
    "audit_all_attempts",
}


@dataclass
class GuardEvaluation:
    """Result of evaluating a guard for one operation."""
    operation_type: OperationType
    decision: GuardDecision
    reason: GuardReason
    chain: Optional[ApprovalChain] = None
    audit_id: Optional[uuid.UUID] = None
    guard_id: Optional[uuid.UUID] = None

    @property
    def message(self) -> str:
        return REASON_MESSAGES[self.reason]

    @property
    def proceed(self) -> bool:
        return self.decision == GuardDecision.PROCEED_WITHOUT_APPROVAL

    @property
    def requires_approval(self) -> bool:
        return self.decision == GuardDecision.REQUIRE_APPROVAL

    @property
    def blocked(self) -> bool:
        return self.decision == GuardDecision.BLOCKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_type": self.operation_type.value,
            "decision": self.decision.value,
            "reason": self.reason.value,
            "message": self.message,
            "chain_id": str(self.chain.id) if self.chain else None,
            "chain_name": self.chain.name if self.chain else None,
            "audit_id": str(self.audit_id) if self.audit_id else None,
            "guard_id": str(self.guard_id) if self.guard_id else None,
        }


def guard_to_dict(guard: ApprovalGuard) -> Dict[str, Any]:
    return {
        "id": str(guard.id) if guard.id else None,
        "operation_type": guard.operation_type,
        "name": guard.name,
        "description": guard.description,
        "is_enabled": guard.is_enabled,
        "amount_threshold": str(guard.amount_threshold) if guard.amount_threshold is not None else None,
        "role_exceptions": list(guard.role_exceptions or []),
        "block_if_no_approver": guard.block_if_no_approver,
        "allow_emergency_override": guard.allow_emergency_override,
        "emergency_override_roles": list(guard.emergency_override_roles or []),
        "notify_on_bypass": guard.notify_on_bypass,
        "audit_all_attempts": guard.audit_all_attempts,
    }


class ApprovalGuardService:
    """
    Evaluates and manages approval guards.

    Evaluation order:
    1. Guard disabled → proceed
    2. Requester role in role exceptions → proceed
    3. Amount below the guard threshold → proceed
    4. A chain resolves → approval required
    5. No chain, guard does not block → proceed
    6. No chain, emergency override allowed for the role → proceed (high risk)
    7. Otherwise → blocked
    """

    def __init__(
        self,
        db: Session,
        *,
        registry: Optional[ChainRegistry] = None,
        audit: Optional[AuditLogService] = None,
        event_bus: Optional[ApprovalEventBus] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.audit = audit or AuditLogService(db, event_bus)
        self.registry = registry or ChainRegistry(db, self.audit)
        self.event_bus = event_bus
        self.settings = settings or get_settings()

    def get_guard(self, operation_type) -> Optional[ApprovalGuard]:
        operation_type = OperationType.parse(operation_type)
        return (
            self.db.query(ApprovalGuard)
            .filter(ApprovalGuard.operation_type == operation_type.value)
            .first()
        )

    def list_guards(self) -> List[ApprovalGuard]:
        return self.db.query(ApprovalGuard).order_by(ApprovalGuard.operation_type).all()

    def effective_guard(self, operation_type) -> ApprovalGuard:
        """The configured guard, or the fail-closed default (not persisted)."""
        operation_type = OperationType.parse(operation_type)
        guard = self.get_guard(operation_type)
        if guard is not None:
            return guard
        return ApprovalGuard(
            operation_type=operation_type.value,
            name=f"default:{operation_type.value}",
            is_enabled=True,
            amount_threshold=None,
            role_exceptions=[],
            block_if_no_approver=self.settings.default_block_if_no_approver,
            allow_emergency_override=False,
            emergency_override_roles=[],
            notify_on_bypass=True,
            audit_all_attempts=True,
            created_by="system",
        )

    def evaluate(
        self,
        operation_type,
        context: ApprovalContext,
        *,
        correlation_id: Optional[str] = None,
    ) -> GuardEvaluation:
        """
        Decide whether an operation may proceed, needs approval, or is blocked.

        Blocked and emergency-override decisions are always audited at high
        risk; other decisions are audited when the guard audits all attempts.
        """
        operation_type = OperationType.parse(operation_type)
        guard = self.effective_guard(operation_type)
        chain = None

        if not guard.is_enabled:
            decision, reason = GuardDecision.PROCEED_WITHOUT_APPROVAL, GuardReason.GUARD_DISABLED
        elif context.requester_role in guard.role_exception_set:
            decision, reason = GuardDecision.PROCEED_WITHOUT_APPROVAL, GuardReason.ROLE_EXCEPTION
        elif self._below_threshold(guard, context):
            decision, reason = GuardDecision.PROCEED_WITHOUT_APPROVAL, GuardReason.BELOW_THRESHOLD
        else:
            chain = self.registry.resolve(operation_type, context)
            if chain is not None:
                decision, reason = GuardDecision.REQUIRE_APPROVAL, GuardReason.CHAIN_MATCHED
            elif not guard.block_if_no_approver:
                decision, reason = GuardDecision.PROCEED_WITHOUT_APPROVAL, GuardReason.NO_CHAIN_NOT_BLOCKING
            elif guard.allow_emergency_override and context.requester_role in guard.emergency_override_role_set:
                decision, reason = GuardDecision.PROCEED_WITHOUT_APPROVAL, GuardReason.EMERGENCY_OVERRIDE
            else:
                decision, reason = GuardDecision.BLOCKED, GuardReason.NO_APPROVER_CONFIGURED

        evaluation = GuardEvaluation(
            operation_type=operation_type,
            decision=decision,
            reason=reason,
            chain=chain,
            guard_id=guard.id,
        )

        high_risk = reason in (GuardReason.EMERGENCY_OVERRIDE, GuardReason.NO_APPROVER_CONFIGURED)
        if high_risk or guard.audit_all_attempts:
            entry = self._audit(guard, evaluation, context, correlation_id)
            evaluation.audit_id = entry.id
            self.db.commit()

        if reason == GuardReason.EMERGENCY_OVERRIDE:
            logger.warning(
                "Emergency override of %s guard by %s (%s)",
                operation_type.value, context.requester_id, context.requester_role.value,
            )
            if guard.notify_on_bypass:
                self._publish(ApprovalEventType.GUARD_BYPASS, evaluation, context)
        elif decision == GuardDecision.BLOCKED:
            logger.warning(
                "Blocked %s by %s: %s",
                operation_type.value, context.requester_id, evaluation.message,
            )
            self._publish(ApprovalEventType.GUARD_BLOCKED, evaluation, context)

        return evaluation

    def enforce(
        self,
        operation_type,
        context: ApprovalContext,
        *,
        correlation_id: Optional[str] = None,
    ) -> GuardEvaluation:
        """
        Evaluate and raise if the operation is blocked.

        Raises:
            GuardBlockedError: If no approver path and no override exists
        """
        evaluation = self.evaluate(operation_type, context, correlation_id=correlation_id)
        if evaluation.blocked:
            raise GuardBlockedError(
                f"{evaluation.operation_type.value} blocked: {evaluation.message}",
                operation_type=evaluation.operation_type.value,
                reason=evaluation.reason.value,
            )
        return evaluation

    def configure_guard(
        self,
        operation_type,
        *,
        created_by: str,
        name: Optional[str] = None,
        actor: Optional[AuditContext] = None,
        **settings: Any,
    ) -> ApprovalGuard:
        """
        Create the guard for an operation type.

        Raises:
            ConflictError: If a guard already exists for the operation type
            ValidationError: If a setting is unknown or invalid
        """
        operation_type = OperationType.parse(operation_type)
        if self.get_guard(operation_type) is not None:
            raise ConflictError(f"A guard already exists for {operation_type.value}")

        guard = ApprovalGuard(
            id=uuid.uuid4(),
            operation_type=operation_type.value,
            name=name or f"{operation_type.value} guard",
            created_by=created_by,
            is_enabled=True,
            role_exceptions=[],
            block_if_no_approver=True,
            allow_emergency_override=False,
            emergency_override_roles=[],
            notify_on_bypass=True,
            audit_all_attempts=True,
        )
        self._apply(guard, settings)

        self.db.add(guard)
        self.db.flush()
        self.audit.append(
            AuditAction.CREATE,
            "approval_guard",
            entity_id=str(guard.id),
            description=f"Approval guard configured for {guard.operation_type}",
            context=self._admin_context(actor, created_by),
            new_values=guard_to_dict(guard),
            risk_level=RiskLevel.MEDIUM,
            correlation_id=str(guard.id),
        )
        self.db.commit()
        logger.info("Configured approval guard for %s", guard.operation_type)
        return guard

    def update_guard(
        self,
        operation_type,
        *,
        actor: Optional[AuditContext] = None,
        **changes: Any,
    ) -> ApprovalGuard:
        """
        Change an existing guard.

        Raises:
            NotFoundError: If no guard exists for the operation type
            ValidationError: If a setting is unknown or invalid
        """
        guard = self.get_guard(operation_type)
        if guard is None:
            raise NotFoundError(f"No guard configured for {operation_type}")

        before = guard_to_dict(guard)
        try:
            self._apply(guard, changes)
        except ValidationError:
            self.db.rollback()
            raise

        self.db.flush()
        risk = RiskLevel.HIGH if before["is_enabled"] and not guard.is_enabled else RiskLevel.MEDIUM
        self.audit.append(
            AuditAction.UPDATE,
            "approval_guard",
            entity_id=str(guard.id),
            description=f"Approval guard for {guard.operation_type} updated",
            context=self._admin_context(actor, None),
            previous_values=before,
            new_values=guard_to_dict(guard),
            risk_level=risk,
            correlation_id=str(guard.id),
        )
        self.db.commit()
        return guard

    @staticmethod
    def _apply(guard: ApprovalGuard, changes: Dict[str, Any]) -> None:
        unknown = set(changes) - GUARD_FIELDS
        if unknown:
            raise ValidationError(f"Unknown guard settings: {sorted(unknown)}")
        for key, value in changes.items():
            if key in ("role_exceptions", "emergency_override_roles"):
                value = RoleSet.from_config(value).to_list()
            elif key == "amount_threshold":
                value = to_amount(value)
                if value is not None and value < 0:
                    raise ValidationError("amount_threshold cannot be negative")
            setattr(guard, key, value)

        if guard.allow_emergency_override and not guard.emergency_override_roles:
            raise ValidationError("Emergency override requires at least one override role")

    @staticmethod
    def _below_threshold(guard: ApprovalGuard, context: ApprovalContext) -> bool:
        if guard.amount_threshold is None or context.amount is None:
            return False
        return context.amount < Decimal(guard.amount_threshold)

    def _audit(
        self,
        guard: ApprovalGuard,
        evaluation: GuardEvaluation,
        context: ApprovalContext,
        correlation_id: Optional[str],
    ):
        if evaluation.reason == GuardReason.EMERGENCY_OVERRIDE:
            action, risk = AuditAction.GUARD_BYPASS, RiskLevel.HIGH
        elif evaluation.blocked:
            action, risk = AuditAction.GUARD_BLOCK, RiskLevel.HIGH
        else:
            action, risk = AuditAction.GUARD_EVALUATE, RiskLevel.LOW

        flags = ["approval_guard"]
        if evaluation.reason == GuardReason.EMERGENCY_OVERRIDE:
            flags.append("emergency_override")

        return self.audit.append(
            action,
            context.entity_type or "approval_guard",
            entity_id=context.entity_id or (str(guard.id) if guard.id else None),
            description=f"Guard {evaluation.decision.value} for {evaluation.operation_type.value}: {evaluation.message}",
            context=AuditContext(
                user_id=context.requester_id,
                user_role=context.requester_role.value,
                source=AuditSource.APPLICATION,
            ),
            new_values={
                **evaluation.to_dict(),
                "amount": context.amount,
                "currency": context.currency,
            },
            business_context=context.business_context or None,
            risk_level=risk,
            compliance_flags=flags,
            correlation_id=correlation_id,
        )

    def _publish(self, event_type: ApprovalEventType, evaluation: GuardEvaluation, context: ApprovalContext) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(
            ApprovalEvent(
                event_type=event_type,
                entity_type=context.entity_type,
                entity_id=context.entity_id,
                payload={
                    **evaluation.to_dict(),
                    "requester_id": context.requester_id,
                    "requester_role": context.requester_role.value,
                    "amount": str(context.amount) if context.amount is not None else None,
                },
            )
        )

    @staticmethod
    def _admin_context(actor: Optional[AuditContext], user_id: Optional[str]) -> AuditContext:
        if actor is None:
            return AuditContext(user_id=user_id, source=AuditSource.ADMIN)
        return replace(actor, source=AuditSource.ADMIN)
