"""Approval service for managing approval request workflows.

Provides the high-level API business modules call into: create a request,
approve, reject or cancel it, check whether an entity is blocked, and
finally validate and consume an approval when the protected operation
executes. Every mutation runs in its own transaction with an optimistic
version check, writes a correlated audit entry, and publishes an event
after commit.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tradeguard.core.audit import AuditContext, AuditLogService
from tradeguard.core.audit.checksum import canonicalize, to_jsonable
from tradeguard.core.clock import utcnow
from tradeguard.core.config import Settings, get_settings
from tradeguard.core.errors import (
    ApprovalEngineError,
    AuthorizationError,
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from tradeguard.core.roles import Role
from tradeguard.db.models.approval import ApprovalRequest
from tradeguard.db.models.audit import AuditAction, AuditSource, RiskLevel
from tradeguard.db.models.chain import ApprovalChain
from tradeguard.db.models.user import User
from tradeguard.services.notifications import ApprovalEvent, ApprovalEventBus, ApprovalEventType

from .chains import ChainRegistry
from .context import CORE_FIELDS, ApprovalContext, OperationType, to_amount
from .machine import (
    DUPLICATE_APPROVAL,
    ApprovalStateMachine,
    TransitionOutcome,
    auto_approval_deadline,
    eligible_roles,
)
from .states import OPEN_STATES, ApprovalStatus, ApprovalTransition

logger = logging.getLogger(__name__)

OPEN_STATUS_VALUES = [s.value for s in OPEN_STATES]

AUDIT_ACTIONS = {
    ApprovalTransition.APPROVE.value: AuditAction.APPROVE,
    DUPLICATE_APPROVAL: AuditAction.APPROVE,
    ApprovalTransition.REJECT.value: AuditAction.REJECT,
    ApprovalTransition.CANCEL.value: AuditAction.CANCEL,
    ApprovalTransition.ESCALATE.value: AuditAction.ESCALATE,
    ApprovalTransition.AUTO_APPROVE.value: AuditAction.AUTO_APPROVE,
}

RESOLUTION_EVENTS = {
    ApprovalStatus.APPROVED: ApprovalEventType.APPROVAL_APPROVED,
    ApprovalStatus.REJECTED: ApprovalEventType.APPROVAL_REJECTED,
    ApprovalStatus.CANCELLED: ApprovalEventType.APPROVAL_CANCELLED,
    ApprovalStatus.ESCALATED: ApprovalEventType.APPROVAL_ESCALATED,
}

Transition = Callable[[ApprovalStateMachine], Optional[TransitionOutcome]]


class BlockingReason(str, Enum):
    """Why a protected operation on an entity cannot simply proceed."""
    AWAITING_APPROVAL = "awaiting_approval"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    APPROVED = "approved"  # approved but not yet consumed


@dataclass
class ExecutionRequest:
    """The operation a caller is about to execute under an approval."""
    operation_type: str
    requester_id: str
    operation_data: Dict[str, Any] = field(default_factory=dict)
    amount: Optional[Any] = None
    currency: Optional[str] = None
    operation_id: Optional[str] = None


@dataclass
class ExecutionValidation:
    valid: bool
    request_id: uuid.UUID
    errors: List[str] = field(default_factory=list)
    operation_checksum: Optional[str] = None


def generate_request_number(now: datetime) -> str:
    return f"APR-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


class ApprovalService:
    """
    High-level service for managing approval requests.

    Handles:
    - Creating requests (one open request per entity)
    - Approve / reject / cancel with optimistic-concurrency retries
    - Querying request status and blocking reasons
    - Single-use consumption of approved requests
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
        self.event_bus = event_bus
        self.audit = audit or AuditLogService(db, event_bus)
        self.registry = registry or ChainRegistry(db, self.audit)
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_request(
        self,
        operation_type,
        entity_type: str,
        entity_id: str,
        context: ApprovalContext,
        chain: Optional[ApprovalChain] = None,
    ) -> ApprovalRequest:
        """
        Open an approval request for an entity.

        Args:
            operation_type: Operation being gated
            entity_type: Type of the protected entity
            entity_id: ID of the protected entity
            context: Requester and business context
            chain: Governing chain; resolved from the registry when omitted

        Raises:
            ValidationError: If the operation type is unknown or no chain applies
            ConflictError: If an open request already exists for the entity
        """
        operation_type = OperationType.parse(operation_type)
        entity_id = str(entity_id)
        context = replace(context, entity_type=entity_type, entity_id=entity_id)

        if chain is None:
            chain = self.registry.resolve(operation_type, context)
            if chain is None:
                raise ValidationError(
                    f"No approval chain applies to {operation_type.value}",
                    details={"operation_type": operation_type.value},
                )
        elif not chain.is_active or chain.operation_type != operation_type.value:
            raise ValidationError(f"Chain '{chain.name}' cannot govern {operation_type.value}")

        existing = self.get_open_request_for_entity(entity_type, entity_id)
        if existing is not None:
            raise self._conflict(entity_type, entity_id, existing)

        now = utcnow()
        if chain.require_all_approvers:
            eligible = self.eligible_approver_ids(chain, exclude=context.requester_id)
            total_required = max(chain.min_approvers, len(eligible))
        else:
            total_required = chain.min_approvers

        request = ApprovalRequest(
            id=uuid.uuid4(),
            request_number=generate_request_number(now),
            operation_type=operation_type.value,
            chain_id=chain.id,
            entity_type=entity_type,
            entity_id=entity_id,
            amount=context.amount,
            currency=context.currency,
            description=context.description or f"{operation_type.value} on {entity_type}:{entity_id}",
            request_data=to_jsonable(context.request_data) or {},
            business_context=to_jsonable(context.business_context) or None,
            status=ApprovalStatus.PENDING.value,
            total_required_approvals=total_required,
            current_approvals=0,
            current_approver_level=0,
            requested_at=now,
            auto_approval_at=auto_approval_deadline(chain, now),
            requested_by=context.requester_id,
            requester_role=context.requester_role.value,
            approval_history=[],
        )

        self.db.add(request)
        try:
            self.db.flush()
        except DBIntegrityError:
            # Lost the race against a concurrent create for the same entity
            self.db.rollback()
            existing = self.get_open_request_for_entity(entity_type, entity_id)
            raise self._conflict(entity_type, entity_id, existing) from None

        self.audit.append(
            AuditAction.CREATE,
            "approval_request",
            entity_id=str(request.id),
            description=f"Approval request {request.request_number} created for {entity_type}:{entity_id}",
            context=AuditContext(
                user_id=context.requester_id,
                user_role=context.requester_role.value,
                source=AuditSource.APPLICATION,
            ),
            new_values=self.request_to_dict(request),
            business_context={"operation_type": operation_type.value, "chain": chain.name},
            risk_level=RiskLevel.MEDIUM,
            correlation_id=str(request.id),
        )
        self.db.commit()

        logger.info(
            "Approval request %s created for %s:%s under chain %s (requires %d)",
            request.request_number, entity_type, entity_id, chain.name, total_required,
        )
        self._publish(ApprovalEventType.APPROVAL_CREATED, request)
        return request

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def approve(
        self,
        request_id: uuid.UUID,
        approver_id: str,
        comment: Optional[str] = None,
        *,
        audit_context: Optional[AuditContext] = None,
    ) -> ApprovalRequest:
        """
        Record an approval. Repeat approvals by the same approver are not
        credited twice.

        Raises:
            NotFoundError: If the request does not exist
            StateError: If the request is terminal
            AuthorizationError: If the approver is not eligible
            ConcurrentModificationError: If retries were exhausted
        """
        approver = self._require_user(approver_id)
        role = Role.parse(approver.role)

        def apply(machine: ApprovalStateMachine) -> TransitionOutcome:
            eligible = None
            if machine.chain.require_all_approvers:
                eligible = self.eligible_approver_ids(machine.chain, exclude=machine.request.requested_by)
            return machine.approve(approver_id, role, comment=comment, eligible_approver_ids=eligible)

        request, _ = self.transition(
            request_id, apply, actor=self._actor_context(approver, audit_context),
        )
        return request

    def reject(
        self,
        request_id: uuid.UUID,
        approver_id: str,
        reason: str,
        *,
        audit_context: Optional[AuditContext] = None,
    ) -> ApprovalRequest:
        """
        Veto a request. A single eligible rejection is final.

        Raises:
            NotFoundError: If the request does not exist
            StateError: If the request is terminal
            AuthorizationError: If the approver is not eligible
            ValidationError: If no reason is given
        """
        approver = self._require_user(approver_id)
        role = Role.parse(approver.role)
        request, _ = self.transition(
            request_id,
            lambda machine: machine.reject(approver_id, role, reason),
            actor=self._actor_context(approver, audit_context),
        )
        return request

    def cancel(
        self,
        request_id: uuid.UUID,
        requester_id: str,
        reason: Optional[str] = None,
        *,
        audit_context: Optional[AuditContext] = None,
    ) -> ApprovalRequest:
        """
        Withdraw an open request. Only the requester or an admin may cancel.

        Raises:
            NotFoundError: If the request does not exist
            StateError: If the request is terminal
            AuthorizationError: If the actor is neither requester nor admin
        """
        user = self.db.get(User, requester_id)
        if user is not None and not user.is_active:
            raise AuthorizationError(f"User {requester_id} is inactive")
        request = self.get_request(request_id)
        if user is not None:
            role = Role.parse(user.role)
        elif requester_id == request.requested_by:
            role = Role.parse(request.requester_role or Role.VIEWER)
        else:
            raise AuthorizationError(f"Unknown user {requester_id}")

        actor = self._actor_context(user, audit_context) if user else AuditContext(
            user_id=requester_id, user_role=role.value, source=AuditSource.APPLICATION,
        )
        request, _ = self.transition(
            request_id,
            lambda machine: machine.cancel(requester_id, role, reason),
            actor=actor,
        )
        return request

    def transition(
        self,
        request_id: uuid.UUID,
        apply: Transition,
        *,
        actor: AuditContext,
        now: Optional[datetime] = None,
    ) -> Tuple[ApprovalRequest, Optional[TransitionOutcome]]:
        """
        Apply a state-machine operation with optimistic concurrency.

        ``apply`` receives a machine over freshly loaded state. If the row
        changed underneath us the transaction is rolled back and ``apply``
        runs again against the new state. Returning None means there was
        nothing to do.

        Raises:
            ConcurrentModificationError: If every attempt hit a stale version
        """
        limit = max(1, self.settings.optimistic_retry_limit)
        for attempt in range(1, limit + 1):
            request = self.get_request(request_id)
            machine = ApprovalStateMachine(request, request.chain, now=now)
            try:
                outcome = apply(machine)
            except ApprovalEngineError:
                self.db.rollback()
                raise

            if outcome is None:
                self.db.rollback()
                return request, None

            try:
                self.db.flush()
                self._audit_transition(request, outcome, actor)
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.info(
                    "Request %s changed concurrently (attempt %d/%d), retrying",
                    request_id, attempt, limit,
                )
                continue

            self._after_commit(request, outcome)
            return request, outcome

        raise ConcurrentModificationError(
            f"Approval request {request_id} kept changing; gave up after {limit} attempts",
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_request(self, request_id: uuid.UUID) -> ApprovalRequest:
        request = self.db.get(ApprovalRequest, request_id)
        if request is None:
            raise NotFoundError(f"Approval request {request_id} not found")
        return request

    def get_open_request_for_entity(self, entity_type: str, entity_id: str) -> Optional[ApprovalRequest]:
        return (
            self.db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.entity_type == entity_type,
                ApprovalRequest.entity_id == str(entity_id),
                ApprovalRequest.status.in_(OPEN_STATUS_VALUES),
            )
            .first()
        )

    def list_requests(
        self,
        *,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        requested_by: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ApprovalRequest]:
        query = self._filtered(
            status=status,
            operation_type=operation_type,
            requested_by=requested_by,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        return query.order_by(ApprovalRequest.requested_at.desc()).offset(offset).limit(limit).all()

    def count_requests(
        self,
        *,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        requested_by: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> int:
        return self._filtered(
            status=status,
            operation_type=operation_type,
            requested_by=requested_by,
            entity_type=entity_type,
            entity_id=entity_id,
        ).count()

    def _filtered(self, *, status, operation_type, requested_by, entity_type, entity_id):
        query = self.db.query(ApprovalRequest)
        if status:
            try:
                status = ApprovalStatus(status)
            except ValueError:
                raise ValidationError(
                    f"Unknown approval status: {status!r}",
                    details={"allowed": [s.value for s in ApprovalStatus]},
                ) from None
            query = query.filter(ApprovalRequest.status == status.value)
        if operation_type:
            query = query.filter(ApprovalRequest.operation_type == OperationType.parse(operation_type).value)
        if requested_by:
            query = query.filter(ApprovalRequest.requested_by == requested_by)
        if entity_type:
            query = query.filter(ApprovalRequest.entity_type == entity_type)
        if entity_id:
            query = query.filter(ApprovalRequest.entity_id == str(entity_id))
        return query

    def list_pending_for_approver(self, approver_id: str, limit: int = 50) -> List[ApprovalRequest]:
        """Open requests the user may act on and has not yet approved at the current level."""
        user = self._require_user(approver_id)
        role = Role.parse(user.role)

        pending = []
        open_requests = (
            self.db.query(ApprovalRequest)
            .filter(ApprovalRequest.status.in_(OPEN_STATUS_VALUES))
            .order_by(ApprovalRequest.requested_at.asc())
            .all()
        )
        for request in open_requests:
            if request.requested_by == approver_id:
                continue
            machine = ApprovalStateMachine(request, request.chain)
            if machine.is_eligible(role) and not machine.has_approved(approver_id):
                pending.append(request)
            if len(pending) >= limit:
                break
        return pending

    def blocking_reason(self, entity_type: str, entity_id: str) -> Optional[BlockingReason]:
        """
        Report why an entity's protected operation is held up.

        Returns None when the entity has no request or its approval has
        already been consumed.
        """
        latest = (
            self.db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.entity_type == entity_type,
                ApprovalRequest.entity_id == str(entity_id),
            )
            .order_by(ApprovalRequest.requested_at.desc())
            .first()
        )
        if latest is None:
            return None

        status = ApprovalStatus(latest.status)
        if status in OPEN_STATES:
            return BlockingReason.AWAITING_APPROVAL
        if status == ApprovalStatus.REJECTED:
            return BlockingReason.REJECTED
        if status == ApprovalStatus.CANCELLED:
            return BlockingReason.CANCELLED
        if latest.is_consumed:
            return None
        return BlockingReason.APPROVED

    # ------------------------------------------------------------------
    # Execution binding
    # ------------------------------------------------------------------

    def validate_execution(
        self,
        request_id: uuid.UUID,
        operation: ExecutionRequest,
        *,
        now: Optional[datetime] = None,
    ) -> ExecutionValidation:
        """
        Check that an approval covers the operation about to execute.

        The approval is bound to the operation type, the requester, the
        amount (within tolerance), the currency and the operation's core
        fields, and is only valid for a limited window after approval.
        """
        request = self.get_request(request_id)
        now = now or utcnow()
        errors: List[str] = []

        if request.status != ApprovalStatus.APPROVED.value:
            errors.append(f"Request is {request.status}, not approved")
        if request.is_consumed:
            errors.append("Approval has already been used")
        if request.approved_at is not None:
            expires_at = request.approved_at + timedelta(hours=self.settings.approval_validity_hours)
            if now > expires_at:
                errors.append("Approval has expired")

        operation_type = OperationType.parse(operation.operation_type)
        if request.operation_type != operation_type.value:
            errors.append(f"Operation type mismatch: approved {request.operation_type}, got {operation_type.value}")
        if request.requested_by != operation.requester_id:
            errors.append("Operation is executed by a different user than the requester")

        amount = to_amount(operation.amount)
        if request.amount is not None or amount is not None:
            if request.amount is None or amount is None:
                errors.append("Amount mismatch")
            elif abs(Decimal(request.amount) - amount) > Decimal(str(self.settings.amount_tolerance)):
                errors.append(f"Amount mismatch: approved {request.amount}, got {amount}")

        if request.currency and operation.currency and request.currency != operation.currency.upper():
            errors.append(f"Currency mismatch: approved {request.currency}, got {operation.currency}")

        approved_data = request.request_data or {}
        current_data = to_jsonable(operation.operation_data) or {}
        for name in CORE_FIELDS.get(operation_type, ()):
            if name in approved_data and str(approved_data.get(name)) != str(current_data.get(name)):
                errors.append(f"Field '{name}' changed after approval")

        return ExecutionValidation(
            valid=not errors,
            request_id=request.id,
            errors=errors,
            operation_checksum=self._operation_checksum(operation_type, operation, current_data),
        )

    def consume(
        self,
        request_id: uuid.UUID,
        operation: ExecutionRequest,
        *,
        audit_context: Optional[AuditContext] = None,
    ) -> ApprovalRequest:
        """
        Mark an approval as used by the operation. Approvals are single-use.

        Raises:
            StateError: If the request is not approved, expired or already used
            ValidationError: If the operation does not match what was approved
        """
        validation = self.validate_execution(request_id, operation)
        if not validation.valid:
            request = self.get_request(request_id)
            state_problem = (
                request.is_consumed
                or request.status != ApprovalStatus.APPROVED.value
                or any("expired" in e for e in validation.errors)
            )
            error_cls = StateError if state_problem else ValidationError
            message = "Approval cannot be used: " + "; ".join(validation.errors)
            self.db.rollback()
            if error_cls is StateError:
                raise StateError(message, status=request.status)
            raise ValidationError(message, details={"errors": validation.errors})

        request = self.get_request(request_id)
        now = utcnow()
        result = self.db.execute(
            update(ApprovalRequest)
            .where(
                ApprovalRequest.id == request.id,
                ApprovalRequest.status == ApprovalStatus.APPROVED.value,
                ApprovalRequest.is_consumed.is_(False),
            )
            .values(
                is_consumed=True,
                consumed_at=now,
                consumed_by=operation.requester_id,
                consumed_operation_id=operation.operation_id,
                operation_checksum=validation.operation_checksum,
                version=ApprovalRequest.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise StateError("Approval has already been used", status=ApprovalStatus.APPROVED.value)

        self.audit.append(
            AuditAction.CONSUME,
            "approval_request",
            entity_id=str(request.id),
            description=f"Approval {request.request_number} used by {operation.operation_type}",
            context=audit_context or AuditContext(user_id=operation.requester_id),
            new_values={
                "operation_id": operation.operation_id,
                "operation_checksum": validation.operation_checksum,
            },
            risk_level=RiskLevel.MEDIUM,
            correlation_id=str(request.id),
        )
        self.db.commit()
        self.db.refresh(request)

        self._publish(ApprovalEventType.APPROVAL_CONSUMED, request)
        return request

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def request_to_dict(self, request: ApprovalRequest) -> Dict[str, Any]:
        return {
            "id": str(request.id),
            "request_number": request.request_number,
            "operation_type": request.operation_type,
            "chain_id": str(request.chain_id),
            "entity_type": request.entity_type,
            "entity_id": request.entity_id,
            "amount": str(request.amount) if request.amount is not None else None,
            "currency": request.currency,
            "description": request.description,
            "status": request.status,
            "total_required_approvals": request.total_required_approvals,
            "current_approvals": request.current_approvals,
            "current_approver_level": request.current_approver_level,
            "requested_at": request.requested_at.isoformat() if request.requested_at else None,
            "approved_at": request.approved_at.isoformat() if request.approved_at else None,
            "rejected_at": request.rejected_at.isoformat() if request.rejected_at else None,
            "escalated_at": request.escalated_at.isoformat() if request.escalated_at else None,
            "auto_approval_at": request.auto_approval_at.isoformat() if request.auto_approval_at else None,
            "requested_by": request.requested_by,
            "final_approved_by": request.final_approved_by,
            "final_rejected_by": request.final_rejected_by,
            "rejection_reason": request.rejection_reason,
            "escalation_reason": request.escalation_reason,
        }

    def eligible_approver_ids(self, chain: ApprovalChain, *, exclude: Optional[str] = None) -> Set[str]:
        roles = eligible_roles(chain).to_list()
        users = (
            self.db.query(User.id)
            .filter(User.role.in_(roles), User.is_active.is_(True))
            .all()
        )
        return {user_id for (user_id,) in users if user_id != exclude}

    def _require_user(self, user_id: str) -> User:
        user = self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise AuthorizationError(f"Unknown or inactive user {user_id}")
        return user

    @staticmethod
    def _actor_context(user: User, audit_context: Optional[AuditContext]) -> AuditContext:
        base = audit_context or AuditContext(source=AuditSource.APPLICATION)
        return replace(base, user_id=user.id, user_name=user.name, user_role=user.role)

    @staticmethod
    def _conflict(entity_type: str, entity_id: str, existing: Optional[ApprovalRequest]) -> ConflictError:
        return ConflictError(
            f"An approval request is already open for {entity_type}:{entity_id}",
            existing_request_id=str(existing.id) if existing else None,
        )

    @staticmethod
    def _operation_checksum(
        operation_type: OperationType,
        operation: ExecutionRequest,
        data: Dict[str, Any],
    ) -> str:
        bound = {
            "operation_type": operation_type.value,
            "requester_id": operation.requester_id,
            "amount": str(to_amount(operation.amount)) if operation.amount is not None else None,
            "currency": operation.currency.upper() if operation.currency else None,
            "fields": {name: data.get(name) for name in CORE_FIELDS.get(operation_type, ())},
        }
        return hashlib.sha256(canonicalize(bound).encode("utf-8")).hexdigest()

    def _audit_transition(self, request: ApprovalRequest, outcome: TransitionOutcome, actor: AuditContext) -> None:
        if outcome.action == DUPLICATE_APPROVAL:
            description = f"Repeat approval of {request.request_number} by {actor.user_id} (not counted)"
            risk = RiskLevel.LOW
        elif outcome.transition == ApprovalTransition.AUTO_APPROVE:
            description = f"Approval request {request.request_number} auto-approved"
            risk = RiskLevel.HIGH
        elif outcome.transition is None:
            description = (
                f"Approval {request.current_approvals}/{request.total_required_approvals} "
                f"for {request.request_number} by {actor.user_id}"
            )
            risk = RiskLevel.LOW
        else:
            description = f"Approval request {request.request_number} {outcome.to_status.value}"
            risk = RiskLevel.MEDIUM

        self.audit.append(
            AUDIT_ACTIONS[outcome.action],
            "approval_request",
            entity_id=str(request.id),
            description=description,
            context=actor,
            previous_values={"status": outcome.from_status.value},
            new_values={
                "status": request.status,
                "current_approvals": request.current_approvals,
                "total_required_approvals": request.total_required_approvals,
                "current_approver_level": request.current_approver_level,
                "chain_id": str(request.chain_id),
                "history_entry": outcome.history_entry,
            },
            business_context={"entity_type": request.entity_type, "entity_id": request.entity_id},
            risk_level=risk,
            correlation_id=str(request.id),
        )

    def _after_commit(self, request: ApprovalRequest, outcome: TransitionOutcome) -> None:
        if outcome.transition is None:
            return
        logger.info(
            "Approval request %s: %s -> %s (%s)",
            request.request_number, outcome.from_status.value, outcome.to_status.value, outcome.action,
        )
        event_type = RESOLUTION_EVENTS.get(outcome.to_status)
        if event_type is not None:
            self._publish(event_type, request, {"action": outcome.action})

    def _publish(
        self,
        event_type: ApprovalEventType,
        request: ApprovalRequest,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(
            ApprovalEvent(
                event_type=event_type,
                entity_type=request.entity_type,
                entity_id=request.entity_id,
                request_id=str(request.id),
                payload={**self.request_to_dict(request), **(extra or {})},
            )
        )
