"""Approval chain registry.

Holds the configured approval policies and resolves which chain governs a
given operation. All configuration is validated here, before it is stored:
trigger conditions are parsed and type-checked, role lists are parsed into
``RoleSet``s, and the escalation graph is kept acyclic.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy.orm import Session

from tradeguard.core.audit import AuditContext, AuditLogService
from tradeguard.core.clock import utcnow
from tradeguard.core.errors import NotFoundError, ValidationError
from tradeguard.core.roles import RoleSet
from tradeguard.db.models.audit import AuditAction, AuditSource, RiskLevel
from tradeguard.db.models.chain import ApprovalChain

from .conditions import evaluate_condition, parse_condition
from .context import ApprovalContext, OperationType, to_amount

logger = logging.getLogger(__name__)

# Fields an administrator may change after creation
UPDATABLE_FIELDS = {
    "name",
    "description",
    "priority",
    "min_approvers",
    "require_all_approvers",
    "approver_roles",
    "amount_threshold",
    "role_restrictions",
    "conditions_json",
    "auto_approve_after_hours",
    "escalate_after_hours",
    "escalation_chain_id",
}


def chain_to_dict(chain: ApprovalChain) -> Dict[str, Any]:
    return {
        "id": str(chain.id),
        "operation_type": chain.operation_type,
        "name": chain.name,
        "description": chain.description,
        "priority": chain.priority,
        "min_approvers": chain.min_approvers,
        "require_all_approvers": chain.require_all_approvers,
        "approver_roles": list(chain.approver_roles or []),
        "amount_threshold": str(chain.amount_threshold) if chain.amount_threshold is not None else None,
        "role_restrictions": list(chain.role_restrictions or []),
        "conditions_json": chain.conditions_json,
        "auto_approve_after_hours": chain.auto_approve_after_hours,
        "escalate_after_hours": chain.escalate_after_hours,
        "escalation_chain_id": str(chain.escalation_chain_id) if chain.escalation_chain_id else None,
        "is_active": chain.is_active,
        "created_by": chain.created_by,
    }


class Criticality(str, Enum):
    """How badly an operation type needs an active chain."""

    CRITICAL = "critical"  # startup fails without one
    HIGH = "high"          # startup warns
    MEDIUM = "medium"


def criticality_levels(critical: Iterable[str], high: Iterable[str] = ()) -> Dict[str, Criticality]:
    levels = {op: Criticality.HIGH for op in high}
    levels.update({op: Criticality.CRITICAL for op in critical})
    return levels


@dataclass
class OperationCoverage:
    operation_type: str
    criticality: Optional[Criticality] = None
    chains: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def covered(self) -> bool:
        return bool(self.chains)


@dataclass
class ChainCoverage:
    """Which operation types are governed by at least one active chain."""
    operations: List[OperationCoverage]
    checked_at: datetime

    @property
    def covered(self) -> List[str]:
        return [o.operation_type for o in self.operations if o.covered]

    @property
    def missing(self) -> List[str]:
        return [o.operation_type for o in self.operations if not o.covered]

    def missing_at(self, criticality: Criticality) -> List[str]:
        return [o.operation_type for o in self.operations if not o.covered and o.criticality == criticality]

    def get(self, operation_type: str) -> OperationCoverage:
        return next(o for o in self.operations if o.operation_type == operation_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_operations": len(self.operations),
            "covered": len(self.covered),
            "missing": self.missing,
            "critical_missing": self.missing_at(Criticality.CRITICAL),
            "operations": [
                {
                    "operation_type": o.operation_type,
                    "criticality": o.criticality.value if o.criticality else None,
                    "covered": o.covered,
                    "chains": o.chains,
                    "warnings": o.warnings,
                }
                for o in self.operations
            ],
            "checked_at": self.checked_at,
        }


class ChainRegistry:
    """
    Configured approval chains and chain resolution.

    Configuration changes are committed immediately and recorded in the
    audit log with ``source=admin``, one correlation chain per approval
    chain.
    """

    def __init__(self, db: Session, audit: Optional[AuditLogService] = None):
        self.db = db
        self.audit = audit or AuditLogService(db)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def matches(
        self,
        chain: ApprovalChain,
        operation_type: OperationType,
        context: ApprovalContext,
    ) -> bool:
        """Evaluate a chain's trigger against a request context."""
        if chain.amount_threshold is not None:
            if context.amount is None or context.amount < Decimal(chain.amount_threshold):
                return False

        restrictions = chain.role_restriction_set
        if restrictions and context.requester_role not in restrictions:
            return False

        return evaluate_condition(parse_condition(chain.conditions_json), context, operation_type)

    def resolve(self, operation_type, context: ApprovalContext) -> Optional[ApprovalChain]:
        """
        Find the chain that governs an operation.

        Among matching active chains the highest priority wins; at equal
        priority the higher amount threshold (the more specific policy) wins.
        A tie on both is ambiguous and resolves to None.

        Returns:
            The governing chain, or None if no chain applies
        """
        operation_type = OperationType.parse(operation_type)
        candidates = (
            self.db.query(ApprovalChain)
            .filter(
                ApprovalChain.operation_type == operation_type.value,
                ApprovalChain.is_active.is_(True),
            )
            .order_by(ApprovalChain.priority.desc())
            .all()
        )

        matching = [c for c in candidates if self.matches(c, operation_type, context)]
        if not matching:
            return None

        top_priority = matching[0].priority
        top = [c for c in matching if c.priority == top_priority]
        if len(top) == 1:
            return top[0]

        def threshold(chain: ApprovalChain) -> Decimal:
            return Decimal(chain.amount_threshold) if chain.amount_threshold is not None else Decimal("-1")

        best = max(threshold(c) for c in top)
        winners = [c for c in top if threshold(c) == best]
        if len(winners) == 1:
            return winners[0]

        logger.warning(
            "Ambiguous approval chains for %s (priority %s): %s; treating as no chain",
            operation_type.value, top_priority, ", ".join(c.name for c in winners),
        )
        return None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_chain(self, chain_id: uuid.UUID) -> ApprovalChain:
        chain = self.db.get(ApprovalChain, chain_id)
        if chain is None:
            raise NotFoundError(f"Approval chain {chain_id} not found")
        return chain

    def list_chains(
        self,
        operation_type: Optional[str] = None,
        *,
        include_inactive: bool = False,
    ) -> List[ApprovalChain]:
        query = self.db.query(ApprovalChain)
        if operation_type:
            query = query.filter(ApprovalChain.operation_type == OperationType.parse(operation_type).value)
        if not include_inactive:
            query = query.filter(ApprovalChain.is_active.is_(True))
        return query.order_by(ApprovalChain.operation_type, ApprovalChain.priority.desc()).all()

    def create_chain(
        self,
        *,
        operation_type: str,
        name: str,
        created_by: str,
        description: Optional[str] = None,
        priority: int = 0,
        min_approvers: int = 1,
        require_all_approvers: bool = False,
        approver_roles: Optional[List[str]] = None,
        amount_threshold: Optional[Any] = None,
        role_restrictions: Optional[List[str]] = None,
        conditions_json: Optional[Dict[str, Any]] = None,
        auto_approve_after_hours: Optional[int] = None,
        escalate_after_hours: Optional[int] = None,
        escalation_chain_id: Optional[uuid.UUID] = None,
        actor: Optional[AuditContext] = None,
    ) -> ApprovalChain:
        """
        Validate and store a new approval chain.

        Raises:
            ValidationError: If the configuration is invalid
        """
        if not name or not name.strip():
            raise ValidationError("Chain name is required")

        chain = ApprovalChain(
            id=uuid.uuid4(),
            operation_type=OperationType.parse(operation_type).value,
            name=name.strip(),
            description=description,
            priority=priority,
            min_approvers=min_approvers,
            require_all_approvers=require_all_approvers,
            approver_roles=RoleSet.from_config(approver_roles).to_list(),
            amount_threshold=to_amount(amount_threshold),
            role_restrictions=RoleSet.from_config(role_restrictions).to_list(),
            conditions_json=conditions_json or None,
            auto_approve_after_hours=auto_approve_after_hours,
            escalate_after_hours=escalate_after_hours,
            escalation_chain_id=escalation_chain_id,
            is_active=True,
            created_by=created_by,
        )
        self._validate(chain)

        self.db.add(chain)
        self.db.flush()
        self.audit.append(
            AuditAction.CREATE,
            "approval_chain",
            entity_id=str(chain.id),
            description=f"Approval chain '{chain.name}' created for {chain.operation_type}",
            context=self._admin_context(actor, created_by),
            new_values=chain_to_dict(chain),
            risk_level=RiskLevel.MEDIUM,
            correlation_id=str(chain.id),
        )
        self.db.commit()

        logger.info("Created approval chain %s (%s) for %s", chain.name, chain.id, chain.operation_type)
        return chain

    def update_chain(
        self,
        chain_id: uuid.UUID,
        *,
        actor: Optional[AuditContext] = None,
        **changes: Any,
    ) -> ApprovalChain:
        """
        Apply configuration changes to a chain.

        Raises:
            NotFoundError: If the chain does not exist
            ValidationError: If a field is unknown or the result is invalid
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update chain fields: {sorted(unknown)}")

        chain = self.get_chain(chain_id)
        before = chain_to_dict(chain)

        for key, value in changes.items():
            if key in ("approver_roles", "role_restrictions"):
                value = RoleSet.from_config(value).to_list()
            elif key == "amount_threshold":
                value = to_amount(value)
            elif key == "conditions_json":
                value = value or None
            setattr(chain, key, value)

        try:
            self._validate(chain)
        except ValidationError:
            self.db.rollback()
            raise

        self.db.flush()
        self.audit.append(
            AuditAction.UPDATE,
            "approval_chain",
            entity_id=str(chain.id),
            description=f"Approval chain '{chain.name}' updated",
            context=self._admin_context(actor, None),
            previous_values=before,
            new_values=chain_to_dict(chain),
            risk_level=RiskLevel.MEDIUM,
            correlation_id=str(chain.id),
        )
        self.db.commit()
        return chain

    def deactivate_chain(self, chain_id: uuid.UUID, *, actor: Optional[AuditContext] = None) -> ApprovalChain:
        """
        Deactivate a chain so it no longer resolves.

        Raises:
            ValidationError: If an active chain still escalates to it
        """
        chain = self.get_chain(chain_id)
        referrers = (
            self.db.query(ApprovalChain)
            .filter(
                ApprovalChain.escalation_chain_id == chain.id,
                ApprovalChain.is_active.is_(True),
            )
            .all()
        )
        if referrers:
            raise ValidationError(
                f"Chain '{chain.name}' is the escalation target of active chains",
                details={"referenced_by": [str(c.id) for c in referrers]},
            )

        before = chain_to_dict(chain)
        chain.is_active = False
        self.db.flush()
        self.audit.append(
            AuditAction.DELETE,
            "approval_chain",
            entity_id=str(chain.id),
            description=f"Approval chain '{chain.name}' deactivated",
            context=self._admin_context(actor, None),
            previous_values=before,
            new_values=chain_to_dict(chain),
            risk_level=RiskLevel.MEDIUM,
            correlation_id=str(chain.id),
        )
        self.db.commit()
        return chain

    # ------------------------------------------------------------------
    # Coverage
    # ------------------------------------------------------------------

    def coverage(self, criticality: Optional[Mapping[str, Union[str, Criticality]]] = None) -> ChainCoverage:
        """
        Report which operation types have an active chain.

        Args:
            criticality: Operation type to criticality; unlisted types are
                reported without one

        Raises:
            ValidationError: If ``criticality`` names an unknown operation type
        """
        levels = {
            OperationType.parse(op).value: Criticality(level)
            for op, level in (criticality or {}).items()
        }
        by_type: Dict[str, List[ApprovalChain]] = {}
        for chain in self.list_chains():
            by_type.setdefault(chain.operation_type, []).append(chain)

        operations = []
        for operation_type in OperationType:
            chains = by_type.get(operation_type.value, [])
            entry = OperationCoverage(
                operation_type=operation_type.value,
                criticality=levels.get(operation_type.value),
                chains=[c.name for c in chains],
            )
            if chains and not any(self._unconditional(c) for c in chains):
                entry.warnings.append("Every active chain has a trigger, so some requests resolve to no chain")
            if entry.criticality == Criticality.CRITICAL:
                entry.warnings.extend(
                    f"Chain '{c.name}' auto-approves after {c.auto_approve_after_hours}h"
                    for c in chains
                    if c.auto_approve_after_hours
                )
            operations.append(entry)
        return ChainCoverage(operations=operations, checked_at=utcnow())

    def check_startup_coverage(self, critical: Iterable[str], high: Iterable[str] = ()) -> ChainCoverage:
        """
        Refuse to serve requests while a critical operation type is ungoverned.

        Logs a coverage report; missing high-priority chains are only warned
        about.

        Raises:
            ValidationError: If a critical operation type has no active chain
        """
        report = self.coverage(criticality_levels(critical, high))
        for entry in report.operations:
            if entry.covered:
                logger.info("Approval coverage: %s -> %s", entry.operation_type, ", ".join(entry.chains))
            for warning in entry.warnings:
                logger.warning("Approval coverage: %s: %s", entry.operation_type, warning)

        high_missing = report.missing_at(Criticality.HIGH)
        if high_missing:
            logger.warning("No active approval chain for high-priority operations: %s", ", ".join(high_missing))

        critical_missing = report.missing_at(Criticality.CRITICAL)
        if critical_missing:
            logger.critical("Refusing to start: no active approval chain for %s", ", ".join(critical_missing))
            raise ValidationError(
                "Critical operation types have no active approval chain",
                details={"critical_missing": critical_missing},
            )

        logger.info(
            "Approval coverage: %d of %d operation types governed",
            len(report.covered), len(report.operations),
        )
        return report

    @staticmethod
    def _unconditional(chain: ApprovalChain) -> bool:
        return chain.amount_threshold is None and not chain.role_restrictions and not chain.conditions_json

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, chain: ApprovalChain) -> None:
        if chain.min_approvers is None or chain.min_approvers < 1:
            raise ValidationError("min_approvers must be at least 1")
        if chain.amount_threshold is not None and Decimal(chain.amount_threshold) < 0:
            raise ValidationError("amount_threshold cannot be negative")
        for field in ("auto_approve_after_hours", "escalate_after_hours"):
            hours = getattr(chain, field)
            if hours is not None and hours <= 0:
                raise ValidationError(f"{field} must be positive")

        parse_condition(chain.conditions_json)

        if (chain.escalate_after_hours is None) != (chain.escalation_chain_id is None):
            raise ValidationError("escalate_after_hours and escalation_chain_id must be set together")
        if chain.escalation_chain_id is not None:
            self._validate_escalation_target(chain.id, chain.escalation_chain_id)

    def _validate_escalation_target(self, chain_id: uuid.UUID, target_id: uuid.UUID) -> None:
        """Follow escalation edges from the target; reaching chain_id is a cycle."""
        if target_id == chain_id:
            raise ValidationError("A chain cannot escalate to itself")

        target = self.db.get(ApprovalChain, target_id)
        if target is None:
            raise ValidationError(f"Escalation chain {target_id} does not exist")
        if not target.is_active:
            raise ValidationError(f"Escalation chain '{target.name}' is inactive")

        visited = {target_id}
        node = target
        while node.escalation_chain_id is not None:
            next_id = node.escalation_chain_id
            if next_id == chain_id:
                raise ValidationError(
                    "Escalation graph would contain a cycle",
                    details={"chain_id": str(chain_id), "via": str(node.id)},
                )
            if next_id in visited:
                break
            visited.add(next_id)
            node = self.db.get(ApprovalChain, next_id)
            if node is None:
                break

    @staticmethod
    def _admin_context(actor: Optional[AuditContext], user_id: Optional[str]) -> AuditContext:
        if actor is None:
            return AuditContext(user_id=user_id, source=AuditSource.ADMIN)
        return replace(actor, source=AuditSource.ADMIN)
