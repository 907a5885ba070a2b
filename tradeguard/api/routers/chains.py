"""Approval chain configuration endpoints (administrators only)."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi import status as http_status
from pydantic import BaseModel, ConfigDict, Field

from tradeguard.api.deps import get_audit_context, get_chain_registry, require_admin
from tradeguard.core.approval import ChainRegistry, criticality_levels
from tradeguard.core.audit import AuditContext
from tradeguard.core.config import get_settings
from tradeguard.db.models import User

router = APIRouter(prefix="/chains", tags=["chains"])


class ChainBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    priority: int = 0
    min_approvers: int = 1
    require_all_approvers: bool = False
    approver_roles: List[str] = Field(default_factory=list)
    amount_threshold: Optional[Decimal] = None
    role_restrictions: List[str] = Field(default_factory=list)
    conditions_json: Optional[Dict[str, Any]] = None
    auto_approve_after_hours: Optional[int] = None
    escalate_after_hours: Optional[int] = None
    escalation_chain_id: Optional[UUID] = None


class ChainCreate(ChainBase):
    operation_type: str


class ChainUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[int] = None
    min_approvers: Optional[int] = None
    require_all_approvers: Optional[bool] = None
    approver_roles: Optional[List[str]] = None
    amount_threshold: Optional[Decimal] = None
    role_restrictions: Optional[List[str]] = None
    conditions_json: Optional[Dict[str, Any]] = None
    auto_approve_after_hours: Optional[int] = None
    escalate_after_hours: Optional[int] = None
    escalation_chain_id: Optional[UUID] = None


class ChainResponse(ChainBase):
    id: UUID
    operation_type: str
    is_active: bool
    created_by: str
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class OperationCoverageResponse(BaseModel):
    operation_type: str
    criticality: Optional[str]
    covered: bool
    chains: List[str]
    warnings: List[str]


class CoverageResponse(BaseModel):
    total_operations: int
    covered: int
    missing: List[str]
    critical_missing: List[str]
    operations: List[OperationCoverageResponse]
    checked_at: datetime


@router.get("", response_model=List[ChainResponse])
async def list_chains(
    operation_type: Optional[str] = None,
    include_inactive: bool = False,
    current_user: User = Depends(require_admin),
    registry: ChainRegistry = Depends(get_chain_registry),
):
    chains = registry.list_chains(operation_type, include_inactive=include_inactive)
    return [ChainResponse.model_validate(c) for c in chains]


@router.post("", response_model=ChainResponse, status_code=http_status.HTTP_201_CREATED)
async def create_chain(
    payload: ChainCreate,
    current_user: User = Depends(require_admin),
    audit_context: AuditContext = Depends(get_audit_context),
    registry: ChainRegistry = Depends(get_chain_registry),
):
    """Create an approval chain. The configuration is validated before it is stored."""
    chain = registry.create_chain(
        **payload.model_dump(),
        created_by=current_user.id,
        actor=audit_context,
    )
    return ChainResponse.model_validate(chain)


@router.get("/coverage", response_model=CoverageResponse)
async def chain_coverage(
    current_user: User = Depends(require_admin),
    registry: ChainRegistry = Depends(get_chain_registry),
):
    """Which operation types have an active chain, with configuration warnings."""
    settings = get_settings()
    levels = criticality_levels(settings.critical_operation_types, settings.high_priority_operation_types)
    return registry.coverage(levels).to_dict()


@router.get("/{chain_id}", response_model=ChainResponse)
async def get_chain(
    chain_id: UUID,
    current_user: User = Depends(require_admin),
    registry: ChainRegistry = Depends(get_chain_registry),
):
    return ChainResponse.model_validate(registry.get_chain(chain_id))


@router.patch("/{chain_id}", response_model=ChainResponse)
async def update_chain(
    chain_id: UUID,
    payload: ChainUpdate,
    current_user: User = Depends(require_admin),
    audit_context: AuditContext = Depends(get_audit_context),
    registry: ChainRegistry = Depends(get_chain_registry),
):
    """Change fields of a chain; only fields present in the body are touched."""
    chain = registry.update_chain(
        chain_id,
        actor=audit_context,
        **payload.model_dump(exclude_unset=True),
    )
    return ChainResponse.model_validate(chain)


@router.delete("/{chain_id}", response_model=ChainResponse)
async def deactivate_chain(
    chain_id: UUID,
    current_user: User = Depends(require_admin),
    audit_context: AuditContext = Depends(get_audit_context),
    registry: ChainRegistry = Depends(get_chain_registry),
):
    """Deactivate a chain. Chains are never physically deleted."""
    return ChainResponse.model_validate(registry.deactivate_chain(chain_id, actor=audit_context))
