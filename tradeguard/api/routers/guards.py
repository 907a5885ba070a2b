"""Approval guard endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi import status as http_status
from pydantic import BaseModel, ConfigDict, Field

from tradeguard.api.deps import get_audit_context, get_current_user, get_guard_service, require_admin
from tradeguard.core.approval import ApprovalContext, ApprovalGuardService
from tradeguard.core.audit import AuditContext
from tradeguard.db.models import User

router = APIRouter(prefix="/guards", tags=["guards"])


class GuardSettings(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_enabled: Optional[bool] = None
    amount_threshold: Optional[Decimal] = None
    role_exceptions: Optional[List[str]] = None
    block_if_no_approver: Optional[bool] = None
    allow_emergency_override: Optional[bool] = None
    emergency_override_roles: Optional[List[str]] = None
    notify_on_bypass: Optional[bool] = None
    audit_all_attempts: Optional[bool] = None


class GuardResponse(BaseModel):
    id: UUID
    operation_type: str
    name: str
    description: Optional[str]
    is_enabled: bool
    amount_threshold: Optional[Decimal]
    role_exceptions: List[str]
    block_if_no_approver: bool
    allow_emergency_override: bool
    emergency_override_roles: List[str]
    notify_on_bypass: bool
    audit_all_attempts: bool
    created_by: str
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class GuardEvaluationRequest(BaseModel):
    amount: Optional[Decimal] = None
    currency: Optional[str] = "USD"
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    description: str = ""


class GuardEvaluationResponse(BaseModel):
    operation_type: str
    decision: str
    reason: str
    message: str
    chain_id: Optional[str] = None
    chain_name: Optional[str] = None
    audit_id: Optional[str] = None
    guard_id: Optional[str] = None


@router.get("", response_model=List[GuardResponse])
async def list_guards(
    current_user: User = Depends(require_admin),
    guards: ApprovalGuardService = Depends(get_guard_service),
):
    return [GuardResponse.model_validate(g) for g in guards.list_guards()]


@router.put("/{operation_type}", response_model=GuardResponse, status_code=http_status.HTTP_201_CREATED)
async def configure_guard(
    operation_type: str,
    payload: GuardSettings,
    current_user: User = Depends(require_admin),
    audit_context: AuditContext = Depends(get_audit_context),
    guards: ApprovalGuardService = Depends(get_guard_service),
):
    """Create the guard for an operation type."""
    settings = payload.model_dump(exclude_none=True)
    name = settings.pop("name", None)
    guard = guards.configure_guard(
        operation_type,
        created_by=current_user.id,
        name=name,
        actor=audit_context,
        **settings,
    )
    return GuardResponse.model_validate(guard)


@router.patch("/{operation_type}", response_model=GuardResponse)
async def update_guard(
    operation_type: str,
    payload: GuardSettings,
    current_user: User = Depends(require_admin),
    audit_context: AuditContext = Depends(get_audit_context),
    guards: ApprovalGuardService = Depends(get_guard_service),
):
    guard = guards.update_guard(operation_type, actor=audit_context, **payload.model_dump(exclude_unset=True))
    return GuardResponse.model_validate(guard)


@router.post("/{operation_type}/evaluate", response_model=GuardEvaluationResponse)
async def evaluate_guard(
    operation_type: str,
    payload: GuardEvaluationRequest,
    current_user: User = Depends(get_current_user),
    guards: ApprovalGuardService = Depends(get_guard_service),
):
    """
    Pre-flight check for the current user performing an operation.

    A blocked decision is returned as 403 with the reason code.
    """
    context = ApprovalContext(
        requester_id=current_user.id,
        requester_role=current_user.role,
        amount=payload.amount,
        currency=payload.currency,
        entity_type=payload.entity_type,
        entity_id=payload.entity_id,
        description=payload.description,
    )
    evaluation = guards.enforce(operation_type, context)
    return GuardEvaluationResponse(**evaluation.to_dict())
