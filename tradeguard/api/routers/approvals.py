"""Approval request API endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi import status as http_status
from pydantic import BaseModel, ConfigDict, Field

from tradeguard.api.deps import get_approval_service, get_audit_context, get_current_user
from tradeguard.core.approval import ApprovalContext, ApprovalService, ExecutionRequest
from tradeguard.core.audit import AuditContext
from tradeguard.db.models import User

router = APIRouter(prefix="/approvals", tags=["approvals"])


# Schemas
class ApprovalRequestCreate(BaseModel):
    operation_type: str
    entity_type: str = Field(..., min_length=1, max_length=100)
    entity_id: str = Field(..., min_length=1, max_length=100)
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field("USD", max_length=3)
    description: str = ""
    request_data: Dict[str, Any] = Field(default_factory=dict)
    business_context: Dict[str, Any] = Field(default_factory=dict)
    chain_id: Optional[UUID] = None


class ApprovalRequestResponse(BaseModel):
    id: UUID
    request_number: str
    operation_type: str
    chain_id: UUID
    entity_type: str
    entity_id: str
    amount: Optional[Decimal]
    currency: Optional[str]
    description: str
    status: str
    total_required_approvals: int
    current_approvals: int
    current_approver_level: int
    requested_at: datetime
    approved_at: Optional[datetime]
    rejected_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    escalated_at: Optional[datetime]
    auto_approval_at: Optional[datetime]
    requested_by: str
    final_approved_by: Optional[str]
    final_rejected_by: Optional[str]
    cancelled_by: Optional[str]
    rejection_reason: Optional[str]
    escalation_reason: Optional[str]
    approval_history: List[Dict[str, Any]]
    is_consumed: bool
    consumed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class ApprovalListResponse(BaseModel):
    items: List[ApprovalRequestResponse]
    total: int
    page: int
    per_page: int


class ApproveAction(BaseModel):
    comment: Optional[str] = None


class RejectAction(BaseModel):
    reason: str = Field(..., min_length=1)


class CancelAction(BaseModel):
    reason: Optional[str] = None


class ExecutionPayload(BaseModel):
    operation_type: str
    operation_data: Dict[str, Any] = Field(default_factory=dict)
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    operation_id: Optional[str] = None


class ExecutionValidationResponse(BaseModel):
    valid: bool
    request_id: UUID
    errors: List[str]
    operation_checksum: Optional[str]


class BlockingReasonResponse(BaseModel):
    entity_type: str
    entity_id: str
    blocked: bool
    reason: Optional[str]


def _execution(payload: ExecutionPayload, user: User) -> ExecutionRequest:
    return ExecutionRequest(
        operation_type=payload.operation_type,
        requester_id=user.id,
        operation_data=payload.operation_data,
        amount=payload.amount,
        currency=payload.currency,
        operation_id=payload.operation_id,
    )


# Endpoints
@router.post("", response_model=ApprovalRequestResponse, status_code=http_status.HTTP_201_CREATED)
async def create_approval_request(
    payload: ApprovalRequestCreate,
    current_user: User = Depends(get_current_user),
    service: ApprovalService = Depends(get_approval_service),
):
    """Open an approval request for a protected operation on an entity."""
    context = ApprovalContext(
        requester_id=current_user.id,
        requester_role=current_user.role,
        amount=payload.amount,
        currency=payload.currency,
        description=payload.description,
        request_data=payload.request_data,
        business_context=payload.business_context,
    )
    chain = service.registry.get_chain(payload.chain_id) if payload.chain_id else None
    request = service.create_request(
        payload.operation_type, payload.entity_type, payload.entity_id, context, chain,
    )
    return ApprovalRequestResponse.model_validate(request)


@router.get("", response_model=ApprovalListResponse)
async def list_approval_requests(
    current_user: User = Depends(get_current_user),
    service: ApprovalService = Depends(get_approval_service),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    operation_type: Optional[str] = None,
    requested_by: Optional[str] = None,
):
    """List approval requests, newest first."""
    requests = service.list_requests(
        status=status,
        operation_type=operation_type,
        requested_by=requested_by,
        limit=per_page,
        offset=(page - 1) * per_page,
    )
    return ApprovalListResponse(
        items=[ApprovalRequestResponse.model_validate(r) for r in requests],
        total=service.count_requests(
            status=status,
            operation_type=operation_type,
            requested_by=requested_by,
        ),
        page=page,
        per_page=per_page,
    )


@router.get("/pending", response_model=List[ApprovalRequestResponse])
async def list_my_pending_approvals(
    current_user: User = Depends(get_current_user),
    service: ApprovalService = Depends(get_approval_service),
    limit: int = Query(50, ge=1, le=200),
):
    """Open requests the current user may still approve."""
    requests = service.list_pending_for_approver(current_user.id, limit=limit)
    return [ApprovalRequestResponse.model_validate(r) for r in requests]


@router.get("/blocking", response_model=BlockingReasonResponse)
async def get_blocking_reason(
    entity_type: str,
    entity_id: str,
    current_user: User = Depends(get_current_user),
    service: ApprovalService = Depends(get_approval_service),
):
    """Explain whether (and why) an entity's protected operation is held up."""
    reason = service.blocking_reason(entity_type, entity_id)
    return BlockingReasonResponse(
        entity_type=entity_type,
        entity_id=entity_id,
        blocked=reason is not None and reason.value != "approved",
        reason=reason.value if reason else None,
    )


@router.get("/{request_id}", response_model=ApprovalRequestResponse)
async def get_approval_request(
    request_id: UUID,
    current_user: User = Depends(get_current_user),
    service: ApprovalService = Depends(get_approval_service),
):
    return ApprovalRequestResponse.model_validate(service.get_request(request_id))


@router.post("/{request_id}/approve", response_model=ApprovalRequestResponse)
async def approve_request(
    request_id: UUID,
    action: ApproveAction,
    current_user: User = Depends(get_current_user),
    audit_context: AuditContext = Depends(get_audit_context),
    service: ApprovalService = Depends(get_approval_service),
):
    request = service.approve(request_id, current_user.id, action.comment, audit_context=audit_context)
    return ApprovalRequestResponse.model_validate(request)


@router.post("/{request_id}/reject", response_model=ApprovalRequestResponse)
async def reject_request(
    request_id: UUID,
    action: RejectAction,
    current_user: User = Depends(get_current_user),
    audit_context: AuditContext = Depends(get_audit_context),
    service: ApprovalService = Depends(get_approval_service),
):
    request = service.reject(request_id, current_user.id, action.reason, audit_context=audit_context)
    return ApprovalRequestResponse.model_validate(request)


@router.post("/{request_id}/cancel", response_model=ApprovalRequestResponse)
async def cancel_request(
    request_id: UUID,
    action: CancelAction,
    current_user: User = Depends(get_current_user),
    audit_context: AuditContext = Depends(get_audit_context),
    service: ApprovalService = Depends(get_approval_service),
):
    request = service.cancel(request_id, current_user.id, action.reason, audit_context=audit_context)
    return ApprovalRequestResponse.model_validate(request)


@router.post("/{request_id}/validate", response_model=ExecutionValidationResponse)
async def validate_execution(
    request_id: UUID,
    payload: ExecutionPayload,
    current_user: User = Depends(get_current_user),
    service: ApprovalService = Depends(get_approval_service),
):
    """Check, without consuming it, that an approval covers an operation."""
    result = service.validate_execution(request_id, _execution(payload, current_user))
    return ExecutionValidationResponse(
        valid=result.valid,
        request_id=result.request_id,
        errors=result.errors,
        operation_checksum=result.operation_checksum,
    )


@router.post("/{request_id}/consume", response_model=ApprovalRequestResponse)
async def consume_approval(
    request_id: UUID,
    payload: ExecutionPayload,
    current_user: User = Depends(get_current_user),
    audit_context: AuditContext = Depends(get_audit_context),
    service: ApprovalService = Depends(get_approval_service),
):
    """Use an approval for the operation it was granted for. Single use."""
    request = service.consume(request_id, _execution(payload, current_user), audit_context=audit_context)
    return ApprovalRequestResponse.model_validate(request)
