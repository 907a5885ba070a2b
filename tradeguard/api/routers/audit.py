"""Audit log query and verification endpoints."""

from typing import List, Optional
from uuid import UUID
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

from tradeguard.api.deps import get_audit_service, require_admin
from tradeguard.core.audit import AuditContext, AuditLogService
from tradeguard.db.models import AuditSource, User

router = APIRouter(prefix="/audit-logs", tags=["audit"])


# Schemas
class AuditLogResponse(BaseModel):
    id: UUID
    action: str
    entity_type: str
    entity_id: Optional[str]
    description: str
    user_id: Optional[str]
    user_name: Optional[str]
    user_role: Optional[str]
    ip_address: Optional[str]
    previous_values: Optional[dict]
    new_values: Optional[dict]
    business_context: Optional[dict]
    risk_level: str
    compliance_flags: Optional[List[str]]
    source: str
    correlation_id: Optional[str]
    sequence: Optional[int]
    parent_audit_id: Optional[UUID]
    checksum: str
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class VerificationResponse(BaseModel):
    correlation_id: str
    valid: bool
    entries_checked: int
    first_invalid_id: Optional[str] = None
    first_invalid_sequence: Optional[int] = None
    reason: Optional[str] = None


class CorrectionRequest(BaseModel):
    description: str
    new_values: Optional[dict] = None


# Endpoints
@router.get("", response_model=List[AuditLogResponse])
async def list_audit_logs(
    current_user: User = Depends(require_admin),
    audit: AuditLogService = Depends(get_audit_service),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    correlation_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    risk_level: Optional[str] = None,
):
    """
    List audit entries.

    With a correlation id, entries come back in chain order; otherwise newest first.
    """
    entries = audit.list_entries(
        correlation_id=correlation_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        risk_level=risk_level,
        limit=per_page,
        offset=(page - 1) * per_page,
    )
    return [AuditLogResponse.model_validate(e) for e in entries]


@router.get("/verify/{correlation_id}", response_model=VerificationResponse)
async def verify_chain(
    correlation_id: str,
    current_user: User = Depends(require_admin),
    audit: AuditLogService = Depends(get_audit_service),
):
    """
    Recompute the checksum chain for a correlation id.

    A broken chain is reported in the body (valid=false) and raised to the
    alerting path; it is never repaired.
    """
    return VerificationResponse(**audit.verify(correlation_id).to_dict())


@router.post("/{audit_id}/corrections", response_model=AuditLogResponse, status_code=201)
async def append_correction(
    audit_id: UUID,
    payload: CorrectionRequest,
    current_user: User = Depends(require_admin),
    audit: AuditLogService = Depends(get_audit_service),
):
    """Record a correction as a new entry linked to the original."""
    entry = audit.append_correction(
        audit_id,
        description=payload.description,
        new_values=payload.new_values,
        context=AuditContext(
            user_id=current_user.id,
            user_name=current_user.name,
            user_role=current_user.role,
            source=AuditSource.ADMIN,
        ),
    )
    audit.db.commit()
    return AuditLogResponse.model_validate(entry)
