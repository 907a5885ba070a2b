from typing import Generator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from tradeguard.core.approval import ApprovalGuardService, ApprovalService, ChainRegistry
from tradeguard.core.audit import AuditContext, AuditLogService
from tradeguard.core.roles import ADMIN_ROLES
from tradeguard.core.security import decode_token
from tradeguard.db.models import AuditSource, User
from tradeguard.db.session import SessionLocal
from tradeguard.services.notifications import ApprovalEventBus, get_event_bus

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


def get_db() -> Generator:
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_bus() -> ApprovalEventBus:
    return get_event_bus()


def get_current_user(
    db: Session = Depends(get_db),
    token: str = Depends(oauth2_scheme),
) -> User:
    """Get the acting user from the bearer JWT."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception

    user_id = decode_token(token)
    if user_id:
        user = db.get(User, user_id)
        if user and user.is_active:
            return user
    raise credentials_exception


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Restrict an endpoint to administrators."""
    if current_user.role not in ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return current_user


def get_audit_context(request: Request, current_user: User = Depends(get_current_user)) -> AuditContext:
    """Actor context for audit entries written on behalf of an API call."""
    return AuditContext(
        user_id=current_user.id,
        user_name=current_user.name,
        user_role=current_user.role,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        source=AuditSource.API,
    )


def get_audit_service(
    db: Session = Depends(get_db),
    bus: ApprovalEventBus = Depends(get_bus),
) -> AuditLogService:
    return AuditLogService(db, bus)


def get_chain_registry(
    db: Session = Depends(get_db),
    audit: AuditLogService = Depends(get_audit_service),
) -> ChainRegistry:
    return ChainRegistry(db, audit)


def get_approval_service(
    db: Session = Depends(get_db),
    bus: ApprovalEventBus = Depends(get_bus),
    audit: AuditLogService = Depends(get_audit_service),
    registry: ChainRegistry = Depends(get_chain_registry),
) -> ApprovalService:
    return ApprovalService(db, registry=registry, audit=audit, event_bus=bus)


def get_guard_service(
    db: Session = Depends(get_db),
    bus: ApprovalEventBus = Depends(get_bus),
    audit: AuditLogService = Depends(get_audit_service),
    registry: ChainRegistry = Depends(get_chain_registry),
) -> ApprovalGuardService:
    return ApprovalGuardService(db, registry=registry, audit=audit, event_bus=bus)
