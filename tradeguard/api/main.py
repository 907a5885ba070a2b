import logging
from contextlib import asynccontextmanager, contextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tradeguard.api.deps import get_db
from tradeguard.api.routers import approvals, audit, chains, guards
from tradeguard.core.approval import ChainRegistry
from tradeguard.core.config import get_settings
from tradeguard.core.errors import (
    ApprovalEngineError,
    AuthorizationError,
    ConflictError,
    GuardBlockedError,
    IntegrityError,
    NotFoundError,
    StateError,
    ValidationError,
)
from tradeguard.core.logger import configure_from_settings

settings = get_settings()
configure_from_settings(settings)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"

# Most specific first
ERROR_STATUS = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StateError, 409),
    (GuardBlockedError, 403),
    (AuthorizationError, 403),
    (IntegrityError, 500),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.validate_chains_on_startup:
        # Resolve through overrides so tests can point this at their database
        session_scope = contextmanager(app.dependency_overrides.get(get_db, get_db))
        with session_scope() as db:
            ChainRegistry(db).check_startup_coverage(
                settings.critical_operation_types,
                settings.high_priority_operation_types,
            )
    yield


app = FastAPI(
    title=settings.app_name,
    description="Approval and audit-integrity engine for protected business operations",
    version=VERSION,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ApprovalEngineError)
async def approval_engine_error_handler(request: Request, exc: ApprovalEngineError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    if status_code >= 500:
        logger.critical("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


app.include_router(approvals.router, prefix="/api")
app.include_router(chains.router, prefix="/api")
app.include_router(guards.router, prefix="/api")
app.include_router(audit.router, prefix="/api")


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": VERSION}


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": VERSION,
        "docs": "/docs" if settings.debug else None,
    }
