"""Shared pytest fixtures.

Tests run against a file-backed SQLite database created per test, so two
sessions can race each other the way two API workers would.
"""

import os

os.environ.setdefault("TRADEGUARD_DATABASE_URL", "sqlite://")
os.environ.setdefault("TRADEGUARD_LOG_TO_FILE", "false")
os.environ.setdefault("TRADEGUARD_VALIDATE_CHAINS_ON_STARTUP", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tradeguard.core.approval import ApprovalGuardService, ApprovalScheduler, ApprovalService, ChainRegistry
from tradeguard.core.audit import AuditLogService
from tradeguard.core.config import Settings
from tradeguard.db.base import Base
import tradeguard.db.models  # noqa: F401  (registers tables on Base.metadata)
from tradeguard.services.notifications import ALL_EVENTS, ApprovalEventBus


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tradeguard.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        optimistic_retry_limit=3,
        approval_validity_hours=24,
        amount_tolerance=0.01,
        default_block_if_no_approver=True,
    )


@pytest.fixture
def published():
    """Events received by the test event bus, in order."""
    return []


@pytest.fixture
def event_bus(published):
    bus = ApprovalEventBus()
    bus.subscribe(ALL_EVENTS, published.append)
    return bus


@pytest.fixture
def audit_service(db_session, event_bus):
    return AuditLogService(db_session, event_bus)


@pytest.fixture
def registry(db_session, audit_service):
    return ChainRegistry(db_session, audit_service)


@pytest.fixture
def approval_service(db_session, registry, audit_service, event_bus, settings):
    return ApprovalService(
        db_session,
        registry=registry,
        audit=audit_service,
        event_bus=event_bus,
        settings=settings,
    )


@pytest.fixture
def guard_service(db_session, registry, audit_service, event_bus, settings):
    return ApprovalGuardService(
        db_session,
        registry=registry,
        audit=audit_service,
        event_bus=event_bus,
        settings=settings,
    )


@pytest.fixture
def scheduler(db_session, approval_service):
    return ApprovalScheduler(db_session, approval_service)
