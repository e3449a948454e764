"""
Pytest configuration and fixtures.
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import AsyncGenerator

# Settings are read once at import time; configure before importing the app
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-auditchain-tests")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUDIT_SIGNATURE_KEY", "ab" * 64)
os.environ.setdefault("LEDGER_RETRY_BACKOFF_SECONDS", "0")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from auditchain.app.main import app
from auditchain.app.core.database import Base
from auditchain.app.core.config import get_settings
from auditchain.app.core.keys import AuditKeyRing
from auditchain.app.core.security import create_access_token, Role
from auditchain.app.services.audit_ledger import AuditLedger, build_audit_ledger

# Import all models to register them with Base.metadata
from auditchain.app.models.audit_orm import AuditLogRecordORM  # noqa: F401

# Use in-memory SQLite for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_SIGNING_KEY = "cd" * 64


class FrozenClock:
    """Settable clock injected into the ledger so hour-of-day scoring is deterministic."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Fresh in-memory ledger store for every test.
    StaticPool keeps the single connection (and so the database) alive.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    # Wednesday, inside business hours
    return FrozenClock(datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc))


@pytest.fixture
def key_ring() -> AuditKeyRing:
    return AuditKeyRing("v1", {"v1": TEST_SIGNING_KEY})


@pytest.fixture
def bus() -> asyncio.Queue:
    return asyncio.Queue(maxsize=100)


@pytest.fixture(scope="function")
async def ledger(session_factory, key_ring: AuditKeyRing, bus: asyncio.Queue, clock: FrozenClock) -> AuditLedger:
    audit_ledger = build_audit_ledger(
        session_factory,
        settings=get_settings(),
        key_ring=key_ring,
        bus=bus,
        clock=clock,
    )
    await audit_ledger.initialize()
    return audit_ledger


@pytest.fixture(scope="function")
async def client(ledger: AuditLedger) -> AsyncGenerator[AsyncClient, None]:
    """
    Test client bound to the test ledger. The ASGI transport does not run the
    lifespan, so the ledger is attached to app.state directly.
    """
    app.state.audit_ledger = ledger
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.state.audit_ledger = None


@pytest.fixture
def auth_headers():
    """Factory for bearer headers: auth_headers(username, role)."""

    def _make(username: str = "auditor", role: str = Role.ADMIN) -> dict:
        token = create_access_token({"sub": username, "role": role})
        return {"Authorization": f"Bearer {token}"}

    return _make
