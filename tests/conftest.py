"""Shared fixtures: in-memory SQLite database, seeded accounts, test doubles."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from carelink.connections.lifecycle import ConnectionLifecycle
from carelink.connections.repository import ConnectionRepository
from carelink.models import Base, BlindUser, Guardian
from tests.support import FakeClock, InMemoryFeed


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def mock_emit():
    """Keep SystemEvents off the global bus; tests inspect the mocks instead."""
    with (
        patch("carelink.connections.lifecycle.emit", new_callable=AsyncMock) as lifecycle_emit,
        patch("carelink.accounts.service.emit", new_callable=AsyncMock) as accounts_emit,
        patch("carelink.connections.sync.emit", new_callable=AsyncMock) as sync_emit,
    ):
        yield {"lifecycle": lifecycle_emit, "accounts": accounts_emit, "sync": sync_emit}


@pytest_asyncio.fixture()
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture()
async def seeded(session_factory):
    """Guardian001, Guardian002 and BLIND001..BLIND003 with no links."""
    async with session_factory() as db:
        db.add_all([
            Guardian(guardian_id="Guardian001", name="Asha Rao", email="asha@gmail.com", password_hash="x"),
            Guardian(guardian_id="Guardian002", name="Vikram Das", email="vikram@gmail.com", password_hash="x"),
            BlindUser(blind_id="BLIND001", name="Ravi", age=34, gender="male", phone="9000000001"),
            BlindUser(blind_id="BLIND002", name="Meera", age=27, gender="female", email="meera@example.com"),
            BlindUser(blind_id="BLIND003", name="Kiran", age=61, gender="other", address="12 Lake Rd"),
        ])
        await db.commit()
    return session_factory


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(clock) -> ConnectionRepository:
    return ConnectionRepository(clock=clock)


@pytest.fixture()
def feed() -> InMemoryFeed:
    return InMemoryFeed()


@pytest.fixture()
def lifecycle(seeded, repository, feed) -> ConnectionLifecycle:
    return ConnectionLifecycle(seeded, repository, feed, write_attempts=3, retry_delay=0, link_attempts=2)
