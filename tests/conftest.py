"""Shared fixtures: in-memory hot store, SQLite-backed cold store, fresh metrics registry."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from session_tiers.cold_store import ColdStore
from session_tiers.config import Settings
from session_tiers.db import init_db
from session_tiers.hot_store import InMemoryHotStore
from session_tiers.metrics import reset_registry

NOW_MS = 1_760_000_000_000


@pytest.fixture
def settings() -> Settings:
    return Settings(
        redis_url="redis://localhost:6379/15",
        database_url="sqlite+aiosqlite:///:memory:",
        max_messages=100,
        consistency_batch_size=2,
        orphan_sample_size=50,
    )


@pytest.fixture
def metrics():
    return reset_registry()


@pytest.fixture
def hot(settings, metrics) -> InMemoryHotStore:
    return InMemoryHotStore(settings, metrics)


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine=eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def cold(engine) -> ColdStore:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    return ColdStore(factory)


@pytest.fixture
def clock():
    """Mutable clock: tests move `clock.now` to simulate idle time."""

    class _Clock:
        now = NOW_MS

        def __call__(self) -> int:
            return self.now

    return _Clock()
