"""
Shared test fixtures.

Each test gets its own SQLite file database (aiosqlite, ``tmp_path``) so
coordinator and API tests run without PostgreSQL or Redis.  ``FOR UPDATE``
is a no-op on SQLite; the in-process keyed locks still serialise
same-entity mutations, which is what the concurrency tests exercise.
"""

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ridepool.domain.matching import MatchingEngine
from ridepool.domain.pricing import PricingEngine
from ridepool.infrastructure import models  # noqa: F401  (registers tables)
from ridepool.infrastructure.cache import NullCache
from ridepool.infrastructure.database import Base, create_session_factory
from ridepool.infrastructure.repositories import UserRepository
from ridepool.services.coordinator import PoolCoordinator
from ridepool.services.demand import DemandMonitor

# Off-peak: with fewer than 11 recent pending requests the demand factor is
# (0.5 + 1.0) / 2 = 0.75, i.e. a surge multiplier of 1.375.
OFF_PEAK_NOON = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ridepool.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def user_ids(session_factory) -> list[int]:
    async with session_factory() as session:
        users = UserRepository(session)
        ids = [
            (await users.create(f"Rider {n}", f"rider{n}@example.com")).id
            for n in range(6)
        ]
        await session.commit()
    return ids


@pytest_asyncio.fixture
async def coordinator(session_factory) -> PoolCoordinator:
    demand = DemandMonitor(session_factory, NullCache(), clock=lambda: OFF_PEAK_NOON)
    return PoolCoordinator(
        session_factory,
        MatchingEngine(global_max_detour_km=5.0, max_passengers=4, max_luggage=8),
        PricingEngine(),
        demand,
        lock_timeout_seconds=5.0,
    )


class FakeRedis:
    """Dict-backed stand-in for the handful of commands the cache uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expiry: dict[str, int] = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
