"""
Service wiring.

``build_services(settings)`` constructs every long-lived object once (engine,
session factory, Redis client, cache, demand monitor, coordinator, workers)
and hands them to their owners explicitly.  The API keeps the resulting
``Services`` on ``app.state``; scripts and tests build their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ridepool.config import Settings
from ridepool.domain.matching import MatchingEngine
from ridepool.domain.pricing import PricingEngine
from ridepool.infrastructure.cache import NullCache, RedisCache
from ridepool.infrastructure.database import create_engine, create_session_factory
from ridepool.infrastructure.locks import KeyedLocks
from ridepool.infrastructure.redis_client import create_redis
from ridepool.services.coordinator import PoolCoordinator
from ridepool.services.demand import DemandMonitor
from ridepool.workers.backfill import run_backfill_cycle
from ridepool.workers.dispatcher import MatchDispatcher
from ridepool.workers.periodic import PeriodicWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    redis: Optional[aioredis.Redis]
    cache: NullCache
    demand: DemandMonitor
    coordinator: PoolCoordinator
    dispatcher: MatchDispatcher
    workers: list[PeriodicWorker] = field(default_factory=list)

    async def start_workers(self) -> None:
        await self.dispatcher.start()
        for worker in self.workers:
            await worker.start()

    async def stop_workers(self) -> None:
        for worker in self.workers:
            await worker.stop()
        await self.dispatcher.stop()

    async def close(self) -> None:
        await self.stop_workers()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()


def build_services(settings: Settings) -> Services:
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)

    redis = create_redis(settings.redis_url) if settings.redis_url else None
    cache = (
        RedisCache(redis, settings.cache_ttl_seconds) if redis is not None else NullCache()
    )

    demand = DemandMonitor(
        session_factory,
        cache,
        refresh_seconds=settings.demand_refresh_seconds,
        window_minutes=settings.demand_window_minutes,
    )
    coordinator = PoolCoordinator(
        session_factory,
        MatchingEngine(
            global_max_detour_km=settings.max_detour_tolerance_km,
            max_passengers=settings.max_passengers_per_pool,
            max_luggage=settings.max_luggage_capacity,
        ),
        PricingEngine(
            base_fare=settings.base_fare,
            per_km_rate=settings.per_km_rate,
            surge_max=settings.surge_multiplier_max,
            base_discount_percent=settings.pool_discount_percent,
        ),
        demand,
        cache,
        KeyedLocks(settings.lock_timeout_seconds),
        max_passengers=settings.max_passengers_per_pool,
        max_luggage=settings.max_luggage_capacity,
        default_max_detour_km=settings.default_max_detour_km,
        open_pool_scan_limit=settings.open_pool_scan_limit,
        average_speed_kmh=settings.average_speed_kmh,
        h3_resolution=settings.h3_resolution,
        lock_timeout_seconds=settings.lock_timeout_seconds,
        cache_ttl_seconds=settings.cache_ttl_seconds,
        backfill_min_age_seconds=settings.backfill_min_age_seconds,
    )
    dispatcher = MatchDispatcher(coordinator, settings.matching_workers)
    workers = [
        PeriodicWorker(
            "demand", demand.refresh, settings.demand_refresh_seconds
        ),
        PeriodicWorker(
            "backfill",
            partial(run_backfill_cycle, coordinator, redis),
            settings.backfill_interval_seconds,
        ),
    ]
    logger.info(
        "Services built (database=%s, redis=%s)",
        engine.url.render_as_string(hide_password=True),
        "on" if redis is not None else "off",
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        redis=redis,
        cache=cache,
        demand=demand,
        coordinator=coordinator,
        dispatcher=dispatcher,
        workers=workers,
    )
