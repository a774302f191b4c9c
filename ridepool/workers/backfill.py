"""
Backfill cycle
==============

Runs every ``backfill_interval_seconds``.  Pending requests that have sat
unassigned for longer than ``backfill_min_age_seconds`` (their dispatcher
attempt failed, or the process restarted) are grouped with
``MatchingEngine.generate_optimal_pools`` and committed as fresh pools.

A Redis ``DistributedLock`` keeps the cycle to one instance at a time
across API processes.  Without Redis the cycle runs unlocked.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

from ridepool.infrastructure.locks import DistributedLock
from ridepool.services.coordinator import PoolCoordinator

logger = logging.getLogger(__name__)

LOCK_NAME = "backfill"


async def run_backfill_cycle(
    coordinator: PoolCoordinator,
    redis: Optional[aioredis.Redis] = None,
    min_age_seconds: Optional[int] = None,
    lock_ttl_seconds: int = 60,
) -> int:
    """Execute one backfill cycle.  Returns the number of pools opened."""
    if redis is None:
        created = await coordinator.backfill_pending(min_age_seconds)
    else:
        lock = DistributedLock(redis, LOCK_NAME, ttl_seconds=lock_ttl_seconds)
        if not await lock.acquire():
            logger.debug("Lock held by another worker, skipping cycle")
            return 0
        try:
            created = await coordinator.backfill_pending(min_age_seconds)
        finally:
            await lock.release()

    if created:
        logger.info("Backfill cycle: %d pools opened", len(created))
    return len(created)
