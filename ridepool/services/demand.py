"""
Demand signal
=============

``DemandMonitor.current()`` returns the demand factor fed to the pricing
engine.  Lookup order:

1. the locally held value, if refreshed less than ``refresh_seconds`` ago;
2. the shared ``demand:factor`` cache key (written by whichever process
   refreshed last);
3. a fresh count of pending requests submitted in the last
   ``window_minutes``, run through ``compute_demand_factor``.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridepool.domain.pricing import compute_demand_factor
from ridepool.infrastructure.cache import DEMAND_KEY, NullCache
from ridepool.infrastructure.repositories import RideRequestRepository

logger = logging.getLogger(__name__)


def _local_now() -> datetime:
    return datetime.now().astimezone()


class DemandMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: NullCache,
        refresh_seconds: int = 60,
        window_minutes: int = 5,
        clock: Callable[[], datetime] = _local_now,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self.refresh_seconds = refresh_seconds
        self.window = timedelta(minutes=window_minutes)
        self._clock = clock
        self._value: Optional[float] = None
        self._refreshed_at = 0.0

    def _is_fresh(self) -> bool:
        return (
            self._value is not None
            and time.monotonic() - self._refreshed_at < self.refresh_seconds
        )

    def _remember(self, value: float) -> float:
        self._value = value
        self._refreshed_at = time.monotonic()
        return value

    async def current(self) -> float:
        if self._is_fresh():
            return self._value

        cached = await self._cache.get(DEMAND_KEY)
        if cached is not None:
            try:
                return self._remember(float(cached))
            except ValueError:
                logger.warning("Ignoring malformed demand factor %r", cached)

        return await self.refresh()

    async def refresh(self) -> float:
        """Recount recent pending requests and publish the new factor."""
        now = self._clock()
        since = now.astimezone(timezone.utc) - self.window
        async with self._session_factory() as session:
            pending = await RideRequestRepository(session).count_pending_since(since)

        factor = compute_demand_factor(pending, now.hour)
        await self._cache.set(DEMAND_KEY, repr(factor), self.refresh_seconds)
        logger.debug("Demand factor %.2f (pending=%d, hour=%d)", factor, pending, now.hour)
        return self._remember(factor)
