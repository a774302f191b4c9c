"""
Periodic background worker.

Runs a coroutine every ``interval_seconds`` until stopped.  A failing cycle
is logged and the loop carries on with the next one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicWorker:
    def __init__(
        self,
        name: str,
        cycle: Callable[[], Awaitable[object]],
        interval_seconds: float,
    ):
        self.name = name
        self.cycle = cycle
        self.interval = interval_seconds
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("%s worker started (interval=%ss)", self.name, self.interval)

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s worker stopped", self.name)

    async def _loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.cycle()
            except Exception:
                logger.exception("Unhandled error in %s cycle", self.name)
            # Wait for the interval or until stop is signalled
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
