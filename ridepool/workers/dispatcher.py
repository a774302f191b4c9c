"""
Match dispatcher
================

Submissions are handed to a fixed set of worker tasks through an
``asyncio.Queue`` instead of being fired and forgotten.

* ``enqueue`` returns a future resolved with the ``SubmitOutcome``; a
  request already queued or in flight gets the same future back.
* A failed attempt is logged, set on the future and kept in ``failures``
  until a later attempt for the same request succeeds.  Retrying is the
  caller's decision (``PoolCoordinator.match_request``).
"""

from __future__ import annotations

import asyncio
import logging

from ridepool.services.coordinator import PoolCoordinator, SubmitOutcome

logger = logging.getLogger(__name__)


def _consume_exception(future: asyncio.Future) -> None:
    # failures are recorded on the dispatcher; keep asyncio from warning
    if not future.cancelled():
        future.exception()


class MatchDispatcher:
    def __init__(self, coordinator: PoolCoordinator, concurrency: int = 4):
        self.coordinator = coordinator
        self.concurrency = concurrency
        self.failures: dict[int, BaseException] = {}
        self._queue: asyncio.Queue[int] = asyncio.Queue()
        self._inflight: dict[int, asyncio.Future[SubmitOutcome]] = {}
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return len(self._inflight)

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"match-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info("Match dispatcher started with %d workers", self.concurrency)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        for future in self._inflight.values():
            future.cancel()
        self._inflight.clear()
        logger.info("Match dispatcher stopped")

    def enqueue(self, request_id: int) -> asyncio.Future[SubmitOutcome]:
        existing = self._inflight.get(request_id)
        if existing is not None:
            return existing
        future: asyncio.Future[SubmitOutcome] = (
            asyncio.get_running_loop().create_future()
        )
        future.add_done_callback(_consume_exception)
        self._inflight[request_id] = future
        self._queue.put_nowait(request_id)
        return future

    async def join(self) -> None:
        """Wait until every queued request has been attempted."""
        await self._queue.join()

    async def _worker(self) -> None:
        while True:
            request_id = await self._queue.get()
            future = self._inflight.get(request_id)
            try:
                outcome = await self.coordinator.match_request(request_id)
            except Exception as exc:
                logger.exception("Matching failed for ride request %s", request_id)
                self.failures[request_id] = exc
                if future is not None and not future.done():
                    future.set_exception(exc)
            else:
                self.failures.pop(request_id, None)
                if future is not None and not future.done():
                    future.set_result(outcome)
            finally:
                self._inflight.pop(request_id, None)
                self._queue.task_done()
