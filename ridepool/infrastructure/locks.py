"""
Locks for exclusive intent.

``KeyedLocks``
    In-process ``asyncio.Lock`` per entity key (``ride:<id>``, ``pool:<id>``).
    The coordinator takes these before opening a write transaction, always
    request keys before pool keys, so same-entity mutations in one process
    queue up instead of colliding inside the database.  Waiting longer than
    the timeout raises ``ConcurrencyConflict``.

``DistributedLock``
    Redis lock used by the backfill worker so only one instance runs a
    batch cycle at a time.  SET NX EX to acquire, a Lua script for atomic
    check-and-delete on release.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from ridepool.errors import ConcurrencyConflict

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class KeyedLocks:
    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout = timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: defaultdict[str, int] = defaultdict(int)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def contenders(self, key: str) -> int:
        """Tasks holding or waiting for *key*."""
        return self._refs.get(key, 0)

    def _checkout(self, key: str) -> asyncio.Lock:
        self._refs[key] += 1
        return self._locks.setdefault(key, asyncio.Lock())

    def _checkin(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] <= 0:
            del self._refs[key]
            self._locks.pop(key, None)

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Acquire *keys* in the given order; release in reverse."""
        held: list[str] = []
        try:
            for key in keys:
                if key in held:
                    continue
                lock = self._checkout(key)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    self._checkin(key)
                    raise ConcurrencyConflict(f"Timed out waiting for {key}")
                except BaseException:
                    self._checkin(key)
                    raise
                held.append(key)
            yield
        finally:
            for key in reversed(held):
                self._locks[key].release()
                self._checkin(key)


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def release(self) -> bool:
        """Release only if we still own the lock (atomic via Lua)."""
        return bool(await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token))

    # context-manager support
    async def __aenter__(self):
        if not await self.acquire():
            raise ConcurrencyConflict(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()
