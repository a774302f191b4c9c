"""
Cache-aside accelerator backed by Redis.

The cache is never authoritative: every operation that fails is logged and
reported as a miss, and writers invalidate keys *after* their transaction
commits.  ``NullCache`` keeps the same interface when Redis is disabled.
"""

from __future__ import annotations

import logging
from typing import Optional, TypeVar

import redis.asyncio as aioredis
from pydantic import TypeAdapter, ValidationError
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEMAND_KEY = "demand:factor"


def ride_key(ride_id: int) -> str:
    return f"ride:{ride_id}"


def pool_key(pool_id: int) -> str:
    return f"pool:{pool_id}"


class NullCache:
    """Every read misses, every write is dropped."""

    async def get(self, key: str) -> Optional[str]:
        return None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        return None

    async def delete(self, *keys: str) -> None:
        return None

    async def get_json(self, key: str, adapter: TypeAdapter[T]) -> Optional[T]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return adapter.validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable cache entry %s", key)
            await self.delete(key)
            return None

    async def set_json(
        self,
        key: str,
        value: T,
        adapter: TypeAdapter[T],
        ttl_seconds: Optional[int] = None,
    ) -> None:
        await self.set(key, adapter.dump_json(value).decode(), ttl_seconds)


class RedisCache(NullCache):
    def __init__(self, client: aioredis.Redis, default_ttl_seconds: int = 300):
        self.redis = client
        self.default_ttl = default_ttl_seconds

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.redis.get(key)
        except RedisError:
            logger.warning("Redis GET failed for %s", key, exc_info=True)
            return None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.redis.set(key, value, ex=ttl_seconds or self.default_ttl)
        except RedisError:
            logger.warning("Redis SET failed for %s", key, exc_info=True)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self.redis.delete(*keys)
        except RedisError:
            logger.warning("Redis DEL failed for %s", keys, exc_info=True)
