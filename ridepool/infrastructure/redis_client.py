"""Redis async client factory."""

import redis.asyncio as aioredis


def create_redis(url: str) -> aioredis.Redis:
    """Return a Redis client with its own connection pool."""
    return aioredis.Redis.from_url(url, decode_responses=True)
