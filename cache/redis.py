"""
cache/redis.py -- Redis-backed state cache for multi-host deployments.

Every replica behind a load balancer must see the OAuth state written by the
replica that served /register, so the state cache has to be shared. TTLs are
delegated to Redis (SET ... PX), which also handles expiry: purge_expired()
has nothing to do.

Usage:
    cache = RedisCache.from_url("redis://localhost:6379/0")
    await cache.store("auth:github:update:42", "1", ttl=7200)
"""

from __future__ import annotations

import logging

from redis.asyncio import Redis

logger = logging.getLogger("authmw.cache.redis")


class RedisCache:
    """State cache over a redis.asyncio client."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        logger.info("State cache backed by Redis")
        return cls(Redis.from_url(url))

    async def load(self, key: str) -> bytes | None:
        return await self._client.get(key)

    async def store(self, key: str, value: str | bytes, ttl: float) -> None:
        await self._client.set(key, value, px=max(1, int(ttl * 1000)))

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._client.delete(*keys)

    def purge_expired(self) -> int:
        return 0

    async def close(self) -> None:
        await self._client.aclose()
