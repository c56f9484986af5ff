from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed TTL store for denylist and revocation markers."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same async surface as RedisCache.

    Used in TEST_MODE so the client is not bound to whichever event loop a
    test or TestClient happens to run.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def delete(self, key: str) -> None:
        self.client.delete(key)

    async def close(self) -> None:
        self.client.close()
