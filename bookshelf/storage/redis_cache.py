from __future__ import annotations

import json
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis import Redis

_SCAN_BATCH = 200


def _encode(value: Any) -> str:
    return json.dumps(value, default=str)


def _decode(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted cache entry - treat as cache miss
        return None


class RedisCache:
    """Thin JSON key/value wrapper over ``redis.asyncio``."""

    backend_name = "redis"

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
        # A short-lived sync client keeps the async client off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Any:
        return _decode(await self.client.get(key))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, _encode(value), ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        return bool(await self.client.set(key, _encode(value), ex=ttl_seconds, nx=True))

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def delete_by_pattern(self, pattern: str) -> int:
        keys: List[str] = [key async for key in self.client.scan_iter(match=pattern, count=_SCAN_BATCH)]
        deleted = 0
        for start in range(0, len(keys), _SCAN_BATCH):
            deleted += await self.client.delete(*keys[start : start + _SCAN_BATCH])
        return deleted

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def increment(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, ttl_seconds))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid binding connections to a pytest event
    loop, while exposing the same awaitable surface as :class:`RedisCache`.
    """

    backend_name = "redis"

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

    async def get(self, key: str) -> Any:
        return _decode(self.client.get(key))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        self.client.set(key, _encode(value), ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        return bool(self.client.set(key, _encode(value), ex=ttl_seconds, nx=True))

    async def delete(self, key: str) -> bool:
        return bool(self.client.delete(key))

    async def delete_by_pattern(self, pattern: str) -> int:
        keys = list(self.client.scan_iter(match=pattern, count=_SCAN_BATCH))
        deleted = 0
        for start in range(0, len(keys), _SCAN_BATCH):
            deleted += self.client.delete(*keys[start : start + _SCAN_BATCH])
        return deleted

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def increment(self, key: str) -> int:
        return int(self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(self.client.expire(key, ttl_seconds))

    async def close(self) -> None:
        self.client.close()
