from __future__ import annotations

from typing import Any, Optional, Protocol

from bookshelf.logging import get_logger

logger = get_logger(__name__)

BOOK_TTL = 600
BOOK_LIST_TTL = 300
USER_TTL = 600
USER_LIST_TTL = 300
SESSION_TTL = 86400
STATS_TTL = 600
RATE_LIMIT_WINDOW = 900


class CacheBackend(Protocol):
    backend_name: str

    def verify_connection(self) -> None: ...

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_by_pattern(self, pattern: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def increment(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def close(self) -> None: ...


class SafeCache:
    """Degrade-to-miss wrapper around a cache backend.

    Every backend failure is logged and turned into a miss or a no-op, so
    callers keep working from the relational store when the cache is down.
    ``SafeCache(None)`` behaves as a permanently empty cache.
    """

    def __init__(self, backend: Optional[CacheBackend]) -> None:
        self.backend = backend

    @property
    def backend_name(self) -> str:
        return self.backend.backend_name if self.backend is not None else "disabled"

    async def get(self, key: str) -> Any:
        if self.backend is None:
            return None
        try:
            return await self.backend.get(key)
        except Exception as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        if self.backend is None:
            return False
        try:
            await self.backend.set(key, value, ttl_seconds)
            return True
        except Exception as exc:
            logger.warning("cache_set_failed", key=key, error=str(exc))
            return False

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Write only when ``key`` is absent. An unavailable cache reads as absent."""
        if self.backend is None:
            return True
        try:
            return await self.backend.set_if_absent(key, value, ttl_seconds)
        except Exception as exc:
            logger.warning("cache_set_if_absent_failed", key=key, error=str(exc))
            return True

    async def delete(self, key: str) -> bool:
        if self.backend is None:
            return False
        try:
            return await self.backend.delete(key)
        except Exception as exc:
            logger.warning("cache_delete_failed", key=key, error=str(exc))
            return False

    async def delete_by_pattern(self, pattern: str) -> int:
        if self.backend is None:
            return 0
        try:
            return await self.backend.delete_by_pattern(pattern)
        except Exception as exc:
            logger.warning("cache_delete_by_pattern_failed", pattern=pattern, error=str(exc))
            return 0

    async def exists(self, key: str) -> bool:
        if self.backend is None:
            return False
        try:
            return await self.backend.exists(key)
        except Exception as exc:
            logger.warning("cache_exists_failed", key=key, error=str(exc))
            return False

    async def increment(self, key: str) -> int:
        if self.backend is None:
            return 0
        try:
            return await self.backend.increment(key)
        except Exception as exc:
            logger.warning("cache_increment_failed", key=key, error=str(exc))
            return 0

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        if self.backend is None:
            return False
        try:
            return await self.backend.expire(key, ttl_seconds)
        except Exception as exc:
            logger.warning("cache_expire_failed", key=key, error=str(exc))
            return False

    async def close(self) -> None:
        if self.backend is None:
            return
        try:
            await self.backend.close()
        except Exception as exc:
            logger.warning("cache_close_failed", error=str(exc))


class EntityCache:
    """Typed key helpers on top of :class:`SafeCache`.

    Keys:
    - ``book:<id>`` and ``books:list:<query>`` for books
    - ``user:<id>`` and ``users:list:<query>`` for users
    - ``stats:<name>`` for admin aggregates
    - ``session:<id>`` and ``user_sessions:<user_id>`` for sessions
    - ``rate_limit:<identifier>`` for request counters
    - ``blacklist:<token>`` and ``token_revoked_before:<user_id>`` for JWT revocation
    """

    def __init__(self, cache: SafeCache) -> None:
        self.cache = cache

    # books
    async def get_book(self, book_id: str) -> Optional[dict]:
        return await self.cache.get(f"book:{book_id}")

    async def set_book(self, book_id: str, payload: dict) -> None:
        await self.cache.set(f"book:{book_id}", payload, BOOK_TTL)

    async def invalidate_book(self, book_id: str) -> None:
        await self.cache.delete(f"book:{book_id}")

    async def get_book_list(self, list_key: str) -> Optional[dict]:
        return await self.cache.get(list_key)

    async def set_book_list(self, list_key: str, payload: dict) -> None:
        await self.cache.set(list_key, payload, BOOK_LIST_TTL)

    async def invalidate_book_lists(self) -> int:
        return await self.cache.delete_by_pattern("books:*")

    # users
    async def get_user(self, user_id: str) -> Optional[dict]:
        return await self.cache.get(f"user:{user_id}")

    async def set_user(self, user_id: str, payload: dict) -> None:
        await self.cache.set(f"user:{user_id}", payload, USER_TTL)

    async def invalidate_user(self, user_id: str) -> None:
        await self.cache.delete(f"user:{user_id}")

    async def get_user_list(self, list_key: str) -> Optional[dict]:
        return await self.cache.get(list_key)

    async def set_user_list(self, list_key: str, payload: dict) -> None:
        await self.cache.set(list_key, payload, USER_LIST_TTL)

    async def invalidate_user_lists(self) -> int:
        return await self.cache.delete_by_pattern("users:*")

    # stats
    async def get_stats(self, name: str) -> Optional[dict]:
        return await self.cache.get(f"stats:{name}")

    async def set_stats(self, name: str, payload: dict) -> None:
        await self.cache.set(f"stats:{name}", payload, STATS_TTL)

    async def invalidate_stats(self) -> int:
        return await self.cache.delete_by_pattern("stats:*")

    # sessions
    async def get_session(self, session_id: str) -> Optional[dict]:
        return await self.cache.get(f"session:{session_id}")

    async def set_session(self, session_id: str, payload: dict, ttl_seconds: int = SESSION_TTL) -> None:
        await self.cache.set(f"session:{session_id}", payload, ttl_seconds)

    async def delete_session(self, session_id: str) -> bool:
        return await self.cache.delete(f"session:{session_id}")

    async def get_user_session_ids(self, user_id: str) -> list[str]:
        ids = await self.cache.get(f"user_sessions:{user_id}")
        return list(ids) if isinstance(ids, list) else []

    async def set_user_session_ids(
        self, user_id: str, session_ids: list[str], ttl_seconds: int = SESSION_TTL
    ) -> None:
        await self.cache.set(f"user_sessions:{user_id}", session_ids, ttl_seconds)

    async def delete_user_session_ids(self, user_id: str) -> None:
        await self.cache.delete(f"user_sessions:{user_id}")

    # rate limiting
    async def increment_rate_limit(
        self, identifier: str, window_seconds: int = RATE_LIMIT_WINDOW
    ) -> int:
        """Count a hit; the window starts on the first hit and is never extended."""
        key = f"rate_limit:{identifier}"
        count = await self.cache.increment(key)
        if count == 1:
            await self.cache.expire(key, window_seconds)
        return count

    async def get_rate_limit(self, identifier: str) -> int:
        value = await self.cache.get(f"rate_limit:{identifier}")
        return int(value) if isinstance(value, int) else 0

    # token revocation
    async def blacklist_token(self, token: str, ttl_seconds: int) -> None:
        await self.cache.set(f"blacklist:{token}", "1", ttl_seconds)

    async def claim_blacklist_entry(self, token: str, ttl_seconds: int) -> bool:
        """Blacklist ``token`` unless it already is; ``False`` means someone else got there first."""
        return await self.cache.set_if_absent(f"blacklist:{token}", "1", ttl_seconds)

    async def is_token_blacklisted(self, token: str) -> bool:
        return await self.cache.exists(f"blacklist:{token}")

    async def set_revocation_watermark(
        self, user_id: str, issued_before: float, ttl_seconds: int
    ) -> None:
        await self.cache.set(f"token_revoked_before:{user_id}", issued_before, ttl_seconds)

    async def get_revocation_watermark(self, user_id: str) -> Optional[float]:
        value = await self.cache.get(f"token_revoked_before:{user_id}")
        return float(value) if isinstance(value, (int, float)) else None

    async def invalidate_all(self) -> dict[str, int]:
        return {
            "books": await self.invalidate_book_lists(),
            "users": await self.invalidate_user_lists(),
            "stats": await self.invalidate_stats(),
        }
