from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from bookshelf.config import get_settings, reset_settings_cache
from bookshelf.logging import get_logger
from bookshelf.service.auth import AuthService
from bookshelf.service.books import BookService
from bookshelf.service.email import EmailService, build_mail_sender
from bookshelf.service.fs import ThumbnailStorage
from bookshelf.service.sessions import SessionManager
from bookshelf.service.tokens import TokenService
from bookshelf.service.users import UserService
from bookshelf.storage.cache import EntityCache, SafeCache
from bookshelf.storage.memory import MemoryStore
from bookshelf.storage.memory_cache import MemoryCache
from bookshelf.storage.postgres import PostgresStore
from bookshelf.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = EntityCache(SafeCache(self._connect_cache()))
        logger.info("runtime_cache_initialized", backend=self.cache.cache.backend_name)

        self.files = ThumbnailStorage(
            self.settings.upload_dir, max_bytes=self.settings.max_upload_bytes
        )
        self.email = EmailService(
            build_mail_sender(self.settings),
            frontend_url=self.settings.frontend_url,
            app_name=self.settings.email_from_name,
        )
        self.tokens = TokenService(self.store)
        self.sessions = SessionManager(self.cache)
        self.users = UserService(self.store, self.cache, self.sessions, self.files)
        self.books = BookService(self.store, self.cache, self.files)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            users=self.users,
            tokens=self.tokens,
            sessions=self.sessions,
            email=self.email,
        )

    def _connect_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding a pool to a dead event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, token revocation and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions, blacklist entries "
                "and rate limits are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton; double-checked under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            backend = runtime.cache.cache.backend
            try:
                if isinstance(backend, SyncRedisCache):
                    backend.client.close()
                elif isinstance(backend, RedisCache):
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(backend.close())
                    except RuntimeError:
                        asyncio.run(backend.close())
            except Exception as exc:
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    identifier: str,
    limit: Optional[int] = None,
    window_seconds: Optional[int] = None,
) -> Tuple[bool, int, int]:
    """Fixed-window counter. Returns ``(allowed, remaining, window_seconds)``.

    A cache outage reads as a zero count, so requests are allowed through.
    """
    limit = limit if limit is not None else runtime.settings.rate_limit_max_requests
    window_seconds = (
        window_seconds
        if window_seconds is not None
        else runtime.settings.rate_limit_window_seconds
    )
    if limit <= 0:
        return True, limit, window_seconds
    count = await runtime.cache.increment_rate_limit(identifier, window_seconds)
    allowed = count <= limit
    if not allowed:
        logger.warning("rate_limit_exceeded", identifier=identifier, count=count, limit=limit)
    return allowed, max(0, limit - count), window_seconds


async def sweep_expired_tokens(runtime: Runtime) -> Dict[str, int]:
    return await asyncio.to_thread(runtime.tokens.sweep_expired)
