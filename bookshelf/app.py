from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from bookshelf.api.error_handling import register_exception_handlers
from bookshelf.api.routes import router
from bookshelf.config import Settings
from bookshelf.logging import get_logger, set_correlation_id
from bookshelf.storage.memory_cache import MemoryCache

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_token_sweep(interval_seconds: int) -> None:
    """Background loop deleting expired verification and reset tokens."""
    from bookshelf.service.runtime import get_runtime, sweep_expired_tokens

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await sweep_expired_tokens(get_runtime())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("token_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("token_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from bookshelf.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_token_sweep(runtime.settings.token_sweep_interval_seconds)
    )
    logger.info("token_sweep_task_started", interval=runtime.settings.token_sweep_interval_seconds)

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Bookshelf API", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Session-ID",
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Use the caller's ``X-Request-ID`` or a fresh uuid; echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/health":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)

_upload_dir = Path(_settings.upload_dir)
_upload_dir.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=_upload_dir), name="uploads")


HEALTH_CHECK_TIMEOUT_SECONDS = 3
_HEALTH_KEY = "health_check"


async def _check_database(runtime) -> Dict[str, Any]:
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        return {"status": "healthy"}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return {"status": "unhealthy", "error": "timeout"}
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        return {"status": "unhealthy", "error": "unreachable"}


async def _check_cache(runtime) -> Dict[str, Any]:
    backend = runtime.cache.cache.backend
    if backend is None:
        return {"status": "unhealthy", "backend": "disabled"}
    if isinstance(backend, MemoryCache):
        return {"status": "healthy", "backend": "memory"}

    async def _round_trip() -> bool:
        await backend.set(_HEALTH_KEY, "ok", 10)
        value = await backend.get(_HEALTH_KEY)
        await backend.delete(_HEALTH_KEY)
        return value == "ok"

    try:
        ok = await asyncio.wait_for(_round_trip(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="cache", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return {"status": "unhealthy", "backend": backend.backend_name, "error": "timeout"}
    except Exception as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        return {"status": "unhealthy", "backend": backend.backend_name, "error": "unreachable"}
    return {"status": "healthy" if ok else "unhealthy", "backend": backend.backend_name}


@app.get("/health")
async def health() -> JSONResponse:
    """Probe the relational store and the cache; 503 when either fails."""
    from bookshelf.service.runtime import get_runtime

    runtime = get_runtime()
    checks = {
        "database": await _check_database(runtime),
        "cache": await _check_cache(runtime),
    }
    healthy = all(check["status"] == "healthy" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
        },
    )


def create_app() -> FastAPI:
    return app
