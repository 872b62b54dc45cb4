from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from bookshelf.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32
_SECRET_FILES = {
    "jwt_access_secret": ".jwt_access_secret",
    "jwt_refresh_secret": ".jwt_refresh_secret",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(state_dir: Path, filename: str) -> str:
    """Load a generated signing secret from ``state_dir``, creating it if needed."""
    secret_path = state_dir / filename
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(state_dir))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET/JWT_REFRESH_SECRET or make STATE_DIR writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the bookshelf API."""

    model_config = ConfigDict(extra="ignore")

    database_url: str = env_field("postgresql://localhost:5432/bookshelf", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT", gt=0)
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    debug: bool = env_field(
        False, "DEBUG", description="Expose exception details in error responses"
    )
    state_dir: str = env_field(".bookshelf", "STATE_DIR")

    # token signing
    jwt_access_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )

    # email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str = env_field("noreply@bookshelf.local", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Bookshelf", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # uploads
    upload_dir: str = env_field("uploads", "UPLOAD_DIR")
    max_upload_bytes: int = env_field(5 * 1024 * 1024, "MAX_FILE_SIZE", gt=0)

    # request limits and housekeeping
    rate_limit_window_seconds: int = env_field(900, "RATE_LIMIT_WINDOW_SECONDS", gt=0)
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS", gt=0)
    token_sweep_interval_seconds: int = env_field(3600, "TOKEN_SWEEP_INTERVAL_SECONDS", gt=0)
    cors_allow_origins: str | None = env_field(
        None, "CORS_ALLOW_ORIGINS", description="Comma separated list; defaults to FRONTEND_URL"
    )

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_access_secret", "jwt_refresh_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{info.field_name} must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        state_dir = Path((info.data or {}).get("state_dir") or ".bookshelf")
        return _persisted_secret(state_dir, _SECRET_FILES[info.field_name])

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def allowed_origins(self) -> list[str]:
        raw = self.cors_allow_origins or self.frontend_url
        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def thumbnail_dir(self) -> Path:
        return Path(self.upload_dir) / "thumbnails"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
