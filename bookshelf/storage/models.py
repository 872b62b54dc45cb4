from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

BOOK_SORT_FIELDS = ("created_at", "updated_at", "title", "author", "rating")
SORT_ORDERS = ("asc", "desc")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class _CacheableMixin:
    """JSON-safe dict conversion for dataclasses stored in the cache."""

    _datetime_fields: tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {key: _dump_value(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        for name in cls._datetime_fields:
            if name in values:
                values[name] = _parse_datetime(values[name])
        return cls(**values)


class TokenKind(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class User(_CacheableMixin):
    id: str
    name: str
    email: str
    is_admin: bool = False
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    books_count: Optional[int] = None

    _datetime_fields = ("email_verified_at", "last_login_at", "created_at", "updated_at")

    @property
    def is_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class Book(_CacheableMixin):
    id: str
    title: str
    author: str
    created_by: str
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    rating: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    creator: Optional[Dict[str, Any]] = None

    _datetime_fields = ("created_at", "updated_at")


@dataclass
class VerificationToken:
    id: str
    user_id: str
    token: str
    kind: TokenKind
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    user: Optional[User] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.used_at is None and now < self.expires_at


@dataclass
class Session(_CacheableMixin):
    id: str
    user_id: str
    email: str
    name: str
    is_admin: bool = False
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)

    _datetime_fields = ("created_at", "last_activity")

    @classmethod
    def new(
        cls,
        user: User,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=uuid.uuid4().hex,
            user_id=user.id,
            email=user.email,
            name=user.name,
            is_admin=user.is_admin,
            ip_addr=ip_addr,
            user_agent=user_agent,
            created_at=now,
            last_activity=now,
        )


@dataclass
class BookQuery:
    page: int = 1
    limit: int = 10
    search: Optional[str] = None
    author: Optional[str] = None
    min_rating: Optional[float] = None
    max_rating: Optional[float] = None
    created_by: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def cache_key(self) -> str:
        """Canonical list-cache key covering every filter, page and sort field."""
        return "books:list:" + json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))


@dataclass
class UserQuery:
    page: int = 1
    limit: int = 10
    search: Optional[str] = None
    is_admin: Optional[bool] = None
    verified: Optional[bool] = None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit
