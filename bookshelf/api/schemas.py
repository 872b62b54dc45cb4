from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from bookshelf.storage.models import Book, Session, User

MAX_NAME_LENGTH = 100
MAX_TITLE_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 5000
MAX_PAGE_SIZE = 100
MAX_SEARCH_RESULTS = 50


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_name(value: str) -> str:
    normalized = " ".join(_normalize_unicode(value).split())
    if len(normalized) < 2:
        raise ValueError("name must be at least 2 characters")
    if len(normalized) > MAX_NAME_LENGTH:
        raise ValueError(f"name must be at most {MAX_NAME_LENGTH} characters")
    if not all(c.isalpha() or c == " " for c in normalized):
        raise ValueError("name can only contain letters and spaces")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
    ):
        raise ValueError(
            "password must contain at least one uppercase letter, one lowercase letter, and one number"
        )
    return value


def _validate_text(value: Optional[str], field: str, max_length: int, *, required: bool) -> Optional[str]:
    if value is None:
        if required:
            raise ValueError(f"{field} is required")
        return None
    value = _normalize_unicode(value).strip()
    if required and not value:
        raise ValueError(f"{field} is required")
    if len(value) > max_length:
        raise ValueError(f"{field} must be at most {max_length} characters")
    return value


def parse_rating(raw: Optional[str]) -> Optional[float]:
    """Multipart forms send strings; an empty value means no rating."""
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError("rating must be a number") from exc


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# requests


class RegisterRequest(_CamelModel):
    name: str
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordResetRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(_CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(_CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=256)


class UserUpdateRequest(_CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    is_admin: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def _validate_update_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_update_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class BookFields(BaseModel):
    """Validated book form fields; multipart values arrive as strings."""

    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    rating: Optional[float] = Field(default=None, ge=1, le=5)

    @field_validator("title", "author")
    @classmethod
    def _validate_short_text(cls, value: Optional[str], info) -> Optional[str]:
        return _validate_text(
            value, info.field_name, MAX_TITLE_LENGTH, required=value is not None
        )

    @field_validator("description")
    @classmethod
    def _validate_description(cls, value: Optional[str]) -> Optional[str]:
        return _validate_text(value, "description", MAX_DESCRIPTION_LENGTH, required=False)


class BookCreateFields(BookFields):
    @model_validator(mode="after")
    def _require_title_and_author(self) -> "BookCreateFields":
        missing = [name for name in ("title", "author") if not getattr(self, name)]
        if missing:
            raise ValueError(f"{' and '.join(missing)} required")
        return self


# responses


class UserResponse(_CamelModel):
    id: str
    name: str
    email: str
    is_admin: bool = False
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    books_count: Optional[int] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            is_admin=user.is_admin,
            email_verified=user.is_verified,
            email_verified_at=user.email_verified_at,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            updated_at=user.updated_at,
            books_count=user.books_count,
        )


class CreatorResponse(_CamelModel):
    id: str
    name: str


class BookResponse(_CamelModel):
    id: str
    title: str
    author: str
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    rating: Optional[float] = None
    created_by: str
    creator: Optional[CreatorResponse] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_book(cls, book: Book) -> "BookResponse":
        creator = CreatorResponse(**book.creator) if book.creator else None
        return cls(
            id=book.id,
            title=book.title,
            author=book.author,
            description=book.description,
            thumbnail_url=book.thumbnail_url,
            rating=book.rating,
            created_by=book.created_by,
            creator=creator,
            created_at=book.created_at,
            updated_at=book.updated_at,
        )


class TokenResponse(_CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthResponse(_CamelModel):
    user: UserResponse
    tokens: TokenResponse
    session_id: Optional[str] = None


class SessionResponse(_CamelModel):
    id: str
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_activity: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            ip_addr=session.ip_addr,
            user_agent=session.user_agent,
            created_at=session.created_at,
            last_activity=session.last_activity,
        )


class PaginationResponse(_CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next_page: bool
    has_prev_page: bool


class BookListResponse(_CamelModel):
    books: List[BookResponse]
    pagination: PaginationResponse


class UserListResponse(_CamelModel):
    users: List[UserResponse]
    pagination: PaginationResponse


class AuthorCount(_CamelModel):
    author: str
    count: int


class BookStatsResponse(_CamelModel):
    total_books: int
    books_with_rating: int
    books_without_rating: int
    average_rating: Optional[float] = None
    recent_books: int
    top_authors: List[AuthorCount]


class UserStatsResponse(_CamelModel):
    total_users: int
    verified_users: int
    unverified_users: int
    admin_users: int
    regular_users: int
    recent_users: int
    verification_rate: float


class TokenKindStats(_CamelModel):
    total: int = 0
    active: int = 0
    used: int = 0
    expired: int = 0


def dump(model: BaseModel) -> Any:
    """Serialize a response model with camelCase keys for the envelope."""
    return model.model_dump(mode="json", by_alias=True)
