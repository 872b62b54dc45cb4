from __future__ import annotations

from typing import Any, Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    Query,
    Request,
    Response,
    UploadFile,
)

from bookshelf.api.schemas import (
    MAX_PAGE_SIZE,
    MAX_SEARCH_RESULTS,
    AuthResponse,
    BookCreateFields,
    BookFields,
    BookListResponse,
    BookResponse,
    BookStatsResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PaginationResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    TokenKindStats,
    TokenResponse,
    UserListResponse,
    UserResponse,
    UserStatsResponse,
    UserUpdateRequest,
    dump,
    parse_rating,
)
from bookshelf.logging import get_correlation_id, get_logger
from bookshelf.service.auth import AuthContext, AuthResult, TokenPair
from bookshelf.service.books import can_modify
from bookshelf.service.errors import (
    AuthenticationError,
    AuthorizationError,
    RateLimitError,
    ValidationError,
)
from bookshelf.service.fs import ThumbnailUpload
from bookshelf.service.runtime import check_rate_limit, get_runtime, sweep_expired_tokens
from bookshelf.storage.models import BookQuery, UserQuery

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _ok(data: Any = None) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count the request against ``key`` and raise 429 once over the cap."""
    limit = runtime.settings.rate_limit_max_requests
    allowed, remaining, window_seconds = await check_rate_limit(runtime, key)
    info = RateLimitInfo(limit, remaining, window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitError(
            "too many requests, please try again later",
            detail={"retry_after_seconds": window_seconds},
        )
    return info


# request gating


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, alias="X-Session-ID"),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id=session_id)
    if not ctx:
        raise AuthenticationError("authentication required")
    if session_id:
        session = await runtime.sessions.get(session_id)
        if session and session.user_id == ctx.user_id:
            await runtime.sessions.touch(session_id)
    return ctx


async def get_optional_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, alias="X-Session-ID"),
) -> Optional[AuthContext]:
    """Like :func:`get_user` but never rejects; failures yield ``None``."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, session_id=session_id)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.is_admin:
        raise AuthorizationError("admin access required")
    return principal


def require_ownership(principal: AuthContext, owner_id: str) -> None:
    """Allow the owner of a resource or an admin."""
    if principal.user_id != owner_id and not principal.is_admin:
        raise AuthorizationError("access denied")


def _auth_payload(result: AuthResult) -> dict:
    return dump(
        AuthResponse(
            user=UserResponse.from_user(result.user),
            tokens=_token_response(result.tokens),
            session_id=result.session_id,
        )
    )


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
    )


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"register:{_client_ip(request)}", response=response)
    result = await runtime.auth.register(
        body.name,
        body.email,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _ok(_auth_payload(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 message.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"login:{_client_ip(request)}", response=response)
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _ok(_auth_payload(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return _ok(dump(_token_response(tokens)))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        principal.token,
        body.refresh_token if body else None,
        user_id=principal.user_id,
        session_id=principal.session_id,
    )
    return _ok({"message": "logged out"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"forgot:{_client_ip(request)}", response=response)
    await runtime.auth.forgot_password(body.email)
    return _ok({"message": "if that email is registered, a reset link has been sent"})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"reset:{_client_ip(request)}", response=response)
    await runtime.auth.reset_password(body.token, body.password)
    return _ok({"message": "password has been reset"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return _ok(dump(UserResponse.from_user(user)))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.resend_verification(principal.user)
    return _ok({"message": "verification email sent"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user, body.current_password, body.new_password
    )
    return _ok({"message": "password changed"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    return _ok(dump(UserResponse.from_user(principal.user)))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list_for_user(principal.user_id)
    return _ok([dump(SessionResponse.from_session(s)) for s in sessions])


# books


async def _read_thumbnail(upload: Optional[UploadFile], max_bytes: int) -> Optional[ThumbnailUpload]:
    if upload is None or not upload.filename:
        return None
    content = await upload.read(max_bytes + 1)
    return ThumbnailUpload(
        filename=upload.filename, content_type=upload.content_type, content=content
    )


def _rating_from_form(raw: Optional[str]) -> Optional[float]:
    try:
        return parse_rating(raw)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": "rating"}) from exc


def _book_page(page) -> dict:
    return dump(
        BookListResponse(
            books=[BookResponse.from_book(b) for b in page.items],
            pagination=PaginationResponse(**page.pagination),
        )
    )


@router.get("/books", response_model=Envelope, tags=["books"])
async def list_books(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = Query(None, max_length=255),
    author: Optional[str] = Query(None, max_length=255),
    min_rating: Optional[float] = Query(None, alias="minRating", ge=1, le=5),
    max_rating: Optional[float] = Query(None, alias="maxRating", ge=1, le=5),
    sort_by: str = Query("created_at", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
):
    runtime = get_runtime()
    query = BookQuery(
        page=page,
        limit=limit,
        search=(search or "").strip() or None,
        author=(author or "").strip() or None,
        min_rating=min_rating,
        max_rating=max_rating,
        sort_by=sort_by,
        sort_order=sort_order.lower(),
    )
    return _ok(_book_page(await runtime.books.list_books(query)))


@router.get("/books/search", response_model=Envelope, tags=["books"])
async def search_books(
    q: str = Query(..., min_length=1, max_length=255),
    limit: int = Query(10, ge=1, le=MAX_SEARCH_RESULTS),
):
    runtime = get_runtime()
    books = await runtime.books.search_books(q, limit)
    return _ok([dump(BookResponse.from_book(b)) for b in books])


@router.get("/books/stats", response_model=Envelope, tags=["books"])
async def book_stats(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    stats = await runtime.books.get_stats()
    return _ok(dump(BookStatsResponse(**stats)))


@router.get("/books/user/{user_id}", response_model=Envelope, tags=["books"])
async def list_user_books(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
):
    runtime = get_runtime()
    await runtime.users.require_user(user_id)
    return _ok(_book_page(await runtime.books.list_user_books(user_id, page, limit)))


@router.get("/books/{book_id}", response_model=Envelope, tags=["books"])
async def get_book(
    book_id: str, viewer: Optional[AuthContext] = Depends(get_optional_user)
):
    runtime = get_runtime()
    book = await runtime.books.require_book(book_id)
    data = dump(BookResponse.from_book(book))
    if viewer is not None:
        data["canModify"] = can_modify(viewer.user, book)
    return _ok(data)


@router.post("/books", response_model=Envelope, status_code=201, tags=["books"])
async def create_book(
    title: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    rating: Optional[str] = Form(None),
    thumbnail: Optional[UploadFile] = File(None),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    fields = BookCreateFields(
        title=title,
        author=author,
        description=description,
        rating=_rating_from_form(rating),
    )
    upload = await _read_thumbnail(thumbnail, runtime.settings.max_upload_bytes)
    book = await runtime.books.create_book(
        principal.user,
        title=fields.title,
        author=fields.author,
        description=fields.description,
        rating=fields.rating,
        thumbnail=upload,
    )
    return _ok(dump(BookResponse.from_book(book)))


@router.api_route(
    "/books/{book_id}", methods=["PUT", "PATCH"], response_model=Envelope, tags=["books"]
)
async def update_book(
    book_id: str,
    title: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    rating: Optional[str] = Form(None),
    thumbnail: Optional[UploadFile] = File(None),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    provided = {
        name: value
        for name, value in (("title", title), ("author", author), ("description", description))
        if value is not None
    }
    if rating is not None:
        provided["rating"] = _rating_from_form(rating)
    fields = BookFields(**provided)
    changes = {name: getattr(fields, name) for name in provided}
    upload = await _read_thumbnail(thumbnail, runtime.settings.max_upload_bytes)
    book = await runtime.books.update_book(principal.user, book_id, changes, thumbnail=upload)
    return _ok(dump(BookResponse.from_book(book)))


@router.delete("/books/{book_id}", response_model=Envelope, tags=["books"])
async def delete_book(book_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.books.delete_book(principal.user, book_id)
    return _ok({"message": "book deleted"})


# users


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = Query(None, max_length=255),
    is_admin: Optional[bool] = Query(None, alias="isAdmin"),
    verified: Optional[bool] = Query(None),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    query = UserQuery(
        page=page,
        limit=limit,
        search=(search or "").strip() or None,
        is_admin=is_admin,
        verified=verified,
    )
    result = await runtime.users.list_users(query)
    return _ok(
        dump(
            UserListResponse(
                users=[UserResponse.from_user(u) for u in result.items],
                pagination=PaginationResponse(**result.pagination),
            )
        )
    )


@router.get("/users/stats", response_model=Envelope, tags=["users"])
async def user_stats(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    stats = await runtime.users.get_stats()
    return _ok(dump(UserStatsResponse(**stats)))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(user_id: str, principal: AuthContext = Depends(get_user)):
    require_ownership(principal, user_id)
    runtime = get_runtime()
    user = await runtime.users.require_user(user_id)
    return _ok(dump(UserResponse.from_user(user)))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    user_id: str,
    body: UserUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    require_ownership(principal, user_id)
    user = await runtime.users.update_user(
        principal.user,
        user_id,
        name=body.name,
        email=body.email,
        is_admin=body.is_admin,
    )
    if body.password is not None:
        await runtime.auth.set_password(user_id, body.password)
    return _ok(dump(UserResponse.from_user(user)))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    await runtime.users.delete_user(principal.user, user_id)
    await runtime.auth.revoke_user_tokens(user_id)
    return _ok({"message": "user deleted"})


@router.patch("/users/{user_id}/toggle-admin", response_model=Envelope, tags=["users"])
async def toggle_admin(user_id: str, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    user = await runtime.users.toggle_admin(principal.user, user_id)
    return _ok(dump(UserResponse.from_user(user)))


# admin


@router.post("/admin/cache/invalidate", response_model=Envelope, tags=["admin"])
async def invalidate_cache(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    deleted = await runtime.cache.invalidate_all()
    logger.info("cache_invalidated_by_admin", actor_id=principal.user_id, **deleted)
    return _ok({"deleted": deleted})


@router.get("/admin/tokens/stats", response_model=Envelope, tags=["admin"])
async def token_stats(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    stats = runtime.tokens.stats()
    return _ok({kind: dump(TokenKindStats(**counts)) for kind, counts in stats.items()})


@router.post("/admin/tokens/sweep", response_model=Envelope, tags=["admin"])
async def sweep_tokens(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    deleted = await sweep_expired_tokens(runtime)
    return _ok({"deleted": deleted})
