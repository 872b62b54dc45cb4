from __future__ import annotations

import asyncio
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

import jwt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from bookshelf.config import Settings
from bookshelf.logging import get_logger
from bookshelf.service.email import EmailService
from bookshelf.service.errors import AuthenticationError, ValidationError
from bookshelf.service.sessions import SessionManager
from bookshelf.service.tokens import TokenService
from bookshelf.service.users import UserService
from bookshelf.storage.cache import EntityCache
from bookshelf.storage.models import TokenKind, User

logger = get_logger(__name__)

_ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"
INVALID_CREDENTIALS = "invalid email or password"
INVALID_TOKEN = "invalid or expired token"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class AuthContext:
    user: User
    token: str
    session_id: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.user.is_admin


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    session_id: Optional[str] = None


class AuthService:
    """JWT issuance, verification and revocation plus the account flows.

    Access and refresh tokens are signed with distinct secrets. Revocation
    writes ``blacklist:<token>`` entries that expire with the token, and a
    per-user watermark rejects every token issued before a credential change.
    """

    def __init__(
        self,
        store,
        cache: EntityCache,
        settings: Settings,
        *,
        users: UserService,
        tokens: TokenService,
        sessions: SessionManager,
        email: EmailService,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.users = users
        self.tokens = tokens
        self.sessions = sessions
        self.email = email
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        digest, algo = self._hash_password(password)
        self.store.save_password(user_id, digest, algo)

    # jwt

    def _secret(self, token_type: str) -> str:
        if token_type == ACCESS:
            return self.settings.jwt_access_secret
        return self.settings.jwt_refresh_secret

    def _ttl_seconds(self, token_type: str) -> int:
        if token_type == ACCESS:
            return self.settings.access_token_ttl_minutes * 60
        return self.settings.refresh_token_ttl_minutes * 60

    def _encode(self, user_id: str, token_type: str) -> str:
        issued_at = self._clock()
        payload = {
            "sub": user_id,
            "type": token_type,
            "iat": issued_at,
            "exp": int(issued_at) + self._ttl_seconds(token_type),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret(token_type), algorithm=_ALGORITHM)

    def _decode(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        try:
            payload = jwt.decode(
                token,
                self._secret(token_type),
                algorithms=[_ALGORITHM],
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None
        if payload.get("type") != token_type:
            return None
        return payload

    def issue_pair(self, user_id: str) -> TokenPair:
        return TokenPair(
            access_token=self._encode(user_id, ACCESS),
            refresh_token=self._encode(user_id, REFRESH),
            expires_in=self._ttl_seconds(ACCESS),
        )

    async def _is_revoked(self, token: str, payload: dict[str, Any]) -> bool:
        if await self.cache.is_token_blacklisted(token):
            return True
        watermark = await self.cache.get_revocation_watermark(str(payload["sub"]))
        return watermark is not None and float(payload["iat"]) < watermark

    async def _verify(self, token: Optional[str], token_type: str) -> Optional[str]:
        if not token:
            return None
        payload = self._decode(token, token_type)
        if not payload:
            return None
        if await self._is_revoked(token, payload):
            self.logger.info("revoked_token_rejected", token_type=token_type, user_id=payload["sub"])
            return None
        return str(payload["sub"])

    async def verify_access(self, token: Optional[str]) -> Optional[str]:
        """User id for a live access token, else ``None``."""
        return await self._verify(token, ACCESS)

    async def verify_refresh(self, token: Optional[str]) -> Optional[str]:
        """User id for a live refresh token, else ``None``."""
        return await self._verify(token, REFRESH)

    def _remaining_lifetime(self, token: Optional[str]) -> Optional[int]:
        """Whole seconds until ``exp``; ``None`` for garbage or expired tokens."""
        if not token:
            return None
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            return None
        remaining = math.ceil(exp - self._clock())
        return remaining if remaining > 0 else None

    async def blacklist(self, token: Optional[str]) -> bool:
        """Blacklist ``token`` until its natural expiry; expired tokens are skipped."""
        remaining = self._remaining_lifetime(token)
        if remaining is None:
            return False
        await self.cache.blacklist_token(token, remaining)
        return True

    async def revoke_user_tokens(self, user_id: str) -> None:
        """Reject every JWT issued to ``user_id`` before now."""
        await self.cache.set_revocation_watermark(
            user_id, self._clock(), self._ttl_seconds(REFRESH)
        )

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(
        self, authorization: Optional[str], *, session_id: Optional[str] = None
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        user_id = await self.verify_access(token)
        if not user_id:
            return None
        user = await self.users.get_user(user_id)
        if not user:
            self.logger.info("token_user_missing", user_id=user_id)
            return None
        return AuthContext(user=user, token=token, session_id=session_id)

    # account flows

    async def _send_best_effort(self, event: str, func: Callable[..., bool], *args: Any) -> bool:
        try:
            sent = await asyncio.to_thread(func, *args)
        except Exception as exc:
            self.logger.error("email_send_failed", email_type=event, error=str(exc))
            return False
        if not sent:
            self.logger.warning("email_send_failed", email_type=event)
        return bool(sent)

    async def _send_verification(self, user: User) -> None:
        token = self.tokens.issue(user.id, TokenKind.EMAIL_VERIFICATION)
        await self._send_best_effort(
            "verification", self.email.send_verification_email, user.email, user.name, token.token
        )

    async def _start_session(
        self, user: User, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> AuthResult:
        session_id = await self.sessions.create(user, ip_addr=ip_addr, user_agent=user_agent)
        return AuthResult(user=user, tokens=self.issue_pair(user.id), session_id=session_id)

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = await self.users.create_user(name, email)
        try:
            self.save_password(user.id, password)
        except Exception:
            self.store.delete_user(user.id)
            raise
        await self._send_verification(user)
        self.logger.info("user_registered", user_id=user.id)
        return await self._start_session(user, ip_addr, user_agent)

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = self.users.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            self.logger.info("login_failed")
            raise AuthenticationError(INVALID_CREDENTIALS)
        await self.users.record_login(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return await self._start_session(user, ip_addr, user_agent)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token: the presented one is blacklisted before reissue."""
        user_id = await self.verify_refresh(refresh_token)
        if not user_id:
            raise AuthenticationError("invalid refresh token")
        user = await self.users.get_user(user_id)
        if not user:
            raise AuthenticationError("invalid refresh token")
        # the claim is the replay guard: concurrent rotations of one token get one winner
        remaining = self._remaining_lifetime(refresh_token)
        if remaining is None or not await self.cache.claim_blacklist_entry(refresh_token, remaining):
            self.logger.info("refresh_token_replay_rejected", user_id=user.id)
            raise AuthenticationError("invalid refresh token")
        return self.issue_pair(user.id)

    async def logout(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        *,
        user_id: str,
        session_id: Optional[str] = None,
    ) -> None:
        await self.blacklist(access_token)
        if refresh_token:
            await self.blacklist(refresh_token)
        if session_id:
            await self.sessions.destroy(session_id, expected_user_id=user_id)

    async def revoke_all_credentials(self, user_id: str) -> None:
        """Drop sessions, outstanding verification tokens and issued JWTs."""
        destroyed = await self.sessions.destroy_all_for_user(user_id)
        revoked = self.tokens.revoke_all_for_user(user_id)
        await self.revoke_user_tokens(user_id)
        self.logger.info(
            "user_credentials_revoked", user_id=user_id, sessions=destroyed, verification_tokens=revoked
        )

    async def forgot_password(self, email: str) -> None:
        """Issue a reset token if the account exists. Never reveals existence."""
        user = self.users.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email")
            return
        token = self.tokens.issue(user.id, TokenKind.PASSWORD_RESET)
        await self._send_best_effort(
            "password_reset", self.email.send_password_reset_email, user.email, user.name, token.token
        )

    async def reset_password(self, token: str, new_password: str) -> User:
        user = self.tokens.consume(token, TokenKind.PASSWORD_RESET)
        if not user:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise ValidationError(INVALID_TOKEN)
        self.save_password(user.id, new_password)
        await self.revoke_all_credentials(user.id)
        await self.users.cache.invalidate_user(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    async def verify_email(self, token: str) -> User:
        user = self.tokens.consume(token, TokenKind.EMAIL_VERIFICATION)
        if not user:
            raise ValidationError(INVALID_TOKEN)
        verified = await self.users.mark_email_verified(user.id)
        await self._send_best_effort(
            "welcome", self.email.send_welcome_email, verified.email, verified.name
        )
        self.logger.info("email_verified", user_id=user.id)
        return verified

    async def resend_verification(self, user: User) -> None:
        if user.is_verified:
            raise ValidationError("email is already verified")
        await self._send_verification(user)

    async def change_password(self, user: User, current_password: str, new_password: str) -> None:
        if not self.verify_password(user.id, current_password):
            raise AuthenticationError("current password is incorrect")
        await self.set_password(user.id, new_password)

    async def set_password(self, user_id: str, new_password: str) -> None:
        self.save_password(user_id, new_password)
        await self.revoke_all_credentials(user_id)
        self.logger.info("password_changed", user_id=user_id)
