from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from bookshelf.logging import get_logger
from bookshelf.storage.models import TokenKind, User, VerificationToken, utcnow

logger = get_logger(__name__)

TOKEN_LIFETIMES: Dict[TokenKind, timedelta] = {
    TokenKind.EMAIL_VERIFICATION: timedelta(hours=24),
    TokenKind.PASSWORD_RESET: timedelta(hours=1),
}

# 32 random bytes, hex encoded
_TOKEN_BYTES = 32


class TokenRecordStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_verification_token(
        self, user_id: str, kind: TokenKind, token: str, expires_at: datetime
    ) -> VerificationToken: ...

    def consume_verification_token(
        self, token: str, kind: TokenKind, now: Optional[datetime] = None
    ) -> Optional[str]: ...

    def delete_expired_verification_tokens(
        self, now: Optional[datetime] = None
    ) -> Dict[TokenKind, int]: ...

    def revoke_user_verification_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> int: ...

    def verification_token_stats(
        self, now: Optional[datetime] = None
    ) -> Dict[TokenKind, Dict[str, int]]: ...


class TokenService:
    """Single-use email verification and password reset tokens.

    Rows live only in the relational store. Consumption is a conditional
    update there, so two concurrent attempts on one token yield one winner.
    """

    def __init__(
        self,
        store: TokenRecordStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._clock = clock

    def issue(self, user_id: str, kind: TokenKind) -> VerificationToken:
        """Replace any live token of ``kind`` for the user with a fresh one."""
        kind = TokenKind(kind)
        value = secrets.token_hex(_TOKEN_BYTES)
        expires_at = self._clock() + TOKEN_LIFETIMES[kind]
        record = self.store.create_verification_token(user_id, kind, value, expires_at)
        logger.info("verification_token_issued", user_id=user_id, kind=kind.value)
        return record

    def consume(self, token: str, kind: TokenKind) -> Optional[User]:
        """Burn ``token`` and return its owner, or ``None`` for any invalid token.

        Unknown, expired and already used tokens are indistinguishable to the
        caller.
        """
        if not token:
            return None
        kind = TokenKind(kind)
        user_id = self.store.consume_verification_token(token, kind, self._clock())
        if not user_id:
            logger.info("verification_token_invalid", kind=kind.value, token_prefix=token[:8])
            return None
        user = self.store.get_user(user_id)
        if not user:
            logger.warning("verification_token_owner_missing", user_id=user_id, kind=kind.value)
        return user

    def sweep_expired(self) -> Dict[str, int]:
        counts = self.store.delete_expired_verification_tokens(self._clock())
        result = {kind.value: counts.get(kind, 0) for kind in TokenKind}
        logger.info("token_sweep_completed", **result)
        return result

    def revoke_all_for_user(self, user_id: str) -> int:
        revoked = self.store.revoke_user_verification_tokens(user_id, self._clock())
        if revoked:
            logger.info("verification_tokens_revoked", user_id=user_id, count=revoked)
        return revoked

    def stats(self) -> Dict[str, Dict[str, int]]:
        stats = self.store.verification_token_stats(self._clock())
        return {kind.value: stats[kind] for kind in TokenKind}
