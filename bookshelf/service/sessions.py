from __future__ import annotations

from typing import List, Optional

from bookshelf.logging import get_logger
from bookshelf.storage.cache import SESSION_TTL, EntityCache
from bookshelf.storage.models import Session, User, utcnow

logger = get_logger(__name__)


class SessionManager:
    """Cache-resident login sessions with a per-user index for bulk revocation.

    ``session:<id>`` holds the session snapshot and ``user_sessions:<user_id>``
    lists the ids belonging to a user. Both share the same TTL, so a stale id
    in the index never outlives the TTL.
    """

    def __init__(self, cache: EntityCache, *, ttl_seconds: int = SESSION_TTL) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def create(
        self,
        user: User,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        session = Session.new(user, ip_addr=ip_addr, user_agent=user_agent)
        await self.cache.set_session(session.id, session.to_dict(), self.ttl_seconds)
        session_ids = await self.cache.get_user_session_ids(user.id)
        session_ids.append(session.id)
        await self.cache.set_user_session_ids(user.id, session_ids, self.ttl_seconds)
        logger.info("session_created", session_id=session.id, user_id=user.id)
        return session.id

    async def get(self, session_id: str) -> Optional[Session]:
        payload = await self.cache.get_session(session_id)
        if not payload:
            return None
        try:
            return Session.from_dict(payload)
        except (TypeError, ValueError, KeyError):
            logger.warning("session_payload_invalid", session_id=session_id)
            return None

    async def touch(self, session_id: str) -> bool:
        session = await self.get(session_id)
        if session is None:
            return False
        session.last_activity = utcnow()
        await self.cache.set_session(session_id, session.to_dict(), self.ttl_seconds)
        return True

    async def destroy(self, session_id: str, *, expected_user_id: Optional[str] = None) -> bool:
        """Remove a session. With ``expected_user_id``, only that user's session is touched."""
        session = await self.get(session_id)
        if session is None:
            return False
        if expected_user_id is not None and session.user_id != expected_user_id:
            logger.warning("session_destroy_denied", session_id=session_id, user_id=expected_user_id)
            return False
        await self.cache.delete_session(session_id)
        session_ids = [sid for sid in await self.cache.get_user_session_ids(session.user_id) if sid != session_id]
        if session_ids:
            await self.cache.set_user_session_ids(session.user_id, session_ids, self.ttl_seconds)
        else:
            await self.cache.delete_user_session_ids(session.user_id)
        logger.info("session_destroyed", session_id=session_id, user_id=session.user_id)
        return True

    async def destroy_all_for_user(self, user_id: str) -> int:
        session_ids = await self.cache.get_user_session_ids(user_id)
        destroyed = 0
        for session_id in session_ids:
            if await self.cache.delete_session(session_id):
                destroyed += 1
        await self.cache.delete_user_session_ids(user_id)
        if destroyed:
            logger.info("user_sessions_destroyed", user_id=user_id, count=destroyed)
        return destroyed

    async def list_for_user(self, user_id: str) -> List[Session]:
        sessions: List[Session] = []
        for session_id in await self.cache.get_user_session_ids(user_id):
            session = await self.get(session_id)
            if session is not None:
                sessions.append(session)
        return sessions
