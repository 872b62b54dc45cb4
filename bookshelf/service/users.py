from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any, Dict, Optional

from bookshelf.logging import get_logger
from bookshelf.service.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from bookshelf.service.fs import ThumbnailStorage
from bookshelf.service.pagination import Page, build_pagination
from bookshelf.service.sessions import SessionManager
from bookshelf.storage.cache import EntityCache
from bookshelf.storage.errors import ConstraintViolation
from bookshelf.storage.models import User, UserQuery

logger = get_logger(__name__)


class UserService:
    """User reads through the cache, writes to the store then invalidate."""

    def __init__(
        self,
        store,
        cache: EntityCache,
        sessions: SessionManager,
        files: ThumbnailStorage,
    ) -> None:
        self.store = store
        self.cache = cache
        self.sessions = sessions
        self.files = files

    async def get_user(self, user_id: str) -> Optional[User]:
        cached = await self.cache.get_user(user_id)
        if cached:
            try:
                return User.from_dict(cached)
            except (TypeError, ValueError):
                logger.warning("user_cache_entry_invalid", user_id=user_id)
        user = self.store.get_user(user_id)
        if user:
            await self.cache.set_user(user.id, user.to_dict())
        return user

    async def require_user(self, user_id: str) -> User:
        user = await self.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email.strip().lower())

    async def _invalidate(self, user_id: Optional[str] = None, *, books: bool = False) -> None:
        if user_id:
            await self.cache.invalidate_user(user_id)
        await self.cache.invalidate_user_lists()
        await self.cache.invalidate_stats()
        if books:
            await self.cache.invalidate_book_lists()

    async def create_user(self, name: str, email: str, *, is_admin: bool = False) -> User:
        try:
            user = self.store.create_user(name, email.strip().lower(), is_admin=is_admin)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        await self._invalidate()
        logger.info("user_created", user_id=user.id)
        return user

    async def list_users(self, query: UserQuery) -> Page[User]:
        list_key = "users:list:" + json.dumps(asdict(query), sort_keys=True, separators=(",", ":"))
        cached = await self.cache.get_user_list(list_key)
        if cached:
            try:
                return Page(
                    items=[User.from_dict(item) for item in cached["items"]],
                    pagination=cached["pagination"],
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("user_list_cache_entry_invalid")
        users, total = self.store.list_users(query)
        page = Page(items=users, pagination=build_pagination(query.page, query.limit, total))
        await self.cache.set_user_list(
            list_key,
            {"items": [u.to_dict() for u in users], "pagination": page.pagination},
        )
        return page

    async def update_user(
        self,
        actor: User,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        is_admin: Optional[bool] = None,
    ) -> User:
        """Update profile fields. Only admins may change ``is_admin``.

        Changing the email clears the verified timestamp.
        """
        if actor.id != user_id and not actor.is_admin:
            raise AuthorizationError("access denied")
        if is_admin is not None and not actor.is_admin:
            raise AuthorizationError("only admins can change admin status")
        current = await self.require_user(user_id)
        changes: Dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        if is_admin is not None:
            changes["is_admin"] = is_admin
        if email is not None:
            email = email.strip().lower()
            if email != current.email:
                changes["email"] = email
                changes["email_verified_at"] = None
        if not changes:
            return current
        try:
            updated = self.store.update_user(user_id, **changes)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self._invalidate(user_id)
        logger.info("user_updated", user_id=user_id, fields=sorted(changes))
        return updated

    async def toggle_admin(self, actor: User, user_id: str) -> User:
        if actor.id == user_id:
            raise ValidationError("cannot change your own admin status")
        target = await self.require_user(user_id)
        updated = self.store.update_user(user_id, is_admin=not target.is_admin)
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self._invalidate(user_id)
        logger.info("user_admin_toggled", user_id=user_id, is_admin=updated.is_admin, actor_id=actor.id)
        return updated

    async def delete_user(self, actor: User, user_id: str) -> None:
        if actor.id == user_id:
            raise ValidationError("cannot delete your own account")
        await self.require_user(user_id)
        book_files = self.store.list_book_files_for_user(user_id)
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        for book_id, thumbnail_url in book_files:
            await self.cache.invalidate_book(book_id)
            if thumbnail_url:
                self.files.delete(thumbnail_url)
        await self.sessions.destroy_all_for_user(user_id)
        await self._invalidate(user_id, books=True)
        logger.info("user_deleted", user_id=user_id, actor_id=actor.id)

    async def mark_email_verified(self, user_id: str) -> User:
        user = self.store.mark_email_verified(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self._invalidate(user_id)
        return user

    async def record_login(self, user_id: str) -> None:
        self.store.touch_last_login(user_id)
        await self.cache.invalidate_user(user_id)

    async def get_stats(self) -> Dict[str, Any]:
        cached = await self.cache.get_stats("users")
        if cached:
            return cached
        raw = self.store.user_stats()
        total = raw["total"]
        stats = {
            "total_users": total,
            "verified_users": raw["verified"],
            "unverified_users": total - raw["verified"],
            "admin_users": raw["admins"],
            "regular_users": total - raw["admins"],
            "recent_users": raw["recent"],
            "verification_rate": round(raw["verified"] / total * 100, 2) if total else 0.0,
        }
        await self.cache.set_stats("users", stats)
        return stats
