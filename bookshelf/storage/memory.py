from __future__ import annotations

import threading
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from bookshelf.logging import get_logger
from bookshelf.storage.errors import ConstraintViolation
from bookshelf.storage.models import (
    Book,
    BookQuery,
    TokenKind,
    User,
    UserQuery,
    VerificationToken,
    utcnow,
)

_RECENT_WINDOW = timedelta(days=30)
_UNSET = object()


class MemoryStore:
    """In-process backing store with the same surface as ``PostgresStore``.

    Used by tests and local development. Every method hands out copies so
    callers never mutate stored rows in place.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.books: Dict[str, Book] = {}
        self.tokens: Dict[str, VerificationToken] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # user / auth

    def create_user(self, name: str, email: str, *, is_admin: bool = False) -> User:
        email = email.lower()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                name=name,
                email=email,
                is_admin=is_admin,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_users(self, query: UserQuery) -> Tuple[List[User], int]:
        with self._data_lock:
            results = list(self.users.values())
            if query.search:
                needle = query.search.lower()
                results = [
                    u for u in results if needle in u.name.lower() or needle in u.email
                ]
            if query.is_admin is not None:
                results = [u for u in results if u.is_admin == query.is_admin]
            if query.verified is not None:
                results = [u for u in results if u.is_verified == query.verified]
            results.sort(key=lambda u: u.created_at, reverse=True)
            total = len(results)
            page = results[query.offset : query.offset + query.limit]
            counts = Counter(book.created_by for book in self.books.values())
            return [replace(u, books_count=counts.get(u.id, 0)) for u in page], total

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        is_admin: Optional[bool] = None,
        email_verified_at: Any = _UNSET,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None:
                email = email.lower()
                if any(
                    other.email == email and other.id != user_id
                    for other in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = email
            if name is not None:
                user.name = name
            if is_admin is not None:
                user.is_admin = is_admin
            if email_verified_at is not _UNSET:
                user.email_verified_at = email_verified_at
            user.updated_at = utcnow()
            return replace(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.email_verified_at is None:
                user.email_verified_at = utcnow()
                user.updated_at = user.email_verified_at
            return replace(user)

    def touch_last_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = utcnow()

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for book_id, book in list(self.books.items()):
                if book.created_by == user_id:
                    self.books.pop(book_id, None)
            for token_id, token in list(self.tokens.items()):
                if token.user_id == user_id:
                    self.tokens.pop(token_id, None)
            return True

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def user_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        with self._data_lock:
            users = list(self.users.values())
            return {
                "total": len(users),
                "verified": sum(1 for u in users if u.is_verified),
                "admins": sum(1 for u in users if u.is_admin),
                "recent": sum(1 for u in users if u.created_at >= now - _RECENT_WINDOW),
            }

    # books

    def _with_creator(self, book: Book) -> Book:
        owner = self.users.get(book.created_by)
        creator = {"id": owner.id, "name": owner.name} if owner else None
        return replace(book, creator=creator)

    def create_book(
        self,
        *,
        title: str,
        author: str,
        created_by: str,
        description: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
        rating: Optional[float] = None,
    ) -> Book:
        with self._data_lock:
            if created_by not in self.users:
                raise ConstraintViolation("book owner not found", {"created_by": created_by})
            now = utcnow()
            book = Book(
                id=str(uuid.uuid4()),
                title=title,
                author=author,
                description=description,
                thumbnail_url=thumbnail_url,
                rating=rating,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            self.books[book.id] = book
            return self._with_creator(book)

    def get_book(self, book_id: str) -> Optional[Book]:
        with self._data_lock:
            book = self.books.get(book_id)
            return self._with_creator(book) if book else None

    def update_book(self, book_id: str, changes: Dict[str, Any]) -> Optional[Book]:
        allowed = {"title", "author", "description", "thumbnail_url", "rating"}
        with self._data_lock:
            book = self.books.get(book_id)
            if not book:
                return None
            for key, value in changes.items():
                if key in allowed:
                    setattr(book, key, value)
            book.updated_at = utcnow()
            return self._with_creator(book)

    def delete_book(self, book_id: str) -> bool:
        with self._data_lock:
            return self.books.pop(book_id, None) is not None

    def list_books(self, query: BookQuery) -> Tuple[List[Book], int]:
        with self._data_lock:
            results = list(self.books.values())
            if query.search:
                needle = query.search.lower()
                results = [
                    b
                    for b in results
                    if needle in b.title.lower()
                    or needle in b.author.lower()
                    or needle in (b.description or "").lower()
                ]
            if query.author:
                needle = query.author.lower()
                results = [b for b in results if needle in b.author.lower()]
            if query.min_rating is not None:
                results = [
                    b for b in results if b.rating is not None and b.rating >= query.min_rating
                ]
            if query.max_rating is not None:
                results = [
                    b for b in results if b.rating is not None and b.rating <= query.max_rating
                ]
            if query.created_by:
                results = [b for b in results if b.created_by == query.created_by]

            def sort_key(book: Book):
                value = getattr(book, query.sort_by)
                return value.lower() if isinstance(value, str) else value

            rated = [b for b in results if getattr(b, query.sort_by) is not None]
            unrated = [b for b in results if getattr(b, query.sort_by) is None]
            rated.sort(key=sort_key, reverse=query.sort_order == "desc")
            ordered = rated + unrated
            total = len(ordered)
            page = ordered[query.offset : query.offset + query.limit]
            return [self._with_creator(b) for b in page], total

    def search_books(self, term: str, limit: int = 10) -> List[Book]:
        books, _ = self.list_books(BookQuery(page=1, limit=limit, search=term))
        return books

    def list_book_files_for_user(self, user_id: str) -> List[Tuple[str, Optional[str]]]:
        """``(book_id, thumbnail_url)`` for every book the user created."""
        with self._data_lock:
            return [
                (b.id, b.thumbnail_url) for b in self.books.values() if b.created_by == user_id
            ]

    def book_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        with self._data_lock:
            books = list(self.books.values())
            ratings = [b.rating for b in books if b.rating is not None]
            authors = Counter(b.author for b in books)
            return {
                "total": len(books),
                "rated": len(ratings),
                "average_rating": (sum(ratings) / len(ratings)) if ratings else None,
                "recent": sum(1 for b in books if b.created_at >= now - _RECENT_WINDOW),
                "top_authors": authors.most_common(5),
            }

    # verification tokens

    def create_verification_token(
        self, user_id: str, kind: TokenKind, token: str, expires_at: datetime
    ) -> VerificationToken:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for token", {"user_id": user_id})
            for token_id, existing in list(self.tokens.items()):
                if existing.user_id == user_id and existing.kind == kind and existing.used_at is None:
                    self.tokens.pop(token_id, None)
            if any(existing.token == token for existing in self.tokens.values()):
                raise ConstraintViolation("token already exists", {"field": "token"})
            record = VerificationToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token=token,
                kind=kind,
                expires_at=expires_at,
            )
            self.tokens[record.id] = record
            return replace(record, user=replace(user))

    def consume_verification_token(
        self, token: str, kind: TokenKind, now: Optional[datetime] = None
    ) -> Optional[str]:
        """Mark a live token used and return its owner id; ``None`` otherwise."""
        now = now or utcnow()
        with self._data_lock:
            for record in self.tokens.values():
                if record.token == token and record.kind == kind and record.is_valid(now):
                    record.used_at = now
                    return record.user_id
            return None

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        with self._data_lock:
            record = next((t for t in self.tokens.values() if t.token == token), None)
            return replace(record) if record else None

    def delete_expired_verification_tokens(
        self, now: Optional[datetime] = None
    ) -> Dict[TokenKind, int]:
        now = now or utcnow()
        counts = {kind: 0 for kind in TokenKind}
        with self._data_lock:
            for token_id, record in list(self.tokens.items()):
                if record.expires_at < now:
                    self.tokens.pop(token_id, None)
                    counts[record.kind] += 1
        return counts

    def revoke_user_verification_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        revoked = 0
        with self._data_lock:
            for record in self.tokens.values():
                if record.user_id == user_id and record.used_at is None:
                    record.used_at = now
                    revoked += 1
        return revoked

    def verification_token_stats(
        self, now: Optional[datetime] = None
    ) -> Dict[TokenKind, Dict[str, int]]:
        now = now or utcnow()
        stats = {kind: {"total": 0, "active": 0, "used": 0, "expired": 0} for kind in TokenKind}
        with self._data_lock:
            for record in self.tokens.values():
                bucket = stats[record.kind]
                bucket["total"] += 1
                if record.used_at is not None:
                    bucket["used"] += 1
                elif record.expires_at <= now:
                    bucket["expired"] += 1
                else:
                    bucket["active"] += 1
        return stats
