from __future__ import annotations

from typing import Any, Dict, List, Optional

from bookshelf.logging import get_logger
from bookshelf.service.errors import (
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from bookshelf.service.fs import ThumbnailStorage, ThumbnailUpload
from bookshelf.service.pagination import Page, build_pagination
from bookshelf.storage.cache import EntityCache
from bookshelf.storage.models import BOOK_SORT_FIELDS, SORT_ORDERS, Book, BookQuery, User

logger = get_logger(__name__)

MIN_RATING = 1.0
MAX_RATING = 5.0
_EDITABLE_FIELDS = ("title", "author", "description", "rating")


def validate_rating(rating: Optional[float]) -> None:
    if rating is None:
        return
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationError(
            "rating must be between 1 and 5",
            detail={"field": "rating", "value": rating},
        )


def can_modify(user: User, book: Book) -> bool:
    return user.is_admin or book.created_by == user.id


class BookService:
    """Book CRUD with cache-aside reads and invalidate-after-write."""

    def __init__(self, store, cache: EntityCache, files: ThumbnailStorage) -> None:
        self.store = store
        self.cache = cache
        self.files = files

    async def _invalidate(self, book_id: Optional[str] = None) -> None:
        if book_id:
            await self.cache.invalidate_book(book_id)
        await self.cache.invalidate_book_lists()
        await self.cache.invalidate_stats()

    async def get_book(self, book_id: str) -> Optional[Book]:
        cached = await self.cache.get_book(book_id)
        if cached:
            try:
                return Book.from_dict(cached)
            except (TypeError, ValueError):
                logger.warning("book_cache_entry_invalid", book_id=book_id)
        book = self.store.get_book(book_id)
        if book:
            await self.cache.set_book(book.id, book.to_dict())
        return book

    async def require_book(self, book_id: str) -> Book:
        book = await self.get_book(book_id)
        if not book:
            raise NotFoundError("book not found", detail={"book_id": book_id})
        return book

    async def list_books(self, query: BookQuery) -> Page[Book]:
        if query.sort_by not in BOOK_SORT_FIELDS:
            raise ValidationError("invalid sort field", detail={"field": "sort_by"})
        if query.sort_order not in SORT_ORDERS:
            raise ValidationError("invalid sort order", detail={"field": "sort_order"})
        if (
            query.min_rating is not None
            and query.max_rating is not None
            and query.min_rating > query.max_rating
        ):
            raise ValidationError("min_rating cannot exceed max_rating")
        list_key = query.cache_key()
        cached = await self.cache.get_book_list(list_key)
        if cached:
            try:
                return Page(
                    items=[Book.from_dict(item) for item in cached["items"]],
                    pagination=cached["pagination"],
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("book_list_cache_entry_invalid")
        books, total = self.store.list_books(query)
        page = Page(items=books, pagination=build_pagination(query.page, query.limit, total))
        await self.cache.set_book_list(
            list_key,
            {"items": [b.to_dict() for b in books], "pagination": page.pagination},
        )
        return page

    async def list_user_books(self, user_id: str, page: int = 1, limit: int = 10) -> Page[Book]:
        return await self.list_books(BookQuery(page=page, limit=limit, created_by=user_id))

    async def search_books(self, term: str, limit: int = 10) -> List[Book]:
        term = term.strip()
        if not term:
            raise ValidationError("search query is required", detail={"field": "q"})
        return self.store.search_books(term, limit)

    async def create_book(
        self,
        owner: User,
        *,
        title: str,
        author: str,
        description: Optional[str] = None,
        rating: Optional[float] = None,
        thumbnail: Optional[ThumbnailUpload] = None,
    ) -> Book:
        validate_rating(rating)
        thumbnail_url = self.files.save(thumbnail) if thumbnail else None
        try:
            book = self.store.create_book(
                title=title,
                author=author,
                description=description,
                rating=rating,
                thumbnail_url=thumbnail_url,
                created_by=owner.id,
            )
        except Exception:
            self.files.delete(thumbnail_url)
            raise
        await self._invalidate()
        logger.info("book_created", book_id=book.id, user_id=owner.id)
        return book

    async def update_book(
        self,
        actor: User,
        book_id: str,
        changes: Dict[str, Any],
        *,
        thumbnail: Optional[ThumbnailUpload] = None,
    ) -> Book:
        """Apply ``changes`` if ``actor`` owns the book or is an admin.

        A new thumbnail replaces the stored one; the old file is removed after
        the store write succeeds.
        """
        book = await self.require_book(book_id)
        if not can_modify(actor, book):
            raise AuthorizationError(
                "you can only modify your own books", detail={"book_id": book_id}
            )
        updates = {key: value for key, value in changes.items() if key in _EDITABLE_FIELDS}
        if "rating" in updates:
            validate_rating(updates["rating"])
        new_thumbnail = self.files.save(thumbnail) if thumbnail else None
        if new_thumbnail:
            updates["thumbnail_url"] = new_thumbnail
        try:
            updated = self.store.update_book(book_id, updates)
        except Exception:
            self.files.delete(new_thumbnail)
            raise
        if not updated:
            self.files.delete(new_thumbnail)
            raise NotFoundError("book not found", detail={"book_id": book_id})
        if new_thumbnail and book.thumbnail_url and book.thumbnail_url != new_thumbnail:
            self.files.delete(book.thumbnail_url)
        await self._invalidate(book_id)
        logger.info("book_updated", book_id=book_id, user_id=actor.id, fields=sorted(updates))
        return updated

    async def delete_book(self, actor: User, book_id: str) -> None:
        book = await self.require_book(book_id)
        if not can_modify(actor, book):
            raise AuthorizationError(
                "you can only delete your own books", detail={"book_id": book_id}
            )
        if not self.store.delete_book(book_id):
            raise NotFoundError("book not found", detail={"book_id": book_id})
        self.files.delete(book.thumbnail_url)
        await self._invalidate(book_id)
        logger.info("book_deleted", book_id=book_id, user_id=actor.id)

    async def get_stats(self) -> Dict[str, Any]:
        cached = await self.cache.get_stats("books")
        if cached:
            return cached
        raw = self.store.book_stats()
        average = raw["average_rating"]
        stats = {
            "total_books": raw["total"],
            "books_with_rating": raw["rated"],
            "books_without_rating": raw["total"] - raw["rated"],
            "average_rating": round(average, 2) if average is not None else None,
            "recent_books": raw["recent"],
            "top_authors": [
                {"author": author, "count": count} for author, count in raw["top_authors"]
            ],
        }
        await self.cache.set_stats("books", stats)
        return stats
