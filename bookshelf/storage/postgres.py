from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from bookshelf.logging import get_logger
from bookshelf.storage.errors import ConstraintViolation, SchemaNotReady
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

# Case-insensitive substring match; the pattern comes from _contains_pattern.
_ILIKE = "ILIKE %s ESCAPE '\\'"

_UNSET = object()

# Column expressions for the allowed sort keys; never interpolate user input.
_BOOK_SORT_COLUMNS = {
    "created_at": "b.created_at",
    "updated_at": "b.updated_at",
    "title": "lower(b.title)",
    "author": "lower(b.author)",
    "rating": "b.rating",
}

_BOOK_SELECT = """
    SELECT b.*, u.name AS creator_name
    FROM book b
    LEFT JOIN app_user u ON u.id = b.created_by
"""


def _contains_pattern(term: str) -> str:
    """Escape LIKE wildcards so ``term`` matches literally anywhere in the column."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class PostgresStore:
    """Postgres-backed system of record for users, books and verification tokens."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        required_tables = ["app_user", "book", "verification_token"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise SchemaNotReady(missing_tables)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            is_admin=bool(row.get("is_admin", False)),
            email_verified_at=row.get("email_verified_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            books_count=row.get("books_count"),
        )

    @staticmethod
    def _row_to_book(row: Dict[str, Any]) -> Book:
        creator = None
        if row.get("creator_name") is not None:
            creator = {"id": str(row["created_by"]), "name": row["creator_name"]}
        rating = row.get("rating")
        return Book(
            id=str(row["id"]),
            title=row["title"],
            author=row["author"],
            description=row.get("description"),
            thumbnail_url=row.get("thumbnail_url"),
            rating=float(rating) if rating is not None else None,
            created_by=str(row["created_by"]),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            creator=creator,
        )

    # user / auth

    def create_user(self, name: str, email: str, *, is_admin: bool = False) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, is_admin)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, name, email.lower(), is_admin),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s", (email.lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, query: UserQuery) -> Tuple[List[User], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.search:
            clauses.append(f"(u.name {_ILIKE} OR u.email {_ILIKE})")
            pattern = _contains_pattern(query.search)
            params.extend([pattern, pattern])
        if query.is_admin is not None:
            clauses.append("u.is_admin = %s")
            params.append(query.is_admin)
        if query.verified is not None:
            clauses.append(
                "u.email_verified_at IS NOT NULL" if query.verified else "u.email_verified_at IS NULL"
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user u {where}", params
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT u.*, (SELECT COUNT(*) FROM book b WHERE b.created_by = u.id) AS books_count
                FROM app_user u
                {where}
                ORDER BY u.created_at DESC
                LIMIT %s OFFSET %s
                """,
                [*params, query.limit, query.offset],
            ).fetchall()
        return [self._row_to_user(row) for row in rows], int(total_row["total"])

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        is_admin: Optional[bool] = None,
        email_verified_at: Any = _UNSET,
    ) -> Optional[User]:
        assignments: List[str] = ["updated_at = now()"]
        params: List[Any] = []
        if name is not None:
            assignments.append("name = %s")
            params.append(name)
        if email is not None:
            assignments.append("email = %s")
            params.append(email.lower())
        if is_admin is not None:
            assignments.append("is_admin = %s")
            params.append(is_admin)
        if email_verified_at is not _UNSET:
            assignments.append("email_verified_at = %s")
            params.append(email_verified_at)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    [*params, user_id],
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified_at = COALESCE(email_verified_at, now()), updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def touch_last_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE app_user SET last_login_at = now() WHERE id = %s", (user_id,))

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def user_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        since = (now or utcnow()) - _RECENT_WINDOW
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE email_verified_at IS NOT NULL) AS verified,
                    COUNT(*) FILTER (WHERE is_admin) AS admins,
                    COUNT(*) FILTER (WHERE created_at >= %s) AS recent
                FROM app_user
                """,
                (since,),
            ).fetchone()
        return {key: int(row[key]) for key in ("total", "verified", "admins", "recent")}

    # books

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
        book_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO book (id, title, author, description, thumbnail_url, rating, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (book_id, title, author, description, thumbnail_url, rating, created_by),
                )
                row = conn.execute(f"{_BOOK_SELECT} WHERE b.id = %s", (book_id,)).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("book owner not found", {"created_by": created_by})
        return self._row_to_book(row)

    def get_book(self, book_id: str) -> Optional[Book]:
        with self._connect() as conn:
            row = conn.execute(f"{_BOOK_SELECT} WHERE b.id = %s", (book_id,)).fetchone()
        return self._row_to_book(row) if row else None

    def update_book(self, book_id: str, changes: Dict[str, Any]) -> Optional[Book]:
        allowed = ("title", "author", "description", "thumbnail_url", "rating")
        assignments = ["updated_at = now()"]
        params: List[Any] = []
        for key in allowed:
            if key in changes:
                assignments.append(f"{key} = %s")
                params.append(changes[key])
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE book SET {', '.join(assignments)} WHERE id = %s",
                [*params, book_id],
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(f"{_BOOK_SELECT} WHERE b.id = %s", (book_id,)).fetchone()
        return self._row_to_book(row)

    def delete_book(self, book_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM book WHERE id = %s", (book_id,))
            return result.rowcount > 0

    def list_books(self, query: BookQuery) -> Tuple[List[Book], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.search:
            clauses.append(f"(b.title {_ILIKE} OR b.author {_ILIKE} OR b.description {_ILIKE})")
            pattern = _contains_pattern(query.search)
            params.extend([pattern, pattern, pattern])
        if query.author:
            clauses.append(f"b.author {_ILIKE}")
            params.append(_contains_pattern(query.author))
        if query.min_rating is not None:
            clauses.append("b.rating >= %s")
            params.append(query.min_rating)
        if query.max_rating is not None:
            clauses.append("b.rating <= %s")
            params.append(query.max_rating)
        if query.created_by:
            clauses.append("b.created_by = %s")
            params.append(query.created_by)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        column = _BOOK_SORT_COLUMNS.get(query.sort_by, "b.created_at")
        direction = "ASC" if query.sort_order == "asc" else "DESC"
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM book b {where}", params
            ).fetchone()
            rows = conn.execute(
                f"""
                {_BOOK_SELECT}
                {where}
                ORDER BY {column} {direction} NULLS LAST, b.id
                LIMIT %s OFFSET %s
                """,
                [*params, query.limit, query.offset],
            ).fetchall()
        return [self._row_to_book(row) for row in rows], int(total_row["total"])

    def search_books(self, term: str, limit: int = 10) -> List[Book]:
        books, _ = self.list_books(BookQuery(page=1, limit=limit, search=term))
        return books

    def list_book_files_for_user(self, user_id: str) -> List[Tuple[str, Optional[str]]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, thumbnail_url FROM book WHERE created_by = %s",
                (user_id,),
            ).fetchall()
        return [(str(row["id"]), row["thumbnail_url"]) for row in rows]

    def book_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        since = (now or utcnow()) - _RECENT_WINDOW
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(rating) AS rated,
                    AVG(rating) AS average_rating,
                    COUNT(*) FILTER (WHERE created_at >= %s) AS recent
                FROM book
                """,
                (since,),
            ).fetchone()
            authors = conn.execute(
                """
                SELECT author, COUNT(*) AS count
                FROM book
                GROUP BY author
                ORDER BY count DESC, author
                LIMIT 5
                """
            ).fetchall()
        average = row.get("average_rating")
        return {
            "total": int(row["total"]),
            "rated": int(row["rated"]),
            "average_rating": float(average) if average is not None else None,
            "recent": int(row["recent"]),
            "top_authors": [(a["author"], int(a["count"])) for a in authors],
        }

    # verification tokens

    def create_verification_token(
        self, user_id: str, kind: TokenKind, token: str, expires_at: datetime
    ) -> VerificationToken:
        token_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                user_row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not user_row:
                    raise ConstraintViolation("user not found for token", {"user_id": user_id})
                conn.execute(
                    """
                    DELETE FROM verification_token
                    WHERE user_id = %s AND kind = %s AND used_at IS NULL
                    """,
                    (user_id, kind.value),
                )
                row = conn.execute(
                    """
                    INSERT INTO verification_token (id, user_id, token, kind, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token_id, user_id, token, kind.value, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return VerificationToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            kind=TokenKind(row["kind"]),
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
            user=self._row_to_user(user_row),
        )

    def consume_verification_token(
        self, token: str, kind: TokenKind, now: Optional[datetime] = None
    ) -> Optional[str]:
        """Atomically mark a live token used and return its owner id."""
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_token
                SET used_at = %s
                WHERE token = %s AND kind = %s AND used_at IS NULL AND expires_at > %s
                RETURNING user_id
                """,
                (now, token, kind.value, now),
            ).fetchone()
        return str(row["user_id"]) if row else None

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return VerificationToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            kind=TokenKind(row["kind"]),
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    def delete_expired_verification_tokens(
        self, now: Optional[datetime] = None
    ) -> Dict[TokenKind, int]:
        now = now or utcnow()
        counts = {kind: 0 for kind in TokenKind}
        with self._connect() as conn:
            rows = conn.execute(
                """
                WITH deleted AS (
                    DELETE FROM verification_token WHERE expires_at < %s RETURNING kind
                )
                SELECT kind, COUNT(*) AS count FROM deleted GROUP BY kind
                """,
                (now,),
            ).fetchall()
        for row in rows:
            counts[TokenKind(row["kind"])] = int(row["count"])
        return counts

    def revoke_user_verification_tokens(
        self, user_id: str, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE verification_token
                SET used_at = %s
                WHERE user_id = %s AND used_at IS NULL
                """,
                (now or utcnow(), user_id),
            )
            return result.rowcount

    def verification_token_stats(
        self, now: Optional[datetime] = None
    ) -> Dict[TokenKind, Dict[str, int]]:
        now = now or utcnow()
        stats = {kind: {"total": 0, "active": 0, "used": 0, "expired": 0} for kind in TokenKind}
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    kind,
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE used_at IS NULL AND expires_at > %s) AS active,
                    COUNT(*) FILTER (WHERE used_at IS NOT NULL) AS used,
                    COUNT(*) FILTER (WHERE used_at IS NULL AND expires_at <= %s) AS expired
                FROM verification_token
                GROUP BY kind
                """,
                (now, now),
            ).fetchall()
        for row in rows:
            stats[TokenKind(row["kind"])] = {
                key: int(row[key]) for key in ("total", "active", "used", "expired")
            }
        return stats
