from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from bookshelf.storage.errors import ConstraintViolation, SchemaNotReady
from bookshelf.storage.models import BookQuery
from bookshelf.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows
        self.rowcount = len(rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results, raise_on_execute=None):
        self.results = list(results)
        self.raise_on_execute = raise_on_execute
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raise_on_execute:
            raise self.raise_on_execute
        return FakeCursor(self.results.pop(0) if self.results else [])


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(conn=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.dsn = "postgresql://unit-test"
    if conn is not None:

        @contextmanager
        def _connect():
            yield conn

        store._connect = _connect
    return store


def _book_row(**overrides):
    row = {
        "id": "b1",
        "title": "Dune",
        "author": "Frank Herbert",
        "description": None,
        "thumbnail_url": None,
        "rating": None,
        "created_by": "u1",
        "created_at": NOW,
        "updated_at": NOW,
        "creator_name": "Ada",
    }
    row.update(overrides)
    return row


def test_row_to_book_embeds_creator_and_coerces_rating():
    from decimal import Decimal

    book = PostgresStore._row_to_book(_book_row(rating=Decimal("4.50")))
    assert book.rating == 4.5
    assert isinstance(book.rating, float)
    assert book.creator == {"id": "u1", "name": "Ada"}

    orphan = PostgresStore._row_to_book(_book_row(creator_name=None))
    assert orphan.creator is None


def test_list_books_builds_parameterized_filters():
    conn = FakeConnection([[{"total": 1}], [_book_row()]])
    store = _store(conn)

    books, total = store.list_books(
        BookQuery(page=2, limit=5, search="dune", min_rating=3, sort_by="rating", sort_order="asc")
    )

    assert total == 1
    assert [b.title for b in books] == ["Dune"]
    count_sql, count_params = conn.statements[0]
    assert "ILIKE %s" in count_sql
    assert count_params == ["%dune%", "%dune%", "%dune%", 3]
    list_sql, list_params = conn.statements[1]
    assert "ORDER BY b.rating ASC NULLS LAST" in list_sql
    assert list_params[-2:] == [5, 5]
    assert "dune" not in list_sql


def test_search_terms_match_wildcards_literally():
    conn = FakeConnection([[{"total": 0}], []])
    store = _store(conn)

    store.list_books(BookQuery(search="100%_pure", author="o'brien\\"))

    count_sql, count_params = conn.statements[0]
    assert "ESCAPE '\\'" in count_sql
    assert count_params[:3] == ["%100\\%\\_pure%"] * 3
    assert count_params[3] == "%o'brien\\\\%"


def test_unknown_sort_field_falls_back_to_created_at():
    conn = FakeConnection([[{"total": 0}], []])
    store = _store(conn)
    store.list_books(BookQuery(sort_by="1; DROP TABLE book"))
    assert "ORDER BY b.created_at DESC" in conn.statements[1][0]


def test_unique_violation_becomes_constraint_violation():
    conn = FakeConnection([], raise_on_execute=errors.UniqueViolation("duplicate key"))
    store = _store(conn)
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("Ada", "ADA@example.com")
    assert exc.value.detail == {"field": "email"}


def test_create_user_lowercases_email():
    row = {"id": "u1", "name": "Ada", "email": "ada@example.com", "is_admin": False}
    conn = FakeConnection([[row]])
    store = _store(conn)

    user = store.create_user("Ada", "ADA@Example.com")

    assert user.email == "ada@example.com"
    assert conn.statements[0][1][2] == "ada@example.com"


def test_missing_tables_are_reported():
    conn = FakeConnection([[{"oid": "app_user"}], [{"oid": None}], [{"oid": None}]])
    store = _store(conn)
    with pytest.raises(SchemaNotReady) as exc:
        store._verify_required_schema()
    assert exc.value.missing_tables == ["book", "verification_token"]
    assert "book, verification_token" in str(exc.value)
