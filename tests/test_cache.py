"""Cache backends, the degrade-to-miss wrapper and the entity helpers."""

import pytest

from bookshelf.storage.cache import BOOK_LIST_TTL, BOOK_TTL, EntityCache, SafeCache
from bookshelf.storage.memory_cache import MemoryCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class BrokenBackend:
    """Every call fails like an unreachable Redis."""

    backend_name = "broken"

    def verify_connection(self):
        raise ConnectionError("down")

    async def get(self, key):
        raise ConnectionError("down")

    async def set(self, key, value, ttl_seconds=None):
        raise ConnectionError("down")

    async def delete(self, key):
        raise ConnectionError("down")

    async def delete_by_pattern(self, pattern):
        raise ConnectionError("down")

    async def exists(self, key):
        raise ConnectionError("down")

    async def increment(self, key):
        raise ConnectionError("down")

    async def set_if_absent(self, key, value, ttl_seconds=None):
        raise ConnectionError("down")

    async def expire(self, key, ttl_seconds):
        raise ConnectionError("down")

    async def close(self):
        raise ConnectionError("down")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def entities(backend):
    return EntityCache(SafeCache(backend))


async def test_memory_cache_round_trip_and_expiry(backend, clock):
    await backend.set("book:1", {"title": "Dune"}, 10)
    assert await backend.get("book:1") == {"title": "Dune"}
    clock.now += 10
    assert await backend.get("book:1") is None
    assert not await backend.exists("book:1")


async def test_memory_cache_returns_copies(backend):
    payload = {"items": [1, 2]}
    await backend.set("k", payload)
    payload["items"].append(3)
    fetched = await backend.get("k")
    fetched["items"].append(4)
    assert await backend.get("k") == {"items": [1, 2]}


async def test_delete_by_pattern_only_matches_glob(backend):
    await backend.set("books:list:a", 1)
    await backend.set("books:list:b", 2)
    await backend.set("book:1", 3)
    await backend.set("users:list:a", 4)

    assert await backend.delete_by_pattern("books:*") == 2
    assert await backend.get("book:1") == 3
    assert await backend.get("users:list:a") == 4


async def test_increment_keeps_existing_expiry(backend, clock):
    assert await backend.increment("c") == 1
    await backend.expire("c", 5)
    clock.now += 3
    assert await backend.increment("c") == 2
    assert backend.ttl("c") == pytest.approx(2)


async def test_set_if_absent_only_writes_missing_keys(backend, clock):
    assert await backend.set_if_absent("k", "first", 10)
    assert not await backend.set_if_absent("k", "second", 10)
    assert await backend.get("k") == "first"

    clock.now += 10
    assert await backend.set_if_absent("k", "third", 10)
    assert await backend.get("k") == "third"


class TestSafeCache:
    async def test_failures_degrade_to_miss(self):
        cache = SafeCache(BrokenBackend())
        assert await cache.get("x") is None
        assert await cache.set("x", 1, 10) is False
        assert await cache.delete("x") is False
        assert await cache.delete_by_pattern("x*") == 0
        assert await cache.exists("x") is False
        assert await cache.increment("x") == 0
        assert await cache.expire("x", 10) is False
        assert await cache.set_if_absent("x", 1, 10) is True
        await cache.close()

    async def test_missing_backend_is_permanently_empty(self):
        cache = SafeCache(None)
        assert cache.backend_name == "disabled"
        assert await cache.set("x", 1) is False
        assert await cache.get("x") is None

    async def test_entity_helpers_survive_outage(self):
        entities = EntityCache(SafeCache(BrokenBackend()))
        await entities.set_book("1", {"id": "1"})
        assert await entities.get_book("1") is None
        assert await entities.is_token_blacklisted("tok") is False
        assert await entities.increment_rate_limit("1.2.3.4") == 0
        assert await entities.invalidate_all() == {"books": 0, "users": 0, "stats": 0}


class TestEntityCache:
    async def test_book_keys_and_ttls(self, entities, backend):
        await entities.set_book("b1", {"id": "b1"})
        await entities.set_book_list("books:list:{}", {"items": []})
        assert backend.ttl("book:b1") == pytest.approx(BOOK_TTL)
        assert backend.ttl("books:list:{}") == pytest.approx(BOOK_LIST_TTL)

    async def test_invalidate_book_lists_spares_single_books(self, entities):
        await entities.set_book("b1", {"id": "b1"})
        await entities.set_book_list("books:list:p1", {"items": []})
        await entities.set_book_list("books:list:p2", {"items": []})

        assert await entities.invalidate_book_lists() == 2
        assert await entities.get_book("b1") == {"id": "b1"}

    async def test_invalidate_all_reports_counts(self, entities):
        await entities.set_book_list("books:list:p1", {})
        await entities.set_user_list("users:list:p1", {})
        await entities.set_user_list("users:list:p2", {})
        await entities.set_stats("books", {})
        assert await entities.invalidate_all() == {"books": 1, "users": 2, "stats": 1}

    async def test_rate_limit_window_set_only_on_first_hit(self, entities, backend, clock):
        assert await entities.increment_rate_limit("ip", 900) == 1
        clock.now += 600
        assert await entities.increment_rate_limit("ip", 900) == 2
        assert await entities.increment_rate_limit("ip", 900) == 3
        assert backend.ttl("rate_limit:ip") == pytest.approx(300)
        assert await entities.get_rate_limit("ip") == 3

        clock.now += 300
        assert await entities.increment_rate_limit("ip", 900) == 1

    async def test_blacklist_entry_expires(self, entities, clock):
        await entities.blacklist_token("abc", 30)
        assert await entities.is_token_blacklisted("abc")
        clock.now += 30
        assert not await entities.is_token_blacklisted("abc")

    async def test_blacklist_claim_has_one_winner(self, entities, backend):
        assert await entities.claim_blacklist_entry("abc", 30)
        assert not await entities.claim_blacklist_entry("abc", 30)
        assert await entities.is_token_blacklisted("abc")
        assert backend.ttl("blacklist:abc") == pytest.approx(30)

    async def test_revocation_watermark(self, entities):
        assert await entities.get_revocation_watermark("u1") is None
        await entities.set_revocation_watermark("u1", 1234.5, 60)
        assert await entities.get_revocation_watermark("u1") == 1234.5

    async def test_user_session_index(self, entities):
        assert await entities.get_user_session_ids("u1") == []
        await entities.set_user_session_ids("u1", ["s1", "s2"])
        assert await entities.get_user_session_ids("u1") == ["s1", "s2"]
        await entities.delete_user_session_ids("u1")
        assert await entities.get_user_session_ids("u1") == []
