"""Tests for the TTL/LRU caches."""
import pytest

from memory.schemas import ListEntitiesOptions, QueryFilter
from services.crud_service.query_cache import QueryCache, TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestTTLCache:

    def test_hit_and_miss_counted(self, clock):
        cache = TTLCache(max_size=3, ttl=10, clock=clock)
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert cache.get("b", "default") == "default"
        stats = cache.stats()
        assert (stats["hits"], stats["misses"], stats["hit_rate"]) == (1, 1, 0.5)

    def test_expiry(self, clock):
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("a", 1)
        clock.advance(10)
        assert "a" in cache
        clock.advance(0.5)
        assert "a" not in cache
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_zero_ttl_never_expires(self, clock):
        cache = TTLCache(ttl=0, clock=clock)
        cache.set("a", 1)
        clock.advance(1e9)
        assert cache.get("a") == 1

    def test_lru_eviction_respects_reads(self, clock):
        cache = TTLCache(max_size=2, ttl=0, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert "a" in cache and "c" in cache
        assert "b" not in cache

    def test_delete_where(self, clock):
        cache = TTLCache(clock=clock)
        for key in ("t1:a", "t1:b", "t2:a"):
            cache.set(key, key)
        assert cache.delete_where(lambda k: k.startswith("t1:")) == 2
        assert cache.delete("t2:a") is True
        assert cache.delete("t2:a") is False

    def test_clear_and_reset(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("a", 1)
        cache.get("a")
        cache.clear()
        cache.reset_stats()
        assert cache.stats()["size"] == 0 and cache.stats()["hits"] == 0


class TestQueryCache:

    def test_keyed_by_table_and_options(self, clock):
        cache = QueryCache(clock=clock)
        errors = ListEntitiesOptions(filters=[QueryFilter("level", "eq", "error")])
        cache.set("logs", errors, [{"id": "1"}])
        cache.set("logs", None, [{"id": "1"}, {"id": "2"}])
        assert cache.get("logs", errors) == [{"id": "1"}]
        assert len(cache.get("logs", None)) == 2
        assert cache.get("other", errors) is None

    def test_returns_copies(self, clock):
        cache = QueryCache(clock=clock)
        rows = [{"id": "1"}]
        cache.set("t", None, rows)
        rows[0]["id"] = "mutated"
        fetched = cache.get("t", None)
        fetched.append({"id": "2"})
        assert cache.get("t", None) == [{"id": "1"}]

    def test_invalidate_table(self, clock):
        cache = QueryCache(clock=clock)
        cache.set("a", None, [])
        cache.set("a", ListEntitiesOptions(limit=5), [])
        cache.set("b", None, [])
        assert cache.invalidate_table("a") == 2
        assert cache.get("b", None) == []

    def test_expiry(self, clock):
        cache = QueryCache(ttl=5, clock=clock)
        cache.set("a", None, [1])
        clock.advance(6)
        assert cache.get("a", None) is None
