"""Tests for the Qdrant-backed semantic cache."""
import json
import time

import pytest
from qdrant_client.http.models import PointStruct

from services.cache_service.semantic_cache import SemanticCache, cache_point_id


@pytest.fixture
def cache(qdrant, embedder):
    return SemanticCache(embedder=embedder, collection="test_cache", min_proximity=0.8,
                         ttl_seconds=0, dim=embedder.dim, client=qdrant)


class TestLookups:

    def test_exact_key_hits(self, cache):
        assert cache.set("what is the refund policy", {"answer": "30 days"}) is True
        assert cache.get("what is the refund policy") == {"answer": "30 days"}
        assert cache.stats()["hits"] == 1

    def test_close_key_hits(self, cache):
        cache.set("refund policy for orders placed online", "30 days")
        assert cache.get("refund policy for orders placed online today") == "30 days"

    def test_unrelated_key_misses(self, cache):
        cache.set("refund policy", "30 days")
        assert cache.get("weather in lisbon tomorrow") is None
        stats = cache.stats()
        assert (stats["hits"], stats["misses"], stats["hit_rate"]) == (0, 1, 0.0)

    def test_same_key_overwrites(self, cache):
        cache.set("greeting", "hello")
        cache.set("greeting", "hi")
        assert cache.get("greeting") == "hi"
        assert len(cache) == 1

    def test_delete_exact_key(self, cache):
        cache.set("greeting", "hello")
        assert cache.delete("greeting") is True
        assert cache.get("greeting") is None

    def test_expired_entries_miss(self, qdrant, embedder):
        cache = SemanticCache(embedder=embedder, collection="ttl_cache", min_proximity=0.8,
                              ttl_seconds=60, dim=embedder.dim, client=qdrant)
        qdrant.upsert(collection_name="ttl_cache", points=[PointStruct(
            id=cache_point_id("old question"),
            vector=embedder.embed_query("old question"),
            payload={"key": "old question", "value": json.dumps("stale"), "ts": time.time() - 3600},
        )])
        assert cache.get("old question") is None
        cache.set("new question", "fresh")
        assert cache.get("new question") == "fresh"

    def test_embedding_failure_is_a_miss(self, qdrant, failing_embedder):
        cache = SemanticCache(embedder=failing_embedder, collection="broken", dim=8, client=qdrant)
        assert cache.get("anything") is None
        assert cache.set("anything", 1) is False
        assert cache.misses == 1


class TestLifecycle:

    def test_clear_resets_entries_and_counters(self, cache):
        cache.set("a b c", 1)
        cache.get("a b c")
        cache.clear()
        stats = cache.stats()
        assert stats["total_cached"] == 0
        assert stats["hits"] == 0 and stats["misses"] == 0
        assert cache.set("a b c", 2) is True

    def test_unavailable_backend_disables_cache(self, embedder):
        class DownClient:
            def get_collections(self):
                raise ConnectionError("qdrant offline")

        cache = SemanticCache(embedder=embedder, collection="x", client=DownClient())
        assert cache.available is False
        assert cache.get("q") is None
        assert cache.set("q", 1) is False
        assert cache.delete("q") is False
        assert cache.stats()["available"] is False
        assert embedder.calls == 0
