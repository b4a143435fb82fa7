"""Tests for the Redis client singleton and raw entity helpers."""
from datetime import datetime

import pytest

from infrastructure.db import redis_client as rc
from infrastructure.db.qdrant_client import set_qdrant_client
from infrastructure.errors import RedisClientError
from memory.redis_store import RedisStore


@pytest.fixture
def injected(redis_client):
    rc.set_redis_client(redis_client)
    yield redis_client
    rc.reset_redis_client()


class TestClientConstruction:

    def test_missing_url_raises(self, monkeypatch):
        rc.reset_redis_client()
        monkeypatch.delenv("REDIS_URL", raising=False)
        with pytest.raises(RedisClientError, match="REDIS_URL is not set"):
            rc.get_redis_client()

    def test_non_redis_url_rejected(self, monkeypatch):
        rc.reset_redis_client()
        monkeypatch.setenv("REDIS_URL", "https://cache.example.com")
        with pytest.raises(RedisClientError, match="Invalid REDIS_URL"):
            rc.get_redis_client()

    def test_injected_client_is_returned(self, injected):
        assert rc.get_redis_client() is injected


class TestHashCodec:

    def test_types_survive(self):
        data = {"n": 3, "flag": True, "tags": ["a"], "meta": {"k": 1}, "name": "x", "gone": None}
        encoded = rc.encode_hash(data)
        assert "gone" not in encoded
        assert rc.decode_hash(encoded) == {"n": 3, "flag": True, "tags": ["a"], "meta": {"k": 1}, "name": "x"}

    def test_foreign_strings_pass_through(self):
        assert rc.decode_hash({"plain": "hello world"}) == {"plain": "hello world"}


class TestRawEntities:

    def test_upsert_keeps_created_at(self, injected):
        first = rc.upsert_entity("note", "n1", {"text": "one"})
        second = rc.upsert_entity("note", "n1", {"text": "two"})
        assert second["created_at"] == first["created_at"]
        stored = rc.get_entity("note", "n1")
        assert stored["text"] == "two"
        assert stored["type"] == "note"

    def test_timestamps_are_iso_and_id_indexed(self, injected):
        record = rc.upsert_entity("note", "n1", {"text": "one"})
        assert datetime.fromisoformat(record["created_at"]).tzinfo is not None
        assert injected.smembers("note:ids") == {"n1"}
        assert [e["id"] for e in RedisStore(client=injected).list_entities("note")] == ["n1"]
        rc.delete_entity("note", "n1")
        assert injected.smembers("note:ids") == set()

    def test_list_skips_non_hash_keys(self, injected):
        rc.upsert_entity("note", "n1", {"text": "one"})
        rc.upsert_entity("note", "n2", {"text": "two"})
        listed = rc.list_entities("note")
        assert sorted(e["id"] for e in listed) == ["n1", "n2"]

    def test_delete(self, injected):
        rc.upsert_entity("note", "n1", {"text": "one"})
        assert rc.delete_entity("note", "n1") is True
        assert rc.delete_entity("note", "n1") is False
        assert rc.get_entity("note", "n1") is None


class TestAvailability:

    def test_both_up(self, injected, qdrant):
        set_qdrant_client(qdrant)
        try:
            status = rc.check_redis_availability()
        finally:
            set_qdrant_client(None)
        assert status["redis_available"] and status["vector_available"]
        assert status["message"] == "All services (Redis, Vector) are available."

    def test_redis_down(self, down_redis, qdrant):
        rc.set_redis_client(down_redis)
        set_qdrant_client(qdrant)
        try:
            status = rc.check_redis_availability()
        finally:
            rc.reset_redis_client()
            set_qdrant_client(None)
        assert status["redis_available"] is False
        assert status["redis_error"]
        assert status["message"] == "Vector is available, but Redis is unavailable."
