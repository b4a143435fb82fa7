"""Tests for the memory facade over both backends."""
import pytest

from memory import factory
from memory import redis_store as redis_store_module
from memory.agent_state_store import AgentStateStore
from memory.factory import (
    Memory,
    MemoryCacheConfig,
    RedisMemoryBackend,
    SQLiteMemoryBackend,
    create_memory,
)
from memory.redis_store import RedisStore
from services.crud_service import sqlite_crud as sqlite_crud_module
from services.crud_service.sqlite_crud import SQLiteCrud


@pytest.fixture
def sqlite_backend(sqlite_session_factory, iso_clock):
    iso_clock(sqlite_crud_module)
    return SQLiteMemoryBackend(crud=SQLiteCrud(session_factory=sqlite_session_factory))


@pytest.fixture
def redis_backend(redis_client, tick, iso_clock):
    tick(redis_store_module)
    iso_clock(redis_store_module)
    return RedisMemoryBackend(store=RedisStore(client=redis_client), states=AgentStateStore(client=redis_client))


@pytest.fixture(params=["sqlite", "redis"])
def memory(request):
    backend = request.getfixturevalue(f"{request.param}_backend")
    return create_memory(request.param, cache_config={"max_size": 50, "ttl": 60}, backend=backend)


class TestFacadeOnBothBackends:

    def test_thread_round_trip(self, memory):
        thread = memory.create_thread("support", agent_id="a1", user_id="u1", metadata={"topic": "billing"})
        fetched = memory.get_thread(thread["id"])
        assert fetched["name"] == "support"
        assert fetched["metadata"]["topic"] == "billing"
        assert memory.get_thread("ghost") is None

    def test_messages_oldest_first(self, memory):
        thread = memory.create_thread("chat")
        for role, text in [("user", "hi"), ("assistant", "hello"), ("user", "bye")]:
            memory.save_message(thread["id"], role, text)
        assert [m["content"] for m in memory.load_messages(thread["id"])] == ["hi", "hello", "bye"]
        assert [m["content"] for m in memory.load_messages(thread["id"], limit=2)] == ["hi", "hello"]

    def test_list_threads_by_agent(self, memory):
        memory.create_thread("mine", agent_id="a1")
        memory.create_thread("theirs", agent_id="a2")
        assert [t["name"] for t in memory.list_threads(agent_id="a1")] == ["mine"]

    def test_agent_state_without_bookkeeping(self, memory):
        thread = memory.create_thread("chat")
        memory.save_agent_state(thread["id"], "planner", {"step": 1})
        assert memory.load_agent_state(thread["id"], "planner") == {"step": 1}
        memory.save_agent_state(thread["id"], "planner", {"step": 2})
        assert memory.load_agent_state(thread["id"], "planner") == {"step": 2}
        assert memory.load_agent_state(thread["id"], "nobody") == {}

    def test_delete_thread(self, memory):
        thread = memory.create_thread("bye")
        memory.save_message(thread["id"], "user", "hi")
        memory.save_agent_state(thread["id"], "planner", {"step": 1})
        memory.get_thread(thread["id"])
        assert memory.delete_thread(thread["id"]) is True
        assert memory.get_thread(thread["id"]) is None
        assert memory.load_messages(thread["id"]) == []
        assert memory.load_agent_state(thread["id"], "planner") == {}


class CountingBackend:
    """Wraps a backend and counts reads."""

    def __init__(self, inner):
        self.inner = inner
        self.reads = 0

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if name.startswith(("get_", "load_")):
            def counted(*args, **kwargs):
                self.reads += 1
                return attr(*args, **kwargs)
            return counted
        return attr


class TestCaching:

    @pytest.fixture
    def counted(self, sqlite_backend):
        backend = CountingBackend(sqlite_backend)
        return backend, Memory(backend, cache_config=MemoryCacheConfig(max_size=10, ttl=60))

    def test_reads_served_from_cache(self, counted):
        backend, memory = counted
        thread = memory.create_thread("chat")
        memory.get_thread(thread["id"])
        memory.get_thread(thread["id"])
        memory.load_messages(thread["id"])
        memory.load_messages(thread["id"])
        assert backend.reads == 2
        stats = memory.cache_stats()
        assert stats["thread"]["hits"] == 1 and stats["messages"]["hits"] == 1

    def test_writes_invalidate_thread_entries(self, counted):
        backend, memory = counted
        thread = memory.create_thread("chat")
        memory.load_messages(thread["id"])
        memory.save_message(thread["id"], "user", "new")
        assert [m["content"] for m in memory.load_messages(thread["id"])] == ["new"]
        assert backend.reads == 2

    def test_state_write_invalidates_state(self, counted):
        _, memory = counted
        memory.save_agent_state("t1", "planner", {"v": 1})
        assert memory.load_agent_state("t1", "planner") == {"v": 1}
        memory.save_agent_state("t1", "planner", {"v": 2})
        assert memory.load_agent_state("t1", "planner") == {"v": 2}

    def test_caller_mutation_does_not_leak_into_cache(self, counted):
        _, memory = counted
        thread = memory.create_thread("original")
        memory.get_thread(thread["id"])["name"] = "changed by caller"
        assert memory.get_thread(thread["id"])["name"] == "original"

        memory.save_message(thread["id"], "user", "hi")
        memory.load_messages(thread["id"]).clear()
        assert len(memory.load_messages(thread["id"])) == 1

        memory.save_agent_state(thread["id"], "planner", {"step": 1})
        memory.load_agent_state(thread["id"], "planner")["step"] = 99
        assert memory.load_agent_state(thread["id"], "planner") == {"step": 1}

    def test_misses_are_not_cached(self, counted):
        backend, memory = counted
        memory.get_thread("ghost")
        memory.get_thread("ghost")
        assert backend.reads == 2

    def test_cache_disabled(self, sqlite_backend):
        backend = CountingBackend(sqlite_backend)
        memory = Memory(backend, cache_config={"enabled": False})
        thread = memory.create_thread("chat")
        memory.get_thread(thread["id"])
        memory.get_thread(thread["id"])
        assert backend.reads == 2

    def test_clear_cache(self, counted):
        backend, memory = counted
        thread = memory.create_thread("chat")
        memory.get_thread(thread["id"])
        memory.clear_cache()
        assert memory.cache_stats()["thread"]["size"] == 0
        memory.get_thread(thread["id"])
        assert backend.reads == 2


class TestCreateMemory:

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown memory provider"):
            create_memory("cassandra")

    def test_provider_from_environment(self, monkeypatch, redis_backend):
        monkeypatch.setenv("MEMORY_PROVIDER", "redis")
        memory = create_memory(backend=redis_backend)
        assert memory.provider == "redis"

    def test_cache_config_from_dict(self):
        config = MemoryCacheConfig.from_value({"ttl": 5, "unknown": 1})
        assert config.ttl == 5
        assert MemoryCacheConfig.from_value(None) == MemoryCacheConfig()

    def test_memory_backend_protocol_names(self):
        assert factory.PROVIDERS == ("sqlite", "redis")
