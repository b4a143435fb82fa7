"""
Memory facade - one thread / message / agent-state API over either backend.

    create_memory("sqlite") → SQLiteCrud (embedded, default)
    create_memory("redis")  → RedisStore + AgentStateStore

Reads go through three per-kind TTL LRU caches:

    thread   : {thread_id}
    messages : {thread_id}:{limit|all}
    state    : {thread_id}:{agent_id}

Writes invalidate every cached entry of the thread they touch. Cached
values are copied in and out, so callers may mutate what they read.
Records come back as plain dicts whatever the backend.
"""

from loguru import logger
import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from infrastructure.config import (
    MEMORY_CACHE_ENABLED,
    MEMORY_CACHE_MAX_SIZE,
    MEMORY_CACHE_TTL,
    get_memory_provider,
)
from services.crud_service.query_cache import TTLCache

PROVIDERS = ("sqlite", "redis")
_BOOKKEEPING = ("_thread_id", "_agent_id", "_created_at", "_updated_at")
_MISS = object()


@dataclass
class MemoryCacheConfig:
    enabled: bool = MEMORY_CACHE_ENABLED
    max_size: int = MEMORY_CACHE_MAX_SIZE
    ttl: float = MEMORY_CACHE_TTL

    @classmethod
    def from_value(cls, value: Union["MemoryCacheConfig", Mapping[str, Any], None]) -> "MemoryCacheConfig":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls(**{k: v for k, v in value.items() if k in ("enabled", "max_size", "ttl")})


class MemoryBackend(Protocol):
    """What the facade needs from a storage backend."""

    def create_thread(self, name: str, agent_id: Optional[str], user_id: Optional[str],
                      metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        ...

    def get_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        ...

    def list_threads(self, agent_id: Optional[str], limit: int, offset: int) -> List[Dict[str, Any]]:
        ...

    def delete_thread(self, thread_id: str) -> bool:
        ...

    def save_message(self, thread_id: str, role: str, content: str,
                     metadata: Optional[Dict[str, Any]], **extra: Any) -> Dict[str, Any]:
        ...

    def load_messages(self, thread_id: str, limit: Optional[int]) -> List[Dict[str, Any]]:
        ...

    def save_agent_state(self, thread_id: str, agent_id: str, state: Dict[str, Any]) -> None:
        ...

    def load_agent_state(self, thread_id: str, agent_id: str) -> Dict[str, Any]:
        ...


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class SQLiteMemoryBackend:
    """Embedded store; creates its tables when built from the default engine."""

    def __init__(self, crud=None):
        if crud is None:
            from infrastructure.db.sqlite_client import create_sqlite_tables
            from services.crud_service.sqlite_crud import get_sqlite_crud
            create_sqlite_tables()
            crud = get_sqlite_crud()
        self.crud = crud

    def create_thread(self, name, agent_id=None, user_id=None, metadata=None):
        metadata = dict(metadata or {})
        if user_id:
            metadata.setdefault("user_id", user_id)
        return self.crud.create_memory_thread(name, agent_id=agent_id, metadata=metadata)

    def get_thread(self, thread_id):
        return self.crud.get_memory_thread(thread_id)

    def list_threads(self, agent_id=None, limit=10, offset=0):
        return self.crud.list_memory_threads(agent_id=agent_id, limit=limit, offset=offset)

    def delete_thread(self, thread_id):
        return self.crud.delete_memory_thread(thread_id)

    def save_message(self, thread_id, role, content, metadata=None, **extra):
        return self.crud.save_message(thread_id, role, content, metadata=metadata, **extra)

    def load_messages(self, thread_id, limit=None):
        return self.crud.load_messages(thread_id, limit=limit)

    def save_agent_state(self, thread_id, agent_id, state):
        self.crud.save_agent_state(thread_id, agent_id, state)

    def load_agent_state(self, thread_id, agent_id):
        return self.crud.load_agent_state(thread_id, agent_id)


class RedisMemoryBackend:
    """Threads and messages in RedisStore, states in AgentStateStore."""

    def __init__(self, store=None, states=None, client=None):
        from memory.agent_state_store import AgentStateStore
        from memory.redis_store import RedisStore
        self.store = store or RedisStore(client=client)
        self.states = states or AgentStateStore(client=client)

    def create_thread(self, name, agent_id=None, user_id=None, metadata=None):
        return self.store.create_thread(name=name, user_id=user_id, agent_id=agent_id, metadata=metadata).to_dict()

    def get_thread(self, thread_id):
        thread = self.store.get_thread(thread_id)
        return thread.to_dict() if thread else None

    def list_threads(self, agent_id=None, limit=10, offset=0):
        return [t.to_dict() for t in self.store.list_threads(limit=limit, offset=offset, agent_id=agent_id)]

    def delete_thread(self, thread_id):
        self.states.delete_thread_agent_states(thread_id)
        return self.store.delete_thread(thread_id)

    def save_message(self, thread_id, role, content, metadata=None, **extra):
        metadata = {**(metadata or {}), **{k: v for k, v in extra.items() if v is not None and k != "tool_name"}}
        message = self.store.create_message(thread_id, role, content, metadata=metadata, name=extra.get("tool_name"))
        return message.to_dict()

    def load_messages(self, thread_id, limit=None):
        return [m.to_dict() for m in self.store.get_messages_by_thread(thread_id, limit=limit)]

    def save_agent_state(self, thread_id, agent_id, state):
        self.states.save_agent_state(thread_id, agent_id, state)

    def load_agent_state(self, thread_id, agent_id):
        stored = self.states.load_agent_state(thread_id, agent_id)
        return {k: v for k, v in stored.items() if k not in _BOOKKEEPING}


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class Memory:
    """
    Cached memory API.

    Args:
        backend: Storage backend
        provider: Backend name (informational)
        cache_config: :class:`MemoryCacheConfig` or a dict of its fields
    """

    def __init__(self, backend: MemoryBackend, provider: str = "sqlite",
                 cache_config: Union[MemoryCacheConfig, Mapping[str, Any], None] = None):
        self.backend = backend
        self.provider = provider
        self.cache_config = MemoryCacheConfig.from_value(cache_config)
        self.caches: Dict[str, TTLCache] = {
            kind: TTLCache(max_size=self.cache_config.max_size, ttl=self.cache_config.ttl)
            for kind in ("thread", "messages", "state")
        }

    def _cached(self, kind: str, key: str, load):
        if not self.cache_config.enabled:
            return load()
        cache = self.caches[kind]
        value = cache.get(key, _MISS)
        if value is not _MISS:
            return copy.deepcopy(value)
        value = load()
        if value is not None:
            cache.set(key, copy.deepcopy(value))
        return value

    def _invalidate(self, thread_id: str) -> None:
        prefix = f"{thread_id}:"
        self.caches["thread"].delete(thread_id)
        self.caches["messages"].delete_where(lambda k: k.startswith(prefix))
        self.caches["state"].delete_where(lambda k: k.startswith(prefix))

    # Threads

    def create_thread(self, name: str, agent_id: Optional[str] = None, user_id: Optional[str] = None,
                      metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        thread = self.backend.create_thread(name, agent_id=agent_id, user_id=user_id, metadata=metadata)
        logger.debug("Memory thread {} created ({})", thread["id"], self.provider)
        return thread

    def get_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        return self._cached("thread", thread_id, lambda: self.backend.get_thread(thread_id))

    def list_threads(self, agent_id: Optional[str] = None, limit: int = 10, offset: int = 0) -> List[Dict[str, Any]]:
        """Most recently updated first (never cached)."""
        return self.backend.list_threads(agent_id=agent_id, limit=limit, offset=offset)

    def delete_thread(self, thread_id: str) -> bool:
        deleted = self.backend.delete_thread(thread_id)
        self._invalidate(thread_id)
        return deleted

    # Messages

    def save_message(self, thread_id: str, role: str, content: str,
                     metadata: Optional[Dict[str, Any]] = None, **extra: Any) -> Dict[str, Any]:
        message = self.backend.save_message(thread_id, role, content, metadata=metadata, **extra)
        self._invalidate(thread_id)
        return message

    def load_messages(self, thread_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Oldest first; the first *limit* messages when given."""
        key = f"{thread_id}:{limit if limit is not None else 'all'}"
        return self._cached("messages", key, lambda: self.backend.load_messages(thread_id, limit=limit))

    # Agent state

    def save_agent_state(self, thread_id: str, agent_id: str, state: Dict[str, Any]) -> None:
        self.backend.save_agent_state(thread_id, agent_id, state)
        self.caches["state"].delete(f"{thread_id}:{agent_id}")

    def load_agent_state(self, thread_id: str, agent_id: str) -> Dict[str, Any]:
        return self._cached(
            "state", f"{thread_id}:{agent_id}",
            lambda: self.backend.load_agent_state(thread_id, agent_id),
        )

    # Cache

    def cache_stats(self) -> Dict[str, Dict[str, Any]]:
        return {kind: cache.stats() for kind, cache in self.caches.items()}

    def clear_cache(self) -> None:
        for cache in self.caches.values():
            cache.clear()
            cache.reset_stats()


def create_memory(
    provider: Optional[str] = None,
    cache_config: Union[MemoryCacheConfig, Mapping[str, Any], None] = None,
    backend: Optional[MemoryBackend] = None,
) -> Memory:
    """
    Build a :class:`Memory` for *provider* (default: ``MEMORY_PROVIDER``).

    Raises:
        ValueError: If the provider is unknown
    """
    name = (provider or get_memory_provider()).lower()
    if name not in PROVIDERS:
        raise ValueError(f"Unknown memory provider '{name}' (expected one of {', '.join(PROVIDERS)})")
    if backend is None:
        backend = SQLiteMemoryBackend() if name == "sqlite" else RedisMemoryBackend()
    logger.info("Memory facade ready (provider={})", name)
    return Memory(backend, provider=name, cache_config=cache_config)


def is_memory_available(provider: Optional[str] = None) -> bool:
    """Cheap reachability probe for the backend of *provider*."""
    name = (provider or get_memory_provider()).lower()
    if name == "sqlite":
        from infrastructure.db.sqlite_client import check_sqlite
        return check_sqlite()
    if name == "redis":
        try:
            from infrastructure.db.redis_client import get_redis_client
            return bool(get_redis_client().ping())
        except Exception as exc:
            logger.warning("Redis memory unavailable: {}", exc)
            return False
    return False
