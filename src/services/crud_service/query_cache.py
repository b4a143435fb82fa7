"""
In-process TTL + LRU caches.

``TTLCache`` is the generic container (also used by the memory facade).
``QueryCache`` keys list results by ``(table, options)`` so writes to a
table can drop every cached page of that table at once.
"""

import copy
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from infrastructure.config import QUERY_CACHE_MAX_SIZE, QUERY_CACHE_TTL
from memory.schemas import ListEntitiesOptions

_MISS = object()


class TTLCache:
    """
    Thread-safe LRU with per-entry expiry.

    Args:
        max_size: Entries kept before the least recently used is evicted
        ttl: Seconds an entry stays valid (0 → never expires)
        clock: Injectable monotonic clock
    """

    def __init__(self, max_size: int = 100, ttl: float = 600, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._data: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key, _MISS)
            if entry is not _MISS:
                stored_at, value = entry
                if self.ttl and self._clock() - stored_at > self.ttl:
                    del self._data[key]
                else:
                    self._data.move_to_end(key)
                    self.hits += 1
                    return value
            self.misses += 1
            return default

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._data.get(key, _MISS)
            if entry is _MISS:
                return False
            return not (self.ttl and self._clock() - entry[0] > self.ttl)

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._data[key] = (self._clock(), value)
            self._data.move_to_end(key)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._data.pop(key, _MISS) is not _MISS

    def delete_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every key matching *predicate*; returns how many went."""
        with self._lock:
            doomed = [k for k in self._data if predicate(k)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def reset_stats(self) -> None:
        with self._lock:
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        return len(self._data)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
            "size": len(self._data),
            "max_size": self.max_size,
            "ttl": self.ttl,
        }


class QueryCache:
    """List-query results per table; see :meth:`invalidate_table`."""

    def __init__(self, max_size: int = QUERY_CACHE_MAX_SIZE, ttl: float = QUERY_CACHE_TTL, clock=time.monotonic):
        self._cache = TTLCache(max_size=max_size, ttl=ttl, clock=clock)

    @staticmethod
    def make_key(table: str, options: Optional[ListEntitiesOptions]) -> Tuple:
        return (table, options.cache_key() if options is not None else None)

    def get(self, table: str, options: Optional[ListEntitiesOptions]) -> Optional[Any]:
        value = self._cache.get(self.make_key(table, options), _MISS)
        if value is _MISS:
            return None
        return copy.deepcopy(value)

    def set(self, table: str, options: Optional[ListEntitiesOptions], value: Any) -> None:
        self._cache.set(self.make_key(table, options), copy.deepcopy(value))

    def invalidate_table(self, table: str) -> int:
        return self._cache.delete_where(lambda key: key[0] == table)

    def clear(self) -> None:
        self._cache.clear()
        self._cache.reset_stats()

    def stats(self) -> Dict[str, Any]:
        return self._cache.stats()


_query_cache: Optional[QueryCache] = None


def get_query_cache() -> QueryCache:
    """Process-wide query cache."""
    global _query_cache
    if _query_cache is None:
        _query_cache = QueryCache()
    return _query_cache
