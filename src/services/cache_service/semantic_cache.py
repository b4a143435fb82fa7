"""
Semantic cache - proximity lookups backed by a Qdrant collection.

Each entry is a point whose vector is the embedded key:

    vector         : embedded key
    payload.key    : original key text
    payload.value  : JSON-encoded cached value
    payload.ts     : unix timestamp (TTL filtering)

``get(key)`` embeds the key and runs a KNN-1 search; a hit needs
``cosine_similarity >= min_proximity``. Point ids are derived from the
key, so setting the same key twice overwrites and ``delete(key)`` is
exact.

When Qdrant is unreachable the cache disables itself: every lookup
misses and writes are dropped.
"""

import json
import time
import uuid
from typing import Any, Dict, Optional

from loguru import logger
from qdrant_client.http.models import Distance, PointIdsList, PointStruct, VectorParams

from infrastructure.config import (
    EMBEDDING_DIM,
    SEMANTIC_CACHE_COLLECTION,
    SEMANTIC_CACHE_MIN_PROXIMITY,
    SEMANTIC_CACHE_TTL,
)


def cache_point_id(key: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_OID, key))


class SemanticCache:
    """
    Qdrant-backed key → value cache matched by meaning.

    Usage::

        cache = SemanticCache(embedder=embedder)
        cache.set("What is the refund policy?", {"answer": "..."})
        cache.get("How do refunds work?")   # → {"answer": "..."} on a close match
    """

    def __init__(
        self,
        embedder: Any,
        collection: Optional[str] = None,
        min_proximity: Optional[float] = None,
        ttl_seconds: Optional[int] = None,
        dim: Optional[int] = None,
        client: Any = None,
    ) -> None:
        """
        Args:
            embedder: Object with ``embed_query(text) -> List[float]``.
            collection: Qdrant collection (default from config).
            min_proximity: Min cosine similarity for a hit.
            ttl_seconds: Entries older than this are ignored; 0 → no expiry.
            dim: Embedding dimension (default from config).
            client: QdrantClient (default: shared singleton).
        """
        self.embedder = embedder
        self.collection = collection or SEMANTIC_CACHE_COLLECTION
        self.min_proximity = SEMANTIC_CACHE_MIN_PROXIMITY if min_proximity is None else min_proximity
        self.ttl_seconds = SEMANTIC_CACHE_TTL if ttl_seconds is None else ttl_seconds
        self.dim = dim or EMBEDDING_DIM
        self.hits = 0
        self.misses = 0

        self._available = False
        try:
            from infrastructure.db.qdrant_client import collection_exists, get_qdrant_client

            self._client = client or get_qdrant_client()
            if not collection_exists(self.collection, client=self._client):
                self._create_collection()
            self._available = True
            logger.info(
                "Semantic cache ready (collection='{}', dim={}, min_proximity={:.2f})",
                self.collection,
                self.dim,
                self.min_proximity,
            )
        except Exception as exc:
            logger.warning("Semantic cache DISABLED - Qdrant unavailable: {}. All lookups will miss.", exc)

    @property
    def available(self) -> bool:
        return self._available

    def _create_collection(self) -> None:
        self._client.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=self.dim, distance=Distance.COSINE, on_disk=False),
        )
        logger.info("Created semantic cache collection '{}' (dim={}, COSINE)", self.collection, self.dim)

    def _miss(self, key: str) -> None:
        self.misses += 1
        logger.debug("Semantic cache MISS: '{}'", key[:60])

    # public API

    def get(self, key: str) -> Optional[Any]:
        """
        Cached value for the entry closest to *key*, or None on a miss.

        Embedding or search failures count as misses.
        """
        if not self._available:
            self._miss(key)
            return None

        try:
            vector = self.embedder.embed_query(key)
            response = self._client.query_points(
                collection_name=self.collection,
                query=vector,
                limit=1,
                score_threshold=self.min_proximity,
            )
        except Exception as exc:
            logger.warning("Semantic cache GET error: {}", exc)
            self._miss(key)
            return None

        if not response.points:
            self._miss(key)
            return None

        hit = response.points[0]
        payload = hit.payload or {}
        if self.ttl_seconds and self.ttl_seconds > 0:
            ts = payload.get("ts", 0)
            if ts and (time.time() - float(ts)) > self.ttl_seconds:
                self._miss(key)
                return None

        self.hits += 1
        logger.info("Semantic cache HIT (sim={:.3f}): '{}' → '{}'", hit.score, key[:50], str(payload.get("key", ""))[:50])
        raw = payload.get("value")
        try:
            return json.loads(raw) if isinstance(raw, str) else raw
        except json.JSONDecodeError:
            return raw

    def set(self, key: str, value: Any) -> bool:
        """Store *value* under *key*; False when the cache is disabled or the write failed."""
        if not self._available:
            return False
        try:
            vector = self.embedder.embed_query(key)
            self._client.upsert(
                collection_name=self.collection,
                points=[PointStruct(
                    id=cache_point_id(key),
                    vector=vector,
                    payload={"key": key, "value": json.dumps(value, default=str), "ts": time.time()},
                )],
            )
            logger.debug("Semantic cache SET: '{}'", key[:60])
            return True
        except Exception as exc:
            logger.warning("Semantic cache SET error: {}", exc)
            return False

    def delete(self, key: str) -> bool:
        """Remove the entry stored under exactly *key*."""
        if not self._available:
            return False
        try:
            self._client.delete(
                collection_name=self.collection,
                points_selector=PointIdsList(points=[cache_point_id(key)]),
            )
            return True
        except Exception as exc:
            logger.warning("Semantic cache DELETE error: {}", exc)
            return False

    def clear(self) -> None:
        """Drop and recreate the collection; hit/miss counters reset too."""
        self.hits = 0
        self.misses = 0
        if not self._available:
            return
        try:
            self._client.delete_collection(self.collection)
            logger.info("Dropped semantic cache collection '{}'", self.collection)
        except Exception as exc:
            logger.debug("Semantic cache drop skipped: {}", exc)
        self._create_collection()

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "total_cached": self._count(),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
            "backend": "qdrant",
            "collection": self.collection,
            "min_proximity": self.min_proximity,
            "ttl_seconds": self.ttl_seconds,
            "available": self._available,
        }

    def _count(self) -> int:
        if not self._available:
            return 0
        try:
            return self._client.get_collection(self.collection).points_count or 0
        except Exception as exc:
            logger.debug("Semantic cache count failed: {}", exc)
            return 0

    def __len__(self) -> int:
        return self._count()

    def __repr__(self) -> str:
        return (
            f"SemanticCache(collection='{self.collection}', "
            f"min_proximity={self.min_proximity}, "
            f"ttl={self.ttl_seconds}s, "
            f"available={self._available})"
        )


_semantic_cache: Optional[SemanticCache] = None


def get_semantic_cache(embedder: Any = None) -> SemanticCache:
    """Shared cache; the default embedder is used when none is given."""
    global _semantic_cache
    if _semantic_cache is None:
        if embedder is None:
            from infrastructure.llm import get_default_embeddings
            embedder = get_default_embeddings()
        _semantic_cache = SemanticCache(embedder=embedder)
    return _semantic_cache
