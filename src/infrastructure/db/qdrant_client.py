"""
Qdrant client for the vector store and the semantic cache.

Handles:
- Connection to Qdrant Cloud (or an in-process ``:memory:`` instance)
- Collection creation with proper embedding dimensions
- Collection stats / existence checks

Two collections:
    'agent_vectors'   — documents, message and thread embeddings
    'semantic_cache'  — prompt → response cache (proximity lookups)
"""

from loguru import logger
import os
from typing import Any, Dict, Optional

from qdrant_client import QdrantClient
from qdrant_client.http.models import Distance, VectorParams

from infrastructure.config import QDRANT_COLLECTION_NAME, EMBEDDING_DIM
# ---------------------------------------------------------------------------
# Singleton client
# ---------------------------------------------------------------------------

_qdrant_client: Optional[QdrantClient] = None


def get_qdrant_client() -> QdrantClient:
    """
    Return a singleton QdrantClient.

    Requires QDRANT_URL (and QDRANT_API_KEY for Qdrant Cloud) in .env.
    ``QDRANT_URL=:memory:`` runs an in-process index.
    """
    global _qdrant_client
    if _qdrant_client is not None:
        return _qdrant_client

    url = os.getenv("QDRANT_URL")
    api_key = os.getenv("QDRANT_API_KEY")

    if not url:
        raise RuntimeError(
            "QDRANT_URL is not set.  Add it to your .env file.\n"
            "Example: QDRANT_URL=https://xxxxx.us-east.aws.cloud.qdrant.io"
        )

    if url == ":memory:":
        _qdrant_client = QdrantClient(location=":memory:")
        logger.info("Using in-memory Qdrant")
        return _qdrant_client

    _qdrant_client = QdrantClient(url=url, api_key=api_key, timeout=30)
    logger.info("Connected to Qdrant at {}", url)
    return _qdrant_client


def set_qdrant_client(client: Optional[QdrantClient]) -> None:
    """Inject a pre-built client (``None`` resets the singleton)."""
    global _qdrant_client
    _qdrant_client = client


# ---------------------------------------------------------------------------
# Collection management
# ---------------------------------------------------------------------------


def collection_exists(collection_name: str = QDRANT_COLLECTION_NAME, client: Optional[QdrantClient] = None) -> bool:
    """Check whether *collection_name* exists in Qdrant."""
    client = client or get_qdrant_client()
    existing = [c.name for c in client.get_collections().collections]
    return collection_name in existing


def ensure_collection(
    collection_name: str = QDRANT_COLLECTION_NAME,
    vector_size: int = EMBEDDING_DIM,
    distance: Distance = Distance.COSINE,
    on_disk: bool = False,
    client: Optional[QdrantClient] = None,
) -> None:
    """
    Create the Qdrant collection if it does not exist.

    Safe to call repeatedly (idempotent).
    """
    client = client or get_qdrant_client()

    if collection_exists(collection_name, client=client):
        logger.debug("Collection '{}' already exists — skipping creation.", collection_name)
        return

    client.create_collection(
        collection_name=collection_name,
        vectors_config=VectorParams(
            size=vector_size,
            distance=distance,
            on_disk=on_disk,
        ),
    )
    logger.info(
        "Created Qdrant collection '{}' (dim={}, distance={})",
        collection_name,
        vector_size,
        distance.name,
    )


def delete_collection(collection_name: str = QDRANT_COLLECTION_NAME, client: Optional[QdrantClient] = None) -> None:
    """Drop the entire collection (destructive)."""
    client = client or get_qdrant_client()
    client.delete_collection(collection_name)
    logger.info("Deleted Qdrant collection '{}'", collection_name)


def collection_info(collection_name: str = QDRANT_COLLECTION_NAME, client: Optional[QdrantClient] = None) -> Dict[str, Any]:
    """Return collection stats (point count, vector size, etc.)."""
    client = client or get_qdrant_client()
    info = client.get_collection(collection_name)
    return {
        "name": collection_name,
        "points_count": info.points_count or 0,
        "indexed_vectors_count": info.indexed_vectors_count or 0,
        "vector_size": info.config.params.vectors.size,  # type: ignore[union-attr]
        "distance": info.config.params.vectors.distance.name,  # type: ignore[union-attr]
        "status": info.status.name,
    }


def count_points(collection_name: str = QDRANT_COLLECTION_NAME, client: Optional[QdrantClient] = None) -> int:
    """Return the number of points in the collection."""
    client = client or get_qdrant_client()
    return client.count(collection_name, exact=True).count
