"""Vector store adapter over Qdrant."""

from .vector_store import VectorStore, get_vector_store, keyword_score, point_id

__all__ = ["VectorStore", "get_vector_store", "keyword_score", "point_id"]
