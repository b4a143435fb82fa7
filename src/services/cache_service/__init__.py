"""Semantic (proximity-matched) cache."""

from .semantic_cache import SemanticCache, get_semantic_cache

__all__ = ["SemanticCache", "get_semantic_cache"]
