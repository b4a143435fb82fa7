"""
Infrastructure layer - pure plumbing (DB, LLM, config, logging, errors).

No business logic here. Just connections, clients, and configuration loading.
"""

from .errors import DataLayerError, ValidationError
from .llm import get_provider_llm, get_default_embeddings
from .observability import flush, get_langfuse, set_langfuse

__all__ = [
    "DataLayerError",
    "ValidationError",
    "get_provider_llm",
    "get_default_embeddings",
    "flush",
    "get_langfuse",
    "set_langfuse",
]
