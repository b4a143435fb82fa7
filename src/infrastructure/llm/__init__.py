"""
LLM provider wrappers.

  get_provider_llm(provider, model)  → ChatOpenAI for openai / anthropic / google
  get_default_embeddings()           → text-embedding-3-small (embeddings)
"""

from .llm_provider import get_provider_llm, normalize_provider
from .embeddings import get_default_embeddings

__all__ = [
    "get_provider_llm",
    "normalize_provider",
    "get_default_embeddings",
]
