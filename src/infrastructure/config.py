"""
Application configuration - loads from YAML param files.

CONFIGURATION POLICY:
====================
Tunables are loaded from config/param.yaml.
Secrets and connection strings live ONLY in .env and are loaded via os.getenv().

Backends:
- Redis (hot entity store, agent state, log streams)
- Supabase PostgreSQL (relational CRUD, backup store)
- SQLite (embedded relational memory)
- Qdrant (vector index + semantic cache)
"""

from pathlib import Path
from typing import Any, Dict, Optional
import os
import yaml
from dotenv import load_dotenv
from loguru import logger

# ========================================
# Project Paths
# ========================================

# Get project root (parent of src/infrastructure/)
_PROJECT_ROOT = Path(__file__).parent.parent.parent
_CONFIG_DIR = _PROJECT_ROOT / "config"

load_dotenv(_PROJECT_ROOT / ".env")

# ========================================
# YAML Config Loading
# ========================================

def _load_yaml(filename: str) -> Dict[str, Any]:
    """Load a YAML config file."""
    filepath = _CONFIG_DIR / filename
    if not filepath.exists():
        return {}
    with open(filepath, "r") as f:
        return yaml.safe_load(f) or {}


def _get_nested(d: Dict, *keys, default=None):
    """Get nested dictionary value safely."""
    for key in keys:
        if isinstance(d, dict):
            d = d.get(key, default)
        else:
            return default
    return d if d is not None else default


# Load configs
_PARAMS = _load_yaml("param.yaml")

# ========================================
# Redis
# ========================================

REDIS_URL = os.getenv("REDIS_URL", None)
REDIS_TOKEN = os.getenv("REDIS_TOKEN", None)

REDIS_SCAN_COUNT = _get_nested(_PARAMS, "redis", "scan_count", default=100)
REDIS_DEFAULT_PAGE_SIZE = _get_nested(_PARAMS, "redis", "default_page_size", default=10)
REDIS_SOCKET_TIMEOUT = _get_nested(_PARAMS, "redis", "socket_timeout", default=5.0)

# ========================================
# Supabase PostgreSQL
# ========================================

SUPABASE_URL = os.getenv("SUPABASE_URL", None)
SUPABASE_KEY = os.getenv("SUPABASE_KEY", None)
SUPABASE_DB_URL = os.getenv("SUPABASE_DB_URL", None)

SQL_POOL_SIZE = _get_nested(_PARAMS, "postgres", "pool_size", default=5)
SQL_MAX_OVERFLOW = _get_nested(_PARAMS, "postgres", "max_overflow", default=10)
SQL_POOL_RECYCLE = _get_nested(_PARAMS, "postgres", "pool_recycle", default=3600)

# ========================================
# SQLite (embedded memory)
# ========================================

SQLITE_URL = os.getenv(
    "SQLITE_URL",
    "sqlite:///" + str(_PROJECT_ROOT / _get_nested(_PARAMS, "sqlite", "path", default="data/agent_memory.db")),
)

# ========================================
# Qdrant (vector index)
# ========================================

QDRANT_API_KEY = os.getenv("QDRANT_API_KEY", None)
QDRANT_URL = os.getenv("QDRANT_URL", None)
QDRANT_COLLECTION_NAME = os.getenv(
    "QDRANT_COLLECTION_NAME",
    _get_nested(_PARAMS, "vector", "collection_name", default="agent_vectors"),
)
VECTOR_DEFAULT_TOP_K = _get_nested(_PARAMS, "vector", "top_k", default=10)
VECTOR_UPSERT_BATCH_SIZE = _get_nested(_PARAMS, "vector", "batch_size", default=100)

# Hybrid re-rank weights (vector similarity + keyword overlap)
HYBRID_VECTOR_WEIGHT = _get_nested(_PARAMS, "vector", "hybrid", "vector_weight", default=0.7)
HYBRID_KEYWORD_WEIGHT = _get_nested(_PARAMS, "vector", "hybrid", "keyword_weight", default=0.3)

# ========================================
# Embeddings
# ========================================

EMBEDDING_MODEL = _get_nested(_PARAMS, "embedding", "model", default="text-embedding-3-small")
EMBEDDING_BATCH_SIZE = _get_nested(_PARAMS, "embedding", "batch_size", default=100)

#  EMBEDDING_DIM must match the model's output dimensions
#   - "text-embedding-3-small"  → 1536 dims
#   - "text-embedding-3-large"  → 3072 dims
EMBEDDING_DIM = 1536
if "large" in EMBEDDING_MODEL.lower():
    EMBEDDING_DIM = 3072

# ========================================
# Semantic Cache
# ========================================

SEMANTIC_CACHE_COLLECTION = _get_nested(_PARAMS, "semantic_cache", "collection_name", default="semantic_cache")
SEMANTIC_CACHE_MIN_PROXIMITY = _get_nested(_PARAMS, "semantic_cache", "min_proximity", default=0.95)
SEMANTIC_CACHE_TTL = _get_nested(_PARAMS, "semantic_cache", "ttl", default=0)  # 0 → no expiry

# ========================================
# Query + Memory Caches (in-process LRU)
# ========================================

QUERY_CACHE_MAX_SIZE = _get_nested(_PARAMS, "query_cache", "max_size", default=500)
QUERY_CACHE_TTL = _get_nested(_PARAMS, "query_cache", "ttl", default=300)

MEMORY_CACHE_ENABLED = _get_nested(_PARAMS, "memory_cache", "enabled", default=True)
MEMORY_CACHE_MAX_SIZE = _get_nested(_PARAMS, "memory_cache", "max_size", default=100)
MEMORY_CACHE_TTL = _get_nested(_PARAMS, "memory_cache", "ttl", default=600)

# ========================================
# Stream Processing
# ========================================

STREAM_BATCH_SIZE = _get_nested(_PARAMS, "stream", "batch_size", default=50)
STREAM_MAX_RETRIES = _get_nested(_PARAMS, "stream", "max_retries", default=3)
STREAM_RETRY_DELAY = _get_nested(_PARAMS, "stream", "retry_delay", default=1.0)

# ========================================
# Redis Stream Logger
# ========================================

LOG_STREAM_MAX_LENGTH = _get_nested(_PARAMS, "log_stream", "max_length", default=1000)
LOG_STREAM_DEBUG = _get_nested(_PARAMS, "log_stream", "debug", default=False)

# ========================================
# Tracing
# ========================================

OBSERVABILITY_ENABLED = _get_nested(_PARAMS, "observability", "enabled", default=True)
TRACING_PERSIST = _get_nested(_PARAMS, "observability", "persist", default=False)

# ========================================
# Tokenizer
# ========================================

TOKEN_ENCODING = _get_nested(_PARAMS, "tokens", "encoding", default="o200k_base")

# ========================================
# Provider endpoints (OpenAI-compatible)
# ========================================

OPENAI_BASE_URL = _get_nested(_PARAMS, "providers", "openai_base_url", default=None)
ANTHROPIC_BASE_URL = _get_nested(_PARAMS, "providers", "anthropic_base_url",
                                 default="https://api.anthropic.com/v1/")
GOOGLE_BASE_URL = _get_nested(_PARAMS, "providers", "google_base_url",
                              default="https://generativelanguage.googleapis.com/v1beta/openai/")

# ========================================
# Helper Functions
# ========================================

def get_api_key(provider: str) -> Optional[str]:
    """Get API key for the specified provider."""
    key_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "google": "GOOGLE_API_KEY",
        "gemini": "GOOGLE_API_KEY",  # Alias
    }
    env_var = key_map.get(provider, f"{provider.upper()}_API_KEY")
    return os.getenv(env_var)


def use_redis_adapter() -> bool:
    """True when the Redis-backed table adapter is switched on."""
    return os.getenv("USE_REDIS_ADAPTER", "").lower() == "true"


def is_redis_main_db() -> bool:
    """True when Redis is the primary database (no relational backup)."""
    return use_redis_adapter()


def should_fallback_to_backup() -> bool:
    """
    Whether failed Redis operations should be retried against Supabase.

    Only when Redis is NOT the main DB and Supabase REST credentials exist.
    """
    if is_redis_main_db():
        return False
    return bool(os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_KEY"))


def get_memory_provider() -> str:
    """Memory facade backend: ``sqlite`` (default) or ``redis``."""
    return os.getenv("MEMORY_PROVIDER", "sqlite").lower()


def validate() -> None:
    """
    Validate configuration for the active backends.

    Raises:
        ValueError: If required connection settings are missing
    """
    missing = []
    if (use_redis_adapter() or get_memory_provider() == "redis") and not os.getenv("REDIS_URL"):
        missing.append("REDIS_URL")
    if should_fallback_to_backup() and not os.getenv("SUPABASE_DB_URL"):
        missing.append("SUPABASE_DB_URL")

    if missing:
        raise ValueError(
            f" Missing required settings: {', '.join(missing)}\n"
            f"Please add them to your .env file."
        )


def dump() -> None:
    """Print all active non-secret configuration values for debugging."""
    logger.info("\n" + "=" * 60)
    logger.info("CONFIGURATION (NON-SECRETS ONLY)")
    logger.info("=" * 60)

    logger.info("\n Backends:")
    logger.info(f"   Memory Provider: {get_memory_provider()}")
    logger.info(f"   Redis Adapter: {'on' if use_redis_adapter() else 'off'}")
    logger.info(f"   Redis URL: {'Set' if os.getenv('REDIS_URL') else 'Not set'}")
    logger.info(f"   Supabase Fallback: {'on' if should_fallback_to_backup() else 'off'}")
    logger.info(f"   SQLite: {SQLITE_URL}")

    logger.info("\n Vectors:")
    logger.info(f"   Qdrant URL: {'Set' if QDRANT_URL else 'Not set'}")
    logger.info(f"   Collection: {QDRANT_COLLECTION_NAME}")
    logger.info(f"   Embedding Model: {EMBEDDING_MODEL} ({EMBEDDING_DIM} dims)")
    logger.info(f"   Hybrid Weights: vector={HYBRID_VECTOR_WEIGHT} keyword={HYBRID_KEYWORD_WEIGHT}")

    logger.info("\n Caches:")
    logger.info(f"   Semantic Cache: {SEMANTIC_CACHE_COLLECTION} (min proximity {SEMANTIC_CACHE_MIN_PROXIMITY})")
    logger.info(f"   Query Cache: max={QUERY_CACHE_MAX_SIZE} ttl={QUERY_CACHE_TTL}s")
    logger.info(f"   Memory Cache: max={MEMORY_CACHE_MAX_SIZE} ttl={MEMORY_CACHE_TTL}s")

    logger.info("\n Streams:")
    logger.info(f"   Batch Size: {STREAM_BATCH_SIZE}")
    logger.info(f"   Max Retries: {STREAM_MAX_RETRIES}")
    logger.info(f"   Log Stream Max Length: {LOG_STREAM_MAX_LENGTH}")

    logger.info("\n" + "=" * 60 + "\n")


def get_config() -> Dict[str, Any]:
    """Return full config dictionary."""
    return _PARAMS
