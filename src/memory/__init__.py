"""
Memory system — schemas, Redis-backed stores, streams and the memory facade.

Stores:
  - RedisStore:       threads, messages and generic ``{type}:{id}`` entities
  - AgentStateStore:  per-(thread, agent) JSON state with optional TTL
  - StreamLogger:     per-service Redis Streams log
Helpers:
  - query:             filter / order / paginate / select emulation
  - stream_processor:  lazy cursor-paginated iteration over collections
  - message_processors: prune / filter / token-limit message lists
Facade:
  - create_memory():   cached thread / message / state API over sqlite or redis
"""

from .schemas import (
    VectorDocument,
    Thread,
    Message,
    EntityBase,
    ENTITY_SCHEMAS,
    QueryFilter,
    ListEntitiesOptions,
    LogQueryOptions,
    Embedder,
    validate_entity,
)
from .query import apply_filters, apply_ordering, apply_pagination, select_fields, run_query
from .redis_store import RedisStore
from .agent_state_store import AgentStateStore
from .stream_logger import StreamLogger, get_stream_logger
from .stream_processor import StreamOptions, VectorStreamOptions, StreamProcessor, get_stream_processor
from .message_processors import (
    MemoryProcessorPipeline,
    count_tokens,
    filter_messages_by_role,
    limit_tokens,
    prune_old_messages,
)
from .factory import Memory, MemoryCacheConfig, create_memory, is_memory_available

__all__ = [
    # Schemas
    "VectorDocument",
    "Thread",
    "Message",
    "EntityBase",
    "ENTITY_SCHEMAS",
    "QueryFilter",
    "ListEntitiesOptions",
    "LogQueryOptions",
    "Embedder",
    "validate_entity",
    # Query emulation
    "apply_filters",
    "apply_ordering",
    "apply_pagination",
    "select_fields",
    "run_query",
    # Stores
    "RedisStore",
    "AgentStateStore",
    "StreamLogger",
    "get_stream_logger",
    # Streams
    "StreamOptions",
    "VectorStreamOptions",
    "StreamProcessor",
    "get_stream_processor",
    # Message processors
    "MemoryProcessorPipeline",
    "count_tokens",
    "filter_messages_by_role",
    "limit_tokens",
    "prune_old_messages",
    # Facade
    "Memory",
    "MemoryCacheConfig",
    "create_memory",
    "is_memory_available",
]
