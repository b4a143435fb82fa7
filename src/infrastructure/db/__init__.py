"""
Database clients for the agent data layer.

Storage tiers:
     Hot   - Redis          → entities, threads, agent state, log streams
     Warm  - Qdrant         → document vectors + semantic cache
     Cold  - Supabase PG    → application tables (SQLAlchemy + REST fallback)
     Local - SQLite         → embedded memory / app-builder tables
"""

from .sql_client import get_sql_engine, create_tables, get_session, check_postgres, metadata
from .supabase_client import get_supabase_client, set_supabase_client, check_supabase
from .sqlite_client import (
    get_sqlite_engine,
    get_sqlite_session,
    create_sqlite_tables,
    check_sqlite,
    reset_engine,
)
from .redis_client import (
    get_redis_client,
    set_redis_client,
    reset_redis_client,
    check_redis_availability,
)
from .qdrant_client import (
    get_qdrant_client,
    set_qdrant_client,
    ensure_collection,
    delete_collection,
    collection_info,
    count_points,
    collection_exists,
)

__all__ = [
    # Supabase Postgres
    "get_sql_engine",
    "get_session",
    "create_tables",
    "check_postgres",
    "metadata",

    # Supabase REST
    "get_supabase_client",
    "set_supabase_client",
    "check_supabase",

    # SQLite
    "get_sqlite_engine",
    "get_sqlite_session",
    "create_sqlite_tables",
    "check_sqlite",
    "reset_engine",

    # Redis
    "get_redis_client",
    "set_redis_client",
    "reset_redis_client",
    "check_redis_availability",

    # Qdrant
    "get_qdrant_client",
    "set_qdrant_client",
    "ensure_collection",
    "delete_collection",
    "collection_info",
    "count_points",
    "collection_exists",
]
