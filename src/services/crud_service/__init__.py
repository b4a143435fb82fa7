"""
Relational CRUD and the Redis-first table adapter.

  postgres_crud  — generic TableCrud over the Supabase Postgres tables
  sqlite_crud    — named CRUD for the embedded SQLite tables
  table_adapter  — Redis-first rows with Supabase fallback
  query_cache    — TTL LRU for list queries
"""

from .postgres_crud import TableCrud, get_crud, list_tables
from .sqlite_crud import SQLiteCrud, get_sqlite_crud
from .query_cache import TTLCache, QueryCache, get_query_cache
from .table_adapter import (
    SupabaseBackend,
    TableAdapter,
    get_primary_key_for_table,
    get_primary_key_value,
    get_table_adapter,
)

__all__ = [
    "TableCrud",
    "get_crud",
    "list_tables",
    "SQLiteCrud",
    "get_sqlite_crud",
    "TTLCache",
    "QueryCache",
    "get_query_cache",
    "SupabaseBackend",
    "TableAdapter",
    "get_primary_key_for_table",
    "get_primary_key_value",
    "get_table_adapter",
]
