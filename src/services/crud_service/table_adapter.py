"""
Table adapter - Redis-first access to the application tables.

When ``USE_REDIS_ADAPTER=true`` rows live in Redis:

    table:{name}:{pk}   → hash, every field JSON-encoded
    table:{name}:ids    → set of primary-key values

Composite primary keys (agent_tools, settings) are joined with ``:``.
A Redis failure, or a miss, is served by Supabase when a backup is
available. With the adapter off every call goes straight to Supabase.

List results go through the in-process :class:`QueryCache`; any write to
a table drops its cached pages.
"""

from loguru import logger
import os
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from infrastructure.config import VECTOR_DEFAULT_TOP_K, use_redis_adapter
from infrastructure.db.redis_client import decode_hash, encode_hash, get_redis_client
from infrastructure.errors import TableAdapterError, ValidationError
from memory.query import run_query
from memory.schemas import ListEntitiesOptions, QueryFilter, VectorDocument, utc_now_iso
from services.crud_service.query_cache import QueryCache, get_query_cache

ItemId = Union[str, int, Sequence[Any], Mapping[str, Any]]

COMPOSITE_KEYS: Dict[str, Tuple[str, ...]] = {
    "agent_tools": ("agent_id", "tool_id"),
    "settings": ("category", "key"),
}
KEY_SEPARATOR = ":"


# ---------------------------------------------------------------------------
# Primary keys
# ---------------------------------------------------------------------------


def get_primary_key_for_table(table: str) -> Union[str, Tuple[str, ...]]:
    """Primary-key column of *table*, or a tuple of columns for composite keys."""
    return COMPOSITE_KEYS.get(table, "id")


def _pk_columns(table: str) -> Tuple[str, ...]:
    pk = get_primary_key_for_table(table)
    return pk if isinstance(pk, tuple) else (pk,)


def get_primary_key_value(table: str, item: Mapping[str, Any]) -> str:
    """
    Primary-key value of *item*; composite values are joined with ``:``.

    Raises:
        ValidationError: If any key column is missing
    """
    columns = _pk_columns(table)
    missing = [c for c in columns if item.get(c) in (None, "")]
    if missing:
        raise ValidationError(f"Invalid {table} key", [f"{c} is required" for c in missing])
    return KEY_SEPARATOR.join(str(item[c]) for c in columns)


def split_item_id(table: str, item_id: ItemId) -> Dict[str, Any]:
    """
    Column → value mapping for *item_id*.

    Composite ids may be given as ``"a:b"``, a tuple or a dict.
    """
    columns = _pk_columns(table)
    if isinstance(item_id, Mapping):
        values = [item_id.get(c) for c in columns]
    elif isinstance(item_id, (list, tuple)):
        values = list(item_id)
    elif len(columns) == 1:
        values = [item_id]
    else:
        values = str(item_id).split(KEY_SEPARATOR, len(columns) - 1)
    if len(values) != len(columns) or any(v in (None, "") for v in values):
        raise ValidationError(f"Invalid {table} key", [f"expected values for {', '.join(columns)}"])
    return dict(zip(columns, values))


def row_key(table: str, pk_value: str) -> str:
    return f"table:{table}:{pk_value}"


def ids_key(table: str) -> str:
    return f"table:{table}:ids"


# ---------------------------------------------------------------------------
# Supabase (REST) backend
# ---------------------------------------------------------------------------


def _is_value(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


class SupabaseBackend:
    """
    Table CRUD over the Supabase REST API (PostgREST).

    Args:
        client: supabase-py Client (default: shared singleton)
    """

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from infrastructure.db.supabase_client import get_supabase_client
            self._client = get_supabase_client()
        return self._client

    def _call(self, action: str, table: str, fn: Callable[[], Any]):
        try:
            return fn()
        except ValidationError:
            raise
        except Exception as e:
            logger.error("Supabase {} on {} failed: {}", action, table, e)
            raise TableAdapterError(f"Failed to {action} {table} in Supabase", cause=e)

    @staticmethod
    def _match_key(query, table: str, item_id: ItemId):
        for column, value in split_item_id(table, item_id).items():
            query = query.eq(column, value)
        return query

    @staticmethod
    def _apply_filter(query, f: QueryFilter):
        f.validate()
        if f.operator == "in":
            return query.in_(f.field, list(f.value))
        if f.operator == "is":
            return query.is_(f.field, _is_value(f.value))
        return getattr(query, f.operator)(f.field, f.value)

    def get_item_by_id(self, table: str, item_id: ItemId) -> Optional[Dict[str, Any]]:
        def op():
            query = self._match_key(self.client.table(table).select("*"), table, item_id)
            rows = query.execute().data or []
            return rows[0] if rows else None

        return self._call("get", table, op)

    def create_item(self, table: str, item: Mapping[str, Any]) -> Dict[str, Any]:
        def op():
            rows = self.client.table(table).insert(dict(item)).execute().data or []
            return rows[0] if rows else dict(item)

        return self._call("create", table, op)

    def update_item(self, table: str, item_id: ItemId, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        def op():
            query = self._match_key(self.client.table(table).update(dict(updates)), table, item_id)
            rows = query.execute().data or []
            return rows[0] if rows else None

        return self._call("update", table, op)

    def delete_item(self, table: str, item_id: ItemId) -> bool:
        def op():
            query = self._match_key(self.client.table(table).delete(), table, item_id)
            return bool(query.execute().data)

        return self._call("delete", table, op)

    def get_data(self, table: str, options: Optional[ListEntitiesOptions] = None) -> List[Dict[str, Any]]:
        """Rows of *table* with filters, ordering, range paging and projection."""
        options = options or ListEntitiesOptions()

        def op():
            columns = ",".join(options.select) if options.select else "*"
            query = self.client.table(table).select(columns)
            for f in options.filters:
                query = self._apply_filter(query, f)
            if options.sort_by:
                query = query.order(options.sort_by, desc=options.sort_order == "desc")
            if options.limit is not None:
                query = query.range(options.offset, options.offset + options.limit - 1)
                return query.execute().data or []
            rows = query.execute().data or []
            return rows[options.offset:] if options.offset else rows

        return self._call("list", table, op)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


def _backup_configured() -> bool:
    return bool(os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_KEY"))


class TableAdapter:
    """
    Redis-first table CRUD with Supabase fallback and cached list queries.

    Args:
        client: redis-py client (default: shared singleton)
        backup: Fallback backend (default: :class:`SupabaseBackend`)
        query_cache: Cache for :meth:`get_data` (default: process-wide)
        vector_store: Store used by the vector helpers
        use_redis: Override ``USE_REDIS_ADAPTER``
    """

    def __init__(
        self,
        client=None,
        backup=None,
        query_cache: Optional[QueryCache] = None,
        vector_store=None,
        use_redis: Optional[bool] = None,
    ):
        self._client = client
        self._backup = backup
        self.query_cache = query_cache or get_query_cache()
        self._vector_store = vector_store
        self.use_redis = use_redis_adapter() if use_redis is None else use_redis

    @property
    def client(self):
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    @property
    def backup(self):
        if self._backup is None:
            self._backup = SupabaseBackend()
        return self._backup

    @property
    def vector_store(self):
        if self._vector_store is None:
            from services.vector_service.vector_store import get_vector_store
            self._vector_store = get_vector_store()
        return self._vector_store

    def _has_backup(self) -> bool:
        return self._backup is not None or _backup_configured()

    def _fallback(self, action: str, table: str, err: Exception, call: Callable[[], Any]):
        logger.error("Redis {} on {} failed: {}", action, table, err)
        if not self._has_backup():
            raise TableAdapterError(f"Failed to {action} {table}", cause=err)
        logger.warning("Falling back to Supabase for {} {}", action, table)
        return call()

    def _pk_value(self, table: str, item_id: ItemId) -> str:
        return get_primary_key_value(table, split_item_id(table, item_id))

    def _write_row(self, table: str, record: Dict[str, Any]) -> None:
        pk_value = get_primary_key_value(table, record)
        pipe = self.client.pipeline(transaction=False)
        pipe.hset(row_key(table, pk_value), mapping=encode_hash(record))
        pipe.sadd(ids_key(table), pk_value)
        pipe.execute()

    def _hydrate(self, table: str, record: Dict[str, Any]) -> None:
        try:
            self._write_row(table, record)
        except Exception as err:
            logger.warning("Could not cache {} row in Redis: {}", table, err)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def get_item_by_id(self, table: str, item_id: ItemId) -> Optional[Dict[str, Any]]:
        """One row by primary key, or None."""
        if not self.use_redis:
            return self.backup.get_item_by_id(table, item_id)
        pk_value = self._pk_value(table, item_id)
        try:
            data = self.client.hgetall(row_key(table, pk_value))
        except Exception as err:
            return self._fallback("get", table, err, lambda: self.backup.get_item_by_id(table, item_id))
        if data:
            return decode_hash(data)
        if not self._has_backup():
            return None
        row = self.backup.get_item_by_id(table, item_id)
        if row is not None:
            self._hydrate(table, row)
        return row

    def create_item(self, table: str, item: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Insert a row.

        ``id`` is generated for single-key tables; ``created_at`` and
        ``updated_at`` default to now.
        """
        now = utc_now_iso()
        record = dict(item)
        if _pk_columns(table) == ("id",) and not record.get("id"):
            record["id"] = str(uuid.uuid4())
        record.setdefault("created_at", now)
        record.setdefault("updated_at", now)
        get_primary_key_value(table, record)

        if not self.use_redis:
            created = self.backup.create_item(table, record)
        else:
            try:
                self._write_row(table, record)
                created = record
            except Exception as err:
                created = self._fallback("create", table, err, lambda: self.backup.create_item(table, record))
        self.query_cache.invalidate_table(table)
        logger.debug("Created {} {}", table, get_primary_key_value(table, created))
        return created

    def update_item(self, table: str, item_id: ItemId, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Merge *updates* into a row; None when it does not exist."""
        changes = {k: v for k, v in updates.items() if k not in _pk_columns(table)}
        changes["updated_at"] = utc_now_iso()

        if not self.use_redis:
            updated = self.backup.update_item(table, item_id, changes)
        else:
            updated = self._update_redis(table, item_id, changes)
        self.query_cache.invalidate_table(table)
        return updated

    def _update_redis(self, table: str, item_id: ItemId, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        existing = self.get_item_by_id(table, item_id)
        if existing is None:
            return None
        record = {**existing, **changes}
        try:
            self._write_row(table, record)
            return record
        except Exception as err:
            return self._fallback("update", table, err, lambda: self.backup.update_item(table, item_id, changes))

    def delete_item(self, table: str, item_id: ItemId) -> bool:
        """Delete a row; False when nothing matched."""
        if not self.use_redis:
            deleted = self.backup.delete_item(table, item_id)
        else:
            pk_value = self._pk_value(table, item_id)
            try:
                pipe = self.client.pipeline(transaction=False)
                pipe.delete(row_key(table, pk_value))
                pipe.srem(ids_key(table), pk_value)
                removed, _ = pipe.execute()
                deleted = bool(removed)
            except Exception as err:
                deleted = self._fallback("delete", table, err, lambda: self.backup.delete_item(table, item_id))
        self.query_cache.invalidate_table(table)
        return deleted

    def get_data(self, table: str, options: Optional[ListEntitiesOptions] = None) -> List[Dict[str, Any]]:
        """List rows (filters, ordering, paging, select); results are cached."""
        cached = self.query_cache.get(table, options)
        if cached is not None:
            logger.debug("Query cache hit for {}", table)
            return cached

        if not self.use_redis:
            rows = self.backup.get_data(table, options)
        else:
            rows = self._get_data_redis(table, options)
        self.query_cache.set(table, options, rows)
        return rows

    def _get_data_redis(self, table: str, options: Optional[ListEntitiesOptions]) -> List[Dict[str, Any]]:
        try:
            pk_values = list(self.client.smembers(ids_key(table)))
            rows = self._fetch_rows(table, pk_values)
        except Exception as err:
            return self._fallback("list", table, err, lambda: self.backup.get_data(table, options))
        if not rows and self._has_backup():
            return self.backup.get_data(table, options)
        return run_query([r for r in rows if r is not None], options)

    def _fetch_rows(self, table: str, pk_values: Sequence[str]) -> List[Optional[Dict[str, Any]]]:
        if not pk_values:
            return []
        pipe = self.client.pipeline(transaction=False)
        for pk_value in pk_values:
            pipe.hgetall(row_key(table, pk_value))
        return [decode_hash(d) if d else None for d in pipe.execute()]

    # ------------------------------------------------------------------
    # Conveniences
    # ------------------------------------------------------------------

    def upsert_item(self, table: str, item: Mapping[str, Any]) -> Dict[str, Any]:
        """Update the row with *item*'s key if it exists, otherwise create it."""
        columns = _pk_columns(table)
        if all(item.get(c) not in (None, "") for c in columns):
            item_id = get_primary_key_value(table, item)
            if self.get_item_by_id(table, item_id) is not None:
                return self.update_item(table, item_id, item)
        return self.create_item(table, item)

    def exists_item(self, table: str, item_id: ItemId) -> bool:
        if self.use_redis:
            try:
                if self.client.exists(row_key(table, self._pk_value(table, item_id))):
                    return True
            except Exception as err:
                logger.warning("Redis exists on {} failed: {}", table, err)
            if not self._has_backup():
                return False
        return self.backup.get_item_by_id(table, item_id) is not None

    def count_items(self, table: str, filters: Optional[List[QueryFilter]] = None) -> int:
        return len(self.get_data(table, ListEntitiesOptions(filters=list(filters or []))))

    def batch_get_items(self, table: str, item_ids: Sequence[ItemId]) -> List[Optional[Dict[str, Any]]]:
        """Rows in *item_ids* order; None where a row is missing."""
        if not item_ids:
            return []
        if not self.use_redis:
            return [self.backup.get_item_by_id(table, i) for i in item_ids]
        pk_values = [self._pk_value(table, i) for i in item_ids]
        try:
            return self._fetch_rows(table, pk_values)
        except Exception as err:
            return self._fallback(
                "batch get", table, err,
                lambda: [self.backup.get_item_by_id(table, i) for i in item_ids],
            )

    # ------------------------------------------------------------------
    # Vectors
    # ------------------------------------------------------------------

    def vector_search(
        self,
        query: Union[str, Sequence[float]],
        top_k: int = VECTOR_DEFAULT_TOP_K,
        filter: Optional[Dict[str, Any]] = None,
        include_metadata: bool = True,
        include_vectors: bool = False,
    ) -> List[Dict[str, Any]]:
        """Nearest documents to a text (embedded first) or a raw vector."""
        if isinstance(query, str):
            return self.vector_store.search_text(query, top_k=top_k, filter=filter)
        return self.vector_store.query(
            query,
            top_k=top_k,
            include_metadata=include_metadata,
            include_vectors=include_vectors,
            filter=filter,
        )

    def upsert_vectors(self, documents: Sequence[Union[VectorDocument, Dict[str, Any]]]) -> int:
        return self.vector_store.upsert(documents)

    def upsert_texts(
        self,
        texts: Sequence[str],
        metadatas: Optional[Sequence[Dict[str, Any]]] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> List[str]:
        return self.vector_store.upsert_texts(texts, metadatas=metadatas, ids=ids)

    def semantic_search(
        self,
        query: str,
        top_k: int = VECTOR_DEFAULT_TOP_K,
        filter: Optional[Dict[str, Any]] = None,
        hybrid: bool = False,
    ) -> List[Dict[str, Any]]:
        """Text search; ``hybrid=True`` re-ranks by keyword overlap."""
        if hybrid:
            return self.vector_store.hybrid_search(query, top_k=top_k, filter=filter)
        return self.vector_store.search_text(query, top_k=top_k, filter=filter)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def cache_stats(self) -> Dict[str, Any]:
        return self.query_cache.stats()

    def clear_cache(self) -> None:
        self.query_cache.clear()


_table_adapter: Optional[TableAdapter] = None


def get_table_adapter() -> TableAdapter:
    """Shared adapter configured from the environment."""
    global _table_adapter
    if _table_adapter is None:
        _table_adapter = TableAdapter()
    return _table_adapter
