"""
Redis-backed entity store - threads, messages and generic entities.

Key layout:
    thread:{id}             hash    thread record
    threads                 zset    thread ids scored by last update (ms)
    thread:{id}:messages    set     message ids of a thread
    message:{id}            hash    message record
    {type}:{id}             hash    generic entity
    {type}:ids              set     ids of every entity of {type}

Relational list semantics (filters, ordering, paging, projection) are
emulated in-process via :mod:`memory.query`. Multi-key reads and writes
go through one pipeline each (batching, not transactions).

Generic entity operations fall back to the Supabase backup tables when
Redis fails and ``should_fallback_to_backup()`` allows it.
"""

from loguru import logger
import json
import uuid
from typing import Any, Callable, Dict, List, Optional

from infrastructure.config import should_fallback_to_backup, REDIS_DEFAULT_PAGE_SIZE
from infrastructure.db.redis_client import get_redis_client, encode_hash, decode_hash, now_ms
from infrastructure.errors import RedisStoreError
from memory.query import run_query
from memory.schemas import (
    ListEntitiesOptions,
    Message,
    Thread,
    utc_now_iso,
    validate_entity,
)

THREAD_PREFIX = "thread:"
THREADS_SET = "threads"
THREAD_MESSAGES_SUFFIX = ":messages"
MESSAGE_PREFIX = "message:"

VectorSearchFn = Callable[[str, int], List[str]]


def thread_key(thread_id: str) -> str:
    return f"{THREAD_PREFIX}{thread_id}"


def thread_messages_key(thread_id: str) -> str:
    return f"{THREAD_PREFIX}{thread_id}{THREAD_MESSAGES_SUFFIX}"


def message_key(message_id: str) -> str:
    return f"{MESSAGE_PREFIX}{message_id}"


class RedisStore:
    """
    Thread / message / entity persistence on Redis.

    Args:
        client: redis-py client (defaults to the shared singleton).
        backup: object exposing ``create_item`` / ``get_item_by_id`` /
                ``update_item`` / ``delete_item`` / ``get_data``; used
                for entity fallback (defaults to the Supabase backend).
    """

    def __init__(self, client=None, backup=None):
        self._client = client
        self._backup = backup

    @property
    def client(self):
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    @property
    def backup(self):
        if self._backup is None:
            from services.crud_service.table_adapter import SupabaseBackend
            self._backup = SupabaseBackend()
        return self._backup

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def create_thread(
        self,
        name: Optional[str] = None,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Thread:
        """Create a thread and index it in the recency zset."""
        now = utc_now_iso()
        thread = Thread(
            id=str(uuid.uuid4()),
            name=name,
            user_id=user_id,
            agent_id=agent_id,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        ).validate()
        try:
            pipe = self.client.pipeline(transaction=False)
            pipe.hset(thread_key(thread.id), mapping=encode_hash(thread.to_dict()))
            pipe.zadd(THREADS_SET, {thread.id: now_ms()})
            pipe.execute()
            logger.debug("Created thread {}", thread.id)
            return thread
        except Exception as err:
            logger.error("Failed to create thread: {}", err)
            raise RedisStoreError("Failed to create thread", cause=err)

    def get_thread(self, thread_id: str) -> Optional[Thread]:
        """Fetch a thread, or None when it does not exist."""
        try:
            data = self.client.hgetall(thread_key(thread_id))
        except Exception as err:
            logger.error("Failed to get thread {}: {}", thread_id, err)
            raise RedisStoreError("Failed to get thread by id", cause=err)
        if not data:
            return None
        return Thread.from_dict(decode_hash(data))

    def update_thread(self, thread_id: str, updates: Dict[str, Any]) -> Optional[Thread]:
        """
        Merge *updates* (name, metadata, user_id, agent_id) into a thread.

        ``id`` and ``created_at`` are immutable; ``updated_at`` and the
        zset score are bumped. Returns None when the thread is missing.
        """
        existing = self.get_thread(thread_id)
        if existing is None:
            return None
        allowed = {k: v for k, v in updates.items() if k in ("name", "metadata", "user_id", "agent_id")}
        merged = Thread.from_dict({**existing.to_dict(), **allowed, "updated_at": utc_now_iso()}).validate()
        try:
            pipe = self.client.pipeline(transaction=False)
            pipe.hset(thread_key(thread_id), mapping=encode_hash(merged.to_dict()))
            cleared = [k for k, v in allowed.items() if v is None]
            if cleared:
                pipe.hdel(thread_key(thread_id), *cleared)
            pipe.zadd(THREADS_SET, {thread_id: now_ms()})
            pipe.execute()
            return merged
        except Exception as err:
            logger.error("Failed to update thread {}: {}", thread_id, err)
            raise RedisStoreError("Failed to update thread", cause=err)

    def list_threads(
        self,
        limit: int = REDIS_DEFAULT_PAGE_SIZE,
        offset: int = 0,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> List[Thread]:
        """
        List threads newest-first.

        Without owner filters the zset is paged directly; with filters all
        ids are resolved, filtered, then paged.
        """
        try:
            if user_id or agent_id:
                ids = self.client.zrange(THREADS_SET, 0, -1, desc=True)
            else:
                ids = self.client.zrange(THREADS_SET, offset, offset + limit - 1, desc=True)
            threads = self.batch_get_threads(ids)
        except RedisStoreError:
            raise
        except Exception as err:
            logger.error("Failed to list threads: {}", err)
            raise RedisStoreError("Failed to list threads", cause=err)

        if not (user_id or agent_id):
            return threads
        matching = [
            t for t in threads
            if (not user_id or t.user_id == user_id) and (not agent_id or t.agent_id == agent_id)
        ]
        return matching[offset: offset + limit]

    def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread with all its messages. False if it did not exist."""
        try:
            message_ids = self.client.smembers(thread_messages_key(thread_id))
            pipe = self.client.pipeline(transaction=False)
            for message_id in message_ids:
                pipe.delete(message_key(message_id))
            pipe.delete(thread_messages_key(thread_id))
            pipe.delete(thread_key(thread_id))
            pipe.zrem(THREADS_SET, thread_id)
            results = pipe.execute()
            logger.debug("Deleted thread {} ({} messages)", thread_id, len(message_ids))
            return bool(results[-2]) or bool(results[-1])
        except Exception as err:
            logger.error("Failed to delete thread {}: {}", thread_id, err)
            raise RedisStoreError("Failed to delete thread", cause=err)

    def batch_get_threads(self, thread_ids: List[str]) -> List[Thread]:
        """Fetch many threads in one pipeline; missing ids are skipped."""
        if not thread_ids:
            return []
        try:
            pipe = self.client.pipeline(transaction=False)
            for thread_id in thread_ids:
                pipe.hgetall(thread_key(thread_id))
            results = pipe.execute()
        except Exception as err:
            logger.error("Error in batch_get_threads: {}", err)
            raise RedisStoreError("Error in batch_get_threads", cause=err)

        threads = []
        for data in results:
            if not data:
                continue
            try:
                threads.append(Thread.from_dict(decode_hash(data)))
            except TypeError as err:
                logger.warning("Skipping unparseable thread hash: {}", err)
        return threads

    def search_threads_by_metadata(
        self,
        query: Dict[str, Any],
        limit: int = REDIS_DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> List[Thread]:
        """Threads whose metadata contains every ``key == value`` in *query*."""
        try:
            ids = self.client.zrange(THREADS_SET, 0, -1, desc=True)
        except Exception as err:
            logger.error("Failed metadata search: {}", err)
            raise RedisStoreError("Failed metadata search", cause=err)
        matches = [
            t for t in self.batch_get_threads(ids)
            if t.metadata and all(t.metadata.get(k) == v for k, v in query.items())
        ]
        return matches[offset: offset + limit]

    def hybrid_thread_search(
        self,
        query: str,
        limit: int = REDIS_DEFAULT_PAGE_SIZE,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        vector_search_fn: Optional[VectorSearchFn] = None,
    ) -> List[Thread]:
        """
        Resolve thread ids from *vector_search_fn* (semantic match), or
        fall back to the most recently updated threads when it yields none.
        """
        thread_ids: List[str] = []
        if vector_search_fn is not None:
            try:
                thread_ids = list(vector_search_fn(query, limit))
            except Exception as err:
                logger.warning("Vector thread search failed, using recency: {}", err)
        try:
            if not thread_ids:
                thread_ids = self.client.zrange(THREADS_SET, 0, limit - 1, desc=True)
        except Exception as err:
            logger.error("Failed hybrid thread search: {}", err)
            raise RedisStoreError("Failed hybrid thread search", cause=err)

        threads = [
            t for t in self.batch_get_threads(thread_ids)
            if (not user_id or t.user_id == user_id) and (not agent_id or t.agent_id == agent_id)
        ]
        return threads[:limit]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(
        self,
        thread_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> Message:
        """Append a message to *thread_id* and touch the thread."""
        now = utc_now_iso()
        message = Message(
            id=str(uuid.uuid4()),
            thread_id=thread_id,
            role=role,
            content=content,
            metadata=metadata or {},
            name=name,
            created_at=now,
        ).validate()
        try:
            if not self.client.exists(thread_key(thread_id)):
                raise RedisStoreError(f"Thread {thread_id} not found")
            pipe = self.client.pipeline(transaction=False)
            pipe.hset(message_key(message.id), mapping=encode_hash(message.to_dict()))
            pipe.sadd(thread_messages_key(thread_id), message.id)
            pipe.hset(thread_key(thread_id), "updated_at", json.dumps(now))
            pipe.zadd(THREADS_SET, {thread_id: now_ms()})
            pipe.execute()
            return message
        except RedisStoreError:
            raise
        except Exception as err:
            logger.error("Failed to create message in {}: {}", thread_id, err)
            raise RedisStoreError("Failed to create message", cause=err)

    def get_message(self, message_id: str) -> Optional[Message]:
        """Fetch one message, or None."""
        try:
            data = self.client.hgetall(message_key(message_id))
        except Exception as err:
            logger.error("Failed to get message {}: {}", message_id, err)
            raise RedisStoreError("Failed to get message by id", cause=err)
        if not data:
            return None
        return Message.from_dict(decode_hash(data))

    def get_messages_by_thread(
        self,
        thread_id: str,
        limit: Optional[int] = 50,
        offset: int = 0,
        order: str = "asc",
    ) -> List[Message]:
        """Messages of a thread ordered by ``created_at`` (then id), paged (``limit=None`` → all)."""
        try:
            ids = self.client.smembers(thread_messages_key(thread_id))
            if not ids:
                return []
            pipe = self.client.pipeline(transaction=False)
            for message_id in ids:
                pipe.hgetall(message_key(message_id))
            results = pipe.execute()
        except Exception as err:
            logger.error("Failed to get messages for {}: {}", thread_id, err)
            raise RedisStoreError("Failed to get messages by thread id", cause=err)

        messages = [Message.from_dict(decode_hash(d)) for d in results if d]
        messages.sort(key=lambda m: (m.created_at, m.id), reverse=(order == "desc"))
        if limit is None:
            return messages[offset:]
        return messages[offset: offset + limit]

    def delete_message(self, thread_id: str, message_id: str) -> bool:
        """Remove a message and unlink it from its thread."""
        try:
            pipe = self.client.pipeline(transaction=False)
            pipe.delete(message_key(message_id))
            pipe.srem(thread_messages_key(thread_id), message_id)
            deleted, _ = pipe.execute()
            return bool(deleted)
        except Exception as err:
            logger.error("Failed to delete message {}: {}", message_id, err)
            raise RedisStoreError("Failed to delete message", cause=err)

    # ------------------------------------------------------------------
    # Generic entities
    # ------------------------------------------------------------------

    def _fallback_or_raise(self, action: str, entity_type: str, err: Exception, call: Callable[[], Any]):
        logger.error("Failed to {} entity {}: {}", action, entity_type, err)
        if self._backup is not None or should_fallback_to_backup():
            logger.warning("Falling back to Supabase for {} {}", action, entity_type)
            return call()
        raise RedisStoreError(f"Failed to {action} entity: {entity_type}", cause=err)

    def create_entity(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and persist ``{entity_type}:{id}``.

        ``id`` is generated when absent; ``type``, ``created_at`` and
        ``updated_at`` are always set by the store.
        """
        now = utc_now_iso()
        record = validate_entity(entity_type, {
            **data,
            "id": data.get("id") or str(uuid.uuid4()),
            "type": entity_type,
            "created_at": data.get("created_at") or now,
            "updated_at": now,
        })
        try:
            pipe = self.client.pipeline(transaction=False)
            pipe.hset(f"{entity_type}:{record['id']}", mapping=encode_hash(record))
            pipe.sadd(f"{entity_type}:ids", record["id"])
            pipe.execute()
            return record
        except Exception as err:
            return self._fallback_or_raise(
                "create", entity_type, err,
                lambda: self.backup.create_item(entity_type, record),
            )

    def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one entity, or None."""
        try:
            data = self.client.hgetall(f"{entity_type}:{entity_id}")
            return decode_hash(data) if data else None
        except Exception as err:
            return self._fallback_or_raise(
                "get", entity_type, err,
                lambda: self.backup.get_item_by_id(entity_type, entity_id),
            )

    def update_entity(self, entity_type: str, entity_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Merge *updates* into an entity; None when it does not exist."""
        existing = self.get_entity(entity_type, entity_id)
        if existing is None:
            return None
        record = validate_entity(entity_type, {
            **existing,
            **{k: v for k, v in updates.items() if v is not None},
            "id": entity_id,
            "type": entity_type,
            "updated_at": utc_now_iso(),
        })
        cleared = [k for k, v in updates.items() if v is None and k not in ("id", "type")]
        try:
            pipe = self.client.pipeline(transaction=False)
            pipe.hset(f"{entity_type}:{entity_id}", mapping=encode_hash(record))
            if cleared:
                pipe.hdel(f"{entity_type}:{entity_id}", *cleared)
            pipe.execute()
            for k in cleared:
                record.pop(k, None)
            return record
        except Exception as err:
            return self._fallback_or_raise(
                "update", entity_type, err,
                lambda: self.backup.update_item(entity_type, entity_id, updates),
            )

    def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        """Delete an entity and drop it from the ``{type}:ids`` index."""
        try:
            pipe = self.client.pipeline(transaction=False)
            pipe.delete(f"{entity_type}:{entity_id}")
            pipe.srem(f"{entity_type}:ids", entity_id)
            deleted, _ = pipe.execute()
            return bool(deleted)
        except Exception as err:
            return self._fallback_or_raise(
                "delete", entity_type, err,
                lambda: self.backup.delete_item(entity_type, entity_id),
            )

    def list_entities(self, entity_type: str, options: Optional[ListEntitiesOptions] = None) -> List[Dict[str, Any]]:
        """List entities of a type with filters / ordering / paging / select."""
        try:
            ids = self.client.smembers(f"{entity_type}:ids")
            entities = self._fetch_entities(entity_type, list(ids))
        except Exception as err:
            return self._fallback_or_raise(
                "list", entity_type, err,
                lambda: self.backup.get_data(entity_type, options),
            )
        return run_query(entities, options)

    def batch_get_entities(self, entity_type: str, entity_ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch many entities in one pipeline; missing ids are skipped."""
        try:
            return self._fetch_entities(entity_type, entity_ids)
        except Exception as err:
            logger.error("Failed batch get {}: {}", entity_type, err)
            raise RedisStoreError(f"Failed batch get: {entity_type}", cause=err)

    def _fetch_entities(self, entity_type: str, entity_ids: List[str]) -> List[Dict[str, Any]]:
        if not entity_ids:
            return []
        pipe = self.client.pipeline(transaction=False)
        for entity_id in entity_ids:
            pipe.hgetall(f"{entity_type}:{entity_id}")
        return [decode_hash(d) for d in pipe.execute() if d]
