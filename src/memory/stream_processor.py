"""
Lazy streaming over Redis collections and vector search results.

Every ``stream_*`` method returns a generator. Nothing is fetched until
the caller iterates, and each scan batch is one round-trip (plus one
pipelined resolve when members point at other keys), so very large
sets/zsets/hashes can be walked without loading them whole.

Error contract:
    - a scan batch is retried ``max_retries`` times with linear backoff;
    - once retries are exhausted (or an item cannot be parsed) the error
      goes to ``options.error_handler(error, item)``; the handler may
      swallow it (the stream stops on scan errors, skips on item errors);
    - without a handler the error is raised as StreamProcessorError.
"""

from loguru import logger
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from infrastructure.config import STREAM_BATCH_SIZE, STREAM_MAX_RETRIES, STREAM_RETRY_DELAY, VECTOR_DEFAULT_TOP_K
from infrastructure.db.redis_client import get_redis_client, decode_hash
from infrastructure.errors import StreamProcessorError
from memory.agent_state_store import state_key, thread_states_key
from memory.redis_store import THREADS_SET, message_key, thread_key, thread_messages_key

ErrorHandler = Callable[[Exception, Any], None]


@dataclass
class StreamOptions:
    """Knobs shared by every stream."""
    batch_size: int = STREAM_BATCH_SIZE
    max_retries: int = STREAM_MAX_RETRIES
    retry_delay: float = STREAM_RETRY_DELAY
    pattern: Optional[str] = None
    parse_json: bool = True
    filter_fn: Optional[Callable[[Any], bool]] = None
    transform_fn: Optional[Callable[[Any], Any]] = None
    error_handler: Optional[ErrorHandler] = None

    def __post_init__(self):
        if self.batch_size <= 0:
            raise StreamProcessorError("batch_size must be positive")
        if self.max_retries < 0:
            raise StreamProcessorError("max_retries must be >= 0")


@dataclass
class VectorStreamOptions(StreamOptions):
    """Vector search parameters on top of :class:`StreamOptions`."""
    top_k: int = VECTOR_DEFAULT_TOP_K
    filter: Optional[Dict[str, Any]] = None
    include_metadata: bool = True
    include_vectors: bool = False


class StreamProcessor:
    """
    Streams over the Redis layouts used by the memory stores.

    Args:
        client: redis-py client (defaults to the shared singleton).
        vector_store: object with ``query(vector, ...)`` and
                      ``search_text(text, ...)`` (see VectorStore).
        sleep: injectable sleep, used between retries.
    """

    def __init__(self, client=None, vector_store=None, sleep: Callable[[float], None] = time.sleep):
        self._client = client
        self._vector_store = vector_store
        self._sleep = sleep

    @property
    def client(self):
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    @property
    def vector_store(self):
        if self._vector_store is None:
            from services.vector_service.vector_store import get_vector_store
            self._vector_store = get_vector_store()
        return self._vector_store

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _retrying(self, fn: Callable[[], Any], options: StreamOptions, what: str) -> Any:
        attempt = 0
        while True:
            try:
                return fn()
            except Exception as err:
                attempt += 1
                if attempt > options.max_retries:
                    raise StreamProcessorError(f"{what} failed after {options.max_retries} retries", cause=err)
                logger.warning("{} failed (attempt {}/{}): {}", what, attempt, options.max_retries, err)
                self._sleep(options.retry_delay * attempt)

    def _handle(self, err: Exception, item: Any, options: StreamOptions) -> None:
        if options.error_handler is None:
            if isinstance(err, StreamProcessorError):
                raise err
            raise StreamProcessorError("Error streaming item", cause=err)
        try:
            options.error_handler(err, item)
        except Exception as handler_err:
            raise StreamProcessorError("Error in stream error handler", cause=handler_err)

    def _emit(self, items: Iterable[Any], options: StreamOptions) -> Iterator[Any]:
        for item in items:
            if options.filter_fn is not None and not options.filter_fn(item):
                continue
            yield options.transform_fn(item) if options.transform_fn is not None else item

    def _scan(self, scan: Callable[[int], Any], options: StreamOptions, what: str) -> Iterator[Any]:
        """Drive a cursor-based scan, yielding one raw batch per round-trip."""
        cursor = 0
        while True:
            try:
                cursor, batch = self._retrying(lambda: scan(cursor), options, what)
            except StreamProcessorError as err:
                self._handle(err, None, options)
                return
            if batch:
                yield batch
            if int(cursor) == 0:
                return

    def _resolve(
        self,
        members: List[str],
        key_fn: Callable[[str], str],
        as_hash: bool,
        options: StreamOptions,
    ) -> List[Any]:
        """One pipelined GET / HGETALL per batch; missing keys are dropped."""
        def fetch():
            pipe = self.client.pipeline(transaction=False)
            for member in members:
                if as_hash:
                    pipe.hgetall(key_fn(member))
                else:
                    pipe.get(key_fn(member))
            return pipe.execute()

        return [raw for raw in self._retrying(fetch, options, "resolve batch") if raw]

    def _members(
        self,
        batches: Iterator[List[str]],
        options: StreamOptions,
        key_fn: Optional[Callable[[str], str]],
        as_hash: bool,
    ) -> Iterator[Any]:
        for members in batches:
            if not (options.parse_json and key_fn is not None):
                yield from self._emit(members, options)
                continue
            try:
                raws = self._resolve(members, key_fn, as_hash, options)
            except StreamProcessorError as err:
                self._handle(err, members, options)
                return
            items = []
            for raw in raws:
                if as_hash:
                    items.append(decode_hash(raw))
                    continue
                try:
                    items.append(json.loads(raw))
                except ValueError as err:
                    self._handle(err, raw, options)
            yield from self._emit(items, options)

    # ------------------------------------------------------------------
    # Raw collection streams
    # ------------------------------------------------------------------

    def stream_sorted_set(
        self,
        key: str,
        options: Optional[StreamOptions] = None,
        key_fn: Optional[Callable[[str], str]] = None,
        as_hash: bool = False,
    ) -> Iterator[Any]:
        """
        Walk a zset with ZSCAN.

        With ``parse_json`` each member is resolved through *key_fn*
        (default ``{key}:{member}``) and decoded; otherwise members are
        yielded as-is.
        """
        options = options or StreamOptions()

        def scan(cursor):
            next_cursor, pairs = self.client.zscan(key, cursor=cursor, match=options.pattern, count=options.batch_size)
            return next_cursor, [member for member, _score in pairs]

        return self._members(
            self._scan(scan, options, f"ZSCAN {key}"),
            options,
            key_fn or (lambda m: f"{key}:{m}"),
            as_hash,
        )

    def stream_set(
        self,
        key: str,
        options: Optional[StreamOptions] = None,
        key_fn: Optional[Callable[[str], str]] = None,
        as_hash: bool = False,
    ) -> Iterator[Any]:
        """Walk a set with SSCAN (member resolution as in :meth:`stream_sorted_set`)."""
        options = options or StreamOptions()

        def scan(cursor):
            return self.client.sscan(key, cursor=cursor, match=options.pattern, count=options.batch_size)

        return self._members(
            self._scan(scan, options, f"SSCAN {key}"),
            options,
            key_fn or (lambda m: f"{key}:{m}"),
            as_hash,
        )

    def stream_hash(self, key: str, options: Optional[StreamOptions] = None) -> Iterator[Dict[str, Any]]:
        """Walk a hash with HSCAN, yielding ``{"field": ..., "value": ...}``."""
        options = options or StreamOptions()

        def scan(cursor):
            next_cursor, mapping = self.client.hscan(key, cursor=cursor, match=options.pattern, count=options.batch_size)
            return next_cursor, list(mapping.items())

        for pairs in self._scan(scan, options, f"HSCAN {key}"):
            entries = []
            for name, value in pairs:
                if options.parse_json:
                    try:
                        value = json.loads(value)
                    except ValueError:
                        pass  # plain string field
                entries.append({"field": name, "value": value})
            yield from self._emit(entries, options)

    # ------------------------------------------------------------------
    # Store-shaped streams
    # ------------------------------------------------------------------

    def stream_entities(self, entity_type: str, options: Optional[StreamOptions] = None) -> Iterator[Dict[str, Any]]:
        """Every ``{type}:{id}`` hash listed in ``{type}:ids``."""
        return self.stream_set(
            f"{entity_type}:ids", options,
            key_fn=lambda entity_id: f"{entity_type}:{entity_id}", as_hash=True,
        )

    def stream_threads(self, options: Optional[StreamOptions] = None) -> Iterator[Dict[str, Any]]:
        """Every thread hash indexed in the ``threads`` zset."""
        return self.stream_sorted_set(THREADS_SET, options, key_fn=thread_key, as_hash=True)

    def stream_messages(self, thread_id: str, options: Optional[StreamOptions] = None) -> Iterator[Dict[str, Any]]:
        """Messages of a thread (unordered; sort downstream if needed)."""
        return self.stream_set(thread_messages_key(thread_id), options, key_fn=message_key, as_hash=True)

    def stream_agent_states(self, thread_id: str, options: Optional[StreamOptions] = None) -> Iterator[Dict[str, Any]]:
        """Stored agent states of a thread."""
        return self.stream_set(
            thread_states_key(thread_id), options,
            key_fn=lambda agent_id: state_key(thread_id, agent_id),
        )

    # ------------------------------------------------------------------
    # Vector streams
    # ------------------------------------------------------------------

    def _stream_results(self, search: Callable[[], List[Dict[str, Any]]], options: VectorStreamOptions, what: str):
        try:
            results = self._retrying(search, options, what)
        except StreamProcessorError as err:
            self._handle(err, None, options)
            return
        for start in range(0, len(results), options.batch_size):
            yield from self._emit(results[start: start + options.batch_size], options)

    def stream_vector_search(self, query: List[float], options: Optional[VectorStreamOptions] = None) -> Iterator[Dict[str, Any]]:
        """Query the vector index once, then emit results batch by batch."""
        options = options or VectorStreamOptions()
        return self._stream_results(
            lambda: self.vector_store.query(
                query,
                top_k=options.top_k,
                include_metadata=options.include_metadata,
                include_vectors=options.include_vectors,
                filter=options.filter,
            ),
            options,
            "vector search",
        )

    def stream_semantic_search(self, text: str, options: Optional[VectorStreamOptions] = None) -> Iterator[Dict[str, Any]]:
        """Embed *text* and stream the nearest documents."""
        options = options or VectorStreamOptions()
        return self._stream_results(
            lambda: self.vector_store.search_text(text, top_k=options.top_k, filter=options.filter),
            options,
            "semantic search",
        )

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def process_stream(
        self,
        stream: Iterable[Any],
        handler: Callable[[Any], None],
        error_handler: Optional[ErrorHandler] = None,
    ) -> int:
        """
        Feed every item of *stream* to *handler*.

        Returns:
            Number of items handled successfully
        """
        processed = 0
        for item in stream:
            try:
                handler(item)
                processed += 1
            except Exception as err:
                if error_handler is None:
                    raise StreamProcessorError("Error processing item in stream", cause=err)
                try:
                    error_handler(err, item)
                except Exception as handler_err:
                    raise StreamProcessorError("Error handling error in stream processor", cause=handler_err)
        return processed


_stream_processor: Optional[StreamProcessor] = None


def get_stream_processor() -> StreamProcessor:
    """Shared processor bound to the singleton Redis client."""
    global _stream_processor
    if _stream_processor is None:
        _stream_processor = StreamProcessor()
    return _stream_processor
