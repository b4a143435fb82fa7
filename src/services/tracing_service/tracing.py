"""
Trace records - explicit traces, spans, generations and events.

Each record gets a local id (returned to the caller) and is mirrored to:
    - LangFuse, when a client is configured (``get_langfuse()``)
    - the Postgres ``traces`` / ``spans`` / ``events`` tables, when
      ``observability.persist`` is on

Generations are spans with ``metadata.type == "generation"`` in Postgres
and LangFuse generations upstream.

Tracing never breaks the caller: every sink failure is logged at
WARNING and swallowed, and ids are returned even when no sink is up.
"""

from loguru import logger
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from infrastructure.config import TRACING_PERSIST
from infrastructure.observability import get_langfuse


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _OpenRecord:
    kind: str  # trace | span | generation
    trace_id: str
    started: float
    observation: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class Tracer:
    """
    Emits trace records to LangFuse and (optionally) Postgres.

    Args:
        langfuse: LangFuse client; defaults to ``get_langfuse()`` (may be None)
        persist: Write rows via ``TableCrud`` (default from config)
        crud_factory: ``table_name -> TableCrud`` (default: ``get_crud``)
        clock: Monotonic clock used for durations
    """

    def __init__(
        self,
        langfuse: Any = None,
        persist: Optional[bool] = None,
        crud_factory: Optional[Callable] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._langfuse = langfuse
        self.persist = TRACING_PERSIST if persist is None else persist
        self._crud_factory = crud_factory
        self._clock = clock
        self._open: Dict[str, _OpenRecord] = {}

    @property
    def langfuse(self):
        if self._langfuse is None:
            self._langfuse = get_langfuse()
        return self._langfuse

    def _crud(self, table: str):
        if self._crud_factory is None:
            from services.crud_service.postgres_crud import get_crud
            self._crud_factory = get_crud
        return self._crud_factory(table)

    def _safely(self, what: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception as exc:
            logger.warning("Tracing {} failed (non-critical): {}", what, exc)
            return None

    def _persist(self, table: str, record: Dict[str, Any]) -> None:
        if self.persist:
            self._safely(f"persist {table}", lambda: self._crud(table).create(record))

    def _persist_update(self, table: str, record_id: str, updates: Dict[str, Any]) -> None:
        if self.persist:
            self._safely(f"update {table}", lambda: self._crud(table).update(record_id, updates))

    def _parent(self, trace_id: str):
        record = self._open.get(trace_id)
        return record.observation if record is not None else None

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def create_trace(
        self,
        name: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Open a trace; returns its id."""
        trace_id = str(uuid.uuid4())
        metadata = dict(metadata or {})

        def open_root():
            if self.langfuse is None:
                return None
            root = self.langfuse.start_span(name=name, metadata=metadata)
            root.update_trace(name=name, user_id=user_id, metadata=metadata)
            return root

        observation = self._safely("create_trace", open_root)
        self._open[trace_id] = _OpenRecord("trace", trace_id, self._clock(), observation, metadata)
        self._persist("traces", {
            "id": trace_id,
            "name": name,
            "start_time": _now(),
            "status": "running",
            "user_id": user_id,
            "metadata": metadata,
        })
        logger.debug("Trace '{}' started ({})", name, trace_id)
        return trace_id

    def create_span(
        self,
        trace_id: str,
        name: str,
        input: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Open a span under *trace_id*; returns its id."""
        span_id = str(uuid.uuid4())
        metadata = dict(metadata or {})
        parent = self._parent(trace_id)

        observation = None
        if parent is not None:
            observation = self._safely(
                "create_span", lambda: parent.start_span(name=name, input=input, metadata=metadata)
            )
        self._open[span_id] = _OpenRecord("span", trace_id, self._clock(), observation, metadata)
        self._persist("spans", {
            "id": span_id,
            "trace_id": trace_id,
            "name": name,
            "start_time": _now(),
            "status": "running",
            "metadata": metadata,
        })
        return span_id

    def create_generation(
        self,
        trace_id: str,
        name: str,
        model: str,
        input: Any = None,
        model_parameters: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Open an LLM generation under *trace_id*; end it with :meth:`end_span`."""
        generation_id = str(uuid.uuid4())
        metadata = {**(metadata or {}), "type": "generation", "model": model}
        parent = self._parent(trace_id)

        observation = None
        if parent is not None:
            observation = self._safely(
                "create_generation",
                lambda: parent.start_generation(
                    name=name,
                    model=model,
                    input=input,
                    model_parameters=model_parameters,
                    metadata=metadata,
                ),
            )
        self._open[generation_id] = _OpenRecord("generation", trace_id, self._clock(), observation, metadata)
        self._persist("spans", {
            "id": generation_id,
            "trace_id": trace_id,
            "name": name,
            "start_time": _now(),
            "status": "running",
            "metadata": metadata,
        })
        return generation_id

    def end_span(
        self,
        span_id: str,
        status: str = "success",
        output: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        usage: Optional[Dict[str, int]] = None,
    ) -> Optional[float]:
        """
        Close a span or generation.

        Returns:
            Duration in milliseconds, or None for an unknown id
        """
        record = self._open.pop(span_id, None)
        if record is None or record.kind == "trace":
            if record is not None:
                self._open[span_id] = record
            logger.warning("end_span: no open span '{}'", span_id)
            return None
        duration_ms = (self._clock() - record.started) * 1000
        merged = {**record.metadata, **(metadata or {}), "duration_ms": duration_ms}
        if usage:
            merged["usage"] = usage

        if record.observation is not None:
            self._safely("end_span", lambda: self._close(record, status, output, merged, usage))
        self._persist_update("spans", span_id, {
            "end_time": _now(),
            "duration": duration_ms,
            "status": status,
            "metadata": merged,
        })
        return duration_ms

    def end_trace(self, trace_id: str, status: str = "success", output: Any = None) -> Optional[float]:
        """Close a trace; returns its duration in milliseconds."""
        record = self._open.pop(trace_id, None)
        if record is None or record.kind != "trace":
            if record is not None:
                self._open[trace_id] = record
            logger.warning("end_trace: no open trace '{}'", trace_id)
            return None
        duration_ms = (self._clock() - record.started) * 1000

        if record.observation is not None:
            self._safely("end_trace", lambda: self._close(record, status, output, record.metadata, None))
        self._persist_update("traces", trace_id, {
            "end_time": _now(),
            "duration": duration_ms,
            "status": status,
        })
        return duration_ms

    @staticmethod
    def _close(record: _OpenRecord, status: str, output: Any, metadata: Dict[str, Any], usage) -> None:
        kwargs: Dict[str, Any] = {"output": output, "metadata": metadata}
        if status == "error":
            kwargs["level"] = "ERROR"
            kwargs["status_message"] = str(output) if output is not None else "error"
        if usage and record.kind == "generation":
            kwargs["usage_details"] = usage
        record.observation.update(**kwargs)
        record.observation.end()

    def log_event(self, trace_id: str, name: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Record a point-in-time event on *trace_id*; returns its id."""
        event_id = str(uuid.uuid4())
        metadata = dict(metadata or {})
        parent = self._parent(trace_id)
        if parent is not None:
            self._safely("log_event", lambda: parent.create_event(name=name, metadata=metadata))
        self._persist("events", {
            "id": event_id,
            "trace_id": trace_id,
            "name": name,
            "timestamp": _now(),
            "metadata": metadata,
        })
        logger.debug("Event '{}' on trace {}", name, trace_id)
        return event_id

    def open_records(self) -> Dict[str, str]:
        """Open record id → kind."""
        return {record_id: r.kind for record_id, r in self._open.items()}

    def flush(self) -> bool:
        """Send buffered LangFuse events; False when there is no client or it failed."""
        if self.langfuse is None:
            return False

        def push():
            self.langfuse.flush()
            return True

        return bool(self._safely("flush", push))


_tracer: Optional[Tracer] = None


def get_tracer() -> Tracer:
    """Shared tracer bound to the LangFuse singleton."""
    global _tracer
    if _tracer is None:
        _tracer = Tracer()
    return _tracer


# Module-level helpers over the shared tracer


def create_trace(name: str, user_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> str:
    return get_tracer().create_trace(name, user_id=user_id, metadata=metadata)


def create_span(trace_id: str, name: str, input: Any = None, metadata: Optional[Dict[str, Any]] = None) -> str:
    return get_tracer().create_span(trace_id, name, input=input, metadata=metadata)


def create_generation(trace_id: str, name: str, model: str, **kwargs: Any) -> str:
    return get_tracer().create_generation(trace_id, name, model, **kwargs)


def end_span(span_id: str, status: str = "success", output: Any = None, **kwargs: Any) -> Optional[float]:
    return get_tracer().end_span(span_id, status=status, output=output, **kwargs)


def end_trace(trace_id: str, status: str = "success", output: Any = None) -> Optional[float]:
    return get_tracer().end_trace(trace_id, status=status, output=output)


def log_event(trace_id: str, name: str, metadata: Optional[Dict[str, Any]] = None) -> str:
    return get_tracer().log_event(trace_id, name, metadata=metadata)
