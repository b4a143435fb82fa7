"""
Memory schemas and interfaces.

Dataclasses for threads, messages, vector documents and the generic
entities persisted in the Redis-backed store, plus the option objects
used to list / filter them and the Protocols for pluggable embedders.

Every record exposes ``validate()``, which raises
:class:`infrastructure.errors.ValidationError` listing every bad field.
Stores call it before anything is written.
"""

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Literal, Optional, Protocol, Tuple, Type

from infrastructure.errors import ValidationError

ROLES: Tuple[str, ...] = ("user", "assistant", "system", "tool")
EXECUTION_STATUSES: Tuple[str, ...] = ("pending", "running", "completed", "failed")
LOG_LEVELS: Tuple[str, ...] = ("info", "warn", "error", "debug")
FILTER_OPERATORS: Tuple[str, ...] = ("eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike", "in", "is")

VectorMetadata = Dict[str, Any]


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with fixed microsecond precision (sorts lexically)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# ═══════════════════════════════════════════════════════════════════════════════
# Vectors
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class VectorDocument:
    """
    A dense vector plus payload, as upserted into the vector index.

    ``sparse_vector`` is ``{"indices": [...], "values": [...]}`` for
    hybrid-capable indexes.
    """
    id: str
    vector: List[float]
    metadata: VectorMetadata = field(default_factory=dict)
    sparse_vector: Optional[Dict[str, List[float]]] = None

    def validate(self) -> "VectorDocument":
        errors = []
        if not isinstance(self.id, str) or not self.id:
            errors.append("id must be a non-empty string")
        if not isinstance(self.vector, (list, tuple)) or not self.vector:
            errors.append("vector must be a non-empty list of numbers")
        elif not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in self.vector):
            errors.append("vector must contain only numbers")
        if self.metadata is not None and not isinstance(self.metadata, dict):
            errors.append("metadata must be a dict")
        if self.sparse_vector is not None:
            indices = self.sparse_vector.get("indices") if isinstance(self.sparse_vector, dict) else None
            values = self.sparse_vector.get("values") if isinstance(self.sparse_vector, dict) else None
            if not isinstance(indices, list) or not isinstance(values, list):
                errors.append("sparse_vector needs 'indices' and 'values' lists")
            elif len(indices) != len(values):
                errors.append("sparse_vector indices and values differ in length")
        if errors:
            raise ValidationError("Invalid VectorDocument", errors)
        return self

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "VectorDocument":
        """Create from dictionary (accepts ``sparseVector`` too)."""
        return cls(
            id=data.get("id"),
            vector=data.get("vector"),
            metadata=data.get("metadata") or {},
            sparse_vector=data.get("sparse_vector", data.get("sparseVector")),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Threads & Messages
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class Thread:
    """A conversation thread stored as ``thread:{id}``."""
    id: str
    created_at: str
    updated_at: str
    name: Optional[str] = None
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "Thread":
        errors = []
        for name in ("id", "created_at", "updated_at"):
            if not isinstance(getattr(self, name), str) or not getattr(self, name):
                errors.append(f"{name} is required")
        for name in ("name", "user_id", "agent_id"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                errors.append(f"{name} must be a string")
        if self.metadata is not None and not isinstance(self.metadata, dict):
            errors.append("metadata must be a dict")
        if errors:
            raise ValidationError("Invalid Thread", errors)
        return self

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "Thread":
        """Create from dictionary."""
        known = _known(cls, data)
        known.setdefault("metadata", {})
        if known["metadata"] is None:
            known["metadata"] = {}
        return cls(**known)


@dataclass
class Message:
    """A single message in a thread, stored as ``message:{id}``."""
    id: str
    thread_id: str
    role: Literal["user", "assistant", "system", "tool"]
    content: str
    created_at: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None  # tool name for tool calls/results

    def validate(self) -> "Message":
        errors = []
        for name in ("id", "thread_id", "created_at"):
            if not isinstance(getattr(self, name), str) or not getattr(self, name):
                errors.append(f"{name} is required")
        if self.role not in ROLES:
            errors.append(f"role must be one of {', '.join(ROLES)}")
        if not isinstance(self.content, str):
            errors.append("content must be a string")
        if self.metadata is not None and not isinstance(self.metadata, dict):
            errors.append("metadata must be a dict")
        if errors:
            raise ValidationError("Invalid Message", errors)
        return self

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "Message":
        """Create from dictionary."""
        known = _known(cls, data)
        if known.get("metadata") is None:
            known["metadata"] = {}
        return cls(**known)


# ═══════════════════════════════════════════════════════════════════════════════
# Generic entities
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class EntityBase:
    """
    Common shape of every ``{type}:{id}`` entity.

    Subclasses declare extra fields with defaults and describe their
    constraints through the ``_required`` / ``_choices`` / ``_types``
    class variables; :meth:`validate` enforces all three.
    """
    id: str = ""
    type: str = ""
    created_at: str = ""
    updated_at: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    _required: ClassVar[Tuple[str, ...]] = ("id", "type", "created_at", "updated_at")
    _choices: ClassVar[Dict[str, Tuple[str, ...]]] = {}
    _types: ClassVar[Dict[str, Any]] = {"metadata": dict}

    def validate(self) -> "EntityBase":
        errors = []
        for name in self._required:
            value = getattr(self, name)
            if value is None or value == "":
                errors.append(f"{name} is required")
        for name, choices in self._choices.items():
            value = getattr(self, name)
            if value is not None and value not in choices:
                errors.append(f"{name} must be one of {', '.join(choices)}")
        for name, expected in self._types.items():
            value = getattr(self, name)
            if value is not None and not isinstance(value, expected):
                errors.append(f"{name} has wrong type {type(value).__name__}")
        if errors:
            raise ValidationError(f"Invalid {type(self).__name__}", errors)
        return self

    def to_dict(self) -> Dict:
        """Convert to dictionary, dropping unset optional fields."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict) -> "EntityBase":
        """Create from dictionary; unknown keys are dropped."""
        known = _known(cls, data)
        if known.get("metadata") is None:
            known["metadata"] = {}
        return cls(**known)


@dataclass
class ThreadEntity(EntityBase):
    name: Optional[str] = None
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    messages: Optional[List[str]] = None  # message ids

    _types: ClassVar[Dict[str, Any]] = {
        "metadata": dict, "name": str, "user_id": str, "agent_id": str, "messages": list,
    }


@dataclass
class MessageEntity(EntityBase):
    thread_id: str = ""
    role: str = ""
    content: str = ""
    name: Optional[str] = None

    _required: ClassVar[Tuple[str, ...]] = EntityBase._required + ("thread_id", "role")
    _choices: ClassVar[Dict[str, Tuple[str, ...]]] = {"role": ROLES}
    _types: ClassVar[Dict[str, Any]] = {"metadata": dict, "content": str, "name": str}


@dataclass
class AgentStateEntity(EntityBase):
    thread_id: str = ""
    agent_id: str = ""
    state: Dict[str, Any] = field(default_factory=dict)

    _required: ClassVar[Tuple[str, ...]] = EntityBase._required + ("thread_id", "agent_id", "state")
    _types: ClassVar[Dict[str, Any]] = {"metadata": dict, "state": dict}


@dataclass
class ToolExecutionEntity(EntityBase):
    tool_id: str = ""
    thread_id: Optional[str] = None
    agent_id: Optional[str] = None
    status: str = "pending"
    result: Any = None
    error: Optional[str] = None

    _required: ClassVar[Tuple[str, ...]] = EntityBase._required + ("tool_id", "status")
    _choices: ClassVar[Dict[str, Tuple[str, ...]]] = {"status": EXECUTION_STATUSES}
    _types: ClassVar[Dict[str, Any]] = {"metadata": dict, "error": str}


@dataclass
class WorkflowNodeEntity(EntityBase):
    workflow_id: str = ""
    node_type: str = ""
    status: str = "pending"
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    tags: Optional[List[str]] = None
    commands: Optional[List[str]] = None
    relationships: Optional[List[str]] = None

    _required: ClassVar[Tuple[str, ...]] = EntityBase._required + ("workflow_id", "node_type", "status")
    _choices: ClassVar[Dict[str, Tuple[str, ...]]] = {"status": EXECUTION_STATUSES}
    _types: ClassVar[Dict[str, Any]] = {
        "metadata": dict, "tags": list, "commands": list, "relationships": list,
    }


@dataclass
class LogEntryEntity(EntityBase):
    level: str = "info"
    message: str = ""

    _required: ClassVar[Tuple[str, ...]] = EntityBase._required + ("level", "message")
    _choices: ClassVar[Dict[str, Tuple[str, ...]]] = {"level": LOG_LEVELS}
    _types: ClassVar[Dict[str, Any]] = {"metadata": dict, "message": str}


ENTITY_SCHEMAS: Dict[str, Type[EntityBase]] = {
    "thread": ThreadEntity,
    "message": MessageEntity,
    "agent_state": AgentStateEntity,
    "tool_execution": ToolExecutionEntity,
    "workflow_node": WorkflowNodeEntity,
    "log_entry": LogEntryEntity,
}


def validate_entity(entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate *data* against the schema registered for *entity_type*.

    Registered types are normalised through their dataclass (unknown keys
    dropped). Unregistered types only need the base fields and keep every
    key they were given.

    Returns:
        The validated record as a plain dict.

    Raises:
        ValidationError: listing every failing field.
    """
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid {entity_type} entity", ["record must be a dict"])
    schema = ENTITY_SCHEMAS.get(entity_type)
    if schema is None:
        EntityBase.from_dict(data).validate()
        return dict(data)
    return schema.from_dict(data).validate().to_dict()


# ═══════════════════════════════════════════════════════════════════════════════
# Query options
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class QueryFilter:
    """One ``field <operator> value`` predicate."""
    field: str
    operator: str
    value: Any = None

    def validate(self) -> "QueryFilter":
        if self.operator not in FILTER_OPERATORS:
            raise ValidationError(
                "Invalid filter",
                [f"unsupported operator '{self.operator}' on '{self.field}'"],
            )
        if self.operator == "in" and not isinstance(self.value, (list, tuple, set)):
            raise ValidationError("Invalid filter", [f"'in' on '{self.field}' needs a list value"])
        return self


@dataclass
class ListEntitiesOptions:
    """Paging, filtering, ordering and projection for list calls."""
    limit: Optional[int] = None
    offset: int = 0
    filters: List[QueryFilter] = field(default_factory=list)
    sort_by: Optional[str] = None
    sort_order: Literal["asc", "desc"] = "asc"
    select: Optional[List[str]] = None

    def cache_key(self) -> Tuple:
        """Hashable identity used by the query cache."""
        return (
            self.limit,
            self.offset,
            tuple((f.field, f.operator, repr(f.value)) for f in self.filters),
            self.sort_by,
            self.sort_order,
            tuple(self.select) if self.select else None,
        )


@dataclass
class LogQueryOptions:
    """Filters for reading the Redis log stream."""
    level: Optional[str] = None
    start_time: Optional[str] = None  # ISO 8601
    end_time: Optional[str] = None    # ISO 8601
    limit: int = 100
    offset: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# Protocols
# ═══════════════════════════════════════════════════════════════════════════════


class Embedder(Protocol):
    """Anything LangChain-shaped that can embed text."""

    def embed_query(self, text: str) -> List[float]:
        ...

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        ...
