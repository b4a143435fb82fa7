"""
Error taxonomy for the data layer.

Each backend raises its own subclass so callers can tell a Redis outage
from a bad record. ``cause`` keeps the underlying client exception.
"""

from typing import Optional


class DataLayerError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    def __str__(self) -> str:
        base = super().__str__()
        if self.cause is not None:
            return f"{base}: {self.cause}"
        return base


class ValidationError(DataLayerError, ValueError):
    """A record failed schema validation before persistence."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        if self.errors:
            return f"{self.args[0]} ({'; '.join(self.errors)})"
        return self.args[0]


class RedisClientError(DataLayerError):
    """Redis client could not be created or is misconfigured."""


class RedisStoreError(DataLayerError):
    """A Redis entity-store operation failed."""


class AgentStateStoreError(DataLayerError):
    """An agent-state operation failed."""


class VectorStoreError(DataLayerError):
    """A vector index operation failed."""


class TableAdapterError(DataLayerError):
    """The Redis/Supabase table adapter could not serve a request."""


class DatabaseError(DataLayerError):
    """A relational CRUD operation failed."""


class StreamProcessorError(DataLayerError):
    """A collection stream could not be read."""


class TracingError(DataLayerError):
    """A traced provider could not be constructed."""
