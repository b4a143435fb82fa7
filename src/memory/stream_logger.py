"""
Redis Streams logger - durable, per-service operational log.

Each service writes to ``log_stream:{service}`` with XADD, capped at an
approximate MAXLEN so the stream never grows unbounded. Writing a log
entry never raises: failures are reported through loguru and the call
returns None.
"""

from loguru import logger
import json
import os
from typing import Any, Dict, List, Optional

from infrastructure.config import LOG_STREAM_DEBUG, LOG_STREAM_MAX_LENGTH
from infrastructure.db.redis_client import get_redis_client
from infrastructure.errors import RedisStoreError
from memory.schemas import LogQueryOptions, utc_now_iso

LOG_STREAM_PREFIX = "log_stream:"
LEVELS = ("INFO", "WARN", "ERROR", "DEBUG")


def stream_key(service: str) -> str:
    return f"{LOG_STREAM_PREFIX}{service.lower()}"


def _debug_enabled() -> bool:
    return bool(LOG_STREAM_DEBUG) or os.getenv("LOG_LEVEL", "").upper() == "DEBUG"


class StreamLogger:
    """
    Append-only log entries on Redis Streams.

    Args:
        client: redis-py client (defaults to the shared singleton).
        max_length: Approximate MAXLEN per stream.
        debug: Write DEBUG entries (default from config / LOG_LEVEL).
    """

    def __init__(self, client=None, max_length: int = LOG_STREAM_MAX_LENGTH, debug: Optional[bool] = None):
        self._client = client
        self.max_length = max_length
        self.debug_enabled = _debug_enabled() if debug is None else debug

    @property
    def client(self):
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    def log(self, level: str, service: str, message: str, details: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """
        Append one entry.

        Returns:
            The stream entry id, or None when skipped / failed
        """
        level = level.upper()
        if level == "WARNING":
            level = "WARN"
        if level not in LEVELS:
            logger.warning("Unknown stream log level '{}', using INFO", level)
            level = "INFO"
        if level == "DEBUG" and not self.debug_enabled:
            return None

        fields = {
            "timestamp": utc_now_iso(),
            "level": level,
            "service": service,
            "message": message,
        }
        if details:
            fields["details"] = json.dumps(details, default=str)

        try:
            return self.client.xadd(stream_key(service), fields, maxlen=self.max_length, approximate=True)
        except Exception as err:
            logger.error("Failed to log to stream {}: {}", stream_key(service), err)
            return None

    def info(self, service: str, message: str, details: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.log("INFO", service, message, details)

    def warn(self, service: str, message: str, details: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.log("WARN", service, message, details)

    def error(
        self,
        service: str,
        message: str,
        error: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """ERROR entry; *error* contributes ``error_name`` / ``error_message``."""
        combined = dict(details or {})
        if error is not None:
            combined["error_name"] = type(error).__name__
            combined["error_message"] = str(error)
        return self.log("ERROR", service, message, combined or None)

    def debug(self, service: str, message: str, details: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.log("DEBUG", service, message, details)

    def get_logs(self, service: str, count: int = 100, start: str = "-", end: str = "+") -> List[Dict[str, Any]]:
        """
        Newest-first entries between stream ids *start* and *end*.

        Raises:
            RedisStoreError: If the stream cannot be read
        """
        try:
            entries = self.client.xrevrange(stream_key(service), max=end, min=start, count=count)
        except Exception as err:
            logger.error("Failed to read logs for {}: {}", service, err)
            raise RedisStoreError(f"Failed to retrieve logs for service {service}", cause=err)

        logs = []
        for entry_id, fields in entries:
            record: Dict[str, Any] = {"id": entry_id}
            for name, value in fields.items():
                if isinstance(value, str) and value[:1] in ("{", "["):
                    try:
                        value = json.loads(value)
                    except ValueError:
                        pass
                record[name] = value
            logs.append(record)
        return logs

    def query_logs(self, service: str, options: Optional[LogQueryOptions] = None) -> List[Dict[str, Any]]:
        """Filter the stream by level and ISO time window, then page."""
        options = options or LogQueryOptions()
        logs = self.get_logs(service, count=LOG_STREAM_MAX_LENGTH)
        if options.level:
            wanted = options.level.upper()
            logs = [entry for entry in logs if entry.get("level") == wanted]
        if options.start_time:
            logs = [entry for entry in logs if entry.get("timestamp", "") >= options.start_time]
        if options.end_time:
            logs = [entry for entry in logs if entry.get("timestamp", "") <= options.end_time]
        return logs[options.offset: options.offset + options.limit]

    def delete_logs(self, service: str) -> bool:
        """Drop the whole stream of *service*."""
        try:
            return bool(self.client.delete(stream_key(service)))
        except Exception as err:
            logger.error("Failed to delete logs for {}: {}", service, err)
            raise RedisStoreError(f"Failed to delete logs for service {service}", cause=err)


_stream_logger: Optional[StreamLogger] = None


def get_stream_logger() -> StreamLogger:
    """Shared logger bound to the singleton Redis client."""
    global _stream_logger
    if _stream_logger is None:
        _stream_logger = StreamLogger()
    return _stream_logger
