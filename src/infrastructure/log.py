"""
Centralised logging configuration - powered by **loguru**.

Usage (any module)::

    from loguru import logger
    logger.info("Thread {} created", thread_id)

Usage (entry-points - workers, notebooks, CLI)::

    from infrastructure.log import setup_logging
    setup_logging()                          # INFO, stderr
    setup_logging("DEBUG")                   # more verbose
    setup_logging(stream_service="memory")   # also mirror WARNING+ into Redis Streams

Design:
    - ``loguru`` replaces stdlib ``logging`` everywhere.
    - One ``setup_logging()`` call at the entry-point configures format,
      level, and optionally intercepts stdlib ``logging`` so SQLAlchemy,
      httpx, qdrant-client and redis-py records route through loguru.
    - ``redis_stream_sink`` turns the Redis stream logger into a loguru
      sink, giving each service a durable ``log_stream:{service}``.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable, Optional

from loguru import logger

#  Format strings

_FMT_FULL = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

_FMT_NOTEBOOK = (
    "<level>{level.icon}</level> "
    "<level>{message}</level>"
)

#  Intercept handler

class _InterceptHandler(logging.Handler):
    """Route stdlib ``logging`` records into **loguru**.

    Attach this handler to the root logger so that libraries which use
    ``logging.getLogger(…)`` (SQLAlchemy, httpx, LangChain, etc.)
    automatically emit through loguru's sinks.
    """

    def emit(self, record: logging.LogRecord) -> None:
        # Map stdlib level to loguru level
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller frame that originated the log call
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


#  Redis stream sink

_LOGURU_TO_STREAM = {
    "TRACE": "DEBUG",
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "INFO",
    "WARNING": "WARN",
    "ERROR": "ERROR",
    "CRITICAL": "ERROR",
}

def redis_stream_sink(service: str, stream_logger=None) -> Callable:
    """
    Build a loguru sink that appends records to ``log_stream:{service}``.

    Args:
        service: Stream name suffix.
        stream_logger: A :class:`memory.stream_logger.StreamLogger`
                       (defaults to the shared one).
    """
    def sink(message) -> None:
        from memory.stream_logger import get_stream_logger

        record = message.record
        target = stream_logger or get_stream_logger()
        details = {
            "module": record["name"],
            "function": record["function"],
            "line": record["line"],
        }
        if record["exception"] is not None:
            details["exception"] = repr(record["exception"].value)
        target.log(
            _LOGURU_TO_STREAM.get(record["level"].name, "INFO"),
            service,
            record["message"],
            details,
        )

    return sink

#  Public API

def setup_logging(
    level: str = "INFO",
    *,
    for_notebook: bool = False,
    intercept_stdlib: bool = True,
    log_file: Optional[str] = None,
    stream_service: Optional[str] = None,
    stream_level: str = "WARNING",
) -> None:
    """
    Configure loguru for the current process.

    Call this **once** at your entry-point.

    Args:
        level: Minimum log level (``DEBUG``, ``INFO``, ``WARNING``, …).
        for_notebook: If ``True``, use a minimal format for Jupyter cells.
        intercept_stdlib: Route stdlib ``logging`` through loguru.
        log_file: Optional path to a rotating log file.
        stream_service: When set, mirror records into the Redis stream
                        ``log_stream:{stream_service}``.
        stream_level: Minimum level mirrored into the Redis stream.
    """
    # Remove default loguru handler (id 0)
    logger.remove()

    fmt = _FMT_NOTEBOOK if for_notebook else _FMT_FULL

    logger.add(
        sys.stdout if for_notebook else sys.stderr,
        format=fmt,
        level=level.upper(),
        colorize=True,
        backtrace=True,
        diagnose=False,
    )

    if log_file:
        logger.add(
            log_file,
            format=_FMT_FULL,
            level=level.upper(),
            rotation="10 MB",
            retention="7 days",
            compression="gz",
        )

    if stream_service:
        # the stream logger reports its own failures via loguru; keep them out of the sink
        logger.add(
            redis_stream_sink(stream_service),
            level=stream_level.upper(),
            filter=lambda record: record["name"] != "memory.stream_logger",
        )

    if intercept_stdlib:
        logging.basicConfig(
            handlers=[_InterceptHandler()], level=0, force=True)

    logger.debug("Loguru configured - level={}, notebook={}, stream={}",
                 level, for_notebook, stream_service)
