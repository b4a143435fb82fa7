"""
Observability - the shared LangFuse client.

    get_langfuse()   → singleton Langfuse client, or None when disabled / unconfigured
    set_langfuse()   → inject a client (``None`` resets)
    flush()          → push buffered events; call before a process exits

Trace, span, generation and event records are built by
``services.tracing_service.tracing``; this module only owns the client.

Configuration:
    .env: LANGFUSE_SECRET_KEY, LANGFUSE_PUBLIC_KEY,
          LANGFUSE_BASE_URL (default: https://us.cloud.langfuse.com)
    config/param.yaml: observability.enabled
"""

from loguru import logger
import os

from infrastructure.config import OBSERVABILITY_ENABLED

_langfuse_client = None
_initialised = False


def get_langfuse():
    """
    Return a singleton Langfuse client.

    Returns None if observability is disabled or keys are missing.
    """
    global _langfuse_client, _initialised
    if _initialised:
        return _langfuse_client

    _initialised = True

    if not OBSERVABILITY_ENABLED:
        logger.info("Observability disabled via config - LangFuse not initialised.")
        return None

    secret_key = os.getenv("LANGFUSE_SECRET_KEY")
    public_key = os.getenv("LANGFUSE_PUBLIC_KEY")
    base_url = os.getenv("LANGFUSE_BASE_URL", "https://us.cloud.langfuse.com")

    if not secret_key or not public_key:
        logger.warning("LangFuse keys not set (LANGFUSE_SECRET_KEY / LANGFUSE_PUBLIC_KEY); traces stay local.")
        return None

    try:
        from langfuse import Langfuse

        _langfuse_client = Langfuse(secret_key=secret_key, public_key=public_key, host=base_url)
        logger.info("LangFuse client initialised (host={})", base_url)
    except Exception as exc:
        logger.error("Failed to initialise LangFuse: {}", exc)
        _langfuse_client = None
    return _langfuse_client


def set_langfuse(client) -> None:
    """Inject a pre-built client; ``None`` forces re-initialisation from env."""
    global _langfuse_client, _initialised
    _langfuse_client = client
    _initialised = client is not None


def flush() -> bool:
    """
    Send buffered LangFuse events.

    Returns:
        True when a client was flushed, False when there is none or it failed
    """
    client = get_langfuse()
    if client is None:
        return False
    try:
        client.flush()
        logger.debug("LangFuse flushed.")
        return True
    except Exception as exc:
        logger.warning("LangFuse flush failed: {}", exc)
        return False
