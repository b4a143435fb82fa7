"""
Supabase client — REST API access to the backup relational store.

Provides:
- ``get_supabase_client()``  — Supabase REST client (PostgREST tables, RPC)
- ``set_supabase_client()``  — inject a pre-built client
- ``check_supabase()``       — lightweight reachability probe

The canonical SQLAlchemy engine/session lives in ``sql_client.py``; this
module is only the REST side used by the Redis-first table adapter when
it falls back.
"""

import os
from loguru import logger
from typing import Optional
from supabase import create_client, Client

# ---------------------------------------------------------------------------
# Supabase REST client
# ---------------------------------------------------------------------------

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """
    Get or create the Supabase REST client.

    Returns:
        Supabase Client instance
    """
    global _supabase_client

    if _supabase_client is not None:
        return _supabase_client

    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_KEY")

    if not supabase_url or not supabase_key:
        raise ValueError(
            "SUPABASE_URL and SUPABASE_KEY must be set in .env file"
        )

    _supabase_client = create_client(supabase_url, supabase_key)
    logger.info("Supabase client created: {}", supabase_url)

    return _supabase_client


def set_supabase_client(client: Optional[Client]) -> None:
    """Inject a pre-built client (``None`` resets the singleton)."""
    global _supabase_client
    _supabase_client = client


def check_supabase(table: str = "settings") -> bool:
    """Issue a 1-row select against *table*; True if the REST API answered."""
    try:
        get_supabase_client().table(table).select("*").limit(1).execute()
        logger.info(" Supabase REST check: SUCCESS")
        return True
    except Exception as e:
        logger.error("Supabase REST check: FAILED - {}", e)
        return False
