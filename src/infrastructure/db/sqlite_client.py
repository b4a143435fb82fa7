"""
SQLite client - embedded relational memory (threads, messages, agent state, apps).

Provides:
- Singleton engine backed by SQLITE_URL (file or ``sqlite://`` in-memory)
- Session factory
- SQLAlchemy table definitions for the embedded store

Timestamps are ISO-8601 strings and JSON payloads are TEXT columns, so the
file stays readable by any SQLite tooling (edge replicas, CLI inspection).
"""

from loguru import logger
from sqlalchemy import (
    create_engine,
    event,
    Column,
    Integer,
    LargeBinary,
    MetaData,
    Table,
    Text,
    text,
)
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from typing import Optional
from pathlib import Path
import os

from infrastructure.config import SQLITE_URL

_engine: Optional[object] = None
_SessionLocal: Optional[object] = None

sqlite_metadata = MetaData()

# ============================================================================
# MEMORY TABLES
# ============================================================================

memory_threads_table = Table(
    "memory_threads",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("agent_id", Text, index=True),
    Column("network_id", Text),
    Column("name", Text, nullable=False),
    Column("summary", Text),
    Column("metadata", Text),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

messages_table = Table(
    "messages",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("memory_thread_id", Text, nullable=False, index=True),
    Column("role", Text, nullable=False),
    Column("content", Text, nullable=False),
    Column("tool_call_id", Text),
    Column("tool_name", Text),
    Column("token_count", Integer),
    Column("embedding_id", Text),
    Column("metadata", Text),
    Column("created_at", Text, nullable=False),
)

embeddings_table = Table(
    "embeddings",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("vector", LargeBinary, nullable=False),  # float32 bytes
    Column("model", Text),
    Column("dimensions", Integer),
    Column("created_at", Text, nullable=False),
)

# Composite primary key (memory_thread_id, agent_id)
agent_states_table = Table(
    "agent_states",
    sqlite_metadata,
    Column("memory_thread_id", Text, primary_key=True),
    Column("agent_id", Text, primary_key=True),
    Column("state_data", Text, nullable=False),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

# ============================================================================
# WORKFLOW TABLES
# ============================================================================

sqlite_workflows_table = Table(
    "workflows",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("name", Text, nullable=False),
    Column("description", Text),
    Column("current_step_index", Integer, nullable=False, server_default=text("0")),
    Column("status", Text, nullable=False),
    Column("metadata", Text),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

sqlite_workflow_steps_table = Table(
    "workflow_steps",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("workflow_id", Text, nullable=False, index=True),
    Column("agent_id", Text, nullable=False),
    Column("input", Text),
    Column("thread_id", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("result", Text),
    Column("error", Text),
    Column("metadata", Text),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

gql_cache_table = Table(
    "gql_cache",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("query", Text, nullable=False),
    Column("variables", Text),
    Column("response", Text, nullable=False),
    Column("created_at", Text, nullable=False),
)

# ============================================================================
# APP BUILDER TABLES
# ============================================================================

apps_table = Table(
    "apps",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("name", Text, nullable=False),
    Column("description", Text),
    Column("type", Text, nullable=False),
    Column("code", Text, nullable=False),
    Column("parameters_schema", Text),
    Column("metadata", Text),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

users_table = Table(
    "users",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("email", Text, nullable=False, unique=True),
    Column("name", Text),
    Column("avatar_url", Text),
    Column("role", Text, nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

integrations_table = Table(
    "integrations",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("user_id", Text, nullable=False, index=True),
    Column("provider", Text, nullable=False),
    Column("name", Text),
    Column("config", Text),
    Column("credentials", Text),
    Column("status", Text, nullable=False),
    Column("last_synced_at", Text),
    Column("metadata", Text),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

app_code_blocks_table = Table(
    "app_code_blocks",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("app_id", Text, nullable=False, index=True),
    Column("language", Text, nullable=False),
    Column("code", Text, nullable=False),
    Column("description", Text),
    Column("order", Integer, nullable=False),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

files_table = Table(
    "files",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("app_id", Text, nullable=False, index=True),
    Column("parent_id", Text),
    Column("name", Text, nullable=False),
    Column("type", Text, nullable=False),
    Column("content", Text),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)

terminal_sessions_table = Table(
    "terminal_sessions",
    sqlite_metadata,
    Column("id", Text, primary_key=True),
    Column("app_id", Text, nullable=False, index=True),
    Column("user_id", Text, nullable=False),
    Column("command", Text, nullable=False),
    Column("output", Text),
    Column("status", Text, nullable=False),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)


def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_sqlite_engine(url: str):
    """Create an engine for *url*; in-memory URLs share one connection."""
    if url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_path = url.replace("sqlite:///", "", 1)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _enable_foreign_keys)
    return engine


def get_sqlite_engine():
    """
    Get SQLAlchemy engine for the embedded SQLite store.

    Returns:
        SQLAlchemy engine
    """
    global _engine
    if _engine is None:
        url = os.getenv("SQLITE_URL", SQLITE_URL)
        _engine = build_sqlite_engine(url)
        logger.info("SQLite engine created ({})", url)
    return _engine


def get_sqlite_session():
    """
    Get SQLAlchemy session for the embedded store.

    Returns:
        SQLAlchemy session
    """
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=get_sqlite_engine(), autocommit=False, autoflush=False)
    return _SessionLocal()


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def create_sqlite_tables(engine=None):
    """Create embedded tables if they don't exist."""
    engine = engine or get_sqlite_engine()
    sqlite_metadata.create_all(bind=engine)
    logger.info("SQLite tables created/verified")


def check_sqlite() -> bool:
    """
    Test SQLite connection.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with get_sqlite_engine().connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1
    except Exception as e:
        logger.error("SQLite connection test: FAILED - {}", e)
        return False
