"""Shared fixtures: fake Redis, in-memory SQL engines, in-memory Qdrant, fake embedders."""
import itertools
import sys
import zlib
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import fakeredis
from qdrant_client import QdrantClient
from sqlalchemy.orm import sessionmaker

from infrastructure.db.sqlite_client import build_sqlite_engine, create_sqlite_tables


class HashingEmbedder:
    """Deterministic bag-of-words embedder (crc32 bucket per token)."""

    def __init__(self, dim: int = 64):
        self.dim = dim
        self.calls = 0

    def embed_query(self, text):
        self.calls += 1
        vector = [0.0] * self.dim
        for token in text.lower().split():
            vector[zlib.crc32(token.encode()) % (self.dim - 1)] += 1.0
        vector[self.dim - 1] = 0.01
        return vector

    def embed_documents(self, texts):
        return [self.embed_query(t) for t in texts]


class FailingEmbedder:
    def embed_query(self, text):
        raise RuntimeError("embedding service down")

    def embed_documents(self, texts):
        raise RuntimeError("embedding service down")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer .env settings from switching on real backends."""
    for name in ("SUPABASE_URL", "SUPABASE_KEY", "USE_REDIS_ADAPTER", "MEMORY_PROVIDER", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def down_redis():
    """A client whose server refuses every command (ConnectionError)."""
    server = fakeredis.FakeServer()
    server.connected = False
    return fakeredis.FakeRedis(server=server, decode_responses=True)


@pytest.fixture
def tick(monkeypatch):
    """Strictly increasing ``now_ms`` for the Redis stores (stable recency order)."""
    counter = itertools.count(1_700_000_000_000)

    def install(*modules):
        for module in modules:
            monkeypatch.setattr(module, "now_ms", lambda: next(counter))
    return install


@pytest.fixture
def iso_clock(monkeypatch):
    """Strictly increasing ISO timestamps for modules that call ``utc_now_iso``."""
    counter = itertools.count(1)

    def install(*modules):
        for module in modules:
            monkeypatch.setattr(
                module, "utc_now_iso",
                lambda: f"2026-01-01T00:00:00.{next(counter):06d}+00:00",
            )
    return install


@pytest.fixture
def sqlite_session_factory():
    engine = build_sqlite_engine("sqlite://")
    create_sqlite_tables(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def sql_session_factory():
    """The Postgres table set created on an in-memory SQLite engine."""
    from infrastructure.db.sql_client import create_tables

    engine = build_sqlite_engine("sqlite://")
    create_tables(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def qdrant():
    client = QdrantClient(location=":memory:")
    yield client
    client.close()


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def failing_embedder():
    return FailingEmbedder()


@pytest.fixture
def log_records():
    """Rendered loguru messages (``LEVEL|message``) emitted during the test."""
    from loguru import logger

    records = []
    handler_id = logger.add(records.append, format="{level}|{message}", level="DEBUG")
    yield records
    logger.remove(handler_id)
