"""Tests for the shared LangFuse client and flush."""
from unittest.mock import MagicMock

import pytest

from infrastructure import observability
from infrastructure.observability import flush, get_langfuse, set_langfuse


@pytest.fixture(autouse=True)
def _fresh_client(monkeypatch):
    for name in ("LANGFUSE_SECRET_KEY", "LANGFUSE_PUBLIC_KEY"):
        monkeypatch.delenv(name, raising=False)
    set_langfuse(None)
    yield
    set_langfuse(None)


class TestGetLangfuse:

    def test_missing_keys(self):
        assert get_langfuse() is None
        assert flush() is False

    def test_disabled_in_config(self, monkeypatch):
        monkeypatch.setattr(observability, "OBSERVABILITY_ENABLED", False)
        monkeypatch.setenv("LANGFUSE_SECRET_KEY", "sk")
        monkeypatch.setenv("LANGFUSE_PUBLIC_KEY", "pk")
        assert get_langfuse() is None

    def test_injected_client_is_shared(self):
        client = MagicMock()
        set_langfuse(client)
        assert get_langfuse() is client


class TestFlush:

    def test_flushes_client(self):
        client = MagicMock()
        set_langfuse(client)
        assert flush() is True
        client.flush.assert_called_once_with()

    def test_failure_reported_not_raised(self):
        client = MagicMock()
        client.flush.side_effect = RuntimeError("network down")
        set_langfuse(client)
        assert flush() is False
