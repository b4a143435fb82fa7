"""Tests for configuration helpers and the error taxonomy."""
import pytest

from infrastructure import config
from infrastructure.errors import (
    DataLayerError,
    RedisStoreError,
    TableAdapterError,
    ValidationError,
)


class TestErrors:

    def test_cause_is_kept_and_shown(self):
        cause = ConnectionError("socket closed")
        err = RedisStoreError("Failed to create thread", cause=cause)
        assert err.cause is cause
        assert str(err) == "Failed to create thread: socket closed"
        assert isinstance(err, DataLayerError)

    def test_validation_error_lists_every_field(self):
        err = ValidationError("Invalid Thread", ["id is required", "name must be a string"])
        assert isinstance(err, ValueError)
        assert err.errors == ["id is required", "name must be a string"]
        assert "id is required; name must be a string" in str(err)

    def test_plain_message_without_cause(self):
        assert str(TableAdapterError("boom")) == "boom"


class TestFlags:

    def test_redis_adapter_flag(self, monkeypatch):
        assert config.use_redis_adapter() is False
        monkeypatch.setenv("USE_REDIS_ADAPTER", "true")
        assert config.use_redis_adapter() is True
        assert config.is_redis_main_db() is True

    def test_fallback_needs_both_supabase_settings(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        assert config.should_fallback_to_backup() is False
        monkeypatch.setenv("SUPABASE_KEY", "anon")
        assert config.should_fallback_to_backup() is True

    def test_no_fallback_when_redis_is_main_db(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setenv("SUPABASE_KEY", "anon")
        monkeypatch.setenv("USE_REDIS_ADAPTER", "true")
        assert config.should_fallback_to_backup() is False

    def test_memory_provider_defaults_to_sqlite(self, monkeypatch):
        assert config.get_memory_provider() == "sqlite"
        monkeypatch.setenv("MEMORY_PROVIDER", "Redis")
        assert config.get_memory_provider() == "redis"

    def test_api_key_lookup(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        assert config.get_api_key("google") == "g-key"
        assert config.get_api_key("gemini") == "g-key"


class TestValidate:

    def test_redis_memory_requires_url(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        monkeypatch.setenv("MEMORY_PROVIDER", "redis")
        with pytest.raises(ValueError, match="REDIS_URL"):
            config.validate()

    def test_defaults_are_valid(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        config.validate()

    def test_yaml_values_loaded(self):
        assert config.HYBRID_VECTOR_WEIGHT == pytest.approx(0.7)
        assert config.HYBRID_KEYWORD_WEIGHT == pytest.approx(0.3)
        assert config.REDIS_SCAN_COUNT == 100
        assert config.QUERY_CACHE_MAX_SIZE == 500
