"""Tests for the OpenAI-compatible chat model factory."""
import pytest

from infrastructure.errors import TracingError
from infrastructure.llm import get_provider_llm, normalize_provider


class TestNormalize:

    @pytest.mark.parametrize("given,expected", [
        ("OpenAI", "openai"), (" anthropic ", "anthropic"), ("claude", "anthropic"), ("Gemini", "google"),
    ])
    def test_aliases(self, given, expected):
        assert normalize_provider(given) == expected

    def test_unknown(self):
        with pytest.raises(TracingError, match="Unsupported provider"):
            normalize_provider("mistral")


class TestFactory:

    def test_explicit_key_and_endpoint(self):
        llm = get_provider_llm("openai", "gpt-4o-mini", api_key="sk-test",
                               base_url="http://localhost:4000/v1", temperature=0.2)
        assert llm.model_name == "gpt-4o-mini"
        assert llm.openai_api_key.get_secret_value() == "sk-test"
        assert llm.openai_api_base == "http://localhost:4000/v1"
        assert llm.temperature == 0.2

    def test_anthropic_uses_compatible_endpoint(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "ak-test")
        llm = get_provider_llm("claude", "claude-sonnet")
        assert llm.openai_api_base == "https://api.anthropic.com/v1/"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(TracingError, match="API key is required"):
            get_provider_llm("anthropic", "claude-sonnet")

    def test_google_key_required_too(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        with pytest.raises(TracingError):
            get_provider_llm("gemini", "gemini-2.0-flash")
