"""
Chat LLM providers.

Every provider is reached through its OpenAI-compatible endpoint, so one
ChatOpenAI factory covers all of them:
  - openai:    api.openai.com (or ``providers.openai_base_url``)
  - anthropic: ``providers.anthropic_base_url``
  - google:    ``providers.google_base_url`` (Gemini OpenAI compatibility)
"""

from typing import Optional, Any, Dict
from langchain_openai import ChatOpenAI

from infrastructure.config import (
    ANTHROPIC_BASE_URL,
    GOOGLE_BASE_URL,
    OPENAI_BASE_URL,
    get_api_key,
)
from infrastructure.errors import TracingError

PROVIDER_BASE_URLS: Dict[str, Optional[str]] = {
    "openai": OPENAI_BASE_URL,
    "anthropic": ANTHROPIC_BASE_URL,
    "google": GOOGLE_BASE_URL,
}
PROVIDER_ALIASES = {"gemini": "google", "claude": "anthropic"}


def normalize_provider(provider: str) -> str:
    name = (provider or "").strip().lower()
    name = PROVIDER_ALIASES.get(name, name)
    if name not in PROVIDER_BASE_URLS:
        raise TracingError(f"Unsupported provider: {provider}")
    return name


def get_provider_llm(
    provider: str,
    model: str,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    temperature: float = 0,
    streaming: bool = False,
    max_tokens: Optional[int] = None,
    **kwargs: Any,
) -> ChatOpenAI:
    """
    Build a ChatOpenAI client for *provider*.

    Args:
        provider: ``openai`` | ``anthropic`` | ``google``
        model: Provider model id
        api_key: Overrides the provider's env key
        base_url: Overrides the provider's endpoint

    Raises:
        TracingError: Unknown provider, or no API key available
    """
    name = normalize_provider(provider)
    key = api_key or get_api_key(name)
    if not key:
        raise TracingError(f"{name.capitalize()} API key is required")

    llm_kwargs: dict[str, Any] = dict(
        model=model,
        temperature=temperature,
        streaming=streaming,
        max_tokens=max_tokens,
        openai_api_key=key,
        **kwargs,
    )
    endpoint = base_url or PROVIDER_BASE_URLS[name]
    if endpoint:
        llm_kwargs["openai_api_base"] = endpoint

    return ChatOpenAI(**llm_kwargs)
