"""
Embedding model provider.

Direct OpenAI by default; ``providers.openai_base_url`` in param.yaml
points the client at any OpenAI-compatible gateway.
"""

from typing import Any
from langchain_openai import OpenAIEmbeddings

from infrastructure.config import EMBEDDING_BATCH_SIZE, EMBEDDING_MODEL, OPENAI_BASE_URL, get_api_key


def get_default_embeddings(
    batch_size: int = EMBEDDING_BATCH_SIZE,
    show_progress: bool = False,
    **kwargs: Any
) -> OpenAIEmbeddings:
    """
    Get an OpenAIEmbeddings instance for the configured model.

    Args:
        batch_size: Number of texts to embed per API call.
        show_progress: Show progress bar during embedding.
        **kwargs: Additional arguments forwarded to OpenAIEmbeddings.

    Returns:
        A ready-to-use OpenAIEmbeddings instance.
    """
    llm_kwargs: dict[str, Any] = dict(
        model=EMBEDDING_MODEL,
        chunk_size=batch_size,
        show_progress_bar=show_progress,
        **kwargs,
    )

    api_key = get_api_key("openai")
    if api_key:
        llm_kwargs["openai_api_key"] = api_key
    if OPENAI_BASE_URL:
        llm_kwargs["openai_api_base"] = OPENAI_BASE_URL

    return OpenAIEmbeddings(**llm_kwargs)
