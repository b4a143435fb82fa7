"""
Message processors - composable transforms applied to a thread's history
before it is handed to a model.

A processor is any callable ``List[message] -> List[message]``. Messages
may be :class:`memory.schemas.Message` instances or plain dicts.

Example:
    pipeline = (
        MemoryProcessorPipeline()
        .add(filter_messages_by_role(["user", "assistant"]))
        .add(limit_tokens(4000))
    )
    context = pipeline.run(messages)
"""

from loguru import logger
from functools import lru_cache
from typing import Any, Callable, Iterable, List, Optional, Sequence

import tiktoken

from infrastructure.config import TOKEN_ENCODING

MessageProcessor = Callable[[List[Any]], List[Any]]


def _get(message: Any, name: str) -> Any:
    if isinstance(message, dict):
        return message.get(name)
    return getattr(message, name, None)


@lru_cache(maxsize=16)
def _encoding(name: str):
    try:
        return tiktoken.get_encoding(name)
    except ValueError:
        pass
    try:
        return tiktoken.encoding_for_model(name)
    except KeyError:
        logger.warning("Unknown encoding/model '{}', counting with {}", name, TOKEN_ENCODING)
        return tiktoken.get_encoding(TOKEN_ENCODING)


def count_tokens(text: str, encoding: str = TOKEN_ENCODING) -> int:
    """
    Number of tokens in *text*.

    Args:
        text: Text to count
        encoding: tiktoken encoding name (``o200k_base``) or a model name

    Returns:
        Token count (0 for empty text)
    """
    if not text:
        return 0
    return len(_encoding(encoding).encode(text))


def prune_old_messages(max_messages: int) -> MessageProcessor:
    """Keep only the last *max_messages* messages."""
    def process(messages: List[Any]) -> List[Any]:
        if max_messages <= 0:
            return []
        if len(messages) <= max_messages:
            return list(messages)
        return list(messages[-max_messages:])
    return process


def filter_messages_by_role(roles: Iterable[str]) -> MessageProcessor:
    """Drop messages whose role is not in *roles*."""
    allowed = set(roles)

    def process(messages: List[Any]) -> List[Any]:
        return [m for m in messages if _get(m, "role") in allowed]
    return process


def limit_tokens(
    max_tokens: int,
    encoding: str = TOKEN_ENCODING,
    counter: Optional[Callable[[str], int]] = None,
) -> MessageProcessor:
    """
    Keep the most recent messages whose combined content fits *max_tokens*.

    Walks backwards from the newest message and stops at the first one
    that would overflow, so the kept window is always contiguous.
    """
    count = counter or (lambda text: count_tokens(text, encoding))

    def process(messages: List[Any]) -> List[Any]:
        kept: List[Any] = []
        total = 0
        for message in reversed(messages):
            tokens = count(_get(message, "content") or "")
            if total + tokens > max_tokens:
                break
            kept.append(message)
            total += tokens
        kept.reverse()
        if len(kept) < len(messages):
            logger.debug("limit_tokens kept {}/{} messages ({} tokens)", len(kept), len(messages), total)
        return kept
    return process


class MemoryProcessorPipeline:
    """Ordered chain of message processors."""

    def __init__(self, initial: Optional[Sequence[MessageProcessor]] = None):
        self.processors: List[MessageProcessor] = list(initial or [])

    def add(self, processor: MessageProcessor) -> "MemoryProcessorPipeline":
        self.processors.append(processor)
        return self

    def run(self, messages: List[Any]) -> List[Any]:
        result = list(messages)
        for processor in self.processors:
            result = processor(result)
        return result
