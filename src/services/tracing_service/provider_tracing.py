"""
LLM provider calls wrapped in trace records.

    get_provider_with_tracing → trace + "{provider}_initialization" span,
                                "{provider}_model_initialized" event
    generate_with_tracing     → one generation around ``llm.invoke``
    stream_with_tracing       → one generation around ``llm.stream``;
                                closed when the stream is exhausted

Usage and latency are attached to the generation. Provider errors close
the records with ``status="error"`` and are re-raised unchanged.
"""

from loguru import logger
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from langchain_core.messages import convert_to_messages

from infrastructure.llm import get_provider_llm, normalize_provider
from services.tracing_service.tracing import Tracer, get_tracer


@dataclass
class TracedModel:
    """A chat model plus the trace it was initialised under."""
    llm: Any
    provider: str
    model: str
    trace_id: str


@dataclass
class TracedGeneration:
    """Result of :func:`generate_with_tracing`."""
    text: str
    trace_id: str
    generation_id: str
    latency_ms: float
    usage: Dict[str, int] = field(default_factory=dict)
    response: Any = None


def _usage_of(message: Any) -> Dict[str, int]:
    usage = getattr(message, "usage_metadata", None) or {}
    return {k: int(usage[k]) for k in ("input_tokens", "output_tokens", "total_tokens") if usage.get(k) is not None}


def _text_of(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        return "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    return content if isinstance(content, str) else str(content)


def get_provider_with_tracing(
    provider: str,
    model: str,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    trace_name: Optional[str] = None,
    user_id: Optional[str] = None,
    tracer: Optional[Tracer] = None,
    llm_factory: Callable[..., Any] = get_provider_llm,
    **llm_kwargs: Any,
) -> TracedModel:
    """
    Build a chat model for *provider* inside a trace.

    Raises:
        TracingError: Unknown provider or missing API key (after the
                      span has been closed with ``status="error"``)
    """
    tracer = tracer or get_tracer()
    name = (provider or "").strip().lower()
    trace_id = tracer.create_trace(
        trace_name or f"{name}_provider",
        user_id=user_id,
        metadata={"provider": name, "model": model},
    )
    span_id = tracer.create_span(trace_id, f"{name}_initialization", metadata={"model": model})
    try:
        llm = llm_factory(name, model, api_key=api_key, base_url=base_url, **llm_kwargs)
    except Exception as exc:
        logger.error("Failed to initialise {} model {}: {}", name, model, exc)
        tracer.end_span(span_id, status="error", output=str(exc))
        tracer.end_trace(trace_id, status="error", output=str(exc))
        raise

    tracer.log_event(trace_id, f"{name}_model_initialized", {"model": model})
    tracer.end_span(span_id, status="success")
    tracer.end_trace(trace_id, status="success")
    return TracedModel(llm=llm, provider=normalize_provider(name), model=model, trace_id=trace_id)


def _start(
    tracer: Tracer,
    kind: str,
    provider: str,
    model: str,
    messages: List[Any],
    temperature: float,
    max_tokens: Optional[int],
    trace_name: Optional[str],
    user_id: Optional[str],
    metadata: Optional[Dict[str, Any]],
):
    trace_id = tracer.create_trace(
        trace_name or f"{provider}_{kind}",
        user_id=user_id,
        metadata={
            **(metadata or {}),
            "provider": provider,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "message_count": len(messages),
        },
    )
    generation_id = tracer.create_generation(
        trace_id,
        f"{provider}_{kind}",
        model,
        input=messages,
        model_parameters={"temperature": temperature, "max_tokens": max_tokens},
    )
    return trace_id, generation_id


def generate_with_tracing(
    provider: str,
    model: str,
    messages: List[Any],
    temperature: float = 0.7,
    max_tokens: Optional[int] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    trace_name: Optional[str] = None,
    user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    tracer: Optional[Tracer] = None,
    llm_factory: Callable[..., Any] = get_provider_llm,
) -> TracedGeneration:
    """
    One traced, non-streaming completion.

    Args:
        messages: LangChain message-likes (``{"role", "content"}`` dicts,
                  tuples or BaseMessage objects)
    """
    tracer = tracer or get_tracer()
    name = normalize_provider(provider)
    trace_id, generation_id = _start(
        tracer, "generate", name, model, messages, temperature, max_tokens, trace_name, user_id, metadata
    )
    started = time.perf_counter()
    try:
        llm = llm_factory(name, model, api_key=api_key, base_url=base_url,
                          temperature=temperature, max_tokens=max_tokens)
        response = llm.invoke(convert_to_messages(messages))
    except Exception as exc:
        logger.error("{} generation failed: {}", name, exc)
        tracer.end_span(generation_id, status="error", output=str(exc))
        tracer.end_trace(trace_id, status="error", output=str(exc))
        raise

    latency_ms = (time.perf_counter() - started) * 1000
    text = _text_of(response)
    usage = _usage_of(response)
    tracer.end_span(generation_id, status="success", output=text,
                    metadata={"latency_ms": latency_ms}, usage=usage or None)
    tracer.end_trace(trace_id, status="success")
    return TracedGeneration(
        text=text,
        trace_id=trace_id,
        generation_id=generation_id,
        latency_ms=latency_ms,
        usage=usage,
        response=response,
    )


def stream_with_tracing(
    provider: str,
    model: str,
    messages: List[Any],
    temperature: float = 0.7,
    max_tokens: Optional[int] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    trace_name: Optional[str] = None,
    user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    tracer: Optional[Tracer] = None,
    llm_factory: Callable[..., Any] = get_provider_llm,
) -> Iterator[str]:
    """
    Traced streaming completion; yields text deltas.

    Records open on the first ``next()`` and close when the stream ends,
    fails, or is closed early (``status="cancelled"``).
    """
    tracer = tracer or get_tracer()
    name = normalize_provider(provider)
    trace_id, generation_id = _start(
        tracer, "stream", name, model, messages, temperature, max_tokens, trace_name, user_id, metadata
    )
    started = time.perf_counter()
    first_token_ms: Optional[float] = None
    parts: List[str] = []
    usage: Dict[str, int] = {}
    finished = False
    try:
        llm = llm_factory(name, model, api_key=api_key, base_url=base_url, temperature=temperature,
                          max_tokens=max_tokens, streaming=True)
        for chunk in llm.stream(convert_to_messages(messages)):
            delta = _text_of(chunk)
            if first_token_ms is None:
                first_token_ms = (time.perf_counter() - started) * 1000
            usage.update(_usage_of(chunk))
            parts.append(delta)
            yield delta
        finished = True
    except Exception as exc:
        logger.error("{} stream failed: {}", name, exc)
        tracer.end_span(generation_id, status="error", output=str(exc))
        tracer.end_trace(trace_id, status="error", output=str(exc))
        raise
    finally:
        if finished:
            tracer.end_span(
                generation_id,
                status="success",
                output="".join(parts),
                metadata={
                    "latency_ms": (time.perf_counter() - started) * 1000,
                    "time_to_first_token_ms": first_token_ms,
                    "chunks": len(parts),
                },
                usage=usage or None,
            )
            tracer.end_trace(trace_id, status="success")
        elif generation_id in tracer.open_records():
            tracer.end_span(generation_id, status="cancelled", output="".join(parts))
            tracer.end_trace(trace_id, status="cancelled")
