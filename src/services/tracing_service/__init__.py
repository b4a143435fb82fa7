"""
Tracing service - trace/span/event records and traced LLM provider calls.
"""

from .tracing import (
    Tracer,
    get_tracer,
    create_trace,
    create_span,
    create_generation,
    end_span,
    end_trace,
    log_event,
)
from .provider_tracing import (
    TracedGeneration,
    TracedModel,
    generate_with_tracing,
    get_provider_with_tracing,
    stream_with_tracing,
)

__all__ = [
    "Tracer",
    "get_tracer",
    "create_trace",
    "create_span",
    "create_generation",
    "end_span",
    "end_trace",
    "log_event",
    "TracedGeneration",
    "TracedModel",
    "generate_with_tracing",
    "get_provider_with_tracing",
    "stream_with_tracing",
]
