"""Event-to-span correlation: tracer backends, registry, parent resolution, listener."""

from tracing.models import TraceSpan, SpanType, SpanStatus
from tracing.tracer import Tracer, LocalTracer, SpanScope
from tracing.registry import CorrelationRegistry
from tracing.resolver import resolve_parent
from tracing.listener import TracingEventListener

__all__ = [
    "TraceSpan", "SpanType", "SpanStatus",
    "Tracer", "LocalTracer", "SpanScope",
    "CorrelationRegistry", "resolve_parent",
    "TracingEventListener",
]
