"""
OpenTelemetry backend for the Tracer capability.

Spans are created through an OTel tracer, so anything configured on the
TracerProvider (OTLP, Zipkin, console, in-memory exporters) receives them.

Parenting is explicit: the correlation engine always passes the parent it
resolved, and the ambient stack is the tracer's own thread-local one. When the
stack is empty the OTel current span (e.g. an instrumented HTTP request) is
used, so an agent started inside a request joins that request's trace.
"""
import logging
import threading
from typing import Any

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Status, StatusCode, set_span_in_context

from core.errors import TracerError
from tracing.models import SpanType, SpanStatus
from tracing.tracer import Tracer

logger = logging.getLogger(__name__)

_ATTRIBUTE_TYPES = (str, bool, int, float)


class OtelSpanHandle:
    """Wraps an OTel span; `owned` is False for spans this tracer did not start."""
    __slots__ = ("span", "span_type", "owned", "ended")

    def __init__(self, span: trace.Span, span_type: SpanType | None = None, owned: bool = True):
        self.span = span
        self.span_type = span_type
        self.owned = owned
        self.ended = False

    @property
    def trace_id(self) -> int:
        return self.span.get_span_context().trace_id

    @property
    def span_id(self) -> int:
        return self.span.get_span_context().span_id


class OpenTelemetryTracer(Tracer):
    def __init__(
        self,
        tracer_provider: trace.TracerProvider | None = None,
        name: str = "agent-observability",
        version: str | None = None,
    ):
        super().__init__()
        if tracer_provider is not None:
            self._otel = tracer_provider.get_tracer(name, version)
        else:
            self._otel = trace.get_tracer(name, version)
        self._end_lock = threading.Lock()
        logger.info(f"OpenTelemetryTracer initialized (tracer={name}, version={version})")

    @classmethod
    def from_config(cls, config, tracer_provider: trace.TracerProvider | None = None) -> "OpenTelemetryTracer":
        return cls(tracer_provider, name=config.tracer_name, version=config.tracer_version)

    @staticmethod
    def _check(handle: Any) -> OtelSpanHandle:
        if not isinstance(handle, OtelSpanHandle):
            raise TracerError(f"OpenTelemetryTracer cannot handle {type(handle).__name__}")
        return handle

    def _external_current_span(self) -> OtelSpanHandle | None:
        current = trace.get_current_span()
        if current.get_span_context().is_valid:
            return OtelSpanHandle(current, owned=False)
        return None

    # ── span lifecycle ─────────────────────────────────────────────
    def start_span(
        self,
        name: str,
        parent: Any | None = None,
        *,
        span_type: SpanType = SpanType.CUSTOM,
        root: bool = False,
    ) -> OtelSpanHandle:
        if root:
            context = Context()
        else:
            if parent is None:
                parent = self.current_span()
            if parent is not None:
                context = set_span_in_context(self._check(parent).span)
            else:
                context = Context()
        span = self._otel.start_span(name, context=context)
        return OtelSpanHandle(span, span_type)

    def tag(self, handle: Any, key: str, value: Any) -> None:
        h = self._check(handle)
        if value is None or h.ended:
            return
        if not isinstance(value, _ATTRIBUTE_TYPES):
            value = str(value)
        h.span.set_attribute(key, value)

    def set_status(self, handle: Any, status: SpanStatus, description: str | None = None) -> None:
        h = self._check(handle)
        if h.ended:
            return
        if status == SpanStatus.OK:
            h.span.set_status(Status(StatusCode.OK))
        elif status == SpanStatus.ERROR:
            h.span.set_status(Status(StatusCode.ERROR, description))

    def set_error(self, handle: Any, error: str | BaseException) -> None:
        h = self._check(handle)
        if h.ended:
            return
        if isinstance(error, BaseException):
            h.span.record_exception(error)
            message = f"{type(error).__name__}: {error}"
        else:
            h.span.add_event("exception", {"exception.message": error})
            message = error
        h.span.set_status(Status(StatusCode.ERROR, message))

    def rename(self, handle: Any, name: str) -> None:
        self._check(handle).span.update_name(name)

    def end(self, handle: Any) -> bool:
        h = self._check(handle)
        with self._end_lock:
            if h.ended or not h.owned:
                return False
            h.ended = True
        h.span.end()
        return True
