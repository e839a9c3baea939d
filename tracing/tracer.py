"""
Tracer — the span capability the correlation engine drives.

Usage patterns:

1. Context manager (auto-closes on success or error):
       tracer = LocalTracer.instance()
       with tracer.span("http:POST /orders") as span:
           dispatcher.dispatch(event)      # agent spans nest under the request

2. Manual start/end (what the event listeners do):
       span = tracer.start_span("llm:gpt-4", parent=action_span, span_type=SpanType.LLM_CALL)
       scope = tracer.enter_scope(span)
       ...
       scope.close()
       tracer.end(span)

Ambient nesting works through a thread-local stack of SpanScope objects. A
scope belongs to the thread that entered it; closing it from any other thread
only marks it closed, and the owning thread drops it the next time it looks
at its stack.
"""
import uuid
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from core.errors import TracerError
from tracing.models import TraceSpan, SpanType, SpanStatus
from tracing.store import InMemoryStore

logger = logging.getLogger(__name__)


class SpanScope:
    """Activation of a span as the ambient span of one thread."""

    def __init__(self, tracer: "Tracer", handle: Any):
        self.handle = handle
        self._tracer = tracer
        self._owner = threading.get_ident()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if threading.get_ident() == self._owner:
            self._tracer._prune_scopes()

    def __enter__(self) -> "SpanScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class Tracer:
    """
    Abstract span capability.

    Handles are opaque to callers; only the tracer that created a handle may
    tag or end it.
    """

    def __init__(self):
        # Thread-local so concurrent runs don't clobber each other's ambient span
        self._local = threading.local()

    # ── ambient scope ──────────────────────────────────────────────
    def _scopes(self) -> list[SpanScope]:
        if not hasattr(self._local, "scopes"):
            self._local.scopes = []
        return self._local.scopes

    def _prune_scopes(self) -> None:
        scopes = self._scopes()
        if any(s.closed for s in scopes):
            scopes[:] = [s for s in scopes if not s.closed]

    def enter_scope(self, handle: Any) -> SpanScope:
        """Make `handle` the calling thread's ambient span until the scope closes."""
        self._prune_scopes()
        scope = SpanScope(self, handle)
        self._scopes().append(scope)
        return scope

    def current_span(self) -> Any | None:
        """Innermost open ambient span on this thread, if any."""
        self._prune_scopes()
        scopes = self._scopes()
        if scopes:
            return scopes[-1].handle
        return self._external_current_span()

    def _external_current_span(self) -> Any | None:
        """Ambient span owned by something other than this tracer (e.g. an HTTP server)."""
        return None

    # ── span lifecycle (backend specific) ──────────────────────────
    def start_span(
        self,
        name: str,
        parent: Any | None = None,
        *,
        span_type: SpanType = SpanType.CUSTOM,
        root: bool = False,
    ) -> Any:
        """
        Open a span. With no `parent` the span attaches to the ambient span, or
        starts a new trace if there is none. `root=True` always starts a new trace.
        """
        raise NotImplementedError

    def tag(self, handle: Any, key: str, value: Any) -> None:
        raise NotImplementedError

    def set_status(self, handle: Any, status: SpanStatus, description: str | None = None) -> None:
        raise NotImplementedError

    def set_error(self, handle: Any, error: str | BaseException) -> None:
        raise NotImplementedError

    def end(self, handle: Any) -> bool:
        """End the span. Returns False if it had already ended."""
        raise NotImplementedError

    def rename(self, handle: Any, name: str) -> None:
        raise NotImplementedError

    # ── convenience ────────────────────────────────────────────────
    def tag_all(self, handle: Any, tags: dict[str, Any]) -> None:
        for key, value in tags.items():
            if value is not None:
                self.tag(handle, key, value)

    @contextmanager
    def span(self, name: str, *, span_type: SpanType = SpanType.CUSTOM, parent: Any | None = None):
        """
        Context manager. Yields the handle with the span in scope.
        On normal exit → OK. On exception → ERROR (re-raises).
        """
        handle = self.start_span(name, parent, span_type=span_type)
        scope = self.enter_scope(handle)
        try:
            yield handle
            self.set_status(handle, SpanStatus.OK)
        except Exception as exc:
            self.set_error(handle, exc)
            raise
        finally:
            scope.close()
            self.end(handle)


class LocalTracer(Tracer):
    """
    In-process tracer that records TraceSpan objects and hands finished spans
    to a store (InMemoryStore by default, TraceStore for SQLite).
    """
    _instance: "LocalTracer | None" = None
    _instance_lock = threading.Lock()

    def __init__(self, store=None):
        super().__init__()
        self._store = store if store is not None else InMemoryStore()
        self._end_lock = threading.Lock()

    @classmethod
    def instance(cls) -> "LocalTracer":
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset singleton for testing."""
        cls._instance = None

    @staticmethod
    def _check(handle: Any) -> TraceSpan:
        if not isinstance(handle, TraceSpan):
            raise TracerError(f"LocalTracer cannot handle {type(handle).__name__}")
        return handle

    # ── span lifecycle ─────────────────────────────────────────────
    def start_span(
        self,
        name: str,
        parent: Any | None = None,
        *,
        span_type: SpanType = SpanType.CUSTOM,
        root: bool = False,
    ) -> TraceSpan:
        if parent is None and not root:
            parent = self.current_span()
        if parent is not None and not root:
            parent = self._check(parent)
            return TraceSpan(
                trace_id=parent.trace_id,
                parent_id=parent.id,
                span_type=span_type,
                name=name,
            )
        return TraceSpan(trace_id=uuid.uuid4().hex, span_type=span_type, name=name)

    def tag(self, handle: Any, key: str, value: Any) -> None:
        span = self._check(handle)
        if span.ended:
            logger.debug(f"Ignoring tag {key} on ended span {span.name} ({span.id})")
            return
        span.tags[key] = value

    def set_status(self, handle: Any, status: SpanStatus, description: str | None = None) -> None:
        span = self._check(handle)
        if span.ended:
            return
        span.status = status
        if status == SpanStatus.ERROR and description and not span.error:
            span.error = description

    def set_error(self, handle: Any, error: str | BaseException) -> None:
        span = self._check(handle)
        if span.ended:
            return
        span.status = SpanStatus.ERROR
        span.error = error if isinstance(error, str) else f"{type(error).__name__}: {error}"

    def rename(self, handle: Any, name: str) -> None:
        self._check(handle).name = name

    def end(self, handle: Any) -> bool:
        """Close a span, compute duration, persist."""
        span = self._check(handle)
        with self._end_lock:
            if span.ended:
                logger.debug(f"Span {span.name} ({span.id}) already ended")
                return False
            span.ended_at = datetime.now().isoformat()

        try:
            start = datetime.fromisoformat(span.started_at)
            end = datetime.fromisoformat(span.ended_at)
            span.duration_ms = (end - start).total_seconds() * 1000
        except (ValueError, TypeError):
            pass

        self._store.save(span)
        return True

    @property
    def store(self):
        return self._store
