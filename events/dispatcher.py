"""
Event Dispatcher — fans every runtime event out to the registered listeners.

The delivery path is shared with unrelated listeners, so one listener's failure
is logged and never reaches the runtime or the other listeners.

Usage:
    dispatcher = EventDispatcher.from_config(config, tracer=LocalTracer())
    dispatcher.dispatch(AgentEvent(EventType.AGENT_CREATED, run_id="r1", agent_name="Bot"))
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable

from events.models import AgentEvent

logger = logging.getLogger(__name__)


class EventListener:
    """Base class for anything that consumes the agent event stream."""

    def on_event(self, event: AgentEvent) -> None:
        raise NotImplementedError


class EventDispatcher:
    def __init__(self, listeners: Iterable[EventListener] | None = None):
        self._listeners: list[EventListener] = list(listeners or [])

    @classmethod
    def from_config(cls, config, tracer=None, metrics=None) -> "EventDispatcher":
        """Wire the tracing and metrics listeners the config asks for."""
        from tracing.listener import TracingEventListener
        from metrics.listener import MetricsEventListener

        listeners: list[EventListener] = []
        if not config.enabled:
            logger.info("Observability disabled; dispatcher has no listeners")
            return cls(listeners)
        if config.trace_agent_events and tracer is not None:
            listeners.append(TracingEventListener(tracer, config))
        if config.metrics_enabled and metrics is not None:
            listeners.append(MetricsEventListener(metrics, config))
        logger.info(f"Dispatcher wired with {[type(l).__name__ for l in listeners]}")
        return cls(listeners)

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    @property
    def listeners(self) -> list[EventListener]:
        return list(self._listeners)

    def dispatch(self, event: AgentEvent) -> None:
        for listener in self._listeners:
            try:
                listener.on_event(event)
            except Exception:
                logger.exception(
                    f"Listener {type(listener).__name__} failed on {getattr(event, 'type', event)!r}"
                )

    def dispatch_all(self, events: Iterable[AgentEvent]) -> int:
        count = 0
        for event in events:
            self.dispatch(event)
            count += 1
        return count

    def dispatch_by_run(self, events: Iterable[AgentEvent]) -> int:
        """Replay a recorded log in order, each run on its own worker thread.

        Ambient spans are thread-local, so runs that interleave in one log must
        not share a thread. A sub-agent stays on its parent run's thread, where
        the runtime would have created it. Events are handed over one at a time,
        which keeps the log order across runs.
        """
        lane_of: dict[str | None, str | None] = {}
        lanes: dict[str | None, ThreadPoolExecutor] = {}
        count = 0
        try:
            for event in events:
                run_id = event.run_id
                if run_id not in lane_of:
                    parent = event.parent_run_id
                    lane_of[run_id] = lane_of.get(parent, run_id) if parent else run_id
                lane = lane_of[run_id]
                if lane not in lanes:
                    lanes[lane] = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"replay-{lane}")
                lanes[lane].submit(self.dispatch, event).result()
                count += 1
        finally:
            for executor in lanes.values():
                executor.shutdown(wait=True)
        logger.debug(f"Replayed {count} events on {len(lanes)} run threads")
        return count
