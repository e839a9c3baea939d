"""
Metrics Event Listener — counters, timers, gauges and summaries from agent events.

Independent of tracing: it never looks at spans or the correlation registry.
Series are labelled by agent, action, tool, model, status or token direction
only. Run ids and interaction ids never become labels.

| Metric                     | Labels                 | Event                    |
|----------------------------|------------------------|--------------------------|
| agent.active (gauge)       | -                      | created / terminal       |
| agent.errors               | agent                  | agent_failed             |
| agent.duration (timer)     | agent, status          | terminal                 |
| agent.stuck                | agent                  | agent_stuck              |
| action.duration (timer)    | agent, action, status  | action_result            |
| llm.requests               | agent, model           | llm_request              |
| llm.duration (timer)       | agent, model, status   | llm_response             |
| llm.errors                 | agent, model           | failed llm_response      |
| llm.tokens                 | agent, direction       | completed / failed run   |
| llm.cost_usd               | agent                  | completed / failed run   |
| tool.calls                 | agent, tool            | tool_call_request        |
| tool.duration (timer)      | agent, tool, status    | tool_call_response       |
| tool.errors                | agent, tool            | failed tool_call_response|
| planning.replanning        | agent                  | replan_requested         |
| tool_loop.iterations (dist)| agent                  | tool_loop_completed      |
"""
import logging
import threading
from datetime import datetime
from typing import Callable

from core.errors import MalformedEventError
from events.dispatcher import EventListener
from events.models import AgentEvent, EventType
from metrics.sink import MetricsSink

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


class MetricsEventListener(EventListener):
    def __init__(self, metrics: MetricsSink, config):
        self._metrics = metrics
        self._config = config
        # run id → (agent name, started at); only live runs
        self._runs: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

        self._handlers: dict[EventType, Callable[[AgentEvent], None]] = {
            EventType.AGENT_CREATED: self._on_agent_created,
            EventType.AGENT_COMPLETED: self._on_agent_finished,
            EventType.AGENT_FAILED: self._on_agent_finished,
            EventType.AGENT_KILLED: self._on_agent_finished,
            EventType.AGENT_STUCK: self._on_agent_stuck,
            EventType.ACTION_RESULT: self._on_action_result,
            EventType.LLM_REQUEST: self._on_llm_request,
            EventType.LLM_RESPONSE: self._on_llm_response,
            EventType.TOOL_CALL_REQUEST: self._on_tool_call_request,
            EventType.TOOL_CALL_RESPONSE: self._on_tool_call_response,
            EventType.TOOL_LOOP_COMPLETED: self._on_tool_loop_completed,
            EventType.REPLAN_REQUESTED: self._on_replan_requested,
        }
        logger.info(f"MetricsEventListener initialized with {type(metrics).__name__}")

    def on_event(self, event: AgentEvent) -> None:
        if not self._config.metrics_active:
            return
        handler = self._handlers.get(getattr(event, "type", None))
        if handler is None:
            return
        try:
            event.validate()
            handler(event)
        except MalformedEventError as e:
            logger.warning(f"Dropping malformed event: {e}")
        except Exception:
            logger.exception(f"Metrics recording failed for {event.type!r}")

    # ── helpers ────────────────────────────────────────────────────
    def _agent(self, event: AgentEvent) -> str:
        if event.agent_name:
            return event.agent_name
        with self._lock:
            run = self._runs.get(event.run_id)
        return run[0] if run else UNKNOWN

    @staticmethod
    def _status(event: AgentEvent) -> str:
        return "success" if event.success else "failure"

    def _timer(self, name: str, duration_ms: float | None, tags: dict[str, str]) -> None:
        if duration_ms is None:
            return
        self._metrics.record_timer(name, duration_ms / 1000.0, tags)

    # ── runs ───────────────────────────────────────────────────────
    def _on_agent_created(self, event: AgentEvent) -> None:
        with self._lock:
            if event.run_id in self._runs:
                return
            self._runs[event.run_id] = (event.agent_name or UNKNOWN, event.timestamp)
        self._metrics.adjust_gauge("agent.active", 1)

    def _on_agent_finished(self, event: AgentEvent) -> None:
        with self._lock:
            run = self._runs.pop(event.run_id, None)
        agent = event.agent_name or (run[0] if run else UNKNOWN)
        status = {
            EventType.AGENT_COMPLETED: "completed",
            EventType.AGENT_FAILED: "failed",
            EventType.AGENT_KILLED: "killed",
        }[event.type]

        if run is not None:
            self._metrics.adjust_gauge("agent.active", -1)
            duration_ms = event.duration_ms
            if duration_ms is None:
                duration_ms = max((event.timestamp - run[1]).total_seconds() * 1000, 0.0)
            self._timer("agent.duration", duration_ms, {"agent": agent, "status": status})
        else:
            self._timer("agent.duration", event.duration_ms, {"agent": agent, "status": status})

        if event.type == EventType.AGENT_FAILED:
            self._metrics.increment_counter("agent.errors", 1, {"agent": agent})

        if event.type != EventType.AGENT_KILLED:
            self._record_usage(agent, event)

    def _record_usage(self, agent: str, event: AgentEvent) -> None:
        # Absent or zero usage must not create a series
        if event.input_tokens:
            self._metrics.increment_counter("llm.tokens", event.input_tokens,
                                            {"agent": agent, "direction": "input"})
        if event.output_tokens:
            self._metrics.increment_counter("llm.tokens", event.output_tokens,
                                            {"agent": agent, "direction": "output"})
        if event.cost_usd:
            self._metrics.increment_counter("llm.cost_usd", event.cost_usd, {"agent": agent})

    def _on_agent_stuck(self, event: AgentEvent) -> None:
        self._metrics.increment_counter("agent.stuck", 1, {"agent": self._agent(event)})

    def _on_replan_requested(self, event: AgentEvent) -> None:
        self._metrics.increment_counter("planning.replanning", 1, {"agent": self._agent(event)})

    # ── actions ────────────────────────────────────────────────────
    def _on_action_result(self, event: AgentEvent) -> None:
        failed = not event.success or (event.status or "").upper() == "FAILED"
        self._timer("action.duration", event.duration_ms, {
            "agent": self._agent(event),
            "action": event.action_short_name or UNKNOWN,
            "status": "failure" if failed else "success",
        })

    # ── LLM ────────────────────────────────────────────────────────
    def _on_llm_request(self, event: AgentEvent) -> None:
        self._metrics.increment_counter("llm.requests", 1, {
            "agent": self._agent(event),
            "model": event.model or UNKNOWN,
        })

    def _on_llm_response(self, event: AgentEvent) -> None:
        agent, model = self._agent(event), event.model or UNKNOWN
        self._timer("llm.duration", event.duration_ms,
                    {"agent": agent, "model": model, "status": self._status(event)})
        if not event.success:
            self._metrics.increment_counter("llm.errors", 1, {"agent": agent, "model": model})

    # ── tools ──────────────────────────────────────────────────────
    def _on_tool_call_request(self, event: AgentEvent) -> None:
        self._metrics.increment_counter("tool.calls", 1, {
            "agent": self._agent(event),
            "tool": event.tool_name or UNKNOWN,
        })

    def _on_tool_call_response(self, event: AgentEvent) -> None:
        agent, tool = self._agent(event), event.tool_name or UNKNOWN
        self._timer("tool.duration", event.duration_ms,
                    {"agent": agent, "tool": tool, "status": self._status(event)})
        if not event.success:
            self._metrics.increment_counter("tool.errors", 1, {"agent": agent, "tool": tool})

    def _on_tool_loop_completed(self, event: AgentEvent) -> None:
        if event.iterations is None:
            return
        self._metrics.record_distribution("tool_loop.iterations", event.iterations,
                                          {"agent": self._agent(event)})
