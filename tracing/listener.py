"""
Tracing Event Listener — turns the agent event stream into nested spans.

For every start event the parent is resolved (tracing/resolver.py), a span is
opened and stored in the CorrelationRegistry under its kind's key. The
matching end event removes it and ends it, once. Run, action, LLM and tool
loop spans also become the ambient span of the thread that started them, so
synchronous work (tool calls, sub-agents) nests under them.

Failure policy: this listener sits on the runtime's event delivery path.
Malformed events are dropped with a warning, late ends are no-ops, and no
exception ever leaves on_event().
"""
import logging
import threading
from typing import Any, Callable

from core.errors import MalformedEventError
from events.dispatcher import EventListener
from events.models import AgentEvent, EventType
from tracing import keys
from tracing.models import SpanType, SpanStatus
from tracing.registry import CorrelationRegistry, OpenSpan
from tracing.resolver import Resolution, resolve_parent
from tracing.tracer import Tracer

logger = logging.getLogger(__name__)

RUN_TERMINATION = "run_termination"

_AGENT_STATUS = {
    EventType.AGENT_COMPLETED: "completed",
    EventType.AGENT_FAILED: "failed",
    EventType.AGENT_KILLED: "killed",
}

_LIFECYCLE_STATES = {
    EventType.AGENT_STUCK: ("stuck", "STUCK", SpanStatus.ERROR),
    EventType.AGENT_WAITING: ("waiting", "WAITING", SpanStatus.OK),
    EventType.AGENT_PAUSED: ("paused", "PAUSED", SpanStatus.OK),
}


class TracingEventListener(EventListener):
    def __init__(self, tracer: Tracer, config, registry: CorrelationRegistry | None = None):
        self._tracer = tracer
        self._config = config
        self._registry = registry or CorrelationRegistry()
        self._plan_iterations: dict[str, int] = {}
        self._plan_lock = threading.Lock()

        # event type → (handler, config switch that gates it)
        self._handlers: dict[EventType, tuple[Callable[[AgentEvent], None], str | None]] = {
            EventType.AGENT_CREATED: (self._on_agent_created, None),
            EventType.AGENT_COMPLETED: (self._on_agent_finished, None),
            EventType.AGENT_FAILED: (self._on_agent_finished, None),
            EventType.AGENT_KILLED: (self._on_agent_finished, None),
            EventType.ACTION_START: (self._on_action_start, None),
            EventType.ACTION_RESULT: (self._on_action_result, None),
            EventType.LLM_REQUEST: (self._on_llm_request, "trace_llm_calls"),
            EventType.LLM_RESPONSE: (self._on_llm_response, "trace_llm_calls"),
            EventType.TOOL_LOOP_START: (self._on_tool_loop_start, "trace_tool_loop"),
            EventType.TOOL_LOOP_COMPLETED: (self._on_tool_loop_completed, "trace_tool_loop"),
            EventType.TOOL_CALL_REQUEST: (self._on_tool_call_request, "trace_tool_calls"),
            EventType.TOOL_CALL_RESPONSE: (self._on_tool_call_response, "trace_tool_calls"),
            EventType.GOAL_ACHIEVED: (self._on_goal_achieved, None),
            EventType.READY_TO_PLAN: (self._on_ready_to_plan, "trace_planning"),
            EventType.PLAN_FORMULATED: (self._on_plan_formulated, "trace_planning"),
            EventType.REPLAN_REQUESTED: (self._on_replan_requested, "trace_planning"),
            EventType.STATE_TRANSITION: (self._on_state_transition, "trace_state_transitions"),
            EventType.AGENT_STUCK: (self._on_lifecycle_state, "trace_lifecycle_states"),
            EventType.AGENT_WAITING: (self._on_lifecycle_state, "trace_lifecycle_states"),
            EventType.AGENT_PAUSED: (self._on_lifecycle_state, "trace_lifecycle_states"),
            EventType.RAG_REQUEST: (self._on_rag, "trace_rag"),
            EventType.RAG_RESPONSE: (self._on_rag, "trace_rag"),
            EventType.RANKING_CHOICE_MADE: (self._on_ranking, "trace_ranking"),
            EventType.RANKING_NO_CHOICE: (self._on_ranking, "trace_ranking"),
            EventType.DYNAMIC_AGENT_CREATED: (self._on_dynamic_agent, "trace_dynamic_agent_creation"),
            EventType.ATTRIBUTES: (self._on_attributes, None),
            EventType.CUSTOM: (self._on_custom, None),
        }
        logger.info(f"TracingEventListener initialized with {type(tracer).__name__}")

    @property
    def registry(self) -> CorrelationRegistry:
        return self._registry

    # ── entry point ────────────────────────────────────────────────
    def on_event(self, event: AgentEvent) -> None:
        if not self._config.tracing_enabled:
            return
        try:
            if not isinstance(event, AgentEvent):
                raise MalformedEventError(None, f"not an AgentEvent: {type(event).__name__}")
            event.validate()
            handler, switch = self._handlers[event.type]
            if switch and not getattr(self._config, switch):
                return
            handler(event)
        except MalformedEventError as e:
            logger.warning(f"Dropping malformed event: {e}")
        except Exception:
            logger.exception(f"Tracing failed for {getattr(event, 'type', event)!r}")

    # ── span plumbing ──────────────────────────────────────────────
    def _truncate(self, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value)
        limit = self._config.max_attribute_length
        return text if len(text) <= limit else text[:limit] + "..."

    def _start(
        self,
        kind: SpanType,
        name: str,
        resolution: Resolution,
        event: AgentEvent,
        tags: dict[str, Any],
        event_type_tag: str | None = None,
    ) -> Any:
        if resolution.is_miss:
            logger.warning(
                f"No parent span found for {kind.value} '{name}' (runId: {event.run_id}), "
                f"span will use the tracer default. Open: {self._registry.open_keys()}"
            )
        handle = self._tracer.start_span(name, resolution.parent, span_type=kind, root=resolution.is_root)
        self._tracer.tag(handle, keys.EVENT_TYPE, event_type_tag or kind.value)
        if event.run_id:
            self._tracer.tag(handle, keys.RUN_ID, event.run_id)
        self._tracer.tag_all(handle, tags)
        logger.debug(f"Started {kind.value} span '{name}' (runId: {event.run_id}, parent: {resolution.source})")
        return handle

    def _open(
        self,
        kind: SpanType,
        key: tuple,
        name: str,
        resolution: Resolution,
        event: AgentEvent,
        tags: dict[str, Any],
        scoped: bool,
    ) -> OpenSpan | None:
        """Start a span and track it; refused keys get a span that ends immediately."""
        handle = self._start(kind, name, resolution, event, tags)
        entry = OpenSpan(handle=handle, key=key, kind=kind)
        if scoped:
            entry.scope = self._tracer.enter_scope(handle)

        if not self._registry.slots(kind).put(key, entry):
            logger.warning(
                f"Duplicate {kind.value} key {key} while previous span is still open; "
                f"new span '{name}' is not tracked"
            )
            self._tracer.tag(handle, keys.DUPLICATE_KEY, True)
            self._finish(entry, SpanStatus.UNSET)
            return None
        return entry

    def _close(
        self,
        kind: SpanType,
        key: tuple,
        status: SpanStatus,
        error: str | None = None,
        tags: dict[str, Any] | None = None,
    ) -> OpenSpan | None:
        entry = self._registry.slots(kind).remove(key)
        if entry is None:
            logger.debug(f"No open {kind.value} span for key {key}; end event ignored")
            return None
        self._finish(entry, status, error, tags)
        return entry

    def _finish(
        self,
        entry: OpenSpan,
        status: SpanStatus,
        error: str | None = None,
        tags: dict[str, Any] | None = None,
    ) -> None:
        try:
            if tags:
                self._tracer.tag_all(entry.handle, tags)
            if status == SpanStatus.ERROR:
                self._tracer.set_error(entry.handle, error or "error")
            elif status == SpanStatus.OK:
                self._tracer.set_status(entry.handle, SpanStatus.OK)
        finally:
            if entry.scope is not None:
                entry.scope.close()
            self._tracer.end(entry.handle)

    def _resolve(self, kind: SpanType, event: AgentEvent, ambient: Any | None = None) -> Resolution:
        return resolve_parent(
            kind, event.run_id, self._registry, ambient=ambient,
            action_name=event.action_name, interaction_id=event.interaction_id,
        )

    def _point(
        self,
        kind: SpanType,
        name: str,
        event: AgentEvent,
        tags: dict[str, Any],
        status: SpanStatus = SpanStatus.OK,
        error: str | None = None,
        event_type_tag: str | None = None,
    ) -> None:
        """Open and immediately close a span for a point-in-time event."""
        resolution = self._resolve(kind, event)
        handle = self._start(kind, name, resolution, event, tags, event_type_tag)
        self._finish(OpenSpan(handle=handle, key=(event.run_id,), kind=kind), status, error)

    # ── run lifecycle ──────────────────────────────────────────────
    def _on_agent_created(self, event: AgentEvent) -> None:
        resolution = resolve_parent(
            SpanType.AGENT, event.run_id, self._registry,
            ambient=self._tracer.current_span(),
            parent_run_id=event.parent_run_id,
        )
        if event.parent_run_id and resolution.source == "root":
            logger.debug(f"Parent run {event.parent_run_id} not open; {event.run_id} starts a new trace")

        tags = {
            "embabel.agent.name": event.agent_name,
            "embabel.agent.is_subagent": event.is_subagent,
            "embabel.agent.parent_run_id": event.parent_run_id,
            "gen_ai.agent.name": event.agent_name,
        }
        tags.update({k: self._truncate(v) for k, v in event.attributes.items()})
        with self._plan_lock:
            self._plan_iterations.pop(event.run_id, None)
        self._open(SpanType.AGENT, keys.agent_key(event.run_id), event.agent_name,
                   resolution, event, tags, scoped=True)

    def _on_agent_finished(self, event: AgentEvent) -> None:
        run_id = event.run_id
        outcome = _AGENT_STATUS[event.type]

        for entry in self._registry.drain_run(run_id):
            logger.debug(f"Force-closing {entry.kind.value} span {entry.key} on run {outcome}")
            self._finish(
                entry, SpanStatus.ERROR,
                error=f"closed by run {outcome}",
                tags={keys.CLOSED_BY: RUN_TERMINATION},
            )
        with self._plan_lock:
            self._plan_iterations.pop(run_id, None)

        tags = {
            "embabel.agent.status": outcome,
            "embabel.agent.error": event.error if event.type == EventType.AGENT_FAILED else None,
            "gen_ai.usage.input_tokens": event.input_tokens,
            "gen_ai.usage.output_tokens": event.output_tokens,
            "embabel.agent.cost_usd": event.cost_usd,
        }
        if event.type == EventType.AGENT_COMPLETED:
            self._close(SpanType.AGENT, keys.agent_key(run_id), SpanStatus.OK, tags=tags)
        else:
            self._close(SpanType.AGENT, keys.agent_key(run_id), SpanStatus.ERROR,
                        error=event.error or outcome, tags=tags)

    # ── actions ────────────────────────────────────────────────────
    def _on_action_start(self, event: AgentEvent) -> None:
        resolution = resolve_parent(SpanType.ACTION, event.run_id, self._registry)
        tags = {
            "embabel.action.name": event.action_name,
            "embabel.action.short_name": event.action_short_name,
            keys.OPERATION_NAME: "execute_action",
        }
        self._open(SpanType.ACTION, keys.action_key(event.run_id, event.action_name),
                   event.action_short_name, resolution, event, tags, scoped=True)

    def _on_action_result(self, event: AgentEvent) -> None:
        status = event.status or ("SUCCESS" if event.success else "FAILED")
        failed = not event.success or status.upper() == "FAILED"
        tags = {
            "embabel.action.status": status,
            "embabel.action.duration_ms": _as_int(event.duration_ms),
        }
        self._close(
            SpanType.ACTION, keys.action_key(event.run_id, event.action_name),
            SpanStatus.ERROR if failed else SpanStatus.OK,
            error=event.error or f"action {status}",
            tags=tags,
        )

    # ── LLM calls ──────────────────────────────────────────────────
    def _on_llm_request(self, event: AgentEvent) -> None:
        resolution = self._resolve(SpanType.LLM_CALL, event)
        tags = {
            keys.OPERATION_NAME: "chat",
            "gen_ai.request.model": event.model,
            "gen_ai.provider.name": event.provider,
            "gen_ai.request.temperature": _as_str(event.temperature),
            "gen_ai.request.max_tokens": _as_str(event.max_tokens),
            "gen_ai.request.top_p": _as_str(event.top_p),
            "embabel.llm.interaction_id": event.interaction_id,
            "embabel.llm.output_class": event.output_class,
            "embabel.action.name": event.action_name,
        }
        self._open(SpanType.LLM_CALL, keys.llm_key(event.run_id, event.interaction_id),
                   keys.llm_span_name(event.model), resolution, event, tags, scoped=True)

    def _on_llm_response(self, event: AgentEvent) -> None:
        tags = {
            "embabel.llm.duration_ms": _as_int(event.duration_ms),
            "embabel.llm.output_type": event.output_class,
            "gen_ai.usage.input_tokens": event.input_tokens,
            "gen_ai.usage.output_tokens": event.output_tokens,
        }
        self._close(
            SpanType.LLM_CALL, keys.llm_key(event.run_id, event.interaction_id),
            SpanStatus.OK if event.success else SpanStatus.ERROR,
            error=event.error, tags=tags,
        )

    # ── tool loops & tool calls ────────────────────────────────────
    def _on_tool_loop_start(self, event: AgentEvent) -> None:
        resolution = self._resolve(SpanType.TOOL_LOOP, event)
        tags = {
            "embabel.tool_loop.interaction_id": event.interaction_id,
            "embabel.tool_loop.max_iterations": event.max_iterations,
            "embabel.tool_loop.tools": ",".join(event.tools) if event.tools else None,
            "embabel.action.name": event.action_name,
        }
        self._open(SpanType.TOOL_LOOP, keys.tool_loop_key(event.run_id, event.interaction_id),
                   keys.tool_loop_span_name(event.interaction_id), resolution, event, tags, scoped=True)

    def _on_tool_loop_completed(self, event: AgentEvent) -> None:
        tags = {
            "embabel.tool_loop.iterations": event.iterations,
            "embabel.tool_loop.replan_requested": event.replan_requested,
        }
        self._close(
            SpanType.TOOL_LOOP, keys.tool_loop_key(event.run_id, event.interaction_id),
            SpanStatus.OK if event.success else SpanStatus.ERROR,
            error=event.error, tags=tags,
        )

    def _on_tool_call_request(self, event: AgentEvent) -> None:
        # Tool calls run synchronously inside whatever LLM call or loop invoked them
        resolution = self._resolve(SpanType.TOOL_CALL, event, ambient=self._tracer.current_span())
        tags = {
            keys.OPERATION_NAME: "execute_tool",
            "gen_ai.tool.name": event.tool_name,
            "input.value": self._truncate(event.tool_input),
        }
        self._open(SpanType.TOOL_CALL, keys.tool_key(event.run_id, event.tool_name, event.interaction_id),
                   keys.tool_span_name(event.tool_name), resolution, event, tags, scoped=False)

    def _on_tool_call_response(self, event: AgentEvent) -> None:
        tags = {
            "output.value": self._truncate(event.tool_output),
            "embabel.tool.duration_ms": _as_int(event.duration_ms),
        }
        self._close(
            SpanType.TOOL_CALL, keys.tool_key(event.run_id, event.tool_name, event.interaction_id),
            SpanStatus.OK if event.success else SpanStatus.ERROR,
            error=event.error, tags=tags,
        )

    # ── point-in-time events ───────────────────────────────────────
    def _on_goal_achieved(self, event: AgentEvent) -> None:
        goal = event.name or "unknown"
        self._point(SpanType.GOAL, f"goal:{goal.rsplit('.', 1)[-1]}", event,
                    {"embabel.goal.name": goal}, event_type_tag="goal_achieved")

    def _on_ready_to_plan(self, event: AgentEvent) -> None:
        self._point(SpanType.PLANNING, "planning:ready", event, {})

    def _on_plan_formulated(self, event: AgentEvent) -> None:
        with self._plan_lock:
            iteration = self._plan_iterations.get(event.run_id, 0) + 1
            self._plan_iterations[event.run_id] = iteration
        name = "planning:formulated" if iteration == 1 else "planning:replanning"
        tags = {
            "embabel.plan.iteration": iteration,
            "embabel.plan.actions": ",".join(event.plan_actions) if event.plan_actions else None,
            "embabel.plan.goal": event.name,
        }
        self._point(SpanType.PLANNING, name, event, tags)

    def _on_replan_requested(self, event: AgentEvent) -> None:
        self._point(SpanType.PLANNING, "planning:replan_requested", event,
                    {"embabel.replan.reason": event.reason})

    def _on_state_transition(self, event: AgentEvent) -> None:
        target = event.to_state or "unknown"
        tags = {"embabel.state.from": event.from_state, "embabel.state.to": target}
        self._point(SpanType.STATE_TRANSITION, f"state:{target}", event, tags)

    def _on_lifecycle_state(self, event: AgentEvent) -> None:
        label, state, status = _LIFECYCLE_STATES[event.type]
        self._point(SpanType.LIFECYCLE, f"lifecycle:{label}", event,
                    {"embabel.lifecycle.state": state}, status=status,
                    error=event.error or f"agent {label}")

    def _on_rag(self, event: AgentEvent) -> None:
        if event.type == EventType.RAG_REQUEST:
            name, tags = "rag:request", {"embabel.rag.query": self._truncate(event.query)}
        else:
            name, tags = "rag:response", {
                "embabel.rag.query": self._truncate(event.query),
                "embabel.rag.result_count": event.result_count,
            }
        tags[keys.OPERATION_NAME] = "rag"
        self._point(SpanType.RAG, name, event, tags, event_type_tag="rag")

    def _on_ranking(self, event: AgentEvent) -> None:
        if event.type == EventType.RANKING_CHOICE_MADE:
            self._point(SpanType.RANKING, "ranking:choice_made", event,
                        {"embabel.ranking.chosen": event.chosen}, event_type_tag="ranking")
        else:
            self._point(SpanType.RANKING, "ranking:no_choice", event, {},
                        status=SpanStatus.ERROR, error=event.error or "no choice could be made",
                        event_type_tag="ranking")

    def _on_dynamic_agent(self, event: AgentEvent) -> None:
        tags = {keys.OPERATION_NAME: "create_agent", "embabel.agent.name": event.name}
        kind = SpanType.DYNAMIC_AGENT_CREATION
        if event.run_id:
            self._point(kind, f"dynamic_agent:{event.name}", event, tags)
            return
        # Created outside any run: standalone trace
        handle = self._start(kind, f"dynamic_agent:{event.name}", Resolution(None, "root"), event, tags)
        self._finish(OpenSpan(handle=handle, key=(event.name,), kind=kind), SpanStatus.OK)

    def _on_custom(self, event: AgentEvent) -> None:
        tags = {k: self._truncate(v) for k, v in event.attributes.items()}
        self._point(SpanType.CUSTOM, f"custom:{event.name}", event, tags)

    def _on_attributes(self, event: AgentEvent) -> None:
        target = self._registry.action(event.run_id, event.action_name) or self._registry.agent(event.run_id)
        if target is None:
            logger.debug(f"No open span to enrich for run {event.run_id}")
            return
        self._tracer.tag_all(target.handle, {k: self._truncate(v) for k, v in event.attributes.items()})


def _as_int(value: float | None) -> int | None:
    return None if value is None else int(value)


def _as_str(value: Any) -> str | None:
    return None if value is None else str(value)
