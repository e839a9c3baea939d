"""
Agent runtime event model.

Every lifecycle notification is one AgentEvent. `type` is the discriminator;
the remaining fields are optional and only meaningful for some types:

  agent_created ─┬─ action_start ─┬─ llm_request ─┬─ tool_loop_start
                 │                │               │   tool_call_request/response
                 │                │               │  tool_loop_completed
                 │                │               llm_response
                 │                action_result
                 ├─ goal_achieved / planning / state / lifecycle / rag / ranking
                 └─ agent_completed | agent_failed | agent_killed

Events for one run arrive in causal order; runs interleave freely.
"""
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

from core.errors import MalformedEventError


class EventType(str, Enum):
    # Run lifecycle
    AGENT_CREATED = "agent_created"
    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"
    AGENT_KILLED = "agent_killed"

    # Actions
    ACTION_START = "action_start"
    ACTION_RESULT = "action_result"

    # LLM
    LLM_REQUEST = "llm_request"
    LLM_RESPONSE = "llm_response"

    # Tools
    TOOL_LOOP_START = "tool_loop_start"
    TOOL_LOOP_COMPLETED = "tool_loop_completed"
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESPONSE = "tool_call_response"

    # Goals & planning
    GOAL_ACHIEVED = "goal_achieved"
    READY_TO_PLAN = "ready_to_plan"
    PLAN_FORMULATED = "plan_formulated"
    REPLAN_REQUESTED = "replan_requested"
    STATE_TRANSITION = "state_transition"

    # Lifecycle states
    AGENT_STUCK = "agent_stuck"
    AGENT_WAITING = "agent_waiting"
    AGENT_PAUSED = "agent_paused"

    # Retrieval
    RAG_REQUEST = "rag_request"
    RAG_RESPONSE = "rag_response"

    # Ranking / dynamic agents
    RANKING_CHOICE_MADE = "ranking_choice_made"
    RANKING_NO_CHOICE = "ranking_no_choice"
    DYNAMIC_AGENT_CREATED = "dynamic_agent_created"

    # Enrichment / extension
    ATTRIBUTES = "attributes"
    CUSTOM = "custom"


# Identifiers each type cannot be correlated without
REQUIRED_FIELDS: dict[EventType, tuple[str, ...]] = {
    EventType.AGENT_CREATED: ("run_id", "agent_name"),
    EventType.ACTION_START: ("run_id", "action_name"),
    EventType.ACTION_RESULT: ("run_id", "action_name"),
    EventType.LLM_REQUEST: ("run_id", "interaction_id"),
    EventType.LLM_RESPONSE: ("run_id", "interaction_id"),
    EventType.TOOL_LOOP_START: ("run_id", "interaction_id"),
    EventType.TOOL_LOOP_COMPLETED: ("run_id", "interaction_id"),
    EventType.TOOL_CALL_REQUEST: ("run_id", "tool_name"),
    EventType.TOOL_CALL_RESPONSE: ("run_id", "tool_name"),
    EventType.DYNAMIC_AGENT_CREATED: ("name",),
    EventType.CUSTOM: ("run_id", "name"),
}

RUN_TERMINAL_TYPES = frozenset({
    EventType.AGENT_COMPLETED,
    EventType.AGENT_FAILED,
    EventType.AGENT_KILLED,
})


@dataclass
class AgentEvent:
    """One notification from the agent runtime."""
    type: EventType

    # Correlation
    run_id: str = ""
    parent_run_id: str | None = None
    agent_name: str = ""
    action_name: str | None = None
    interaction_id: str | None = None

    # Outcome
    success: bool = True
    status: str | None = None
    error: str | None = None
    duration_ms: float | None = None

    # LLM
    model: str | None = None
    provider: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    output_class: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None

    # Tools
    tool_name: str | None = None
    tool_input: str | None = None
    tool_output: str | None = None
    tools: list[str] = field(default_factory=list)
    iterations: int | None = None
    max_iterations: int | None = None
    replan_requested: bool = False

    # Planning / goals / state / rag / ranking / custom
    name: str | None = None
    reason: str | None = None
    plan_actions: list[str] = field(default_factory=list)
    from_state: str | None = None
    to_state: str | None = None
    query: str | None = None
    result_count: int | None = None
    chosen: str | None = None

    attributes: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    # ── derived ────────────────────────────────────────────────────
    @property
    def action_short_name(self) -> str | None:
        """`com.example.MyAction` → `MyAction`."""
        if not self.action_name:
            return None
        return self.action_name.rsplit(".", 1)[-1]

    @property
    def is_subagent(self) -> bool:
        return bool(self.parent_run_id)

    def validate(self) -> "AgentEvent":
        """Raise MalformedEventError if a required identifier is missing."""
        if not isinstance(self.type, EventType):
            raise MalformedEventError(str(self.type), "unknown event type")
        missing = [f for f in REQUIRED_FIELDS.get(self.type, ("run_id",)) if not getattr(self, f)]
        if missing:
            raise MalformedEventError(self.type.value, f"missing required fields: {missing}")
        return self

    # ── parsing ────────────────────────────────────────────────────
    @classmethod
    def from_dict(cls, data: dict) -> "AgentEvent":
        """Build an event from a JSON/YAML mapping. Unknown keys land in `attributes`."""
        if not isinstance(data, dict):
            raise MalformedEventError(None, f"event must be a mapping, got {type(data).__name__}")
        raw_type = data.get("type")
        try:
            event_type = EventType(raw_type)
        except ValueError:
            raise MalformedEventError(str(raw_type), "unknown event type") from None

        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {"type": event_type}
        extra = dict(data.get("attributes") or {})
        for key, value in data.items():
            if key in ("type", "attributes"):
                continue
            if key in known:
                values[key] = value
            else:
                extra[key] = value
        if isinstance(values.get("timestamp"), str):
            try:
                values["timestamp"] = datetime.fromisoformat(values["timestamp"])
            except ValueError:
                raise MalformedEventError(event_type.value, f"bad timestamp: {values['timestamp']!r}") from None
        values["attributes"] = extra
        return cls(**values).validate()
