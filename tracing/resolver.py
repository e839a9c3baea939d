"""
Parent Resolver — which open span a new span hangs under.

Pure: reads the registry and the ambient span, changes nothing. First match wins.
"action" is the action the event names when that one is open, else the run's
latest open action; "llm_call" likewise prefers the event's interaction id.

  agent            ambient → parent run's agent → new root
  action           agent
  llm_call         action → agent
  tool_loop        llm_call → action → agent
  tool_call        ambient → action → agent
  everything else  action → agent
"""
from dataclasses import dataclass
from typing import Any

from tracing.models import SpanType
from tracing.registry import CorrelationRegistry


@dataclass(frozen=True)
class Resolution:
    """Outcome of a lookup. `parent` is None for a root or a miss."""
    parent: Any | None
    source: str          # "ambient" | "parent_run" | "agent" | "action" | "llm_call" | "root" | "none"

    @property
    def is_root(self) -> bool:
        return self.source == "root"

    @property
    def is_miss(self) -> bool:
        return self.source == "none"


def _first(*candidates: tuple[str, Any]) -> Resolution | None:
    for source, entry in candidates:
        if entry is not None:
            return Resolution(getattr(entry, "handle", entry), source)
    return None


def resolve_parent(
    kind: SpanType,
    run_id: str | None,
    registry: CorrelationRegistry,
    ambient: Any | None = None,
    parent_run_id: str | None = None,
    action_name: str | None = None,
    interaction_id: str | None = None,
) -> Resolution:
    if kind == SpanType.AGENT:
        found = _first(
            ("ambient", ambient),
            ("parent_run", registry.agent(parent_run_id)),
        )
        return found or Resolution(None, "root")

    if kind == SpanType.ACTION:
        found = _first(("agent", registry.agent(run_id)))

    elif kind == SpanType.LLM_CALL:
        found = _first(
            ("action", registry.action(run_id, action_name)),
            ("agent", registry.agent(run_id)),
        )

    elif kind == SpanType.TOOL_LOOP:
        found = _first(
            ("llm_call", registry.llm(run_id, interaction_id)),
            ("action", registry.action(run_id, action_name)),
            ("agent", registry.agent(run_id)),
        )

    elif kind == SpanType.TOOL_CALL:
        found = _first(
            ("ambient", ambient),
            ("action", registry.action(run_id, action_name)),
            ("agent", registry.agent(run_id)),
        )

    else:
        found = _first(
            ("action", registry.action(run_id, action_name)),
            ("agent", registry.agent(run_id)),
        )

    return found or Resolution(None, "none")
