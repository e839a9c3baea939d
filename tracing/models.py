"""
Trace data models.

A TraceSpan is one unit of observable work. Spans built from agent events form
trees like:
  OrderAgent                      (agent, root or child of a parent run)
  ├── planning:ready
  ├── PlaceOrder                  (action)
  │   ├── llm:gpt-4               (one per interaction id)
  │   │   └── tool-loop:execute
  │   │       └── tool:WebSearch
  │   └── llm:gpt-4               (parallel call, same action)
  └── goal:OrderPlaced

trace_id groups all spans belonging to one top-level run.
parent_id links children to parents.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SpanType(str, Enum):
    # Tracked in the correlation registry
    AGENT = "agent"
    ACTION = "action"
    LLM_CALL = "llm_call"
    TOOL_LOOP = "tool_loop"
    TOOL_CALL = "tool_call"

    # Point-in-time spans
    GOAL = "goal"
    PLANNING = "planning"
    STATE_TRANSITION = "state_transition"
    LIFECYCLE = "lifecycle"
    RAG = "rag"
    RANKING = "ranking"
    DYNAMIC_AGENT_CREATION = "dynamic_agent_creation"
    CUSTOM = "custom"


class SpanStatus(str, Enum):
    UNSET = "unset"
    OK = "ok"
    ERROR = "error"


@dataclass
class TraceSpan:
    """One observable unit of work, as recorded by the local tracer."""
    # Identity
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    parent_id: str | None = None
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    # What
    span_type: SpanType = SpanType.CUSTOM
    name: str = ""
    tags: dict[str, Any] = field(default_factory=dict)

    # When
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    ended_at: str | None = None
    duration_ms: float = 0.0

    # Status
    status: SpanStatus = SpanStatus.UNSET
    error: str | None = None

    @property
    def ended(self) -> bool:
        return self.ended_at is not None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None
