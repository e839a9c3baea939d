"""
Correlation Registry — the open spans of every run, one store per span kind.

Keys are tuples whose first element is the run id (see tracing/keys.py). Each
store is guarded by its own lock; every operation is a single atomic
read-modify-write, so callers never lock anything themselves.

`put` never replaces a live entry. A refused put means two starts produced the
same key while the first was still open.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from tracing.keys import action_key, llm_key
from tracing.models import SpanType
from tracing.tracer import SpanScope

logger = logging.getLogger(__name__)

TRACKED_KINDS = (
    SpanType.AGENT,
    SpanType.ACTION,
    SpanType.LLM_CALL,
    SpanType.TOOL_LOOP,
    SpanType.TOOL_CALL,
)

# Children before parents, for force-closing a run
_DRAIN_ORDER = (
    SpanType.TOOL_CALL,
    SpanType.TOOL_LOOP,
    SpanType.LLM_CALL,
    SpanType.ACTION,
)


@dataclass
class OpenSpan:
    """A registry entry: the tracer handle plus its ambient scope, if any."""
    handle: Any
    key: tuple
    kind: SpanType
    scope: SpanScope | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


class SpanSlots:
    """Concurrent key → OpenSpan map for one span kind. Insertion ordered."""

    def __init__(self, kind: SpanType):
        self.kind = kind
        self._entries: dict[tuple, OpenSpan] = {}
        self._lock = threading.Lock()

    def put(self, key: tuple, entry: OpenSpan) -> bool:
        """Store `entry` unless `key` is already live. Returns False on a live key."""
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = entry
            return True

    def get(self, key: tuple) -> OpenSpan | None:
        with self._lock:
            return self._entries.get(key)

    def remove(self, key: tuple) -> OpenSpan | None:
        with self._lock:
            return self._entries.pop(key, None)

    def latest(self, run_id: str) -> OpenSpan | None:
        """Most recently stored live entry of the run."""
        with self._lock:
            for key in reversed(self._entries):
                if key[0] == run_id:
                    return self._entries[key]
        return None

    def drain_run(self, run_id: str) -> list[OpenSpan]:
        """Remove and return every entry of the run, newest first."""
        with self._lock:
            keys = [k for k in self._entries if k[0] == run_id]
            return [self._entries.pop(k) for k in reversed(keys)]

    def keys(self) -> list[tuple]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CorrelationRegistry:
    def __init__(self):
        self._slots = {kind: SpanSlots(kind) for kind in TRACKED_KINDS}

    def slots(self, kind: SpanType) -> SpanSlots:
        return self._slots[kind]

    def tracks(self, kind: SpanType) -> bool:
        return kind in self._slots

    # ── lookups used by the parent resolver ────────────────────────
    def agent(self, run_id: str | None) -> OpenSpan | None:
        if not run_id:
            return None
        return self._slots[SpanType.AGENT].get((run_id,))

    def _exact_or_latest(self, kind: SpanType, run_id: str | None, key: tuple | None) -> OpenSpan | None:
        if not run_id:
            return None
        slots = self._slots[kind]
        if key is not None:
            entry = slots.get(key)
            if entry is not None:
                return entry
        return slots.latest(run_id)

    def action(self, run_id: str | None, action_name: str | None = None) -> OpenSpan | None:
        """The named action of the run if it is open, else the run's latest action."""
        key = action_key(run_id, action_name) if action_name else None
        return self._exact_or_latest(SpanType.ACTION, run_id, key)

    def llm(self, run_id: str | None, interaction_id: str | None = None) -> OpenSpan | None:
        """The LLM call of this interaction if it is open, else the run's latest one."""
        key = llm_key(run_id, interaction_id) if interaction_id else None
        return self._exact_or_latest(SpanType.LLM_CALL, run_id, key)

    # ── run teardown ───────────────────────────────────────────────
    def drain_run(self, run_id: str) -> list[OpenSpan]:
        """Remove every non-agent entry of the run, innermost kinds first."""
        drained: list[OpenSpan] = []
        for kind in _DRAIN_ORDER:
            drained.extend(self._slots[kind].drain_run(run_id))
        return drained

    # ── diagnostics ────────────────────────────────────────────────
    def open_keys(self) -> dict[str, list[tuple]]:
        return {kind.value: slots.keys() for kind, slots in self._slots.items()}

    def open_count(self) -> int:
        return sum(len(s) for s in self._slots.values())
