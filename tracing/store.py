"""
Span stores — where the local tracer puts finished spans.

Both backends answer the same questions:
- every span of a trace, in start order
- every span of one agent run
- spans of one type
- spans that ended in error

TraceStore keeps them in SQLite for the CLI and long-running processes;
InMemoryStore keeps a list for tests and one-shot replays.
"""
import os
import json
import sqlite3
import logging
import threading
from contextlib import closing

from core import config
from tracing.keys import RUN_ID
from tracing.models import TraceSpan, SpanType, SpanStatus

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS spans (
        id           TEXT PRIMARY KEY,
        parent_id    TEXT,
        trace_id     TEXT    NOT NULL,
        run_id       TEXT,
        span_type    TEXT    NOT NULL,
        name         TEXT    NOT NULL,
        status       TEXT    NOT NULL DEFAULT 'unset',
        started_at   TEXT,
        ended_at     TEXT,
        duration_ms  REAL    DEFAULT 0,
        tags         TEXT    DEFAULT '{}',
        error        TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_spans_trace   ON spans(trace_id);
    CREATE INDEX IF NOT EXISTS idx_spans_run     ON spans(run_id);
    CREATE INDEX IF NOT EXISTS idx_spans_type    ON spans(span_type);
    CREATE INDEX IF NOT EXISTS idx_spans_status  ON spans(status);
"""

_TRACE_SUMMARY = """
    SELECT
        s.trace_id,
        COUNT(*)                                            AS span_count,
        SUM(s.status = 'error')                             AS error_count,
        MIN(s.started_at)                                   AS started_at,
        MAX(s.ended_at)                                     AS ended_at,
        GROUP_CONCAT(DISTINCT s.span_type)                  AS span_types,
        (SELECT r.name FROM spans r
          WHERE r.trace_id = s.trace_id AND r.parent_id IS NULL
          ORDER BY r.started_at LIMIT 1)                    AS root_name
    FROM spans s
    GROUP BY s.trace_id
    ORDER BY MIN(s.started_at) DESC
    LIMIT ?
"""


class TraceStore:
    def __init__(self, db_path: str | None = None):
        self._db_path = db_path or config.TRACE_DB_PATH
        os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        # One connection per call; writers queue on this lock
        self._write_lock = threading.Lock()
        with closing(self._connect()) as conn:
            conn.executescript(_SCHEMA)
        logger.debug(f"TraceStore ready at {self._db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _rows(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with closing(self._connect()) as conn:
            return conn.execute(sql, params).fetchall()

    def _spans(self, where: str, params: tuple, order: str = "started_at", limit: int | None = None) -> list[dict]:
        sql = f"SELECT * FROM spans WHERE {where} ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (limit,)
        return [_row_to_dict(r) for r in self._rows(sql, params)]

    # ── write ──────────────────────────────────────────────────────
    def save(self, span: TraceSpan) -> None:
        """Persist a finished span (replaces an earlier save of the same id)."""
        row = (
            span.id, span.parent_id, span.trace_id, span.tags.get(RUN_ID),
            span.span_type.value, span.name, span.status.value,
            span.started_at, span.ended_at, span.duration_ms,
            json.dumps(span.tags, default=str), span.error,
        )
        with self._write_lock, closing(self._connect()) as conn:
            with conn:
                conn.execute(f"INSERT OR REPLACE INTO spans VALUES ({','.join('?' * len(row))})", row)

    # ── read ───────────────────────────────────────────────────────
    def get_trace(self, trace_id: str) -> list[dict]:
        return self._spans("trace_id = ?", (trace_id,))

    def get_run(self, run_id: str) -> list[dict]:
        """Spans tagged with this agent run id (sub-agent runs excluded)."""
        return self._spans("run_id = ?", (run_id,))

    def get_recent_traces(self, limit: int = 10) -> list[dict]:
        """One summary row per trace, newest first."""
        return [dict(r) for r in self._rows(_TRACE_SUMMARY, (limit,))]

    def get_spans_by_type(self, span_type: str, limit: int = 20) -> list[dict]:
        return self._spans("span_type = ?", (span_type,), order="started_at DESC", limit=limit)

    def get_errors(self, limit: int = 20) -> list[dict]:
        return self._spans("status = 'error'", (), order="started_at DESC", limit=limit)


def _row_to_dict(row: sqlite3.Row) -> dict:
    d = dict(row)
    try:
        d["tags"] = json.loads(d.get("tags") or "{}")
    except json.JSONDecodeError:
        logger.warning(f"Unreadable tags on span {d.get('id')}")
        d["tags"] = {}
    return d


class InMemoryStore:
    """Thread-safe list of finished spans, in end order."""

    def __init__(self):
        self._spans: list[TraceSpan] = []
        self._lock = threading.Lock()

    def save(self, span: TraceSpan) -> None:
        with self._lock:
            self._spans.append(span)

    def finished_spans(self) -> list[TraceSpan]:
        with self._lock:
            return list(self._spans)

    def find(self, name: str) -> TraceSpan | None:
        """First finished span with this name."""
        for span in self.finished_spans():
            if span.name == name:
                return span
        return None

    def find_all(self, name: str) -> list[TraceSpan]:
        return [s for s in self.finished_spans() if s.name == name]

    def get_trace(self, trace_id: str) -> list[dict]:
        spans = [s for s in self.finished_spans() if s.trace_id == trace_id]
        spans.sort(key=lambda s: s.started_at)
        return [span_to_dict(s) for s in spans]

    def get_run(self, run_id: str) -> list[dict]:
        spans = [s for s in self.finished_spans() if s.tags.get(RUN_ID) == run_id]
        spans.sort(key=lambda s: s.started_at)
        return [span_to_dict(s) for s in spans]

    def get_errors(self, limit: int = 20) -> list[dict]:
        errors = [s for s in self.finished_spans() if s.status == SpanStatus.ERROR]
        return [span_to_dict(s) for s in errors[-limit:]]

    def get_spans_by_type(self, span_type: str, limit: int = 20) -> list[dict]:
        matched = [s for s in self.finished_spans() if s.span_type == SpanType(span_type)]
        return [span_to_dict(s) for s in matched[-limit:]]

    def clear(self) -> None:
        with self._lock:
            self._spans.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._spans)


def span_to_dict(span: TraceSpan) -> dict:
    """Same shape TraceStore returns for a row."""
    return {
        "id": span.id,
        "parent_id": span.parent_id,
        "trace_id": span.trace_id,
        "run_id": span.tags.get(RUN_ID),
        "span_type": span.span_type.value,
        "name": span.name,
        "status": span.status.value,
        "started_at": span.started_at,
        "ended_at": span.ended_at,
        "duration_ms": span.duration_ms,
        "tags": dict(span.tags),
        "error": span.error,
    }
