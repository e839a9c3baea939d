import json

from typer.testing import CliRunner

from core.cli import app, load_events

runner = CliRunner()

EVENTS = [
    {"type": "agent_created", "run_id": "r1", "agent_name": "OrderAgent"},
    {"type": "action_start", "run_id": "r1", "action_name": "com.example.PlaceOrder"},
    {"type": "llm_request", "run_id": "r1", "interaction_id": "i-1", "model": "gpt-4"},
    {"type": "llm_response", "run_id": "r1", "interaction_id": "i-1", "duration_ms": 120},
    {"type": "action_result", "run_id": "r1", "action_name": "com.example.PlaceOrder", "duration_ms": 300},
    {"type": "agent_completed", "run_id": "r1", "input_tokens": 12},
]


def _write_jsonl(path, records, extra_lines=()):
    lines = [json.dumps(r) for r in records] + list(extra_lines)
    path.write_text("\n".join(lines) + "\n")
    return path


def test_load_events_reports_problems(tmp_path):
    path = _write_jsonl(tmp_path / "events.jsonl", EVENTS, ["{not json", '{"type": "bogus"}'])
    events, problems = load_events(path)
    assert len(events) == len(EVENTS)
    assert len(problems) == 2


def test_load_events_from_yaml(tmp_path):
    path = tmp_path / "events.yaml"
    path.write_text(
        "events:\n"
        "  - {type: agent_created, run_id: r1, agent_name: A}\n"
        "  - {type: agent_completed, run_id: r1}\n"
    )
    events, problems = load_events(path)
    assert [e.type.value for e in events] == ["agent_created", "agent_completed"]
    assert problems == []


def test_replay_prints_trace_tree(tmp_path):
    path = _write_jsonl(tmp_path / "events.jsonl", EVENTS, ["{not json"])
    result = runner.invoke(app, ["replay", str(path), "--metrics"])

    assert result.exit_code == 0, result.output
    assert "Replayed 6 events" in result.output
    assert "OrderAgent" in result.output
    assert "PlaceOrder" in result.output
    assert "llm:gpt-4" in result.output
    assert "skipped malformed event" in result.output
    assert "llm_requests_total" in result.output


def test_replay_into_sqlite_then_query(tmp_path):
    db = str(tmp_path / "traces.db")
    path = _write_jsonl(tmp_path / "events.jsonl", EVENTS)

    assert runner.invoke(app, ["replay", str(path), "--db", db]).exit_code == 0

    listing = runner.invoke(app, ["traces", "--db", db])
    assert listing.exit_code == 0
    assert "Recent traces" in listing.output

    by_run = runner.invoke(app, ["show", "r1", "--run", "--db", db])
    assert by_run.exit_code == 0
    assert "OrderAgent" in by_run.output

    missing = runner.invoke(app, ["show", "no-such-trace", "--db", db])
    assert missing.exit_code == 1

    assert runner.invoke(app, ["errors", "--db", db]).exit_code == 0


def test_replay_keeps_interleaved_runs_apart(tmp_path):
    from tracing.store import TraceStore

    db = str(tmp_path / "traces.db")
    path = _write_jsonl(tmp_path / "events.jsonl", [
        {"type": "agent_created", "run_id": "r1", "agent_name": "First"},
        {"type": "agent_created", "run_id": "r2", "agent_name": "Second"},
        {"type": "llm_request", "run_id": "r2", "interaction_id": "i-2", "model": "gpt-4"},
        {"type": "tool_call_request", "run_id": "r1", "tool_name": "Db"},
        {"type": "tool_call_response", "run_id": "r1", "tool_name": "Db"},
        {"type": "llm_response", "run_id": "r2", "interaction_id": "i-2"},
        {"type": "agent_completed", "run_id": "r1"},
        {"type": "agent_completed", "run_id": "r2"},
    ])

    result = runner.invoke(app, ["replay", str(path), "--db", db])
    assert result.exit_code == 0, result.output

    store = TraceStore(db)
    first = {s["name"]: s for s in store.get_run("r1")}
    second = {s["name"]: s for s in store.get_run("r2")}
    assert set(first) == {"First", "tool:Db"}
    assert set(second) == {"Second", "llm:gpt-4"}

    assert second["Second"]["parent_id"] is None
    assert second["Second"]["trace_id"] != first["First"]["trace_id"]
    assert first["tool:Db"]["parent_id"] == first["First"]["id"]
    assert second["llm:gpt-4"]["parent_id"] == second["Second"]["id"]
