from events.models import EventType
from tracing.listener import TracingEventListener
from tracing.store import TraceStore
from tracing.tracer import LocalTracer


def _replay(listener, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.ACTION_START, action_name="Lookup"))
    listener.on_event(ev(EventType.TOOL_CALL_REQUEST, tool_name="Db"))
    listener.on_event(ev(EventType.TOOL_CALL_RESPONSE, tool_name="Db", success=False, error="timeout"))
    listener.on_event(ev(EventType.ACTION_RESULT, action_name="Lookup"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))


def test_sqlite_store_round_trips_a_trace(tmp_path, config, ev):
    store = TraceStore(str(tmp_path / "traces.db"))
    _replay(TracingEventListener(LocalTracer(store), config), ev)

    recent = store.get_recent_traces()
    assert len(recent) == 1
    assert recent[0]["span_count"] == 3
    assert recent[0]["error_count"] == 1

    spans = {s["name"]: s for s in store.get_trace(recent[0]["trace_id"])}
    assert set(spans) == {"TestAgent", "Lookup", "tool:Db"}
    tool = spans["tool:Db"]
    assert tool["tags"]["gen_ai.tool.name"] == "Db"
    assert tool["parent_id"] == spans["Lookup"]["id"]
    assert spans["Lookup"]["parent_id"] == spans["TestAgent"]["id"]

    errors = store.get_errors()
    assert [e["name"] for e in errors] == ["tool:Db"]
    assert errors[0]["error"] == "timeout"

    assert [s["name"] for s in store.get_spans_by_type("action")] == ["Lookup"]

    run = store.get_run("run-1")
    assert {s["name"] for s in run} == {"TestAgent", "Lookup", "tool:Db"}
    assert all(s["run_id"] == "run-1" for s in run)
    assert store.get_run("other-run") == []
    assert recent[0]["root_name"] == "TestAgent"


def test_memory_store_matches_sqlite_shape(store, listener, ev):
    _replay(listener, ev)

    agent = store.find("TestAgent")
    rows = {r["name"]: r for r in store.get_trace(agent.trace_id)}
    assert set(rows) == {"TestAgent", "Lookup", "tool:Db"}
    assert rows["TestAgent"]["status"] == "ok"
    assert rows["tool:Db"]["status"] == "error"
    assert store.get_errors()[0]["name"] == "tool:Db"
    assert store.get_spans_by_type("tool_call")[0]["span_type"] == "tool_call"
    assert len(store.get_run("run-1")) == 3

    store.clear()
    assert len(store) == 0


def test_default_path_comes_from_core_config(tmp_path, monkeypatch):
    import core.config

    path = tmp_path / "nested" / "default.db"
    monkeypatch.setattr(core.config, "TRACE_DB_PATH", str(path))

    TraceStore()
    assert path.exists()
