"""Span hierarchy, attributes and lifecycle produced by TracingEventListener."""
import logging
import threading

from core.config import ObservabilityConfig
from events.models import EventType
from tracing.keys import TOOL_LOOP_SPAN_NAME
from tracing.listener import TracingEventListener
from tracing.models import SpanStatus


def _in_thread(fn):
    t = threading.Thread(target=fn)
    t.start()
    t.join()


# ── agent lifecycle ────────────────────────────────────────────────

def test_agent_creation_opens_root_span_with_attributes(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    assert len(store) == 0  # still open

    listener.on_event(ev(EventType.AGENT_COMPLETED))

    spans = store.finished_spans()
    assert len(spans) == 1
    agent = spans[0]
    assert agent.name == "TestAgent"
    assert agent.is_root
    assert agent.status == SpanStatus.OK
    assert agent.tags["embabel.agent.name"] == "TestAgent"
    assert agent.tags["embabel.agent.run_id"] == "run-1"
    assert agent.tags["embabel.agent.is_subagent"] is False
    assert agent.tags["embabel.agent.status"] == "completed"


def test_agent_failure_sets_error_status(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.AGENT_FAILED, error="Something went wrong"))

    agent = store.find("TestAgent")
    assert agent.status == SpanStatus.ERROR
    assert agent.error == "Something went wrong"
    assert agent.tags["embabel.agent.status"] == "failed"
    assert agent.tags["embabel.agent.error"] == "Something went wrong"


def test_killed_run_ends_agent_span_with_error(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.AGENT_KILLED))

    agent = store.find("TestAgent")
    assert agent.status == SpanStatus.ERROR
    assert agent.tags["embabel.agent.status"] == "killed"


def test_sequential_runs_get_separate_traces(listener, store, ev):
    for run_id in ("run-1", "run-2"):
        listener.on_event(ev(EventType.AGENT_CREATED, run_id=run_id))
        listener.on_event(ev(EventType.AGENT_COMPLETED, run_id=run_id))

    first, second = store.finished_spans()
    assert first.is_root and second.is_root
    assert first.trace_id != second.trace_id


def test_subagent_is_child_of_parent_run_span(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED, run_id="parent", agent_name="ParentAgent"))

    # Spawned on another thread: no ambient span, so the parent run id decides
    _in_thread(lambda: listener.on_event(
        ev(EventType.AGENT_CREATED, run_id="child", agent_name="ChildAgent", parent_run_id="parent")
    ))
    _in_thread(lambda: listener.on_event(ev(EventType.AGENT_COMPLETED, run_id="child", agent_name="ChildAgent")))
    listener.on_event(ev(EventType.AGENT_COMPLETED, run_id="parent", agent_name="ParentAgent"))

    parent = store.find("ParentAgent")
    child = store.find("ChildAgent")
    assert child.parent_id == parent.id
    assert child.trace_id == parent.trace_id
    assert child.tags["embabel.agent.is_subagent"] is True
    assert child.tags["embabel.agent.parent_run_id"] == "parent"


def test_subagent_with_closed_parent_starts_new_trace(listener, store, ev):
    _in_thread(lambda: listener.on_event(
        ev(EventType.AGENT_CREATED, run_id="orphan", agent_name="Orphan", parent_run_id="gone")
    ))
    _in_thread(lambda: listener.on_event(ev(EventType.AGENT_COMPLETED, run_id="orphan")))

    assert store.find("Orphan").is_root


def test_run_inside_ambient_span_continues_that_trace(tracer, listener, store, ev):
    with tracer.span("http:POST /orders") as request:
        listener.on_event(ev(EventType.AGENT_CREATED))
        listener.on_event(ev(EventType.AGENT_COMPLETED))

    agent = store.find("TestAgent")
    assert agent.parent_id == request.id
    assert agent.trace_id == request.trace_id


# ── hierarchy ──────────────────────────────────────────────────────

def test_full_run_produces_expected_hierarchy(listener, store, ev):
    events = [
        ev(EventType.AGENT_CREATED),
        ev(EventType.READY_TO_PLAN),
        ev(EventType.PLAN_FORMULATED, plan_actions=["com.example.MyAction"]),
        ev(EventType.ACTION_START, action_name="com.example.MyAction"),
        ev(EventType.LLM_REQUEST, interaction_id="i-1", model="gpt-4", action_name="com.example.MyAction"),
        ev(EventType.TOOL_LOOP_START, interaction_id="i-1", tools=["WebSearch"], max_iterations=10),
        ev(EventType.TOOL_CALL_REQUEST, tool_name="WebSearch", tool_input='{"query": "test"}'),
        ev(EventType.TOOL_CALL_RESPONSE, tool_name="WebSearch", tool_output="3 results", duration_ms=50),
        ev(EventType.TOOL_LOOP_COMPLETED, interaction_id="i-1", iterations=3),
        ev(EventType.LLM_RESPONSE, interaction_id="i-1", model="gpt-4", duration_ms=250),
        ev(EventType.ACTION_RESULT, action_name="com.example.MyAction", status="SUCCESS", duration_ms=400),
        ev(EventType.GOAL_ACHIEVED, name="com.example.TestGoal"),
        ev(EventType.AGENT_COMPLETED),
    ]
    for e in events:
        listener.on_event(e)

    spans = store.finished_spans()
    assert len(spans) == 8

    agent = store.find("TestAgent")
    ready = store.find("planning:ready")
    formulated = store.find("planning:formulated")
    action = store.find("MyAction")
    llm = store.find("llm:gpt-4")
    loop = store.find(TOOL_LOOP_SPAN_NAME)
    tool = store.find("tool:WebSearch")
    goal = store.find("goal:TestGoal")

    assert {s.trace_id for s in spans} == {agent.trace_id}
    assert ready.parent_id == agent.id
    assert formulated.parent_id == agent.id
    assert action.parent_id == agent.id
    assert llm.parent_id == action.id
    assert loop.parent_id == llm.id
    assert tool.parent_id == loop.id
    assert goal.parent_id == agent.id
    assert listener.registry.open_count() == 0


def test_action_span_attributes(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.ACTION_START, action_name="com.example.MyAction"))
    listener.on_event(ev(EventType.ACTION_RESULT, action_name="com.example.MyAction", status="SUCCESS"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    action = store.find("MyAction")
    assert action.tags["embabel.action.name"] == "com.example.MyAction"
    assert action.tags["embabel.action.short_name"] == "MyAction"
    assert action.tags["embabel.action.status"] == "SUCCESS"
    assert action.tags["gen_ai.operation.name"] == "execute_action"
    assert action.status == SpanStatus.OK


def test_failed_action_sets_error_status(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.ACTION_START, action_name="MyAction"))
    listener.on_event(ev(EventType.ACTION_RESULT, action_name="MyAction", status="FAILED", success=False))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    action = store.find("MyAction")
    assert action.status == SpanStatus.ERROR
    assert action.tags["embabel.action.status"] == "FAILED"


def test_multiple_actions_are_children_of_agent(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    for name in ("Action1", "Action2"):
        listener.on_event(ev(EventType.ACTION_START, action_name=name))
        listener.on_event(ev(EventType.ACTION_RESULT, action_name=name))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    agent = store.find("TestAgent")
    assert store.find("Action1").parent_id == agent.id
    assert store.find("Action2").parent_id == agent.id


def test_llm_span_attributes(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(
        EventType.LLM_REQUEST, interaction_id="using", model="gpt-4", provider="openai",
        temperature=0.7, max_tokens=1000, top_p=0.9, output_class="String",
    ))
    listener.on_event(ev(EventType.LLM_RESPONSE, interaction_id="using", duration_ms=120,
                         output_class="String", input_tokens=10, output_tokens=5))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    llm = store.find("llm:gpt-4")
    assert llm.tags["gen_ai.operation.name"] == "chat"
    assert llm.tags["gen_ai.request.model"] == "gpt-4"
    assert llm.tags["gen_ai.provider.name"] == "openai"
    assert llm.tags["gen_ai.request.temperature"] == "0.7"
    assert llm.tags["gen_ai.request.max_tokens"] == "1000"
    assert llm.tags["gen_ai.request.top_p"] == "0.9"
    assert llm.tags["embabel.llm.interaction_id"] == "using"
    assert llm.tags["embabel.llm.output_class"] == "String"
    assert llm.tags["embabel.llm.duration_ms"] == 120
    assert llm.tags["gen_ai.usage.input_tokens"] == 10
    assert llm.tags["embabel.event.type"] == "llm_call"
    assert llm.status == SpanStatus.OK


def test_llm_falls_back_to_agent_without_action(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.LLM_REQUEST, interaction_id="i-1", model="gpt-4"))
    listener.on_event(ev(EventType.LLM_RESPONSE, interaction_id="i-1", success=False, error="rate limited"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    llm = store.find("llm:gpt-4")
    assert llm.parent_id == store.find("TestAgent").id
    assert llm.status == SpanStatus.ERROR
    assert llm.error == "rate limited"


def test_tool_call_without_ambient_span_falls_back_to_action(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.ACTION_START, action_name="MyAction"))

    _in_thread(lambda: listener.on_event(ev(EventType.TOOL_CALL_REQUEST, tool_name="WebSearch")))
    _in_thread(lambda: listener.on_event(ev(EventType.TOOL_CALL_RESPONSE, tool_name="WebSearch")))

    listener.on_event(ev(EventType.ACTION_RESULT, action_name="MyAction"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    tool = store.find("tool:WebSearch")
    assert tool.parent_id == store.find("MyAction").id
    assert tool.tags["gen_ai.tool.name"] == "WebSearch"


def test_tool_loop_falls_back_to_action_when_llm_tracing_disabled(tracer, store, ev):
    listener = TracingEventListener(tracer, ObservabilityConfig(trace_llm_calls=False))
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.ACTION_START, action_name="MyAction"))
    listener.on_event(ev(EventType.LLM_REQUEST, interaction_id="i-1", model="gpt-4"))
    listener.on_event(ev(EventType.TOOL_LOOP_START, interaction_id="i-1"))
    listener.on_event(ev(EventType.TOOL_LOOP_COMPLETED, interaction_id="i-1", iterations=2))
    listener.on_event(ev(EventType.LLM_RESPONSE, interaction_id="i-1"))
    listener.on_event(ev(EventType.ACTION_RESULT, action_name="MyAction"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    assert store.find("llm:gpt-4") is None
    assert store.find(TOOL_LOOP_SPAN_NAME).parent_id == store.find("MyAction").id


def test_tool_input_is_truncated(tracer, store, ev):
    listener = TracingEventListener(tracer, ObservabilityConfig(max_attribute_length=10))
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.TOOL_CALL_REQUEST, tool_name="Echo", tool_input="x" * 50))
    listener.on_event(ev(EventType.TOOL_CALL_RESPONSE, tool_name="Echo", tool_output="short"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    tool = store.find("tool:Echo")
    assert tool.tags["input.value"] == "x" * 10 + "..."
    assert tool.tags["output.value"] == "short"


# ── point events ───────────────────────────────────────────────────

def test_lifecycle_states(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.AGENT_STUCK))
    listener.on_event(ev(EventType.AGENT_WAITING))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    stuck = store.find("lifecycle:stuck")
    waiting = store.find("lifecycle:waiting")
    assert stuck.status == SpanStatus.ERROR
    assert stuck.tags["embabel.lifecycle.state"] == "STUCK"
    assert waiting.status == SpanStatus.OK
    assert waiting.parent_id == store.find("TestAgent").id


def test_state_transition_nests_under_open_action(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.ACTION_START, action_name="MyAction"))
    listener.on_event(ev(EventType.STATE_TRANSITION, from_state="Draft", to_state="Review"))
    listener.on_event(ev(EventType.ACTION_RESULT, action_name="MyAction"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    state = store.find("state:Review")
    assert state.parent_id == store.find("MyAction").id
    assert state.tags["embabel.state.from"] == "Draft"


def test_replanning_increments_iteration(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.PLAN_FORMULATED))
    listener.on_event(ev(EventType.REPLAN_REQUESTED, reason="Tool loop detected issue"))
    listener.on_event(ev(EventType.PLAN_FORMULATED))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    assert store.find("planning:formulated").tags["embabel.plan.iteration"] == 1
    assert store.find("planning:replanning").tags["embabel.plan.iteration"] == 2
    replan = store.find("planning:replan_requested")
    assert replan.tags["embabel.replan.reason"] == "Tool loop detected issue"
    assert replan.status == SpanStatus.OK


def test_rag_ranking_and_custom_spans(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.RAG_REQUEST, query="What is the meaning of life?"))
    listener.on_event(ev(EventType.RAG_RESPONSE, query="test query", result_count=42))
    listener.on_event(ev(EventType.RANKING_CHOICE_MADE, chosen="TestAgent"))
    listener.on_event(ev(EventType.RANKING_NO_CHOICE))
    listener.on_event(ev(EventType.CUSTOM, name="checkpoint", attributes={"step": 3}))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    request = store.find("rag:request")
    assert request.tags["embabel.rag.query"] == "What is the meaning of life?"
    assert request.tags["embabel.event.type"] == "rag"
    assert request.tags["gen_ai.operation.name"] == "rag"
    assert store.find("rag:response").tags["embabel.rag.result_count"] == 42
    assert store.find("ranking:choice_made").tags["embabel.ranking.chosen"] == "TestAgent"
    assert store.find("ranking:no_choice").status == SpanStatus.ERROR
    assert store.find("custom:checkpoint").tags["step"] == "3"
    assert request.parent_id == store.find("TestAgent").id


def test_dynamic_agent_outside_run_is_standalone(listener, store, ev):
    listener.on_event(ev(EventType.DYNAMIC_AGENT_CREATED, run_id="", name="DynamicBot"))

    span = store.find("dynamic_agent:DynamicBot")
    assert span.is_root
    assert span.tags["gen_ai.operation.name"] == "create_agent"
    assert span.tags["embabel.event.type"] == "dynamic_agent_creation"
    assert span.tags["embabel.agent.name"] == "DynamicBot"


def test_attribute_event_enriches_open_action(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.ACTION_START, action_name="MyAction"))
    listener.on_event(ev(EventType.ATTRIBUTES, attributes={"customer.tier": "gold"}))
    listener.on_event(ev(EventType.ACTION_RESULT, action_name="MyAction"))
    listener.on_event(ev(EventType.ATTRIBUTES, attributes={"order.id": "o-9"}))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    assert store.find("MyAction").tags["customer.tier"] == "gold"
    assert store.find("TestAgent").tags["order.id"] == "o-9"
    assert len(store) == 2


def test_children_attach_to_the_action_they_name(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.ACTION_START, action_name="A"))
    listener.on_event(ev(EventType.ACTION_START, action_name="B"))

    listener.on_event(ev(EventType.LLM_REQUEST, interaction_id="i-a", model="model-a", action_name="A"))
    listener.on_event(ev(EventType.LLM_RESPONSE, interaction_id="i-a"))
    listener.on_event(ev(EventType.LLM_REQUEST, interaction_id="i-x", model="model-x"))
    listener.on_event(ev(EventType.LLM_RESPONSE, interaction_id="i-x"))
    listener.on_event(ev(EventType.STATE_TRANSITION, to_state="Waiting", action_name="A"))
    listener.on_event(ev(EventType.ATTRIBUTES, attributes={"step": "first"}, action_name="A"))

    listener.on_event(ev(EventType.ACTION_RESULT, action_name="B"))
    listener.on_event(ev(EventType.ACTION_RESULT, action_name="A"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    a, b = store.find("A"), store.find("B")
    assert store.find("llm:model-a").parent_id == a.id
    assert store.find("llm:model-x").parent_id == b.id  # unnamed: latest open action
    assert store.find("state:Waiting").parent_id == a.id
    assert a.tags["step"] == "first"
    assert "step" not in b.tags


def test_tool_loop_attaches_to_llm_of_same_interaction(listener, store, ev):
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.LLM_REQUEST, interaction_id="i-1", model="first"))
    listener.on_event(ev(EventType.LLM_REQUEST, interaction_id="i-2", model="second"))
    listener.on_event(ev(EventType.TOOL_LOOP_START, interaction_id="i-1", max_iterations=5))
    listener.on_event(ev(EventType.TOOL_LOOP_COMPLETED, interaction_id="i-1", iterations=1))
    listener.on_event(ev(EventType.LLM_RESPONSE, interaction_id="i-2"))
    listener.on_event(ev(EventType.LLM_RESPONSE, interaction_id="i-1"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    assert store.find(TOOL_LOOP_SPAN_NAME).parent_id == store.find("llm:first").id


# ── configuration switches ─────────────────────────────────────────

def test_disabled_tool_tracing_creates_no_tool_spans(tracer, store, ev):
    listener = TracingEventListener(tracer, ObservabilityConfig(trace_tool_calls=False))
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.ACTION_START, action_name="MyAction"))
    listener.on_event(ev(EventType.TOOL_CALL_REQUEST, tool_name="WebSearch"))
    listener.on_event(ev(EventType.TOOL_CALL_RESPONSE, tool_name="WebSearch"))
    listener.on_event(ev(EventType.ACTION_RESULT, action_name="MyAction"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    assert store.find("tool:WebSearch") is None
    assert {s.name for s in store.finished_spans()} == {"TestAgent", "MyAction"}


def test_disabled_categories_leave_others_untouched(tracer, store, ev):
    config = ObservabilityConfig(
        trace_planning=False, trace_rag=False, trace_ranking=False,
        trace_lifecycle_states=False, trace_dynamic_agent_creation=False,
    )
    listener = TracingEventListener(tracer, config)
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.REPLAN_REQUESTED, reason="x"))
    listener.on_event(ev(EventType.RAG_REQUEST, query="q"))
    listener.on_event(ev(EventType.RANKING_CHOICE_MADE, chosen="A"))
    listener.on_event(ev(EventType.AGENT_STUCK))
    listener.on_event(ev(EventType.DYNAMIC_AGENT_CREATED, name="Bot"))
    listener.on_event(ev(EventType.LLM_REQUEST, interaction_id="i-1", model="gpt-4"))
    listener.on_event(ev(EventType.LLM_RESPONSE, interaction_id="i-1"))
    listener.on_event(ev(EventType.AGENT_COMPLETED))

    assert {s.name for s in store.finished_spans()} == {"TestAgent", "llm:gpt-4"}


def test_agent_events_switch_disables_all_tracing(tracer, store, ev):
    listener = TracingEventListener(tracer, ObservabilityConfig(trace_agent_events=False))
    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.AGENT_COMPLETED))
    assert len(store) == 0


# ── error containment ──────────────────────────────────────────────

def test_orphan_end_events_are_noops(listener, store, ev):
    listener.on_event(ev(EventType.ACTION_RESULT, action_name="Ghost"))
    listener.on_event(ev(EventType.LLM_RESPONSE, interaction_id="i-9"))
    listener.on_event(ev(EventType.TOOL_LOOP_COMPLETED, interaction_id="i-9"))
    listener.on_event(ev(EventType.TOOL_CALL_RESPONSE, tool_name="Ghost"))
    listener.on_event(ev(EventType.AGENT_COMPLETED, run_id="never-started"))

    assert len(store) == 0


def test_malformed_events_are_dropped_with_warning(listener, store, ev, caplog):
    with caplog.at_level(logging.WARNING):
        listener.on_event(ev(EventType.LLM_REQUEST, model="gpt-4"))   # no interaction id
        listener.on_event(ev(EventType.ACTION_START))                 # no action name
        listener.on_event("not an event")

    assert len(store) == 0
    assert caplog.text.count("Dropping malformed event") == 3

    listener.on_event(ev(EventType.AGENT_CREATED))
    listener.on_event(ev(EventType.AGENT_COMPLETED))
    assert len(store) == 1


def test_missing_parent_degrades_without_raising(listener, store, ev, caplog):
    with caplog.at_level(logging.WARNING):
        listener.on_event(ev(EventType.GOAL_ACHIEVED, run_id="unknown-run", name="Goal"))

    goal = store.find("goal:Goal")
    assert goal is not None
    assert goal.is_root
    assert "No parent span found" in caplog.text


def test_tracer_failure_is_contained(store, config, ev, caplog):
    class BrokenTracer:
        def current_span(self):
            raise RuntimeError("backend down")

    listener = TracingEventListener(BrokenTracer(), config)
    with caplog.at_level(logging.ERROR):
        listener.on_event(ev(EventType.AGENT_CREATED))
    assert "Tracing failed" in caplog.text
