"""
Correlation keys and span/tag names.

Kinds that can run concurrently inside one run (LLM calls, tool loops, tool
calls) always carry the interaction id in their key. Span names never do:
every distinct span name becomes a distinct series in span-derived metrics.
"""

# Span names
TOOL_LOOP_SPAN_NAME = "tool-loop:execute"

# Common tags
EVENT_TYPE = "embabel.event.type"
RUN_ID = "embabel.agent.run_id"
OPERATION_NAME = "gen_ai.operation.name"
DUPLICATE_KEY = "correlation.duplicate_key"
CLOSED_BY = "embabel.closed_by"


def agent_key(run_id: str) -> tuple[str]:
    return (run_id,)


def action_key(run_id: str, action_name: str) -> tuple[str, str]:
    return (run_id, action_name)


def llm_key(run_id: str, interaction_id: str) -> tuple[str, str]:
    return (run_id, interaction_id)


def tool_loop_key(run_id: str, interaction_id: str) -> tuple[str, str]:
    return (run_id, interaction_id)


def tool_key(run_id: str, tool_name: str, interaction_id: str | None = None) -> tuple[str, str, str]:
    return (run_id, tool_name, interaction_id or "")


def tool_loop_span_name(interaction_id: str | None = None) -> str:
    """Constant for every interaction id."""
    return TOOL_LOOP_SPAN_NAME


def llm_span_name(model: str | None) -> str:
    return f"llm:{model or 'unknown'}"


def tool_span_name(tool_name: str) -> str:
    return f"tool:{tool_name}"
