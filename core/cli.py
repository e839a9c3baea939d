"""Agent Observability CLI — Main entry point."""
import json
import logging
from collections import defaultdict
from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

app = typer.Typer(name="agent-obs", help="Agent event tracing & metrics CLI")
console = Console()

_STATUS_STYLE = {"ok": "green", "error": "red", "unset": "dim"}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def load_events(path: Path) -> tuple[list, list[str]]:
    """Read a .jsonl/.json/.yaml event log. Returns (events, problems)."""
    from events.models import AgentEvent
    from core.errors import MalformedEventError

    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or []
        records = data.get("events", []) if isinstance(data, dict) else data
    elif path.suffix == ".json":
        data = json.loads(text)
        records = data.get("events", []) if isinstance(data, dict) else data
    else:
        records = []
        for lineno, line in enumerate(text.splitlines(), 1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                records.append({"type": None, "_error": f"line {lineno}: {e}"})

    events, problems = [], []
    for i, record in enumerate(records, 1):
        if isinstance(record, dict) and record.get("_error"):
            problems.append(f"#{i}: {record['_error']}")
            continue
        try:
            events.append(AgentEvent.from_dict(record))
        except MalformedEventError as e:
            problems.append(f"#{i}: {e}")
    return events, problems


def build_tree(spans: list[dict]) -> Tree:
    """Render one trace (rows as returned by the stores) as a rich Tree."""
    by_parent: dict[str | None, list[dict]] = defaultdict(list)
    ids = {s["id"] for s in spans}
    for s in sorted(spans, key=lambda s: s["started_at"] or ""):
        parent = s["parent_id"] if s["parent_id"] in ids else None
        by_parent[parent].append(s)

    def label(s: dict) -> str:
        style = _STATUS_STYLE.get(s["status"], "white")
        text = f"[{style}]{escape(s['name'])}[/] [dim]{s['span_type']} {s['duration_ms']:.1f}ms[/]"
        if s.get("error"):
            text += f" [red]({escape(s['error'])})[/]"
        return text

    roots = by_parent[None]
    title = f"[bold]trace {spans[0]['trace_id']}[/]" if spans else "[bold]empty trace[/]"
    tree = Tree(title)

    def add(node: Tree, span: dict) -> None:
        child = node.add(label(span))
        for c in by_parent.get(span["id"], []):
            add(child, c)

    for r in roots:
        add(tree, r)
    return tree


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Agent Observability — traces and metrics from agent runtime events."""
    if ctx.invoked_subcommand is None:
        console.print(Panel(
            "[bold green]Agent Observability v0.1.0[/]\n\n"
            "Commands:\n"
            "  [cyan]agent-obs replay[/]   — Replay an event log into traces/metrics\n"
            "  [cyan]agent-obs traces[/]   — List recent traces in the store\n"
            "  [cyan]agent-obs show[/]     — Show one trace as a tree\n"
            "  [cyan]agent-obs errors[/]   — List spans that ended in error\n",
            title="Welcome",
            border_style="green"
        ))


@app.command()
def replay(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Event log (.jsonl, .json, .yaml)"),
    db: str = typer.Option(None, help="Persist spans to this SQLite file instead of memory"),
    config: Path = typer.Option(None, exists=True, dir_okay=False, help="YAML observability config"),
    show_metrics: bool = typer.Option(False, "--metrics", help="Print Prometheus exposition after replay"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Feed an event log through the correlation engine and print the traces."""
    from prometheus_client import CollectorRegistry
    from core.config import ObservabilityConfig
    from events.dispatcher import EventDispatcher
    from metrics.sink import PrometheusMetrics
    from tracing.store import InMemoryStore, TraceStore
    from tracing.tracer import LocalTracer

    _setup_logging(verbose)
    cfg = ObservabilityConfig.from_yaml(config) if config else ObservabilityConfig.from_env()

    events, problems = load_events(path)
    for p in problems:
        console.print(f"[yellow]⚠ skipped malformed event {escape(p)}[/]")

    store = TraceStore(db) if db else InMemoryStore()
    tracer = LocalTracer(store)
    metrics = PrometheusMetrics(CollectorRegistry())
    dispatcher = EventDispatcher.from_config(cfg, tracer=tracer, metrics=metrics)
    count = dispatcher.dispatch_by_run(events)
    console.print(f"[bold]Replayed {count} events[/] ({len(problems)} skipped)")

    if isinstance(store, InMemoryStore):
        trace_ids = list(dict.fromkeys(s.trace_id for s in store.finished_spans()))
    else:
        trace_ids = [t["trace_id"] for t in reversed(store.get_recent_traces(limit=50))]
    for trace_id in trace_ids:
        console.print(build_tree(store.get_trace(trace_id)))

    if show_metrics:
        console.print(Panel(escape(metrics.exposition()), title="metrics", border_style="cyan"))


@app.command()
def traces(
    db: str = typer.Option(None, help="SQLite trace store (defaults to TRACE_DB_PATH)"),
    limit: int = typer.Option(10, help="How many traces to list"),
):
    """List recent traces in the SQLite store."""
    from tracing.store import TraceStore

    store = TraceStore(db)
    table = Table(title="Recent traces")
    for col in ("trace_id", "root", "spans", "errors", "started", "types"):
        table.add_column(col)
    for t in store.get_recent_traces(limit=limit):
        table.add_row(
            t["trace_id"], t["root_name"] or "", str(t["span_count"]), str(t["error_count"] or 0),
            t["started_at"] or "", t["span_types"] or "",
        )
    console.print(table)


@app.command()
def show(
    trace_id: str = typer.Argument(..., help="Trace id, or agent run id with --run"),
    db: str = typer.Option(None, help="SQLite trace store (defaults to TRACE_DB_PATH)"),
    by_run: bool = typer.Option(False, "--run", help="Look the spans up by agent run id"),
):
    """Render one stored trace (or one agent run) as a tree."""
    from tracing.store import TraceStore

    store = TraceStore(db)
    spans = store.get_run(trace_id) if by_run else store.get_trace(trace_id)
    if not spans:
        console.print(f"[red]No spans for trace {escape(trace_id)}[/]")
        raise typer.Exit(code=1)
    console.print(build_tree(spans))


@app.command()
def errors(
    db: str = typer.Option(None, help="SQLite trace store (defaults to TRACE_DB_PATH)"),
    limit: int = typer.Option(20, help="How many spans to list"),
):
    """List spans that ended in error, most recent first."""
    from tracing.store import TraceStore

    table = Table(title="Failed spans")
    for col in ("name", "type", "error", "trace_id"):
        table.add_column(col)
    for s in TraceStore(db).get_errors(limit=limit):
        table.add_row(s["name"], s["span_type"], s["error"] or "", s["trace_id"])
    console.print(table)


if __name__ == "__main__":
    app()
