"""
Metrics capability and its Prometheus backend.

Metric names are dotted (`agent.errors`); the Prometheus backend turns dots into
underscores and follows Prometheus naming:

  increment_counter("agent.errors")      → agent_errors_total
  record_timer("agent.duration")         → agent_duration_seconds   (histogram)
  set_gauge("agent.active")              → agent_active
  record_distribution("tool_loop.iterations") → tool_loop_iterations (summary)

Label names are fixed by the first call for each metric.
"""
import logging
import threading

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Summary, generate_latest

logger = logging.getLogger(__name__)

DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)


class MetricsSink:
    """Abstract metrics capability. Tags must be low-cardinality strings."""

    def increment_counter(self, name: str, amount: float = 1.0, tags: dict[str, str] | None = None) -> None:
        raise NotImplementedError

    def record_timer(self, name: str, seconds: float, tags: dict[str, str] | None = None) -> None:
        raise NotImplementedError

    def set_gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        raise NotImplementedError

    def adjust_gauge(self, name: str, delta: float, tags: dict[str, str] | None = None) -> None:
        raise NotImplementedError

    def record_distribution(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        raise NotImplementedError


class PrometheusMetrics(MetricsSink):
    def __init__(self, registry: CollectorRegistry | None = None, namespace: str = ""):
        self._registry = registry if registry is not None else REGISTRY
        self._namespace = namespace
        self._metrics: dict[str, object] = {}
        self._lock = threading.Lock()

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    # ── metric creation ────────────────────────────────────────────
    def _get(self, factory, name: str, labelnames: tuple[str, ...], **kwargs):
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = factory(
                    name,
                    f"{name.replace('_', ' ')}",
                    labelnames=labelnames,
                    namespace=self._namespace,
                    registry=self._registry,
                    **kwargs,
                )
                self._metrics[name] = metric
                logger.debug(f"Registered {factory.__name__} {name} labels={list(labelnames)}")
            return metric

    def _child(self, factory, name: str, tags: dict[str, str] | None, **kwargs):
        tags = tags or {}
        labelnames = tuple(sorted(tags))
        metric = self._get(factory, name, labelnames, **kwargs)
        if labelnames:
            return metric.labels(**{k: str(v) for k, v in tags.items()})
        return metric

    @staticmethod
    def _name(name: str, suffix: str = "") -> str:
        base = name.replace(".", "_").replace("-", "_")
        if suffix and not base.endswith(suffix):
            base += suffix
        return base

    # ── MetricsSink ────────────────────────────────────────────────
    def increment_counter(self, name: str, amount: float = 1.0, tags: dict[str, str] | None = None) -> None:
        # prometheus_client appends _total itself
        base = self._name(name)
        if base.endswith("_total"):
            base = base[: -len("_total")]
        self._child(Counter, base, tags).inc(amount)

    def record_timer(self, name: str, seconds: float, tags: dict[str, str] | None = None) -> None:
        self._child(Histogram, self._name(name, "_seconds"), tags, buckets=DURATION_BUCKETS).observe(seconds)

    def set_gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        self._child(Gauge, self._name(name), tags).set(value)

    def adjust_gauge(self, name: str, delta: float, tags: dict[str, str] | None = None) -> None:
        self._child(Gauge, self._name(name), tags).inc(delta)

    def record_distribution(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        self._child(Summary, self._name(name), tags).observe(value)

    # ── export ─────────────────────────────────────────────────────
    def exposition(self) -> str:
        """Prometheus text format for everything in this sink's registry."""
        return generate_latest(self._registry).decode("utf-8")
