import pytest
from prometheus_client import CollectorRegistry

from core.config import ObservabilityConfig
from events.models import AgentEvent, EventType
from metrics.listener import MetricsEventListener
from metrics.sink import PrometheusMetrics
from tracing.listener import TracingEventListener
from tracing.store import InMemoryStore
from tracing.tracer import LocalTracer


def make_event(event_type: EventType, run_id: str = "run-1", **fields) -> AgentEvent:
    fields.setdefault("agent_name", "TestAgent")
    return AgentEvent(event_type, run_id=run_id, **fields)


@pytest.fixture
def ev():
    return make_event


@pytest.fixture
def config():
    return ObservabilityConfig()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def tracer(store):
    return LocalTracer(store)


@pytest.fixture
def listener(tracer, config):
    return TracingEventListener(tracer, config)


@pytest.fixture
def prom_registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(prom_registry):
    return PrometheusMetrics(prom_registry)


@pytest.fixture
def metrics_listener(metrics, config):
    return MetricsEventListener(metrics, config)
