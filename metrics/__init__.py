"""Metrics aggregation for agent events."""

from metrics.sink import MetricsSink, PrometheusMetrics
from metrics.listener import MetricsEventListener

__all__ = ["MetricsSink", "PrometheusMetrics", "MetricsEventListener"]
