"""
Monitoring components for the execution core.

Provides an instance-scoped metrics registry and exporters for JSON,
Prometheus and logging output.
"""

from .metrics import (
    MetricsRegistry, Counter, Gauge, Histogram, Timer,
    Metric, MetricType
)
from .exporters import (
    MetricsExporter, JsonExporter, PrometheusExporter, LoggingExporter
)

__all__ = [
    "MetricsRegistry",
    "Counter",
    "Gauge",
    "Histogram",
    "Timer",
    "Metric",
    "MetricType",
    "MetricsExporter",
    "JsonExporter",
    "PrometheusExporter",
    "LoggingExporter",
]
