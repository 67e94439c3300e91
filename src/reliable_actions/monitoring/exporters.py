"""
Metrics exporters.

Render a ``MetricsRegistry`` as a JSON document, Prometheus text exposition
format, or log lines.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .metrics import Histogram, Metric, MetricsRegistry, MetricType, Timer, key_to_labels


class MetricsExporter(ABC):
    """Renders every metric of a registry into one string."""

    @abstractmethod
    def export(self, registry: MetricsRegistry) -> str:
        pass


class JsonExporter(MetricsExporter):
    """
    JSON document keyed by metric name.

    Each metric maps to ``{"info": ..., "values": {label_key: value}}``.
    """

    def __init__(self, indent: Optional[int] = 2, include_timestamp: bool = True):
        self.indent = indent
        self.include_timestamp = include_timestamp

    def export(self, registry: MetricsRegistry) -> str:
        document: Dict[str, Any] = {
            name: {"info": metric.get_info(), "values": metric.get_all_values()}
            for name, metric in registry.get_all_metrics().items()
        }
        if self.include_timestamp:
            document["_export_timestamp"] = time.time()
        return json.dumps(document, indent=self.indent, default=str)


class PrometheusExporter(MetricsExporter):
    """Prometheus text exposition format; timers are exposed as histograms."""

    _TYPE_NAMES = {
        MetricType.COUNTER: "counter",
        MetricType.GAUGE: "gauge",
        MetricType.HISTOGRAM: "histogram",
        MetricType.TIMER: "histogram",
    }

    def export(self, registry: MetricsRegistry) -> str:
        lines: List[str] = []
        for name, metric in registry.get_all_metrics().items():
            if metric.description:
                lines.append(f"# HELP {name} {metric.description}")
            lines.append(f"# TYPE {name} {self._TYPE_NAMES[metric.metric_type]}")
            lines.extend(self._samples(name, metric))
        return "\n".join(lines) + "\n"

    def _samples(self, name: str, metric: Metric) -> List[str]:
        samples: List[str] = []
        for label_key, value in sorted(metric.get_all_values().items()):
            labels = key_to_labels(label_key)
            if isinstance(metric, Timer):
                value = value["distribution"]
            if isinstance(metric, Histogram):
                for bound, count in value["buckets"].items():
                    le = "+Inf" if bound == float("inf") else str(bound)
                    samples.append(f"{name}_bucket{self._format_labels({**labels, 'le': le})} {count}")
                samples.append(f"{name}_count{self._format_labels(labels)} {value['count']}")
                samples.append(f"{name}_sum{self._format_labels(labels)} {value['sum']}")
            else:
                samples.append(f"{name}{self._format_labels(labels)} {value}")
        return samples

    @staticmethod
    def _format_labels(labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        return "{" + ",".join(f'{k}="{v}"' for k, v in sorted(labels.items())) + "}"


class LoggingExporter(MetricsExporter):
    """Writes one log line per metric to a dedicated logger."""

    def __init__(self, logger_name: str = "reliable_actions.metrics", level: int = logging.INFO):
        self.logger = logging.getLogger(logger_name)
        self.level = level

    def export(self, registry: MetricsRegistry) -> str:
        metrics = registry.get_all_metrics()
        self.logger.log(self.level, f"Metrics export: {len(metrics)} metrics")
        for name, metric in metrics.items():
            self.logger.log(self.level, f"Metric {name} ({metric.metric_type.value}): {metric.get_all_values()}")
        return f"Exported {len(metrics)} metrics to logger"


__all__ = [
    "MetricsExporter",
    "JsonExporter",
    "PrometheusExporter",
    "LoggingExporter",
]
