"""
Metrics collection for the execution core.

Counters, gauges, histograms and timers keyed by label sets, held by an
instance-scoped registry. Every component receives the registry it reports
into; there is no process-wide default.
"""

import threading
import time
from abc import ABC, abstractmethod
from bisect import bisect_left
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union


class MetricType(Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMER = "timer"


Labels = Optional[Dict[str, str]]

# Retry waits run from milliseconds up to several minutes
DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, float("inf"))


def labels_to_key(labels: Dict[str, str]) -> str:
    """Flatten a label set into a stable ``k1=v1|k2=v2`` key."""
    if not labels:
        return ""
    return "|".join(f"{k}={v}" for k, v in sorted(labels.items()))


def key_to_labels(key: str) -> Dict[str, str]:
    """Inverse of ``labels_to_key``."""
    if not key:
        return {}
    return dict(pair.split("=", 1) for pair in key.split("|") if "=" in pair)


S = TypeVar("S")


class Metric(ABC, Generic[S]):
    """
    One named metric holding a series per label set.

    Subclasses decide what a series is (a number, a bucket array) and how it
    is read.
    """

    metric_type: MetricType

    def __init__(self, name: str, description: str = "", labels: Labels = None):
        self.name = name
        self.description = description
        self.default_labels = dict(labels or {})
        self.created_at = time.time()
        self._series: Dict[str, S] = {}
        self._lock = threading.RLock()

    @abstractmethod
    def _new_series(self) -> S:
        pass

    @abstractmethod
    def _read(self, series: Optional[S]) -> Any:
        pass

    def _key(self, labels: Labels) -> str:
        if not labels:
            return labels_to_key(self.default_labels)
        return labels_to_key({**self.default_labels, **labels})

    def _series_for(self, labels: Labels) -> S:
        key = self._key(labels)
        series = self._series.get(key)
        if series is None:
            series = self._series[key] = self._new_series()
        return series

    def get_value(self, labels: Labels = None) -> Any:
        with self._lock:
            return self._read(self._series.get(self._key(labels)))

    def get_all_values(self) -> Dict[str, Any]:
        """Current value of every label set seen so far."""
        with self._lock:
            return {key: self._read(series) for key, series in self._series.items()}

    def reset(self) -> None:
        with self._lock:
            self._series.clear()

    def get_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.metric_type.value,
            "description": self.description,
            "created_at": self.created_at,
            "default_labels": self.default_labels,
        }


class _Cell:
    __slots__ = ("value",)

    def __init__(self):
        self.value = 0.0


class Counter(Metric[_Cell]):
    """Monotonic count per label set."""

    metric_type = MetricType.COUNTER

    def _new_series(self) -> _Cell:
        return _Cell()

    def _read(self, series: Optional[_Cell]) -> float:
        return series.value if series is not None else 0.0

    def increment(self, amount: float = 1.0, labels: Labels = None) -> None:
        if amount < 0:
            raise ValueError("Counter increment must be >= 0")
        with self._lock:
            self._series_for(labels).value += amount


class Gauge(Metric[_Cell]):
    """Point-in-time value per label set."""

    metric_type = MetricType.GAUGE

    def _new_series(self) -> _Cell:
        return _Cell()

    def _read(self, series: Optional[_Cell]) -> float:
        return series.value if series is not None else 0.0

    def set(self, value: float, labels: Labels = None) -> None:
        with self._lock:
            self._series_for(labels).value = value

    def increment(self, amount: float = 1.0, labels: Labels = None) -> None:
        with self._lock:
            self._series_for(labels).value += amount

    def decrement(self, amount: float = 1.0, labels: Labels = None) -> None:
        self.increment(-amount, labels)


@dataclass
class _Distribution:
    counts: List[int]
    total: float = 0.0
    observations: int = 0


class Histogram(Metric[_Distribution]):
    """
    Distribution of observed values per label set.

    Bucket counts are cumulative: an observation is counted in every bucket
    whose upper bound it does not exceed.
    """

    metric_type = MetricType.HISTOGRAM

    def __init__(self, name: str, description: str = "",
                 buckets: Optional[List[float]] = None, labels: Labels = None):
        super().__init__(name, description, labels)
        self.buckets = sorted(buckets or DEFAULT_BUCKETS)

    def _new_series(self) -> _Distribution:
        return _Distribution(counts=[0] * len(self.buckets))

    def _read(self, series: Optional[_Distribution]) -> Dict[str, Any]:
        if series is None:
            series = self._new_series()
        return {
            "buckets": dict(zip(self.buckets, series.counts)),
            "sum": series.total,
            "count": series.observations,
            "average": series.total / series.observations if series.observations else 0.0,
        }

    def observe(self, value: float, labels: Labels = None) -> None:
        with self._lock:
            series = self._series_for(labels)
            for i in range(bisect_left(self.buckets, value), len(self.buckets)):
                series.counts[i] += 1
            series.total += value
            series.observations += 1


class Timer(Histogram):
    """Histogram of durations in seconds, read as count, total and average."""

    metric_type = MetricType.TIMER

    def _read(self, series: Optional[_Distribution]) -> Dict[str, Any]:
        distribution = super()._read(series)
        return {
            "count": distribution["count"],
            "total_time": distribution["sum"],
            "average_time": distribution["average"],
            "distribution": distribution,
        }

    def time(self, labels: Labels = None) -> "TimerContext":
        """Context manager observing the duration of its block."""
        return TimerContext(self, labels)


class TimerContext:
    """Times a ``with`` block into a ``Timer``."""

    def __init__(self, timer: Timer, labels: Labels = None):
        self.timer = timer
        self.labels = labels
        self.start_time = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.timer.observe(time.perf_counter() - self.start_time, self.labels)


M = TypeVar("M", bound=Metric)


class MetricsRegistry:
    """
    Named metrics for one set of components.

    Accessors are get-or-create: asking twice for the same name returns the
    same metric, and asking for an existing name with another type raises
    ``ValueError``. ``prefix`` is prepended to every name.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.RLock()

    def _get_or_create(self, cls: Type[M], name: str, **kwargs: Any) -> M:
        full_name = f"{self.prefix}{name}"
        with self._lock:
            metric = self._metrics.get(full_name)
            if metric is None:
                metric = self._metrics[full_name] = cls(full_name, **kwargs)
            elif type(metric) is not cls:
                raise ValueError(f"Metric {full_name} is a {type(metric).__name__}, not a {cls.__name__}")
            return metric

    def counter(self, name: str, description: str = "", labels: Labels = None) -> Counter:
        return self._get_or_create(Counter, name, description=description, labels=labels)

    def gauge(self, name: str, description: str = "", labels: Labels = None) -> Gauge:
        return self._get_or_create(Gauge, name, description=description, labels=labels)

    def histogram(self, name: str, description: str = "",
                  buckets: Optional[List[float]] = None, labels: Labels = None) -> Histogram:
        return self._get_or_create(Histogram, name, description=description,
                                   buckets=buckets, labels=labels)

    def timer(self, name: str, description: str = "",
              buckets: Optional[List[float]] = None, labels: Labels = None) -> Timer:
        return self._get_or_create(Timer, name, description=description,
                                   buckets=buckets, labels=labels)

    def get_metric(self, name: str) -> Optional[Metric]:
        """Look up a metric by its full (prefixed) name."""
        with self._lock:
            return self._metrics.get(name)

    def list_metrics(self) -> List[str]:
        with self._lock:
            return list(self._metrics)

    def get_all_metrics(self) -> Dict[str, Metric]:
        with self._lock:
            return dict(self._metrics)

    def collect_all(self) -> Dict[str, Dict[str, Union[Dict[str, Any], Any]]]:
        """Snapshot of every metric as ``{"info": ..., "value": ...}``."""
        return {
            name: {"info": metric.get_info(), "value": metric.get_value()}
            for name, metric in self.get_all_metrics().items()
        }

    def reset_all(self) -> None:
        for metric in self.get_all_metrics().values():
            metric.reset()

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()

    def get_stats(self) -> Dict[str, Any]:
        metrics = self.get_all_metrics()
        by_type: Dict[str, int] = {}
        for metric in metrics.values():
            by_type[metric.metric_type.value] = by_type.get(metric.metric_type.value, 0) + 1
        return {
            "total_metrics": len(metrics),
            "metric_types": by_type,
            "metric_names": list(metrics),
        }


__all__ = [
    "MetricType",
    "Labels",
    "Metric",
    "Counter",
    "Gauge",
    "Histogram",
    "Timer",
    "TimerContext",
    "MetricsRegistry",
    "labels_to_key",
    "key_to_labels",
]
