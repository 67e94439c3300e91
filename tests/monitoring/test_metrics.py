"""
Tests for metrics collection and export.
"""

import json
import logging

import pytest

from reliable_actions.monitoring.exporters import JsonExporter, LoggingExporter, PrometheusExporter
from reliable_actions.monitoring.metrics import (
    Counter,
    MetricsRegistry,
    key_to_labels,
    labels_to_key,
)


@pytest.mark.unit
class TestMetrics:

    def test_counter_with_labels(self):
        counter = Counter("retry_faults_total")
        counter.increment(labels={"target": "notion", "classification": "network"})
        counter.increment(2, labels={"classification": "network", "target": "notion"})

        assert counter.get_value({"target": "notion", "classification": "network"}) == 3
        assert counter.get_value() == 0

        with pytest.raises(ValueError):
            counter.increment(-1)

    def test_gauge(self):
        registry = MetricsRegistry()
        gauge = registry.gauge("escalation_pending")
        gauge.set(4)
        gauge.decrement()
        assert gauge.get_value() == 3

    def test_histogram_buckets_are_cumulative(self):
        registry = MetricsRegistry()
        histogram = registry.histogram("delay", buckets=[1.0, 5.0, float("inf")])
        histogram.observe(0.5)
        histogram.observe(3.0)

        value = histogram.get_value()
        assert value["buckets"] == {1.0: 1, 5.0: 2, float("inf"): 2}
        assert value["sum"] == 3.5
        assert value["count"] == 2

    def test_timer(self):
        timer = MetricsRegistry().timer("compensation")
        timer.observe(2.0)
        timer.observe(4.0)
        with timer.time():
            pass

        value = timer.get_value()
        assert value["count"] == 3
        assert value["total_time"] >= 6.0

    def test_registry_get_or_create(self):
        registry = MetricsRegistry(prefix="ra_")
        assert registry.counter("hits") is registry.counter("hits")
        assert registry.list_metrics() == ["ra_hits"]
        assert registry.get_metric("ra_hits") is not None

        with pytest.raises(ValueError):
            registry.gauge("hits")

    def test_registries_are_independent(self):
        first, second = MetricsRegistry(), MetricsRegistry()
        first.counter("hits").increment()
        assert second.get_metric("hits") is None

    def test_reset_and_stats(self):
        registry = MetricsRegistry()
        registry.counter("a").increment()
        registry.gauge("b").set(1)

        assert registry.get_stats()["metric_types"] == {"counter": 1, "gauge": 1}
        registry.reset_all()
        assert registry.collect_all()["a"]["value"] == 0

    def test_label_keys(self):
        key = labels_to_key({"target": "slack", "classification": "timeout"})
        assert key == "classification=timeout|target=slack"
        assert key_to_labels(key) == {"classification": "timeout", "target": "slack"}
        assert key_to_labels("") == {}


@pytest.mark.unit
class TestExporters:

    @pytest.fixture
    def registry(self):
        registry = MetricsRegistry()
        registry.counter("retry_faults_total", "Faults seen").increment(
            labels={"target": "notion", "classification": "network"}
        )
        registry.gauge("idempotency_size").set(7)
        registry.histogram("ledger_duration", buckets=[1.0, float("inf")]).observe(0.5)
        return registry

    def test_json(self, registry):
        data = json.loads(JsonExporter(include_timestamp=False).export(registry))
        assert data["idempotency_size"]["values"] == {"": 7}
        assert data["retry_faults_total"]["values"] == {"classification=network|target=notion": 1.0}

    def test_prometheus(self, registry):
        text = PrometheusExporter().export(registry)
        assert "# HELP retry_faults_total Faults seen" in text
        assert "# TYPE retry_faults_total counter" in text
        assert 'retry_faults_total{classification="network",target="notion"} 1.0' in text
        assert "idempotency_size 7" in text
        assert 'ledger_duration_bucket{le="+Inf"} 1' in text
        assert "ledger_duration_count 1" in text

    def test_logging(self, registry, caplog):
        with caplog.at_level(logging.INFO, logger="reliable_actions.metrics"):
            summary = LoggingExporter().export(registry)

        assert summary == "Exported 3 metrics to logger"
        assert "Metrics export: 3 metrics" in caplog.text
