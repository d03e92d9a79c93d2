"""
Unit tests for RelayMetrics.

Uses the OpenTelemetry SDK's InMemoryMetricReader to check what is
actually exported, and the snapshot for the locally tracked values.
"""

from __future__ import annotations

from typing import Any

import pytest

from eventrelay.observability import RelayMetrics


def _data_points(metrics_data: Any, metric_name: str) -> list[Any]:
    """Data points of a metric, or an empty list if it was not exported."""
    if not metrics_data or not metrics_data.resource_metrics:
        return []
    for resource_metric in metrics_data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == metric_name:
                    return list(metric.data.data_points)
    return []


def _counter_total(metrics_data: Any, metric_name: str) -> int:
    return sum(dp.value for dp in _data_points(metrics_data, metric_name))


class TestExportedMetrics:
    """Values seen by a metric reader."""

    def test_counters(self, meter_provider, metric_reader):
        metrics = RelayMetrics("orders-relay", meter_provider=meter_provider)

        metrics.record_published("OrderPlaced", publish_ms=3.0, latency_ms=120.0)
        metrics.record_published("OrderPlaced", publish_ms=5.0, latency_ms=80.0)
        metrics.record_retried("OrderPlaced", "TimeoutError")
        metrics.record_dead_lettered("PaymentCaptured", "SchemaViolationError")
        metrics.record_cycle_failed("StoreUnavailableError")

        data = metric_reader.get_metrics_data()
        assert _counter_total(data, "eventrelay.messages.published") == 2
        assert _counter_total(data, "eventrelay.messages.retried") == 1
        assert _counter_total(data, "eventrelay.messages.dead_lettered") == 1
        assert _counter_total(data, "eventrelay.cycles.failed") == 1

        (retried,) = _data_points(data, "eventrelay.messages.retried")
        assert retried.attributes["relay"] == "orders-relay"
        assert retried.attributes["error.type"] == "TimeoutError"

    def test_histograms(self, meter_provider, metric_reader):
        metrics = RelayMetrics(meter_provider=meter_provider)

        metrics.record_published("OrderPlaced", publish_ms=3.0, latency_ms=120.0)
        metrics.record_published("OrderPlaced", publish_ms=5.0)

        data = metric_reader.get_metrics_data()
        (duration,) = _data_points(data, "eventrelay.publish.duration")
        assert duration.count == 2
        assert duration.sum == pytest.approx(8.0)
        (latency,) = _data_points(data, "eventrelay.delivery.latency")
        assert latency.count == 1
        assert latency.sum == pytest.approx(120.0)

    def test_backlog_gauge(self, meter_provider, metric_reader):
        metrics = RelayMetrics(meter_provider=meter_provider)
        metrics.record_backlog(42)

        (point,) = _data_points(metric_reader.get_metrics_data(), "eventrelay.backlog.depth")
        assert point.value == 42


class TestSnapshot:
    """Locally tracked values."""

    def test_snapshot_accumulates(self):
        metrics = RelayMetrics(enable_metrics=False)

        metrics.record_published("OrderPlaced", publish_ms=2.0, latency_ms=300.0)
        metrics.record_published("OrderPlaced", publish_ms=4.0, latency_ms=100.0)
        metrics.record_retried("OrderPlaced", "ConnectionError")
        metrics.record_backlog(-3)

        snapshot = metrics.get_snapshot()
        assert snapshot.published == 2
        assert snapshot.retried == 1
        assert snapshot.total_publish_time_ms == pytest.approx(6.0)
        assert snapshot.max_delivery_latency_ms == pytest.approx(300.0)
        assert snapshot.backlog_depth == 0
        assert snapshot.to_dict()["published"] == 2

    def test_snapshot_is_a_copy(self):
        metrics = RelayMetrics(enable_metrics=False)
        snapshot = metrics.get_snapshot()
        metrics.record_cycle_failed("StoreUnavailableError")
        assert snapshot.failed_cycles == 0
        assert metrics.get_snapshot().failed_cycles == 1

    def test_time_publish(self):
        metrics = RelayMetrics(enable_metrics=False)
        with metrics.time_publish() as timer:
            pass
        assert timer.duration_ms >= 0.0
