# tests/test_metrics.py
"""Tests for app/infra/metrics.py."""
from __future__ import annotations

from types import SimpleNamespace

from app.infra.metrics import (
    HISTOGRAM_WINDOW,
    DispatchMetrics,
    MetricsCollector,
    Timer,
    get_metrics_collector,
    metric_key,
)


def test_metric_key_sorts_labels():
    assert metric_key("x") == "x"
    assert metric_key("x", {"b": 2, "a": 1}) == "x{a=1,b=2}"


def test_counters_and_reset():
    collector = MetricsCollector()
    collector.inc_counter("calls")
    collector.inc_counter("calls", 2)
    collector.inc_counter("errors", labels={"job": "dispatch"})

    assert collector.get_metrics()["counters"] == {"calls": 3, "errors{job=dispatch}": 1}

    collector.reset()
    assert collector.get_metrics() == {"counters": {}, "histograms": {}}


def test_histogram_window_keeps_total_count():
    collector = MetricsCollector()
    for i in range(HISTOGRAM_WINDOW + 10):
        collector.observe_histogram("latency", float(i))

    stats = collector.get_metrics()["histograms"]["latency"]
    assert stats["count"] == HISTOGRAM_WINDOW + 10
    assert stats["min"] == 10.0
    assert stats["max"] == float(HISTOGRAM_WINDOW + 9)


def test_timer_records_duration():
    with Timer("dispatch_cycle_seconds"):
        pass

    stats = get_metrics_collector().get_metrics()["histograms"]["dispatch_cycle_seconds"]
    assert stats["count"] == 1
    assert stats["min"] >= 0


def test_cycle_finished_status():
    summary = SimpleNamespace(
        aborted=False, skipped=True, fetched=0, delivered=0, vacuous=0, failed=0, deactivated=0,
    )
    DispatchMetrics.cycle_finished(summary)

    counters = get_metrics_collector().get_metrics()["counters"]
    assert counters == {"dispatch_cycles_total{status=skipped}": 1}
