# app/infra/metrics.py
"""
In-process counters and histograms, exposed at GET /metrics.

Keys carry their labels inline: ``transport_failures_total{error_type=UNAVAILABLE}``.
"""
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Samples kept per histogram; older ones fall off
HISTOGRAM_WINDOW = 1024


def metric_key(name: str, labels: dict | None = None) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}{{{rendered}}}"


@dataclass
class Histogram:
    """Rolling window of observations (e.g. cycle durations in seconds)"""
    total_count: int = 0
    window: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_WINDOW))

    def observe(self, value: float) -> None:
        self.total_count += 1
        self.window.append(value)

    def snapshot(self) -> dict:
        if not self.window:
            return {"count": self.total_count, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

        ordered = sorted(self.window)
        last = len(ordered) - 1
        return {
            "count": self.total_count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / len(ordered),
            "p95": ordered[min(int(len(ordered) * 0.95), last)],
            "p99": ordered[min(int(len(ordered) * 0.99), last)],
        }


class MetricsCollector:
    """Thread-safe registry; the FCM SDK calls run in worker threads"""

    def __init__(self):
        self._counters: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = metric_key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = metric_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "histograms": {k: h.snapshot() for k, h in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """``with Timer("dispatch_cycle_seconds"):`` records elapsed seconds on exit"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self._started = 0.0

    def __enter__(self):
        self._started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        observe_histogram(self.metric_name, time.monotonic() - self._started, **self.labels)


class DispatchMetrics:
    """Dispatch-level metrics tracking"""

    @staticmethod
    def cycle_finished(summary) -> None:
        if summary.aborted:
            status = "aborted"
        elif summary.skipped:
            status = "skipped"
        else:
            status = "ok"
        inc_counter("dispatch_cycles_total", status=status)
        if summary.fetched:
            inc_counter("notifications_fetched_total", summary.fetched)
        if summary.delivered:
            inc_counter("notifications_delivered_total", summary.delivered)
        if summary.vacuous:
            inc_counter("notifications_vacuous_total", summary.vacuous)
        if summary.failed:
            inc_counter("notifications_failed_total", summary.failed)
        if summary.deactivated:
            inc_counter("endpoints_deactivated_total", summary.deactivated)

    @staticmethod
    def multicast_sent(token_count: int, success_count: int, failure_count: int) -> None:
        inc_counter("multicast_calls_total")
        inc_counter("push_tokens_attempted_total", token_count)
        if success_count:
            inc_counter("push_tokens_succeeded_total", success_count)
        if failure_count:
            inc_counter("push_tokens_failed_total", failure_count)

    @staticmethod
    def transport_failure(error_type: str) -> None:
        inc_counter("transport_failures_total", error_type=error_type)

    @staticmethod
    def store_error(operation: str) -> None:
        inc_counter("store_errors_total", operation=operation)

    @staticmethod
    def retention_run(deleted: int, ok: bool) -> None:
        inc_counter("retention_runs_total", status="ok" if ok else "failed")
        if deleted:
            inc_counter("notifications_deleted_total", deleted)

    @staticmethod
    def track_cycle_time() -> Timer:
        return Timer("dispatch_cycle_seconds")
