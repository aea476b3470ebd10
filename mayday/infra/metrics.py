# mayday/infra/metrics.py
"""
In-process metrics: counters, gauges and windowed histograms.

Keys are ``name{label=value,...}`` with labels sorted, and the whole
registry is served as JSON on /metrics by the process host.
"""
from __future__ import annotations

import time
from collections import deque
from threading import Lock

from mayday.infra.logging_config import get_logger

logger = get_logger(__name__)

HISTOGRAM_WINDOW = 1000  # Most recent observations kept per histogram


def _summarize(values) -> dict:
    if not values:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

    ordered = sorted(values)
    n = len(ordered)

    def pct(p: float) -> float:
        return ordered[min(int(n * p), n - 1)]

    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "p95": pct(0.95),
        "p99": pct(0.99),
    }


class MetricsCollector:
    def __init__(self, window: int = HISTOGRAM_WINDOW):
        self._window = window
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque] = {}
        self._lock = Lock()

    @staticmethod
    def key(name: str, labels: dict | None = None) -> str:
        if not labels:
            return name
        rendered = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{rendered}}}"

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        k = self.key(name, labels)
        with self._lock:
            self._counters[k] = self._counters.get(k, 0) + amount

    def set_gauge(self, name: str, value: float, labels: dict | None = None) -> None:
        k = self.key(name, labels)
        with self._lock:
            self._gauges[k] = value

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        k = self.key(name, labels)
        with self._lock:
            window = self._histograms.get(k)
            if window is None:
                window = self._histograms[k] = deque(maxlen=self._window)
            window.append(value)

    def get_counter(self, name: str, labels: dict | None = None) -> int:
        with self._lock:
            return self._counters.get(self.key(name, labels), 0)

    def get_gauge(self, name: str, labels: dict | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(self.key(name, labels))

    def get_metrics(self) -> dict:
        """Snapshot of every metric, as served on /metrics"""
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            windows = {k: list(v) for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": {k: _summarize(v) for k, v in windows.items()},
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
        logger.info("Metrics reset")


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def set_gauge(name: str, value: float, **labels) -> None:
    _metrics.set_gauge(name, value, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Records the elapsed seconds of a ``with`` block into a histogram"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self._started: float | None = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is not None:
            observe_histogram(self.metric_name, time.perf_counter() - self._started, **self.labels)


class DispatchMetrics:
    """Named metrics for law evaluation, dispatches and notification delivery"""

    @staticmethod
    def law_evaluated(jurisdiction: str, triggered: bool) -> None:
        inc_counter("law_evaluations_total", jurisdiction=jurisdiction, triggered=str(triggered).lower())

    @staticmethod
    def law_failed_open(jurisdiction: str) -> None:
        inc_counter("law_evaluation_fail_open_total", jurisdiction=jurisdiction)

    @staticmethod
    def dispatch_created(jurisdiction: str, priority: str) -> None:
        inc_counter("dispatches_created_total", jurisdiction=jurisdiction, priority=priority)

    @staticmethod
    def dispatch_transition(status: str) -> None:
        inc_counter("dispatch_transitions_total", status=status)

    @staticmethod
    def dispatch_expired(jurisdiction: str) -> None:
        inc_counter("dispatches_expired_total", jurisdiction=jurisdiction)

    @staticmethod
    def overdue_backlog(count: int) -> None:
        set_gauge("dispatches_overdue", count)

    @staticmethod
    def notification_outcome(channel: str, status: str) -> None:
        inc_counter("notifications_total", channel=channel, status=status)

    @staticmethod
    def notification_batched(channel: str) -> None:
        inc_counter("notifications_batched_total", channel=channel)

    @staticmethod
    def notification_escalation(role: str) -> None:
        inc_counter("notification_escalations_total", role=role)

    @staticmethod
    def retry_backlog(count: int) -> None:
        set_gauge("notifications_due", count)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_fan_out(jurisdiction: str) -> Timer:
        return Timer("dispatch_fan_out_seconds", jurisdiction=jurisdiction)
