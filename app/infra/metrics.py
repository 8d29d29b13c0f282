# app/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Counter:
    """Simple counter metric"""
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Track distribution of values (e.g., operation times), keeping the latest samples"""
    values: list[float] = field(default_factory=list)
    max_samples: int = 10_000

    def observe(self, value: float) -> None:
        self.values.append(value)
        if len(self.values) > self.max_samples:
            del self.values[: len(self.values) - self.max_samples]

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

        sorted_values = sorted(self.values)
        count = len(sorted_values)

        def percentile(p: float) -> float:
            idx = int(count * p)
            return sorted_values[min(idx, count - 1)]

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / count,
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


class MetricsCollector:
    """
    Lightweight metrics collection.
    For production, consider Prometheus client or similar.
    """

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter metric"""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        """Add a value to histogram"""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        """Get all current metrics"""
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def get_counter(self, name: str, labels: dict | None = None) -> int:
        """Current value of a counter (0 if never incremented)"""
        key = self._make_key(name, labels)
        with self._lock:
            counter = self._counters.get(key)
            return counter.value if counter else 0

    def reset(self) -> None:
        """Reset all metrics"""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        """Create a metric key from name and labels"""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Global metrics collector
_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector"""
    return _metrics


# Convenience functions
def inc_counter(name: str, amount: int = 1, **labels) -> None:
    """Increment a counter metric"""
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    """Record a histogram value"""
    _metrics.observe_histogram(name, value, labels or None)


def get_counter(name: str, **labels) -> int:
    """Read a counter value"""
    return _metrics.get_counter(name, labels or None)


# Context manager for timing operations
class Timer:
    """Context manager to time operations"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.perf_counter() - self.start_time
            observe_histogram(self.metric_name, duration, **self.labels)


# Dispatch metrics
class AppMetrics:
    """Dispatch-level metrics tracking"""

    @staticmethod
    def job_created() -> None:
        inc_counter("jobs_created_total")

    @staticmethod
    def job_transition(transition: str) -> None:
        inc_counter("job_transitions_total", transition=transition)

    @staticmethod
    def transition_rejected(error: str) -> None:
        inc_counter("transition_rejected_total", error=error)

    @staticmethod
    def acceptance_conflict() -> None:
        inc_counter("acceptance_conflicts_total")

    @staticmethod
    def write_conflict() -> None:
        inc_counter("write_conflicts_total")

    @staticmethod
    def secret_code_mismatch() -> None:
        inc_counter("secret_code_mismatch_total")

    @staticmethod
    def subscription_opened(kind: str) -> None:
        inc_counter("subscriptions_opened_total", kind=kind)

    @staticmethod
    def subscription_closed(kind: str) -> None:
        inc_counter("subscriptions_closed_total", kind=kind)

    @staticmethod
    def feed_error(kind: str) -> None:
        inc_counter("feed_errors_total", kind=kind)

    @staticmethod
    def notification_enqueued(template: str) -> None:
        inc_counter("notifications_enqueued_total", template=template)

    @staticmethod
    def notification_failed(template: str) -> None:
        inc_counter("notification_failures_total", template=template)

    @staticmethod
    def payment_timeout() -> None:
        inc_counter("payment_timeouts_total")

    @staticmethod
    def reminder_sent() -> None:
        inc_counter("reminders_sent_total")

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_operation_time(operation: str) -> Timer:
        return Timer("dispatch_operation_seconds", operation=operation)
