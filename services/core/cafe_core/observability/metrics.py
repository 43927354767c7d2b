"""In-process metrics for worker processes.

Counters, gauges and histograms kept in memory. The heartbeat publishes
the job counters (active, processed, failed) of each worker process.
"""

import threading
from typing import Optional

# Metric names shared by the task boundary and the heartbeat
JOBS_ACTIVE = "jobs_active"
JOBS_PROCESSED = "jobs_processed"
JOBS_FAILED = "jobs_failed"
JOB_DURATION = "job_duration_seconds"


class MetricsCollector:
    """Thread-safe metrics collector.

    The heartbeat thread reads while the job thread writes, so every access
    goes through one lock.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = {}

    def _make_key(self, name: str, labels: Optional[dict[str, str]] = None) -> str:
        if not labels:
            return name

        # Sorted for a stable key
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Increment a counter metric.

        Args:
            name: Counter name
            value: Value to add (default 1)
            labels: Optional labels
        """
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def adjust_gauge(
        self,
        name: str,
        delta: float,
        labels: Optional[dict[str, str]] = None,
    ) -> float:
        """Add delta to a gauge, never going below zero.

        Returns:
            The new gauge value.
        """
        key = self._make_key(name, labels)
        with self._lock:
            value = max(0.0, self._gauges.get(key, 0) + delta)
            self._gauges[key] = value
            return value

    def record_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Record a value in a histogram."""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms.setdefault(key, []).append(value)

    def get(
        self,
        name: str,
        labels: Optional[dict[str, str]] = None,
    ) -> float:
        """Get a counter or gauge value, 0 if never recorded."""
        key = self._make_key(name, labels)
        with self._lock:
            if key in self._counters:
                return self._counters[key]
            if key in self._gauges:
                return self._gauges[key]
            return 0

    def get_histogram_stats(
        self,
        name: str,
        labels: Optional[dict[str, str]] = None,
    ) -> dict[str, float]:
        """Get histogram statistics.

        Returns:
            Dictionary with count, min, max, avg and p50/p95 when non-empty
        """
        key = self._make_key(name, labels)
        with self._lock:
            values = list(self._histograms.get(key, []))

        if not values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0}

        sorted_values = sorted(values)
        count = len(values)

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(values) / count,
            "p50": sorted_values[int(count * 0.5)],
            "p95": sorted_values[min(int(count * 0.95), count - 1)],
        }

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


# Process-wide collector
_collector = MetricsCollector()


def get_collector() -> MetricsCollector:
    """Get the process-wide metrics collector."""
    return _collector
