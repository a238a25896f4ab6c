"""
Metrics and telemetry for the engine.

Tracks aggregation/persistence/fan-out latencies, tick throughput and failure
counters for the status endpoint and debugging.
"""

import time
from typing import Dict, List, Optional, Callable, Any
from dataclasses import dataclass
from collections import deque
import threading
import logging

logger = logging.getLogger(__name__)


@dataclass
class LatencyStats:
    """Statistics for a latency metric."""
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float('inf')
    max_ms: float = 0.0
    last_ms: float = 0.0

    # Rolling percentiles (approximate)
    p50_ms: float = 0.0
    p95_ms: float = 0.0

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0


@dataclass
class RateStats:
    """Statistics for a rate metric."""
    total_count: int = 0
    window_count: int = 0
    window_start_ms: int = 0
    rate_per_second: float = 0.0


class LatencyTracker:
    """Latency statistics for one operation, percentiles over a sliding window."""

    def __init__(self, window_size: int = 500):
        self._samples: deque = deque(maxlen=window_size)
        self._stats = LatencyStats()
        self._lock = threading.Lock()

    def record(self, latency_ms: float) -> None:
        with self._lock:
            self._samples.append(latency_ms)
            self._stats.count += 1
            self._stats.total_ms += latency_ms
            self._stats.last_ms = latency_ms
            self._stats.min_ms = min(self._stats.min_ms, latency_ms)
            self._stats.max_ms = max(self._stats.max_ms, latency_ms)

    def get_stats(self) -> LatencyStats:
        """Get current statistics with percentiles."""
        with self._lock:
            stats = LatencyStats(
                count=self._stats.count,
                total_ms=self._stats.total_ms,
                min_ms=self._stats.min_ms if self._stats.count > 0 else 0.0,
                max_ms=self._stats.max_ms,
                last_ms=self._stats.last_ms,
            )

            if self._samples:
                ordered = sorted(self._samples)
                n = len(ordered)
                stats.p50_ms = ordered[int(n * 0.5)]
                stats.p95_ms = ordered[min(int(n * 0.95), n - 1)]

            return stats


class RateTracker:
    """Tracks event rate (events per second)."""

    def __init__(self, window_ms: int = 1000):
        self._window_ms = window_ms
        self._stats = RateStats()
        self._lock = threading.Lock()

    def record(self, count: int = 1) -> None:
        now = int(time.time() * 1000)

        with self._lock:
            if now - self._stats.window_start_ms >= self._window_ms:
                if self._stats.window_start_ms > 0:
                    elapsed_s = (now - self._stats.window_start_ms) / 1000.0
                    self._stats.rate_per_second = self._stats.window_count / elapsed_s if elapsed_s > 0 else 0
                self._stats.window_start_ms = now
                self._stats.window_count = 0

            self._stats.window_count += count
            self._stats.total_count += count

    def get_stats(self) -> RateStats:
        with self._lock:
            return RateStats(
                total_count=self._stats.total_count,
                window_count=self._stats.window_count,
                window_start_ms=self._stats.window_start_ms,
                rate_per_second=self._stats.rate_per_second,
            )


class Timer:
    """Context manager for timing operations."""

    def __init__(self, tracker: LatencyTracker):
        self._tracker = tracker
        self._start: float = 0

    def __enter__(self) -> 'Timer':
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        elapsed_ms = (time.perf_counter() - self._start) * 1000
        self._tracker.record(elapsed_ms)


class MetricsCollector:
    """
    Metrics collector for one engine instance.

    Usage:
        metrics = MetricsCollector()

        with metrics.time("aggregation"):
            record = summarize(ticks, now_ms)

        metrics.record_event("ticks")
        metrics.increment("persistence_failures")

        summary = metrics.get_summary()
    """

    def __init__(self):
        self._latencies: Dict[str, LatencyTracker] = {
            "aggregation": LatencyTracker(),
            "store_append": LatencyTracker(),
            "publish": LatencyTracker(),
        }

        self._rates: Dict[str, RateTracker] = {
            "ticks": RateTracker(),
            "records": RateTracker(),
        }

        self._counters: Dict[str, int] = {
            "failovers": 0,
            "errors": 0,
            "persistence_failures": 0,
            "delivery_failures": 0,
        }

        self._lock = threading.Lock()
        self._start_time = time.time()

        self._on_slow_operation: List[Callable[[str, float], None]] = []
        self._slow_threshold_ms = 1000.0

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def time(self, operation: str) -> Timer:
        """Timer context manager for an operation."""
        if operation not in self._latencies:
            self._latencies[operation] = LatencyTracker()
        return Timer(self._latencies[operation])

    def record_latency(self, operation: str, latency_ms: float) -> None:
        """Record a latency measurement directly."""
        if operation not in self._latencies:
            self._latencies[operation] = LatencyTracker()
        self._latencies[operation].record(latency_ms)

        if latency_ms > self._slow_threshold_ms:
            for callback in self._on_slow_operation:
                try:
                    callback(operation, latency_ms)
                except Exception as e:
                    logger.error(f"Slow operation callback error: {e}")

    def record_event(self, event_type: str, count: int = 1) -> None:
        """Record event(s) for rate tracking."""
        if event_type not in self._rates:
            self._rates[event_type] = RateTracker()
        self._rates[event_type].record(count)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[counter] = self._counters.get(counter, 0) + amount

    def get_summary(self) -> Dict[str, Any]:
        """Get human-readable metrics summary."""
        latencies = {}
        for name, tracker in self._latencies.items():
            stats = tracker.get_stats()
            latencies[name] = {
                "count": stats.count,
                "mean": round(stats.mean_ms, 2),
                "p95": round(stats.p95_ms, 2),
                "max": round(stats.max_ms, 2),
            }

        with self._lock:
            counters = dict(self._counters)

        return {
            "uptime_seconds": round(self.uptime_seconds, 1),
            "throughput": {
                name: {
                    "total": tracker.get_stats().total_count,
                    "per_second": round(tracker.get_stats().rate_per_second, 2),
                }
                for name, tracker in self._rates.items()
            },
            "latencies_ms": latencies,
            "counters": counters,
        }

    def on_slow_operation(self, callback: Callable[[str, float], None]) -> None:
        """Register callback for slow operation alerts."""
        self._on_slow_operation.append(callback)

    def set_slow_threshold(self, threshold_ms: float) -> None:
        self._slow_threshold_ms = threshold_ms
