"""
Process-wide metrics for the session lifecycle.

In-process counters, latency histograms and callable gauges held by a single
registry. Components register what they own at startup and increment only their
own counters; everything else reads through the accessors. snapshot() exports a
plain dict for dashboards and log lines.
"""

from __future__ import annotations

import math
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

# Counter names
ARCHIVE_SUCCESS = "archive_success_total"
ARCHIVE_ERROR = "archive_error_total"
ARCHIVE_RACE_SKIPPED = "archive_race_skipped_total"
REACTIVATION_SUCCESS = "reactivation_success_total"
REACTIVATION_ERROR = "reactivation_error_total"
DUAL_EXISTENCE_VIOLATIONS = "dual_existence_violations_total"
ORPHAN_VIOLATIONS = "orphan_violations_total"
BACKLOG_ALERTS = "backlog_alerts_total"

# Histogram names
HOT_WRITE_LATENCY = "hot_store_write_latency_ms"

# Gauge names
BACKLOG_SIZE = "dlq_backlog_size"
CONSUMER_LAG = "event_stream_consumer_lag"
WRITE_LATENCY_P99 = "hot_store_write_latency_p99_ms"

# Upper bucket bounds in milliseconds; Redis writes are expected in the low ms range.
_LATENCY_BUCKETS_MS: tuple[float, ...] = (
    0.5, 1, 2, 5, 10, 25, 50, 100, 250, 500, 1_000, 2_500, 5_000, float("inf"),
)


@dataclass
class Histogram:
    """Fixed-bucket latency histogram with running min/max/sum."""

    name: str
    _buckets: list[int] = field(default_factory=lambda: [0] * len(_LATENCY_BUCKETS_MS))
    _count: int = 0
    _sum_ms: float = 0.0
    _min_ms: float = float("inf")
    _max_ms: float = 0.0

    def record(self, value_ms: float) -> None:
        self._count += 1
        self._sum_ms += value_ms
        self._min_ms = min(self._min_ms, value_ms)
        self._max_ms = max(self._max_ms, value_ms)
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            if value_ms <= bound:
                self._buckets[i] += 1
                break

    @property
    def count(self) -> int:
        return self._count

    @property
    def mean_ms(self) -> float:
        return self._sum_ms / self._count if self._count else 0.0

    def percentile(self, p: float) -> float:
        """Estimate percentile via linear interpolation inside the matching bucket."""
        if self._count == 0:
            return 0.0
        target = max(math.ceil(p * self._count / 100), 1)
        cumulative = 0
        prev_bound = 0.0
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            cumulative += self._buckets[i]
            if cumulative >= target:
                bucket_count = self._buckets[i]
                if bucket_count == 0:
                    return bound
                frac = (target - (cumulative - bucket_count)) / bucket_count
                upper = bound if not math.isinf(bound) else self._max_ms
                return min(prev_bound + frac * (upper - prev_bound), self._max_ms)
            prev_bound = bound
        return self._max_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self._count,
            "min_ms": round(self._min_ms, 3) if self._count else 0,
            "max_ms": round(self._max_ms, 3),
            "mean_ms": round(self.mean_ms, 3),
            "p50_ms": round(self.percentile(50), 3),
            "p99_ms": round(self.percentile(99), 3),
        }


GaugeFn = Callable[[], Awaitable[float]]


class MetricsRegistry:
    """
    Registry of counters, histograms and gauges.

    Counters and histograms must be registered before use; incrementing an
    unregistered name raises KeyError so typos surface in tests. Gauges are async
    callables evaluated on demand by read_gauge().
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._histograms: dict[str, Histogram] = {}
        self._gauges: dict[str, GaugeFn] = {}

    # -- registration -------------------------------------------------

    def register_counter(self, name: str) -> None:
        with self._lock:
            self._counters.setdefault(name, 0)

    def register_histogram(self, name: str) -> None:
        with self._lock:
            self._histograms.setdefault(name, Histogram(name))

    def register_gauge(self, name: str, fn: GaugeFn) -> None:
        with self._lock:
            self._gauges[name] = fn

    # -- writes (owners only) -----------------------------------------

    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            if name not in self._counters:
                raise KeyError(f"counter {name!r} is not registered")
            self._counters[name] += value

    def record(self, name: str, value_ms: float) -> None:
        with self._lock:
            if name not in self._histograms:
                raise KeyError(f"histogram {name!r} is not registered")
            self._histograms[name].record(value_ms)

    @asynccontextmanager
    async def timer(self, name: str) -> AsyncIterator[None]:
        """Async context manager recording elapsed milliseconds into a histogram."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.record(name, (time.perf_counter() - t0) * 1000)

    # -- reads ----------------------------------------------------------

    def counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def percentile(self, name: str, p: float) -> float:
        hist = self._histograms.get(name)
        return hist.percentile(p) if hist else 0.0

    async def read_gauge(self, name: str) -> float:
        fn = self._gauges.get(name)
        if fn is None:
            return 0.0
        return float(await fn())

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "histograms": {n: h.to_dict() for n, h in self._histograms.items()},
                "gauges": sorted(self._gauges),
            }


_registry: MetricsRegistry | None = None


def get_registry() -> MetricsRegistry:
    """Return the process-wide registry, creating it on first use."""
    global _registry
    if _registry is None:
        _registry = MetricsRegistry()
    return _registry


def reset_registry() -> MetricsRegistry:
    """Replace the process-wide registry with an empty one (tests)."""
    global _registry
    _registry = MetricsRegistry()
    return _registry
