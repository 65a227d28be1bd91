"""
Backlog monitor and dashboard gauges.

The dead-letter list is owned by upstream consumers; this module only reads it.
Consumer lag comes from XINFO GROUPS on the event stream.
"""

from __future__ import annotations

from typing import Any, Mapping

import structlog

from session_tiers.config import Settings
from session_tiers.errors import BacklogThresholdExceeded, HotStoreUnavailable
from session_tiers.hot_store import HotStore
from session_tiers.metrics import (
    BACKLOG_ALERTS,
    BACKLOG_SIZE,
    CONSUMER_LAG,
    HOT_WRITE_LATENCY,
    WRITE_LATENCY_P99,
    MetricsRegistry,
    get_registry,
)

logger = structlog.get_logger(__name__)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _as_int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(_text(value))
    except ValueError:
        return 0


def parse_group_lag(raw: Any, group: str) -> int:
    """
    Extract the lag of one consumer group from an XINFO GROUPS reply.

    Accepts the raw RESP2 shape (list of flat [key, value, ...] lists, str or
    bytes) and the dict shape some clients return. A missing group or a null lag
    reads as 0.
    """
    for entry in raw or []:
        if isinstance(entry, Mapping):
            fields = {_text(k): v for k, v in entry.items()}
        elif isinstance(entry, (list, tuple)):
            fields = {_text(entry[i]): entry[i + 1] for i in range(0, len(entry) - 1, 2)}
        else:
            continue
        if _text(fields.get("name", "")) == group:
            return _as_int(fields.get("lag"))
    return 0


class BacklogMonitor:
    """Reads backlog size, consumer lag and write latency for alerts and the dashboard."""

    def __init__(self, hot: HotStore, settings: Settings, metrics: MetricsRegistry | None = None):
        self._hot = hot
        self._settings = settings
        self._metrics = metrics or get_registry()
        self._metrics.register_counter(BACKLOG_ALERTS)
        self._metrics.register_histogram(HOT_WRITE_LATENCY)

    def register_gauges(self) -> None:
        self._metrics.register_gauge(BACKLOG_SIZE, self.backlog_size)
        self._metrics.register_gauge(CONSUMER_LAG, self.consumer_lag)
        self._metrics.register_gauge(WRITE_LATENCY_P99, self.write_latency_p99)

    async def check_backlog(self) -> int:
        """Log a critical alert if the backlog is non-empty. Returns its size."""
        size = await self._hot.backlog_length()
        if size > 0:
            sample = await self._hot.backlog_oldest()
            alert = BacklogThresholdExceeded(size, sample)
            self._metrics.inc(BACKLOG_ALERTS)
            logger.critical("backlog_alert", size=size, sample=sample, detail=str(alert))
        return size

    async def backlog_size(self) -> float:
        return float(await self._hot.backlog_length())

    async def consumer_lag(self) -> float:
        try:
            raw = await self._hot.stream_groups()
        except HotStoreUnavailable as e:
            logger.warning("consumer_lag_unavailable", error=str(e))
            return 0.0
        return float(parse_group_lag(raw, self._settings.consumer_group))

    async def write_latency_p99(self) -> float:
        return self._metrics.percentile(HOT_WRITE_LATENCY, 99)
