"""
SessionLifecycle: the surface collaborators call.

Wires hot store, cold store, archiver, reactivator, consistency checker and
backlog monitor from one Settings object. Chat writes go straight to the hot
store; history views read the cold index; the scheduled jobs are exposed for
manual triggering.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping

import structlog

from session_tiers.archiver import ArchiveRunResult, SessionArchiver
from session_tiers.cold_store import ArchiveDetail, ArchiveSummary, ColdStore, Page
from session_tiers.config import Settings, get_settings
from session_tiers.consistency import ConsistencyChecker, ConsistencyReport
from session_tiers.db import get_session_factory, init_db
from session_tiers.hot_store import HotStore, RedisHotStore
from session_tiers.messages import SessionMessage
from session_tiers.metrics import (
    ARCHIVE_ERROR,
    ARCHIVE_SUCCESS,
    BACKLOG_SIZE,
    CONSUMER_LAG,
    WRITE_LATENCY_P99,
    MetricsRegistry,
    get_registry,
)
from session_tiers.monitor import BacklogMonitor
from session_tiers.reactivation import SessionReactivator
from session_tiers.scheduler import LifecycleScheduler

logger = structlog.get_logger(__name__)


@dataclass
class DashboardSnapshot:
    backlog_size: int
    consumer_lag: int
    archive_success_count: int
    archive_error_count: int
    write_latency_p99: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SessionLifecycle:
    """Facade over the two tiers and the background jobs."""

    def __init__(
        self,
        hot: HotStore,
        cold: ColdStore,
        settings: Settings | None = None,
        metrics: MetricsRegistry | None = None,
    ):
        self.settings = settings or get_settings()
        self.metrics = metrics or get_registry()
        self.hot = hot
        self.cold = cold
        self.archiver = SessionArchiver(hot, cold, self.settings, self.metrics)
        self.reactivator = SessionReactivator(hot, cold, self.metrics)
        self.checker = ConsistencyChecker(hot, cold, self.settings, self.metrics)
        self.monitor = BacklogMonitor(hot, self.settings, self.metrics)
        self.monitor.register_gauges()
        self.scheduler = LifecycleScheduler(hot, self.archiver, self.checker, self.monitor, self.settings)

    @classmethod
    async def from_settings(cls, settings: Settings | None = None, create_tables: bool = False) -> "SessionLifecycle":
        """Build Redis and database backends from settings; optionally create the archive tables."""
        settings = settings or get_settings()
        metrics = get_registry()
        factory = get_session_factory(settings.database_url)
        if create_tables:
            await init_db(database_url=settings.database_url)
        hot = RedisHotStore.from_settings(settings, metrics)
        return cls(hot, ColdStore(factory), settings, metrics)

    # -- collaborator writes ----------------------------------------------

    async def record_activity(self, conversation_id: str, user_id: str | None, timestamp: int | None = None) -> None:
        await self.hot.record_activity(conversation_id, user_id, timestamp)

    async def append_message(self, conversation_id: str, message: SessionMessage | Mapping[str, Any]) -> int:
        return await self.hot.append_message(conversation_id, message)

    async def ensure_hot_data(self, conversation_id: str) -> bool:
        return await self.reactivator.ensure_hot_data(conversation_id)

    async def read_context(self, conversation_id: str, max_tokens: int | None = None) -> list[dict[str, Any]]:
        """Recent messages for a prompt, newest kept first within the token budget."""
        budget = max_tokens if max_tokens is not None else self.settings.max_prompt_tokens
        return await self.hot.read_recent_by_budget(conversation_id, budget)

    # -- history views ------------------------------------------------------

    async def list_archived_conversations(self, user_id: str, page: int = 1, size: int = 10) -> Page[ArchiveSummary]:
        return await self.cold.list_index_by_user(user_id, page, size)

    async def get_archived_conversation_detail(self, conversation_id: str) -> ArchiveDetail | None:
        record = await self.cold.get_archive(conversation_id)
        return ArchiveDetail.from_record(record) if record is not None else None

    # -- dashboard ------------------------------------------------------------

    async def dashboard_snapshot(self) -> DashboardSnapshot:
        return DashboardSnapshot(
            backlog_size=int(await self.metrics.read_gauge(BACKLOG_SIZE)),
            consumer_lag=int(await self.metrics.read_gauge(CONSUMER_LAG)),
            archive_success_count=self.metrics.counter(ARCHIVE_SUCCESS),
            archive_error_count=self.metrics.counter(ARCHIVE_ERROR),
            write_latency_p99=await self.metrics.read_gauge(WRITE_LATENCY_P99),
        )

    # -- jobs -----------------------------------------------------------------

    async def run_archival(self) -> ArchiveRunResult:
        return await self.archiver.scan_and_archive()

    async def run_consistency_check(self) -> ConsistencyReport:
        return await self.checker.run()

    async def run_backlog_check(self) -> int:
        return await self.monitor.check_backlog()

    async def start(self) -> None:
        await self.scheduler.start()
        logger.info("session_lifecycle_started")

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.hot.close()
        logger.info("session_lifecycle_closed")
