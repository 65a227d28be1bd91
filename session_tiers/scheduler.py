"""LifecycleScheduler: APScheduler jobs for archival, consistency audit and backlog checks."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

import structlog
from apscheduler.events import EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from session_tiers.archiver import SessionArchiver
from session_tiers.config import Settings
from session_tiers.consistency import ConsistencyChecker
from session_tiers.hot_store import HotStore
from session_tiers.monitor import BacklogMonitor

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JOB_ARCHIVAL = "session_archival"
JOB_CONSISTENCY = "session_consistency_check"
JOB_BACKLOG = "session_backlog_check"

_MISFIRE_GRACE_TIME_S = 60


class LifecycleScheduler:
    """
    Runs the three periodic jobs on one AsyncIOScheduler.

    max_instances=1 and coalesce keep a job from overlapping itself in this
    process; the hot-store lease keeps it from overlapping across processes.
    """

    def __init__(
        self,
        hot: HotStore,
        archiver: SessionArchiver,
        checker: ConsistencyChecker,
        monitor: BacklogMonitor,
        settings: Settings,
    ) -> None:
        self._hot = hot
        self._archiver = archiver
        self._checker = checker
        self._monitor = monitor
        self._settings = settings
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": _MISFIRE_GRACE_TIME_S,
            }
        )
        self.scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)
        self._running = False

    @staticmethod
    def _on_job_missed(event: Any) -> None:
        logger.warning("lifecycle_job_missed", job_id=event.job_id, scheduled_run_time=str(event.scheduled_run_time))

    @property
    def running(self) -> bool:
        return self._running

    def schedule_jobs(self) -> None:
        jobs = (
            (JOB_ARCHIVAL, self._run_archival, self._settings.archive_interval_seconds),
            (JOB_CONSISTENCY, self._run_consistency, self._settings.consistency_interval_seconds),
            (JOB_BACKLOG, self._run_backlog, self._settings.backlog_interval_seconds),
        )
        for job_id, func, seconds in jobs:
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                name=job_id,
                replace_existing=True,
            )
            logger.info("lifecycle_job_scheduled", job_id=job_id, interval_seconds=seconds)

    async def start(self) -> None:
        """Schedule the jobs and start the scheduler on the running event loop."""
        if self._running:
            return
        self.schedule_jobs()
        self.scheduler.start()
        self._running = True
        logger.info("lifecycle_scheduler_started", jobs=len(self.scheduler.get_jobs()))

    async def stop(self) -> None:
        """Interrupt a running archival scan between candidates, then shut down."""
        if not self._running:
            return
        self._archiver.request_shutdown()
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("lifecycle_scheduler_stopped")

    async def run_exclusive(self, name: str, func: Callable[[], Awaitable[T]]) -> T | None:
        """
        Run func while holding the named lease.

        Returns None without running func when another holder has the lease.
        The lease is released afterwards even if func raises.
        """
        token = await self._hot.acquire_lease(name, self._settings.job_lease_seconds)
        if token is None:
            logger.info("lifecycle_job_skipped", job_id=name, reason="lease_held")
            return None
        try:
            return await func()
        finally:
            await self._hot.release_lease(name, token)

    async def _run_guarded(self, name: str, func: Callable[[], Awaitable[Any]]) -> None:
        try:
            await self.run_exclusive(name, func)
        except Exception as e:
            logger.error("lifecycle_job_failed", job_id=name, error=str(e), exc_info=True)

    async def _run_archival(self) -> None:
        await self._run_guarded(JOB_ARCHIVAL, self._archiver.scan_and_archive)

    async def _run_consistency(self) -> None:
        await self._run_guarded(JOB_CONSISTENCY, self._checker.run)

    async def _run_backlog(self) -> None:
        await self._run_guarded(JOB_BACKLOG, self._monitor.check_backlog)
