"""Tests for LifecycleScheduler: job registration and lease-guarded runs."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from session_tiers.scheduler import JOB_ARCHIVAL, JOB_BACKLOG, JOB_CONSISTENCY, LifecycleScheduler


@pytest.fixture
def jobs():
    archiver = MagicMock()
    archiver.scan_and_archive = AsyncMock(return_value="archived")
    checker = MagicMock()
    checker.run = AsyncMock(return_value="report")
    monitor = MagicMock()
    monitor.check_backlog = AsyncMock(return_value=0)
    return archiver, checker, monitor


@pytest.fixture
def scheduler(hot, settings, jobs) -> LifecycleScheduler:
    archiver, checker, monitor = jobs
    return LifecycleScheduler(hot, archiver, checker, monitor, settings)


def test_schedule_uses_configured_intervals(scheduler, settings) -> None:
    scheduler.schedule_jobs()
    intervals = {job.id: job.trigger.interval.total_seconds() for job in scheduler.scheduler.get_jobs()}
    assert intervals == {
        JOB_ARCHIVAL: settings.archive_interval_seconds,
        JOB_CONSISTENCY: settings.consistency_interval_seconds,
        JOB_BACKLOG: settings.backlog_interval_seconds,
    }


@pytest.mark.asyncio
async def test_run_exclusive_takes_and_releases_lease(scheduler, hot) -> None:
    seen = {}

    async def work():
        seen["lease"] = dict(hot.leases)
        return 7

    assert await scheduler.run_exclusive(JOB_ARCHIVAL, work) == 7
    assert JOB_ARCHIVAL in seen["lease"]
    assert hot.leases == {}


@pytest.mark.asyncio
async def test_run_exclusive_skips_when_lease_held(scheduler, hot) -> None:
    await hot.acquire_lease(JOB_ARCHIVAL, 60)
    work = AsyncMock()
    with capture_logs() as logs:
        assert await scheduler.run_exclusive(JOB_ARCHIVAL, work) is None
    work.assert_not_awaited()
    assert any(e["event"] == "lifecycle_job_skipped" for e in logs)


@pytest.mark.asyncio
async def test_run_exclusive_releases_on_error(scheduler, hot) -> None:
    async def boom():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await scheduler.run_exclusive(JOB_CONSISTENCY, boom)
    assert hot.leases == {}


@pytest.mark.asyncio
async def test_scheduled_job_failure_is_logged_not_raised(scheduler, jobs) -> None:
    archiver, _, _ = jobs
    archiver.scan_and_archive.side_effect = RuntimeError("redis down")
    with capture_logs() as logs:
        await scheduler._run_archival()
    failed = [e for e in logs if e["event"] == "lifecycle_job_failed"]
    assert failed[0]["job_id"] == JOB_ARCHIVAL


@pytest.mark.asyncio
async def test_scheduled_jobs_call_components(scheduler, jobs) -> None:
    archiver, checker, monitor = jobs
    await scheduler._run_archival()
    await scheduler._run_consistency()
    await scheduler._run_backlog()
    archiver.scan_and_archive.assert_awaited_once()
    checker.run.assert_awaited_once()
    monitor.check_backlog.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_and_stop(scheduler, jobs) -> None:
    archiver, _, _ = jobs
    await scheduler.start()
    assert scheduler.running
    scheduled = scheduler.scheduler.get_jobs()
    assert len(scheduled) == 3
    for job in scheduled:
        assert job.max_instances == 1
        assert job.coalesce is True
    await scheduler.stop()
    assert not scheduler.running
    archiver.request_shutdown.assert_called_once()
