"""Tests for SessionArchiver: idle archival, race protection, retry and failure isolation."""

from datetime import datetime, timezone

import pytest
from structlog.testing import capture_logs

from session_tiers.archiver import (
    OUTCOME_ACTIVE,
    OUTCOME_ARCHIVED,
    OUTCOME_ORPHAN,
    SessionArchiver,
    build_archive_rows,
)
from session_tiers.errors import ColdStoreUnavailable, HotStoreUnavailable
from session_tiers.hot_store import InMemoryHotStore
from session_tiers.messages import SessionMetadata
from session_tiers.metrics import ARCHIVE_ERROR, ARCHIVE_RACE_SKIPPED, ARCHIVE_SUCCESS

DAY_MS = 24 * 3600 * 1000
NOW_MS = 1_760_000_000_000


async def _seed(hot, cid: str, last_active: int, messages: int = 2, user_id: str = "u1") -> None:
    for i in range(messages):
        role = "user" if i % 2 == 0 else "assistant"
        await hot.append_message(cid, {"role": role, "content": f"{cid} message {i}", "tokens": 5})
    await hot.record_activity(cid, user_id, timestamp=last_active)


def test_build_archive_rows() -> None:
    records = [{"role": "user", "content": "hello there", "tokens": 3}, {"role": "assistant", "tokens": 4}]
    meta = SessionMetadata(user_id="u9", created_at=1_000, last_active_at=5_000)
    archived_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
    record, index_row = build_archive_rows("c1", records, meta, 5_000, archived_at)
    assert record.conversation_id == index_row.conversation_id == "c1"
    assert record.user_id == index_row.user_id == "u9"
    assert record.payload == records
    assert record.total_tokens == index_row.total_tokens == 7
    assert index_row.message_count == 2
    assert index_row.summary == "hello there"
    assert index_row.start_time == datetime.fromtimestamp(1, tz=timezone.utc)
    assert index_row.last_active_time == datetime.fromtimestamp(5, tz=timezone.utc)


def test_build_archive_rows_without_metadata_uses_first_timestamp() -> None:
    records = [{"role": "user", "content": "x", "timestamp": 2_000}]
    archived_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
    record, index_row = build_archive_rows("c1", records, None, 9_000, archived_at)
    assert record.user_id == "unknown"
    assert index_row.start_time == datetime.fromtimestamp(2, tz=timezone.utc)


@pytest.mark.asyncio
async def test_idle_conversation_is_archived(hot, cold, settings, metrics, clock) -> None:
    await _seed(hot, "c1", NOW_MS - 8 * DAY_MS, messages=3)
    await _seed(hot, "fresh", NOW_MS - DAY_MS)
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)

    result = await archiver.scan_and_archive()

    assert result.candidates == 1
    assert result.archived == ["c1"]
    assert not await hot.has_messages("c1")
    assert not await hot.has_metadata("c1")
    assert await hot.heartbeat_score("c1") is None
    record = await cold.get_archive("c1")
    assert [m["content"] for m in record.payload] == ["c1 message 0", "c1 message 1", "c1 message 2"]
    assert record.total_tokens == 15
    index_row = await cold.get_index("c1")
    assert index_row.summary == "c1 message 0"
    assert index_row.message_count == 3
    assert await hot.has_messages("fresh")
    assert metrics.counter(ARCHIVE_SUCCESS) == 1


@pytest.mark.asyncio
async def test_empty_scan(hot, cold, settings, metrics, clock) -> None:
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)
    with capture_logs() as logs:
        result = await archiver.scan_and_archive()
    assert result.candidates == 0
    assert any(e["event"] == "archive_scan_empty" for e in logs)


@pytest.mark.asyncio
async def test_activity_during_scan_skips_archival(cold, settings, metrics, clock) -> None:
    class TouchDuringScan(InMemoryHotStore):
        async def heartbeat_ids_up_to(self, max_score):
            ids = await super().heartbeat_ids_up_to(max_score)
            await self.record_activity("c1", "u1", timestamp=NOW_MS)
            return ids

    hot = TouchDuringScan(settings, metrics)
    await _seed(hot, "c1", NOW_MS - 8 * DAY_MS)
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)

    with capture_logs() as logs:
        result = await archiver.scan_and_archive()

    assert result.skipped_active == ["c1"]
    assert await hot.has_messages("c1")
    assert await hot.heartbeat_score("c1") == float(NOW_MS)
    assert await cold.get_archive("c1") is None
    assert metrics.counter(ARCHIVE_RACE_SKIPPED) == 1
    assert metrics.counter(ARCHIVE_ERROR) == 0
    skipped = [e for e in logs if e["event"] == "archive_skipped_active"]
    assert skipped and skipped[0]["log_level"] == "info"


@pytest.mark.asyncio
async def test_archive_conversation_missing_heartbeat_is_active(hot, cold, settings, metrics, clock) -> None:
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)
    assert await archiver.archive_conversation("ghost", NOW_MS) == OUTCOME_ACTIVE


@pytest.mark.asyncio
async def test_retry_after_hot_delete_failure_is_idempotent(cold, settings, metrics, clock) -> None:
    class FlakyDelete(InMemoryHotStore):
        fail = True

        async def delete_conversation(self, conversation_id):
            if self.fail:
                self.fail = False
                raise HotStoreUnavailable("delete_conversation failed: timeout")
            await super().delete_conversation(conversation_id)

    hot = FlakyDelete(settings, metrics)
    await _seed(hot, "c1", NOW_MS - 8 * DAY_MS)
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)

    first = await archiver.scan_and_archive()
    assert first.failed == ["c1"]
    assert await hot.heartbeat_score("c1") is not None
    assert await cold.count_by_ids(["c1"]) == 1

    second = await archiver.scan_and_archive()
    assert second.archived == ["c1"]
    assert await cold.count_by_ids(["c1"]) == 1
    assert len((await cold.get_archive("c1")).payload) == 2
    assert await hot.heartbeat_score("c1") is None
    assert metrics.counter(ARCHIVE_ERROR) == 1
    assert metrics.counter(ARCHIVE_SUCCESS) == 1


@pytest.mark.asyncio
async def test_cold_failure_is_isolated_per_conversation(hot, cold, settings, metrics, clock) -> None:
    original = cold.upsert_archive

    async def upsert(record, index_row):
        if record.conversation_id == "bad":
            raise ColdStoreUnavailable("upsert_archive failed: connection reset")
        await original(record, index_row)

    cold.upsert_archive = upsert
    for cid in ("a", "bad", "c"):
        await _seed(hot, cid, NOW_MS - 9 * DAY_MS)
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)

    with capture_logs() as logs:
        result = await archiver.scan_and_archive()

    assert sorted(result.archived) == ["a", "c"]
    assert result.failed == ["bad"]
    assert await hot.has_messages("bad")
    assert await hot.heartbeat_score("bad") is not None
    assert metrics.counter(ARCHIVE_ERROR) == 1
    failed = [e for e in logs if e["event"] == "archive_failed"]
    assert failed[0]["conversation_id"] == "bad"
    assert failed[0]["error_type"] == "ColdStoreUnavailable"


@pytest.mark.asyncio
async def test_corrupt_log_keeps_heartbeat(hot, cold, settings, metrics, clock) -> None:
    await _seed(hot, "c1", NOW_MS - 8 * DAY_MS)
    hot.logs["c1"].append("{corrupt")
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)
    result = await archiver.scan_and_archive()
    assert result.failed == ["c1"]
    assert await hot.heartbeat_score("c1") is not None
    assert await cold.get_archive("c1") is None


@pytest.mark.asyncio
async def test_orphan_heartbeat_is_cleared(hot, cold, settings, metrics, clock) -> None:
    await hot.record_activity("c1", "u1", timestamp=NOW_MS - 8 * DAY_MS)
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)
    assert await archiver.archive_conversation("c1", NOW_MS - 7 * DAY_MS) == OUTCOME_ORPHAN
    assert await hot.heartbeat_score("c1") is None
    assert await cold.get_archive("c1") is None


@pytest.mark.asyncio
async def test_shutdown_stops_between_candidates(hot, cold, settings, metrics, clock) -> None:
    for i, cid in enumerate(("a", "b", "c")):
        await _seed(hot, cid, NOW_MS - 10 * DAY_MS + i)
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)
    original = cold.upsert_archive

    async def upsert(record, index_row):
        await original(record, index_row)
        archiver.request_shutdown()

    cold.upsert_archive = upsert
    result = await archiver.scan_and_archive()

    assert result.interrupted is True
    assert result.archived == ["a"]
    assert await hot.heartbeat_score("b") is not None
    assert await hot.heartbeat_score("c") is not None


@pytest.mark.asyncio
async def test_exactly_at_threshold_is_archived(hot, cold, settings, metrics, clock) -> None:
    await _seed(hot, "c1", NOW_MS - settings.idle_threshold_seconds * 1000)
    archiver = SessionArchiver(hot, cold, settings, metrics, clock=clock)
    threshold = NOW_MS - settings.idle_threshold_seconds * 1000
    assert await archiver.archive_conversation("c1", threshold) == OUTCOME_ARCHIVED
