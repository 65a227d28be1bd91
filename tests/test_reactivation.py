"""Tests for SessionReactivator: cold→hot rehydration on demand."""

import asyncio
from datetime import datetime, timezone

import pytest

from session_tiers.archiver import SessionArchiver
from session_tiers.consistency import ConsistencyChecker
from session_tiers.errors import ColdStoreUnavailable, SerializationFault
from session_tiers.metrics import REACTIVATION_ERROR, REACTIVATION_SUCCESS
from session_tiers.models import ArchiveIndex, ArchiveRecord
from session_tiers.reactivation import SessionReactivator

DAY_MS = 24 * 3600 * 1000
NOW_MS = 1_760_000_000_000


async def _archive(hot, cold, settings, metrics, clock, cid: str = "c1", messages: int = 3) -> list[dict]:
    for i in range(messages):
        role = "user" if i % 2 == 0 else "assistant"
        await hot.append_message(cid, {"role": role, "content": f"m{i}", "tokens": i + 1})
    await hot.record_activity(cid, "u1", timestamp=NOW_MS - 8 * DAY_MS)
    original = await hot.read_all(cid)
    result = await SessionArchiver(hot, cold, settings, metrics, clock=clock).scan_and_archive()
    assert result.archived == [cid]
    return original


@pytest.mark.asyncio
async def test_round_trip_preserves_messages(hot, cold, settings, metrics, clock) -> None:
    original = await _archive(hot, cold, settings, metrics, clock)
    reactivator = SessionReactivator(hot, cold, metrics)

    assert await reactivator.ensure_hot_data("c1") is True

    assert await hot.read_all("c1") == original
    assert await cold.get_archive("c1") is None
    assert await cold.get_index("c1") is None
    meta = await hot.get_metadata("c1")
    assert meta.user_id == "u1"
    assert meta.message_count == 3
    assert meta.total_tokens == 6
    assert await hot.heartbeat_score("c1") is not None
    assert metrics.counter(REACTIVATION_SUCCESS) == 1


@pytest.mark.asyncio
async def test_hot_conversation_is_not_reactivated(hot, cold, metrics) -> None:
    await hot.append_message("c1", {"role": "user", "content": "hi"})
    reactivator = SessionReactivator(hot, cold, metrics)
    assert await reactivator.ensure_hot_data("c1") is False
    assert metrics.counter(REACTIVATION_SUCCESS) == 0


@pytest.mark.asyncio
async def test_unknown_conversation_returns_false(hot, cold, metrics) -> None:
    reactivator = SessionReactivator(hot, cold, metrics)
    assert await reactivator.ensure_hot_data("brand-new") is False
    assert await reactivator.reactivate("brand-new") is False
    assert not await hot.has_messages("brand-new")


@pytest.mark.asyncio
async def test_corrupt_payload_propagates(hot, cold, metrics) -> None:
    when = datetime(2025, 1, 1, tzinfo=timezone.utc)
    await cold.upsert_archive(
        ArchiveRecord(conversation_id="c1", user_id="u1", payload={"not": "a list"}, total_tokens=0, archived_at=when),
        ArchiveIndex(
            conversation_id="c1",
            user_id="u1",
            summary="x",
            message_count=0,
            total_tokens=0,
            start_time=when,
            last_active_time=when,
            archived_at=when,
        ),
    )
    reactivator = SessionReactivator(hot, cold, metrics)
    with pytest.raises(SerializationFault):
        await reactivator.ensure_hot_data("c1")
    assert await cold.get_archive("c1") is not None
    assert not await hot.has_messages("c1")
    assert metrics.counter(REACTIVATION_ERROR) == 1


@pytest.mark.asyncio
async def test_cold_delete_failure_rolls_back_hot_copy(hot, cold, settings, metrics, clock) -> None:
    original = await _archive(hot, cold, settings, metrics, clock)
    real_delete = cold.delete_archive
    calls = {"n": 0}

    async def flaky_delete(conversation_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ColdStoreUnavailable("delete_archive failed: timeout")
        return await real_delete(conversation_id)

    cold.delete_archive = flaky_delete
    reactivator = SessionReactivator(hot, cold, metrics)

    with pytest.raises(ColdStoreUnavailable):
        await reactivator.ensure_hot_data("c1")
    assert not await hot.has_messages("c1")
    assert not await hot.has_metadata("c1")
    assert await hot.heartbeat_score("c1") is None
    assert await cold.get_archive("c1") is not None

    assert await reactivator.ensure_hot_data("c1") is True

    assert await hot.read_all("c1") == original
    assert await cold.get_archive("c1") is None
    assert metrics.counter(REACTIVATION_ERROR) == 1
    assert metrics.counter(REACTIVATION_SUCCESS) == 1


@pytest.mark.asyncio
async def test_concurrent_requests_rehydrate_once(hot, cold, settings, metrics, clock) -> None:
    original = await _archive(hot, cold, settings, metrics, clock)
    reactivator = SessionReactivator(hot, cold, metrics)

    results = await asyncio.gather(*(reactivator.ensure_hot_data("c1") for _ in range(5)))

    assert results.count(True) == 1
    assert await hot.read_all("c1") == original
    assert metrics.counter(REACTIVATION_SUCCESS) == 1


@pytest.mark.asyncio
async def test_failed_reactivation_leaves_no_dual_existence(hot, cold, settings, metrics, clock) -> None:
    await _archive(hot, cold, settings, metrics, clock)
    real_delete = cold.delete_archive
    calls = {"n": 0}

    async def flaky_delete(conversation_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ColdStoreUnavailable("delete_archive failed: timeout")
        return await real_delete(conversation_id)

    cold.delete_archive = flaky_delete
    reactivator = SessionReactivator(hot, cold, metrics)
    with pytest.raises(ColdStoreUnavailable):
        await reactivator.ensure_hot_data("c1")

    report = await ConsistencyChecker(hot, cold, settings, metrics).run()
    assert report.dual_existence == []
