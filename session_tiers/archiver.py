"""
Archival job: moves idle conversations from the hot store to the cold store.

Per candidate: optimistic re-check of the heartbeat score, read the full log,
idempotent cold upsert, then hot delete and heartbeat removal. Any failure leaves
the heartbeat in place so the next run retries (at-least-once).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from session_tiers.cold_store import ColdStore
from session_tiers.config import Settings
from session_tiers.errors import RaceDetected
from session_tiers.hot_store import HotStore
from session_tiers.messages import SessionMetadata, extract_summary, now_ms, total_weight
from session_tiers.metrics import (
    ARCHIVE_ERROR,
    ARCHIVE_RACE_SKIPPED,
    ARCHIVE_SUCCESS,
    MetricsRegistry,
    get_registry,
)
from session_tiers.models import ArchiveIndex, ArchiveRecord

logger = structlog.get_logger(__name__)

OUTCOME_ARCHIVED = "archived"
OUTCOME_ACTIVE = "active"
OUTCOME_ORPHAN = "orphan"


def ms_to_datetime(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def build_archive_rows(
    conversation_id: str,
    records: list[dict[str, Any]],
    metadata: SessionMetadata | None,
    last_active_ms: float,
    archived_at: datetime,
) -> tuple[ArchiveRecord, ArchiveIndex]:
    """
    Build the full archive row and its index row from a hot message log.

    Args:
        conversation_id: Primary key for both rows.
        records: Full message log, oldest first.
        metadata: Hot metadata if present (userId, createdAt).
        last_active_ms: Heartbeat score at archival time.
        archived_at: Archival timestamp.

    Returns:
        (ArchiveRecord, ArchiveIndex) sharing conversation_id.
    """
    user_id = metadata.user_id if metadata else "unknown"
    tokens = total_weight(records)
    if metadata and metadata.created_at:
        start_ms: float = metadata.created_at
    elif isinstance(records[0].get("timestamp"), (int, float)):
        start_ms = records[0]["timestamp"]
    else:
        start_ms = last_active_ms
    record = ArchiveRecord(
        conversation_id=conversation_id,
        user_id=user_id,
        payload=records,
        total_tokens=tokens,
        archived_at=archived_at,
        created_at=archived_at,
    )
    index_row = ArchiveIndex(
        conversation_id=conversation_id,
        user_id=user_id,
        summary=extract_summary(records),
        message_count=len(records),
        total_tokens=tokens,
        start_time=ms_to_datetime(start_ms),
        last_active_time=ms_to_datetime(last_active_ms),
        archived_at=archived_at,
    )
    return record, index_row


@dataclass
class ArchiveRunResult:
    """Outcome of one scan; ids are grouped by what happened to them."""

    candidates: int = 0
    archived: list[str] = field(default_factory=list)
    skipped_active: list[str] = field(default_factory=list)
    orphans_cleared: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    interrupted: bool = False


class SessionArchiver:
    """Scans the heartbeat index for idle conversations and archives them."""

    def __init__(
        self,
        hot: HotStore,
        cold: ColdStore,
        settings: Settings,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._hot = hot
        self._cold = cold
        self._settings = settings
        self._clock = clock
        self._shutdown = False
        self._metrics = metrics or get_registry()
        for name in (ARCHIVE_SUCCESS, ARCHIVE_ERROR, ARCHIVE_RACE_SKIPPED):
            self._metrics.register_counter(name)

    def request_shutdown(self) -> None:
        """Stop a running scan before its next candidate; remaining ids wait for the next run."""
        self._shutdown = True

    async def scan_and_archive(self) -> ArchiveRunResult:
        self._shutdown = False
        threshold = self._clock() - self._settings.idle_threshold_seconds * 1000
        candidates = await self._hot.heartbeat_ids_up_to(threshold)
        result = ArchiveRunResult(candidates=len(candidates))
        if not candidates:
            logger.info("archive_scan_empty", threshold=threshold)
            return result

        logger.info("archive_scan_started", candidates=len(candidates), threshold=threshold)
        for conversation_id in candidates:
            if self._shutdown:
                result.interrupted = True
                logger.info("archive_scan_interrupted", remaining=len(candidates) - _processed(result))
                break
            try:
                outcome = await self.archive_conversation(conversation_id, threshold)
            except Exception as e:
                self._metrics.inc(ARCHIVE_ERROR)
                result.failed.append(conversation_id)
                logger.error(
                    "archive_failed",
                    conversation_id=conversation_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                continue
            if outcome == OUTCOME_ARCHIVED:
                result.archived.append(conversation_id)
            elif outcome == OUTCOME_ACTIVE:
                result.skipped_active.append(conversation_id)
            else:
                result.orphans_cleared.append(conversation_id)

        logger.info(
            "archive_scan_finished",
            archived=len(result.archived),
            skipped_active=len(result.skipped_active),
            orphans_cleared=len(result.orphans_cleared),
            failed=len(result.failed),
        )
        return result

    async def archive_conversation(self, conversation_id: str, threshold: float) -> str:
        """
        Archive one conversation if it is still idle.

        Returns OUTCOME_ARCHIVED, OUTCOME_ACTIVE (re-check found newer activity) or
        OUTCOME_ORPHAN (heartbeat without messages, heartbeat removed). Store errors
        propagate; the heartbeat entry is then left for the next run.
        """
        score = await self._hot.heartbeat_score(conversation_id)
        if score is None or score > threshold:
            race = RaceDetected(conversation_id, score if score is not None else -1, threshold)
            self._metrics.inc(ARCHIVE_RACE_SKIPPED)
            logger.info("archive_skipped_active", conversation_id=conversation_id, reason=str(race))
            return OUTCOME_ACTIVE

        records = await self._hot.read_all(conversation_id)
        if not records:
            logger.warning("archive_orphan_heartbeat", conversation_id=conversation_id)
            await self._hot.heartbeat_remove(conversation_id)
            return OUTCOME_ORPHAN

        metadata = await self._hot.get_metadata(conversation_id)
        archived_at = ms_to_datetime(self._clock())
        record, index_row = build_archive_rows(conversation_id, records, metadata, score, archived_at)
        await self._cold.upsert_archive(record, index_row)

        await self._hot.delete_conversation(conversation_id)
        await self._hot.heartbeat_remove(conversation_id)
        self._metrics.inc(ARCHIVE_SUCCESS)
        logger.info(
            "archive_completed",
            conversation_id=conversation_id,
            messages=len(records),
            total_tokens=record.total_tokens,
        )
        return OUTCOME_ARCHIVED


def _processed(result: ArchiveRunResult) -> int:
    return len(result.archived) + len(result.skipped_active) + len(result.orphans_cleared) + len(result.failed)
