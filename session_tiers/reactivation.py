"""
Reactivation: rehydrate an archived conversation from the cold store into the hot store.

Runs on the request path, so failures propagate to the caller. Replay replaces the
hot log instead of appending. If the cold delete fails, the replayed hot copy is
removed again before the error propagates, leaving the conversation cold-only.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime, timezone

import structlog

from session_tiers.cold_store import ColdStore
from session_tiers.hot_store import HotStore
from session_tiers.messages import SessionMetadata, now_ms, parse_payload, total_weight
from session_tiers.metrics import REACTIVATION_ERROR, REACTIVATION_SUCCESS, MetricsRegistry, get_registry

logger = structlog.get_logger(__name__)


def _to_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class SessionReactivator:
    """Cold→hot migration, serialized per conversation within this process."""

    def __init__(self, hot: HotStore, cold: ColdStore, metrics: MetricsRegistry | None = None):
        self._hot = hot
        self._cold = cold
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._metrics = metrics or get_registry()
        self._metrics.register_counter(REACTIVATION_SUCCESS)
        self._metrics.register_counter(REACTIVATION_ERROR)

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def ensure_hot_data(self, conversation_id: str) -> bool:
        """Reactivate if the hot log is absent. Returns True only when data was rehydrated."""
        if await self._hot.has_messages(conversation_id):
            return False
        async with self._lock_for(conversation_id):
            # another request may have rehydrated it while we waited
            if await self._hot.has_messages(conversation_id):
                return False
            return await self._reactivate_locked(conversation_id)

    async def reactivate(self, conversation_id: str) -> bool:
        """
        Move an archived conversation back into the hot store.

        Returns:
            False when there is no archive (a brand-new conversation), True after
            the log is replayed and both cold rows are deleted.

        Raises:
            HotStoreUnavailable, ColdStoreUnavailable, SerializationFault.
        """
        async with self._lock_for(conversation_id):
            return await self._reactivate_locked(conversation_id)

    async def _reactivate_locked(self, conversation_id: str) -> bool:
        try:
            return await self._rehydrate(conversation_id)
        except Exception:
            self._metrics.inc(REACTIVATION_ERROR)
            logger.error("reactivation_failed", conversation_id=conversation_id, exc_info=True)
            raise

    async def _rehydrate(self, conversation_id: str) -> bool:
        archive = await self._cold.get_archive(conversation_id)
        if archive is None:
            return False

        logger.info("reactivation_started", conversation_id=conversation_id)
        records = parse_payload(archive.payload)
        index_row = await self._cold.get_index(conversation_id)
        now = now_ms()
        created = _to_ms(index_row.start_time) if index_row is not None else None
        metadata = SessionMetadata(
            user_id=archive.user_id or "unknown",
            created_at=created or now,
            last_active_at=now,
            message_count=len(records),
            total_tokens=total_weight(records),
        )
        await self._hot.replace_messages(conversation_id, records, metadata)
        try:
            await self._cold.delete_archive(conversation_id)
        except Exception:
            # archive is intact; drop the replayed hot copy so the next ensure_hot_data retries
            await self._hot.delete_conversation(conversation_id)
            await self._hot.heartbeat_remove(conversation_id)
            logger.warning("reactivation_rolled_back", conversation_id=conversation_id)
            raise

        self._metrics.inc(REACTIVATION_SUCCESS)
        logger.info("reactivation_completed", conversation_id=conversation_id, messages=len(records))
        return True
