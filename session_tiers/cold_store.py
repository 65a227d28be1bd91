"""
Cold store: archived conversations in the relational database.

Every method is one local transaction scoped to the given conversation(s).
SQLAlchemy errors are re-raised as ColdStoreUnavailable so callers can treat
them as transient.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncGenerator, Generic, Sequence, TypeVar

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from session_tiers.db import session_scope
from session_tiers.errors import ColdStoreUnavailable
from session_tiers.models import ArchiveIndex, ArchiveRecord

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of results; page numbers start at 1."""

    items: list[T]
    total: int
    page: int
    size: int

    @property
    def pages(self) -> int:
        return (self.total + self.size - 1) // self.size if self.size else 0


@dataclass
class ArchiveSummary:
    conversation_id: str
    user_id: str
    summary: str | None
    message_count: int
    total_tokens: int
    start_time: datetime
    last_active_time: datetime
    archived_at: datetime

    @classmethod
    def from_row(cls, row: ArchiveIndex) -> "ArchiveSummary":
        return cls(
            conversation_id=row.conversation_id,
            user_id=row.user_id,
            summary=row.summary,
            message_count=row.message_count,
            total_tokens=row.total_tokens,
            start_time=row.start_time,
            last_active_time=row.last_active_time,
            archived_at=row.archived_at,
        )


@dataclass
class ArchiveDetail:
    conversation_id: str
    user_id: str
    messages: list[dict] = field(default_factory=list)
    total_tokens: int = 0
    archived_at: datetime | None = None

    @classmethod
    def from_record(cls, record: ArchiveRecord) -> "ArchiveDetail":
        return cls(
            conversation_id=record.conversation_id,
            user_id=record.user_id,
            messages=list(record.payload or []),
            total_tokens=record.total_tokens,
            archived_at=record.archived_at,
        )


class ColdStore:
    """Archive tables accessed through an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with session_scope(self._factory) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("cold_store_failed", operation=operation, error=str(e))
            raise ColdStoreUnavailable(f"{operation} failed: {e}") from e

    async def upsert_archive(self, record: ArchiveRecord, index_row: ArchiveIndex) -> None:
        """Write the full record and its index row in one transaction; an existing key is overwritten."""
        if record.conversation_id != index_row.conversation_id:
            raise ValueError("archive record and index row must share a conversation_id")
        async with self._transaction("upsert_archive") as session:
            await session.merge(record)
            await session.merge(index_row)

    async def get_archive(self, conversation_id: str) -> ArchiveRecord | None:
        async with self._transaction("get_archive") as session:
            return await session.get(ArchiveRecord, conversation_id)

    async def get_index(self, conversation_id: str) -> ArchiveIndex | None:
        async with self._transaction("get_index") as session:
            return await session.get(ArchiveIndex, conversation_id)

    async def delete_archive(self, conversation_id: str) -> bool:
        """Delete the record and index row together. Returns True if anything was removed."""
        async with self._transaction("delete_archive") as session:
            rec = await session.execute(delete(ArchiveRecord).where(ArchiveRecord.conversation_id == conversation_id))
            idx = await session.execute(delete(ArchiveIndex).where(ArchiveIndex.conversation_id == conversation_id))
            return (rec.rowcount or 0) + (idx.rowcount or 0) > 0

    async def list_index_by_user(self, user_id: str, page: int = 1, size: int = 10) -> Page[ArchiveSummary]:
        """
        Paginated history for a user, most recently active first.

        Args:
            user_id: Owner of the archived conversations.
            page: 1-based page number.
            size: Rows per page.

        Returns:
            Page of ArchiveSummary; empty items when the page is past the end.
        """
        if page < 1 or size < 1:
            raise ValueError("page and size must be >= 1")
        async with self._transaction("list_index_by_user") as session:
            total = await session.scalar(
                select(func.count()).select_from(ArchiveIndex).where(ArchiveIndex.user_id == user_id)
            )
            rows = await session.scalars(
                select(ArchiveIndex)
                .where(ArchiveIndex.user_id == user_id)
                .order_by(ArchiveIndex.last_active_time.desc(), ArchiveIndex.conversation_id)
                .offset((page - 1) * size)
                .limit(size)
            )
            items = [ArchiveSummary.from_row(r) for r in rows]
        return Page(items=items, total=int(total or 0), page=page, size=size)

    async def count_by_ids(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        async with self._transaction("count_by_ids") as session:
            count = await session.scalar(
                select(func.count()).select_from(ArchiveRecord).where(ArchiveRecord.conversation_id.in_(list(ids)))
            )
        return int(count or 0)

    async def select_by_ids(self, ids: Sequence[str]) -> list[str]:
        """Return the subset of ids that have an archive record."""
        if not ids:
            return []
        async with self._transaction("select_by_ids") as session:
            rows = await session.scalars(
                select(ArchiveRecord.conversation_id).where(ArchiveRecord.conversation_id.in_(list(ids)))
            )
            return sorted(rows)
