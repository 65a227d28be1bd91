"""
SQLAlchemy models for the cold tier: session_archives, session_archive_index.

- session_archives: full message payload captured at archival time (JSONB on PostgreSQL).
- session_archive_index: lightweight row per conversation for paginated history listing.

Both tables are keyed by conversation_id so a retried archival overwrites instead of duplicating.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from session_tiers.base import Base

# Conversation status as kept in the hot metadata hash. ARCHIVED is reserved: archival deletes
# the hot metadata, so only ACTIVE is ever written.
SessionStatus = type("SessionStatus", (), {"ACTIVE": "active", "ARCHIVED": "archived"})()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
PayloadType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class ArchiveRecord(Base):
    """Full archived conversation; loaded only for detail views and reactivation."""

    __tablename__ = "session_archives"

    conversation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[list[dict[str, Any]]] = mapped_column(PayloadType, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)

    def __repr__(self) -> str:
        return f"<ArchiveRecord conversation_id={self.conversation_id} user_id={self.user_id}>"


class ArchiveIndex(Base):
    """History-listing row: summary and counters, no payload."""

    __tablename__ = "session_archive_index"

    conversation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_active_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)

    __table_args__ = (Index("ix_session_archive_index_user_last_active", "user_id", "last_active_time"),)

    def __repr__(self) -> str:
        return f"<ArchiveIndex conversation_id={self.conversation_id} messages={self.message_count}>"
