"""
Message records and session metadata as stored in the hot tier.

- A message record is an opaque JSON object; the core only reads `role`,
  `content`/`text`, `tokens` and `timestamp` from it.
- SessionMessage is a convenience builder for collaborators.
- SessionMetadata maps to the Redis metadata hash (string fields).
- serialize/parse helpers raise SerializationFault on corrupt input.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping

from session_tiers.errors import SerializationFault
from session_tiers.models import SessionStatus

SUMMARY_MAX_CHARS = 64
DEFAULT_SUMMARY = "New conversation"


def now_ms() -> int:
    """Current epoch time in milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SessionMessage:
    """One chat message; tokens is the weight used by budgeted reads and archive totals."""

    role: str
    content: str
    tokens: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=now_ms)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.role:
            raise ValueError("message role must not be empty")
        if self.content is None:
            raise ValueError("message content must not be None")

    @classmethod
    def user(cls, content: str, tokens: int = 0) -> "SessionMessage":
        return cls(role="user", content=content, tokens=tokens)

    @classmethod
    def assistant(cls, content: str, tokens: int = 0) -> "SessionMessage":
        return cls(role="assistant", content=content, tokens=tokens)

    def to_record(self) -> dict[str, Any]:
        return asdict(self)


def as_record(message: SessionMessage | Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a SessionMessage or a plain mapping to a record dict."""
    if isinstance(message, SessionMessage):
        return message.to_record()
    return dict(message)


def serialize_message(message: SessionMessage | Mapping[str, Any]) -> str:
    """Encode one record to a JSON string (ensure_ascii=False keeps non-Latin text readable)."""
    try:
        return json.dumps(as_record(message), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationFault(f"message is not JSON serializable: {e}") from e


def parse_message(raw: str | bytes) -> dict[str, Any]:
    """Decode one stored record. Raises SerializationFault if it is not a JSON object."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        record = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SerializationFault(f"corrupt message record: {e}") from e
    if not isinstance(record, dict):
        raise SerializationFault("message record is not a JSON object")
    return record


def parse_payload(payload: Any) -> list[dict[str, Any]]:
    """
    Decode an archived payload into an ordered list of records.

    Accepts the JSON column value (a list) or its string form. Raises
    SerializationFault when the payload is not a list of objects.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise SerializationFault(f"corrupt archive payload: {e}") from e
    if not isinstance(payload, list):
        raise SerializationFault("archive payload is not a list of messages")
    for record in payload:
        if not isinstance(record, dict):
            raise SerializationFault("archive payload contains a non-object record")
    return payload


def message_weight(record: Mapping[str, Any]) -> int:
    """Token weight of a record; missing or malformed weights count as 0."""
    try:
        return max(int(record.get("tokens", 0) or 0), 0)
    except (TypeError, ValueError):
        return 0


def total_weight(records: Iterable[Mapping[str, Any]]) -> int:
    return sum(message_weight(r) for r in records)


def extract_summary(records: Iterable[Mapping[str, Any]], max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """
    One-line summary: the first non-blank user message, truncated.

    Args:
        records: Message records in conversation order.
        max_chars: Characters kept before appending "...".

    Returns:
        The summary, or DEFAULT_SUMMARY when there is no user text.
    """
    for record in records:
        if str(record.get("role", "")).lower() != "user":
            continue
        text = record.get("content") or record.get("text") or ""
        text = " ".join(str(text).split())
        if text:
            return text[:max_chars] + "..." if len(text) > max_chars else text
    return DEFAULT_SUMMARY


def select_by_budget(records: list[dict[str, Any]], max_weight: int) -> list[dict[str, Any]]:
    """Newest-first accumulation up to max_weight; result is returned oldest-first."""
    selected: list[dict[str, Any]] = []
    used = 0
    for record in reversed(records):
        weight = message_weight(record)
        if used + weight > max_weight:
            break
        selected.append(record)
        used += weight
    selected.reverse()
    return selected


@dataclass
class SessionMetadata:
    """Hot-tier metadata for one conversation (Redis hash fields are camelCase)."""

    user_id: str
    created_at: int
    last_active_at: int
    message_count: int = 0
    total_tokens: int = 0
    status: str = SessionStatus.ACTIVE

    @classmethod
    def new(cls, user_id: str, timestamp: int | None = None) -> "SessionMetadata":
        ts = timestamp if timestamp is not None else now_ms()
        return cls(user_id=user_id, created_at=ts, last_active_at=ts)

    def to_hash(self) -> dict[str, str]:
        return {
            "userId": self.user_id,
            "createdAt": str(self.created_at),
            "lastActiveAt": str(self.last_active_at),
            "messageCount": str(self.message_count),
            "totalTokens": str(self.total_tokens),
            "status": self.status,
        }

    @classmethod
    def from_hash(cls, fields: Mapping[Any, Any]) -> "SessionMetadata":
        """Build from a Redis hash; bytes keys/values are accepted. Raises SerializationFault."""
        data = {
            (k.decode("utf-8") if isinstance(k, bytes) else str(k)): (
                v.decode("utf-8") if isinstance(v, bytes) else v
            )
            for k, v in fields.items()
        }
        try:
            created = int(data.get("createdAt") or data.get("lastActiveAt") or 0)
            return cls(
                user_id=str(data.get("userId") or "unknown"),
                created_at=created,
                last_active_at=int(data.get("lastActiveAt") or created),
                message_count=int(data.get("messageCount") or 0),
                total_tokens=int(data.get("totalTokens") or 0),
                status=str(data.get("status") or SessionStatus.ACTIVE),
            )
        except (TypeError, ValueError) as e:
            raise SerializationFault(f"corrupt session metadata: {e}") from e
