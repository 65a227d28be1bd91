"""
Hot store backend: abstract interface and implementations.

- HotStore: protocol for the message log, metadata, heartbeat index, backlog and leases.
- RedisHotStore: Redis (redis.asyncio) implementation.
- InMemoryHotStore: dict-backed implementation for tests and local dev.

Key convention ({prefix} defaults to "session"):
  {prefix}:heartbeat          ZSET  member=conversation id, score=last activity (epoch ms)
  {prefix}:msg:{id}           LIST  JSON message records, oldest first, trimmed to max_messages
  {prefix}:meta:{id}          HASH  userId, createdAt, lastActiveAt, messageCount, totalTokens, status
  {prefix}:lease:{name}       STR   job lease token
"""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Mapping, Protocol

import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from session_tiers.config import Settings
from session_tiers.errors import HotStoreUnavailable, SerializationFault
from session_tiers.messages import (
    SessionMessage,
    SessionMetadata,
    as_record,
    message_weight,
    now_ms,
    parse_message,
    select_by_budget,
    serialize_message,
)
from session_tiers.metrics import HOT_WRITE_LATENCY, MetricsRegistry, get_registry
from session_tiers.models import SessionStatus

logger = structlog.get_logger(__name__)

EVENT_MESSAGE_CREATED = "MESSAGE_CREATED"
_EVENT_STREAM_MAXLEN = 100_000


def heartbeat_key(prefix: str) -> str:
    """Return the heartbeat index key (e.g. session:heartbeat)."""
    return f"{prefix}:heartbeat"


def message_key(prefix: str, conversation_id: str) -> str:
    """Return the message log key (e.g. session:msg:conv-1)."""
    return f"{prefix}:msg:{conversation_id}"


def meta_key(prefix: str, conversation_id: str) -> str:
    """Return the metadata hash key (e.g. session:meta:conv-1)."""
    return f"{prefix}:meta:{conversation_id}"


def lease_key(prefix: str, name: str) -> str:
    return f"{prefix}:lease:{name}"


class HotStore(Protocol):
    """Protocol for the hot tier. Missing conversations read as empty; outages raise HotStoreUnavailable."""

    async def record_activity(self, conversation_id: str, user_id: str | None, timestamp: int | None = None) -> None:
        """Upsert heartbeat score, create metadata if absent, refresh TTLs."""
        ...

    async def append_message(self, conversation_id: str, message: SessionMessage | Mapping[str, Any]) -> int:
        """Append, bump counters, trim to max_messages, refresh TTLs. Returns the log length."""
        ...

    async def read_all(self, conversation_id: str) -> list[dict[str, Any]]: ...

    async def read_recent(self, conversation_id: str, count: int) -> list[dict[str, Any]]: ...

    async def read_recent_by_budget(self, conversation_id: str, max_weight: int) -> list[dict[str, Any]]: ...

    async def get_metadata(self, conversation_id: str) -> SessionMetadata | None: ...

    async def delete_conversation(self, conversation_id: str) -> None:
        """Remove message log and metadata; the heartbeat entry is left to the caller."""
        ...

    async def replace_messages(
        self, conversation_id: str, records: list[dict[str, Any]], metadata: SessionMetadata
    ) -> None:
        """Atomically replace log + metadata and set the heartbeat to metadata.last_active_at."""
        ...

    async def has_messages(self, conversation_id: str) -> bool: ...

    async def has_metadata(self, conversation_id: str) -> bool: ...

    async def heartbeat_score(self, conversation_id: str) -> float | None: ...

    async def heartbeat_ids_up_to(self, max_score: float) -> list[str]: ...

    async def heartbeat_most_recent(self, count: int) -> list[str]: ...

    async def heartbeat_remove(self, conversation_id: str) -> None: ...

    def iter_heartbeat_batches(self, batch_size: int) -> AsyncIterator[list[str]]: ...

    async def backlog_length(self) -> int: ...

    async def backlog_oldest(self) -> str | None: ...

    async def stream_groups(self) -> Any:
        """Raw XINFO GROUPS reply for the event stream; [] when the stream does not exist."""
        ...

    async def acquire_lease(self, name: str, ttl_seconds: int) -> str | None: ...

    async def release_lease(self, name: str, token: str) -> None: ...

    async def close(self) -> None: ...


def create_redis_client(redis_url: str) -> aioredis.Redis:
    """Async Redis client with str responses."""
    return aioredis.from_url(redis_url, decode_responses=True)


class RedisHotStore:
    """
    Redis-backed hot store.

    Multi-key writes run in one MULTI/EXEC pipeline so each call is atomic on the
    Redis side. Writes are timed into the hot_store_write_latency_ms histogram.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        settings: Settings,
        metrics: MetricsRegistry | None = None,
    ):
        """
        Args:
            client: redis.asyncio client created with decode_responses=True.
            settings: Key prefix, TTL, message cap, backlog and stream keys.
            metrics: Registry for write latency (process-wide registry by default).
        """
        self._redis = client
        self._settings = settings
        self._prefix = settings.key_prefix
        self._metrics = metrics or get_registry()
        self._metrics.register_histogram(HOT_WRITE_LATENCY)

    @classmethod
    def from_settings(cls, settings: Settings, metrics: MetricsRegistry | None = None) -> "RedisHotStore":
        return cls(create_redis_client(settings.redis_url), settings, metrics)

    @asynccontextmanager
    async def _call(self, operation: str) -> AsyncGenerator[None, None]:
        try:
            yield
        except RedisError as e:
            raise HotStoreUnavailable(f"{operation} failed: {e}") from e

    # -- writes ---------------------------------------------------------

    async def record_activity(self, conversation_id: str, user_id: str | None, timestamp: int | None = None) -> None:
        ts = timestamp if timestamp is not None else now_ms()
        mkey = meta_key(self._prefix, conversation_id)
        ttl = self._settings.hot_ttl_seconds
        async with self._call("record_activity"), self._metrics.timer(HOT_WRITE_LATENCY):
            pipe = self._redis.pipeline(transaction=True)
            pipe.zadd(heartbeat_key(self._prefix), {conversation_id: ts})
            pipe.hsetnx(mkey, "createdAt", ts)
            pipe.hsetnx(mkey, "messageCount", 0)
            pipe.hsetnx(mkey, "totalTokens", 0)
            pipe.hsetnx(mkey, "status", SessionStatus.ACTIVE)
            if user_id:
                pipe.hset(mkey, "userId", user_id)
            else:
                pipe.hsetnx(mkey, "userId", "unknown")
            pipe.hset(mkey, "lastActiveAt", ts)
            pipe.expire(mkey, ttl)
            pipe.expire(message_key(self._prefix, conversation_id), ttl)
            await pipe.execute()

    async def append_message(self, conversation_id: str, message: SessionMessage | Mapping[str, Any]) -> int:
        record = as_record(message)
        raw = serialize_message(record)
        ts = now_ms()
        mkey = meta_key(self._prefix, conversation_id)
        lkey = message_key(self._prefix, conversation_id)
        ttl = self._settings.hot_ttl_seconds
        user_id = str((record.get("metadata") or {}).get("userId") or "unknown")
        async with self._call("append_message"), self._metrics.timer(HOT_WRITE_LATENCY):
            pipe = self._redis.pipeline(transaction=True)
            pipe.rpush(lkey, raw)
            pipe.ltrim(lkey, -self._settings.max_messages, -1)
            pipe.hsetnx(mkey, "userId", user_id)
            pipe.hsetnx(mkey, "createdAt", ts)
            pipe.hsetnx(mkey, "status", SessionStatus.ACTIVE)
            pipe.hincrby(mkey, "messageCount", 1)
            pipe.hincrby(mkey, "totalTokens", message_weight(record))
            pipe.hset(mkey, "lastActiveAt", ts)
            pipe.expire(lkey, ttl)
            pipe.expire(mkey, ttl)
            results = await pipe.execute()
        length = min(int(results[0]), self._settings.max_messages)
        await self._publish_event(conversation_id, record)
        return length

    async def _publish_event(self, conversation_id: str, record: dict[str, Any]) -> None:
        """Best-effort MESSAGE_CREATED event for the downstream pipeline."""
        event = {
            "eventId": str(uuid.uuid4()),
            "conversationId": conversation_id,
            "type": EVENT_MESSAGE_CREATED,
            "timestamp": now_ms(),
            "payload": {"message": record},
        }
        try:
            await self._redis.xadd(
                self._settings.event_stream_key,
                {"payload": json.dumps(event, ensure_ascii=False)},
                maxlen=_EVENT_STREAM_MAXLEN,
                approximate=True,
            )
        except RedisError as e:
            logger.error("event_publish_failed", conversation_id=conversation_id, error=str(e))

    async def replace_messages(
        self, conversation_id: str, records: list[dict[str, Any]], metadata: SessionMetadata
    ) -> None:
        mkey = meta_key(self._prefix, conversation_id)
        lkey = message_key(self._prefix, conversation_id)
        ttl = self._settings.hot_ttl_seconds
        raws = [serialize_message(r) for r in records]
        async with self._call("replace_messages"), self._metrics.timer(HOT_WRITE_LATENCY):
            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(lkey, mkey)
            if raws:
                pipe.rpush(lkey, *raws)
                pipe.ltrim(lkey, -self._settings.max_messages, -1)
                pipe.expire(lkey, ttl)
            pipe.hset(mkey, mapping=metadata.to_hash())
            pipe.expire(mkey, ttl)
            pipe.zadd(heartbeat_key(self._prefix), {conversation_id: metadata.last_active_at})
            await pipe.execute()

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._call("delete_conversation"):
            await self._redis.delete(
                message_key(self._prefix, conversation_id),
                meta_key(self._prefix, conversation_id),
            )

    # -- reads ----------------------------------------------------------

    async def read_all(self, conversation_id: str) -> list[dict[str, Any]]:
        """Full log, oldest first. A corrupt record raises SerializationFault."""
        async with self._call("read_all"):
            raws = await self._redis.lrange(message_key(self._prefix, conversation_id), 0, -1)
        return [parse_message(r) for r in raws]

    async def read_recent(self, conversation_id: str, count: int) -> list[dict[str, Any]]:
        """Last `count` records, oldest first; corrupt records are skipped with a warning."""
        if count <= 0:
            return []
        async with self._call("read_recent"):
            raws = await self._redis.lrange(message_key(self._prefix, conversation_id), -count, -1)
        records = []
        for raw in raws:
            try:
                records.append(parse_message(raw))
            except SerializationFault as e:
                logger.warning("message_decode_skipped", conversation_id=conversation_id, error=str(e))
        return records

    async def read_recent_by_budget(self, conversation_id: str, max_weight: int) -> list[dict[str, Any]]:
        records = await self.read_recent(conversation_id, self._settings.max_messages)
        return select_by_budget(records, max_weight)

    async def get_metadata(self, conversation_id: str) -> SessionMetadata | None:
        async with self._call("get_metadata"):
            fields = await self._redis.hgetall(meta_key(self._prefix, conversation_id))
        if not fields:
            return None
        return SessionMetadata.from_hash(fields)

    async def has_messages(self, conversation_id: str) -> bool:
        async with self._call("has_messages"):
            return bool(await self._redis.exists(message_key(self._prefix, conversation_id)))

    async def has_metadata(self, conversation_id: str) -> bool:
        async with self._call("has_metadata"):
            return bool(await self._redis.exists(meta_key(self._prefix, conversation_id)))

    # -- heartbeat index ------------------------------------------------

    async def heartbeat_score(self, conversation_id: str) -> float | None:
        async with self._call("heartbeat_score"):
            return await self._redis.zscore(heartbeat_key(self._prefix), conversation_id)

    async def heartbeat_ids_up_to(self, max_score: float) -> list[str]:
        async with self._call("heartbeat_ids_up_to"):
            return list(await self._redis.zrangebyscore(heartbeat_key(self._prefix), "-inf", max_score))

    async def heartbeat_most_recent(self, count: int) -> list[str]:
        if count <= 0:
            return []
        async with self._call("heartbeat_most_recent"):
            return list(await self._redis.zrevrange(heartbeat_key(self._prefix), 0, count - 1))

    async def heartbeat_remove(self, conversation_id: str) -> None:
        async with self._call("heartbeat_remove"):
            await self._redis.zrem(heartbeat_key(self._prefix), conversation_id)

    async def iter_heartbeat_batches(self, batch_size: int) -> AsyncIterator[list[str]]:
        """ZSCAN the heartbeat index without blocking Redis; yields lists of at most batch_size ids."""
        batch: list[str] = []
        async with self._call("iter_heartbeat_batches"):
            async for member, _score in self._redis.zscan_iter(heartbeat_key(self._prefix), count=batch_size):
                batch.append(member)
                if len(batch) >= batch_size:
                    yield batch
                    batch = []
        if batch:
            yield batch

    # -- backlog / event stream -------------------------------------------

    async def backlog_length(self) -> int:
        async with self._call("backlog_length"):
            return int(await self._redis.llen(self._settings.dlq_key))

    async def backlog_oldest(self) -> str | None:
        """Upstream consumers RPUSH failures, so index 0 is the oldest entry."""
        async with self._call("backlog_oldest"):
            return await self._redis.lindex(self._settings.dlq_key, 0)

    async def stream_groups(self) -> Any:
        try:
            return await self._redis.execute_command("XINFO", "GROUPS", self._settings.event_stream_key)
        except ResponseError as e:
            if "no such key" in str(e).lower():
                return []
            raise HotStoreUnavailable(f"stream_groups failed: {e}") from e
        except RedisError as e:
            raise HotStoreUnavailable(f"stream_groups failed: {e}") from e

    # -- leases -----------------------------------------------------------

    async def acquire_lease(self, name: str, ttl_seconds: int) -> str | None:
        token = str(uuid.uuid4())
        async with self._call("acquire_lease"):
            got = await self._redis.set(lease_key(self._prefix, name), token, ex=ttl_seconds, nx=True)
        return token if got else None

    async def release_lease(self, name: str, token: str) -> None:
        key = lease_key(self._prefix, name)
        async with self._call("release_lease"):
            if await self._redis.get(key) == token:
                await self._redis.delete(key)

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryHotStore:
    """
    In-memory hot store for tests and local dev without Redis.

    Same semantics as RedisHotStore except key expiry, which is not simulated.
    backlog and groups are plain attributes tests can fill directly.
    """

    def __init__(self, settings: Settings | None = None, metrics: MetricsRegistry | None = None) -> None:
        self._settings = settings or Settings()
        self._metrics = metrics or get_registry()
        self._metrics.register_histogram(HOT_WRITE_LATENCY)
        self.heartbeats: dict[str, float] = {}
        self.logs: dict[str, list[str]] = {}
        self.meta: dict[str, dict[str, str]] = {}
        self.backlog: list[str] = []
        self.groups: list[Any] = []
        self.leases: dict[str, str] = {}

    async def record_activity(self, conversation_id: str, user_id: str | None, timestamp: int | None = None) -> None:
        ts = timestamp if timestamp is not None else now_ms()
        async with self._metrics.timer(HOT_WRITE_LATENCY):
            self.heartbeats[conversation_id] = ts
            fields = self.meta.setdefault(conversation_id, SessionMetadata.new(user_id or "unknown", ts).to_hash())
            if user_id:
                fields["userId"] = user_id
            fields["lastActiveAt"] = str(ts)

    async def append_message(self, conversation_id: str, message: SessionMessage | Mapping[str, Any]) -> int:
        record = as_record(message)
        raw = serialize_message(record)
        ts = now_ms()
        async with self._metrics.timer(HOT_WRITE_LATENCY):
            log = self.logs.setdefault(conversation_id, [])
            log.append(raw)
            del log[: max(len(log) - self._settings.max_messages, 0)]
            user_id = str((record.get("metadata") or {}).get("userId") or "unknown")
            fields = self.meta.setdefault(conversation_id, SessionMetadata.new(user_id, ts).to_hash())
            fields["messageCount"] = str(int(fields["messageCount"]) + 1)
            fields["totalTokens"] = str(int(fields["totalTokens"]) + message_weight(record))
            fields["lastActiveAt"] = str(ts)
        return len(log)

    async def replace_messages(
        self, conversation_id: str, records: list[dict[str, Any]], metadata: SessionMetadata
    ) -> None:
        raws = [serialize_message(r) for r in records]
        async with self._metrics.timer(HOT_WRITE_LATENCY):
            if raws:
                self.logs[conversation_id] = raws[-self._settings.max_messages :]
            else:
                self.logs.pop(conversation_id, None)
            self.meta[conversation_id] = metadata.to_hash()
            self.heartbeats[conversation_id] = metadata.last_active_at

    async def delete_conversation(self, conversation_id: str) -> None:
        self.logs.pop(conversation_id, None)
        self.meta.pop(conversation_id, None)

    async def read_all(self, conversation_id: str) -> list[dict[str, Any]]:
        return [parse_message(r) for r in self.logs.get(conversation_id, [])]

    async def read_recent(self, conversation_id: str, count: int) -> list[dict[str, Any]]:
        if count <= 0:
            return []
        records = []
        for raw in self.logs.get(conversation_id, [])[-count:]:
            try:
                records.append(parse_message(raw))
            except SerializationFault as e:
                logger.warning("message_decode_skipped", conversation_id=conversation_id, error=str(e))
        return records

    async def read_recent_by_budget(self, conversation_id: str, max_weight: int) -> list[dict[str, Any]]:
        records = await self.read_recent(conversation_id, self._settings.max_messages)
        return select_by_budget(records, max_weight)

    async def get_metadata(self, conversation_id: str) -> SessionMetadata | None:
        fields = self.meta.get(conversation_id)
        return SessionMetadata.from_hash(fields) if fields else None

    async def has_messages(self, conversation_id: str) -> bool:
        return bool(self.logs.get(conversation_id))

    async def has_metadata(self, conversation_id: str) -> bool:
        return conversation_id in self.meta

    async def heartbeat_score(self, conversation_id: str) -> float | None:
        score = self.heartbeats.get(conversation_id)
        return float(score) if score is not None else None

    async def heartbeat_ids_up_to(self, max_score: float) -> list[str]:
        return [cid for cid, s in sorted(self.heartbeats.items(), key=lambda kv: kv[1]) if s <= max_score]

    async def heartbeat_most_recent(self, count: int) -> list[str]:
        ordered = sorted(self.heartbeats.items(), key=lambda kv: kv[1], reverse=True)
        return [cid for cid, _ in ordered[: max(count, 0)]]

    async def heartbeat_remove(self, conversation_id: str) -> None:
        self.heartbeats.pop(conversation_id, None)

    async def iter_heartbeat_batches(self, batch_size: int) -> AsyncIterator[list[str]]:
        ids = list(self.heartbeats)
        for i in range(0, len(ids), batch_size):
            yield ids[i : i + batch_size]

    async def backlog_length(self) -> int:
        return len(self.backlog)

    async def backlog_oldest(self) -> str | None:
        return self.backlog[0] if self.backlog else None

    async def stream_groups(self) -> Any:
        return self.groups

    async def acquire_lease(self, name: str, ttl_seconds: int) -> str | None:
        if name in self.leases:
            return None
        token = str(uuid.uuid4())
        self.leases[name] = token
        return token

    async def release_lease(self, name: str, token: str) -> None:
        if self.leases.get(name) == token:
            del self.leases[name]

    async def close(self) -> None:
        pass
