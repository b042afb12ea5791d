# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Redis Streams client for task envelopes.

Thin wrapper over the broker primitives the worker needs: append, claim,
ack, delete, consumer administration and the advisory lock keys.

Two Redis clients are held:
    - the consuming client, shared by the claim loop and settlement
    - the sending client, exclusive to ``send()`` so a slow consumer
      cannot starve producers

Claim semantics:
    ``claim()`` first takes over entries that have sat in the pending-entry
    list longer than ``reclaim_idle_ms`` (entries released by a removed
    consumer, or leases of a process that died), then reads new entries with
    ``XREADGROUP >`` for the remaining slots.

Consumer removal:
    Redis drops a consumer's pending entries on ``XGROUP DELCONSUMER``, so
    ``remove_consumer()`` first hands them to the group pool consumer with
    their idle time set past the reclaim threshold. Any live consumer then
    picks them up on its next claim.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from omniworker.lib.errors import BrokerError, StreamSendError
from omniworker.streams.codec import MessageCodec
from omniworker.streams.config import ConfigStream
from omniworker.streams.models import ModelConsumerInfo, ModelTaskEnvelope

logger = logging.getLogger(__name__)

StreamEntry = tuple[str, dict[str, str] | None]
RedisFactory = Callable[[], Redis]

# Page size when listing a consumer's pending entries for hand-off
PENDING_PAGE_SIZE = 500

# Compare-and-delete so a lock is only released by the token that took it
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def pool_consumer_name(group_name: str) -> str:
    """Name of the placeholder consumer holding released entries."""
    return f"{group_name}:pool"


class StreamClient:
    """Async client for one stream and its consumer group."""

    def __init__(
        self,
        config: ConfigStream,
        codec: MessageCodec | None = None,
        redis_factory: RedisFactory | None = None,
    ) -> None:
        self._config = config
        self._codec = codec or MessageCodec()
        self._redis_factory = redis_factory or self._default_factory
        self._consumer_redis: Redis | None = None
        self._sender_redis: Redis | None = None
        self._sender_lock = asyncio.Lock()
        self._reclaim_cursors: dict[str, str] = {}

    @property
    def stream_name(self) -> str:
        return self._config.stream_name

    @property
    def group_name(self) -> str:
        return self._config.group_name

    @property
    def codec(self) -> MessageCodec:
        return self._codec

    def _default_factory(self) -> Redis:
        return Redis.from_url(
            self._config.redis_url,
            encoding="utf-8",
            encoding_errors="replace",
            decode_responses=True,
            socket_timeout=self._config.socket_timeout_seconds,
            socket_connect_timeout=self._config.socket_timeout_seconds,
        )

    def _consumer(self) -> Redis:
        if self._consumer_redis is None:
            self._consumer_redis = self._redis_factory()
        return self._consumer_redis

    # =========================================================================
    # Group Setup
    # =========================================================================

    async def ensure_group(self) -> None:
        """Create the consumer group (and stream) if missing. Idempotent."""
        try:
            await self._consumer().xgroup_create(
                self.stream_name, self.group_name, id="0", mkstream=True
            )
            logger.info(
                "Consumer group created",
                extra={"stream": self.stream_name, "group": self.group_name},
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise BrokerError(f"XGROUP CREATE failed: {e}") from e
            logger.debug(
                "Consumer group already exists",
                extra={"stream": self.stream_name, "group": self.group_name},
            )
        except RedisError as e:
            raise BrokerError(f"XGROUP CREATE failed: {e}") from e

    # =========================================================================
    # Producer Path
    # =========================================================================

    async def send(self, envelope: ModelTaskEnvelope) -> str:
        """Append an envelope to the stream, retrying with exponential backoff.

        Retries up to ``send_max_retries`` times; the k-th retry waits
        ``send_initial_delay_seconds * send_backoff_multiplier ** k``.
        Connection-level failures recreate the sending connection first.

        Returns:
            Broker-assigned entry id.

        Raises:
            ValueError: If the envelope cannot be encoded (not retried).
            StreamSendError: If every attempt failed.
        """
        fields = self._codec.encode(envelope)
        max_retries = self._config.send_max_retries
        delay = self._config.send_initial_delay_seconds
        last_error: RedisError | None = None

        for attempt in range(max_retries + 1):
            try:
                entry_id = await self._append_with_sender(fields)
                logger.debug(
                    "Envelope appended",
                    extra={
                        "stream": self.stream_name,
                        "entry_id": entry_id,
                        "correlation_id": envelope.correlation_id,
                        "attempt": attempt + 1,
                    },
                )
                return entry_id
            except RedisError as e:
                last_error = e
                if attempt == max_retries:
                    break
                if isinstance(e, (RedisConnectionError, RedisTimeoutError)):
                    await self._reset_sender()
                logger.warning(
                    "Append failed, retrying",
                    extra={
                        "stream": self.stream_name,
                        "correlation_id": envelope.correlation_id,
                        "attempt": attempt + 1,
                        "max_retries": max_retries,
                        "delay_seconds": delay,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(delay)
                delay *= self._config.send_backoff_multiplier

        logger.error(
            "Append failed after all retries",
            extra={
                "stream": self.stream_name,
                "correlation_id": envelope.correlation_id,
                "attempts": max_retries + 1,
                "error": str(last_error),
            },
        )
        raise StreamSendError(
            f"Failed to append envelope after {max_retries + 1} attempts: {last_error}",
            attempts=max_retries + 1,
            details={"correlation_id": envelope.correlation_id},
        ) from last_error

    async def _append_with_sender(self, fields: dict[str, str]) -> str:
        async with self._sender_lock:
            if self._sender_redis is None:
                self._sender_redis = self._redis_factory()
            sender = self._sender_redis
        return await sender.xadd(self.stream_name, fields)

    async def _reset_sender(self) -> None:
        async with self._sender_lock:
            sender, self._sender_redis = self._sender_redis, None
        if sender is not None:
            try:
                await sender.aclose()
            except RedisError as e:
                logger.debug("Error closing stale sender connection: %s", e)

    # =========================================================================
    # Consumer Path
    # =========================================================================

    async def claim(
        self, consumer_name: str, count: int, block_ms: int
    ) -> list[StreamEntry]:
        """Claim up to ``count`` entries for ``consumer_name``.

        Entries whose fields are None were deleted from the log while still
        pending; callers treat them as undecodable.

        Raises:
            BrokerError: If the broker call fails.
        """
        if count <= 0:
            return []
        redis = self._consumer()
        entries: list[StreamEntry] = []
        try:
            reclaimed = await redis.xautoclaim(
                self.stream_name,
                self.group_name,
                consumer_name,
                min_idle_time=self._config.reclaim_idle_ms,
                start_id=self._reclaim_cursors.get(consumer_name, "0-0"),
                count=count,
            )
            if reclaimed:
                # "0-0" once the scan has wrapped around the pending-entry list
                self._reclaim_cursors[consumer_name] = str(reclaimed[0])
                entries.extend(_parse_entries(reclaimed[1]))
            if entries:
                logger.info(
                    "Reclaimed idle pending entries",
                    extra={
                        "consumer": consumer_name,
                        "count": len(entries),
                        "entry_ids": [entry_id for entry_id, _ in entries],
                    },
                )

            remaining = count - len(entries)
            if remaining > 0:
                response = await redis.xreadgroup(
                    groupname=self.group_name,
                    consumername=consumer_name,
                    streams={self.stream_name: ">"},
                    count=remaining,
                    block=block_ms if not entries and block_ms > 0 else None,
                )
                entries.extend(_parse_read_response(response))
        except RedisError as e:
            raise BrokerError(
                f"Claim failed: {e}",
                details={"consumer": consumer_name, "count": count},
            ) from e
        return entries[:count]

    async def ack(self, entry_id: str) -> int:
        """Acknowledge an entry (XACK). Idempotent; returns entries acked."""
        try:
            return int(await self._consumer().xack(self.stream_name, self.group_name, entry_id))
        except RedisError as e:
            raise BrokerError(f"XACK failed: {e}", details={"entry_id": entry_id}) from e

    async def delete(self, entry_id: str) -> int:
        """Physically remove an entry from the log (XDEL)."""
        try:
            return int(await self._consumer().xdel(self.stream_name, entry_id))
        except RedisError as e:
            raise BrokerError(f"XDEL failed: {e}", details={"entry_id": entry_id}) from e

    # =========================================================================
    # Consumer Administration
    # =========================================================================

    async def list_consumers(self) -> list[ModelConsumerInfo]:
        """List registered consumers of the group (XINFO CONSUMERS).

        The pool consumer is excluded. A missing stream or group yields [].
        """
        try:
            raw = await self._consumer().xinfo_consumers(self.stream_name, self.group_name)
        except ResponseError as e:
            if "NOGROUP" in str(e) or "no such key" in str(e).lower():
                return []
            raise BrokerError(f"XINFO CONSUMERS failed: {e}") from e
        except RedisError as e:
            raise BrokerError(f"XINFO CONSUMERS failed: {e}") from e

        pool = pool_consumer_name(self.group_name)
        return [
            ModelConsumerInfo(
                name=str(item["name"]),
                idle_ms=int(item.get("idle", 0)),
                pending_count=int(item.get("pending", 0)),
            )
            for item in raw
            if str(item["name"]) != pool
        ]

    async def remove_consumer(self, consumer_name: str) -> int:
        """Remove a consumer, releasing its pending entries to the group.

        Idempotent: removing an absent consumer returns 0.

        Returns:
            Number of pending entries released.
        """
        redis = self._consumer()
        released = 0
        try:
            pending_ids = await self._pending_ids_for(redis, consumer_name)
            if pending_ids:
                await redis.xclaim(
                    self.stream_name,
                    self.group_name,
                    pool_consumer_name(self.group_name),
                    min_idle_time=0,
                    message_ids=pending_ids,
                    idle=self._config.reclaim_idle_ms,
                    justid=True,
                )
                released = len(pending_ids)
            await redis.xgroup_delconsumer(self.stream_name, self.group_name, consumer_name)
        except ResponseError as e:
            if "NOGROUP" in str(e):
                return 0
            raise BrokerError(
                f"Consumer removal failed: {e}", details={"consumer": consumer_name}
            ) from e
        except RedisError as e:
            raise BrokerError(
                f"Consumer removal failed: {e}", details={"consumer": consumer_name}
            ) from e

        logger.info(
            "Consumer removed from group",
            extra={
                "consumer": consumer_name,
                "group": self.group_name,
                "released": released,
            },
        )
        return released

    async def _pending_ids_for(self, redis: Redis, consumer_name: str) -> list[str]:
        ids: list[str] = []
        start = "-"
        while True:
            page = await redis.xpending_range(
                self.stream_name,
                self.group_name,
                min=start,
                max="+",
                count=PENDING_PAGE_SIZE,
                consumername=consumer_name,
            )
            if not page:
                return ids
            ids.extend(str(item["message_id"]) for item in page)
            if len(page) < PENDING_PAGE_SIZE:
                return ids
            start = f"({ids[-1]}"

    async def pending_count(self) -> int:
        """Total pending entries for the group. Read by the autoscaler."""
        try:
            summary = await self._consumer().xpending(self.stream_name, self.group_name)
        except ResponseError as e:
            if "NOGROUP" in str(e):
                return 0
            raise BrokerError(f"XPENDING failed: {e}") from e
        except RedisError as e:
            raise BrokerError(f"XPENDING failed: {e}") from e
        return int(summary.get("pending", 0)) if summary else 0

    # =========================================================================
    # Advisory Lock Keys
    # =========================================================================

    async def acquire_lock(self, key: str, token: str, ttl_ms: int) -> bool:
        try:
            return bool(await self._consumer().set(key, token, nx=True, px=ttl_ms))
        except RedisError as e:
            raise BrokerError(f"Lock acquire failed: {e}", details={"key": key}) from e

    async def release_lock(self, key: str, token: str) -> bool:
        try:
            released = await self._consumer().eval(_RELEASE_LOCK_SCRIPT, 1, key, token)
        except RedisError as e:
            raise BrokerError(f"Lock release failed: {e}", details={"key": key}) from e
        return bool(released)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self) -> None:
        """Close both connections. Errors are logged, not raised."""
        for attr in ("_consumer_redis", "_sender_redis"):
            client = getattr(self, attr)
            setattr(self, attr, None)
            if client is None:
                continue
            try:
                await client.aclose()
            except RedisError as e:
                logger.warning("Error closing Redis connection: %s", e)


def _parse_entries(raw: list[Any]) -> list[StreamEntry]:
    entries: list[StreamEntry] = []
    for item in raw or []:
        if not item:
            continue
        entry_id, fields = item[0], item[1] if len(item) > 1 else None
        entries.append((str(entry_id), dict(fields) if fields else None))
    return entries


def _parse_read_response(response: Any) -> list[StreamEntry]:
    entries: list[StreamEntry] = []
    for _stream, raw_entries in response or []:
        entries.extend(_parse_entries(raw_entries))
    return entries


__all__ = ["StreamClient", "StreamEntry", "pool_consumer_name"]
