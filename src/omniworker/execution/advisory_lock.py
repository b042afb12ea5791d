"""Per-correlation-id advisory execution lock.

A best-effort duplicate-execution hint stored as a broker key. Consumer
group leasing is the real exclusion mechanism; this lock never blocks or
drops work. Contention and broker errors are logged and execution proceeds.
"""

from __future__ import annotations

import logging
from uuid import uuid4

from omniworker.lib.errors import BrokerError
from omniworker.streams.client import StreamClient

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "omniworker:exec-lock:"


class AdvisoryLock:
    """Acquire/release helper for per-correlation lock keys."""

    def __init__(self, client: StreamClient, ttl_seconds: float, enabled: bool = True) -> None:
        self._client = client
        self._ttl_ms = max(1, int(ttl_seconds * 1000))
        self._enabled = enabled

    @staticmethod
    def key_for(correlation_id: str) -> str:
        return f"{LOCK_KEY_PREFIX}{correlation_id}"

    async def acquire(self, correlation_id: str) -> str | None:
        """Try to take the lock.

        Returns:
            The lock token when taken, None when disabled, contended or the
            broker call failed.
        """
        if not self._enabled:
            return None
        token = uuid4().hex
        try:
            acquired = await self._client.acquire_lock(
                self.key_for(correlation_id), token, self._ttl_ms
            )
        except BrokerError as e:
            logger.warning(
                "Advisory lock unavailable, continuing without it",
                extra={"correlation_id": correlation_id, "error": str(e)},
            )
            return None
        if not acquired:
            logger.warning(
                "Advisory lock held elsewhere, possible duplicate execution",
                extra={"correlation_id": correlation_id},
            )
            return None
        return token

    async def release(self, correlation_id: str, token: str | None) -> None:
        if token is None:
            return
        try:
            await self._client.release_lock(self.key_for(correlation_id), token)
        except BrokerError as e:
            # Key expires on its own after the TTL
            logger.debug(
                "Advisory lock release failed",
                extra={"correlation_id": correlation_id, "error": str(e)},
            )


__all__ = ["AdvisoryLock", "LOCK_KEY_PREFIX"]
