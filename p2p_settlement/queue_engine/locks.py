"""
Distributed lock for queue maintenance cycles.

The queue is owned by a single API process: the engine's asyncio lock
serialises its writers, and the in-memory working set is only correct
while no other process writes.  This Redis lock is the guard for the
overlap a rolling restart produces, when the old and the new process
would otherwise both run a re-scan and cleanup cycle.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from p2p_settlement.queue_engine.config import (
    MAINTENANCE_LOCK_KEY,
    MAINTENANCE_LOCK_TIMEOUT_SECONDS,
)

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class MaintenanceLock:
    """
    Non-blocking Redis lock around one maintenance cycle.

    Accepts a ``redis`` client on construction so callers (and tests)
    can inject their own connection.  Falls back to the module-level
    client from ``p2p_settlement.redis_client`` when none is supplied.
    """

    def __init__(
        self,
        redis_client: "aioredis.Redis | None" = None,
        key: str = MAINTENANCE_LOCK_KEY,
        timeout: int = MAINTENANCE_LOCK_TIMEOUT_SECONDS,
    ):
        self._redis = redis_client
        self.key = key
        self.timeout = timeout

    @property
    def redis(self) -> "aioredis.Redis":
        if self._redis is not None:
            return self._redis
        from p2p_settlement.redis_client import redis as _default
        return _default

    async def acquire(self) -> "aioredis.lock.Lock | None":
        """
        Try to take the lock without waiting.

        Uses the redis-py ``Lock`` (SET NX PX + Lua-based release) with an
        auto-expiry so a crashed holder cannot wedge maintenance forever.
        Returns the Lock on success, ``None`` if another process holds it.
        """
        lock = self.redis.lock(self.key, timeout=self.timeout, blocking=False)
        if await lock.acquire():
            return lock
        return None

    async def release(self, lock: "aioredis.lock.Lock") -> None:
        try:
            await lock.release()
        except Exception:
            # Lock may have already expired — log but don't raise
            logger.warning("Maintenance lock release failed (may have auto-expired)")
