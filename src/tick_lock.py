"""
Mutual exclusion for scheduler ticks.

A tick decides on a point-in-time process snapshot, so two ticks must never
overlap: not inside one process (asyncio lock) and, when Redis is enabled,
not across workers sharing a host (Redis lock with expiry).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from exceptions import SchedulerFatal

logger = logging.getLogger(__name__)


class TickLock:
    def __init__(self, redis_client: Optional[redis.Redis] = None, name: str = "livebroadcaster:tick", timeout: int = 300):
        self.redis_client = redis_client
        self.name = name
        self.timeout = timeout
        self._local = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._local.locked()

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[bool]:
        """Yield True when this caller owns the tick, False when another tick runs."""
        if self._local.locked():
            yield False
            return

        async with self._local:
            if self.redis_client is None:
                yield True
                return

            lock = self.redis_client.lock(self.name, timeout=self.timeout, blocking=False)
            try:
                acquired = await lock.acquire()
            except RedisError as e:
                raise SchedulerFatal(f"Cannot acquire tick lock: {e}")

            if not acquired:
                yield False
                return

            try:
                yield True
            finally:
                try:
                    await lock.release()
                except RedisError as e:
                    logger.warning(f"Could not release tick lock: {e}")
