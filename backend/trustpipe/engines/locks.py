"""Per-subject advisory locks to keep concurrent duplicates off the oracle."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from uuid import uuid4

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from trustpipe.engines.retry import Clock, SystemClock
from trustpipe.workers.metrics import MetricsRegistry, metrics as default_metrics

logger = structlog.get_logger()

# Delete the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class SubjectLock:
    """TTL-bounded advisory lock stored in Redis.

    The lock is best-effort. If it cannot be acquired within ``wait_seconds``
    (or Redis is down) the caller proceeds without it and may recompute.
    Waiting polls through ``clock``.
    """

    def __init__(
        self,
        redis: Redis,
        ttl_seconds: int = 60,
        wait_seconds: float = 10.0,
        poll_seconds: float = 0.5,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.poll_seconds = poll_seconds
        self.clock = clock or SystemClock()
        self.metrics = metrics or default_metrics

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[bool]:
        """Yield True when the lock was acquired, False otherwise."""
        lock_key = f"lock:{key}"
        token = uuid4().hex
        acquired = await self._acquire(lock_key, token)
        try:
            yield acquired
        finally:
            if acquired:
                await self._release(lock_key, token)

    async def _acquire(self, lock_key: str, token: str) -> bool:
        waited = 0.0
        while True:
            try:
                if await self.redis.set(lock_key, token, nx=True, ex=self.ttl_seconds):
                    return True
            except (RedisError, OSError) as e:
                self.metrics.increment("lock_errors", operation="acquire")
                logger.warning("Advisory lock unavailable", key=lock_key, error=str(e))
                return False
            if waited >= self.wait_seconds:
                logger.info("Advisory lock busy, proceeding without it", key=lock_key)
                return False
            await self.clock.sleep(self.poll_seconds)
            waited += self.poll_seconds

    async def _release(self, lock_key: str, token: str) -> None:
        try:
            await self.redis.eval(_RELEASE_SCRIPT, 1, lock_key, token)
        except (RedisError, OSError) as e:
            self.metrics.increment("lock_errors", operation="release")
            logger.warning("Advisory lock release failed", key=lock_key, error=str(e))
