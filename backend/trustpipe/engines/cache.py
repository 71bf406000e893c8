"""Read-through TTL cache for verification results.

The cache is an accelerator only: any backend failure is logged and
reported to the caller as a miss.
"""

import json
from typing import Any, Optional, Union

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from trustpipe.engines.policy import VerificationType, ttl_for
from trustpipe.errors import CacheError
from trustpipe.workers.metrics import MetricsRegistry, metrics as default_metrics

logger = structlog.get_logger()

Namespace = Union[VerificationType, str]


def cache_key(namespace: Namespace, subject_key: str) -> str:
    """Build ``"{namespace}:{subject_key}"``."""
    prefix = namespace.value if isinstance(namespace, VerificationType) else str(namespace)
    return f"{prefix}:{subject_key}"


def subject_key(*parts: Any) -> str:
    """Join composite subject parts, e.g. title:location:experience."""
    return ":".join("" if part is None else str(part) for part in parts)


class VerificationCache:
    """JSON values in Redis keyed by namespace and subject."""

    def __init__(self, redis: Redis, metrics: Optional[MetricsRegistry] = None):
        self.redis = redis
        self.metrics = metrics or default_metrics

    async def get(self, namespace: Namespace, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or backend failure."""
        full_key = cache_key(namespace, key)
        try:
            raw = await self.redis.get(full_key)
            if raw is None:
                return None
            return json.loads(raw)
        except (RedisError, OSError, ValueError, TypeError) as e:
            self._report("get", CacheError(f"cache read failed: {e}"), full_key)
            return None

    async def set(
        self,
        namespace: Namespace,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
    ) -> bool:
        """Store ``value``; TTL defaults to the verification type's TTL."""
        full_key = cache_key(namespace, key)
        if ttl is None:
            if not isinstance(namespace, VerificationType):
                raise ValueError(f"TTL required for namespace {namespace!r}")
            ttl = ttl_for(namespace)
        try:
            await self.redis.set(full_key, json.dumps(value, default=str), ex=int(ttl))
            return True
        except (RedisError, OSError, ValueError, TypeError) as e:
            self._report("set", CacheError(f"cache write failed: {e}"), full_key)
            return False

    async def delete(self, namespace: Namespace, key: str) -> None:
        full_key = cache_key(namespace, key)
        try:
            await self.redis.delete(full_key)
        except (RedisError, OSError) as e:
            self._report("delete", CacheError(f"cache delete failed: {e}"), full_key)

    def _report(self, operation: str, error: CacheError, key: str) -> None:
        self.metrics.increment("cache_errors", operation=operation)
        logger.warning("Cache unavailable, treating as miss", key=key, error=str(error), kind=error.kind)
