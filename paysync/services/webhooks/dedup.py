"""Time-bounded sets of already-handled webhook dedup keys.

The dedup set only saves redundant work. Idempotent application in the
lifecycle service is what keeps outcomes correct when a duplicate slips by,
for example across instances using the process-local cache.
"""

import time
from typing import Callable, Protocol

import redis
from cachetools import TTLCache

from paysync.common.config import settings


class DedupCache(Protocol):
    def seen(self, key: str) -> bool: ...

    def remember(self, key: str) -> None: ...


class TTLDedupCache:
    """Process-local dedup set; entries expire `ttl` seconds after insertion.

    Bounded by `maxsize`; when full the least recently used key is evicted
    first, which only costs a redundant idempotent apply.
    """

    def __init__(
        self,
        ttl: float = 86400.0,
        maxsize: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._keys: TTLCache = TTLCache(
            maxsize=maxsize or settings.webhook_dedup_max_entries,
            ttl=ttl,
            timer=clock,
        )

    def seen(self, key: str) -> bool:
        return key in self._keys

    def remember(self, key: str) -> None:
        self._keys[key] = True

    def __len__(self) -> int:
        self._keys.expire()
        return len(self._keys)


class RedisDedupCache:
    """Shared dedup set for multi-instance deployments (`SET key 1 EX ttl`)."""

    def __init__(self, client: redis.Redis, ttl: int = 86400, prefix: str = "webhook:dedup:") -> None:
        self.client = client
        self.ttl = ttl
        self.prefix = prefix

    def seen(self, key: str) -> bool:
        return bool(self.client.exists(self.prefix + key))

    def remember(self, key: str) -> None:
        self.client.set(self.prefix + key, "1", ex=self.ttl)


def build_dedup_cache() -> DedupCache:
    if settings.webhook_dedup_backend == "redis":
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisDedupCache(client, ttl=settings.webhook_dedup_ttl_seconds)
    return TTLDedupCache(
        ttl=float(settings.webhook_dedup_ttl_seconds),
        maxsize=settings.webhook_dedup_max_entries,
    )
