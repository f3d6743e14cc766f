"""
Expiring key ledgers used for debouncing, deduplication and locking.

A ledger maps keys to an expiry. `claim` succeeds only when the key is absent
or expired, which gives debounce tables, "recently scheduled" sets and
cross-process locks the same primitive. Ledger contents are bookkeeping, not
source-of-truth data: losing them only causes redundant work.
"""

from __future__ import annotations

import abc
import time
from collections import OrderedDict
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import redis.asyncio as aioredis

from .audit_logger import AuditLogger
from .enums import LogLevel


class ExpiringLedger(abc.ABC):
    """Abstract key -> expiry store."""

    def __init__(self, *, namespace: str = "freshness") -> None:
        self.namespace = namespace.rstrip(":")

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @abc.abstractmethod
    async def claim(self, key: str, ttl_seconds: float) -> bool:
        """Mark `key` for `ttl_seconds` unless already marked. True if claimed."""

    @abc.abstractmethod
    async def release(self, key: str) -> None:
        """Drop the mark for `key`, if any."""

    @abc.abstractmethod
    async def seen(self, key: str) -> bool:
        """True when `key` is currently marked."""

    @abc.abstractmethod
    async def size(self) -> int:
        """Number of live entries (best effort)."""

    async def close(self) -> None:  # pragma: no cover - optional override
        """Close underlying resources if supported."""
        return None


class MemoryLedger(ExpiringLedger):
    """
    Process-local ledger: LRU ordering with per-entry TTL.

    When the table grows past `cleanup_threshold`, expired entries are
    removed oldest-first until the size is back at `max_entries`. If live
    entries alone still exceed the threshold, least recently claimed
    entries are evicted down to `max_entries`.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        cleanup_threshold: Optional[int] = None,
        *,
        namespace: str = "freshness",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(namespace=namespace)
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._cleanup_threshold = max(cleanup_threshold or max_entries, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()
        self.evictions = 0

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def cleanup_threshold(self) -> int:
        return self._cleanup_threshold

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        expires_at = self._entries.get(self._key(key))
        return expires_at is not None and expires_at > self._clock()

    async def claim(self, key: str, ttl_seconds: float) -> bool:
        full_key = self._key(key)
        now = self._clock()
        expires_at = self._entries.get(full_key)
        if expires_at is not None and expires_at > now:
            return False

        self._entries[full_key] = now + ttl_seconds
        self._entries.move_to_end(full_key)
        if len(self._entries) > self._cleanup_threshold:
            self.prune(now)
        return True

    async def release(self, key: str) -> None:
        self._entries.pop(self._key(key), None)

    async def seen(self, key: str) -> bool:
        return key in self

    async def size(self) -> int:
        return len(self._entries)

    def prune(self, now: Optional[float] = None) -> int:
        """
        Remove expired entries until the table is at `max_entries`.

        Returns:
            Number of entries removed
        """
        now = self._clock() if now is None else now
        removed = 0
        for full_key in list(self._entries):
            if len(self._entries) <= self._max_entries:
                break
            if self._entries[full_key] <= now:
                del self._entries[full_key]
                removed += 1

        if len(self._entries) > self._cleanup_threshold:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1
                removed += 1
        return removed

    def clear(self) -> None:
        self._entries.clear()


class RedisLedger(ExpiringLedger):
    """Cluster-wide ledger backed by Redis `SET NX PX`."""

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        namespace: str = "freshness",
    ) -> None:
        super().__init__(namespace=namespace)
        self._redis = redis

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        namespace: str = "freshness",
        logger: Optional[AuditLogger] = None,
        **kwargs: Any,
    ) -> "RedisLedger":
        return cls(create_redis_client(url, logger=logger, **kwargs), namespace=namespace)

    async def claim(self, key: str, ttl_seconds: float) -> bool:
        ttl_ms = max(1, int(ttl_seconds * 1000))
        result = await self._redis.set(self._key(key), "1", nx=True, px=ttl_ms)
        return bool(result)

    async def release(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def seen(self, key: str) -> bool:
        return bool(await self._redis.exists(self._key(key)))

    async def size(self) -> int:
        count = 0
        async for _ in self._redis.scan_iter(match=f"{self.namespace}:*"):
            count += 1
        return count

    async def close(self) -> None:
        await self._redis.aclose()


def create_redis_client(
    redis_url: str,
    *,
    logger: Optional[AuditLogger] = None,
    **kwargs: Any,
) -> aioredis.Redis:
    """Build an asyncio Redis client, logging the target without credentials."""
    parsed = urlparse(redis_url)
    if logger:
        logger.log(
            LogLevel.INFO,
            "ledger",
            "Redis ledger target",
            {
                "host": parsed.hostname or "localhost",
                "port": parsed.port or 6379,
                "db": (parsed.path or "/0").strip("/") or "0",
            },
        )
    return aioredis.Redis.from_url(redis_url, **kwargs)
