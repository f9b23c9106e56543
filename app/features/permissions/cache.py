"""
Cache for resolved permission sets.

The cache is a performance optimization only. Correctness after a write
comes from explicit invalidation, not from the TTL:

- every invalidation bumps a cache-wide ``epoch``
- a resolver reads the epoch before it reads the store and passes it to
  ``set``; the entry is dropped if the epoch moved in between

That makes it impossible for a resolve that started before a revoke to
re-insert the pre-revoke permission set after the revoke returned.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Optional

from app.utils import get_logger


log = get_logger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    stale_sets: int = 0
    invalidations: int = 0
    evictions: int = 0


class PermissionCache(ABC):
    """Interface the resolver depends on."""

    @abstractmethod
    async def get(self, user_id: str) -> Any | None:
        """Return the cached value, or None on miss/expiry."""

    @abstractmethod
    async def epoch(self) -> int:
        """Current invalidation epoch."""

    @abstractmethod
    async def set(self, user_id: str, value: Any, epoch: int) -> bool:
        """Store value if ``epoch`` is still current. Returns whether it was stored."""

    @abstractmethod
    async def invalidate(self, user_ids: Iterable[str] | None) -> None:
        """Drop entries for the given users, or every entry when None."""


class MemoryPermissionCache(PermissionCache):
    """
    In-process LRU cache with per-entry TTL, guarded by an asyncio lock.

    ``clock`` is injectable so tests can expire entries deterministically.
    """

    def __init__(
        self,
        ttl_seconds: float | None = 30.0,
        max_size: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._epoch = 0
        self._lock = asyncio.Lock()
        self.stats = CacheStats()

    async def get(self, user_id: str) -> Any | None:
        async with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                self.stats.misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[user_id]
                self.stats.misses += 1
                self.stats.evictions += 1
                return None
            self._entries.move_to_end(user_id)
            self.stats.hits += 1
            return entry.value

    async def epoch(self) -> int:
        async with self._lock:
            return self._epoch

    async def set(self, user_id: str, value: Any, epoch: int) -> bool:
        async with self._lock:
            if epoch != self._epoch:
                # An invalidation ran while the value was being computed
                self.stats.stale_sets += 1
                return False

            self._entries.pop(user_id, None)
            while len(self._entries) >= self._max_size:
                self._entries.popitem(last=False)
                self.stats.evictions += 1

            expires_at = self._clock() + self._ttl if self._ttl is not None else None
            self._entries[user_id] = CacheEntry(value=value, expires_at=expires_at)
            self.stats.sets += 1
            return True

    async def invalidate(self, user_ids: Iterable[str] | None) -> None:
        async with self._lock:
            self._epoch += 1
            self.stats.invalidations += 1
            if user_ids is None:
                dropped = len(self._entries)
                self._entries.clear()
                log.debug("Permission cache cleared (%d entries)", dropped)
                return
            for user_id in user_ids:
                self._entries.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._entries)
