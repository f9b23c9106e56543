"""Unit tests for app/features/permissions/cache.py -- MemoryPermissionCache.

Covers:
- get/set round trip and hit/miss accounting
- TTL expiry driven by an injected clock
- LRU eviction at max_size
- epoch check rejects values computed before an invalidation
- targeted and global invalidation
"""

import pytest

from app.features.permissions.cache import MemoryPermissionCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    return MemoryPermissionCache(ttl_seconds=10.0, max_size=3, clock=clock)


class TestGetSet:
    async def test_miss_then_hit(self, memory_cache):
        assert await memory_cache.get("u1") is None

        epoch = await memory_cache.epoch()
        assert await memory_cache.set("u1", "perms", epoch) is True
        assert await memory_cache.get("u1") == "perms"

        assert memory_cache.stats.misses == 1
        assert memory_cache.stats.hits == 1
        assert memory_cache.stats.sets == 1

    async def test_entry_expires_after_ttl(self, memory_cache, clock):
        await memory_cache.set("u1", "perms", await memory_cache.epoch())

        clock.advance(9.9)
        assert await memory_cache.get("u1") == "perms"

        clock.advance(0.2)
        assert await memory_cache.get("u1") is None
        assert len(memory_cache) == 0

    async def test_no_ttl_never_expires(self, clock):
        forever = MemoryPermissionCache(ttl_seconds=None, clock=clock)
        await forever.set("u1", "perms", await forever.epoch())
        clock.advance(10_000)
        assert await forever.get("u1") == "perms"


class TestEviction:
    async def test_least_recently_used_is_evicted(self, memory_cache):
        epoch = await memory_cache.epoch()
        for user_id in ("u1", "u2", "u3"):
            await memory_cache.set(user_id, user_id, epoch)

        # Touch u1 so u2 becomes the eviction candidate
        await memory_cache.get("u1")
        await memory_cache.set("u4", "u4", epoch)

        assert len(memory_cache) == 3
        assert await memory_cache.get("u2") is None
        assert await memory_cache.get("u1") == "u1"
        assert memory_cache.stats.evictions == 1


class TestEpoch:
    async def test_set_rejected_after_invalidation(self, memory_cache):
        """A value computed before an invalidation must not be cached."""
        epoch = await memory_cache.epoch()
        await memory_cache.invalidate(["someone-else"])

        assert await memory_cache.set("u1", "stale", epoch) is False
        assert await memory_cache.get("u1") is None
        assert memory_cache.stats.stale_sets == 1

    async def test_invalidate_specific_users(self, memory_cache):
        epoch = await memory_cache.epoch()
        await memory_cache.set("u1", "a", epoch)
        await memory_cache.set("u2", "b", epoch)

        await memory_cache.invalidate({"u1"})

        assert await memory_cache.get("u1") is None
        assert await memory_cache.get("u2") == "b"
        assert await memory_cache.epoch() == epoch + 1

    async def test_invalidate_none_clears_everything(self, memory_cache):
        epoch = await memory_cache.epoch()
        await memory_cache.set("u1", "a", epoch)
        await memory_cache.set("u2", "b", epoch)

        await memory_cache.invalidate(None)

        assert len(memory_cache) == 0
        assert memory_cache.stats.invalidations == 1
