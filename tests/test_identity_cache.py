import asyncio

import pytest

from gatehouse.service.events import EventType
from gatehouse.service.identity_cache import (
    IdentityCache,
    identity_key,
    listing_key,
)
from gatehouse.storage.errors import StoreUnavailable
from gatehouse.storage.memory_cache import MemoryCacheStore


class _CountingLoader:
    def __init__(self, value="v", delay=0.01):
        self.value = value
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return self.value


@pytest.fixture
def cache_store(clock):
    return MemoryCacheStore(clock)


@pytest.fixture
def cache(cache_store):
    return IdentityCache(cache_store, ttl_seconds=300)


def test_key_helpers():
    assert identity_key("42") == "user:42"
    assert listing_key({"b": 1, "a": 2}) == 'users:list:{"a": 2, "b": 1}'
    assert listing_key() == "users:list:{}"


async def test_concurrent_misses_share_one_load(cache):
    loader = _CountingLoader({"id": "1"})
    results = await asyncio.gather(*(cache.get("user:1", loader) for _ in range(10)))

    assert loader.calls == 1
    assert cache.loads == 1
    assert all(r == {"id": "1"} for r in results)


async def test_hit_skips_loader(cache, cache_store):
    loader = _CountingLoader({"id": "1"})
    await cache.get("user:1", loader)
    await cache.get("user:1", loader)

    assert loader.calls == 1
    assert await cache_store.get_json("app:user:1") == {"id": "1"}


async def test_sync_loader_supported(cache):
    assert await cache.get("user:1", lambda: {"id": "1"}) == {"id": "1"}


async def test_none_is_not_cached(cache):
    loader = _CountingLoader(None)
    assert await cache.get("user:missing", loader) is None
    assert await cache.get("user:missing", loader) is None
    assert loader.calls == 2


async def test_entries_expire_after_ttl(cache, clock):
    loader = _CountingLoader({"id": "1"})
    await cache.get("user:1", loader)
    clock.advance(301)
    await cache.get("user:1", loader)
    assert loader.calls == 2


async def test_loader_error_reaches_every_waiter(cache):
    async def broken():
        await asyncio.sleep(0.01)
        raise RuntimeError("db down")

    results = await asyncio.gather(
        *(cache.get("user:1", broken) for _ in range(3)), return_exceptions=True
    )
    assert all(isinstance(r, RuntimeError) for r in results)

    # The failed load is not remembered
    assert await cache.get("user:1", lambda: {"id": "1"}) == {"id": "1"}


async def test_invalidation_during_load_is_not_written_back(cache, cache_store):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_loader():
        started.set()
        await release.wait()
        return {"name": "old"}

    task = asyncio.create_task(cache.get("user:1", slow_loader))
    await started.wait()
    await cache.invalidate("user:1")
    release.set()

    assert await task == {"name": "old"}
    assert await cache_store.get_json("app:user:1") is None
    assert await cache.get("user:1", lambda: {"name": "new"}) == {"name": "new"}


async def test_mutation_event_evicts_identity_and_listings(cache, cache_store, bus):
    cache.attach(bus)
    await cache.get(identity_key("1"), lambda: {"id": "1"})
    await cache.get("user:1:sessions", lambda: ["s1"])
    await cache.get(identity_key("2"), lambda: {"id": "2"})
    await cache.get(listing_key({"limit": 100}), lambda: [{"id": "1"}, {"id": "2"}])

    bus.publish(EventType.USER_UPDATED, {"user_id": "1"})
    await bus.join()

    assert await cache_store.get_json("app:user:1") is None
    assert await cache_store.get_json("app:user:1:sessions") is None
    assert await cache_store.get_json('app:users:list:{"limit": 100}') is None
    assert await cache_store.get_json("app:user:2") == {"id": "2"}


async def test_eviction_is_idempotent(cache, bus):
    cache.attach(bus)
    for _ in range(2):
        bus.publish(EventType.USER_DELETED, {"user_id": "nobody"})
    await bus.join()


async def test_non_mutation_events_do_not_evict(cache, cache_store, bus):
    cache.attach(bus)
    await cache.get(identity_key("1"), lambda: {"id": "1"})
    bus.publish(EventType.USER_LOGGED_IN, {"user_id": "1"})
    await bus.join()
    assert await cache_store.get_json("app:user:1") == {"id": "1"}


async def test_detach_stops_eviction(cache, cache_store, bus):
    cache.attach(bus)
    cache.detach()
    await cache.get(identity_key("1"), lambda: {"id": "1"})
    bus.publish(EventType.USER_UPDATED, {"user_id": "1"})
    await bus.join()
    assert await cache_store.get_json("app:user:1") == {"id": "1"}


class _BrokenStore:
    async def get_json(self, key):
        raise StoreUnavailable("redis down", backend="redis")

    async def set_json(self, key, value, ttl_seconds):
        raise StoreUnavailable("redis down", backend="redis")


async def test_cache_store_failure_is_a_miss():
    cache = IdentityCache(_BrokenStore())
    loader = _CountingLoader({"id": "1"}, delay=0)

    assert await cache.get("user:1", loader) == {"id": "1"}
    assert await cache.get("user:1", loader) == {"id": "1"}
    assert loader.calls == 2


class _SlowWriteStore(MemoryCacheStore):
    """Holds ``set_json`` open until released."""

    def __init__(self, clock):
        super().__init__(clock)
        self.writing = asyncio.Event()
        self.release = asyncio.Event()

    async def set_json(self, key, value, ttl_seconds):
        self.writing.set()
        await self.release.wait()
        await super().set_json(key, value, ttl_seconds)


async def test_invalidation_during_write_back_is_not_kept(clock):
    cache_store = _SlowWriteStore(clock)
    cache = IdentityCache(cache_store)

    task = asyncio.create_task(cache.get("user:1", lambda: {"name": "old"}))
    await cache_store.writing.wait()
    await cache.invalidate("user:1")
    cache_store.release.set()

    assert await task == {"name": "old"}
    assert await cache_store.get_json("app:user:1") is None
    assert await cache.get("user:1", lambda: {"name": "new"}) == {"name": "new"}
