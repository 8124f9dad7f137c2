import pytest

from relocation_advisor.models import ProviderCallKey
from relocation_advisor.services.cache import MemoryCacheBackend, RedisCacheBackend


@pytest.mark.asyncio
async def test_round_trip_before_expiry(clock):
    cache = MemoryCacheBackend(default_ttl=100, clock=clock)
    await cache.put("k", {"a": [1, 2]})
    clock.advance(99)
    assert await cache.get("k") == {"a": [1, 2]}


@pytest.mark.asyncio
async def test_entry_expires_after_ttl(clock):
    cache = MemoryCacheBackend(default_ttl=100, clock=clock)
    await cache.put("k", {"a": 1})
    clock.advance(100)
    assert await cache.get("k") is None
    stats = await cache.stats()
    assert stats["entries"] == 0


@pytest.mark.asyncio
async def test_per_entry_ttl_overrides_default(clock):
    cache = MemoryCacheBackend(default_ttl=1000, clock=clock)
    await cache.put("short", 1, ttl=5)
    await cache.put("long", 2)
    clock.advance(6)
    assert await cache.get("short") is None
    assert await cache.get("long") == 2


@pytest.mark.asyncio
async def test_callers_get_copies(clock):
    cache = MemoryCacheBackend(clock=clock)
    value = {"hits": [{"title": "a"}]}
    await cache.put("k", value)
    value["hits"].append({"title": "mutated"})

    first = await cache.get("k")
    first["hits"].clear()
    assert await cache.get("k") == {"hits": [{"title": "a"}]}


@pytest.mark.asyncio
async def test_stats_hit_rate_invalidate_and_clear(clock):
    cache = MemoryCacheBackend(clock=clock)
    await cache.put("a", 1)
    await cache.put("b", 2)
    assert await cache.get("a") == 1
    assert await cache.get("missing") is None

    stats = await cache.stats()
    assert stats["entries"] == 2
    assert stats["hit_rate"] == 0.5

    await cache.invalidate("a")
    assert await cache.get("a") is None
    await cache.clear()
    assert (await cache.stats())["entries"] == 0


def test_call_key_is_canonical_and_hashes_long_params():
    k1 = ProviderCallKey.build("news", {"b": 1, "a": "x"})
    k2 = ProviderCallKey.build("news", {"a": "x", "b": 1})
    assert k1 == k2
    assert k1.cache_key == 'news:{"a":"x","b":1}'

    long_key = ProviderCallKey.build("webSearch", {"query": "q" * 300})
    assert long_key.cache_key.startswith("webSearch:hash:")
    assert len(long_key.cache_key) < 60


class BrokenRedis:
    async def get(self, *_a, **_k):
        raise ConnectionError("redis down")

    async def setex(self, *_a, **_k):
        raise ConnectionError("redis down")


class DictRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        for k in keys:
            self.store.pop(k, None)


@pytest.mark.asyncio
async def test_redis_backend_failures_degrade_to_miss():
    cache = RedisCacheBackend(client=BrokenRedis())
    await cache.put("k", {"a": 1})
    assert await cache.get("k") is None
    assert cache.miss_count == 1


@pytest.mark.asyncio
async def test_redis_backend_stores_json_with_expiry():
    client = DictRedis()
    cache = RedisCacheBackend(client=client, default_ttl=86400)
    await cache.put("geocode:x", {"kind": "city_info", "name": "Austin"})

    assert client.ttls["relocation:geocode:x"] == 86400
    assert await cache.get("geocode:x") == {"kind": "city_info", "name": "Austin"}
    await cache.invalidate("geocode:x")
    assert await cache.get("geocode:x") is None
