"""
Response cache for provider payloads.

Values are JSON-compatible dicts (payloads are encoded with
``payload_to_dict`` by the orchestrator). Two backends share one contract:
an in-process dict for tests and single-process runs, and Redis for shared
deployments. Every backend failure is logged and treated as a miss.
"""

import asyncio
import copy
import json
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600


@dataclass
class CacheEntry:
    key: str
    payload: Any
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


class ResponseCache:
    """Common bookkeeping: hit/miss counters and default TTL."""

    def __init__(self, default_ttl: int = DEFAULT_TTL_SECONDS):
        self.default_ttl = default_ttl
        self.hit_count = 0
        self.miss_count = 0

    def _record(self, hit: bool) -> None:
        if hit:
            self.hit_count += 1
        else:
            self.miss_count += 1

    def _hit_rate(self) -> float:
        total = self.hit_count + self.miss_count
        return round(self.hit_count / total, 4) if total else 0.0

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def invalidate(self, key: str) -> None:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError

    async def stats(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCacheBackend(ResponseCache):
    """Lock-guarded dict; expired entries are evicted lazily on lookup."""

    def __init__(
        self,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        *,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(default_ttl)
        self._clock = clock or time.time
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired(self._clock()):
                del self._entries[key]
                entry = None
            self._record(entry is not None)
            if entry is None:
                logger.debug("Cache MISS", key=key[:80])
                return None
            logger.debug("Cache HIT", key=key[:80])
            return copy.deepcopy(entry.payload)

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        async with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                payload=copy.deepcopy(value),
                stored_at=self._clock(),
                ttl=ttl if ttl is not None else self.default_ttl,
            )

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            now = self._clock()
            live = sum(1 for e in self._entries.values() if not e.expired(now))
            return {
                "backend": "memory",
                "entries": live,
                "hits": self.hit_count,
                "misses": self.miss_count,
                "hit_rate": self._hit_rate(),
            }


class RedisCacheBackend(ResponseCache):
    """Redis-backed cache; expiry is delegated to ``SETEX``."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        default_ttl: int = DEFAULT_TTL_SECONDS,
        *,
        namespace: str = "relocation",
        client: Optional[Any] = None,
    ):
        super().__init__(default_ttl)
        self.redis_url = redis_url
        self.namespace = namespace
        self.redis_pool = None
        self._client = client

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def initialize(self) -> bool:
        """Initialize Redis connection pool"""
        try:
            self.redis_pool = redis.ConnectionPool.from_url(
                self.redis_url, max_connections=20, decode_responses=True
            )
            client = redis.Redis(connection_pool=self.redis_pool)
            await client.ping()
            logger.info("Redis connection established successfully")
            return True
        except Exception as e:
            logger.error("Failed to connect to Redis", error=str(e))
            return False

    async def close(self) -> None:
        if self.redis_pool:
            await self.redis_pool.disconnect()

    @asynccontextmanager
    async def get_client(self):
        if self._client is not None:
            yield self._client
            return
        if not self.redis_pool:
            await self.initialize()
        client = redis.Redis(connection_pool=self.redis_pool)
        try:
            yield client
        finally:
            await client.aclose()

    async def get(self, key: str) -> Optional[Any]:
        try:
            async with self.get_client() as client:
                cached = await client.get(self._key(key))
            if cached is None:
                self._record(False)
                return None
            self._record(True)
            return json.loads(cached)
        except Exception as e:
            self._record(False)
            logger.error("Cache get error", key=key[:80], error=str(e))
            return None

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            async with self.get_client() as client:
                await client.setex(
                    self._key(key),
                    int(ttl if ttl is not None else self.default_ttl),
                    json.dumps(value, default=str),
                )
        except Exception as e:
            logger.error("Cache set error", key=key[:80], error=str(e))

    async def invalidate(self, key: str) -> None:
        try:
            async with self.get_client() as client:
                await client.delete(self._key(key))
        except Exception as e:
            logger.error("Cache invalidate error", key=key[:80], error=str(e))

    async def clear(self) -> None:
        try:
            async with self.get_client() as client:
                keys = [k async for k in client.scan_iter(match=f"{self.namespace}:*")]
                if keys:
                    await client.delete(*keys)
        except Exception as e:
            logger.error("Cache clear error", error=str(e))

    async def stats(self) -> Dict[str, Any]:
        entries = 0
        try:
            async with self.get_client() as client:
                async for _ in client.scan_iter(match=f"{self.namespace}:*"):
                    entries += 1
        except Exception as e:
            logger.error("Cache stats error", error=str(e))
        return {
            "backend": "redis",
            "entries": entries,
            "hits": self.hit_count,
            "misses": self.miss_count,
            "hit_rate": self._hit_rate(),
        }


def create_cache(settings) -> ResponseCache:
    if settings.use_redis:
        return RedisCacheBackend(settings.redis_url, settings.cache_ttl_sec)
    return MemoryCacheBackend(settings.cache_ttl_sec)
