"""Per-session preference memory.

Preferences extracted from earlier queries in the same session seed the next
extraction, so "and what about schools there?" keeps the earlier budget. The
store is optional everywhere: any failure reads as "nothing stored".
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

import redis.asyncio as redis
import structlog

from ..models import PreferenceSet

logger = structlog.get_logger(__name__)

PREFERENCE_TTL_SECONDS = 30 * 24 * 3600


class PreferenceStore:
    """Interface for preference stores."""

    async def get(self, session_id: str) -> Optional[PreferenceSet]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, session_id: str, prefs: PreferenceSet) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryPreferenceStore(PreferenceStore):
    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> Optional[PreferenceSet]:
        async with self._lock:
            data = self._items.get(session_id)
        return PreferenceSet.from_dict(data) if data else None

    async def set(self, session_id: str, prefs: PreferenceSet) -> None:
        async with self._lock:
            self._items[session_id] = prefs.to_dict()


class RedisPreferenceStore(PreferenceStore):
    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        ttl: int = PREFERENCE_TTL_SECONDS,
        *,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.ttl = ttl
        self._client = client

    def _key(self, session_id: str) -> str:
        return f"user_preferences:{session_id}"

    def _get_client(self):
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def get(self, session_id: str) -> Optional[PreferenceSet]:
        try:
            raw = await self._get_client().get(self._key(session_id))
            if not raw:
                return None
            return PreferenceSet.from_dict(json.loads(raw))
        except Exception as e:
            logger.error("Preference get error", session_id=session_id, error=str(e))
            return None

    async def set(self, session_id: str, prefs: PreferenceSet) -> None:
        try:
            await self._get_client().setex(self._key(session_id), self.ttl, json.dumps(prefs.to_dict()))
        except Exception as e:
            logger.error("Preference set error", session_id=session_id, error=str(e))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
