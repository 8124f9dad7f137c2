"""
Per-provider outbound quota tracking.

Each provider gets a fixed number of calls per rolling 60 second window. A
provider that answered with a quota rejection is put into backoff until its
``Retry-After`` (or a default) has elapsed.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from ..core.config import DEFAULT_PROVIDER_QUOTA

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 60.0


@dataclass
class QuotaState:
    count: int = 0
    window_start: float = 0.0
    backoff_until: float = 0.0


class ProviderRateController:
    """
    Client-side quota limiter for outbound provider calls.

    Notes:
    - Methods are synchronous and hold a lock only for bookkeeping, so they
      can be called from any coroutine without awaiting.
    - ``can_proceed`` followed by ``record_call`` is not atomic; concurrent
      callers should use ``try_acquire``.
    - Unexpected internal failures are logged and treated as "no throttling".
    """

    def __init__(
        self,
        quotas: Optional[Mapping[str, int]] = None,
        *,
        default_quota: int = DEFAULT_PROVIDER_QUOTA,
        default_backoff_sec: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if default_quota <= 0:
            raise ValueError("default_quota must be > 0")
        self._quotas: Dict[str, int] = {str(k): int(v) for k, v in (quotas or {}).items()}
        self._default_quota = default_quota
        self._default_backoff = default_backoff_sec
        self._clock = clock or time.monotonic
        self._states: Dict[str, QuotaState] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(provider: Any) -> str:
        return getattr(provider, "value", None) or str(provider)

    def quota_for(self, provider: Any) -> int:
        return self._quotas.get(self._key(provider), self._default_quota)

    def _state(self, key: str, now: float) -> QuotaState:
        state = self._states.get(key)
        if state is None:
            state = QuotaState(window_start=now)
            self._states[key] = state
        elif now - state.window_start >= WINDOW_SECONDS:
            state.count = 0
            state.window_start = now
        return state

    def _allowed(self, key: str, state: QuotaState, now: float) -> bool:
        if now < state.backoff_until:
            return False
        return state.count < self._quotas.get(key, self._default_quota)

    def can_proceed(self, provider: Any) -> bool:
        try:
            with self._lock:
                now = self._clock()
                key = self._key(provider)
                return self._allowed(key, self._state(key, now), now)
        except Exception as e:
            logger.warning("Rate controller check failed", provider=str(provider), error=str(e))
            return True

    def record_call(self, provider: Any) -> None:
        try:
            with self._lock:
                now = self._clock()
                self._state(self._key(provider), now).count += 1
        except Exception as e:
            logger.warning("Rate controller record failed", provider=str(provider), error=str(e))

    def try_acquire(self, provider: Any) -> bool:
        """Check and record in one step."""
        try:
            with self._lock:
                now = self._clock()
                key = self._key(provider)
                state = self._state(key, now)
                if not self._allowed(key, state, now):
                    return False
                state.count += 1
                return True
        except Exception as e:
            logger.warning("Rate controller acquire failed", provider=str(provider), error=str(e))
            return True

    def wait_ms(self, provider: Any) -> int:
        """Milliseconds until the provider may be called again (0 = now)."""
        try:
            with self._lock:
                now = self._clock()
                key = self._key(provider)
                state = self._state(key, now)
                if now < state.backoff_until:
                    return max(0, math.ceil((state.backoff_until - now) * 1000))
                if state.count >= self._quotas.get(key, self._default_quota):
                    remaining = state.window_start + WINDOW_SECONDS - now
                    return max(0, math.ceil(remaining * 1000))
                return 0
        except Exception as e:
            logger.warning("Rate controller wait lookup failed", provider=str(provider), error=str(e))
            return 0

    def in_backoff(self, provider: Any) -> bool:
        with self._lock:
            state = self._states.get(self._key(provider))
            return bool(state and self._clock() < state.backoff_until)

    def on_quota_rejected(self, provider: Any, retry_after_seconds: Optional[float] = None) -> None:
        # Only a missing Retry-After falls back to the default; 0 means "now"
        delay = self._default_backoff if retry_after_seconds is None else max(0.0, retry_after_seconds)
        with self._lock:
            now = self._clock()
            state = self._state(self._key(provider), now)
            state.backoff_until = max(state.backoff_until, now + delay)
        logger.info(
            "Provider quota rejected, backing off",
            provider=self._key(provider),
            backoff_seconds=delay,
        )

    def snapshot(self, provider: Any) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            key = self._key(provider)
            state = self._state(key, now)
            return {
                "provider": key,
                "count": state.count,
                "quota": self._quotas.get(key, self._default_quota),
                "window_start": state.window_start,
                "backoff_until": state.backoff_until,
            }
