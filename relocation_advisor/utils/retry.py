"""
Retry, backoff and per-attempt timeout handling for provider calls.

Adapters raise :class:`ProviderError`; :class:`RetryExecutor` is the only
place those exceptions are caught. Callers always get a ``ProviderResult``
back, never an exception (cancellation excepted).
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..models import ProviderError, ProviderErrorKind, ProviderResult

logger = structlog.get_logger(__name__)

P = TypeVar("P")


def parse_retry_after(retry_after: Optional[str]) -> Optional[float]:
    """
    Parse Retry-After header value (seconds or HTTP date).

    Returns:
        Delay in seconds or None if parsing fails
    """
    if not retry_after:
        return None

    value = str(retry_after).strip()

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        from email.utils import parsedate_to_datetime
        when = parsedate_to_datetime(value)
        now = datetime.now(when.tzinfo)
        return max(0.0, (when - now).total_seconds())
    except (TypeError, ValueError):
        return None


def calculate_exponential_backoff(
    attempt: int,
    base_delay: float,
    max_delay: float,
    factor: float = 2.0,
) -> float:
    """Delay before retry ``attempt`` (1-based): ``min(max, base * factor^(n-1))``."""
    delay = base_delay * (factor ** max(0, attempt - 1))
    return min(delay, max_delay)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    timeout_ms: int = 15000

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_before_retry(self, n: int) -> float:
        """Seconds slept before retry ``n``."""
        return calculate_exponential_backoff(
            n, self.base_delay_ms / 1000.0, self.max_delay_ms / 1000.0
        )


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ProviderError):
        return exc.retryable
    return False


GiveUpHook = Callable[[ProviderResult], Any]


class RetryExecutor:
    """Run one provider operation under a :class:`RetryPolicy`."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[P]],
        policy: Optional[RetryPolicy] = None,
        *,
        provider: str = "",
        on_give_up: Optional[GiveUpHook] = None,
    ) -> ProviderResult[P]:
        policy = policy or self.policy
        timeout = policy.timeout_ms / 1000.0
        attempts = 0

        async def _attempt() -> P:
            nonlocal attempts
            attempts += 1
            try:
                return await asyncio.wait_for(operation(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ProviderError(
                    ProviderErrorKind.TIMEOUT,
                    f"no response within {policy.timeout_ms}ms",
                ) from exc

        def _before_sleep(retry_state) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.info(
                "Retrying provider call after backoff",
                provider=provider,
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
                delay=retry_state.next_action.sleep if retry_state.next_action else None,
                exception=str(exc) if exc else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=policy.base_delay_ms / 1000.0,
                max=policy.max_delay_ms / 1000.0,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            payload = await retrying(_attempt)
        except ProviderError as exc:
            result: ProviderResult[P] = ProviderResult.failure(
                exc.kind, exc.detail, retry_after=exc.retry_after, attempts=attempts
            )
        except Exception as exc:
            result = ProviderResult.failure(
                ProviderErrorKind.UNKNOWN,
                str(exc) or type(exc).__name__,
                attempts=attempts,
            )
        else:
            return ProviderResult.success(payload, attempts=attempts)

        logger.warning(
            "Provider call gave up",
            provider=provider,
            attempts=attempts,
            error_kind=result.error_kind.value,
            detail=result.detail,
        )
        if on_give_up is not None:
            try:
                on_give_up(result)
            except Exception as hook_exc:
                logger.error("on_give_up hook failed", provider=provider, error=str(hook_exc))
        return result
