"""
Advisor pipeline: query text in, fused city records out.

``RelocationAdvisor.advise`` seeds preferences from the session store,
extracts a ``StructuredRequest``, gathers provider data, fuses it and,
when a reasoner is configured, hands the result to it for the written answer.
"""

import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

import structlog

from ..core.config import Settings
from ..logging_config import configure_logging, request_context
from ..models import FusionResult, ProviderId, StructuredRequest
from ..utils.retry import RetryExecutor, RetryPolicy
from .cache import ResponseCache, create_cache
from .fusion import FusionEngine
from .intent_extractor import (
    CompletionFn,
    IntentExtractor,
    LLMIntentExtractor,
    RuleBasedIntentExtractor,
)
from .orchestrator import Orchestrator
from .preference_store import (
    InMemoryPreferenceStore,
    PreferenceStore,
    RedisPreferenceStore,
)
from .provider_apis import BaseProviderAPI, close_registry, create_provider_registry
from .rate_limiter import ProviderRateController

logger = structlog.get_logger(__name__)

Reasoner = Callable[[StructuredRequest, FusionResult], Awaitable[str]]


@dataclass
class AdvisorResult:
    query_id: str
    request: StructuredRequest
    fusion: FusionResult
    answer: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_id": self.query_id,
            "request": asdict(self.request),
            "fusion": self.fusion.to_dict(),
            "answer": self.answer,
        }


class RelocationAdvisor:
    def __init__(
        self,
        extractor: IntentExtractor,
        orchestrator: Orchestrator,
        fusion: Optional[FusionEngine] = None,
        *,
        preferences: Optional[PreferenceStore] = None,
        reasoner: Optional[Reasoner] = None,
        providers: Optional[Mapping[ProviderId, BaseProviderAPI]] = None,
        cache: Optional[ResponseCache] = None,
    ):
        self.extractor = extractor
        self.orchestrator = orchestrator
        self.fusion = fusion or FusionEngine()
        self.preferences = preferences
        self.reasoner = reasoner
        self._providers = providers
        self._cache = cache

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_exc):
        await self.close()

    async def close(self) -> None:
        if self._providers:
            await close_registry(self._providers)
        if self._cache is not None:
            await self._cache.close()
        if self.preferences is not None:
            await self.preferences.close()

    async def advise(
        self,
        query: str,
        city_hints: Optional[Sequence[str]] = None,
        session_id: Optional[str] = None,
    ) -> AdvisorResult:
        query_id = uuid.uuid4().hex
        with request_context(query_id, session_id):
            seed = None
            if self.preferences is not None and session_id:
                seed = await self.preferences.get(session_id)

            request = await self.extractor.extract(query, city_hints, seed)
            slots = await self.orchestrator.fetch_for_request(request)
            fused = self.fusion.fuse(request, slots)

            if self.preferences is not None and session_id and not request.preferences.is_empty():
                await self.preferences.set(session_id, request.preferences)

            answer = None
            if self.reasoner is not None:
                try:
                    answer = await self.reasoner(request, fused)
                except Exception as e:
                    logger.error("Reasoner failed", error=str(e))

            logger.info(
                "Advice assembled",
                intent=request.intent.value,
                records=len(fused.records),
                unavailable=sorted(fused.unavailable),
            )
            return AdvisorResult(query_id=query_id, request=request, fusion=fused, answer=answer)


def create_advisor(
    settings: Optional[Settings] = None,
    *,
    complete: Optional[CompletionFn] = None,
    reasoner: Optional[Reasoner] = None,
) -> RelocationAdvisor:
    """Wire every component from settings; call once per process."""
    configure_logging()
    settings = settings or Settings.from_env()

    policy = RetryPolicy(
        max_retries=settings.max_retries,
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        timeout_ms=int(settings.call_timeout_sec * 1000),
    )
    executor = RetryExecutor(policy)
    cache = create_cache(settings)
    providers = create_provider_registry(settings, executor=executor)
    rate = ProviderRateController(
        settings.provider_quotas,
        default_quota=settings.default_quota,
        default_backoff_sec=settings.quota_backoff_default_sec,
    )
    orchestrator = Orchestrator(
        providers,
        rate_controller=rate,
        cache=cache,
        executor=executor,
        policy=policy,
        max_concurrency=settings.max_concurrency,
        max_quota_wait_ms=settings.max_quota_wait_ms,
        default_backoff_sec=settings.quota_backoff_default_sec,
    )
    if settings.use_redis:
        preferences: PreferenceStore = RedisPreferenceStore(settings.redis_url, settings.preference_ttl_sec)
    else:
        preferences = InMemoryPreferenceStore()

    extractor: IntentExtractor = (
        LLMIntentExtractor(complete) if complete is not None else RuleBasedIntentExtractor()
    )
    logger.info(
        "Advisor created",
        cache_backend=settings.cache_backend,
        configured_providers=sorted(settings.credentials),
        max_concurrency=settings.max_concurrency,
    )
    return RelocationAdvisor(
        extractor,
        orchestrator,
        FusionEngine(),
        preferences=preferences,
        reasoner=reasoner,
        providers=providers,
        cache=cache,
    )
