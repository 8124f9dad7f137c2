"""
Orchestrator: StructuredRequest -> per-city provider results.

For every (provider, city) pair the intent requires, the call goes through
cache -> rate controller -> retry executor -> adapter. Pairs run
concurrently under one semaphore and fail independently; the orchestrator
never raises for a provider failure.

Topic providers are compositions: their search and summary steps are
dispatched as ``webSearch`` and ``summarize`` calls, so those quotas and
backoffs see every upstream request.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import structlog

from ..models import (
    IntentKind,
    PerCityProviderResults,
    ProviderCallKey,
    ProviderErrorKind,
    ProviderId,
    ProviderResult,
    StructuredRequest,
    payload_from_dict,
    payload_to_dict,
)
from ..utils.retry import RetryExecutor, RetryPolicy
from .cache import ResponseCache
from .provider_apis import BaseProviderAPI, TopicResearchAPI
from .rate_limiter import ProviderRateController

logger = structlog.get_logger(__name__)

W = ProviderId.WEB_SEARCH

REQUIRED_PROVIDERS: Dict[IntentKind, Tuple[ProviderId, ...]] = {
    IntentKind.CITY_INFO: (W, ProviderId.GEOCODE, ProviderId.NEWS),
    IntentKind.CITY_COMPARISON: (W, ProviderId.GEOCODE, ProviderId.COST_OF_LIVING, ProviderId.HOUSING_MARKET),
    IntentKind.NEIGHBORHOOD_RECOMMENDATION: (W, ProviderId.GEOCODE, ProviderId.NEIGHBORHOODS),
    IntentKind.HOUSING_MARKET: (W, ProviderId.GEOCODE, ProviderId.HOUSING_MARKET, ProviderId.NEIGHBORHOODS),
    IntentKind.JOB_OPPORTUNITIES: (W, ProviderId.GEOCODE, ProviderId.JOB_OPPORTUNITIES),
    IntentKind.SCHOOL_DISTRICTS: (W, ProviderId.GEOCODE, ProviderId.SCHOOL_DISTRICTS),
    IntentKind.TRANSPORTATION: (W, ProviderId.GEOCODE, ProviderId.TRANSPORTATION),
    IntentKind.COST_OF_LIVING: (W, ProviderId.GEOCODE, ProviderId.COST_OF_LIVING, ProviderId.HOUSING_MARKET),
    IntentKind.LIFESTYLE_MATCH: (W, ProviderId.GEOCODE, ProviderId.NEIGHBORHOODS, ProviderId.NEWS),
    IntentKind.RELOCATION_LOGISTICS: (W, ProviderId.GEOCODE),
    IntentKind.GENERAL_ADVICE: (W,),
    IntentKind.OTHER: (W,),
}

NEWS_TOPICS = '(housing OR "real estate" OR "cost of living" OR "quality of life" OR relocation)'


def required_providers(intent: IntentKind) -> Tuple[ProviderId, ...]:
    return REQUIRED_PROVIDERS.get(intent, (W,))


def build_params(provider: ProviderId, city: str, request: StructuredRequest) -> Dict[str, Any]:
    """Provider parameters for one city; these also form the cache key."""
    if provider in (ProviderId.GEOCODE, ProviderId.NEIGHBORHOODS):
        return {"city": city}
    if provider is ProviderId.WEB_SEARCH:
        return {"query": f"{city} city information living cost housing jobs schools"}
    if provider is ProviderId.NEWS:
        return {"query": f"{city} {NEWS_TOPICS}"}
    if provider is ProviderId.HOUSING_MARKET:
        return {"query": f"{city} housing market trends latest data"}
    if provider is ProviderId.JOB_OPPORTUNITIES:
        industries = request.preferences.job_industries
        if industries:
            return {"query": f"{industries[0]} job opportunities in {city} latest data"}
        return {"query": f"job market trends in {city} latest data"}
    if provider is ProviderId.SCHOOL_DISTRICTS:
        return {"query": f"{city} school districts ratings latest data"}
    if provider is ProviderId.TRANSPORTATION:
        return {"query": f"{city} public transportation latest updates"}
    if provider is ProviderId.COST_OF_LIVING:
        return {"query": f"{city} cost of living expenses latest data"}
    return {"city": city}


def aggregate_key(city: str) -> str:
    return "city:" + " ".join(city.lower().split())


def params_fingerprint(provider: ProviderId, params: Mapping[str, Any]) -> str:
    """Call key with case and spacing folded, for matching aggregate entries."""
    folded = {
        k: " ".join(v.lower().split()) if isinstance(v, str) else v for k, v in params.items()
    }
    return ProviderCallKey.build(provider, folded).cache_key


class Orchestrator:
    def __init__(
        self,
        providers: Mapping[ProviderId, BaseProviderAPI],
        *,
        rate_controller: ProviderRateController,
        cache: ResponseCache,
        executor: RetryExecutor,
        policy: Optional[RetryPolicy] = None,
        max_concurrency: int = 5,
        max_quota_wait_ms: int = 2000,
        default_backoff_sec: float = 60.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.providers = dict(providers)
        self.rate = rate_controller
        self.cache = cache
        self.executor = executor
        self.policy = policy or executor.policy
        self.max_quota_wait_ms = max_quota_wait_ms
        self.default_backoff_sec = default_backoff_sec
        self._sem = asyncio.Semaphore(max(1, max_concurrency))
        self._sleep = sleep or asyncio.sleep

    # ---------------------- quota gate ----------------------

    async def _acquire_quota(self, pid: ProviderId) -> Optional[ProviderResult]:
        """None when the call may proceed, otherwise a RateLimited result."""
        if self.rate.try_acquire(pid):
            return None
        wait_ms = self.rate.wait_ms(pid)
        if self.rate.in_backoff(pid):
            return ProviderResult.failure(
                ProviderErrorKind.RATE_LIMITED,
                "provider is backing off after a quota rejection",
                retry_after=wait_ms / 1000.0,
            )
        if wait_ms <= self.max_quota_wait_ms:
            logger.info("Waiting for provider quota", provider=pid.value, wait_ms=wait_ms)
            await self._sleep(wait_ms / 1000.0)
            if self.rate.try_acquire(pid):
                return None
            wait_ms = self.rate.wait_ms(pid)
        return ProviderResult.failure(
            ProviderErrorKind.RATE_LIMITED,
            "local quota exhausted",
            retry_after=wait_ms / 1000.0,
        )

    def _on_give_up(self, pid: ProviderId) -> Callable[[ProviderResult], None]:
        def _hook(result: ProviderResult) -> None:
            if result.error_kind is ProviderErrorKind.RATE_LIMITED:
                delay = self.default_backoff_sec if result.retry_after is None else result.retry_after
                self.rate.on_quota_rejected(pid, delay)
        return _hook

    # ---------------------- single call ----------------------

    async def _research_topic(
        self, api: TopicResearchAPI, params: Mapping[str, Any], city: Optional[str]
    ) -> ProviderResult:
        async def _search(query: str) -> ProviderResult:
            return await self.dispatch(W, {"query": query}, city)

        async def _summarize(hit) -> ProviderResult:
            return await self.dispatch(
                ProviderId.SUMMARIZE, {"url": hit.url}, city, policy=api.summary_policy
            )

        # The whole topic shares one call budget; no outer timeout wraps it
        return await api.research(
            str(params.get("query") or "").strip(),
            _search,
            _summarize,
            budget_sec=self.policy.timeout_ms / 1000.0,
        )

    async def dispatch(
        self,
        pid: ProviderId,
        params: Mapping[str, Any],
        city: Optional[str] = None,
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> ProviderResult:
        key = ProviderCallKey.build(pid, params)
        cached = await self.cache.get(key.cache_key)
        if cached is not None:
            try:
                return ProviderResult.success(payload_from_dict(cached), attempts=0, from_cache=True)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Discarding unreadable cache entry", key=key.cache_key[:80], error=str(e))
                await self.cache.invalidate(key.cache_key)

        api = self.providers.get(pid)
        if api is None:
            return ProviderResult.failure(ProviderErrorKind.CONFIG_MISSING, f"no adapter for {pid.value}")

        gate = await self._acquire_quota(pid)
        if gate is not None:
            logger.warning("Provider call refused by quota", provider=pid.value, city=city)
            return gate

        if isinstance(api, TopicResearchAPI):
            # Inner dispatches take the semaphore themselves
            result = await self._research_topic(api, params, city)
        else:
            result = await self._call_adapter(pid, api, params, policy or self.policy)

        if result.ok:
            await self.cache.put(key.cache_key, payload_to_dict(result.payload))
        else:
            logger.warning(
                "Provider call failed",
                provider=pid.value,
                city=city,
                error_kind=result.error_kind.value,
                attempts=result.attempts,
            )
        return result

    async def _call_adapter(
        self,
        pid: ProviderId,
        api: BaseProviderAPI,
        params: Mapping[str, Any],
        policy: RetryPolicy,
    ) -> ProviderResult:
        first_attempt = True

        async def _call():
            nonlocal first_attempt
            # Retries spend quota too
            if not first_attempt:
                self.rate.record_call(pid)
            first_attempt = False
            return await api.fetch(params)

        async with self._sem:
            return await self.executor.execute(
                _call,
                policy,
                provider=pid.value,
                on_give_up=self._on_give_up(pid),
            )

    # ---------------------- city aggregates ----------------------

    async def _load_aggregate(self, city: str) -> Dict[str, Any]:
        cached = await self.cache.get(aggregate_key(city))
        return cached if isinstance(cached, dict) else {}

    async def _store_aggregate(
        self,
        slot: PerCityProviderResults,
        existing: Dict[str, Any],
        call_keys: Mapping[ProviderId, str],
    ) -> None:
        merged = dict(existing)
        for pid, res in slot.results.items():
            # The fingerprint ties the payload to the parameters it was fetched with
            merged[pid.value] = {"key": call_keys[pid], "payload": payload_to_dict(res.payload)}
        await self.cache.put(aggregate_key(slot.city), merged)

    @staticmethod
    def _reuse(entry: Any, call_key: str) -> Optional[ProviderResult]:
        if not isinstance(entry, dict) or entry.get("key") != call_key:
            return None
        return ProviderResult.success(payload_from_dict(entry["payload"]), attempts=0, from_cache=True)

    # ---------------------- request ----------------------

    async def fetch_for_request(self, request: StructuredRequest) -> List[PerCityProviderResults]:
        if not request.cities:
            slot = PerCityProviderResults(city=None)
            slot.results[W] = await self.dispatch(W, {"query": request.raw_query})
            return [slot]

        pids = required_providers(request.intent)
        slots: List[PerCityProviderResults] = []
        aggregates: List[Dict[str, Any]] = []
        call_keys: List[Dict[ProviderId, str]] = []
        reused: Dict[Tuple[int, ProviderId], ProviderResult] = {}
        pending: List[Tuple[int, ProviderId, Dict[str, Any]]] = []

        for idx, city in enumerate(request.cities):
            slots.append(PerCityProviderResults(city=city))
            aggregate = await self._load_aggregate(city)
            aggregates.append(aggregate)
            call_keys.append({})
            for pid in pids:
                params = build_params(pid, city, request)
                call_key = params_fingerprint(pid, params)
                call_keys[idx][pid] = call_key
                try:
                    hit = self._reuse(aggregate.get(pid.value), call_key)
                except (KeyError, TypeError, ValueError):
                    logger.warning("Ignoring unreadable aggregate entry", city=city, provider=pid.value)
                    hit = None
                if hit is not None:
                    reused[(idx, pid)] = hit
                else:
                    pending.append((idx, pid, params))

        outcomes = await asyncio.gather(
            *(self.dispatch(pid, params, request.cities[idx]) for idx, pid, params in pending)
        )
        fresh = {(idx, pid): res for (idx, pid, _), res in zip(pending, outcomes)}

        for idx, slot in enumerate(slots):
            for pid in pids:
                slot.results[pid] = reused.get((idx, pid)) or fresh[(idx, pid)]
            if slot.status == "ok" and any(not r.from_cache for r in slot.results.values()):
                await self._store_aggregate(slot, aggregates[idx], call_keys[idx])
            elif slot.status == "failed":
                logger.error(
                    "All providers failed for city",
                    city=slot.city,
                    errors={p.value: r.error_kind.value for p, r in slot.failed.items()},
                )
            logger.info(
                "City data gathered",
                city=slot.city,
                status=slot.status,
                succeeded=[p.value for p in slot.succeeded],
            )
        return slots
