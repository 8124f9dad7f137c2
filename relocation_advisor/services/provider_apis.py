"""
Provider adapters.

Each adapter turns a small parameter dict into one tagged raw payload, or
raises :class:`ProviderError` with a kind from the shared taxonomy. Adapters
never retry, throttle or cache; the orchestrator wraps every ``fetch`` in the
rate controller, the cache and the :class:`RetryExecutor`.
"""

import asyncio
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Tuple,
)

import aiohttp
import structlog

from ..core.config import CREDENTIAL_ENV_VARS, Settings
from ..models import (
    CategoryScore,
    CityInfoPayload,
    NeighborhoodsPayload,
    NewsArticle,
    NewsPayload,
    Place,
    ProviderError,
    ProviderErrorKind,
    ProviderId,
    ProviderResult,
    RawPayload,
    SummaryPayload,
    TopicPayload,
    WebHit,
    WebSearchPayload,
)
from ..utils.retry import RetryExecutor, RetryPolicy, parse_retry_after

logger = structlog.get_logger(__name__)

QUOTA_PHRASES = ("rate limit", "ratelimit", "quota", "too many requests")


def classify_http_error(
    status: int, body: str = "", retry_after: Optional[float] = None
) -> ProviderError:
    """Map a non-2xx HTTP status (plus body hints) onto the error taxonomy."""
    lowered = (body or "").lower()
    if status == 429 or (400 <= status < 500 and any(p in lowered for p in QUOTA_PHRASES)):
        return ProviderError(
            ProviderErrorKind.RATE_LIMITED, f"HTTP {status}", retry_after=retry_after
        )
    if status in (401, 403):
        return ProviderError(ProviderErrorKind.CONFIG_MISSING, f"credential rejected (HTTP {status})")
    if status == 404:
        return ProviderError(ProviderErrorKind.NOT_FOUND, "HTTP 404")
    if 400 <= status < 500:
        return ProviderError(ProviderErrorKind.MALFORMED, f"HTTP {status}")
    return ProviderError(ProviderErrorKind.SERVER_ERROR, f"HTTP {status}")


def _header(headers: Any, name: str) -> Optional[str]:
    if not headers:
        return None
    return headers.get(name) or headers.get(name.lower())


class BaseProviderAPI:
    provider_id: ProviderId
    requires_key: bool = True

    def __init__(
        self,
        api_key: str = "",
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_sec: float = 30.0,
    ):
        self.api_key = api_key
        self.session = session
        self._owns_session = session is None
        self._timeout_sec = timeout_sec

    async def __aenter__(self):
        self._sess()
        return self

    async def __aexit__(self, *_exc):
        await self.close()

    def _sess(self) -> aiohttp.ClientSession:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_sec)
            )
            self._owns_session = True
        return self.session

    # Test seam: allow tests to inject a dummy session
    def _get_session(self) -> aiohttp.ClientSession:  # pragma: no cover - trivial alias
        return self._sess()

    async def close(self) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    def _require_key(self) -> None:
        if self.requires_key and not self.api_key:
            env_var = CREDENTIAL_ENV_VARS.get(self.provider_id.value, "API key")
            raise ProviderError(ProviderErrorKind.CONFIG_MISSING, f"{env_var} is not set")

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        session = self._get_session()
        try:
            if method == "POST":
                ctx = session.post(url, json=json_body, headers=headers)
            else:
                ctx = session.get(url, params=params, headers=headers)
            async with ctx as r:
                if r.status >= 400:
                    body = await r.text()
                    raise classify_http_error(
                        r.status,
                        body,
                        parse_retry_after(_header(r.headers, "Retry-After")),
                    )
                try:
                    return await r.json(content_type=None)
                except ValueError as exc:
                    raise ProviderError(ProviderErrorKind.MALFORMED, "response is not JSON") from exc
        except asyncio.TimeoutError as exc:
            raise ProviderError(ProviderErrorKind.TIMEOUT, f"{self.provider_id.value} timed out") from exc
        except aiohttp.ClientError as exc:
            raise ProviderError(ProviderErrorKind.SERVER_ERROR, f"network error: {exc}") from exc

    async def fetch(self, params: Mapping[str, Any]) -> RawPayload:
        raise NotImplementedError


def _require(data: Any, key: str) -> Any:
    if not isinstance(data, dict) or key not in data:
        raise ProviderError(ProviderErrorKind.MALFORMED, f"missing '{key}' in response")
    return data[key]


# --------------------------------------------------------------------------- #
#                  INDIVIDUAL PROVIDER IMPLEMENTATIONS                        #
# --------------------------------------------------------------------------- #

class TeleportCityAPI(BaseProviderAPI):
    """City search -> city item -> urban area scores. Keyless."""

    provider_id = ProviderId.GEOCODE
    requires_key = False

    def __init__(self, base_url: str = "https://api.teleport.org/api", **kwargs):
        super().__init__("", **kwargs)
        self.base = base_url.rstrip("/")

    async def fetch(self, params: Mapping[str, Any]) -> CityInfoPayload:
        city = str(params.get("city") or "").strip()
        if not city:
            raise ProviderError(ProviderErrorKind.MALFORMED, "city is required")

        data = await self._request_json("GET", f"{self.base}/cities/", params={"search": city})
        embedded = _require(data, "_embedded")
        matches = embedded.get("city:search-results") if isinstance(embedded, dict) else None
        if not matches:
            raise ProviderError(ProviderErrorKind.NOT_FOUND, f"no city matches '{city}'")

        try:
            item_href = matches[0]["_links"]["city:item"]["href"]
        except (KeyError, TypeError, IndexError) as exc:
            raise ProviderError(ProviderErrorKind.MALFORMED, "search result without city link") from exc

        item = await self._request_json("GET", item_href)
        if not isinstance(item, dict):
            raise ProviderError(ProviderErrorKind.MALFORMED, "city item is not an object")
        latlon = (item.get("location") or {}).get("latlon") or {}
        links = item.get("_links") or {}

        categories: Tuple[CategoryScore, ...] = ()
        ua_link = links.get("city:urban_area")
        if ua_link and ua_link.get("href"):
            categories = await self._urban_area_scores(ua_link["href"])

        return CityInfoPayload(
            name=item.get("name") or city,
            display_name=item.get("full_name") or matches[0].get("matching_full_name") or city,
            latitude=latlon.get("latitude"),
            longitude=latlon.get("longitude"),
            categories=categories,
        )

    async def _urban_area_scores(self, ua_href: str) -> Tuple[CategoryScore, ...]:
        ua = await self._request_json("GET", ua_href)
        scores_href = (((ua or {}).get("_links") or {}).get("ua:scores") or {}).get("href")
        if not scores_href:
            scores_href = ua_href.rstrip("/") + "/scores/"
        try:
            scores = await self._request_json("GET", scores_href)
        except ProviderError as exc:
            if exc.kind is not ProviderErrorKind.NOT_FOUND:
                raise
            logger.info("Urban area has no scores", href=scores_href)
            return ()
        if not isinstance(scores, dict):
            raise ProviderError(ProviderErrorKind.MALFORMED, "scores response is not an object")
        out = []
        for cat in scores.get("categories") or []:
            name = cat.get("name")
            score = cat.get("score_out_of_10")
            if not name or not isinstance(score, (int, float)):
                continue
            out.append(CategoryScore(name=name, score=float(score)))
        return tuple(out)


class RadarNeighborhoodsAPI(BaseProviderAPI):
    provider_id = ProviderId.NEIGHBORHOODS
    BASE = "https://api.radar.io/v1/geocode/forward"

    def __init__(self, api_key: str, *, limit: int = 10, **kwargs):
        super().__init__(api_key, **kwargs)
        self.limit = limit

    async def fetch(self, params: Mapping[str, Any]) -> NeighborhoodsPayload:
        self._require_key()
        city = str(params.get("city") or "").strip()
        query = params.get("query") or city
        data = await self._request_json(
            "GET",
            self.BASE,
            params={"query": query, "layers": "neighborhood,city", "limit": self.limit},
            headers={"Authorization": self.api_key},
        )
        addresses = _require(data, "addresses")
        if not isinstance(addresses, list):
            raise ProviderError(ProviderErrorKind.MALFORMED, "'addresses' is not a list")

        places = []
        seen = set()
        for addr in addresses:
            if not isinstance(addr, dict):
                continue
            name = addr.get("neighborhood") or (
                addr.get("formattedAddress") if addr.get("layer") == "neighborhood" else None
            )
            if not name or name.lower() in seen:
                continue
            seen.add(name.lower())
            places.append(Place(name=name, locality=addr.get("city") or city))
        if not places:
            raise ProviderError(ProviderErrorKind.NOT_FOUND, f"no neighborhoods for '{city}'")
        return NeighborhoodsPayload(city=city, places=tuple(places))


class SerperSearchAPI(BaseProviderAPI):
    provider_id = ProviderId.WEB_SEARCH
    BASE = "https://google.serper.dev/search"

    def __init__(self, api_key: str, *, num_results: int = 10, **kwargs):
        super().__init__(api_key, **kwargs)
        self.num_results = num_results

    async def fetch(self, params: Mapping[str, Any]) -> WebSearchPayload:
        self._require_key()
        query = str(params.get("query") or "").strip()
        if not query:
            raise ProviderError(ProviderErrorKind.MALFORMED, "query is required")
        data = await self._request_json(
            "POST",
            self.BASE,
            json_body={"q": query, "num": self.num_results},
            headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
        )
        if not isinstance(data, dict):
            raise ProviderError(ProviderErrorKind.MALFORMED, "search response is not an object")
        hits = []
        for item in data.get("organic") or []:
            url = item.get("link") or ""
            if not url:
                continue
            hits.append(WebHit(title=item.get("title") or "", url=url, snippet=item.get("snippet") or ""))
        return WebSearchPayload(query=query, hits=tuple(hits))


class NewsSearchAPI(BaseProviderAPI):
    provider_id = ProviderId.NEWS
    BASE = "https://newsapi.org/v2/everything"

    def __init__(self, api_key: str, *, page_size: int = 10, **kwargs):
        super().__init__(api_key, **kwargs)
        self.page_size = page_size

    async def fetch(self, params: Mapping[str, Any]) -> NewsPayload:
        self._require_key()
        query = str(params.get("query") or "").strip()
        if not query:
            raise ProviderError(ProviderErrorKind.MALFORMED, "query is required")
        data = await self._request_json(
            "GET",
            self.BASE,
            params={
                "q": query,
                "sortBy": "publishedAt",
                "language": "en",
                "pageSize": self.page_size,
            },
            headers={"X-Api-Key": self.api_key},
        )
        if not isinstance(data, dict):
            raise ProviderError(ProviderErrorKind.MALFORMED, "news response is not an object")
        if data.get("status") == "error":
            code = str(data.get("code") or "")
            if code == "rateLimited":
                raise ProviderError(ProviderErrorKind.RATE_LIMITED, data.get("message") or code)
            if code.startswith("apiKey"):
                raise ProviderError(ProviderErrorKind.CONFIG_MISSING, data.get("message") or code)
            raise ProviderError(ProviderErrorKind.MALFORMED, data.get("message") or code or "error status")

        articles = []
        for a in data.get("articles") or []:
            url = a.get("url") or ""
            if not url:
                continue
            articles.append(
                NewsArticle(
                    title=a.get("title") or "",
                    url=url,
                    source=((a.get("source") or {}).get("name") or ""),
                    published_at=a.get("publishedAt"),
                    description=a.get("description") or "",
                )
            )
        return NewsPayload(
            query=query,
            articles=tuple(articles),
            total_results=int(data.get("totalResults") or len(articles)),
        )


class JinaSummarizerAPI(BaseProviderAPI):
    provider_id = ProviderId.SUMMARIZE
    BASE = "https://reader.jina.ai/api/summarize"

    async def fetch(self, params: Mapping[str, Any]) -> SummaryPayload:
        self._require_key()
        url = str(params.get("url") or "").strip()
        if not url:
            raise ProviderError(ProviderErrorKind.MALFORMED, "url is required")
        data = await self._request_json(
            "POST",
            self.BASE,
            json_body={"url": url},
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )
        if not isinstance(data, dict):
            raise ProviderError(ProviderErrorKind.MALFORMED, "summary response is not an object")
        key_points = data.get("key_points") or []
        return SummaryPayload(
            url=url,
            text=str(data.get("summary") or "").strip(),
            key_points=tuple(str(p) for p in key_points if p),
        )


SummaryAttempt = Callable[[WebHit], Awaitable[ProviderResult[SummaryPayload]]]
SearchCall = Callable[[str], Awaitable[ProviderResult[WebSearchPayload]]]


async def first_successful_summary(
    candidates: Iterable[WebHit], attempt: SummaryAttempt
) -> Optional[Tuple[WebHit, SummaryPayload]]:
    """Try candidates in order; stop at the first non-empty summary."""
    for hit in candidates:
        result = await attempt(hit)
        if result.ok and result.payload is not None and result.payload.text:
            return hit, result.payload
        logger.debug(
            "Summary candidate skipped",
            url=hit.url,
            error_kind=result.error_kind.value if result.error_kind else "empty",
        )
    return None


class TopicResearchAPI(BaseProviderAPI):
    """Web search for a topic query, then summarize the first usable hit.

    ``research`` takes the search and summary steps as callables so the
    orchestrator can send them through the ``webSearch`` and ``summarize``
    quotas; ``fetch`` runs the same steps against the adapters directly.
    The summary loop only gets what is left of the budget after the search.
    When that runs out the payload keeps its hits and has no summary.
    """

    requires_key = False

    def __init__(
        self,
        topic: ProviderId,
        search: SerperSearchAPI,
        summarizer: JinaSummarizerAPI,
        *,
        executor: Optional[RetryExecutor] = None,
        summary_policy: Optional[RetryPolicy] = None,
        candidates: int = 3,
        budget_sec: float = 15.0,
    ):
        super().__init__("", session=search.session)
        self.provider_id = topic
        self.search = search
        self.summarizer = summarizer
        self.executor = executor or RetryExecutor()
        # One attempt per URL; falling through to the next candidate is the retry
        self.summary_policy = summary_policy or RetryPolicy(max_retries=0, timeout_ms=5000)
        self.candidates = max(1, candidates)
        self.budget_sec = budget_sec

    async def close(self) -> None:
        return None

    async def _search(self, query: str) -> ProviderResult[WebSearchPayload]:
        try:
            return ProviderResult.success(await self.search.fetch({"query": query}))
        except ProviderError as exc:
            return ProviderResult.failure(exc.kind, exc.detail, retry_after=exc.retry_after, attempts=1)

    async def _summarize(self, hit: WebHit) -> ProviderResult[SummaryPayload]:
        return await self.executor.execute(
            lambda: self.summarizer.fetch({"url": hit.url}),
            self.summary_policy,
            provider=ProviderId.SUMMARIZE.value,
        )

    async def research(
        self,
        query: str,
        search: SearchCall,
        summarize: SummaryAttempt,
        budget_sec: Optional[float] = None,
    ) -> ProviderResult[TopicPayload]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        budget = self.budget_sec if budget_sec is None else budget_sec

        found = await search(query)
        if not found.ok:
            return ProviderResult.failure(
                found.error_kind,
                found.detail,
                retry_after=found.retry_after,
                attempts=found.attempts,
            )
        hits = found.payload.hits
        if not hits:
            return ProviderResult.failure(
                ProviderErrorKind.NOT_FOUND,
                f"no search results for '{query}'",
                attempts=found.attempts,
            )

        picked = None
        remaining = budget - (loop.time() - started)
        if remaining > 0:
            try:
                picked = await asyncio.wait_for(
                    first_successful_summary(hits[: self.candidates], summarize),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                logger.info(
                    "Summary budget exhausted, keeping search hits",
                    topic=self.provider_id.value,
                    budget_sec=budget,
                )
        else:
            logger.info("No time left to summarize", topic=self.provider_id.value)

        summary, title = (picked[1], picked[0].title) if picked else (None, "")
        return ProviderResult.success(
            TopicPayload(
                topic=self.provider_id.value,
                query=query,
                hits=hits,
                summary=summary,
                summary_title=title,
            ),
            attempts=found.attempts,
        )

    async def fetch(self, params: Mapping[str, Any]) -> TopicPayload:
        query = str(params.get("query") or "").strip()
        result = await self.research(query, self._search, self._summarize)
        if not result.ok:
            raise ProviderError(result.error_kind, result.detail, retry_after=result.retry_after)
        return result.payload


def create_provider_registry(
    settings: Settings,
    *,
    executor: Optional[RetryExecutor] = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> Dict[ProviderId, BaseProviderAPI]:
    """Build one adapter per provider id from settings."""
    search = SerperSearchAPI(
        settings.credential(ProviderId.WEB_SEARCH.value),
        num_results=settings.search_results_limit,
        session=session,
    )
    summarizer = JinaSummarizerAPI(settings.credential(ProviderId.SUMMARIZE.value), session=session)
    registry: Dict[ProviderId, BaseProviderAPI] = {
        ProviderId.GEOCODE: TeleportCityAPI(settings.teleport_base_url, session=session),
        ProviderId.NEIGHBORHOODS: RadarNeighborhoodsAPI(
            settings.credential(ProviderId.NEIGHBORHOODS.value),
            limit=settings.neighborhood_limit,
            session=session,
        ),
        ProviderId.WEB_SEARCH: search,
        ProviderId.NEWS: NewsSearchAPI(
            settings.credential(ProviderId.NEWS.value),
            page_size=settings.news_page_size,
            session=session,
        ),
        ProviderId.SUMMARIZE: summarizer,
    }
    for topic in (
        ProviderId.HOUSING_MARKET,
        ProviderId.JOB_OPPORTUNITIES,
        ProviderId.SCHOOL_DISTRICTS,
        ProviderId.TRANSPORTATION,
        ProviderId.COST_OF_LIVING,
    ):
        registry[topic] = TopicResearchAPI(
            topic,
            search,
            summarizer,
            executor=executor,
            candidates=settings.summary_candidates,
            budget_sec=settings.call_timeout_sec,
        )
    return registry


async def close_registry(registry: Mapping[ProviderId, BaseProviderAPI]) -> None:
    for api in registry.values():
        try:
            await api.close()
        except Exception as e:
            logger.warning("Failed to close provider session", provider=api.provider_id.value, error=str(e))
