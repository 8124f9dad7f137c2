import asyncio

import aiohttp
import pytest

from relocation_advisor.models import (
    ProviderError,
    ProviderErrorKind,
    ProviderId,
    ProviderResult,
    SummaryPayload,
    WebHit,
)
from relocation_advisor.services.provider_apis import (
    JinaSummarizerAPI,
    NewsSearchAPI,
    RadarNeighborhoodsAPI,
    SerperSearchAPI,
    TeleportCityAPI,
    TopicResearchAPI,
    classify_http_error,
    first_successful_summary,
)
from relocation_advisor.utils.retry import RetryExecutor


class DummyResponse:
    def __init__(self, status=200, headers=None, json_data=None, text_data="", raise_json=False):
        self.status = status
        self._headers = {k.lower(): v for k, v in (headers or {}).items()}
        self._json_data = json_data
        self._text = text_data
        self._raise_json = raise_json

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    @property
    def headers(self):
        return self._headers

    async def json(self, content_type=None):
        if self._raise_json:
            raise ValueError("Invalid JSON")
        return self._json_data

    async def text(self):
        return self._text


class DummySession:
    """Routes by URL; each URL serves its responses in order (last one repeats)."""

    def __init__(self, routes):
        self._routes = routes
        self._served = {}
        self.calls = []
        self.closed = False

    def _next(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        route = self._routes[url]
        if isinstance(route, Exception):
            raise route
        idx = self._served.get(url, 0)
        self._served[url] = idx + 1
        return route[min(idx, len(route) - 1)]

    def get(self, url, params=None, headers=None):
        return self._next("GET", url, params=params, headers=headers)

    def post(self, url, json=None, headers=None):
        return self._next("POST", url, json=json, headers=headers)


SERPER = SerperSearchAPI.BASE
JINA = JinaSummarizerAPI.BASE


def organic(*links):
    return {
        "organic": [
            {"title": f"Title {i}", "link": link, "snippet": f"Snippet {i}"}
            for i, link in enumerate(links)
        ]
    }


@pytest.mark.parametrize(
    "status, body, kind",
    [
        (429, "", ProviderErrorKind.RATE_LIMITED),
        (403, "Monthly quota exceeded", ProviderErrorKind.RATE_LIMITED),
        (401, "", ProviderErrorKind.CONFIG_MISSING),
        (403, "forbidden", ProviderErrorKind.CONFIG_MISSING),
        (404, "", ProviderErrorKind.NOT_FOUND),
        (400, "bad param", ProviderErrorKind.MALFORMED),
        (500, "", ProviderErrorKind.SERVER_ERROR),
        (503, "", ProviderErrorKind.SERVER_ERROR),
    ],
)
def test_http_status_mapping(status, body, kind):
    assert classify_http_error(status, body).kind is kind


@pytest.mark.asyncio
async def test_missing_key_fails_before_any_network_call():
    session = DummySession({})
    api = SerperSearchAPI("", session=session)
    with pytest.raises(ProviderError) as exc:
        await api.fetch({"query": "austin"})
    assert exc.value.kind is ProviderErrorKind.CONFIG_MISSING
    assert "SERPER_API_KEY" in exc.value.detail
    assert session.calls == []


@pytest.mark.asyncio
async def test_serper_parses_organic_results():
    session = DummySession({SERPER: [DummyResponse(json_data=organic("https://a", "https://b"))]})
    api = SerperSearchAPI("key", session=session)
    payload = await api.fetch({"query": "Austin city information"})

    assert [h.url for h in payload.hits] == ["https://a", "https://b"]
    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert kwargs["headers"]["X-API-KEY"] == "key"
    assert kwargs["json"]["q"] == "Austin city information"


@pytest.mark.asyncio
async def test_rate_limit_response_carries_retry_after():
    session = DummySession({SERPER: [DummyResponse(status=429, headers={"Retry-After": "7"})]})
    api = SerperSearchAPI("key", session=session)
    with pytest.raises(ProviderError) as exc:
        await api.fetch({"query": "q"})
    assert exc.value.kind is ProviderErrorKind.RATE_LIMITED
    assert exc.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_non_json_body_is_malformed():
    session = DummySession({SERPER: [DummyResponse(text_data="<html>", raise_json=True)]})
    api = SerperSearchAPI("key", session=session)
    with pytest.raises(ProviderError) as exc:
        await api.fetch({"query": "q"})
    assert exc.value.kind is ProviderErrorKind.MALFORMED


@pytest.mark.asyncio
async def test_network_error_is_server_error():
    session = DummySession({SERPER: aiohttp.ClientConnectionError("connection reset")})
    api = SerperSearchAPI("key", session=session)
    with pytest.raises(ProviderError) as exc:
        await api.fetch({"query": "q"})
    assert exc.value.kind is ProviderErrorKind.SERVER_ERROR
    assert exc.value.retryable


@pytest.mark.asyncio
async def test_news_error_status_in_body():
    session = DummySession(
        {
            NewsSearchAPI.BASE: [
                DummyResponse(json_data={"status": "error", "code": "rateLimited", "message": "slow down"})
            ]
        }
    )
    api = NewsSearchAPI("key", session=session)
    with pytest.raises(ProviderError) as exc:
        await api.fetch({"query": "Austin housing"})
    assert exc.value.kind is ProviderErrorKind.RATE_LIMITED


@pytest.mark.asyncio
async def test_news_articles_parsed():
    body = {
        "status": "ok",
        "totalResults": 1,
        "articles": [
            {
                "title": "Austin rents fall",
                "url": "https://news/1",
                "publishedAt": "2024-05-01T00:00:00Z",
                "source": {"name": "Local Paper"},
            }
        ],
    }
    session = DummySession({NewsSearchAPI.BASE: [DummyResponse(json_data=body)]})
    payload = await NewsSearchAPI("key", session=session).fetch({"query": "Austin"})
    assert payload.articles[0].source == "Local Paper"
    assert payload.total_results == 1
    assert session.calls[0][2]["headers"] == {"X-Api-Key": "key"}


@pytest.mark.asyncio
async def test_radar_neighborhoods_and_empty_result():
    body = {
        "addresses": [
            {"layer": "neighborhood", "neighborhood": "Hyde Park", "city": "Austin"},
            {"layer": "neighborhood", "neighborhood": "hyde park", "city": "Austin"},
            {"layer": "city", "formattedAddress": "Austin, TX"},
        ]
    }
    session = DummySession({RadarNeighborhoodsAPI.BASE: [DummyResponse(json_data=body)]})
    payload = await RadarNeighborhoodsAPI("rk", session=session).fetch({"city": "Austin"})
    assert [p.name for p in payload.places] == ["Hyde Park"]
    assert session.calls[0][2]["headers"] == {"Authorization": "rk"}

    empty = DummySession({RadarNeighborhoodsAPI.BASE: [DummyResponse(json_data={"addresses": []})]})
    with pytest.raises(ProviderError) as exc:
        await RadarNeighborhoodsAPI("rk", session=empty).fetch({"city": "Nowhere"})
    assert exc.value.kind is ProviderErrorKind.NOT_FOUND


TELEPORT = "https://teleport.test/api"
CITY_ITEM = TELEPORT + "/cities/geonameid:4671654/"
UA = TELEPORT + "/urban_areas/slug:austin/"
UA_SCORES = UA + "scores/"


@pytest.mark.asyncio
async def test_teleport_follows_links_to_scores():
    session = DummySession(
        {
            TELEPORT + "/cities/": [
                DummyResponse(
                    json_data={
                        "_embedded": {
                            "city:search-results": [
                                {"_links": {"city:item": {"href": CITY_ITEM}}, "matching_full_name": "Austin, Texas"}
                            ]
                        }
                    }
                )
            ],
            CITY_ITEM: [
                DummyResponse(
                    json_data={
                        "name": "Austin",
                        "full_name": "Austin, Texas, United States",
                        "location": {"latlon": {"latitude": 30.27, "longitude": -97.74}},
                        "_links": {"city:urban_area": {"href": UA}},
                    }
                )
            ],
            UA: [DummyResponse(json_data={"_links": {"ua:scores": {"href": UA_SCORES}}})],
            UA_SCORES: [
                DummyResponse(
                    json_data={
                        "categories": [
                            {"name": "Housing", "score_out_of_10": 4.2},
                            {"name": "Safety", "score_out_of_10": 5.9},
                            {"name": "Broken", "score_out_of_10": None},
                        ]
                    }
                )
            ],
        }
    )
    api = TeleportCityAPI(TELEPORT, session=session)
    payload = await api.fetch({"city": "Austin"})

    assert payload.display_name == "Austin, Texas, United States"
    assert (payload.latitude, payload.longitude) == (30.27, -97.74)
    assert [(c.name, c.score) for c in payload.categories] == [("Housing", 4.2), ("Safety", 5.9)]
    assert session.calls[0][2]["params"] == {"search": "Austin"}


@pytest.mark.asyncio
async def test_teleport_no_match_is_not_found():
    session = DummySession(
        {TELEPORT + "/cities/": [DummyResponse(json_data={"_embedded": {"city:search-results": []}})]}
    )
    with pytest.raises(ProviderError) as exc:
        await TeleportCityAPI(TELEPORT, session=session).fetch({"city": "Atlantis"})
    assert exc.value.kind is ProviderErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_first_successful_summary_stops_at_first_success():
    hits = [WebHit("a", "https://a"), WebHit("b", "https://b"), WebHit("c", "https://c")]
    tried = []

    async def attempt(hit):
        tried.append(hit.url)
        if hit.url == "https://a":
            return ProviderResult.failure(ProviderErrorKind.SERVER_ERROR, "boom")
        return ProviderResult.success(SummaryPayload(url=hit.url, text=f"summary of {hit.title}"))

    picked = await first_successful_summary(hits, attempt)
    assert picked[0].url == "https://b"
    assert picked[1].text == "summary of b"
    assert tried == ["https://a", "https://b"]


@pytest.mark.asyncio
async def test_first_successful_summary_skips_empty_text_and_may_find_nothing():
    async def attempt(hit):
        return ProviderResult.success(SummaryPayload(url=hit.url, text=""))

    assert await first_successful_summary([WebHit("a", "https://a")], attempt) is None


def topic_api(session, fake_sleep, summarizer_key="jk"):
    search = SerperSearchAPI("sk", session=session)
    summarizer = JinaSummarizerAPI(summarizer_key, session=session)
    return TopicResearchAPI(
        ProviderId.HOUSING_MARKET,
        search,
        summarizer,
        executor=RetryExecutor(sleep=fake_sleep),
        candidates=3,
    )


@pytest.mark.asyncio
async def test_topic_research_falls_through_failed_summaries(fake_sleep):
    session = DummySession(
        {
            SERPER: [DummyResponse(json_data=organic("https://a", "https://b", "https://c", "https://d"))],
            JINA: [
                DummyResponse(status=500),
                DummyResponse(json_data={"summary": "Prices are flat.", "key_points": ["flat"]}),
            ],
        }
    )
    payload = await topic_api(session, fake_sleep).fetch({"query": "Austin housing market trends latest data"})

    assert payload.topic == "housingMarket"
    assert payload.summary.url == "https://b"
    assert payload.summary.key_points == ("flat",)
    assert payload.summary_title == "Title 1"
    summarized = [kw["json"]["url"] for m, url, kw in session.calls if url == JINA]
    assert summarized == ["https://a", "https://b"]


@pytest.mark.asyncio
async def test_topic_research_without_summarizer_key_keeps_hits(fake_sleep):
    session = DummySession({SERPER: [DummyResponse(json_data=organic("https://a"))]})
    payload = await topic_api(session, fake_sleep, summarizer_key="").fetch({"query": "q"})
    assert payload.summary is None
    assert [h.url for h in payload.hits] == ["https://a"]


@pytest.mark.asyncio
async def test_topic_research_with_no_hits_is_not_found(fake_sleep):
    session = DummySession({SERPER: [DummyResponse(json_data={"organic": []})]})
    with pytest.raises(ProviderError) as exc:
        await topic_api(session, fake_sleep).fetch({"query": "q"})
    assert exc.value.kind is ProviderErrorKind.NOT_FOUND


class HangingSummarizer(JinaSummarizerAPI):
    async def fetch(self, params):
        await asyncio.sleep(3600)


@pytest.mark.asyncio
async def test_topic_research_keeps_hits_when_summaries_hang(fake_sleep):
    session = DummySession({SERPER: [DummyResponse(json_data=organic("https://a", "https://b"))]})
    api = TopicResearchAPI(
        ProviderId.HOUSING_MARKET,
        SerperSearchAPI("sk", session=session),
        HangingSummarizer("jk", session=session),
        executor=RetryExecutor(sleep=fake_sleep),
        budget_sec=0.05,
    )

    payload = await asyncio.wait_for(api.fetch({"query": "Austin housing"}), timeout=2)

    assert payload.summary is None
    assert [h.url for h in payload.hits] == ["https://a", "https://b"]
    assert [url for m, url, kw in session.calls] == [SERPER]
