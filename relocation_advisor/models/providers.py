"""
Provider-side types: identifiers, the shared error vocabulary, tagged raw
payloads and the ``ProviderResult`` envelope the orchestrator works with.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Generic, Mapping, Optional, Tuple, TypeVar, Union


class ProviderId(str, Enum):
    """Every external data source the orchestrator can dispatch to."""

    GEOCODE = "geocode"
    NEIGHBORHOODS = "neighborhoods"
    WEB_SEARCH = "webSearch"
    NEWS = "news"
    SUMMARIZE = "summarize"
    HOUSING_MARKET = "housingMarket"
    JOB_OPPORTUNITIES = "jobOpportunities"
    SCHOOL_DISTRICTS = "schoolDistricts"
    TRANSPORTATION = "transportation"
    COST_OF_LIVING = "costOfLiving"


TOPIC_PROVIDERS: Tuple[ProviderId, ...] = (
    ProviderId.HOUSING_MARKET,
    ProviderId.JOB_OPPORTUNITIES,
    ProviderId.SCHOOL_DISTRICTS,
    ProviderId.TRANSPORTATION,
    ProviderId.COST_OF_LIVING,
)


class ProviderErrorKind(str, Enum):
    CONFIG_MISSING = "ConfigMissing"
    RATE_LIMITED = "RateLimited"
    TIMEOUT = "Timeout"
    NOT_FOUND = "NotFound"
    SERVER_ERROR = "ServerError"
    MALFORMED = "Malformed"
    UNKNOWN = "Unknown"


RETRYABLE_KINDS = frozenset({ProviderErrorKind.TIMEOUT, ProviderErrorKind.SERVER_ERROR})


class ProviderError(Exception):
    """Raised by adapters; converted to ``ProviderResult`` by the executor."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        detail: str = "",
        *,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


# --------------------------------------------------------------------------- #
#                              RAW PAYLOADS                                   #
# --------------------------------------------------------------------------- #

@dataclass(frozen=True)
class CategoryScore:
    name: str
    score: float


@dataclass(frozen=True)
class CityInfoPayload:
    kind: ClassVar[str] = "city_info"

    name: str
    display_name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    categories: Tuple[CategoryScore, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CityInfoPayload":
        return cls(
            name=data["name"],
            display_name=data.get("display_name") or data["name"],
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            categories=tuple(CategoryScore(**c) for c in data.get("categories") or ()),
        )


@dataclass(frozen=True)
class Place:
    name: str
    locality: str = ""


@dataclass(frozen=True)
class NeighborhoodsPayload:
    kind: ClassVar[str] = "neighborhoods"

    city: str
    places: Tuple[Place, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NeighborhoodsPayload":
        return cls(
            city=data["city"],
            places=tuple(Place(**p) for p in data.get("places") or ()),
        )


@dataclass(frozen=True)
class WebHit:
    title: str
    url: str
    snippet: str = ""


@dataclass(frozen=True)
class WebSearchPayload:
    kind: ClassVar[str] = "web_search"

    query: str
    hits: Tuple[WebHit, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WebSearchPayload":
        return cls(
            query=data["query"],
            hits=tuple(WebHit(**h) for h in data.get("hits") or ()),
        )


@dataclass(frozen=True)
class NewsArticle:
    title: str
    url: str
    source: str = ""
    published_at: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class NewsPayload:
    kind: ClassVar[str] = "news"

    query: str
    articles: Tuple[NewsArticle, ...] = ()
    total_results: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NewsPayload":
        return cls(
            query=data["query"],
            articles=tuple(NewsArticle(**a) for a in data.get("articles") or ()),
            total_results=int(data.get("total_results") or 0),
        )


@dataclass(frozen=True)
class SummaryPayload:
    kind: ClassVar[str] = "summary"

    url: str
    text: str
    key_points: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SummaryPayload":
        return cls(
            url=data["url"],
            text=data.get("text") or "",
            key_points=tuple(data.get("key_points") or ()),
        )


@dataclass(frozen=True)
class TopicPayload:
    """Search hits for one topic plus the first usable page summary."""

    kind: ClassVar[str] = "topic"

    topic: str
    query: str
    hits: Tuple[WebHit, ...] = ()
    summary: Optional[SummaryPayload] = None
    summary_title: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TopicPayload":
        summary = data.get("summary")
        return cls(
            topic=data["topic"],
            query=data["query"],
            hits=tuple(WebHit(**h) for h in data.get("hits") or ()),
            summary=SummaryPayload.from_dict(summary) if summary else None,
            summary_title=data.get("summary_title") or "",
        )


RawPayload = Union[
    CityInfoPayload,
    NeighborhoodsPayload,
    WebSearchPayload,
    NewsPayload,
    SummaryPayload,
    TopicPayload,
]

_PAYLOAD_TYPES: Dict[str, Any] = {
    cls.kind: cls
    for cls in (
        CityInfoPayload,
        NeighborhoodsPayload,
        WebSearchPayload,
        NewsPayload,
        SummaryPayload,
        TopicPayload,
    )
}


def payload_to_dict(payload: RawPayload) -> Dict[str, Any]:
    data = asdict(payload)
    data["kind"] = payload.kind
    return data


def payload_from_dict(data: Mapping[str, Any]) -> RawPayload:
    kind = data.get("kind")
    cls = _PAYLOAD_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"unknown payload kind: {kind!r}")
    return cls.from_dict(data)


# --------------------------------------------------------------------------- #
#                          RESULT ENVELOPE / KEYS                             #
# --------------------------------------------------------------------------- #

P = TypeVar("P")


@dataclass(frozen=True)
class ProviderResult(Generic[P]):
    payload: Optional[P] = None
    error_kind: Optional[ProviderErrorKind] = None
    detail: str = ""
    retry_after: Optional[float] = None
    attempts: int = 0
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def success(
        cls, payload: P, *, attempts: int = 1, from_cache: bool = False
    ) -> "ProviderResult[P]":
        return cls(payload=payload, attempts=attempts, from_cache=from_cache)

    @classmethod
    def failure(
        cls,
        kind: ProviderErrorKind,
        detail: str = "",
        *,
        retry_after: Optional[float] = None,
        attempts: int = 0,
    ) -> "ProviderResult[P]":
        return cls(error_kind=kind, detail=detail, retry_after=retry_after, attempts=attempts)


def canonicalize_params(params: Mapping[str, Any]) -> str:
    """Sorted-key compact JSON so equivalent parameter sets collide."""
    return json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class ProviderCallKey:
    provider: str
    canonical_params: str

    @classmethod
    def build(cls, provider: Union[ProviderId, str], params: Mapping[str, Any]) -> "ProviderCallKey":
        pid = provider.value if isinstance(provider, ProviderId) else str(provider)
        return cls(provider=pid, canonical_params=canonicalize_params(params))

    @property
    def cache_key(self) -> str:
        key_string = f"{self.provider}:{self.canonical_params}"
        if len(key_string) > 200:
            key_hash = hashlib.md5(key_string.encode()).hexdigest()
            return f"{self.provider}:hash:{key_hash}"
        return key_string


@dataclass
class PerCityProviderResults:
    """Every (provider, city) slot the orchestrator dispatched for one city.

    ``city`` is ``None`` for the city-less general search slot.
    """

    city: Optional[str]
    results: Dict[ProviderId, ProviderResult] = field(default_factory=dict)

    @property
    def succeeded(self) -> Tuple[ProviderId, ...]:
        return tuple(pid for pid, res in self.results.items() if res.ok)

    @property
    def failed(self) -> Dict[ProviderId, ProviderResult]:
        return {pid: res for pid, res in self.results.items() if not res.ok}

    @property
    def status(self) -> str:
        if not self.results or not self.succeeded:
            return "failed"
        return "ok" if not self.failed else "partial"
