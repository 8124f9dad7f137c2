"""
Fusion: per-city provider results -> normalized ``CityRecord``s.

Each payload kind has one extractor that contributes a partial set of record
fields. Failed results contribute nothing but are listed in the record's
``sources_failed``. The engine is pure: the same request and results always
produce an equal :class:`FusionResult`.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog

from ..models import (
    TIE,
    CategoryComparison,
    CityFailure,
    CityInfoPayload,
    CityRecord,
    ComparisonResult,
    FusionResult,
    Neighborhood,
    NeighborhoodsPayload,
    NewsItem,
    NewsPayload,
    PerCityProviderResults,
    ProviderErrorKind,
    ProviderId,
    StructuredRequest,
    Summary,
    TopicPayload,
    WebResult,
    WebSearchPayload,
)

logger = structlog.get_logger(__name__)

CATEGORY_MAP: Dict[str, str] = {
    "Housing": "housing",
    "Cost of Living": "costOfLiving",
    "Safety": "safety",
    "Education": "education",
    "Economy": "economy",
    "Environmental Quality": "environment",
    "Healthcare": "healthcare",
    "Business Freedom": "business",
    "Outdoors": "outdoors",
    "Commute": "commute",
    "Leisure & Culture": "culture",
    "Tolerance": "tolerance",
    "Internet Access": "internet",
    "Startups": "startups",
    "Travel Connectivity": "travel",
    "Venture Capital": "ventureCapital",
    "Taxation": "taxation",
}

# Topic provider -> CityRecord field it fills
TOPIC_FIELDS: Dict[str, str] = {
    ProviderId.HOUSING_MARKET.value: "housing",
    ProviderId.JOB_OPPORTUNITIES.value: "jobs",
    ProviderId.SCHOOL_DISTRICTS.value: "schools",
    ProviderId.TRANSPORTATION.value: "transportation",
    ProviderId.COST_OF_LIVING.value: "cost_of_living",
}

SNIPPET_FALLBACK_HITS = 3


def canonical_category(name: str) -> str:
    mapped = CATEGORY_MAP.get(name.strip())
    if mapped:
        return mapped
    return "".join(name.lower().split())


def normalize_score(value: float) -> float:
    return round(min(10.0, max(0.0, float(value))), 1)


# ────────────────────────────────────────────────────────────
#  Per-payload extractors
# ────────────────────────────────────────────────────────────

def _from_city_info(payload: CityInfoPayload) -> Dict[str, Any]:
    scores: Dict[str, float] = {}
    for cat in payload.categories:
        scores[canonical_category(cat.name)] = normalize_score(cat.score)
    fields: Dict[str, Any] = {"scores": scores}
    if payload.display_name:
        fields["display_name"] = payload.display_name
    if payload.latitude is not None and payload.longitude is not None:
        fields["coordinates"] = (float(payload.latitude), float(payload.longitude))
    return fields


def _from_neighborhoods(payload: NeighborhoodsPayload) -> Dict[str, Any]:
    return {
        "neighborhoods": tuple(Neighborhood(name=p.name, locality=p.locality) for p in payload.places)
    }


def _from_web_search(payload: WebSearchPayload) -> Dict[str, Any]:
    return {
        "web_results": tuple(WebResult(title=h.title, url=h.url, snippet=h.snippet) for h in payload.hits)
    }


def _from_news(payload: NewsPayload) -> Dict[str, Any]:
    return {
        "news": tuple(
            NewsItem(title=a.title, url=a.url, source=a.source, published_at=a.published_at)
            for a in payload.articles
        )
    }


def topic_summary(payload: TopicPayload) -> Optional[Summary]:
    """Prefer the page summary; otherwise stitch the top search snippets."""
    if payload.summary is not None and payload.summary.text:
        return Summary(
            text=payload.summary.text,
            highlights=payload.summary.key_points,
            sources=(payload.summary.url,),
        )
    hits = [h for h in payload.hits if h.snippet][:SNIPPET_FALLBACK_HITS]
    if not hits:
        return None
    return Summary(
        text=" ".join(h.snippet for h in hits),
        highlights=tuple(h.title for h in hits if h.title),
        sources=tuple(h.url for h in hits),
    )


def _from_topic(payload: TopicPayload) -> Dict[str, Any]:
    field_name = TOPIC_FIELDS.get(payload.topic)
    summary = topic_summary(payload)
    if field_name is None or summary is None:
        return {}
    return {field_name: summary}


EXTRACTORS: Dict[type, Callable[[Any], Dict[str, Any]]] = {
    CityInfoPayload: _from_city_info,
    NeighborhoodsPayload: _from_neighborhoods,
    WebSearchPayload: _from_web_search,
    NewsPayload: _from_news,
    TopicPayload: _from_topic,
}


def compare(a: CityRecord, b: CityRecord) -> ComparisonResult:
    """Head-to-head over categories both records score."""
    per_category: Dict[str, CategoryComparison] = {}
    wins = {a.name: 0, b.name: 0}
    for category in sorted(set(a.scores) | set(b.scores)):
        if category not in a.scores or category not in b.scores:
            continue
        sa, sb = a.scores[category], b.scores[category]
        if sa > sb:
            winner = a.name
        elif sb > sa:
            winner = b.name
        else:
            winner = TIE
        if winner != TIE:
            wins[winner] += 1
        per_category[category] = CategoryComparison(winner=winner, magnitude=round(abs(sa - sb), 1))

    compared = len(per_category)
    overall = TIE
    for name, count in wins.items():
        if count * 2 > compared:
            overall = name
    return ComparisonResult(winner=overall, per_category=per_category)


class FusionEngine:
    def __init__(self, extractors: Optional[Mapping[type, Callable[[Any], Dict[str, Any]]]] = None):
        self.extractors = dict(extractors or EXTRACTORS)

    def build_record(self, city: str, results: PerCityProviderResults) -> CityRecord:
        fields: Dict[str, Any] = {"name": city, "display_name": city}
        scores: Dict[str, float] = {}
        # Fixed provider order keeps the output independent of arrival order
        for pid in sorted(results.results, key=lambda p: p.value):
            res = results.results[pid]
            if not res.ok or res.payload is None:
                continue
            extractor = self.extractors.get(type(res.payload))
            if extractor is None:
                logger.debug("No extractor for payload", provider=pid.value, kind=getattr(res.payload, "kind", None))
                continue
            partial = extractor(res.payload)
            scores.update(partial.pop("scores", {}))
            fields.update(partial)
        fields["scores"] = scores
        fields["sources_ok"] = tuple(sorted(p.value for p in results.succeeded))
        fields["sources_failed"] = {
            pid.value: res.error_kind.value
            for pid, res in sorted(results.failed.items(), key=lambda kv: kv[0].value)
        }
        return CityRecord(**fields)

    @staticmethod
    def _failure(city: str, results: Optional[PerCityProviderResults]) -> CityFailure:
        kinds = {}
        if results is not None:
            kinds = {pid.value: res.error_kind.value for pid, res in results.failed.items()}
        all_not_found = bool(kinds) and all(
            k == ProviderErrorKind.NOT_FOUND.value for k in kinds.values()
        )
        return CityFailure(
            city=city,
            reason="no_data" if all_not_found else "provider_outage",
            error_kinds=dict(sorted(kinds.items())),
        )

    def fuse(
        self,
        request: StructuredRequest,
        results: Sequence[PerCityProviderResults],
    ) -> FusionResult:
        by_city: Dict[str, PerCityProviderResults] = {}
        general: List[WebResult] = []
        for slot in results:
            if slot.city is None:
                for res in slot.results.values():
                    if res.ok and isinstance(res.payload, WebSearchPayload):
                        general.extend(_from_web_search(res.payload)["web_results"])
                continue
            by_city.setdefault(slot.city.lower(), slot)

        records: List[CityRecord] = []
        unavailable: Dict[str, CityFailure] = {}
        for city in request.cities:
            slot = by_city.get(city.lower())
            if slot is None or slot.status == "failed":
                unavailable[city] = self._failure(city, slot)
                logger.warning(
                    "No data for city",
                    city=city,
                    reason=unavailable[city].reason,
                )
                continue
            records.append(self.build_record(city, slot))

        comparison = compare(records[0], records[1]) if len(records) == 2 else None
        return FusionResult(
            records=tuple(records),
            comparison=comparison,
            general_results=tuple(general),
            unavailable=unavailable,
        )

