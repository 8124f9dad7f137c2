from .providers import (
    RETRYABLE_KINDS,
    TOPIC_PROVIDERS,
    CategoryScore,
    CityInfoPayload,
    NeighborhoodsPayload,
    NewsArticle,
    NewsPayload,
    PerCityProviderResults,
    Place,
    ProviderCallKey,
    ProviderError,
    ProviderErrorKind,
    ProviderId,
    ProviderResult,
    RawPayload,
    SummaryPayload,
    TopicPayload,
    WebHit,
    WebSearchPayload,
    canonicalize_params,
    payload_from_dict,
    payload_to_dict,
)
from .records import (
    TIE,
    CategoryComparison,
    CityFailure,
    CityRecord,
    ComparisonResult,
    FusionResult,
    Neighborhood,
    NewsItem,
    Summary,
    WebResult,
)
from .request import BudgetRange, IntentKind, PreferenceSet, StructuredRequest

__all__ = [
    "RETRYABLE_KINDS",
    "TOPIC_PROVIDERS",
    "TIE",
    "BudgetRange",
    "CategoryComparison",
    "CategoryScore",
    "CityFailure",
    "CityInfoPayload",
    "CityRecord",
    "ComparisonResult",
    "FusionResult",
    "IntentKind",
    "Neighborhood",
    "NeighborhoodsPayload",
    "NewsArticle",
    "NewsItem",
    "NewsPayload",
    "PerCityProviderResults",
    "Place",
    "PreferenceSet",
    "ProviderCallKey",
    "ProviderError",
    "ProviderErrorKind",
    "ProviderId",
    "ProviderResult",
    "RawPayload",
    "StructuredRequest",
    "Summary",
    "SummaryPayload",
    "TopicPayload",
    "WebHit",
    "WebResult",
    "WebSearchPayload",
    "canonicalize_params",
    "payload_from_dict",
    "payload_to_dict",
]
