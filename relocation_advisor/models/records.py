"""
Fused, provider-independent output shapes.

Records are immutable once built: mapping fields are stored as read-only
``MappingProxyType`` views over a private copy.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

TIE = "tie"


def _freeze(obj: Any, name: str) -> None:
    object.__setattr__(obj, name, MappingProxyType(dict(getattr(obj, name) or {})))


def _plain(value: Any) -> Any:
    # asdict() deep-copies leaves and cannot copy a mappingproxy
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class Summary:
    text: str
    highlights: Tuple[str, ...] = ()
    sources: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Neighborhood:
    name: str
    locality: str = ""


@dataclass(frozen=True)
class NewsItem:
    title: str
    url: str
    source: str = ""
    published_at: Optional[str] = None


@dataclass(frozen=True)
class WebResult:
    title: str
    url: str
    snippet: str = ""


@dataclass(frozen=True)
class CityRecord:
    name: str
    display_name: str
    # Sparse: a missing category is unknown, not zero
    scores: Mapping[str, float] = field(default_factory=dict)
    housing: Optional[Summary] = None
    jobs: Optional[Summary] = None
    schools: Optional[Summary] = None
    transportation: Optional[Summary] = None
    cost_of_living: Optional[Summary] = None
    neighborhoods: Tuple[Neighborhood, ...] = ()
    news: Tuple[NewsItem, ...] = ()
    web_results: Tuple[WebResult, ...] = ()
    coordinates: Optional[Tuple[float, float]] = None
    sources_ok: Tuple[str, ...] = ()
    sources_failed: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _freeze(self, "scores")
        _freeze(self, "sources_failed")

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)


@dataclass(frozen=True)
class CategoryComparison:
    winner: str
    magnitude: float


@dataclass(frozen=True)
class ComparisonResult:
    winner: str
    per_category: Mapping[str, CategoryComparison] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _freeze(self, "per_category")


@dataclass(frozen=True)
class CityFailure:
    """Why no record could be built for a requested city.

    ``reason`` is ``"no_data"`` when every provider reported NotFound and
    ``"provider_outage"`` otherwise.
    """

    city: str
    reason: str
    error_kinds: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _freeze(self, "error_kinds")


@dataclass(frozen=True)
class FusionResult:
    records: Tuple[CityRecord, ...] = ()
    comparison: Optional[ComparisonResult] = None
    general_results: Tuple[WebResult, ...] = ()
    unavailable: Mapping[str, CityFailure] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _freeze(self, "unavailable")

    def to_dict(self) -> Dict[str, Any]:
        return _plain(self)
