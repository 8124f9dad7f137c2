"""
Request-side models: the closed intent vocabulary, extracted preferences and
the immutable ``StructuredRequest`` handed to the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class IntentKind(str, Enum):
    CITY_INFO = "CityInfo"
    CITY_COMPARISON = "CityComparison"
    NEIGHBORHOOD_RECOMMENDATION = "NeighborhoodRecommendation"
    HOUSING_MARKET = "HousingMarket"
    JOB_OPPORTUNITIES = "JobOpportunities"
    SCHOOL_DISTRICTS = "SchoolDistricts"
    TRANSPORTATION = "Transportation"
    COST_OF_LIVING = "CostOfLiving"
    LIFESTYLE_MATCH = "LifestyleMatch"
    RELOCATION_LOGISTICS = "RelocationLogistics"
    GENERAL_ADVICE = "GeneralAdvice"
    OTHER = "Other"

    @classmethod
    def parse(cls, raw: Any) -> "IntentKind":
        """Accept enum values, names or SCREAMING_CASE labels; unknown -> OTHER."""
        if isinstance(raw, IntentKind):
            return raw
        text = str(raw or "").strip()
        compact = text.replace("_", "").replace(" ", "").lower()
        for member in cls:
            if compact in {member.value.lower(), member.name.replace("_", "").lower()}:
                return member
        return cls.OTHER


@dataclass(frozen=True)
class BudgetRange:
    min: Optional[float] = None
    max: Optional[float] = None
    currency: str = "USD"


@dataclass(frozen=True)
class PreferenceSet:
    """Optional attributes; ``None`` always means "unconstrained"."""

    budget: Optional[BudgetRange] = None
    housing_types: Optional[Tuple[str, ...]] = None
    school_quality: Optional[bool] = None
    safety_priority: Optional[bool] = None
    job_industries: Optional[Tuple[str, ...]] = None
    transportation_modes: Optional[Tuple[str, ...]] = None
    lifestyle: Optional[Tuple[str, ...]] = None
    climate: Optional[Tuple[str, ...]] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def merged_over(self, seed: Optional["PreferenceSet"]) -> "PreferenceSet":
        """Fill fields absent here from ``seed`` (e.g. a previous session)."""
        if seed is None:
            return self
        values = {}
        for f in fields(self):
            mine = getattr(self, f.name)
            values[f.name] = mine if mine is not None else getattr(seed, f.name)
        return PreferenceSet(**values)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, BudgetRange):
                out[f.name] = {"min": value.min, "max": value.max, "currency": value.currency}
            elif isinstance(value, tuple):
                out[f.name] = list(value)
            else:
                out[f.name] = value
        return out

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "PreferenceSet":
        if not data:
            return cls()
        budget = data.get("budget")
        return cls(
            budget=BudgetRange(
                min=budget.get("min"),
                max=budget.get("max"),
                currency=budget.get("currency") or "USD",
            ) if isinstance(budget, Mapping) else None,
            housing_types=_tuple_or_none(data.get("housing_types")),
            school_quality=data.get("school_quality"),
            safety_priority=data.get("safety_priority"),
            job_industries=_tuple_or_none(data.get("job_industries")),
            transportation_modes=_tuple_or_none(data.get("transportation_modes")),
            lifestyle=_tuple_or_none(data.get("lifestyle")),
            climate=_tuple_or_none(data.get("climate")),
        )


def _tuple_or_none(value: Any) -> Optional[Tuple[str, ...]]:
    if not value:
        return None
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class StructuredRequest:
    intent: IntentKind
    cities: Tuple[str, ...] = ()
    preferences: PreferenceSet = field(default_factory=PreferenceSet)
    raw_query: str = ""
    keywords: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "cities", normalize_cities(self.cities))


MAX_CITIES = 2


def normalize_cities(cities: Any) -> Tuple[str, ...]:
    """Strip, dedupe case-insensitively (first spelling wins), cap at two."""
    seen = set()
    out = []
    for raw in cities or ():
        name = " ".join(str(raw).split())
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        out.append(name)
        if len(out) == MAX_CITIES:
            break
    return tuple(out)
