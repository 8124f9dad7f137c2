"""
Intent extraction: free text -> ``StructuredRequest``.

Two interchangeable extractors share one async contract:

* :class:`RuleBasedIntentExtractor` - regex and keyword rules, no I/O.
* :class:`LLMIntentExtractor` - asks an injected language-model callable for
  JSON, validates it with pydantic and falls back to the rules on any
  failure.
"""

import json
import re
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..models import BudgetRange, IntentKind, PreferenceSet, StructuredRequest

logger = structlog.get_logger(__name__)


class IntentExtractionError(ValueError):
    """Raised when a query cannot be interpreted at all (empty input)."""


KNOWN_CITIES: Tuple[str, ...] = (
    "New York", "Los Angeles", "Chicago", "Houston", "Phoenix", "Philadelphia",
    "San Antonio", "San Diego", "Dallas", "San Jose", "Austin", "Jacksonville",
    "Fort Worth", "Columbus", "Indianapolis", "Charlotte", "San Francisco",
    "Seattle", "Denver", "Washington DC", "Boston", "El Paso", "Nashville",
    "Detroit", "Oklahoma City", "Portland", "Las Vegas", "Memphis", "Louisville",
    "Baltimore", "Milwaukee", "Albuquerque", "Tucson", "Fresno", "Sacramento",
    "Kansas City", "Mesa", "Atlanta", "Omaha", "Colorado Springs", "Raleigh",
    "Miami", "Long Beach", "Virginia Beach", "Oakland", "Minneapolis", "Tampa",
    "Tulsa", "Arlington", "Honolulu", "Wichita", "Anaheim", "Cleveland",
    "New Orleans", "Scottsdale", "Tokyo", "London", "Paris", "Berlin", "Madrid",
    "Rome", "Amsterdam", "Dublin", "Toronto", "Vancouver", "Sydney", "Montreal",
    "Shanghai", "Beijing", "Singapore", "Dubai", "Mumbai", "Delhi", "Hong Kong",
    "Seoul", "Bangkok", "Kuala Lumpur", "Jakarta", "Manila", "Hanoi", "Yangon",
    "Cairo", "Lagos", "Nairobi", "Cape Town", "Casablanca", "Accra", "Auckland",
    "Wellington", "Brisbane", "Perth", "Adelaide", "Oslo", "Copenhagen",
    "Stockholm", "Helsinki", "Reykjavik", "Brussels", "Vienna", "Munich",
    "Frankfurt", "Zurich", "Geneva", "Milan", "Barcelona", "Lisbon", "Porto",
    "Athens", "Istanbul", "Moscow", "St Petersburg", "Prague", "Warsaw",
    "Budapest", "Bucharest", "Belgrade", "Sofia", "Riga", "Tallinn", "Vilnius",
)

# Longest names first so "Kansas City" wins over a shorter overlap
_CITY_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(c) for c in sorted(KNOWN_CITIES, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)
_CANONICAL = {c.lower(): c for c in KNOWN_CITIES}

HOUSING_TYPES = (
    "apartment", "condo", "house", "townhouse", "duplex",
    "studio", "loft", "single-family", "multi-family", "rental",
)
INDUSTRIES = (
    "technology", "healthcare", "finance", "education",
    "retail", "manufacturing", "government", "hospitality",
    "construction", "entertainment", "media", "legal",
)
TRANSPORT_MODES = (
    "car", "public transit", "bus", "train", "subway",
    "bike", "walking", "short commute",
)
LIFESTYLE_KEYWORDS = (
    "urban", "suburban", "rural", "downtown", "nightlife",
    "restaurants", "culture", "outdoor", "family-friendly",
    "quiet", "diverse", "walkable", "parks", "beach", "mountain",
)
CLIMATE_KEYWORDS = (
    "warm", "hot", "cold", "mild", "sunny", "rainy",
    "snow", "humid", "dry", "moderate", "tropical", "desert",
)

STOPWORDS = frozenset("""
a an the this that these those i you he she it we they
am is are was were be been being
have has had do does did will would shall should
can could may might must to of in on at by for
with about against between into through during before after
above below from up down and but or so than if as
""".split())

_SCHOOL_RE = re.compile(r"\b(school|education|college|university|academic)s?\b", re.I)
_SAFETY_RE = re.compile(r"\b(safe|safety|crime|secure)\b", re.I)
_JOB_CONTEXT_RE = re.compile(r"\b(job|career|work|employment|industry|profession)s?\b", re.I)
_TRANSPORT_CONTEXT_RE = re.compile(
    r"\b(commute|transport|transit|car|bus|train|subway|bike|walking)s?\b", re.I
)
_MONEY_RE = re.compile(r"\$\s?(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d{1,2}))?\s*(k\b)?", re.I)

# Evaluated in order; the first match wins
_INTENT_RULES: Tuple[Tuple[IntentKind, "re.Pattern[str]"], ...] = (
    (IntentKind.NEIGHBORHOOD_RECOMMENDATION, re.compile(r"neighbou?rhood|\barea|district|part of town", re.I)),
    (IntentKind.HOUSING_MARKET, re.compile(r"housing|\bhome|apartment|\brent|\bbuy|\bprice|real estate|propert", re.I)),
    (IntentKind.JOB_OPPORTUNITIES, re.compile(r"\bjob|\bwork|career|employ|\bhir(e|ing)|salar|\bwage|industr", re.I)),
    (IntentKind.SCHOOL_DISTRICTS, re.compile(r"school|education|college|universit|academic|student", re.I)),
    (IntentKind.TRANSPORTATION, re.compile(r"transport|transit|commut|traffic|\bdriv|\bbus|\btrain|subway|\bbike|\bwalk", re.I)),
    (IntentKind.COST_OF_LIVING, re.compile(r"cost of living|expens|afford|cheap|budget|\bprice", re.I)),
    (IntentKind.LIFESTYLE_MATCH, re.compile(r"lifestyle|culture|entertainment|\bfood|restaurant|outdoor|activit|hobb", re.I)),
    (IntentKind.RELOCATION_LOGISTICS, re.compile(r"\bmov(e|ing)|relocat|logistic|process|paperwork|\bvisa", re.I)),
)
_COMPARISON_RE = re.compile(r"compar(e|ing|ison)|\bvs\.?(\s|$)|versus", re.I)
_ADVICE_RE = re.compile(r"advice|suggest|recommend|should i|\bwhere\b|\bwhat\b", re.I)


def _terms_in(text: str, terms: Iterable[str]) -> List[str]:
    found = []
    for term in terms:
        if re.search(r"\b" + re.escape(term) + r"s?\b", text, re.I):
            found.append(term)
    return found


class IntentExtractor:
    async def extract(
        self,
        query: str,
        city_hints: Optional[Sequence[str]] = None,
        seed: Optional[PreferenceSet] = None,
    ) -> StructuredRequest:
        raise NotImplementedError


class RuleBasedIntentExtractor(IntentExtractor):
    """Deterministic keyword/regex extractor."""

    @staticmethod
    def extract_cities(text: str) -> List[str]:
        """Known cities in order of appearance, canonical casing, no repeats."""
        seen = set()
        out = []
        for m in _CITY_PATTERN.finditer(text or ""):
            key = m.group(1).lower()
            if key in seen:
                continue
            seen.add(key)
            out.append(_CANONICAL.get(key, m.group(1)))
        return out

    @staticmethod
    def extract_budget(text: str) -> Optional[BudgetRange]:
        amounts = []
        for m in _MONEY_RE.finditer(text or ""):
            value = float(m.group(1).replace(",", ""))
            if m.group(2):
                value += float("0." + m.group(2))
            if m.group(3):
                value *= 1000
            amounts.append(value)
        if not amounts:
            return None
        amounts.sort()
        if len(amounts) == 1:
            return BudgetRange(max=amounts[0], currency="USD")
        return BudgetRange(min=amounts[0], max=amounts[-1], currency="USD")

    @classmethod
    def extract_preferences(cls, text: str) -> PreferenceSet:
        housing = _terms_in(text, HOUSING_TYPES)
        industries = _terms_in(text, INDUSTRIES) if _JOB_CONTEXT_RE.search(text) else []
        modes = _terms_in(text, TRANSPORT_MODES) if _TRANSPORT_CONTEXT_RE.search(text) else []
        lifestyle = _terms_in(text, LIFESTYLE_KEYWORDS)
        climate = _terms_in(text, CLIMATE_KEYWORDS)
        return PreferenceSet(
            budget=cls.extract_budget(text),
            housing_types=tuple(housing) or None,
            school_quality=True if _SCHOOL_RE.search(text) else None,
            safety_priority=True if _SAFETY_RE.search(text) else None,
            job_industries=tuple(industries) or None,
            transportation_modes=tuple(modes) or None,
            lifestyle=tuple(lifestyle) or None,
            climate=tuple(climate) or None,
        )

    @staticmethod
    def determine_intent(text: str, cities: Sequence[str]) -> IntentKind:
        if len(cities) > 1 and _COMPARISON_RE.search(text):
            return IntentKind.CITY_COMPARISON
        for intent, pattern in _INTENT_RULES:
            if pattern.search(text):
                return intent
        if cities:
            return IntentKind.CITY_INFO
        if _ADVICE_RE.search(text):
            return IntentKind.GENERAL_ADVICE
        return IntentKind.OTHER

    @staticmethod
    def extract_keywords(text: str) -> Tuple[str, ...]:
        cleaned = re.sub(r"[.,/#!$%^&*;:{}=\-_`~()?'\"]", "", (text or "").lower())
        return tuple(w for w in cleaned.split() if len(w) > 2 and w not in STOPWORDS)

    def build(
        self,
        query: str,
        city_hints: Optional[Sequence[str]] = None,
        seed: Optional[PreferenceSet] = None,
    ) -> StructuredRequest:
        if not query or not query.strip():
            raise IntentExtractionError("query is empty")
        cities = list(city_hints or ()) + self.extract_cities(query)
        request = StructuredRequest(
            intent=IntentKind.OTHER,
            cities=tuple(_canonical_city(c) for c in cities),
            preferences=self.extract_preferences(query).merged_over(seed),
            raw_query=query,
            keywords=self.extract_keywords(query),
        )
        intent = self.determine_intent(query, request.cities)
        return _with_intent(request, intent)

    async def extract(
        self,
        query: str,
        city_hints: Optional[Sequence[str]] = None,
        seed: Optional[PreferenceSet] = None,
    ) -> StructuredRequest:
        request = self.build(query, city_hints, seed)
        logger.info(
            "Intent determined",
            extractor="rules",
            intent=request.intent.value,
            cities=list(request.cities),
        )
        return request


def _canonical_city(name: str) -> str:
    cleaned = " ".join(str(name).split())
    return _CANONICAL.get(cleaned.lower(), cleaned)


def _with_intent(request: StructuredRequest, intent: IntentKind) -> StructuredRequest:
    # A comparison needs two cities no matter who labelled it
    if intent is IntentKind.CITY_COMPARISON and len(request.cities) < 2:
        intent = IntentKind.CITY_INFO if request.cities else IntentKind.GENERAL_ADVICE
    return StructuredRequest(
        intent=intent,
        cities=request.cities,
        preferences=request.preferences,
        raw_query=request.raw_query,
        keywords=request.keywords,
    )


# ────────────────────────────────────────────────────────────
#  Language-model extractor
# ────────────────────────────────────────────────────────────

class _LLMBudget(BaseModel):
    model_config = ConfigDict(extra="ignore")

    min: Optional[float] = None
    max: Optional[float] = None
    currency: Optional[str] = "USD"


class _LLMPreferences(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    budget: Optional[_LLMBudget] = None
    housing_types: Optional[List[str]] = Field(default=None, alias="housingType")
    school_quality: Optional[bool] = Field(default=None, alias="schoolQuality")
    safety_priority: Optional[bool] = Field(default=None, alias="safetyPriority")
    job_industries: Optional[List[str]] = Field(default=None, alias="jobIndustry")
    transportation_modes: Optional[List[str]] = Field(default=None, alias="transportationNeeds")
    lifestyle: Optional[List[str]] = Field(default=None, alias="lifestylePreferences")
    climate: Optional[List[str]] = None


class _LLMLocations(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cities: List[str] = Field(default_factory=list)


class _LLMIntent(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    intent: str
    locations: _LLMLocations = Field(default_factory=_LLMLocations)
    preferences: _LLMPreferences = Field(default_factory=_LLMPreferences)
    keywords: List[str] = Field(default_factory=list, alias="extractedKeywords")

    def to_preferences(self) -> PreferenceSet:
        p = self.preferences
        budget = None
        if p.budget and (p.budget.min is not None or p.budget.max is not None):
            budget = BudgetRange(min=p.budget.min, max=p.budget.max, currency=p.budget.currency or "USD")
        return PreferenceSet(
            budget=budget,
            housing_types=tuple(p.housing_types) if p.housing_types else None,
            # "false" from a model means "not mentioned"
            school_quality=True if p.school_quality else None,
            safety_priority=True if p.safety_priority else None,
            job_industries=tuple(p.job_industries) if p.job_industries else None,
            transportation_modes=tuple(p.transportation_modes) if p.transportation_modes else None,
            lifestyle=tuple(p.lifestyle) if p.lifestyle else None,
            climate=tuple(p.climate) if p.climate else None,
        )


INTENT_PROMPT = """Analyze this relocation query and extract structured information:
"{query}"

Respond with a JSON object containing:
{{
  "intent": <One of: CITY_INFO, CITY_COMPARISON, NEIGHBORHOOD_RECOMMENDATION, HOUSING_MARKET, JOB_OPPORTUNITIES, SCHOOL_DISTRICTS, TRANSPORTATION, COST_OF_LIVING, LIFESTYLE_MATCH, RELOCATION_LOGISTICS, GENERAL_ADVICE, OTHER>,
  "locations": {{"cities": ["city1", "city2"]}},
  "preferences": {{
    "budget": {{"min": null, "max": null, "currency": "USD"}},
    "housingType": [],
    "schoolQuality": true/false,
    "safetyPriority": true/false,
    "jobIndustry": [],
    "transportationNeeds": [],
    "lifestylePreferences": [],
    "climate": []
  }},
  "extractedKeywords": []
}}

Only include non-empty arrays and values. Use null for missing numeric values.
"""

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.S)
_BARE_JSON_RE = re.compile(r"\{.*\}", re.S)

CompletionFn = Callable[[str], Awaitable[str]]


def extract_json_object(text: str) -> Optional[Any]:
    """Pull the first JSON object out of a model reply (fenced or bare)."""
    if not text:
        return None
    fenced = _FENCED_JSON_RE.search(text)
    if fenced:
        candidate = fenced.group(1)
    else:
        bare = _BARE_JSON_RE.search(text)
        if not bare:
            return None
        candidate = bare.group(0)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return None


class LLMIntentExtractor(IntentExtractor):
    def __init__(
        self,
        complete: CompletionFn,
        fallback: Optional[RuleBasedIntentExtractor] = None,
    ):
        self._complete = complete
        self._fallback = fallback or RuleBasedIntentExtractor()

    async def _parse(self, query: str) -> Optional[_LLMIntent]:
        try:
            reply = await self._complete(INTENT_PROMPT.format(query=query))
        except Exception as e:
            logger.warning("Intent model call failed", error=str(e))
            return None
        data = extract_json_object(reply)
        if data is None:
            logger.warning("Intent model reply had no JSON object")
            return None
        try:
            return _LLMIntent.model_validate(data)
        except ValidationError as e:
            logger.warning("Intent model reply failed validation", errors=e.error_count())
            return None

    async def extract(
        self,
        query: str,
        city_hints: Optional[Sequence[str]] = None,
        seed: Optional[PreferenceSet] = None,
    ) -> StructuredRequest:
        if not query or not query.strip():
            raise IntentExtractionError("query is empty")

        parsed = await self._parse(query)
        if parsed is None:
            logger.info("Falling back to rule-based intent parsing")
            return await self._fallback.extract(query, city_hints, seed)

        cities = list(city_hints or ()) + [c for c in parsed.locations.cities if c and c.strip()]
        request = StructuredRequest(
            intent=IntentKind.parse(parsed.intent),
            cities=tuple(_canonical_city(c) for c in cities),
            preferences=parsed.to_preferences().merged_over(seed),
            raw_query=query,
            keywords=tuple(k.lower() for k in parsed.keywords if k) or self._fallback.extract_keywords(query),
        )
        request = _with_intent(request, request.intent)
        logger.info(
            "Intent determined",
            extractor="llm",
            intent=request.intent.value,
            cities=list(request.cities),
        )
        return request
