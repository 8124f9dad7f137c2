import pytest

from relocation_advisor.models import BudgetRange, IntentKind, PreferenceSet
from relocation_advisor.services.intent_extractor import (
    IntentExtractionError,
    LLMIntentExtractor,
    RuleBasedIntentExtractor,
    extract_json_object,
)


@pytest.fixture
def rules():
    return RuleBasedIntentExtractor()


@pytest.mark.asyncio
async def test_comparison_of_two_cities(rules):
    req = await rules.extract("Compare Austin vs Denver for a young family")
    assert req.intent is IntentKind.CITY_COMPARISON
    assert req.cities == ("Austin", "Denver")
    assert req.keywords == ("compare", "austin", "denver", "young", "family")


@pytest.mark.asyncio
async def test_housing_query_with_budget_range(rules):
    req = await rules.extract("What is the housing market like in austin? Budget $2,500 to $3k")
    assert req.intent is IntentKind.HOUSING_MARKET
    assert req.cities == ("Austin",)
    assert req.preferences.budget == BudgetRange(min=2500.0, max=3000.0)


@pytest.mark.asyncio
async def test_school_flag_is_only_set_when_mentioned(rules):
    with_schools = await rules.extract("Good schools in Denver?")
    assert with_schools.intent is IntentKind.SCHOOL_DISTRICTS
    assert with_schools.preferences.school_quality is True

    without = await rules.extract("Tell me about Denver")
    assert without.intent is IntentKind.CITY_INFO
    assert without.preferences.school_quality is None
    assert without.preferences.is_empty()


@pytest.mark.asyncio
async def test_city_hints_come_first_and_cap_at_two(rules):
    req = await rules.extract("Compare Austin and Denver", city_hints=["seattle"])
    assert req.cities == ("Seattle", "Austin")


@pytest.mark.asyncio
async def test_no_city_advice_question(rules):
    req = await rules.extract("Where should I live?")
    assert req.cities == ()
    assert req.intent is IntentKind.GENERAL_ADVICE


@pytest.mark.asyncio
async def test_seed_preferences_fill_gaps(rules):
    seed = PreferenceSet(budget=BudgetRange(max=2000.0), safety_priority=True)
    req = await rules.extract("Apartments in Austin near downtown", seed=seed)
    assert req.preferences.budget == BudgetRange(max=2000.0)
    assert req.preferences.safety_priority is True
    assert req.preferences.housing_types == ("apartment",)
    assert req.preferences.lifestyle == ("downtown",)


@pytest.mark.asyncio
async def test_empty_query_is_rejected(rules):
    with pytest.raises(IntentExtractionError):
        await rules.extract("   ")


def test_intent_labels_parse_leniently():
    assert IntentKind.parse("CITY_COMPARISON") is IntentKind.CITY_COMPARISON
    assert IntentKind.parse("HousingMarket") is IntentKind.HOUSING_MARKET
    assert IntentKind.parse("something else") is IntentKind.OTHER


def test_extract_json_object_handles_fences_and_noise():
    assert extract_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json_object('Sure! {"a": [1, 2]} Hope that helps.') == {"a": [1, 2]}
    assert extract_json_object("no json here") is None
    assert extract_json_object("{not: valid}") is None


def reply_with(text):
    prompts = []

    async def complete(prompt):
        prompts.append(prompt)
        return text

    complete.prompts = prompts
    return complete


@pytest.mark.asyncio
async def test_llm_reply_is_validated_and_mapped():
    complete = reply_with(
        """```json
        {
          "intent": "HOUSING_MARKET",
          "locations": {"cities": ["austin"]},
          "preferences": {
            "budget": {"min": null, "max": 450000, "currency": "USD"},
            "housingType": ["condo"],
            "schoolQuality": false,
            "safetyPriority": true
          },
          "extractedKeywords": ["Condo", "Austin"]
        }
        ```"""
    )
    req = await LLMIntentExtractor(complete).extract("Condos in Austin under 450k?")

    assert "Condos in Austin under 450k?" in complete.prompts[0]
    assert req.intent is IntentKind.HOUSING_MARKET
    assert req.cities == ("Austin",)
    assert req.preferences.budget == BudgetRange(max=450000.0)
    assert req.preferences.housing_types == ("condo",)
    assert req.preferences.school_quality is None
    assert req.preferences.safety_priority is True
    assert req.keywords == ("condo", "austin")


@pytest.mark.asyncio
async def test_llm_comparison_with_one_city_is_downgraded():
    complete = reply_with('{"intent": "CITY_COMPARISON", "locations": {"cities": ["Denver"]}}')
    req = await LLMIntentExtractor(complete).extract("compare denver")
    assert req.intent is IntentKind.CITY_INFO
    assert req.cities == ("Denver",)


@pytest.mark.asyncio
async def test_unusable_llm_reply_falls_back_to_rules():
    req = await LLMIntentExtractor(reply_with("I cannot help with that")).extract(
        "Compare Austin vs Denver"
    )
    assert req.intent is IntentKind.CITY_COMPARISON
    assert req.cities == ("Austin", "Denver")


@pytest.mark.asyncio
async def test_llm_schema_violation_falls_back_to_rules():
    req = await LLMIntentExtractor(reply_with('{"locations": {"cities": "Austin"}}')).extract(
        "Jobs in Denver"
    )
    assert req.intent is IntentKind.JOB_OPPORTUNITIES
    assert req.cities == ("Denver",)


@pytest.mark.asyncio
async def test_llm_call_failure_falls_back_to_rules():
    async def broken(_prompt):
        raise RuntimeError("model unavailable")

    req = await LLMIntentExtractor(broken).extract("Tell me about Seattle")
    assert req.intent is IntentKind.CITY_INFO


@pytest.mark.asyncio
async def test_llm_extractor_rejects_empty_query():
    with pytest.raises(IntentExtractionError):
        await LLMIntentExtractor(reply_with("{}")).extract("")
