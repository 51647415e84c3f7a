# WORKFLOW: Tests for the formula source selector strategy chain.
# Test scenarios:
# 1. Manual overrides (country/version preference, type fallback, extra charge suppression)
# 2. Standard entry fields (general, non-preferential, adjusted, other special program)
# 3. Pattern inference and inferred base formulas
# 4. Knowledge base resolution with a fake resolver
# 5. Historical snapshot reconstruction and the cutoff date
# 6. NotFound when every source is exhausted

from datetime import date

import pytest

from core.exceptions import ExternalLookupFailure, NotFound
from services.formula_sources import (
    build_variable_objects, create_formula_source_selector, infer_base_formula, should_attempt_pattern_parse,
    to_comparable_rate,
)
from services.formula_types import FormulaType


class FakeNoteResolver:
    """Records calls and returns a fixed answer."""

    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    async def resolve_note_reference(self, hts_number, rate_text, column, year=None):
        self.calls.append((hts_number, rate_text, column, year))
        if self.error:
            raise self.error
        return self.answer


@pytest.mark.asyncio
async def test_general_formula_from_entry(db_session, add_entry):
    add_entry("0101.21.0010", rate_formula="value * 0.05", general_rate="5%")

    resolution = await create_formula_source_selector(db_session).get_rate("0101.21.0010", "CN")

    assert resolution.formula == "value * 0.05"
    assert resolution.source == "general"
    assert resolution.confidence == 0.9
    assert resolution.formula_type == FormulaType.GENERAL
    assert resolution.variables == [
        {"name": "value", "type": "number", "description": "Declared value of goods in USD"}
    ]


@pytest.mark.asyncio
async def test_manual_override_wins(db_session, add_entry, add_override):
    add_entry("0101.21.0010", rate_formula="value * 0.05")
    add_override("0101.21.0010", "value * 0.01 + weight * 2")

    resolution = await create_formula_source_selector(db_session).get_rate("0101.21.0010", "CN")

    assert resolution.formula == "value * 0.01 + weight * 2"
    assert resolution.source == "manual"
    assert resolution.confidence == 1.0
    assert [v["name"] for v in resolution.variables] == ["value", "weight"]
    assert resolution.suppress_extra_charges is False


@pytest.mark.asyncio
async def test_manual_override_matches_undotted_code(db_session, add_entry, add_override):
    add_entry("0101.21.0010", rate_formula="value * 0.05")
    add_override("0101.21.0010", "value * 0.01")

    resolution = await create_formula_source_selector(db_session).get_rate("0101210010", "CN")

    assert resolution.source == "manual"


@pytest.mark.asyncio
async def test_manual_override_prefers_exact_country(db_session, add_entry, add_override):
    add_entry("0101.21.0010", rate_formula="value * 0.05")
    add_override("0101.21.0010", "value * 0.01", country_code="ALL")
    add_override("0101.21.0010", "value * 0.02", country_code="CN")

    selector = create_formula_source_selector(db_session)

    assert (await selector.get_rate("0101.21.0010", "CN")).formula == "value * 0.02"
    assert (await selector.get_rate("0101.21.0010", "MX")).formula == "value * 0.01"


@pytest.mark.asyncio
async def test_manual_override_version_preference(db_session, add_entry, add_override):
    add_entry("0101.21.0010", rate_formula="value * 0.05")
    add_override("0101.21.0010", "value * 0.03", update_version="2024", carryover=True)
    add_override("0101.21.0010", "value * 0.04", update_version="2025", carryover=False)
    add_override("0101.21.0010", "value * 0.09", update_version="2023", carryover=False)

    resolution = await create_formula_source_selector(db_session).get_rate("0101.21.0010", "CN", version="2025")

    assert resolution.formula == "value * 0.04"


@pytest.mark.asyncio
async def test_inactive_or_stale_overrides_ignored(db_session, add_entry, add_override):
    add_entry("0101.21.0010", rate_formula="value * 0.05")
    add_override("0101.21.0010", "value * 0.01", active=False)
    add_override("0101.21.0010", "value * 0.02", update_version="2023", carryover=False)

    resolution = await create_formula_source_selector(db_session).get_rate("0101.21.0010", "CN", version="2025")

    assert resolution.source == "general"


@pytest.mark.asyncio
async def test_override_type_fallback_for_non_preferential(db_session, add_entry, add_override):
    add_entry("0101.21.0010", rate_formula="value * 0.05", other_rate_formula="value * 0.2")
    add_override("0101.21.0010", "value * 0.07", formula_type="GENERAL", override_extra_tax=True)

    resolution = await create_formula_source_selector(db_session).get_rate("0101.21.0010", "CU")

    assert resolution.formula == "value * 0.07"
    assert resolution.formula_type == FormulaType.GENERAL
    assert resolution.suppress_extra_charges is True


@pytest.mark.asyncio
async def test_non_preferential_country_uses_other_rate(db_session, add_entry):
    add_entry("0101.21.0010", rate_formula="value * 0.05", other_rate_formula="value * 0.2")

    resolution = await create_formula_source_selector(db_session).get_rate("0101.21.0010", "RU")

    assert resolution.formula == "value * 0.2"
    assert resolution.source == "other"
    assert resolution.formula_type == FormulaType.OTHER


@pytest.mark.asyncio
async def test_entry_non_preferential_list_replaces_default(db_session, add_entry):
    add_entry(
        "0101.21.0010",
        rate_formula="value * 0.05",
        other_rate_formula="value * 0.2",
        non_ntr_applicable_countries=["CN"],
    )
    selector = create_formula_source_selector(db_session)

    assert (await selector.get_rate("0101.21.0010", "RU")).source == "general"
    assert (await selector.get_rate("0101.21.0010", "CN")).source == "other"


@pytest.mark.asyncio
async def test_adjusted_formula_requires_selected_heading(db_session, add_entry):
    add_entry(
        "0101.21.0010",
        rate_formula="value * 0.05",
        adjusted_formula="value * 0.15",
        chapter99_links=["9903.01.25"],
    )
    selector = create_formula_source_selector(db_session)

    adjusted = await selector.get_rate("0101.21.0010", "CN", selected_headings=["99030125"])
    general = await selector.get_rate("0101.21.0010", "CN")

    assert adjusted.formula == "value * 0.15"
    assert adjusted.source == "adjusted"
    assert adjusted.confidence == 0.95
    assert adjusted.formula_type == FormulaType.ADJUSTED
    assert general.formula == "value * 0.05"


@pytest.mark.asyncio
async def test_adjusted_formula_respects_country_list(db_session, add_entry):
    add_entry(
        "0101.21.0010",
        rate_formula="value * 0.05",
        adjusted_formula="value * 0.15",
        chapter99_links=["9903.01.25"],
        chapter99_applicable_countries=["CN"],
    )

    resolution = await create_formula_source_selector(db_session).get_rate(
        "0101.21.0010", "VN", selected_headings=["9903.01.25"]
    )

    assert resolution.source == "general"


@pytest.mark.asyncio
async def test_other_special_program_formula(db_session, add_entry):
    add_entry(
        "0101.21.0010",
        rate_formula="value * 0.05",
        other_rate_formula="value * 0.2",
        other_chapter99_detail={"formula": "value * 0.35", "countries": ["RU"]},
    )

    resolution = await create_formula_source_selector(db_session).get_rate("0101.21.0010", "RU")

    assert resolution.formula == "value * 0.35"
    assert resolution.formula_type == FormulaType.OTHER_CHAPTER99
    assert resolution.confidence == 0.95


@pytest.mark.asyncio
async def test_pattern_inference_from_rate_text(db_session, add_entry):
    add_entry("0101.21.0010", general_rate="6.8%")
    add_entry("0101.21.0020", entry_metadata={"stagedNormalized": {"generalRate": "2.8¢/kg"}})
    selector = create_formula_source_selector(db_session)

    general = await selector.get_rate("0101.21.0010", "CN")
    staged = await selector.get_rate("0101.21.0020", "CN")

    assert general.formula == "value * 0.068"
    assert general.confidence == 0.82
    assert staged.formula == "weight * 0.028"
    assert staged.confidence == 0.78


@pytest.mark.asyncio
async def test_inferred_base_formula(db_session, add_entry):
    add_entry(
        "0101.21.0010",
        adjusted_formula="(value * 0.05) + (value * 0.25)",
        entry_metadata={"chapter99Synthesis": {"adjustmentRate": 0.25}},
    )

    resolution = await create_formula_source_selector(db_session).get_rate("0101.21.0010", "CN")

    assert resolution.formula == "value * 0.05"
    assert resolution.confidence == 0.75


@pytest.mark.asyncio
async def test_knowledge_base_resolution(db_session, add_entry):
    add_entry("0101.21.0010", general_rate="See note 2(a) to this chapter")
    resolver = FakeNoteResolver(answer={"formula": "value * 0.03", "confidence": None})

    selector = create_formula_source_selector(db_session, note_resolver=resolver)
    resolution = await selector.get_rate("0101.21.0010", "CN")

    assert resolution.formula == "value * 0.03"
    assert resolution.source == "knowledgebase"
    assert resolution.confidence == 0.6
    assert resolver.calls == [("0101.21.0010", "See note 2(a) to this chapter", "general", 2025)]


@pytest.mark.asyncio
@pytest.mark.parametrize("reported,expected", [(0.3, 0.6), (0.7, 0.7)])
async def test_knowledge_base_confidence_floor(db_session, add_entry, reported, expected):
    add_entry("0101.21.0010", general_rate="See note 2(a) to this chapter")
    resolver = FakeNoteResolver(answer={"formula": "value * 0.03", "confidence": reported})

    selector = create_formula_source_selector(db_session, note_resolver=resolver)
    resolution = await selector.get_rate("0101.21.0010", "CN")

    assert resolution.confidence == expected


@pytest.mark.asyncio
async def test_knowledge_base_failure_falls_through(db_session, add_entry):
    add_entry("0101.21.0010", general_rate="See note 2(a) to this chapter")
    resolver = FakeNoteResolver(error=ExternalLookupFailure("offline"))

    selector = create_formula_source_selector(db_session, note_resolver=resolver)

    with pytest.raises(NotFound):
        await selector.get_rate("0101.21.0010", "CN")
    assert len(resolver.calls) == 1


@pytest.mark.asyncio
async def test_historical_snapshot_components(db_session, add_entry, add_snapshot):
    add_entry("0101.21.0010", description="No rate columns populated")
    add_snapshot(
        "01012100",
        mfn_ad_val_rate=0.05,
        mfn_specific_rate=1.2,
        mfn_other_rate=9999,
        quantity_1_code="KG",
    )

    resolution = await create_formula_source_selector(db_session).get_rate(
        "0101.21.0010", "CN", entry_date=date(2025, 6, 1)
    )

    assert resolution.formula == "value * 0.05 + weight * 1.2"
    assert resolution.confidence == 0.98


@pytest.mark.asyncio
async def test_historical_snapshot_text_fallback(db_session, add_entry, add_snapshot):
    add_entry("0101.21.0010", description="No rate columns populated")
    add_snapshot("01012100", mfn_text_rate="2.8¢/kg", quantity_1_code="KG")

    resolution = await create_formula_source_selector(db_session).get_rate(
        "0101.21.0010", "CN", entry_date=date(2025, 6, 1)
    )

    assert resolution.formula == "weight * 0.028"
    assert resolution.confidence == 0.92


@pytest.mark.asyncio
async def test_historical_snapshot_not_used_after_cutoff(db_session, add_entry, add_snapshot):
    add_entry("0101.21.0010", description="No rate columns populated")
    add_snapshot("01012100", mfn_ad_val_rate=0.05)

    selector = create_formula_source_selector(db_session)

    with pytest.raises(NotFound):
        await selector.get_rate("0101.21.0010", "CN", entry_date=date(2026, 1, 15))
    with pytest.raises(NotFound):
        await selector.get_rate("0101.21.0010", "CN")


@pytest.mark.asyncio
async def test_special_chapter_history_runs_before_entry_fields(db_session, add_entry, add_snapshot):
    add_entry("9903.01.25", rate_formula="value * 0.10")
    add_snapshot("99030125", mfn_ad_val_rate=0.2)

    selector = create_formula_source_selector(db_session)

    historical = await selector.get_rate("9903.01.25", "CN", entry_date=date(2025, 3, 1))
    current = await selector.get_rate("9903.01.25", "CN")

    assert historical.formula == "value * 0.2"
    assert current.formula == "value * 0.10"


@pytest.mark.asyncio
async def test_unknown_code_raises_not_found(db_session):
    with pytest.raises(NotFound):
        await create_formula_source_selector(db_session).get_rate("8471.30.0100", "CN")


def test_to_comparable_rate():
    assert to_comparable_rate("0.05") == 0.05
    assert to_comparable_rate(9999) is None
    assert to_comparable_rate(None) is None
    assert to_comparable_rate("n/a") is None
    assert to_comparable_rate(True) is None


def test_should_attempt_pattern_parse():
    assert should_attempt_pattern_parse("6.8%") is True
    assert should_attempt_pattern_parse("The rate applicable to the article") is False
    assert should_attempt_pattern_parse("   ") is False


def test_infer_base_formula_requires_matching_rate(add_entry):
    mismatch = add_entry(
        "0101.21.0010",
        adjusted_formula="(value * 0.05) + (value * 0.25)",
        entry_metadata={"chapter99Synthesis": {"adjustmentRate": 0.1}},
    )
    assert infer_base_formula(mismatch) is None


def test_build_variable_objects_dedupes():
    objects = build_variable_objects(["weight", "value", "weight"])
    assert [obj["name"] for obj in objects] == ["weight", "value"]
    assert build_variable_objects([]) is None
