# WORKFLOW: Formula type decision table and special-program eligibility signals.
# Used by: Formula source selector (manual override lookup order, standard field selection)
# Functions:
# 1. FormulaType - GENERAL, OTHER, ADJUSTED, OTHER_CHAPTER99
# 2. EligibilitySignals - Boolean signals derived from an entry + request
# 3. derive_signals() - Build signals from a tariff entry, country and selected headings
# 4. desired_formula_type() - Decision table: signals -> FormulaType
# 5. manual_lookup_order() - Override lookup order for a desired type
#
# Signal flow: Entry + country + headings -> Signals -> Desired type -> Override lookup order

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from core.config import settings
from db.models import TariffCodeEntry
from services.policy_conditions import normalize_headings


class FormulaType(str, Enum):
    GENERAL = "GENERAL"
    OTHER = "OTHER"
    ADJUSTED = "ADJUSTED"
    OTHER_CHAPTER99 = "OTHER_CHAPTER99"


@dataclass(frozen=True)
class EligibilitySignals:
    is_non_preferential: bool
    reciprocal_only: bool
    has_special_program_signals: bool
    has_selected_heading: bool
    special_program_country_eligible: bool
    other_special_program_applies: bool
    has_adjusted_formula: bool

    @property
    def special_program_eligible(self) -> bool:
        return (
            not self.is_non_preferential
            and not self.reciprocal_only
            and self.has_special_program_signals
            and self.has_selected_heading
            and self.special_program_country_eligible
        )

    @property
    def special_program_applies(self) -> bool:
        return self.special_program_eligible and self.has_adjusted_formula


# (other special program applies, non-preferential, special program eligible) -> type
# None matches either value; first matching row wins.
DESIRED_FORMULA_TYPE_TABLE = (
    ((True, None, None), FormulaType.OTHER_CHAPTER99),
    ((False, True, None), FormulaType.OTHER),
    ((False, False, True), FormulaType.ADJUSTED),
    ((False, False, False), FormulaType.GENERAL),
)

MANUAL_LOOKUP_FALLBACKS = {
    FormulaType.OTHER_CHAPTER99: [FormulaType.OTHER, FormulaType.GENERAL],
    FormulaType.ADJUSTED: [FormulaType.GENERAL],
    FormulaType.OTHER: [FormulaType.GENERAL],
    FormulaType.GENERAL: [],
}


def _upper_list(values: Optional[Iterable[str]]) -> List[str]:
    return [str(value).strip().upper() for value in values or [] if value and str(value).strip()]


def non_preferential_countries(entry: TariffCodeEntry, default: Optional[List[str]] = None) -> List[str]:
    """Countries taxed at the non-preferential ("other") column for this entry."""
    countries = _upper_list(entry.non_ntr_applicable_countries)
    if countries:
        return countries
    return _upper_list(default if default is not None else settings.default_non_preferential_countries)


def derive_signals(
    entry: TariffCodeEntry,
    country: str,
    selected_headings: Iterable[str],
    default_non_preferential: Optional[List[str]] = None,
) -> EligibilitySignals:
    """Derive the eligibility signals for a request against a tariff entry."""
    country = (country or "").upper()
    is_non_preferential = country in non_preferential_countries(entry, default_non_preferential)

    links = normalize_headings(entry.chapter99_links)
    selected = normalize_headings(selected_headings)
    special_countries = _upper_list(entry.chapter99_applicable_countries)
    synthesis = (entry.entry_metadata or {}).get("chapter99Synthesis") or {}

    detail = entry.other_chapter99_detail or {}
    detail_countries = _upper_list(detail.get("countries"))
    other_special_applies = (
        is_non_preferential
        and bool(detail.get("formula"))
        and (not detail_countries or country in detail_countries)
    )

    return EligibilitySignals(
        is_non_preferential=is_non_preferential,
        reciprocal_only=bool(synthesis.get("reciprocalOnly")),
        has_special_program_signals=bool(links) or bool((entry.chapter99 or "").strip()),
        has_selected_heading=any(heading in links for heading in selected),
        special_program_country_eligible=not special_countries or country in special_countries,
        other_special_program_applies=other_special_applies,
        has_adjusted_formula=bool((entry.adjusted_formula or "").strip()),
    )


def desired_formula_type(signals: EligibilitySignals) -> FormulaType:
    key = (
        signals.other_special_program_applies,
        signals.is_non_preferential,
        signals.special_program_eligible,
    )
    for row, formula_type in DESIRED_FORMULA_TYPE_TABLE:
        if all(expected is None or expected == actual for expected, actual in zip(row, key)):
            return formula_type
    return FormulaType.GENERAL


def manual_lookup_order(desired: FormulaType) -> List[FormulaType]:
    return [desired] + MANUAL_LOOKUP_FALLBACKS[desired]
