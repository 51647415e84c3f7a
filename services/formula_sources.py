# WORKFLOW: Formula source selector that resolves the duty formula for a tariff code.
# Used by: Calculation service
# Functions:
# 1. FormulaSourceSelector.get_rate() - Resolve entry, derive signals, run the strategy chain
# 2. manual_override() - Curated override in the desired-type lookup order (confidence 1.0)
# 3. special_chapter_history() - Historical snapshot for special-program chapter codes
# 4. standard_fields() - Special/other/adjusted/general formulas stored on the entry
# 5. pattern_inference() - Deterministic parse of general rate text (0.82 / 0.78)
# 6. inferred_base() - Reverse a known additive adjustment from the adjusted formula (0.75)
# 7. knowledge_base() - Note-referencing rate text via the optional note resolver (>= 0.6)
# 8. historical_snapshot() - Historical snapshot for any chapter
#
# Selection flow: Code -> Hierarchy resolver -> Signals -> Strategies in order -> First hit wins
# Strategies run sequentially; later strategies never run once one has produced a formula.

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from core.config import settings
from core.exceptions import ExternalLookupFailure, NotFound
from db.models import HistoricalRateSnapshot, TariffCodeEntry
from db.repositories import HistoricalSnapshotRepository, ManualOverrideRepository, TariffEntryRepository
from etl.duty_parser import extract_variables, generate_formula_by_pattern
from services.code_hierarchy import CodeHierarchyResolver
from services.formula_types import (
    EligibilitySignals, FormulaType, derive_signals, desired_formula_type, manual_lookup_order,
)
import logging

logger = logging.getLogger(__name__)

# Calibration values, kept as fixed per-source constants
CONFIDENCE_MANUAL = 1.0
CONFIDENCE_SPECIAL_PROGRAM = 0.95
CONFIDENCE_STANDARD = 0.9
CONFIDENCE_PATTERN = 0.82
CONFIDENCE_PATTERN_STAGED = 0.78
CONFIDENCE_INFERRED_BASE = 0.75
CONFIDENCE_KNOWLEDGE_BASE = 0.6
CONFIDENCE_HISTORICAL_COMPONENTS = 0.98
CONFIDENCE_HISTORICAL_TEXT = 0.92

WEIGHT_UNIT_CODES = {"KG", "G", "GM", "CGM", "CKG", "T"}
NOT_APPLICABLE_RATE = 9999

LEGAL_REFERENCE_TEXT = re.compile(
    r'\b(see|note|applicable subheading|provided in such subheading|rate applicable|'
    r'duty equal|under bond|in lieu|drawback|except as provided)\b'
)
ADDITIVE_ADJUSTMENT = re.compile(r'^\((.+)\)\s*\+\s*\(\s*value\s*\*\s*([0-9.]+)\s*\)$', re.IGNORECASE)
YEAR_PATTERN = re.compile(r'(19|20)\d{2}')

VARIABLE_DESCRIPTIONS = {
    "value": "Declared value of goods in USD",
    "weight": "Weight of goods in kilograms",
    "quantity": "Number of imported items",
}


@dataclass
class FormulaResolution:
    formula: str
    source: str
    confidence: float
    formula_type: FormulaType
    variables: Optional[List[Dict[str, Any]]] = None
    suppress_extra_charges: bool = False


@dataclass
class RateLookupContext:
    hts_number: str
    country: str
    entry: TariffCodeEntry
    signals: EligibilitySignals
    desired_type: FormulaType
    version: Optional[str] = None
    entry_date: Optional[date] = None
    selected_headings: List[str] = field(default_factory=list)

    @property
    def digits(self) -> str:
        return re.sub(r'\D', '', self.hts_number)


def to_comparable_rate(value) -> Optional[float]:
    """Numeric rate, or None when missing, non-numeric or a not-applicable sentinel."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return None
    if parsed >= NOT_APPLICABLE_RATE:
        return None
    return parsed


def is_weight_unit(unit_code: Optional[str]) -> bool:
    return bool(unit_code) and unit_code.strip().upper() in WEIGHT_UNIT_CODES


def extract_year(version: Optional[str]) -> Optional[int]:
    if not version:
        return None
    match = YEAR_PATTERN.search(version)
    return int(match.group(0)) if match else None


def build_variable_objects(names: Optional[Iterable[str]]) -> Optional[List[Dict[str, Any]]]:
    """Describe formula variables as {name, type, description} objects."""
    deduped: List[str] = []
    for name in names or []:
        if name and name not in deduped:
            deduped.append(name)
    if not deduped:
        return None
    return [
        {"name": name, "type": "number", "description": VARIABLE_DESCRIPTIONS.get(name, VARIABLE_DESCRIPTIONS["quantity"])}
        for name in deduped
    ]


def _variables_for(formula: str, stored=None) -> Optional[List[Dict[str, Any]]]:
    if stored:
        return stored
    return build_variable_objects(extract_variables(formula))


def general_rate_candidates(entry: TariffCodeEntry) -> List[Dict[str, str]]:
    """General rate text variants, blank and case-insensitive duplicates removed."""
    metadata = entry.entry_metadata or {}
    staged = (metadata.get("stagedNormalized") or {}).get("generalRate")
    raw = [
        ("generalRate", entry.general_rate),
        ("general", entry.general),
        ("stagedNormalized.generalRate", staged),
    ]

    seen = set()
    candidates = []
    for source, text in raw:
        text = str(text).strip() if text is not None else ""
        if not text or text.lower() in seen:
            continue
        seen.add(text.lower())
        candidates.append({"source": source, "rate_text": text})
    return candidates


def should_attempt_pattern_parse(rate_text: str) -> bool:
    """Legal-reference rate text needs human judgment and is never parsed."""
    text = rate_text.strip().lower()
    return bool(text) and not LEGAL_REFERENCE_TEXT.search(text)


def infer_base_formula(entry: TariffCodeEntry) -> Optional[str]:
    """
    Reverse a recorded additive adjustment: "(<base>) + (value * k)" -> "<base>".

    Only applies when k equals the synthesis adjustment rate within 1e-9.
    """
    adjusted = (entry.adjusted_formula or "").strip()
    if not adjusted:
        return None

    synthesis = (entry.entry_metadata or {}).get("chapter99Synthesis") or {}
    adjustment_rate = to_comparable_rate(synthesis.get("adjustmentRate"))
    if adjustment_rate is None or adjustment_rate <= 0:
        return None

    match = ADDITIVE_ADJUSTMENT.match(adjusted)
    if not match:
        return None

    base_formula = match.group(1).strip()
    formula_adjustment = to_comparable_rate(match.group(2))
    if not base_formula or formula_adjustment is None:
        return None
    if abs(formula_adjustment - adjustment_rate) > 1e-9:
        return None
    return base_formula


class FormulaSourceSelector:
    """Resolves the duty formula for a request through an ordered strategy chain."""

    def __init__(
        self,
        hierarchy: CodeHierarchyResolver,
        overrides: ManualOverrideRepository,
        snapshots: HistoricalSnapshotRepository,
        pattern_parser: Callable[..., Optional[Dict[str, Any]]] = generate_formula_by_pattern,
        note_resolver=None,
        historical_cutoff: Optional[date] = None,
        historical_source_year: Optional[int] = None,
        special_program_chapter: Optional[str] = None,
        default_non_preferential: Optional[List[str]] = None,
    ):
        self.hierarchy = hierarchy
        self.overrides = overrides
        self.snapshots = snapshots
        self.pattern_parser = pattern_parser
        self.note_resolver = note_resolver
        self.historical_cutoff = historical_cutoff or settings.historical_fallback_cutoff
        self.historical_source_year = historical_source_year or settings.historical_source_year
        self.special_program_chapter = special_program_chapter or settings.special_program_chapter
        self.default_non_preferential = default_non_preferential

        self.strategies: List[Callable[[RateLookupContext], Awaitable[Optional[FormulaResolution]]]] = [
            self.manual_override,
            self.special_chapter_history,
            self.standard_fields,
            self.pattern_inference,
            self.inferred_base,
            self.knowledge_base,
            self.historical_snapshot,
        ]

        if self.note_resolver is not None:
            logger.info("Knowledge base integration enabled for rate retrieval")
        else:
            logger.info("Running without knowledge base - note references fall through")

    def build_context(
        self,
        hts_number: str,
        country: str,
        version: Optional[str] = None,
        entry_date: Optional[date] = None,
        selected_headings: Optional[List[str]] = None,
    ) -> RateLookupContext:
        entry = self.hierarchy.resolve(hts_number, version)
        country = (country or "").upper()
        signals = derive_signals(entry, country, selected_headings or [], self.default_non_preferential)
        return RateLookupContext(
            hts_number=hts_number,
            country=country,
            entry=entry,
            signals=signals,
            desired_type=desired_formula_type(signals),
            version=version or entry.version or entry.source_version,
            entry_date=entry_date,
            selected_headings=list(selected_headings or []),
        )

    async def get_rate(
        self,
        hts_number: str,
        country: str,
        version: Optional[str] = None,
        entry_date: Optional[date] = None,
        selected_headings: Optional[List[str]] = None,
    ) -> FormulaResolution:
        """
        Resolve the formula for a code and origin country.

        Raises:
            NotFound: No entry for the code, or every source is exhausted
        """
        ctx = self.build_context(hts_number, country, version, entry_date, selected_headings)
        logger.debug(f"Resolving formula for {hts_number} ({ctx.country}), desired type {ctx.desired_type.value}")

        for strategy in self.strategies:
            resolution = await strategy(ctx)
            if resolution is not None:
                logger.debug(
                    f"Formula for {hts_number} from {strategy.__name__}: {resolution.formula} "
                    f"(source={resolution.source}, confidence={resolution.confidence})"
                )
                return resolution

        raise NotFound(f"No formula available for HTS {hts_number}")

    async def manual_override(self, ctx: RateLookupContext) -> Optional[FormulaResolution]:
        for formula_type in manual_lookup_order(ctx.desired_type):
            override = self.overrides.find_manual_override(
                ctx.hts_number, ctx.country, formula_type.value, ctx.version
            )
            if override is None:
                continue
            logger.debug(f"Using manual override for {ctx.hts_number} ({formula_type.value})")
            return FormulaResolution(
                formula=override.formula,
                source="manual",
                confidence=CONFIDENCE_MANUAL,
                formula_type=FormulaType(override.formula_type),
                variables=_variables_for(override.formula, override.formula_variables),
                suppress_extra_charges=bool(override.override_extra_tax),
            )
        return None

    async def special_chapter_history(self, ctx: RateLookupContext) -> Optional[FormulaResolution]:
        if not ctx.digits.startswith(self.special_program_chapter):
            return None
        return self._historical_resolution(ctx)

    async def standard_fields(self, ctx: RateLookupContext) -> Optional[FormulaResolution]:
        entry, signals = ctx.entry, ctx.signals
        detail = entry.other_chapter99_detail or {}

        if signals.other_special_program_applies and detail.get("formula"):
            return FormulaResolution(
                formula=detail["formula"],
                source="other",
                confidence=CONFIDENCE_SPECIAL_PROGRAM,
                formula_type=FormulaType.OTHER_CHAPTER99,
                variables=_variables_for(detail["formula"], detail.get("variables")),
            )
        if signals.is_non_preferential and entry.other_rate_formula:
            return FormulaResolution(
                formula=entry.other_rate_formula,
                source="other",
                confidence=CONFIDENCE_STANDARD,
                formula_type=FormulaType.OTHER,
                variables=_variables_for(entry.other_rate_formula),
            )
        if signals.special_program_applies and entry.adjusted_formula:
            return FormulaResolution(
                formula=entry.adjusted_formula,
                source="adjusted",
                confidence=CONFIDENCE_SPECIAL_PROGRAM,
                formula_type=FormulaType.ADJUSTED,
                variables=_variables_for(entry.adjusted_formula),
            )
        if entry.rate_formula:
            return FormulaResolution(
                formula=entry.rate_formula,
                source="general",
                confidence=CONFIDENCE_STANDARD,
                formula_type=FormulaType.GENERAL,
                variables=_variables_for(entry.rate_formula),
            )
        return None

    async def pattern_inference(self, ctx: RateLookupContext) -> Optional[FormulaResolution]:
        for candidate in general_rate_candidates(ctx.entry):
            if not should_attempt_pattern_parse(candidate["rate_text"]):
                continue
            parsed = self.pattern_parser(candidate["rate_text"], ctx.entry.unit_of_quantity)
            if not parsed or not parsed.get("formula"):
                continue
            staged = candidate["source"] == "stagedNormalized.generalRate"
            return FormulaResolution(
                formula=parsed["formula"],
                source="general",
                confidence=CONFIDENCE_PATTERN_STAGED if staged else CONFIDENCE_PATTERN,
                formula_type=FormulaType.GENERAL,
                variables=build_variable_objects(parsed.get("variables")),
            )
        return None

    async def inferred_base(self, ctx: RateLookupContext) -> Optional[FormulaResolution]:
        base_formula = infer_base_formula(ctx.entry)
        if base_formula is None:
            return None
        return FormulaResolution(
            formula=base_formula,
            source="general",
            confidence=CONFIDENCE_INFERRED_BASE,
            formula_type=FormulaType.GENERAL,
            variables=_variables_for(base_formula),
        )

    async def knowledge_base(self, ctx: RateLookupContext) -> Optional[FormulaResolution]:
        if self.note_resolver is None:
            return None

        non_preferential = ctx.signals.is_non_preferential
        rate_text = ctx.entry.other_rate if non_preferential else ctx.entry.general_rate
        if not rate_text or "note" not in rate_text.lower():
            return None

        try:
            resolution = await self.note_resolver.resolve_note_reference(
                ctx.entry.hts_number,
                rate_text,
                "other" if non_preferential else "general",
                extract_year(ctx.version),
            )
        except ExternalLookupFailure as e:
            logger.warning(f"Knowledge base resolution failed: {e}")
            return None

        if not resolution or not resolution.get("formula"):
            return None
        confidence = resolution.get("confidence")
        return FormulaResolution(
            formula=resolution["formula"],
            source="knowledgebase",
            confidence=max(confidence or 0.0, CONFIDENCE_KNOWLEDGE_BASE),
            formula_type=FormulaType.OTHER if non_preferential else FormulaType.GENERAL,
            variables=_variables_for(resolution["formula"]),
        )

    async def historical_snapshot(self, ctx: RateLookupContext) -> Optional[FormulaResolution]:
        return self._historical_resolution(ctx)

    def _historical_resolution(self, ctx: RateLookupContext) -> Optional[FormulaResolution]:
        if ctx.entry_date is None or ctx.entry_date > self.historical_cutoff:
            return None
        if len(ctx.digits) < 8:
            return None

        try:
            snapshot = self.snapshots.find_historical_snapshot(
                ctx.digits[:8], ctx.entry_date, self.historical_source_year
            )
        except ExternalLookupFailure as e:
            logger.warning(f"Historical snapshot lookup failed for {ctx.hts_number}: {e}")
            return None

        if snapshot is None:
            return None
        return self._formula_from_snapshot(snapshot)

    def _formula_from_snapshot(self, snapshot: HistoricalRateSnapshot) -> Optional[FormulaResolution]:
        components: List[str] = []
        names: List[str] = []

        ad_valorem = to_comparable_rate(snapshot.mfn_ad_val_rate)
        if ad_valorem:
            components.append(f"value * {ad_valorem}")
            names.append("value")

        specific = to_comparable_rate(snapshot.mfn_specific_rate)
        if specific:
            variable = "weight" if is_weight_unit(snapshot.quantity_1_code) else "quantity"
            components.append(f"{variable} * {specific}")
            names.append(variable)

        other = to_comparable_rate(snapshot.mfn_other_rate)
        if other:
            unit_code = snapshot.quantity_2_code or snapshot.quantity_1_code
            variable = "weight" if is_weight_unit(unit_code) else "quantity"
            components.append(f"{variable} * {other}")
            names.append(variable)

        if components:
            return FormulaResolution(
                formula=" + ".join(components),
                source="general",
                confidence=CONFIDENCE_HISTORICAL_COMPONENTS,
                formula_type=FormulaType.GENERAL,
                variables=build_variable_objects(names) or [],
            )

        parsed = self.pattern_parser(snapshot.mfn_text_rate or "", snapshot.quantity_1_code)
        if not parsed or not parsed.get("formula"):
            return None
        return FormulaResolution(
            formula=parsed["formula"],
            source="general",
            confidence=CONFIDENCE_HISTORICAL_TEXT,
            formula_type=FormulaType.GENERAL,
            variables=build_variable_objects(parsed.get("variables")) or [],
        )


def create_formula_source_selector(db, note_resolver=None) -> FormulaSourceSelector:
    """Factory function to create a selector backed by the database."""
    return FormulaSourceSelector(
        hierarchy=CodeHierarchyResolver(TariffEntryRepository(db)),
        overrides=ManualOverrideRepository(db),
        snapshots=HistoricalSnapshotRepository(db),
        note_resolver=note_resolver,
    )
