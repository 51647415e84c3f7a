# WORKFLOW: Code hierarchy resolver for versioned, hierarchical tariff codes.
# Used by: Formula source selector
# Functions:
# 1. hierarchy_digits() - Candidate ancestor digit strings (10, 8, 6), most specific first
# 2. has_rate_or_formula_data() - Whether an entry carries any usable rate or formula field
# 3. CodeHierarchyResolver.resolve() - Most specific entry with rate data, else most specific found
#
# Resolution flow: Code -> Strip separators -> Ancestor digits -> Best entry per level -> First with rate data
# Headings often lack computable rates while their parent subheading has them.

import re
from typing import List, Optional

from core.exceptions import NotFound
from db.models import TariffCodeEntry
from db.repositories import TariffEntryRepository
import logging

logger = logging.getLogger(__name__)

HIERARCHY_LEVELS = (10, 8, 6)


def hierarchy_digits(code: str) -> List[str]:
    """Candidate digit strings for a code, most specific first."""
    digits = re.sub(r'\D', '', code or "")
    if len(digits) < 6:
        return [digits] if digits else []

    candidates: List[str] = []
    for length in HIERARCHY_LEVELS:
        if len(digits) >= length and digits[:length] not in candidates:
            candidates.append(digits[:length])
    return candidates


def _text(value) -> str:
    return str(value).strip() if value is not None else ""


def has_rate_or_formula_data(entry: TariffCodeEntry) -> bool:
    metadata = entry.entry_metadata or {}
    staged_general_rate = _text((metadata.get("stagedNormalized") or {}).get("generalRate"))
    return any((
        _text(entry.rate_formula),
        _text(entry.general_rate),
        _text(entry.general),
        staged_general_rate,
        _text(entry.other_rate_formula),
        _text(entry.other_rate),
        _text(entry.adjusted_formula),
        _text(entry.chapter99),
    ))


class CodeHierarchyResolver:
    """Finds the best tariff entry for a code across its hierarchy levels."""

    def __init__(self, entries: TariffEntryRepository):
        self.entries = entries

    def resolve(self, code: str, version: Optional[str] = None) -> TariffCodeEntry:
        """
        Resolve the entry used for rate lookup.

        Args:
            code: Tariff code (digits and separators)
            version: Optional schedule version

        Returns:
            Most specific entry with rate data, else the most specific entry found

        Raises:
            NotFound: No entry exists at any hierarchy level
        """
        candidates = hierarchy_digits(code)
        fallback: Optional[TariffCodeEntry] = None

        for digits in candidates:
            entry = self.entries.find_best_entry(digits, version)
            if entry is None:
                continue
            if fallback is None:
                fallback = entry
            if not has_rate_or_formula_data(entry):
                continue
            if digits != candidates[0]:
                logger.debug(f"Using ancestor HTS {entry.hts_number} for {code} (rate/formula fallback)")
            return entry

        if fallback is None:
            raise NotFound(f"HTS code {code} not found")

        logger.debug(f"No entry with rate data for {code}; using {fallback.hts_number}")
        return fallback
