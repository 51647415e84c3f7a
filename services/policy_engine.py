# WORKFLOW: Policy rule engine for extra charges (additional tariffs and post-calculation fees).
# Used by: Calculation service
# Functions:
# 1. calculate_additional_tariffs() - ADD_ON/STANDALONE rows, gated by matching CONDITIONAL rows
# 2. calculate_taxes() - POST_CALCULATION rows with min/max clamping
# 3. scope_matches() - Code (exact, wildcard, chapter) and country scope
# 4. within_date_window() - Effective/expiration window compared at UTC noon
# 5. is_reciprocal_baseline() - Baseline rows identified by tax code prefix and ALL country scope
#
# Pass 1: Load rows -> Match CONDITIONAL rows -> Suppression flags -> Evaluate charging rows
# Pass 2: Load POST_CALCULATION rows -> Match -> Evaluate with duty/total -> Clamp
# A row that fails to parse or evaluate is logged and skipped; the rest of the pass continues.

from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from core.config import settings
from core.exceptions import EvaluationError
from db.models import PolicyRecord, digits_only
from db.repositories import PolicyRecordRepository
from services.expression_evaluator import evaluate_formula, round_currency
from services.policy_conditions import CountryMatcher, PolicyConditions, PolicyContext, conditions_pass
import logging

logger = logging.getLogger(__name__)

ADD_ON = "ADD_ON"
STANDALONE = "STANDALONE"
CONDITIONAL = "CONDITIONAL"
POST_CALCULATION = "POST_CALCULATION"

ADDITIONAL_TARIFF_TYPES = (ADD_ON, STANDALONE, CONDITIONAL)
CHARGING_TYPES = (ADD_ON, STANDALONE)
TAX_TYPES = (POST_CALCULATION,)

WILDCARD_CODE = "*"


def utc_noon(value) -> datetime:
    """Date-only value pinned to 12:00 UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        value = value.date()
    return datetime.combine(value, time(12, 0), tzinfo=timezone.utc)


def within_date_window(record: PolicyRecord, entry_date: date) -> bool:
    entry = utc_noon(entry_date)
    if record.effective_date is not None and utc_noon(record.effective_date) > entry:
        return False
    if record.expiration_date is not None and utc_noon(record.expiration_date) < entry:
        return False
    return True


def code_scope_matches(record: PolicyRecord, ctx: PolicyContext) -> bool:
    hts_number = (record.hts_number or "").strip()
    if not hts_number or hts_number == WILDCARD_CODE:
        return True
    if digits_only(hts_number) == ctx.hts_digits:
        return True
    return bool(record.hts_chapter) and record.hts_chapter == ctx.chapter


def scope_matches(record: PolicyRecord, ctx: PolicyContext, matcher: CountryMatcher) -> bool:
    return code_scope_matches(record, ctx) and matcher.matches(record.country_code, ctx.country)


def is_reciprocal_baseline(record: PolicyRecord, prefix: str, all_token: str) -> bool:
    return (
        (record.tax_code or "").upper().startswith(prefix.upper())
        and (record.country_code or "").upper() == all_token.upper()
    )


class PolicyEngine:
    """Evaluates declarative extra charge records against a shipment."""

    def __init__(
        self,
        records: PolicyRecordRepository,
        matcher: Optional[CountryMatcher] = None,
        baseline_prefix: Optional[str] = None,
    ):
        self.records = records
        self.matcher = matcher or CountryMatcher()
        self.baseline_prefix = baseline_prefix or settings.reciprocal_baseline_prefix

    def _conditions(self, record: PolicyRecord) -> Optional[PolicyConditions]:
        try:
            return PolicyConditions.from_raw(record.conditions)
        except ValidationError as e:
            logger.warning(f"Skipping {record.tax_code}: invalid conditions ({e})")
            return None

    def _matches(self, record: PolicyRecord, conditions: PolicyConditions, ctx: PolicyContext) -> bool:
        return (
            scope_matches(record, ctx, self.matcher)
            and within_date_window(record, ctx.entry_date)
            and conditions_pass(conditions, ctx, self.matcher)
        )

    def _charge(
        self,
        record: PolicyRecord,
        variables: Mapping[str, Any],
        clamp: bool = False,
    ) -> Optional[Dict[str, Any]]:
        try:
            amount = evaluate_formula(record.rate_formula, variables)
        except EvaluationError as e:
            logger.warning(f"Failed to evaluate formula for {record.tax_code}: {e}")
            return None

        if amount <= 0:
            return None

        if clamp:
            if record.minimum_amount is not None:
                amount = max(amount, record.minimum_amount)
            if record.maximum_amount is not None:
                amount = min(amount, record.maximum_amount)

        amount = round_currency(amount)
        if amount <= 0:
            logger.debug(f"Skipping {record.tax_code}: amount rounds to zero")
            return None

        return {
            "type": record.tax_code,
            "amount": amount,
            "description": record.description or record.tax_name,
        }

    def calculate_additional_tariffs(self, ctx: PolicyContext, variables: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """
        Additional tariffs for a shipment, in ascending priority order.

        CONDITIONAL rows never charge. A matching CONDITIONAL row flagged
        excludesReciprocalBaseline suppresses the reciprocal baseline rows.
        """
        rows = self.records.find_active(ADDITIONAL_TARIFF_TYPES)
        parsed = []
        for record in rows:
            conditions = self._conditions(record)
            if conditions is not None:
                parsed.append((record, conditions))

        suppress_baseline = False
        for record, conditions in parsed:
            if record.extra_rate_type != CONDITIONAL:
                continue
            if not self._matches(record, conditions, ctx):
                continue
            logger.debug(f"Conditional policy {record.tax_code} matched")
            if conditions.excludes_reciprocal_baseline:
                suppress_baseline = True

        results: List[Dict[str, Any]] = []
        for record, conditions in parsed:
            if record.extra_rate_type not in CHARGING_TYPES:
                continue
            if not self._matches(record, conditions, ctx):
                continue
            if conditions.is_marker_only or not (record.rate_formula or "").strip():
                logger.debug(f"Skipping marker-only policy {record.tax_code}")
                continue
            if suppress_baseline and is_reciprocal_baseline(record, self.baseline_prefix, self.matcher.all_token):
                logger.info(f"Reciprocal baseline {record.tax_code} suppressed by conditional exception")
                continue

            charge = self._charge(record, variables)
            if charge is not None:
                results.append(charge)

        logger.info(f"Applied {len(results)} additional tariffs for {ctx.hts_number} ({ctx.country})")
        return results

    def calculate_taxes(self, ctx: PolicyContext, variables: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Post-calculation fees, clamped to each row's minimum/maximum amount."""
        results: List[Dict[str, Any]] = []
        for record in self.records.find_active(TAX_TYPES):
            conditions = self._conditions(record)
            if conditions is None:
                continue
            if not self._matches(record, conditions, ctx):
                continue
            if conditions.is_marker_only or not (record.rate_formula or "").strip():
                continue

            charge = self._charge(record, variables, clamp=True)
            if charge is not None:
                results.append(charge)

        logger.info(f"Applied {len(results)} taxes for {ctx.hts_number} ({ctx.country})")
        return results


def create_policy_engine(db) -> PolicyEngine:
    """Factory function to create a policy engine backed by the database."""
    return PolicyEngine(PolicyRecordRepository(db))
