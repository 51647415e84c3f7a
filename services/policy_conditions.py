# WORKFLOW: Typed policy condition object and the predicates evaluated against it.
# Used by: Policy engine (extra charge gating), formula source selector (heading normalization)
# Functions:
# 1. normalize_heading() / normalize_headings() - Normalize special-program headings to NNNN.NN.NN[.NN]
# 2. CountryMatcher - Country matching with the ALL wildcard and the EU group token
# 3. PolicyConditions - Conditions object with explicit absence (None) for every key
# 4. value_within_bounds(), country_allowed(), country_not_excluded(), required_flags_present(),
#    transport_mode_matches(), required_heading_selected(), exception_heading_selected(),
#    trade_agreement_matches() - One named predicate per condition key
# 5. conditions_pass() - All predicates must pass
#
# Evaluation flow: Raw JSON conditions -> PolicyConditions -> Predicates over PolicyContext -> Pass/Fail

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field, validator

from core.config import settings

_DOTTED_HEADING = re.compile(r'^(\d{4})\.(\d{2})\.(\d{2})(?:\.(\d{2}))?$')


def normalize_heading(value: Optional[str]) -> Optional[str]:
    """
    Normalize a special-program heading to NNNN.NN.NN or NNNN.NN.NN.NN.

    Dotted input passes through; otherwise digits are re-separated when there
    are at least 8 of them. Anything shorter normalizes to None.
    """
    if value is None:
        return None
    trimmed = str(value).strip()
    if not trimmed:
        return None

    dotted = _DOTTED_HEADING.match(trimmed)
    if dotted:
        return trimmed

    digits = re.sub(r'\D', '', trimmed)
    if len(digits) < 8:
        return None
    heading = f"{digits[:4]}.{digits[4:6]}.{digits[6:8]}"
    if len(digits) >= 10:
        heading += f".{digits[8:10]}"
    return heading


def normalize_headings(values: Optional[Iterable[str]]) -> List[str]:
    """Normalize and de-duplicate headings, preserving order."""
    headings: List[str] = []
    for value in values or []:
        heading = normalize_heading(value)
        if heading and heading not in headings:
            headings.append(heading)
    return headings


class CountryMatcher:
    """Country matching: exact, the ALL wildcard, or the EU group token in either direction."""

    def __init__(
        self,
        eu_members: Optional[Iterable[str]] = None,
        eu_token: Optional[str] = None,
        all_token: Optional[str] = None,
    ):
        members = eu_members if eu_members is not None else settings.eu_member_states
        self.eu_members = frozenset(code.upper() for code in members)
        self.eu_token = (eu_token or settings.eu_group_token).upper()
        self.all_token = (all_token or settings.all_countries_token).upper()

    def matches(self, rule_country: Optional[str], country: Optional[str]) -> bool:
        rule = (rule_country or "").strip().upper()
        target = (country or "").strip().upper()
        if not rule or not target:
            return False
        if rule == self.all_token or target == self.all_token:
            return True
        if rule == target:
            return True
        if rule == self.eu_token:
            return target in self.eu_members
        if target == self.eu_token:
            return rule in self.eu_members
        return False

    def matches_any(self, rule_countries: Iterable[str], country: Optional[str]) -> bool:
        return any(self.matches(rule_country, country) for rule_country in rule_countries)


@dataclass
class PolicyContext:
    """Shipment context a policy row is matched against."""
    hts_number: str
    country: str
    declared_value: float
    entry_date: date
    selected_headings: Set[str] = field(default_factory=set)
    additional_inputs: Dict[str, Any] = field(default_factory=dict)
    trade_agreement_code: Optional[str] = None
    trade_agreement_certificate: bool = False
    transport_mode: Optional[str] = None

    @property
    def hts_digits(self) -> str:
        return re.sub(r'\D', '', self.hts_number or "")

    @property
    def chapter(self) -> str:
        return self.hts_digits[:2]


CERTIFICATE_FLAGS = ("trade_agreement_certificate", "tradeAgreementCertificate")


class PolicyConditions(BaseModel):
    """
    Conditions attached to a policy record.

    Keys are read from their stored camelCase names. Blank strings and empty
    lists are treated as absent so every predicate only sees a value or None.
    """
    min_value: Optional[float] = Field(None, alias="minValue")
    max_value: Optional[float] = Field(None, alias="maxValue")
    allowed_countries: Optional[List[str]] = Field(None, alias="allowedCountries")
    excluded_countries: Optional[List[str]] = Field(None, alias="excludedCountries")
    required_flags: Optional[List[str]] = Field(None, alias="requiredFlags")
    transport_mode: Optional[str] = Field(None, alias="transportMode")
    hts_heading: Optional[str] = Field(None, alias="htsHeading")
    exception_heading: Optional[str] = Field(None, alias="exceptionHeading")
    trade_agreement_code: Optional[str] = Field(None, alias="tradeAgreementCode")

    excludes_reciprocal_baseline: bool = Field(False, alias="excludesReciprocalBaseline")

    # Marker flags: the row is reference/audit data and never charges
    policy_marker_only: bool = Field(False, alias="policyMarkerOnly")
    framework_rate_only: bool = Field(False, alias="frameworkRateOnly")
    requires_annex_mapping: bool = Field(False, alias="requiresAnnexMapping")
    requires_manual_review: bool = Field(False, alias="requiresManualReview")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @validator('transport_mode', 'hts_heading', 'exception_heading', 'trade_agreement_code', pre=True)
    def blank_string_is_absent(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @validator('allowed_countries', 'excluded_countries', 'required_flags', pre=True)
    def empty_list_is_absent(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            v = [v]
        items = [str(item).strip() for item in v if item is not None and str(item).strip()]
        return items or None

    @validator('min_value', 'max_value', pre=True)
    def blank_number_is_absent(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @validator(
        'excludes_reciprocal_baseline', 'policy_marker_only', 'framework_rate_only',
        'requires_annex_mapping', 'requires_manual_review', pre=True,
    )
    def null_flag_is_false(cls, v):
        return bool(v) if v is not None else False

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "PolicyConditions":
        return cls.model_validate(raw or {})

    @property
    def is_marker_only(self) -> bool:
        return (
            self.policy_marker_only
            or self.framework_rate_only
            or self.requires_annex_mapping
            or self.requires_manual_review
        )


def value_within_bounds(conditions: PolicyConditions, ctx: PolicyContext) -> bool:
    if conditions.min_value is not None and ctx.declared_value < conditions.min_value:
        return False
    if conditions.max_value is not None and ctx.declared_value > conditions.max_value:
        return False
    return True


def country_allowed(conditions: PolicyConditions, ctx: PolicyContext, matcher: CountryMatcher) -> bool:
    if conditions.allowed_countries is None:
        return True
    return matcher.matches_any(conditions.allowed_countries, ctx.country)


def country_not_excluded(conditions: PolicyConditions, ctx: PolicyContext, matcher: CountryMatcher) -> bool:
    if conditions.excluded_countries is None:
        return True
    return not matcher.matches_any(conditions.excluded_countries, ctx.country)


def required_flags_present(conditions: PolicyConditions, ctx: PolicyContext) -> bool:
    for flag in conditions.required_flags or []:
        if ctx.additional_inputs.get(flag) is True:
            continue
        if flag in CERTIFICATE_FLAGS and ctx.trade_agreement_certificate:
            continue
        return False
    return True


def transport_mode_matches(conditions: PolicyConditions, ctx: PolicyContext) -> bool:
    if conditions.transport_mode is None:
        return True
    return (ctx.transport_mode or "").strip().upper() == conditions.transport_mode.upper()


def required_heading_selected(conditions: PolicyConditions, ctx: PolicyContext) -> bool:
    if conditions.hts_heading is None:
        return True
    return normalize_heading(conditions.hts_heading) in ctx.selected_headings


def exception_heading_selected(conditions: PolicyConditions, ctx: PolicyContext) -> bool:
    if conditions.exception_heading is None:
        return True
    return normalize_heading(conditions.exception_heading) in ctx.selected_headings


def trade_agreement_matches(conditions: PolicyConditions, ctx: PolicyContext) -> bool:
    if conditions.trade_agreement_code is None:
        return True
    return (ctx.trade_agreement_code or "").strip().upper() == conditions.trade_agreement_code.upper()


def conditions_pass(conditions: PolicyConditions, ctx: PolicyContext, matcher: CountryMatcher) -> bool:
    """All condition predicates must pass."""
    return (
        value_within_bounds(conditions, ctx)
        and country_allowed(conditions, ctx, matcher)
        and country_not_excluded(conditions, ctx, matcher)
        and required_flags_present(conditions, ctx)
        and transport_mode_matches(conditions, ctx)
        and required_heading_selected(conditions, ctx)
        and exception_heading_selected(conditions, ctx)
        and trade_agreement_matches(conditions, ctx)
    )
