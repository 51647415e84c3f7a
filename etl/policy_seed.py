# WORKFLOW: Seed data for declarative policy records (reciprocal tariffs and entry fees).
# Used by: Bootstrap script, integration tests
# Functions:
# 1. reciprocal_seed_rows() - Baseline, exception and framework rows for reciprocal tariffs
# 2. fee_seed_rows() - Post-calculation entry fees (MPF, HMF)
# 3. upsert_policy_records() - Insert or refresh rows keyed by tax code
#
# Seed flow: Seed rows -> Lookup by tax code -> Update existing / insert new -> Commit
# Re-running the seed is idempotent; it only refreshes the seeded rows.

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from db.models import PolicyRecord
import logging

logger = logging.getLogger(__name__)

SEED_VERSION = "2026.2"

RECIPROCAL_BASELINE_HEADING = "9903.01.25"
RECIPROCAL_EFFECTIVE = date(2025, 4, 5)
FRAMEWORK_EFFECTIVE = date(2025, 4, 7)

# Country-level reciprocal framework rates in percent
FRAMEWORK_COUNTRY_RATES = {
    "CN": 54, "EU": 20, "VN": 46, "TW": 32, "JP": 24, "IN": 26, "KR": 25, "TH": 36,
    "CH": 31, "ID": 32, "MY": 24, "KH": 49, "ZA": 30, "BD": 37, "IL": 17, "PH": 17,
    "PK": 29, "LK": 44, "NI": 18, "NO": 15, "JO": 20, "MG": 47, "MM": 44, "TN": 28,
    "KZ": 27, "RS": 37, "CI": 21, "LA": 48, "BW": 37, "NF": 29, "RE": 37, "MW": 17,
    "ZW": 18, "SY": 41, "VU": 22, "PM": 50, "NR": 30, "GQ": 12, "LY": 31, "TD": 13,
}

USMCA_EXCEPTIONS = {
    "CA": ("Canada", "9903.01.26"),
    "MX": ("Mexico", "9903.01.27"),
}


def _policy_row(
    tax_code: str,
    tax_name: str,
    description: str,
    country_code: str,
    extra_rate_type: str,
    rate_text: str,
    rate_formula: str,
    priority: int,
    conditions: Optional[Dict[str, Any]] = None,
    effective_date: Optional[date] = None,
    expiration_date: Optional[date] = None,
    hts_number: str = "*",
    hts_chapter: Optional[str] = "99",
    legal_reference: Optional[str] = None,
    minimum_amount: Optional[float] = None,
    maximum_amount: Optional[float] = None,
    apply_to: str = "VALUE",
    policy_type: str = "RECIPROCAL_TARIFF",
) -> Dict[str, Any]:
    return {
        "tax_code": tax_code,
        "tax_name": tax_name,
        "description": description,
        "hts_number": hts_number,
        "hts_chapter": hts_chapter,
        "country_code": country_code,
        "extra_rate_type": extra_rate_type,
        "rate_text": rate_text,
        "rate_formula": rate_formula,
        "minimum_amount": minimum_amount,
        "maximum_amount": maximum_amount,
        "is_percentage": True,
        "apply_to": apply_to,
        "conditions": conditions,
        "priority": priority,
        "is_active": True,
        "effective_date": effective_date,
        "expiration_date": expiration_date,
        "legal_reference": legal_reference,
        "policy_metadata": {"policyType": policy_type, "seedVersion": SEED_VERSION},
    }


def reciprocal_seed_rows() -> List[Dict[str, Any]]:
    rows = [
        _policy_row(
            tax_code="RECIP_BASELINE_9903_01_25",
            tax_name="Reciprocal Tariff Baseline",
            description=f"Baseline reciprocal tariff layer for imports entered under heading {RECIPROCAL_BASELINE_HEADING}.",
            country_code="ALL",
            extra_rate_type="ADD_ON",
            rate_text="10% ad valorem",
            rate_formula="value * 0.10",
            priority=15,
            conditions={"htsHeading": RECIPROCAL_BASELINE_HEADING},
            effective_date=RECIPROCAL_EFFECTIVE,
            legal_reference=f"IEEPA reciprocal tariff framework; heading {RECIPROCAL_BASELINE_HEADING}",
        )
    ]

    for country, (name, heading) in USMCA_EXCEPTIONS.items():
        rows.append(
            _policy_row(
                tax_code=f"RECIP_{country}_EXCEPTION_{heading.replace('.', '_')}",
                tax_name=f"Reciprocal Tariff Exception ({name}/USMCA)",
                description=(
                    f"Exception marker for imports entered under heading {heading} "
                    "where baseline reciprocal tariffs are excluded."
                ),
                country_code=country,
                extra_rate_type="CONDITIONAL",
                rate_text="0% (exception marker)",
                rate_formula="0",
                priority=5,
                conditions={"exceptionHeading": heading, "excludesReciprocalBaseline": True},
                effective_date=RECIPROCAL_EFFECTIVE,
                legal_reference=f"Reciprocal tariff exception references for heading {heading}",
            )
        )

    for country, percent in FRAMEWORK_COUNTRY_RATES.items():
        rows.append(
            _policy_row(
                tax_code=f"RECIP_FRAMEWORK_{country}",
                tax_name=f"Reciprocal Tariff Framework ({country})",
                description=(
                    "Country-level reciprocal framework rate; annex applicability must be "
                    "confirmed before it is charged."
                ),
                country_code=country,
                extra_rate_type="CONDITIONAL",
                rate_text=f"{percent}% ad valorem",
                rate_formula=f"value * {percent / 100:.4f}",
                priority=8,
                conditions={"requiresAnnexMapping": True, "frameworkRateOnly": True},
                effective_date=FRAMEWORK_EFFECTIVE,
                legal_reference="Reciprocal tariff framework action of April 7, 2025",
            )
        )
    return rows


def fee_seed_rows() -> List[Dict[str, Any]]:
    return [
        _policy_row(
            tax_code="MPF",
            tax_name="Merchandise Processing Fee",
            description="Merchandise Processing Fee (0.3464% ad valorem)",
            country_code="ALL",
            extra_rate_type="POST_CALCULATION",
            rate_text="0.3464%",
            rate_formula="value * 0.003464",
            priority=100,
            hts_number="*",
            hts_chapter=None,
            minimum_amount=27.75,
            maximum_amount=579.23,
            legal_reference="19 CFR 24.23",
            policy_type="ENTRY_FEE",
        ),
        _policy_row(
            tax_code="HMF",
            tax_name="Harbor Maintenance Fee",
            description="Harbor Maintenance Fee (0.125% ad valorem, ocean shipments)",
            country_code="ALL",
            extra_rate_type="POST_CALCULATION",
            rate_text="0.125%",
            rate_formula="value * 0.00125",
            priority=110,
            hts_number="*",
            hts_chapter=None,
            conditions={"transportMode": "OCEAN"},
            legal_reference="19 CFR 24.24",
            policy_type="ENTRY_FEE",
        ),
    ]


def upsert_policy_records(db: Session, rows: List[Dict[str, Any]]) -> int:
    """
    Insert or refresh policy rows keyed by tax code.

    Returns:
        Number of rows processed
    """
    processed = 0
    seeded_at = datetime.now(timezone.utc).isoformat()
    for row in rows:
        payload = dict(row)
        payload["policy_metadata"] = {**(payload.get("policy_metadata") or {}), "seededAt": seeded_at}

        existing = db.query(PolicyRecord).filter(PolicyRecord.tax_code == payload["tax_code"]).first()
        if existing:
            for key, value in payload.items():
                setattr(existing, key, value)
        else:
            db.add(PolicyRecord(**payload))
        processed += 1

    db.commit()
    logger.info(f"Policy seed complete: {processed} rows upserted")
    return processed
