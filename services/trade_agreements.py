# WORKFLOW: Trade agreement checker for preferential duty rates.
# Used by: Calculation service
# Functions:
# 1. check() - Eligibility for (code, agreement), certificate gate, preferential formula
# 2. preferential_formula() - Build a formula from a stored rate and its type
#
# Check flow: Agreement code -> Eligibility lookup -> Certificate gate -> Preferential formula

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from db.repositories import TradeAgreementRepository
import logging

logger = logging.getLogger(__name__)


@dataclass
class TradeAgreementInfo:
    agreement: str
    eligible: bool
    preferential_rate: Optional[float] = None
    preferential_formula: Optional[str] = None
    requires_certificate: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def preferential_formula(rate: Optional[float], rate_type: Optional[str]) -> Optional[str]:
    """
    Build a preferential formula.

    PERCENTAGE -> value * rate/100, SPECIFIC -> weight * rate, anything else a flat amount.
    """
    if rate is None:
        return None
    kind = (rate_type or "").strip().upper()
    if kind == "PERCENTAGE":
        return f"value * {rate / 100}"
    if kind == "SPECIFIC":
        return f"weight * {rate}"
    return f"{rate}"


class TradeAgreementChecker:
    """Looks up preferential-rate eligibility for a code under an agreement."""

    def __init__(self, eligibility: TradeAgreementRepository):
        self.eligibility = eligibility

    def check(
        self,
        hts_number: str,
        agreement_code: Optional[str],
        certificate_supplied: bool = False,
    ) -> TradeAgreementInfo:
        if not agreement_code:
            return TradeAgreementInfo(agreement="", eligible=False)

        agreement_code = agreement_code.strip().upper()
        try:
            row = self.eligibility.find_eligibility(hts_number, agreement_code)
        except SQLAlchemyError as e:
            logger.error(f"Trade agreement check failed: {e}")
            return TradeAgreementInfo(agreement=agreement_code, eligible=False)

        if row is None or not row.is_eligible:
            logger.debug(f"No trade agreement eligibility found for {hts_number} under {agreement_code}")
            return TradeAgreementInfo(agreement=agreement_code, eligible=False)

        if row.certificate_required and not certificate_supplied:
            logger.warning(f"Certificate required for {agreement_code} but not provided")
            return TradeAgreementInfo(agreement=agreement_code, eligible=False, requires_certificate=True)

        return TradeAgreementInfo(
            agreement=agreement_code,
            eligible=True,
            preferential_rate=row.preferential_rate,
            preferential_formula=preferential_formula(row.preferential_rate, row.rate_type),
            requires_certificate=bool(row.certificate_required),
        )


def create_trade_agreement_checker(db) -> TradeAgreementChecker:
    """Factory function to create a checker backed by the database."""
    return TradeAgreementChecker(TradeAgreementRepository(db))
