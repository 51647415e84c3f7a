# WORKFLOW: Read/write repositories over the reference tables and the audit trail.
# Used by: Code hierarchy resolver, formula source selector, policy engine,
#          trade agreement checker, calculation service
# Repositories:
# 1. TariffEntryRepository.find_best_entry() - Best entry for an exact digit string
# 2. ManualOverrideRepository.find_manual_override() - Version/country aware override lookup
# 3. HistoricalSnapshotRepository.find_historical_snapshot() - Point-in-time snapshot by 8-digit code
# 4. TradeAgreementRepository.find_eligibility() - Eligibility per code/agreement
# 5. PolicyRecordRepository.find_active() - Active policy records of given types
# 6. CalculationRecordRepository.save()/get()/list_recent() - Append-only audit sink
#
# All lookups return ORM rows or None; errors propagate to the caller.

from datetime import date
from typing import List, Optional, Sequence

from sqlalchemy import and_, or_, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import AuditWriteFailure, ExternalLookupFailure
from db.models import (
    TariffCodeEntry, ManualFormulaOverride, HistoricalRateSnapshot,
    PolicyRecord, TradeAgreementEligibility, CalculationRecord, digits_only,
)
import logging

logger = logging.getLogger(__name__)


class TariffEntryRepository:
    """Versioned tariff schedule entries."""

    def __init__(self, db: Session):
        self.db = db

    def find_best_entry(self, digits: str, version: Optional[str] = None) -> Optional[TariffCodeEntry]:
        """
        Find the authoritative entry for an exact digit string.

        With a version, rows whose version or source version match are eligible
        (exact matches first); without one, only active rows are. Ties go to the
        active row, then the most recently updated.
        """
        query = self.db.query(TariffCodeEntry).filter(TariffCodeEntry.hts_digits == digits)

        if version:
            version_match = or_(
                TariffCodeEntry.version == version,
                TariffCodeEntry.source_version == version,
            )
            query = query.filter(version_match).order_by(
                case((version_match, 1), else_=2).asc()
            )
        else:
            query = query.filter(TariffCodeEntry.is_active.is_(True))

        return query.order_by(
            TariffCodeEntry.is_active.desc(),
            TariffCodeEntry.updated_at.desc(),
        ).first()


class ManualOverrideRepository:
    """Manually curated formula overrides."""

    def __init__(self, db: Session):
        self.db = db

    def find_manual_override(
        self,
        hts_number: str,
        country: str,
        formula_type: str,
        version: Optional[str] = None,
    ) -> Optional[ManualFormulaOverride]:
        country = (country or "").upper()
        query = self.db.query(ManualFormulaOverride).filter(
            and_(
                ManualFormulaOverride.hts_digits == digits_only(hts_number),
                ManualFormulaOverride.formula_type == formula_type,
                ManualFormulaOverride.active.is_(True),
                ManualFormulaOverride.country_code.in_([country, "ALL"]),
            )
        )

        ordering = []
        if version:
            query = query.filter(
                or_(
                    ManualFormulaOverride.update_version == version,
                    ManualFormulaOverride.carryover.is_(True),
                )
            )
            ordering.append(case((ManualFormulaOverride.update_version == version, 0), else_=1).asc())

        ordering.append(case((ManualFormulaOverride.country_code == country, 0), else_=1).asc())
        ordering.append(ManualFormulaOverride.updated_at.desc())

        return query.order_by(*ordering).first()


class HistoricalSnapshotRepository:
    """Point-in-time historical rate snapshots."""

    def __init__(self, db: Session):
        self.db = db

    def find_historical_snapshot(self, hts8: str, entry_date: date, source_year: int) -> Optional[HistoricalRateSnapshot]:
        try:
            return (
                self.db.query(HistoricalRateSnapshot)
                .filter(
                    and_(
                        HistoricalRateSnapshot.hts8 == hts8,
                        HistoricalRateSnapshot.source_year == source_year,
                        HistoricalRateSnapshot.begin_effect_date <= entry_date,
                        HistoricalRateSnapshot.end_effective_date >= entry_date,
                    )
                )
                .order_by(HistoricalRateSnapshot.begin_effect_date.desc())
                .first()
            )
        except SQLAlchemyError as e:
            logger.error(f"Historical snapshot lookup failed for {hts8}: {e}")
            raise ExternalLookupFailure(f"Historical snapshot store unavailable: {e}") from e


class TradeAgreementRepository:
    """Preferential-rate eligibility per code and agreement."""

    def __init__(self, db: Session):
        self.db = db

    def find_eligibility(self, hts_number: str, agreement_code: str) -> Optional[TradeAgreementEligibility]:
        digits = digits_only(hts_number)
        candidates = (
            self.db.query(TradeAgreementEligibility)
            .filter(TradeAgreementEligibility.trade_agreement_code == agreement_code.upper())
            .all()
        )
        for candidate in candidates:
            if candidate.hts_number == hts_number or digits_only(candidate.hts_number) == digits:
                return candidate
        return None


class PolicyRecordRepository:
    """Declarative extra charge records."""

    def __init__(self, db: Session):
        self.db = db

    def find_active(self, types: Sequence[str]) -> List[PolicyRecord]:
        """Active rows of the given types, ascending priority then tax code."""
        return (
            self.db.query(PolicyRecord)
            .filter(
                and_(
                    PolicyRecord.is_active.is_(True),
                    PolicyRecord.extra_rate_type.in_(list(types)),
                )
            )
            .order_by(PolicyRecord.priority.asc(), PolicyRecord.tax_code.asc())
            .all()
        )


class CalculationRecordRepository:
    """Append-only calculation audit trail."""

    def __init__(self, db: Session):
        self.db = db

    def save(self, record: CalculationRecord) -> None:
        try:
            self.db.add(record)
            self.db.commit()
            logger.info(f"Saved calculation record {record.calculation_id}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to save calculation record {record.calculation_id}: {e}")
            raise AuditWriteFailure(f"Could not save calculation {record.calculation_id}: {e}") from e

    def get(self, calculation_id: str) -> Optional[CalculationRecord]:
        return (
            self.db.query(CalculationRecord)
            .filter(CalculationRecord.calculation_id == calculation_id)
            .first()
        )

    def list_recent(self, limit: int) -> List[CalculationRecord]:
        return (
            self.db.query(CalculationRecord)
            .order_by(CalculationRecord.created_at.desc(), CalculationRecord.id.desc())
            .limit(limit)
            .all()
        )
