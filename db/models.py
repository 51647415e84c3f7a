# WORKFLOW: Database models for the duty calculation reference data and audit trail.
# Used by: Repositories, seed scripts, calculation service, API endpoints
# Models represent:
# 1. hts_entries - Versioned tariff schedule rows with rate text and formulas
# 2. hts_formula_updates - Manual formula overrides per code/country/type/version
# 3. hts_tariff_history - Point-in-time historical rate snapshots (8-digit codes)
# 4. hts_extra_taxes - Declarative extra charge policy records
# 5. trade_agreement_eligibility - Preferential rate eligibility per code/agreement
# 6. calculation_history - Immutable calculation audit records
#
# Data flow: Seed/ETL -> Reference tables -> Rate resolution -> Calculation -> Audit record

from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Date, DateTime, Text, JSON, Index,
    UniqueConstraint, event,
)
from sqlalchemy.orm import declarative_base, validates

from core.exceptions import AuditWriteFailure

Base = declarative_base()


def digits_only(code: str) -> str:
    """Strip separators from a tariff code."""
    return "".join(ch for ch in (code or "") if ch.isdigit())


class TariffCodeEntry(Base):
    __tablename__ = "hts_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hts_number = Column(String(20), nullable=False)
    hts_digits = Column(String(10), nullable=False, index=True)
    chapter = Column(String(2), nullable=False)
    version = Column(String(20), nullable=True)
    source_version = Column(String(20), nullable=True)
    description = Column(Text, nullable=True)
    unit_of_quantity = Column(String(50), nullable=True)

    # Rate columns
    general_rate = Column(String(255), nullable=True)
    general = Column(String(255), nullable=True)  # Legacy general column
    rate_formula = Column(String(500), nullable=True)
    other_rate = Column(String(255), nullable=True)
    other_rate_formula = Column(String(500), nullable=True)
    adjusted_formula = Column(String(500), nullable=True)

    # Special program (chapter 99) signals
    chapter99 = Column(Text, nullable=True)
    chapter99_links = Column(JSON, nullable=True)  # List of linked headings
    chapter99_applicable_countries = Column(JSON, nullable=True)
    non_ntr_applicable_countries = Column(JSON, nullable=True)
    other_chapter99_detail = Column(JSON, nullable=True)  # {formula, countries, variables}

    entry_metadata = Column("metadata", JSON, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('hts_number', 'version', name='uq_hts_number_version'),
        Index('idx_hts_digits_active', 'hts_digits', 'is_active'),
        Index('idx_hts_version', 'version', 'source_version'),
    )

    @validates('hts_number')
    def _derive_digits(self, key, value):
        digits = digits_only(value)
        self.hts_digits = digits
        self.chapter = digits[:2]
        return value


class ManualFormulaOverride(Base):
    __tablename__ = "hts_formula_updates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hts_number = Column(String(20), nullable=False)
    hts_digits = Column(String(10), nullable=False)
    country_code = Column(String(3), nullable=False, default="ALL")
    formula_type = Column(String(30), nullable=False)
    formula = Column(String(500), nullable=False)
    formula_variables = Column(JSON, nullable=True)
    comment = Column(Text, nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    carryover = Column(Boolean, default=True, nullable=False)
    override_extra_tax = Column(Boolean, default=False, nullable=False)
    update_version = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_override_lookup', 'hts_digits', 'formula_type', 'active'),
        Index('idx_override_country', 'country_code'),
    )

    @validates('hts_number')
    def _derive_digits(self, key, value):
        self.hts_digits = digits_only(value)
        return value


class HistoricalRateSnapshot(Base):
    __tablename__ = "hts_tariff_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hts8 = Column(String(8), nullable=False)
    source_year = Column(Integer, nullable=False)
    brief_description = Column(Text, nullable=True)
    quantity_1_code = Column(String(10), nullable=True)
    quantity_2_code = Column(String(10), nullable=True)
    mfn_text_rate = Column(String(255), nullable=True)
    mfn_ad_val_rate = Column(Float, nullable=True)
    mfn_specific_rate = Column(Float, nullable=True)
    mfn_other_rate = Column(Float, nullable=True)
    begin_effect_date = Column(Date, nullable=False)
    end_effective_date = Column(Date, nullable=False)

    __table_args__ = (
        Index('idx_history_hts8_year', 'hts8', 'source_year'),
        Index('idx_history_validity', 'begin_effect_date', 'end_effective_date'),
    )


class PolicyRecord(Base):
    __tablename__ = "hts_extra_taxes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tax_code = Column(String(100), nullable=False, unique=True)
    tax_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    hts_number = Column(String(20), nullable=True)  # None or '*' applies to all codes
    hts_chapter = Column(String(2), nullable=True)
    country_code = Column(String(3), nullable=False, default="ALL")
    extra_rate_type = Column(String(30), nullable=False)  # ADD_ON, POST_CALCULATION, STANDALONE, CONDITIONAL
    rate_text = Column(String(255), nullable=True)
    rate_formula = Column(String(500), nullable=True)
    minimum_amount = Column(Float, nullable=True)
    maximum_amount = Column(Float, nullable=True)
    is_percentage = Column(Boolean, default=False, nullable=False)
    apply_to = Column(String(30), nullable=True)
    conditions = Column(JSON, nullable=True)
    priority = Column(Integer, default=50, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    effective_date = Column(Date, nullable=True)
    expiration_date = Column(Date, nullable=True)
    legal_reference = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    policy_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_extra_tax_type_active', 'extra_rate_type', 'is_active'),
        Index('idx_extra_tax_priority', 'priority'),
    )


class TradeAgreementEligibility(Base):
    __tablename__ = "trade_agreement_eligibility"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hts_number = Column(String(20), nullable=False)
    trade_agreement_code = Column(String(20), nullable=False)
    is_eligible = Column(Boolean, default=True, nullable=False)
    preferential_rate = Column(Float, nullable=True)
    rate_type = Column(String(20), nullable=True)  # PERCENTAGE, SPECIFIC, FLAT
    certificate_required = Column(Boolean, default=False, nullable=False)
    certificate_type = Column(String(50), nullable=True)

    __table_args__ = (
        UniqueConstraint('hts_number', 'trade_agreement_code', name='uq_eligibility_code_agreement'),
    )


class CalculationRecord(Base):
    __tablename__ = "calculation_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    calculation_id = Column(String(50), nullable=False, unique=True, index=True)
    hts_number = Column(String(20), nullable=False)
    country_code = Column(String(3), nullable=False)
    inputs = Column(JSON, nullable=False)
    base_duty = Column(Float, nullable=False)
    additional_tariffs = Column(JSON, nullable=False)  # List of charge lines
    taxes = Column(JSON, nullable=False)  # List of charge lines
    total_additional_tariffs = Column(Float, nullable=False)
    total_taxes = Column(Float, nullable=False)
    total_duty = Column(Float, nullable=False)
    landed_cost = Column(Float, nullable=False)
    breakdown = Column(JSON, nullable=False)
    formula_used = Column(String(500), nullable=True)
    rate_source = Column(String(100), nullable=True)
    confidence = Column(Float, nullable=True)
    trade_agreement_info = Column(JSON, nullable=True)
    hts_version = Column(String(20), nullable=True)
    engine_version = Column(String(20), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


@event.listens_for(CalculationRecord, "before_update")
def _reject_calculation_update(mapper, connection, target):
    raise AuditWriteFailure(f"Calculation record {target.calculation_id} is immutable")
