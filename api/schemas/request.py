# WORKFLOW: Pydantic request schemas for API input validation.
# Used by: FastAPI endpoints for request validation and documentation
# Schemas include:
# 1. CalculateRequest - For /calculator/calculate endpoint
#
# Validation flow: HTTP request -> Pydantic validation -> Endpoint processing
# Ensures all inputs are properly formatted and validated before processing.

from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any
from datetime import date

from services.calculation import CalculationInput


class CalculateRequest(BaseModel):
    """Request schema for a landed-cost calculation."""
    hts_number: str = Field(..., min_length=4, max_length=20, description="Tariff code, dotted or digits")
    country_of_origin: str = Field(..., min_length=2, max_length=3, description="ISO country code")
    declared_value: float = Field(..., ge=0, description="Customs value in USD")
    currency: Optional[str] = Field("USD", min_length=3, max_length=3, description="Currency code")
    entry_date: Optional[date] = Field(None, description="Date of entry")
    weight_kg: Optional[float] = Field(None, ge=0, description="Net weight in kilograms")
    quantity: Optional[float] = Field(None, ge=0, description="Quantity in the reporting unit")
    quantity_unit: Optional[str] = Field(None, description="Reporting unit of the quantity")
    hts_version: Optional[str] = Field(None, description="Schedule version, e.g. 2025")
    trade_agreement_code: Optional[str] = Field(None, description="Trade agreement code, e.g. USMCA")
    trade_agreement_certificate: bool = Field(False, description="Certificate of origin supplied")
    additional_inputs: Dict[str, Any] = Field(default_factory=dict, description="Policy flags and selected headings")

    @validator('hts_number')
    def validate_hts_number(cls, v):
        v = v.strip()
        if not any(ch.isdigit() for ch in v):
            raise ValueError('Tariff code must contain digits')
        if any(not (ch.isdigit() or ch == '.') for ch in v):
            raise ValueError('Tariff code may only contain digits and dots')
        return v

    @validator('country_of_origin')
    def validate_country(cls, v):
        return v.strip().upper()

    def to_input(self) -> CalculationInput:
        return CalculationInput(
            hts_number=self.hts_number,
            country_of_origin=self.country_of_origin,
            declared_value=self.declared_value,
            entry_date=self.entry_date,
            weight_kg=self.weight_kg,
            quantity=self.quantity,
            quantity_unit=self.quantity_unit,
            hts_version=self.hts_version,
            trade_agreement_code=self.trade_agreement_code,
            trade_agreement_certificate=self.trade_agreement_certificate,
            additional_inputs=self.additional_inputs,
            currency=self.currency or "USD",
        )
