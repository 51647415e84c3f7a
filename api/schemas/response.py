# WORKFLOW: Pydantic response schemas that match the JSON Schema in schema/.
# Used by: Calculator endpoints, testing
# Schemas include:
# 1. CalculationResponse - Result of one landed-cost calculation
# 2. Breakdown/ChargeLine - Itemized duty, additional tariffs and taxes
# 3. TradeAgreementInfo - Preferential rate outcome
# 4. CalculationRecordResponse - Stored audit record
#
# Response flow: Calculation service -> Pydantic model -> JSON Schema validation -> API response

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class ChargeLine(BaseModel):
    type: str = Field(..., description="Policy tax code")
    amount: float = Field(..., ge=0)
    description: Optional[str] = None


class Breakdown(BaseModel):
    base_duty: float
    additional_tariffs: List[ChargeLine] = Field(default_factory=list)
    taxes: List[ChargeLine] = Field(default_factory=list)
    total_duty: float
    total_tax: float
    landed_cost: float


class TradeAgreementInfo(BaseModel):
    agreement: str
    eligible: bool
    preferential_rate: Optional[float] = None
    preferential_formula: Optional[str] = None
    requires_certificate: Optional[bool] = None


class CalculationResponse(BaseModel):
    """Response schema for a landed-cost calculation."""
    calculation_id: str
    base_duty: float
    additional_tariffs: float
    total_taxes: float
    total_duty: float
    landed_cost: float
    breakdown: Breakdown
    formula_used: str
    rate_source: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    trade_agreement_info: TradeAgreementInfo


class CalculationRecordResponse(BaseModel):
    """Stored calculation audit record."""
    calculation_id: str
    hts_number: str
    country_code: str
    inputs: Dict[str, Any]
    base_duty: float
    additional_tariffs: float
    total_taxes: float
    total_duty: float
    landed_cost: float
    breakdown: Dict[str, Any]
    formula_used: str
    rate_source: str
    confidence: float
    trade_agreement_info: Optional[Dict[str, Any]] = None
    hts_version: Optional[str] = None
    engine_version: Optional[str] = None
    created_at: Optional[str] = None


class CalculationListResponse(BaseModel):
    count: int
    calculations: List[CalculationRecordResponse]
