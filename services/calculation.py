# WORKFLOW: Calculation orchestrator that produces a landed-cost duty calculation.
# Used by: Calculator endpoints
# Functions:
# 1. calculate() - Full request/response cycle for one shipment
# 2. get_calculation() - Retrieve an audit record by calculation id
# 3. list_recent() - Most recent audit records
# 4. generate_calculation_id() - CALC-<epoch ms>-<random> identifier
#
# Calculation flow: Formula source selector -> Base duty -> Trade agreement check (may replace formula)
#   -> Additional tariffs -> Post-calculation taxes -> Totals -> Response validation -> Audit record
# Monetary fields are rounded to cents only when the response is built.

import random
import string
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import AuditWriteFailure
from db.models import CalculationRecord
from db.repositories import CalculationRecordRepository
from services.expression_evaluator import build_variables, evaluate_formula, round_currency
from services.formula_sources import FormulaSourceSelector, create_formula_source_selector
from services.note_resolver import create_note_resolver
from services.policy_conditions import PolicyContext, normalize_headings
from services.policy_engine import PolicyEngine, create_policy_engine
from services.trade_agreements import TradeAgreementChecker, create_trade_agreement_checker
import logging

logger = logging.getLogger(__name__)

HEADING_INPUT_KEYS = ("chapter99_heading", "chapter99Heading")
HEADINGS_INPUT_KEYS = ("chapter99_headings", "chapter99Headings")
TRANSPORT_MODE_KEYS = ("transport_mode", "transportMode")


@dataclass
class CalculationInput:
    hts_number: str
    country_of_origin: str
    declared_value: float
    entry_date: Optional[date] = None
    weight_kg: Optional[float] = None
    quantity: Optional[float] = None
    quantity_unit: Optional[str] = None
    hts_version: Optional[str] = None
    trade_agreement_code: Optional[str] = None
    trade_agreement_certificate: bool = False
    additional_inputs: Dict[str, Any] = field(default_factory=dict)
    currency: str = "USD"


def generate_calculation_id() -> str:
    timestamp = int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"CALC-{timestamp}-{suffix}".upper()


def selected_headings(additional_inputs: Dict[str, Any]) -> List[str]:
    """Special-program headings selected by the caller, normalized."""
    raw: List[str] = []
    for key in HEADING_INPUT_KEYS:
        value = additional_inputs.get(key)
        if isinstance(value, str):
            raw.append(value)
    for key in HEADINGS_INPUT_KEYS:
        value = additional_inputs.get(key)
        if isinstance(value, (list, tuple)):
            raw.extend(str(item) for item in value if item is not None)
    return normalize_headings(raw)


def transport_mode(additional_inputs: Dict[str, Any]) -> Optional[str]:
    for key in TRANSPORT_MODE_KEYS:
        value = additional_inputs.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def record_to_dict(record: CalculationRecord) -> Dict[str, Any]:
    return {
        "calculation_id": record.calculation_id,
        "hts_number": record.hts_number,
        "country_code": record.country_code,
        "inputs": record.inputs,
        "base_duty": record.base_duty,
        "additional_tariffs": record.total_additional_tariffs,
        "total_taxes": record.total_taxes,
        "total_duty": record.total_duty,
        "landed_cost": record.landed_cost,
        "breakdown": record.breakdown,
        "formula_used": record.formula_used,
        "rate_source": record.rate_source,
        "confidence": record.confidence,
        "trade_agreement_info": record.trade_agreement_info,
        "hts_version": record.hts_version,
        "engine_version": record.engine_version,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


class CalculationService:
    """Composes rate resolution, evaluation, trade agreements and policies into one calculation."""

    def __init__(
        self,
        selector: FormulaSourceSelector,
        trade_checker: TradeAgreementChecker,
        policy_engine: PolicyEngine,
        history: CalculationRecordRepository,
        engine_version: Optional[str] = None,
        response_validator: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ):
        self.selector = selector
        self.trade_checker = trade_checker
        self.policy_engine = policy_engine
        self.history = history
        self.engine_version = engine_version or settings.engine_version
        self.response_validator = response_validator

    async def calculate(self, calc_input: CalculationInput) -> Dict[str, Any]:
        """
        Calculate duty, extra charges and landed cost for a shipment.

        Args:
            calc_input: Shipment and trade context

        Returns:
            Calculation response dictionary

        Raises:
            NotFound: No tariff entry or formula for the code
            EvaluationError: The base duty formula cannot be evaluated
        """
        calculation_id = generate_calculation_id()
        country = calc_input.country_of_origin.upper()
        additional_inputs = calc_input.additional_inputs or {}
        headings = selected_headings(additional_inputs)

        logger.info(
            f"Calculating {calculation_id}: HTS={calc_input.hts_number}, Origin={country}, "
            f"Value={calc_input.declared_value}"
        )

        try:
            rate = await self.selector.get_rate(
                calc_input.hts_number,
                country,
                version=calc_input.hts_version,
                entry_date=calc_input.entry_date,
                selected_headings=headings,
            )

            base_variables = build_variables(
                calc_input.declared_value, calc_input.weight_kg, calc_input.quantity
            )

            trade_info = self.trade_checker.check(
                calc_input.hts_number,
                calc_input.trade_agreement_code,
                calc_input.trade_agreement_certificate,
            )

            if trade_info.eligible and trade_info.preferential_formula:
                formula_used = trade_info.preferential_formula
                rate_source = f"trade-agreement-{trade_info.agreement}"
                logger.info(f"Using preferential rate from {trade_info.agreement}")
            else:
                formula_used = rate.formula
                rate_source = rate.source

            base_duty = evaluate_formula(formula_used, base_variables)

            variables = build_variables(
                calc_input.declared_value,
                calc_input.weight_kg,
                calc_input.quantity,
                duty=base_duty,
                total=calc_input.declared_value + base_duty,
            )

            policy_ctx = PolicyContext(
                hts_number=calc_input.hts_number,
                country=country,
                declared_value=calc_input.declared_value,
                entry_date=calc_input.entry_date or datetime.now(timezone.utc).date(),
                selected_headings=set(headings),
                additional_inputs=additional_inputs,
                trade_agreement_code=calc_input.trade_agreement_code,
                trade_agreement_certificate=calc_input.trade_agreement_certificate,
                transport_mode=transport_mode(additional_inputs),
            )

            if rate.suppress_extra_charges:
                logger.info(f"Manual override for {calc_input.hts_number} suppresses extra charges")
                additional_tariffs: List[Dict[str, Any]] = []
                taxes: List[Dict[str, Any]] = []
            else:
                additional_tariffs = self.policy_engine.calculate_additional_tariffs(policy_ctx, variables)
                taxes = self.policy_engine.calculate_taxes(policy_ctx, variables)

            total_additional = sum(charge["amount"] for charge in additional_tariffs)
            total_taxes = sum(charge["amount"] for charge in taxes)
            total_duty = base_duty + total_additional
            landed_cost = calc_input.declared_value + total_duty + total_taxes

            response = {
                "calculation_id": calculation_id,
                "base_duty": round_currency(base_duty),
                "additional_tariffs": round_currency(total_additional),
                "total_taxes": round_currency(total_taxes),
                "total_duty": round_currency(total_duty),
                "landed_cost": round_currency(landed_cost),
                "breakdown": {
                    "base_duty": round_currency(base_duty),
                    "additional_tariffs": additional_tariffs,
                    "taxes": taxes,
                    "total_duty": round_currency(total_duty),
                    "total_tax": round_currency(total_taxes),
                    "landed_cost": round_currency(landed_cost),
                },
                "formula_used": formula_used,
                "rate_source": rate_source,
                "confidence": rate.confidence,
                "trade_agreement_info": trade_info.to_dict(),
            }
        except Exception as e:
            logger.error(f"Calculation {calculation_id} failed: {e}")
            raise

        # Rejected responses never reach the audit trail
        if self.response_validator is not None:
            self.response_validator(response)

        self._save(calc_input, response)
        return response

    def _save(self, calc_input: CalculationInput, response: Dict[str, Any]) -> None:
        record = CalculationRecord(
            calculation_id=response["calculation_id"],
            hts_number=calc_input.hts_number,
            country_code=calc_input.country_of_origin.upper(),
            inputs={
                "hts_number": calc_input.hts_number,
                "country_of_origin": calc_input.country_of_origin.upper(),
                "declared_value": calc_input.declared_value,
                "currency": calc_input.currency or "USD",
                "entry_date": calc_input.entry_date.isoformat() if calc_input.entry_date else None,
                "weight_kg": calc_input.weight_kg,
                "quantity": calc_input.quantity,
                "quantity_unit": calc_input.quantity_unit,
                "trade_agreement_code": calc_input.trade_agreement_code,
                "trade_agreement_certificate": calc_input.trade_agreement_certificate,
                "additional_inputs": calc_input.additional_inputs or {},
            },
            base_duty=response["base_duty"],
            additional_tariffs=response["breakdown"]["additional_tariffs"],
            taxes=response["breakdown"]["taxes"],
            total_additional_tariffs=response["additional_tariffs"],
            total_taxes=response["total_taxes"],
            total_duty=response["total_duty"],
            landed_cost=response["landed_cost"],
            breakdown=response["breakdown"],
            formula_used=response["formula_used"],
            rate_source=response["rate_source"],
            confidence=response["confidence"],
            trade_agreement_info=response["trade_agreement_info"],
            hts_version=calc_input.hts_version or settings.default_hts_version,
            engine_version=self.engine_version,
        )
        try:
            self.history.save(record)
        except AuditWriteFailure as e:
            logger.error(f"Audit record for {response['calculation_id']} not saved: {e}")

    def get_calculation(self, calculation_id: str) -> Optional[Dict[str, Any]]:
        record = self.history.get(calculation_id)
        return record_to_dict(record) if record else None

    def list_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        limit = max(1, min(limit, settings.max_history_limit))
        return [record_to_dict(record) for record in self.history.list_recent(limit)]


def create_calculation_service(
    db: Session,
    response_validator: Optional[Callable[[Dict[str, Any]], Any]] = None,
) -> CalculationService:
    """Factory function to create a calculation service instance."""
    return CalculationService(
        selector=create_formula_source_selector(db, note_resolver=create_note_resolver()),
        trade_checker=create_trade_agreement_checker(db),
        policy_engine=create_policy_engine(db),
        history=CalculationRecordRepository(db),
        response_validator=response_validator,
    )
