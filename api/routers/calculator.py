# WORKFLOW: Calculator endpoints for landed-cost duty calculations.
# Used by: Direct API calls, integration testing, audit review
# Endpoints:
# 1. /calculator/calculate - Run one calculation and persist its audit record
# 2. /calculator/calculations/{calculation_id} - Retrieve a stored calculation
# 3. /calculator/calculations - List the most recent stored calculations
#
# Request flow: HTTP POST -> Request validation -> Calculation service -> Schema validation -> Response
# Error mapping: NotFound -> 404, EvaluationError -> 422, anything else -> 500

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
import jsonschema
import logging

from api.schemas.request import CalculateRequest
from api.schemas.response import CalculationListResponse, CalculationRecordResponse, CalculationResponse
from api.schemas.validation import validate_response_dict
from core.config import settings
from core.exceptions import EvaluationError, NotFound
from db.session import get_db
from services.calculation import create_calculation_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calculator", tags=["calculator"])


@router.post("/calculate", response_model=CalculationResponse)
async def calculate(
    request: CalculateRequest,
    db: Session = Depends(get_db),
):
    """
    Calculate base duty, additional tariffs, taxes and landed cost for a shipment.

    Every successful calculation is stored in the audit trail; a failed audit
    write is logged and does not change the response.
    """
    try:
        logger.info(
            f"Calculate request: HTS={request.hts_number}, Origin={request.country_of_origin}, "
            f"Value={request.declared_value}"
        )

        service = create_calculation_service(db, response_validator=validate_response_dict)
        return await service.calculate(request.to_input())

    except NotFound as e:
        logger.warning(f"Calculation lookup failed: {e}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except EvaluationError as e:
        logger.error(f"Formula evaluation failed: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except jsonschema.ValidationError as e:
        logger.error(f"Calculation response failed schema validation: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Calculation response failed schema validation",
        )
    except Exception as e:
        logger.error(f"Calculate request failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to calculate duty: {str(e)}",
        )


@router.get("/calculations/{calculation_id}", response_model=CalculationRecordResponse)
async def get_calculation(calculation_id: str, db: Session = Depends(get_db)):
    """Retrieve a stored calculation by id."""
    record = create_calculation_service(db).get_calculation(calculation_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Calculation {calculation_id} not found",
        )
    return record


@router.get("/calculations", response_model=CalculationListResponse)
async def list_calculations(
    limit: int = Query(20, ge=1, le=settings.max_history_limit),
    db: Session = Depends(get_db),
):
    """List the most recent stored calculations, newest first."""
    records = create_calculation_service(db).list_recent(limit)
    return {"count": len(records), "calculations": records}
