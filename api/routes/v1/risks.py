"""
api/routes/v1/risks.py -- Risk quantification and risk register routes.

Routes (static paths before /risks/{risk_id} so they are not captured as ids):
  POST   /risks/calculate        -- compute a breakdown without storing it
  POST   /risks                  -- calculate and store (upsert by triple)
  GET    /risks                  -- list (?asset_id=&threat_id=&level=&include_inactive=)
  GET    /risks/matrix           -- active risks grouped by level, with stats
  GET    /risks/top              -- active risks by value at risk (?limit=)
  POST   /risks/recalculate      -- re-derive every active risk
  POST   /risks/retire-orphans   -- soft-delete risks whose inputs were deleted
  GET    /risks/{risk_id}
  DELETE /risks/{risk_id}        -- soft delete

Matrix and top reads go through the report cache held on app.state; every
write path in RiskService invalidates it.
"""

from typing import Optional

from fastapi import APIRouter, Query, Request, Response

from api.dependencies import get_cache, get_service, get_store
from api.limiter import limiter
from api.models import (
    RecalculationResponse,
    RetireResponse,
    RiskCalculationModel,
    RiskMatrixResponse,
    RiskRequest,
    RiskResponse,
)
from core.config import get_settings
from core.models import RiskLevel
from registry.reports import get_risk_matrix, get_top_risks

router = APIRouter()


@limiter.limit("60/minute")
@router.post("/risks/calculate", response_model=RiskCalculationModel)
def calculate_risk(request: Request, body: RiskRequest) -> RiskCalculationModel:
    """Return the full calculation breakdown for a triple. Nothing is stored."""
    calc = get_service(request).calculate_risk(body.asset_id, body.threat_id, body.vulnerability_id)
    return RiskCalculationModel.from_domain(calc)


@limiter.limit("30/minute")
@router.post("/risks", response_model=RiskResponse)
def create_or_update_risk(request: Request, body: RiskRequest) -> RiskResponse:
    """Calculate and persist the risk for a triple.

    Repeating the call with unchanged inputs returns the same record.
    """
    risk = get_service(request).create_or_update_risk(body.asset_id, body.threat_id, body.vulnerability_id)
    return RiskResponse.from_domain(risk)


@limiter.limit("60/minute")
@router.get("/risks", response_model=list[RiskResponse])
def list_risks(
    request: Request,
    asset_id: Optional[int] = None,
    threat_id: Optional[int] = None,
    level: Optional[RiskLevel] = None,
    include_inactive: bool = False,
) -> list[RiskResponse]:
    risks = get_store(request).list_risks(
        active_only=not include_inactive,
        asset_id=asset_id,
        threat_id=threat_id,
        level=level.value if level else None,
    )
    return [RiskResponse.from_domain(r) for r in risks]


@limiter.limit("30/minute")
@router.get("/risks/matrix", response_model=RiskMatrixResponse)
def risk_matrix(request: Request) -> RiskMatrixResponse:
    return RiskMatrixResponse.from_domain(get_risk_matrix(get_store(request), get_cache(request)))


@limiter.limit("30/minute")
@router.get("/risks/top", response_model=list[RiskResponse])
def top_risks(request: Request, limit: Optional[int] = Query(default=None, ge=1, le=100)) -> list[RiskResponse]:
    limit = limit or get_settings().top_risks_default
    risks = get_top_risks(get_store(request), limit=limit, cache=get_cache(request))
    return [RiskResponse.from_domain(r) for r in risks]


@limiter.limit("5/minute")
@router.post("/risks/recalculate", response_model=RecalculationResponse)
def recalculate_all(request: Request) -> RecalculationResponse:
    """Recalculate every active risk. Records with missing or invalid inputs count as errors."""
    result = get_service(request).recalculate_all_risks()
    return RecalculationResponse(processed=result.processed, errors=result.errors)


@limiter.limit("5/minute")
@router.post("/risks/retire-orphans", response_model=RetireResponse)
def retire_orphans(request: Request) -> RetireResponse:
    return RetireResponse(retired=get_service(request).retire_orphaned_risks())


@limiter.limit("60/minute")
@router.get("/risks/{risk_id}", response_model=RiskResponse)
def get_risk(request: Request, risk_id: int) -> RiskResponse:
    return RiskResponse.from_domain(get_service(request).get_risk(risk_id))


@limiter.limit("30/minute")
@router.delete("/risks/{risk_id}", status_code=204)
def delete_risk(request: Request, risk_id: int) -> Response:
    get_service(request).delete_risk(risk_id)
    return Response(status_code=204)
