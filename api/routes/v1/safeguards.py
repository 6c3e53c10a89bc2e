"""
api/routes/v1/safeguards.py -- Safeguard (control) lifecycle routes.

Routes:
  POST   /safeguards
  GET    /safeguards                               (?state=&category=)
  GET    /safeguards/expired                       -- implemented, review date passed
  GET    /safeguards/upcoming-reviews              (?days=30)
  GET    /safeguards/recommendations/{risk_id}     -- existing + suggested controls for a risk
  GET    /safeguards/{sg_id}
  PATCH  /safeguards/{sg_id}                       -- KPIs cannot be patched; POST them
  DELETE /safeguards/{sg_id}
  POST   /safeguards/{sg_id}/implement             -- mark Implemented, schedule review
  POST   /safeguards/{sg_id}/kpis                  -- append a KPI measurement
  POST   /safeguards/{sg_id}/risks/{risk_id}       -- link the safeguard to a risk it mitigates
"""

from typing import Optional

from fastapi import APIRouter, Query, Request, Response

from api.dependencies import domain_fields, get_cache, get_store, invalidate_reports, iso
from api.limiter import limiter
from api.models import (
    ImplementRequest,
    KPICreate,
    KPIModel,
    RecommendationModel,
    RecommendationsResponse,
    SafeguardCreate,
    SafeguardResponse,
    SafeguardUpdate,
)
from core.errors import NotFound
from core.models import Safeguard, SafeguardCategory, SafeguardDocument, SafeguardState
from registry.safeguards import add_kpi, implement_safeguard, recommend_safeguards_for_risk

router = APIRouter()


def _documents(fields: dict) -> None:
    if "documentation" in fields:
        fields["documentation"] = [SafeguardDocument(**d) for d in fields["documentation"]]


@limiter.limit("30/minute")
@router.post("/safeguards", response_model=SafeguardResponse, status_code=201)
def create_safeguard(request: Request, body: SafeguardCreate) -> SafeguardResponse:
    fields = domain_fields(body)
    _documents(fields)
    created = get_store(request).create_safeguard(Safeguard(**fields))
    invalidate_reports(request)
    return SafeguardResponse.from_domain(created)


@limiter.limit("60/minute")
@router.get("/safeguards", response_model=list[SafeguardResponse])
def list_safeguards(
    request: Request,
    state: Optional[SafeguardState] = None,
    category: Optional[SafeguardCategory] = None,
) -> list[SafeguardResponse]:
    safeguards = get_store(request).list_safeguards(
        state.value if state else None,
        category.value if category else None,
    )
    return [SafeguardResponse.from_domain(sg) for sg in safeguards]


@limiter.limit("30/minute")
@router.get("/safeguards/expired", response_model=list[SafeguardResponse])
def expired_safeguards(request: Request) -> list[SafeguardResponse]:
    return [SafeguardResponse.from_domain(sg) for sg in get_store(request).expired_safeguards()]


@limiter.limit("30/minute")
@router.get("/safeguards/upcoming-reviews", response_model=list[SafeguardResponse])
def upcoming_reviews(request: Request, days: int = Query(default=30, ge=1, le=365)) -> list[SafeguardResponse]:
    return [SafeguardResponse.from_domain(sg) for sg in get_store(request).upcoming_reviews(days=days)]


@limiter.limit("30/minute")
@router.get("/safeguards/recommendations/{risk_id}", response_model=RecommendationsResponse)
def recommendations(request: Request, risk_id: int) -> RecommendationsResponse:
    rec = recommend_safeguards_for_risk(get_store(request), risk_id)
    return RecommendationsResponse(
        risk_id=rec.risk_id,
        existing=[SafeguardResponse.from_domain(sg) for sg in rec.existing],
        recommended=[RecommendationModel(**vars(r)) for r in rec.recommended],
    )


@limiter.limit("60/minute")
@router.get("/safeguards/{sg_id}", response_model=SafeguardResponse)
def get_safeguard(request: Request, sg_id: int) -> SafeguardResponse:
    sg = get_store(request).get_safeguard(sg_id)
    if sg is None:
        raise NotFound("Safeguard", sg_id)
    return SafeguardResponse.from_domain(sg)


@limiter.limit("30/minute")
@router.patch("/safeguards/{sg_id}", response_model=SafeguardResponse)
def update_safeguard(request: Request, sg_id: int, body: SafeguardUpdate) -> SafeguardResponse:
    fields = domain_fields(body, partial=True)
    _documents(fields)
    updated = get_store(request).update_safeguard(sg_id, **fields)
    invalidate_reports(request)
    return SafeguardResponse.from_domain(updated)


@limiter.limit("30/minute")
@router.delete("/safeguards/{sg_id}", status_code=204)
def delete_safeguard(request: Request, sg_id: int) -> Response:
    get_store(request).delete_safeguard(sg_id)
    invalidate_reports(request)
    return Response(status_code=204)


@limiter.limit("30/minute")
@router.post("/safeguards/{sg_id}/implement", response_model=SafeguardResponse)
def implement(request: Request, sg_id: int, body: Optional[ImplementRequest] = None) -> SafeguardResponse:
    """Mark Implemented. The next review is implemented_at + review_period_months."""
    implemented_at = body.implemented_at if body else None
    sg = implement_safeguard(get_store(request), sg_id, implemented_at=implemented_at, cache=get_cache(request))
    return SafeguardResponse.from_domain(sg)


@limiter.limit("60/minute")
@router.post("/safeguards/{sg_id}/kpis", response_model=KPIModel, status_code=201)
def create_kpi(request: Request, sg_id: int, body: KPICreate) -> KPIModel:
    kpi = add_kpi(
        get_store(request),
        sg_id,
        name=body.name,
        value=body.value,
        unit=body.unit,
        measured_at=iso(body.measured_at) if body.measured_at else None,
        cache=get_cache(request),
    )
    return KPIModel.from_domain(kpi)


@limiter.limit("30/minute")
@router.post("/safeguards/{sg_id}/risks/{risk_id}", response_model=SafeguardResponse)
def link_to_risk(request: Request, sg_id: int, risk_id: int) -> SafeguardResponse:
    store = get_store(request)
    store.link_safeguard_to_risk(sg_id, risk_id)
    invalidate_reports(request)
    return SafeguardResponse.from_domain(store.get_safeguard(sg_id))
