"""
api/routes/v1/threats.py -- Threat catalog routes.

Routes:
  POST   /threats                               -- create threat
  GET    /threats                               -- list (?threat_type=&origin=)
  POST   /threats/import-magerit                -- load the MAGERIT catalog excerpt
  POST   /threats/sync-cves                     -- pull recent CVEs from NVD
  GET    /threats/{threat_id}                   -- threat detail
  PATCH  /threats/{threat_id}                   -- update; recalculates the threat's risks
  DELETE /threats/{threat_id}                   -- delete
  POST   /threats/{threat_id}/assets/{asset_id} -- mark a threat as applicable to an asset

The two bulk routes are tightly limited: sync-cves makes outbound NVD calls
and NVD throttles unauthenticated clients to 5 requests per 30 seconds.
"""

from typing import Optional

from fastapi import APIRouter, Query, Request, Response

from api.dependencies import domain_fields, get_service, get_store, invalidate_reports
from api.limiter import limiter
from api.models import (
    IngestResponse,
    MageritImportResponse,
    ThreatCreate,
    ThreatResponse,
    ThreatUpdate,
)
from core.errors import NotFound
from core.models import CVESeverity, Threat, ThreatOrigin, ThreatType
from registry.ingest import import_magerit_threats, sync_recent_cves

router = APIRouter()


@limiter.limit("30/minute")
@router.post("/threats", response_model=ThreatResponse, status_code=201)
def create_threat(request: Request, body: ThreatCreate) -> ThreatResponse:
    fields = domain_fields(body)
    fields["discovery_date"] = fields["discovery_date"] or ""
    created = get_store(request).create_threat(Threat(**fields))
    invalidate_reports(request)
    return ThreatResponse.from_domain(created)


@limiter.limit("60/minute")
@router.get("/threats", response_model=list[ThreatResponse])
def list_threats(
    request: Request,
    threat_type: Optional[ThreatType] = None,
    origin: Optional[ThreatOrigin] = None,
) -> list[ThreatResponse]:
    threats = get_store(request).list_threats(
        threat_type.value if threat_type else None,
        origin.value if origin else None,
    )
    return [ThreatResponse.from_domain(t) for t in threats]


@limiter.limit("5/minute")
@router.post("/threats/import-magerit", response_model=MageritImportResponse)
def import_magerit(
    request: Request,
    overwrite: bool = False,
    threat_type: Optional[ThreatType] = None,
) -> MageritImportResponse:
    """Load the bundled MAGERIT threat catalog. Existing codes are skipped unless overwrite=true."""
    result = import_magerit_threats(
        get_store(request), overwrite=overwrite, threat_type=threat_type.value if threat_type else None
    )
    if result.imported or result.updated:
        invalidate_reports(request)
    return MageritImportResponse(**vars(result))


@limiter.limit("2/minute")
@router.post("/threats/sync-cves", response_model=IngestResponse)
def sync_cves(
    request: Request,
    days: int = Query(default=7, ge=1, le=120),
    severity: Optional[CVESeverity] = None,
) -> IngestResponse:
    """Fetch CVEs modified in the last `days` days and upsert one threat per CVE.

    Risks built on threats whose CVE data changed are recalculated. An
    unreachable NVD yields an all-zero result, not an error.
    """
    result = sync_recent_cves(
        get_store(request),
        days=days,
        severity=severity.value if severity else None,
        service=get_service(request),
    )
    if result.processed:
        invalidate_reports(request)
    return IngestResponse(**vars(result))


@limiter.limit("60/minute")
@router.get("/threats/{threat_id}", response_model=ThreatResponse)
def get_threat(request: Request, threat_id: int) -> ThreatResponse:
    threat = get_store(request).get_threat(threat_id)
    if threat is None:
        raise NotFound("Threat", threat_id)
    return ThreatResponse.from_domain(threat)


@limiter.limit("30/minute")
@router.patch("/threats/{threat_id}", response_model=ThreatResponse)
def update_threat(request: Request, threat_id: int, body: ThreatUpdate) -> ThreatResponse:
    updated = get_store(request).update_threat(threat_id, **domain_fields(body, partial=True))
    get_service(request).refresh_threat_risks(threat_id)
    invalidate_reports(request)
    return ThreatResponse.from_domain(updated)


@limiter.limit("30/minute")
@router.delete("/threats/{threat_id}", status_code=204)
def delete_threat(request: Request, threat_id: int) -> Response:
    get_store(request).delete_threat(threat_id)
    invalidate_reports(request)
    return Response(status_code=204)


@limiter.limit("30/minute")
@router.post("/threats/{threat_id}/assets/{asset_id}", response_model=ThreatResponse)
def assign_to_asset(request: Request, threat_id: int, asset_id: int) -> ThreatResponse:
    store = get_store(request)
    store.assign_threat_to_asset(threat_id, asset_id)
    return ThreatResponse.from_domain(store.get_threat(threat_id))
