"""
api/routes/v1/vulnerabilities.py -- Vulnerability registry routes.

  POST   /vulnerabilities
  GET    /vulnerabilities            (?state=)
  GET    /vulnerabilities/{vuln_id}
  PATCH  /vulnerabilities/{vuln_id}  -- recalculates risks that reference it
  DELETE /vulnerabilities/{vuln_id}
"""

from typing import Optional

from fastapi import APIRouter, Request, Response

from api.dependencies import domain_fields, get_service, get_store, invalidate_reports
from api.limiter import limiter
from api.models import VulnerabilityCreate, VulnerabilityResponse, VulnerabilityUpdate
from core.errors import NotFound
from core.models import Vulnerability, VulnerabilityState

router = APIRouter()


@limiter.limit("30/minute")
@router.post("/vulnerabilities", response_model=VulnerabilityResponse, status_code=201)
def create_vulnerability(request: Request, body: VulnerabilityCreate) -> VulnerabilityResponse:
    created = get_store(request).create_vulnerability(Vulnerability(**domain_fields(body)))
    invalidate_reports(request)
    return VulnerabilityResponse.from_domain(created)


@limiter.limit("60/minute")
@router.get("/vulnerabilities", response_model=list[VulnerabilityResponse])
def list_vulnerabilities(
    request: Request, state: Optional[VulnerabilityState] = None
) -> list[VulnerabilityResponse]:
    vulns = get_store(request).list_vulnerabilities(state.value if state else None)
    return [VulnerabilityResponse.from_domain(v) for v in vulns]


@limiter.limit("60/minute")
@router.get("/vulnerabilities/{vuln_id}", response_model=VulnerabilityResponse)
def get_vulnerability(request: Request, vuln_id: int) -> VulnerabilityResponse:
    vuln = get_store(request).get_vulnerability(vuln_id)
    if vuln is None:
        raise NotFound("Vulnerability", vuln_id)
    return VulnerabilityResponse.from_domain(vuln)


@limiter.limit("30/minute")
@router.patch("/vulnerabilities/{vuln_id}", response_model=VulnerabilityResponse)
def update_vulnerability(request: Request, vuln_id: int, body: VulnerabilityUpdate) -> VulnerabilityResponse:
    updated = get_store(request).update_vulnerability(vuln_id, **domain_fields(body, partial=True))
    get_service(request).refresh_vulnerability_risks(vuln_id)
    invalidate_reports(request)
    return VulnerabilityResponse.from_domain(updated)


@limiter.limit("30/minute")
@router.delete("/vulnerabilities/{vuln_id}", status_code=204)
def delete_vulnerability(request: Request, vuln_id: int) -> Response:
    get_store(request).delete_vulnerability(vuln_id)
    invalidate_reports(request)
    return Response(status_code=204)
