"""
api/routes/v1/assets.py -- Asset registry routes for the SIGRISK REST API.

Routes (in registration order to avoid FastAPI path capture conflicts):
  POST   /assets                          -- create asset
  GET    /assets                          -- list assets (?asset_type=)
  POST   /assets/import                   -- bulk CSV upload
  GET    /assets/{asset_id}               -- asset detail
  PATCH  /assets/{asset_id}               -- update; recalculates the asset's risks
  DELETE /assets/{asset_id}               -- delete (409 while other assets depend on it)
  GET    /assets/{asset_id}/dependencies  -- assets this one relies on
  GET    /assets/{asset_id}/dependents    -- assets relying on this one
  GET    /assets/{asset_id}/threats       -- threats assigned to this asset

File uploads:
  /assets/import accepts multipart/form-data with a .csv file, capped at 1 MB.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool

from api.dependencies import domain_fields, get_service, get_store, invalidate_reports
from api.limiter import limiter
from api.models import (
    AssetCreate,
    AssetResponse,
    AssetUpdate,
    BulkImportResponse,
    ErrorDetail,
    ThreatResponse,
)
from core.errors import NotFound
from core.models import Asset, AssetType, Valuation
from registry.ingest import bulk_import_assets, parse_asset_csv

router = APIRouter()

_MAX_UPLOAD_BYTES = 1 * 1024 * 1024  # 1 MB


def _get_or_404(request: Request, asset_id: int) -> Asset:
    asset = get_store(request).get_asset(asset_id)
    if asset is None:
        raise NotFound("Asset", asset_id)
    return asset


@limiter.limit("30/minute")
@router.post("/assets", response_model=AssetResponse, status_code=201)
def create_asset(request: Request, body: AssetCreate) -> AssetResponse:
    """Register a new asset. Dependencies must reference existing assets."""
    fields = domain_fields(body)
    fields["valuation"] = Valuation(**fields["valuation"])
    created = get_store(request).create_asset(Asset(**fields))
    invalidate_reports(request)
    return AssetResponse.from_domain(created)


@limiter.limit("60/minute")
@router.get("/assets", response_model=list[AssetResponse])
def list_assets(request: Request, asset_type: Optional[AssetType] = None) -> list[AssetResponse]:
    assets = get_store(request).list_assets(asset_type.value if asset_type else None)
    return [AssetResponse.from_domain(a) for a in assets]


@limiter.limit("5/minute")
@router.post("/assets/import", response_model=BulkImportResponse)
async def import_assets(request: Request, file: UploadFile) -> BulkImportResponse:
    """Bulk-create assets from a CSV register.

    Each row is created independently: bad rows and duplicate codes are
    reported in `errors` and counted in `failed`; good rows still land.
    """
    if not (file.filename or "").lower().endswith(".csv"):
        raise HTTPException(
            status_code=415,
            detail=ErrorDetail(code="unsupported_format", message="File must have a .csv extension.").model_dump(),
        )
    raw = await file.read(_MAX_UPLOAD_BYTES + 1)
    if len(raw) > _MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=ErrorDetail(code="file_too_large", message="Upload must be 1 MB or smaller.").model_dump(),
        )

    assets, parse_errors = await run_in_threadpool(parse_asset_csv, raw.decode("utf-8", errors="replace"))
    result = await run_in_threadpool(bulk_import_assets, get_store(request), assets)
    if result.successful:
        invalidate_reports(request)
    return BulkImportResponse(
        successful=result.successful,
        failed=result.failed + len(parse_errors),
        errors=parse_errors + result.errors,
    )


@limiter.limit("60/minute")
@router.get("/assets/{asset_id}", response_model=AssetResponse)
def get_asset(request: Request, asset_id: int) -> AssetResponse:
    return AssetResponse.from_domain(_get_or_404(request, asset_id))


@limiter.limit("30/minute")
@router.patch("/assets/{asset_id}", response_model=AssetResponse)
def update_asset(request: Request, asset_id: int, body: AssetUpdate) -> AssetResponse:
    """Update an asset, then recalculate every active risk built on it."""
    fields = domain_fields(body, partial=True)
    if "valuation" in fields:
        fields["valuation"] = Valuation(**fields["valuation"])
    updated = get_store(request).update_asset(asset_id, **fields)
    get_service(request).refresh_asset_risks(asset_id)
    invalidate_reports(request)
    return AssetResponse.from_domain(updated)


@limiter.limit("30/minute")
@router.delete("/assets/{asset_id}", status_code=204)
def delete_asset(request: Request, asset_id: int) -> Response:
    get_store(request).delete_asset(asset_id)
    invalidate_reports(request)
    return Response(status_code=204)


@limiter.limit("60/minute")
@router.get("/assets/{asset_id}/dependencies", response_model=list[AssetResponse])
def get_dependencies(request: Request, asset_id: int) -> list[AssetResponse]:
    _get_or_404(request, asset_id)
    return [AssetResponse.from_domain(a) for a in get_store(request).get_dependencies(asset_id)]


@limiter.limit("60/minute")
@router.get("/assets/{asset_id}/dependents", response_model=list[AssetResponse])
def get_dependents(request: Request, asset_id: int) -> list[AssetResponse]:
    _get_or_404(request, asset_id)
    return [AssetResponse.from_domain(a) for a in get_store(request).get_dependents(asset_id)]


@limiter.limit("60/minute")
@router.get("/assets/{asset_id}/threats", response_model=list[ThreatResponse])
def get_asset_threats(request: Request, asset_id: int) -> list[ThreatResponse]:
    _get_or_404(request, asset_id)
    return [ThreatResponse.from_domain(t) for t in get_store(request).threats_for_asset(asset_id)]
