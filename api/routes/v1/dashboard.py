"""
api/routes/v1/dashboard.py -- Aggregated metrics endpoints for SIGRISK.

Returns payloads suitable for driving dashboard widgets:
  GET /dashboard/kpis        -- risk counts, total value at risk, % of asset value at risk
  GET /dashboard/safeguards  -- safeguard programme: implemented share, cost, average ROI

This is a read-only aggregate router -- no mutations here. Both reads are
served from the report cache when one is configured.
"""

from fastapi import APIRouter, Request

from api.dependencies import get_cache, get_store
from api.limiter import limiter
from api.models import DashboardKPIsResponse, SafeguardProgramResponse
from registry.reports import get_dashboard_kpis, get_safeguard_program

router = APIRouter()


@limiter.limit("60/minute")
@router.get("/dashboard/kpis", response_model=DashboardKPIsResponse)
def dashboard_kpis(request: Request) -> DashboardKPIsResponse:
    """Headline risk figures across all active risks.

    Response:
      total_risks / critical_risks / high_risks -- active risk counts
      total_risk_value   -- sum of value at risk
      total_asset_value  -- sum of asset economic values
      average_exposure   -- mean exposure on the 0..100 scale
      percent_at_risk    -- total_risk_value as a percentage of total_asset_value
    """
    kpis = get_dashboard_kpis(get_store(request), get_cache(request))
    return DashboardKPIsResponse(**vars(kpis))


@limiter.limit("60/minute")
@router.get("/dashboard/safeguards", response_model=SafeguardProgramResponse)
def safeguard_program(request: Request) -> SafeguardProgramResponse:
    summary = get_safeguard_program(get_store(request), get_cache(request))
    return SafeguardProgramResponse(**vars(summary))
