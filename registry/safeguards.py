"""
registry/safeguards.py -- Safeguard lifecycle operations on top of RegistryStore.

implement_safeguard() moves a safeguard to Implemented and schedules its
next review; add_kpi() appends a measurement; recommend_safeguards_for_risk()
lists what already protects a risk plus rule-based suggestions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from cache.store import ReportCache
from core.config import now_iso
from core.errors import NotFound, ValidationError
from core.models import (
    AssetType,
    RiskLevel,
    Safeguard,
    SafeguardCategory,
    SafeguardKPI,
    SafeguardState,
    SafeguardType,
)
from core.safeguards import add_months
from registry.store import RegistryStore

logger = logging.getLogger("sigrisk.safeguards")


@dataclass
class SafeguardRecommendation:
    name: str
    safeguard_type: str
    category: str
    description: str
    priority: str
    estimated_cost: float


@dataclass
class RiskRecommendations:
    risk_id: int
    existing: list[Safeguard] = field(default_factory=list)
    recommended: list[SafeguardRecommendation] = field(default_factory=list)


_ACCESS_CONTROL = SafeguardRecommendation(
    name="Advanced access controls",
    safeguard_type=SafeguardType.PREVENTIVE.value,
    category=SafeguardCategory.TECHNICAL.value,
    description="Technical controls that prevent unauthorized access",
    priority="High",
    estimated_cost=5000.0,
)

_MONITORING = SafeguardRecommendation(
    name="Monitoring and alerting",
    safeguard_type=SafeguardType.DETECTIVE.value,
    category=SafeguardCategory.TECHNICAL.value,
    description="Early detection of suspicious activity",
    priority="High",
    estimated_cost=3000.0,
)

_PATCH_MANAGEMENT = SafeguardRecommendation(
    name="Patch and update management",
    safeguard_type=SafeguardType.PREVENTIVE.value,
    category=SafeguardCategory.TECHNICAL.value,
    description="Systematic software update programme",
    priority="Medium",
    estimated_cost=2000.0,
)


def _invalidate(cache: Optional[ReportCache]) -> None:
    if cache is not None:
        cache.invalidate()


def implement_safeguard(
    store: RegistryStore,
    sg_id: int,
    implemented_at: Optional[datetime] = None,
    cache: Optional[ReportCache] = None,
) -> Safeguard:
    """Mark a safeguard Implemented and set its next review date.

    The review date is implemented_at + review_period_months, replacing any
    previously scheduled review.
    """
    current = store.get_safeguard(sg_id)
    if current is None:
        raise NotFound("Safeguard", sg_id)
    if current.state == SafeguardState.OBSOLETE.value:
        raise ValidationError(f"safeguard {sg_id} is obsolete and cannot be implemented")
    when = implemented_at or datetime.now(timezone.utc)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    sg = store.update_safeguard(
        sg_id,
        state=SafeguardState.IMPLEMENTED.value,
        implemented_at=when.isoformat(),
        next_review_at=add_months(when, current.review_period_months).isoformat(),
    )
    _invalidate(cache)
    logger.info("Safeguard %s implemented; next review %s", sg.code, sg.next_review_at)
    return sg


def add_kpi(
    store: RegistryStore,
    sg_id: int,
    name: str,
    value: float,
    unit: str,
    measured_at: Optional[str] = None,
    cache: Optional[ReportCache] = None,
) -> SafeguardKPI:
    kpi = store.add_kpi(sg_id, SafeguardKPI(name=name, value=value, unit=unit, measured_at=measured_at or now_iso()))
    _invalidate(cache)
    return kpi


def recommend_safeguards_for_risk(store: RegistryStore, risk_id: int) -> RiskRecommendations:
    """Existing protecting safeguards plus rule-based suggestions.

    Critical and High risks get access control and monitoring; risks on a
    Software asset get patch management.
    """
    risk = store.get_risk(risk_id)
    if risk is None:
        raise NotFound("Risk", risk_id)

    recommended: list[SafeguardRecommendation] = []
    if risk.risk_level in (RiskLevel.CRITICAL.value, RiskLevel.HIGH.value):
        recommended.extend([_ACCESS_CONTROL, _MONITORING])
    asset = store.get_asset(risk.asset_id)
    if asset is not None and asset.asset_type == AssetType.SOFTWARE.value:
        recommended.append(_PATCH_MANAGEMENT)

    return RiskRecommendations(
        risk_id=risk_id,
        existing=store.safeguards_for_risk(risk_id),
        recommended=recommended,
    )
