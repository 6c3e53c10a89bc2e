"""
registry/reports.py -- Aggregations over the materialized risk records.

No new algorithms: each report groups, sorts or sums what RiskService has
already stored. Each returns a typed result instead of a loose dict, and each
accepts an optional ReportCache. With cache=None the query always runs; with
a cache the JSON form of the result is stored under the report's query
signature for that report's TTL.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from cache.store import ReportCache, cache_key
from core.errors import ValidationError
from core.models import Risk, RiskCalculation, RiskLevel, SafeguardState
from core.safeguards import annual_cost, roi
from core.valuation import risk_score
from registry.store import RegistryStore

# Seconds each report may be served from cache.
MATRIX_TTL = 600
TOP_RISKS_TTL = 300
KPIS_TTL = 120
SAFEGUARD_PROGRAM_TTL = 900

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class MatrixStats:
    total_risks: int
    total_value_at_risk: float
    average_score: float


@dataclass
class RiskMatrix:
    """Active risks grouped by level. Every level key is always present."""

    by_level: dict[str, list[Risk]]
    stats: MatrixStats


@dataclass
class DashboardKPIs:
    total_risks: int
    critical_risks: int
    high_risks: int
    total_risk_value: float
    total_asset_value: float
    average_exposure: float
    percent_at_risk: float


@dataclass
class SafeguardProgramSummary:
    total: int
    implemented: int
    average_effectiveness: float
    total_annual_cost: float
    average_roi: float
    by_category: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Serialization for the cache
# ---------------------------------------------------------------------------


def _risk_from_dict(data: dict) -> Risk:
    data = dict(data)
    data["calculation"] = RiskCalculation(**data["calculation"])
    return Risk(**data)


def _matrix_from_dict(data: dict) -> RiskMatrix:
    return RiskMatrix(
        by_level={level: [_risk_from_dict(r) for r in risks] for level, risks in data["by_level"].items()},
        stats=MatrixStats(**data["stats"]),
    )


def _cached(
    cache: Optional[ReportCache],
    key: str,
    ttl: int,
    compute: Callable[[], T],
    dump: Callable[[T], Any],
    load: Callable[[Any], T],
) -> T:
    if cache is not None:
        hit = cache.get(key)
        if hit is not None:
            return load(hit)
    result = compute()
    if cache is not None:
        cache.set(key, dump(result), ttl=ttl)
    return result


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def get_risk_matrix(store: RegistryStore, cache: Optional[ReportCache] = None) -> RiskMatrix:
    """Group active risks by level, highest value first within each level."""

    def compute() -> RiskMatrix:
        risks = store.list_risks(active_only=True, order_by_value=True)
        by_level: dict[str, list[Risk]] = {level.value: [] for level in RiskLevel}
        for risk in risks:
            by_level.setdefault(risk.risk_level, []).append(risk)
        stats = MatrixStats(
            total_risks=len(risks),
            total_value_at_risk=sum(r.risk_value for r in risks),
            average_score=_mean([risk_score(r) for r in risks]),
        )
        return RiskMatrix(by_level=by_level, stats=stats)

    return _cached(cache, "risk_matrix", MATRIX_TTL, compute, dataclasses.asdict, _matrix_from_dict)


def get_top_risks(store: RegistryStore, limit: int = 10, cache: Optional[ReportCache] = None) -> list[Risk]:
    """Active risks sorted by risk_value descending."""
    if limit < 1:
        raise ValidationError(f"limit must be >= 1, got {limit!r}")
    return _cached(
        cache,
        cache_key("top_risks", limit=limit),
        TOP_RISKS_TTL,
        lambda: store.list_risks(active_only=True, order_by_value=True, limit=limit),
        lambda risks: [dataclasses.asdict(r) for r in risks],
        lambda data: [_risk_from_dict(r) for r in data],
    )


def get_dashboard_kpis(store: RegistryStore, cache: Optional[ReportCache] = None) -> DashboardKPIs:
    def compute() -> DashboardKPIs:
        risks = store.list_risks(active_only=True)
        total_risk_value = sum(r.risk_value for r in risks)
        total_asset_value = store.total_asset_value()
        return DashboardKPIs(
            total_risks=len(risks),
            critical_risks=sum(1 for r in risks if r.risk_level == RiskLevel.CRITICAL.value),
            high_risks=sum(1 for r in risks if r.risk_level == RiskLevel.HIGH.value),
            total_risk_value=total_risk_value,
            total_asset_value=total_asset_value,
            average_exposure=_mean([r.calculation.exposure for r in risks]),
            percent_at_risk=(total_risk_value / total_asset_value * 100) if total_asset_value > 0 else 0.0,
        )

    return _cached(
        cache, "dashboard_kpis", KPIS_TTL, compute, dataclasses.asdict, lambda data: DashboardKPIs(**data)
    )


def get_safeguard_program(store: RegistryStore, cache: Optional[ReportCache] = None) -> SafeguardProgramSummary:
    def compute() -> SafeguardProgramSummary:
        safeguards = store.list_safeguards()
        by_category: dict[str, int] = {}
        for sg in safeguards:
            by_category[sg.category] = by_category.get(sg.category, 0) + 1
        return SafeguardProgramSummary(
            total=len(safeguards),
            implemented=sum(1 for sg in safeguards if sg.state == SafeguardState.IMPLEMENTED.value),
            average_effectiveness=_mean([sg.effectiveness for sg in safeguards]),
            total_annual_cost=sum(annual_cost(sg) for sg in safeguards),
            average_roi=_mean([roi(sg) for sg in safeguards]),
            by_category=by_category,
        )

    return _cached(
        cache,
        "safeguard_program",
        SAFEGUARD_PROGRAM_TTL,
        compute,
        dataclasses.asdict,
        lambda data: SafeguardProgramSummary(**data),
    )
