"""
API request and response models for the SIGRISK REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Response models carry a
from_domain() factory so the mapping lives next to the output shape rather
than in route handlers.

Range checks here (0..10 scales, 0..100 effectiveness) reject bad input
with 422 before it reaches the registry; the registry re-checks the same
ranges for non-HTTP callers.
"""

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models import (
    CVE_PATTERN,
    Asset,
    AssetType,
    CVEData,
    Risk,
    RiskCalculation,
    Safeguard,
    SafeguardCategory,
    SafeguardKPI,
    SafeguardState,
    SafeguardType,
    Threat,
    ThreatOrigin,
    ThreatType,
    Vulnerability,
    VulnerabilityState,
)
from core.safeguards import annual_cost, effectiveness_level, real_effectiveness, review_status, roi
from core.valuation import average_valuation, criticality, risk_kind, risk_score, threat_level

# Every MAGERIT scale (valuation, probability, exploitability, CVSS) is 0..10.
Scale = Annotated[float, Field(ge=0, le=10)]

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------


class ValuationModel(BaseModel):
    confidentiality: Scale
    integrity: Scale
    availability: Scale
    authenticity: Scale
    traceability: Scale


class AssetCreate(BaseModel):
    """Request body for POST /api/v1/assets."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    asset_type: AssetType
    owner: str = Field(min_length=1)
    custodian: str = Field(min_length=1)
    location: str = Field(min_length=1)
    valuation: ValuationModel
    economic_value: float = Field(default=0.0, ge=0)
    category: str = ""
    dependencies: list[int] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)


class AssetUpdate(BaseModel):
    """Request body for PATCH /api/v1/assets/{id}. Only supplied fields change."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    asset_type: Optional[AssetType] = None
    owner: Optional[str] = None
    custodian: Optional[str] = None
    location: Optional[str] = None
    valuation: Optional[ValuationModel] = None
    economic_value: Optional[float] = Field(default=None, ge=0)
    category: Optional[str] = None
    dependencies: Optional[list[int]] = None
    services: Optional[list[str]] = None


class AssetResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    code: str
    name: str
    asset_type: str
    category: str
    owner: str
    custodian: str
    location: str
    valuation: ValuationModel
    economic_value: float
    criticality: float
    average_valuation: float
    dependencies: list[int]
    services: list[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, asset: Asset) -> "AssetResponse":
        return cls(
            id=asset.id,
            code=asset.code,
            name=asset.name,
            asset_type=asset.asset_type,
            category=asset.category,
            owner=asset.owner,
            custodian=asset.custodian,
            location=asset.location,
            valuation=ValuationModel(**vars(asset.valuation)),
            economic_value=asset.economic_value,
            criticality=criticality(asset),
            average_valuation=average_valuation(asset),
            dependencies=asset.dependencies,
            services=asset.services,
            created_at=asset.created_at,
            updated_at=asset.updated_at,
        )


class BulkImportResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    successful: int
    failed: int
    errors: list[str]


# ---------------------------------------------------------------------------
# Threats
# ---------------------------------------------------------------------------


class CVEDataModel(BaseModel):
    cve_id: str = Field(pattern=CVE_PATTERN)
    score: Scale
    severity: str
    vector: Optional[str] = None
    affected_software: list[str] = Field(default_factory=list)
    published_date: str
    last_modified_date: str
    description: str

    @classmethod
    def from_domain(cls, cve: CVEData) -> "CVEDataModel":
        return cls(**vars(cve))


class ThreatCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    threat_type: ThreatType
    description: str
    probability: Scale
    origin: ThreatOrigin = ThreatOrigin.MANUAL
    vectors: list[str] = Field(default_factory=list)
    applies_to: list[int] = Field(default_factory=list)
    discovery_date: Optional[datetime] = None


class ThreatUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    threat_type: Optional[ThreatType] = None
    description: Optional[str] = None
    probability: Optional[float] = Field(default=None, ge=0, le=10)
    origin: Optional[ThreatOrigin] = None
    vectors: Optional[list[str]] = None
    applies_to: Optional[list[int]] = None
    discovery_date: Optional[datetime] = None


class ThreatResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    code: str
    name: str
    threat_type: str
    origin: str
    description: str
    probability: float
    level: str
    vectors: list[str]
    cve_data: Optional[CVEDataModel]
    applies_to: list[int]
    discovery_date: str
    last_update: str

    @classmethod
    def from_domain(cls, threat: Threat) -> "ThreatResponse":
        return cls(
            id=threat.id,
            code=threat.code,
            name=threat.name,
            threat_type=threat.threat_type,
            origin=threat.origin,
            description=threat.description,
            probability=threat.probability,
            level=threat_level(threat),
            vectors=threat.vectors,
            cve_data=CVEDataModel.from_domain(threat.cve_data) if threat.cve_data else None,
            applies_to=threat.applies_to,
            discovery_date=threat.discovery_date,
            last_update=threat.last_update,
        )


class IngestResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    processed: int
    created: int
    updated: int
    errors: int


class MageritImportResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    imported: int
    updated: int
    skipped: int
    errors: int


# ---------------------------------------------------------------------------
# Vulnerabilities
# ---------------------------------------------------------------------------


class VulnerabilityCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    category: str
    description: str
    exploitability: Scale
    attack_vectors: list[str] = Field(default_factory=list)
    affected_assets: list[int] = Field(default_factory=list)
    related_threats: list[int] = Field(default_factory=list)
    state: VulnerabilityState = VulnerabilityState.OPEN


class VulnerabilityUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    exploitability: Optional[float] = Field(default=None, ge=0, le=10)
    attack_vectors: Optional[list[str]] = None
    affected_assets: Optional[list[int]] = None
    related_threats: Optional[list[int]] = None
    state: Optional[VulnerabilityState] = None
    mitigated_at: Optional[datetime] = None


class VulnerabilityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    code: str
    name: str
    category: str
    description: str
    exploitability: float
    attack_vectors: list[str]
    affected_assets: list[int]
    related_threats: list[int]
    state: str
    detected_at: str
    mitigated_at: Optional[str]

    @classmethod
    def from_domain(cls, vuln: Vulnerability) -> "VulnerabilityResponse":
        return cls(**vars(vuln))


# ---------------------------------------------------------------------------
# Risks
# ---------------------------------------------------------------------------


class RiskRequest(BaseModel):
    """Body for POST /risks and POST /risks/calculate."""

    asset_id: int
    threat_id: int
    vulnerability_id: Optional[int] = None


class RiskCalculationModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    inherent_risk: float
    adjusted_probability: float
    computed_impact: float
    exposure: float
    temporal_factor: float

    @classmethod
    def from_domain(cls, calc: RiskCalculation) -> "RiskCalculationModel":
        return cls(**vars(calc))


class RiskResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    asset_id: int
    threat_id: int
    vulnerability_id: Optional[int]
    calculation: RiskCalculationModel
    risk_value: float
    risk_level: str
    probability: float
    impact: float
    score: float
    kind: str
    calculated_at: str
    active: bool

    @classmethod
    def from_domain(cls, risk: Risk) -> "RiskResponse":
        return cls(
            id=risk.id,
            asset_id=risk.asset_id,
            threat_id=risk.threat_id,
            vulnerability_id=risk.vulnerability_id,
            calculation=RiskCalculationModel.from_domain(risk.calculation),
            risk_value=risk.risk_value,
            risk_level=risk.risk_level,
            probability=risk.probability,
            impact=risk.impact,
            score=risk_score(risk),
            kind=risk_kind(risk),
            calculated_at=risk.calculated_at,
            active=risk.active,
        )


class RecalculationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    processed: int
    errors: int


class RetireResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    retired: int


class MatrixStatsModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_risks: int
    total_value_at_risk: float
    average_score: float


class RiskMatrixResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    by_level: dict[str, list[RiskResponse]]
    stats: MatrixStatsModel

    @classmethod
    def from_domain(cls, matrix: Any) -> "RiskMatrixResponse":
        return cls(
            by_level={
                level: [RiskResponse.from_domain(r) for r in risks] for level, risks in matrix.by_level.items()
            },
            stats=MatrixStatsModel(**vars(matrix.stats)),
        )


# ---------------------------------------------------------------------------
# Safeguards
# ---------------------------------------------------------------------------


class DocumentModel(BaseModel):
    name: str
    url: Optional[str] = None
    description: Optional[str] = None


class KPICreate(BaseModel):
    name: str = Field(min_length=1)
    value: float
    unit: str
    measured_at: Optional[datetime] = None


class KPIModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    name: str
    value: float
    unit: str
    measured_at: str

    @classmethod
    def from_domain(cls, kpi: SafeguardKPI) -> "KPIModel":
        return cls(**vars(kpi))


class SafeguardCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    safeguard_type: SafeguardType
    category: SafeguardCategory
    description: str
    responsible: str = Field(min_length=1)
    state: SafeguardState = SafeguardState.PROPOSED
    effectiveness: float = Field(default=0.0, ge=0, le=100)
    implementation_cost: float = Field(default=0.0, ge=0)
    monthly_maintenance_cost: float = Field(default=0.0, ge=0)
    protects: list[int] = Field(default_factory=list)
    assets: list[int] = Field(default_factory=list)
    review_period_months: int = Field(default=12, ge=1, le=60)
    documentation: list[DocumentModel] = Field(default_factory=list)
    implemented_at: Optional[datetime] = None
    next_review_at: Optional[datetime] = None


class SafeguardUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Optional[str] = None
    safeguard_type: Optional[SafeguardType] = None
    category: Optional[SafeguardCategory] = None
    description: Optional[str] = None
    responsible: Optional[str] = None
    state: Optional[SafeguardState] = None
    effectiveness: Optional[float] = Field(default=None, ge=0, le=100)
    implementation_cost: Optional[float] = Field(default=None, ge=0)
    monthly_maintenance_cost: Optional[float] = Field(default=None, ge=0)
    protects: Optional[list[int]] = None
    assets: Optional[list[int]] = None
    review_period_months: Optional[int] = Field(default=None, ge=1, le=60)
    documentation: Optional[list[DocumentModel]] = None
    implemented_at: Optional[datetime] = None
    next_review_at: Optional[datetime] = None


class ImplementRequest(BaseModel):
    implemented_at: Optional[datetime] = None


class SafeguardResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    code: str
    name: str
    safeguard_type: str
    category: str
    description: str
    responsible: str
    state: str
    effectiveness: float
    effectiveness_level: str
    real_effectiveness: float
    implementation_cost: float
    monthly_maintenance_cost: float
    annual_cost: float
    roi: float
    protects: list[int]
    assets: list[int]
    review_period_months: int
    review_status: str
    documentation: list[DocumentModel]
    kpis: list[KPIModel]
    implemented_at: Optional[str]
    next_review_at: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, sg: Safeguard) -> "SafeguardResponse":
        return cls(
            id=sg.id,
            code=sg.code,
            name=sg.name,
            safeguard_type=sg.safeguard_type,
            category=sg.category,
            description=sg.description,
            responsible=sg.responsible,
            state=sg.state,
            effectiveness=sg.effectiveness,
            effectiveness_level=effectiveness_level(sg),
            real_effectiveness=real_effectiveness(sg),
            implementation_cost=sg.implementation_cost,
            monthly_maintenance_cost=sg.monthly_maintenance_cost,
            annual_cost=annual_cost(sg),
            roi=roi(sg),
            protects=sg.protects,
            assets=sg.assets,
            review_period_months=sg.review_period_months,
            review_status=review_status(sg),
            documentation=[DocumentModel(**vars(d)) for d in sg.documentation],
            kpis=[KPIModel.from_domain(k) for k in sg.kpis],
            implemented_at=sg.implemented_at,
            next_review_at=sg.next_review_at,
            created_at=sg.created_at,
            updated_at=sg.updated_at,
        )


class RecommendationModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    safeguard_type: str
    category: str
    description: str
    priority: str
    estimated_cost: float


class RecommendationsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_id: int
    existing: list[SafeguardResponse]
    recommended: list[RecommendationModel]


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class DashboardKPIsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_risks: int
    critical_risks: int
    high_risks: int
    total_risk_value: float
    total_asset_value: float
    average_exposure: float
    percent_at_risk: float


class SafeguardProgramResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    implemented: int
    average_effectiveness: float
    total_annual_cost: float
    average_roi: float
    by_category: dict[str, int]
