"""
core/models.py -- Domain dataclasses for SIGRISK (MAGERIT v3.0 risk analysis).

These are pure data containers with zero logic. Derived values (criticality,
threat level, safeguard ROI, review status) are plain functions in
core/valuation.py and core/safeguards.py; the risk engine lives in
core/calculator.py. Persistence lives in registry/store.py.

Timestamps are ISO 8601 strings, as written by the store. id is None before
a record is written to the database.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Canonical CVE ID format. A domain rule -- not an API contract.
CVE_PATTERN = r"^CVE-\d{4}-\d{4,}$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AssetType(str, Enum):
    HARDWARE = "Hardware"
    SOFTWARE = "Software"
    DATA = "Data"
    COMMUNICATIONS = "Communications"
    SERVICES = "Services"
    FACILITIES = "Facilities"
    PERSONNEL = "Personnel"


class ThreatType(str, Enum):
    NATURAL_DISASTER = "Natural disaster"
    TECHNICAL_FAILURE = "Technical failure"
    SERVICE_FAILURE = "Service failure"
    UNINTENTIONAL_ERROR = "Unintentional error"
    INTENTIONAL_ATTACK = "Intentional attack"


class ThreatOrigin(str, Enum):
    MAGERIT = "MAGERIT"
    CVE = "CVE"
    MANUAL = "Manual"
    MISP = "MISP"


class CVESeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class VulnerabilityState(str, Enum):
    OPEN = "Open"
    MITIGATED = "Mitigated"
    ACCEPTED = "Accepted"
    IN_TREATMENT = "InTreatment"


class RiskLevel(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    VERY_LOW = "Very Low"


class SafeguardType(str, Enum):
    PREVENTIVE = "Preventive"
    DETECTIVE = "Detective"
    CORRECTIVE = "Corrective"
    DETERRENT = "Deterrent"
    COMPENSATING = "Compensating"


class SafeguardCategory(str, Enum):
    PHYSICAL = "Physical"
    LOGICAL = "Logical"
    TECHNICAL = "Technical"
    ADMINISTRATIVE = "Administrative"
    LEGAL = "Legal"
    ORGANIZATIONAL = "Organizational"


class SafeguardState(str, Enum):
    PROPOSED = "Proposed"
    PLANNED = "Planned"
    IN_PROGRESS = "InProgress"
    IMPLEMENTED = "Implemented"
    OBSOLETE = "Obsolete"


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------


@dataclass
class Valuation:
    """MAGERIT dimensions of value, each on a 0..10 scale."""

    confidentiality: float
    integrity: float
    availability: float
    authenticity: float
    traceability: float


@dataclass
class Asset:
    """An information asset under analysis.

    dependencies holds ids of other assets this one relies on. They are weak
    references: deleting this asset never touches them, but an asset cannot
    be deleted while others still list it here.
    """

    code: str
    name: str
    asset_type: str  # AssetType value
    owner: str
    custodian: str
    location: str
    valuation: Valuation
    economic_value: float = 0.0
    category: str = ""
    dependencies: list[int] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""


# ---------------------------------------------------------------------------
# Threats and vulnerabilities
# ---------------------------------------------------------------------------


@dataclass
class CVEData:
    cve_id: str
    severity: str  # CVESeverity value
    published_date: str
    last_modified_date: str
    description: str
    score: float = 0.0
    vector: Optional[str] = None
    affected_software: list[str] = field(default_factory=list)


@dataclass
class Threat:
    """A MAGERIT threat. probability is on a 0..10 scale.

    discovery_date drives the temporal factor of every risk built on this
    threat. For CVE-sourced threats it is the CVE publication date.
    """

    code: str
    name: str
    threat_type: str  # ThreatType value
    description: str
    probability: float
    origin: str = ThreatOrigin.MANUAL.value
    vectors: list[str] = field(default_factory=list)
    cve_data: Optional[CVEData] = None
    applies_to: list[int] = field(default_factory=list)
    discovery_date: str = ""
    last_update: str = ""
    id: Optional[int] = None


@dataclass
class Vulnerability:
    code: str
    name: str
    category: str
    description: str
    exploitability: float  # ease of exploitation, 0..10
    attack_vectors: list[str] = field(default_factory=list)
    affected_assets: list[int] = field(default_factory=list)
    related_threats: list[int] = field(default_factory=list)
    state: str = VulnerabilityState.OPEN.value
    detected_at: str = ""
    mitigated_at: Optional[str] = None
    id: Optional[int] = None


# ---------------------------------------------------------------------------
# Risks
# ---------------------------------------------------------------------------


@dataclass
class RiskCalculation:
    """Breakdown produced by core.calculator.calculate()."""

    inherent_risk: float
    adjusted_probability: float
    computed_impact: float
    exposure: float
    temporal_factor: float


@dataclass
class Risk:
    """One (asset, threat, vulnerability-or-none) risk record.

    risk_value is the monetary Value-at-Risk figure; risk_level classifies
    calculation.exposure. active is False once the risk is soft-deleted --
    the row stays for historical reporting.
    """

    asset_id: int
    threat_id: int
    calculation: RiskCalculation
    risk_value: float
    risk_level: str  # RiskLevel value
    probability: float
    impact: float
    vulnerability_id: Optional[int] = None
    calculated_at: str = ""
    active: bool = True
    id: Optional[int] = None


# ---------------------------------------------------------------------------
# Safeguards
# ---------------------------------------------------------------------------


@dataclass
class SafeguardDocument:
    name: str
    url: Optional[str] = None
    description: Optional[str] = None


@dataclass
class SafeguardKPI:
    """A single KPI measurement. Appended, never edited."""

    name: str
    value: float
    unit: str
    measured_at: str = ""
    id: Optional[int] = None


@dataclass
class Safeguard:
    """A control that mitigates one or more risks.

    protects holds risk ids; assets holds covered asset ids.
    effectiveness is a percentage (0..100). review_period_months is the
    review cadence used to derive next_review_at once implemented.
    """

    code: str
    name: str
    safeguard_type: str  # SafeguardType value
    category: str  # SafeguardCategory value
    description: str
    responsible: str
    state: str = SafeguardState.PROPOSED.value
    effectiveness: float = 0.0
    implementation_cost: float = 0.0
    monthly_maintenance_cost: float = 0.0
    protects: list[int] = field(default_factory=list)
    assets: list[int] = field(default_factory=list)
    review_period_months: int = 12
    documentation: list[SafeguardDocument] = field(default_factory=list)
    kpis: list[SafeguardKPI] = field(default_factory=list)
    implemented_at: Optional[str] = None
    next_review_at: Optional[str] = None
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
