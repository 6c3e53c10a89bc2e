"""
core/valuation.py -- Derived values and range checks for assets, threats,
vulnerabilities and risks.

Pure functions over the dataclasses in core/models.py. Nothing here touches
storage, so the same derivations serve the calculator, the store and the
API response mappers.
"""

from typing import Union

from .config import parse_iso
from .errors import ValidationError
from .models import Asset, Risk, RiskLevel, Threat, Valuation, Vulnerability

SCALE_MIN = 0.0
SCALE_MAX = 10.0

# Probability buckets for the threat level label. Same cut points as the
# risk level policy, on the 0..10 probability scale.
_THREAT_LEVELS: tuple[tuple[float, RiskLevel], ...] = (
    (8.0, RiskLevel.CRITICAL),
    (6.0, RiskLevel.HIGH),
    (4.0, RiskLevel.MEDIUM),
    (2.0, RiskLevel.LOW),
)


def _dimensions(valuation: Valuation) -> tuple[float, float, float, float, float]:
    return (
        valuation.confidentiality,
        valuation.integrity,
        valuation.availability,
        valuation.authenticity,
        valuation.traceability,
    )


def criticality(subject: Union[Asset, Valuation]) -> float:
    """Return the highest of the five MAGERIT dimensions."""
    valuation = subject.valuation if isinstance(subject, Asset) else subject
    return max(_dimensions(valuation))


def average_valuation(subject: Union[Asset, Valuation]) -> float:
    valuation = subject.valuation if isinstance(subject, Asset) else subject
    return sum(_dimensions(valuation)) / 5


def threat_level(threat: Threat) -> str:
    for bound, level in _THREAT_LEVELS:
        if threat.probability >= bound:
            return level.value
    return RiskLevel.VERY_LOW.value


def risk_score(risk: Risk) -> float:
    """Combined probability x impact score of a stored risk."""
    return risk.probability * risk.impact


def risk_kind(risk: Risk) -> str:
    """'Residual' when a concrete vulnerability is linked, else 'Inherent'."""
    return "Residual" if risk.vulnerability_id else "Inherent"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def check_scale(name: str, value: float, low: float = SCALE_MIN, high: float = SCALE_MAX) -> None:
    """Raise ValidationError unless low <= value <= high."""
    if value is None or not low <= value <= high:
        raise ValidationError(f"{name} must be between {low:g} and {high:g}, got {value!r}")


def validate_valuation(valuation: Valuation) -> None:
    for name, value in zip(
        ("confidentiality", "integrity", "availability", "authenticity", "traceability"),
        _dimensions(valuation),
    ):
        check_scale(f"valuation.{name}", value)


def validate_asset(asset: Asset) -> None:
    if asset.valuation is None:
        raise ValidationError(f"asset {asset.code} has no valuation")
    validate_valuation(asset.valuation)
    if asset.economic_value is None or asset.economic_value < 0:
        raise ValidationError(f"economic_value must be >= 0, got {asset.economic_value!r}")


def validate_threat(threat: Threat) -> None:
    check_scale("probability", threat.probability)
    if threat.cve_data is not None:
        check_scale("cve_data.score", threat.cve_data.score)
    if threat.discovery_date:
        try:
            parse_iso(threat.discovery_date)
        except ValueError:
            raise ValidationError(f"discovery_date is not an ISO 8601 date: {threat.discovery_date!r}") from None


def validate_vulnerability(vulnerability: Vulnerability) -> None:
    check_scale("exploitability", vulnerability.exploitability)
