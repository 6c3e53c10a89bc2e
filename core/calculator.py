"""
core/calculator.py -- MAGERIT risk quantification engine.

Turns (asset, threat, vulnerability-or-none) into a RiskCalculation, then a
discrete level and a Value-at-Risk figure. Every function here is pure: the
only time-dependent input ("now") is an explicit parameter, and policy
constants arrive through a RiskPolicy value.

Pipeline for one triple:

  impact_max            = max(C, I, A, Au, T) of the asset valuation
  exploit_factor        = vulnerability.exploitability / 10, or the policy default
  temporal_factor       = temporal_decay(age of threat in days)
  adjusted_probability  = threat.probability * exploit_factor * temporal_factor
  computed_impact       = impact_max * economic_value / economic_reference
  exposure              = adjusted_probability * computed_impact
  inherent_risk         = threat.probability * impact_max

classify(exposure) gives the level; value_at_risk() gives the monetary figure.

Layer rule: core/ is the kernel. No storage, no HTTP, no settings reads
(RiskPolicy.from_settings is the one bridge, and it takes the settings as
an argument).
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from .config import parse_iso
from .errors import ValidationError
from .models import Asset, RiskCalculation, RiskLevel, Threat, Vulnerability
from .valuation import criticality, validate_asset, validate_threat, validate_vulnerability

if TYPE_CHECKING:
    from .config import Settings

# ---------------------------------------------------------------------------
# Temporal decay constants
# ---------------------------------------------------------------------------

# A new threat ramps from 0.5 to 1.0 over its first month as it becomes
# known and weaponised, stays at 1.0 until day 90, then decays linearly over
# a year down to a floor of 0.8.
TEMPORAL_START = 0.5
TEMPORAL_PEAK = 1.0
TEMPORAL_FLOOR = 0.8
RAMP_DAYS = 30
PEAK_END_DAYS = 90
DECAY_DAYS = 365

_SECONDS_PER_DAY = 86400


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskPolicy:
    """Tunable constants of the risk model.

    economic_reference -- normalization anchor: an asset worth this much has
        an impact multiplier of 1.0. A reporting scale, not a law of nature.
    default_exploit_factor -- exploit factor for risks with no linked
        vulnerability ("generic, unquantified exploitability").
    thresholds -- (lower bound, level) pairs, highest first. A score equal to
        a bound belongs to that bound's level.
    """

    economic_reference: float = 100_000.0
    default_exploit_factor: float = 0.5
    thresholds: tuple[tuple[float, RiskLevel], ...] = (
        (80.0, RiskLevel.CRITICAL),
        (60.0, RiskLevel.HIGH),
        (40.0, RiskLevel.MEDIUM),
        (20.0, RiskLevel.LOW),
    )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RiskPolicy":
        return cls(
            economic_reference=settings.economic_reference_value,
            default_exploit_factor=settings.default_exploit_factor,
            thresholds=(
                (settings.level_critical, RiskLevel.CRITICAL),
                (settings.level_high, RiskLevel.HIGH),
                (settings.level_medium, RiskLevel.MEDIUM),
                (settings.level_low, RiskLevel.LOW),
            ),
        )


DEFAULT_POLICY = RiskPolicy()


# ---------------------------------------------------------------------------
# Temporal factor
# ---------------------------------------------------------------------------


def age_in_days(discovery_date: str, now: Optional[datetime] = None) -> int:
    """Whole days elapsed since discovery_date (floor). Never negative.

    A discovery date in the future counts as age 0 so the temporal factor
    stays inside [0.5, 1.0].
    """
    try:
        discovered = parse_iso(discovery_date)
    except ValueError:
        raise ValidationError(f"discovery_date is not an ISO 8601 date: {discovery_date!r}") from None
    if discovered is None:
        raise ValidationError("threat has no discovery date")
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    elapsed = (now - discovered).total_seconds()
    return max(0, math.floor(elapsed / _SECONDS_PER_DAY))


def temporal_decay(age_days: float) -> float:
    """Temporal factor for a threat of the given age, always in [0.5, 1.0]."""
    age_days = max(0.0, age_days)
    if age_days <= RAMP_DAYS:
        return TEMPORAL_START + age_days / (2 * RAMP_DAYS)
    if age_days <= PEAK_END_DAYS:
        return TEMPORAL_PEAK
    return max(TEMPORAL_FLOOR, TEMPORAL_PEAK - (age_days - PEAK_END_DAYS) / DECAY_DAYS)


def temporal_factor(discovery_date: str, now: Optional[datetime] = None) -> float:
    return temporal_decay(age_in_days(discovery_date, now))


# ---------------------------------------------------------------------------
# Calculation
# ---------------------------------------------------------------------------


def exploit_factor(vulnerability: Optional[Vulnerability], policy: RiskPolicy = DEFAULT_POLICY) -> float:
    if vulnerability is None:
        return policy.default_exploit_factor
    return vulnerability.exploitability / 10


def calculate(
    asset: Asset,
    threat: Threat,
    vulnerability: Optional[Vulnerability] = None,
    now: Optional[datetime] = None,
    policy: RiskPolicy = DEFAULT_POLICY,
) -> RiskCalculation:
    """Compute the risk breakdown for one triple.

    Raises ValidationError if any input is outside its scale. Deterministic
    for a fixed `now`.
    """
    validate_asset(asset)
    validate_threat(threat)
    if vulnerability is not None:
        validate_vulnerability(vulnerability)

    impact_max = criticality(asset)
    factor = temporal_factor(threat.discovery_date, now)

    adjusted_probability = threat.probability * exploit_factor(vulnerability, policy) * factor
    computed_impact = impact_max * (asset.economic_value / policy.economic_reference)

    return RiskCalculation(
        inherent_risk=threat.probability * impact_max,
        adjusted_probability=adjusted_probability,
        computed_impact=computed_impact,
        exposure=adjusted_probability * computed_impact,
        temporal_factor=factor,
    )


def classify(score: float, policy: RiskPolicy = DEFAULT_POLICY) -> RiskLevel:
    for bound, level in policy.thresholds:
        if score >= bound:
            return level
    return RiskLevel.VERY_LOW


def value_at_risk(asset: Asset, calculation: RiskCalculation) -> float:
    """Monetary Value-at-Risk: economic value scaled by probability and impact."""
    return asset.economic_value * (calculation.adjusted_probability / 10) * (calculation.computed_impact / 10)
