"""
tests/helpers.py -- Builders for domain objects shared by the test modules.

Each builder returns an unsaved dataclass with sensible defaults; keyword
overrides replace individual fields. Dates are fixed so calculations are
reproducible against the NOW constant.
"""

from datetime import datetime, timedelta, timezone

from core.models import Asset, Safeguard, Threat, Valuation, Vulnerability

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def days_ago(days: float) -> str:
    return (NOW - timedelta(days=days)).isoformat()


def make_valuation(top: float = 10.0, rest: float = 5.0) -> Valuation:
    """Valuation whose maximum dimension (confidentiality) is `top`."""
    return Valuation(confidentiality=top, integrity=rest, availability=rest, authenticity=rest, traceability=rest)


def make_asset(code: str = "A-001", **overrides) -> Asset:
    fields = dict(
        code=code,
        name=f"Asset {code}",
        asset_type="Software",
        owner="CISO",
        custodian="IT Ops",
        location="DC-1",
        valuation=make_valuation(),
        economic_value=100_000.0,
    )
    fields.update(overrides)
    return Asset(**fields)


def make_threat(code: str = "T-001", **overrides) -> Threat:
    fields = dict(
        code=code,
        name=f"Threat {code}",
        threat_type="Intentional attack",
        description="Test threat",
        probability=8.0,
        discovery_date=days_ago(45),
    )
    fields.update(overrides)
    return Threat(**fields)


def make_vulnerability(code: str = "V-001", **overrides) -> Vulnerability:
    fields = dict(
        code=code,
        name=f"Vulnerability {code}",
        category="Configuration",
        description="Test vulnerability",
        exploitability=6.0,
    )
    fields.update(overrides)
    return Vulnerability(**fields)


def make_safeguard(code: str = "S-001", **overrides) -> Safeguard:
    fields = dict(
        code=code,
        name=f"Safeguard {code}",
        safeguard_type="Preventive",
        category="Technical",
        description="Test safeguard",
        responsible="Security team",
    )
    fields.update(overrides)
    return Safeguard(**fields)
