"""
core/safeguards.py -- Derived values and the review-scheduling rule for safeguards.

All functions take a Safeguard (and, where time matters, an explicit `now`)
and return a value; only schedule_review() and apply_review_invariant()
mutate, and only the safeguard they are handed.
"""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import parse_iso
from .errors import ValidationError
from .models import Safeguard, SafeguardState
from .valuation import check_scale

# Asset value assumed when estimating ROI for a safeguard in isolation.
ROI_REFERENCE_VALUE = 100_000.0

UPCOMING_REVIEW_DAYS = 30
KPI_WINDOW_DAYS = 30

_EFFECTIVENESS_LEVELS: tuple[tuple[float, str], ...] = (
    (90.0, "Very High"),
    (70.0, "High"),
    (50.0, "Medium"),
    (30.0, "Low"),
)


def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def annual_cost(safeguard: Safeguard) -> float:
    return safeguard.implementation_cost + safeguard.monthly_maintenance_cost * 12


def roi(safeguard: Safeguard, reference_value: float = ROI_REFERENCE_VALUE) -> float:
    """Return on investment as a percentage. 0 for a safeguard with no cost."""
    if safeguard.implementation_cost == 0:
        return 0.0
    reduction = safeguard.effectiveness / 100
    return (reduction * reference_value) / annual_cost(safeguard) * 100


def effectiveness_level(safeguard: Safeguard) -> str:
    for bound, label in _EFFECTIVENESS_LEVELS:
        if safeguard.effectiveness >= bound:
            return label
    return "Very Low"


def review_status(safeguard: Safeguard, now: Optional[datetime] = None) -> str:
    """Unscheduled | Overdue | Upcoming | Scheduled."""
    review = parse_iso(safeguard.next_review_at)
    if review is None:
        return "Unscheduled"
    current = _now(now)
    if review < current:
        return "Overdue"
    if review - current <= timedelta(days=UPCOMING_REVIEW_DAYS):
        return "Upcoming"
    return "Scheduled"


def days_since_implementation(safeguard: Safeguard, now: Optional[datetime] = None) -> Optional[int]:
    implemented = parse_iso(safeguard.implemented_at)
    if implemented is None:
        return None
    return int((_now(now) - implemented).total_seconds() // 86400)


def real_effectiveness(safeguard: Safeguard, now: Optional[datetime] = None) -> float:
    """Nominal effectiveness scaled by the mean of recent KPI values.

    Only KPIs measured in the last KPI_WINDOW_DAYS count. With none, the
    nominal effectiveness is returned unchanged. Capped at 100.
    """
    cutoff = _now(now) - timedelta(days=KPI_WINDOW_DAYS)
    recent = [k.value for k in safeguard.kpis if (parse_iso(k.measured_at) or cutoff) > cutoff]
    if not recent:
        return safeguard.effectiveness
    mean = sum(recent) / len(recent)
    return min(100.0, safeguard.effectiveness * (mean / 100))


# ---------------------------------------------------------------------------
# Review scheduling
# ---------------------------------------------------------------------------


def schedule_review(safeguard: Safeguard, months: Optional[int] = None) -> None:
    """Set next_review_at to implemented_at + months (default: the periodicity)."""
    implemented = parse_iso(safeguard.implemented_at)
    if implemented is None:
        return
    period = months or safeguard.review_period_months
    safeguard.next_review_at = add_months(implemented, period).isoformat()


def apply_review_invariant(safeguard: Safeguard) -> None:
    """An implemented safeguard with an implementation date always has a next review."""
    if (
        safeguard.state == SafeguardState.IMPLEMENTED.value
        and safeguard.implemented_at
        and not safeguard.next_review_at
    ):
        schedule_review(safeguard)


def validate_safeguard(safeguard: Safeguard) -> None:
    check_scale("effectiveness", safeguard.effectiveness, 0.0, 100.0)
    if safeguard.implementation_cost < 0 or safeguard.monthly_maintenance_cost < 0:
        raise ValidationError("safeguard costs must be >= 0")
    if not 1 <= safeguard.review_period_months <= 60:
        raise ValidationError(
            f"review_period_months must be between 1 and 60, got {safeguard.review_period_months!r}"
        )
