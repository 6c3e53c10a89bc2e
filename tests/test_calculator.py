"""
tests/test_calculator.py -- Unit tests for core/calculator.py.

The calculator is pure: every test passes an explicit `now` and builds
unsaved dataclasses, so no fixtures or DB are needed.

Coverage:
  - The two reference scenarios (45-day-old threat -> Medium, new threat -> Low boundary)
  - Temporal decay curve: ramp, peak window, decay, floor, and the [0.5, 1.0] bound
  - Exploit factor with and without a vulnerability
  - Level classification at every boundary
  - Input validation rejects out-of-range values before calculating
  - Policy overrides via RiskPolicy and Settings
"""

from datetime import timedelta

import pytest

from core.calculator import (
    DEFAULT_POLICY,
    RiskPolicy,
    age_in_days,
    calculate,
    classify,
    exploit_factor,
    temporal_decay,
    value_at_risk,
)
from core.config import Settings
from core.errors import ValidationError
from core.models import RiskLevel, Valuation
from helpers import NOW, days_ago, make_asset, make_threat, make_vulnerability

# ===========================================================================
# Reference scenarios
# ===========================================================================


class TestReferenceScenarios:
    def test_established_threat_without_vulnerability_is_medium(self):
        """100k asset, max valuation 10, probability 8, 45 days old, no vulnerability."""
        calc = calculate(make_asset(), make_threat(discovery_date=days_ago(45)), now=NOW)
        assert calc.temporal_factor == 1.0
        assert calc.adjusted_probability == pytest.approx(4.0)
        assert calc.computed_impact == pytest.approx(10.0)
        assert calc.exposure == pytest.approx(40.0)
        assert calc.inherent_risk == pytest.approx(80.0)
        assert classify(calc.exposure) == RiskLevel.MEDIUM

    def test_brand_new_threat_lands_exactly_on_low_boundary(self):
        calc = calculate(make_asset(), make_threat(discovery_date=NOW.isoformat()), now=NOW)
        assert calc.temporal_factor == 0.5
        assert calc.adjusted_probability == pytest.approx(2.0)
        assert calc.exposure == pytest.approx(20.0)
        assert classify(calc.exposure) == RiskLevel.LOW

    def test_same_inputs_give_identical_results(self):
        asset, threat, vuln = make_asset(), make_threat(), make_vulnerability()
        assert calculate(asset, threat, vuln, now=NOW) == calculate(asset, threat, vuln, now=NOW)

    def test_inherent_risk_ignores_vulnerability_and_age(self):
        asset = make_asset()
        a = calculate(asset, make_threat(discovery_date=days_ago(1)), now=NOW)
        b = calculate(asset, make_threat(discovery_date=days_ago(400)), make_vulnerability(exploitability=1), now=NOW)
        assert a.inherent_risk == b.inherent_risk == pytest.approx(80.0)


# ===========================================================================
# Temporal factor
# ===========================================================================


class TestTemporalDecay:
    @pytest.mark.parametrize(
        "age, expected",
        [
            (0, 0.5),
            (15, 0.75),
            (30, 1.0),
            (31, 1.0),
            (90, 1.0),
            (90 + 73, 0.8),
            (1000, 0.8),
        ],
    )
    def test_curve_points(self, age, expected):
        assert temporal_decay(age) == pytest.approx(expected)

    def test_decay_after_peak_is_linear_until_floor(self):
        assert temporal_decay(90 + 36.5) == pytest.approx(0.9)

    def test_factor_always_within_bounds(self):
        for age in range(0, 2000, 7):
            assert 0.5 <= temporal_decay(age) <= 1.0

    def test_negative_age_is_treated_as_zero(self):
        assert temporal_decay(-5) == 0.5

    def test_age_is_floored_to_whole_days(self):
        assert age_in_days((NOW - timedelta(days=2, hours=23)).isoformat(), NOW) == 2

    def test_future_discovery_date_counts_as_age_zero(self):
        assert age_in_days((NOW + timedelta(days=10)).isoformat(), NOW) == 0
        calc = calculate(make_asset(), make_threat(discovery_date=(NOW + timedelta(days=10)).isoformat()), now=NOW)
        assert calc.temporal_factor == 0.5

    def test_naive_discovery_date_is_read_as_utc(self):
        naive = (NOW - timedelta(days=45)).replace(tzinfo=None).isoformat()
        assert age_in_days(naive, NOW) == 45

    def test_missing_discovery_date_is_rejected(self):
        with pytest.raises(ValidationError):
            age_in_days("", NOW)

    def test_unparseable_discovery_date_is_a_validation_error(self):
        with pytest.raises(ValidationError, match="discovery_date"):
            age_in_days("12/31/2024", NOW)


# ===========================================================================
# Exploit factor
# ===========================================================================


class TestExploitFactor:
    def test_default_without_vulnerability(self):
        assert exploit_factor(None) == 0.5

    def test_scaled_exploitability(self):
        assert exploit_factor(make_vulnerability(exploitability=6)) == pytest.approx(0.6)

    def test_vulnerability_raises_adjusted_probability(self):
        calc = calculate(make_asset(), make_threat(), make_vulnerability(exploitability=10), now=NOW)
        assert calc.adjusted_probability == pytest.approx(8.0)
        assert calc.exposure == pytest.approx(80.0)
        assert classify(calc.exposure) == RiskLevel.CRITICAL

    def test_zero_exploitability_zeroes_exposure(self):
        calc = calculate(make_asset(), make_threat(), make_vulnerability(exploitability=0), now=NOW)
        assert calc.exposure == 0.0
        assert classify(calc.exposure) == RiskLevel.VERY_LOW


# ===========================================================================
# Classification and value at risk
# ===========================================================================


class TestClassify:
    @pytest.mark.parametrize(
        "score, level",
        [
            (100, RiskLevel.CRITICAL),
            (80, RiskLevel.CRITICAL),
            (79.99, RiskLevel.HIGH),
            (60, RiskLevel.HIGH),
            (59.99, RiskLevel.MEDIUM),
            (40, RiskLevel.MEDIUM),
            (39.99, RiskLevel.LOW),
            (20, RiskLevel.LOW),
            (19.99, RiskLevel.VERY_LOW),
            (0, RiskLevel.VERY_LOW),
        ],
    )
    def test_boundaries(self, score, level):
        assert classify(score) == level

    def test_custom_thresholds(self):
        policy = RiskPolicy(
            thresholds=((50.0, RiskLevel.CRITICAL), (30.0, RiskLevel.HIGH), (10.0, RiskLevel.MEDIUM), (5.0, RiskLevel.LOW))
        )
        assert classify(40, policy) == RiskLevel.HIGH
        assert classify(40) == RiskLevel.MEDIUM


class TestValueAtRisk:
    def test_reference_scenario(self):
        asset = make_asset()
        calc = calculate(asset, make_threat(), now=NOW)
        # 100000 * (4 / 10) * (10 / 10)
        assert value_at_risk(asset, calc) == pytest.approx(40_000.0)

    def test_worthless_asset_has_no_value_at_risk(self):
        asset = make_asset(economic_value=0)
        calc = calculate(asset, make_threat(), now=NOW)
        assert calc.computed_impact == 0.0
        assert value_at_risk(asset, calc) == 0.0

    def test_economic_reference_scales_impact(self):
        policy = RiskPolicy(economic_reference=50_000.0)
        calc = calculate(make_asset(), make_threat(), now=NOW, policy=policy)
        assert calc.computed_impact == pytest.approx(20.0)


# ===========================================================================
# Validation
# ===========================================================================


class TestValidation:
    def test_probability_above_scale_is_rejected(self):
        with pytest.raises(ValidationError, match="probability"):
            calculate(make_asset(), make_threat(probability=11), now=NOW)

    def test_negative_valuation_is_rejected(self):
        bad = Valuation(confidentiality=-1, integrity=5, availability=5, authenticity=5, traceability=5)
        with pytest.raises(ValidationError, match="confidentiality"):
            calculate(make_asset(valuation=bad), make_threat(), now=NOW)

    def test_exploitability_above_scale_is_rejected(self):
        with pytest.raises(ValidationError, match="exploitability"):
            calculate(make_asset(), make_threat(), make_vulnerability(exploitability=10.5), now=NOW)

    def test_negative_economic_value_is_rejected(self):
        with pytest.raises(ValidationError):
            calculate(make_asset(economic_value=-1), make_threat(), now=NOW)

    def test_validation_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            calculate(make_asset(), make_threat(probability=-0.1), now=NOW)


# ===========================================================================
# Policy from settings
# ===========================================================================


class TestPolicyFromSettings:
    def test_defaults_match_default_policy(self):
        assert RiskPolicy.from_settings(Settings()) == DEFAULT_POLICY

    def test_overrides_are_carried(self):
        policy = RiskPolicy.from_settings(
            Settings(economic_reference_value=200_000, default_exploit_factor=0.25, level_critical=90)
        )
        assert policy.economic_reference == 200_000
        assert policy.default_exploit_factor == 0.25
        assert policy.thresholds[0] == (90, RiskLevel.CRITICAL)
