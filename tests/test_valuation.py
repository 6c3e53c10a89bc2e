"""
tests/test_valuation.py -- Unit tests for core/valuation.py derivations.

Coverage:
  - criticality picks the maximum whichever dimension holds it
  - average_valuation is the plain mean of the five dimensions
  - threat_level bands on the probability scale, including the cut points
  - risk_score and risk_kind on stored risk records
"""

import pytest

from core.models import Risk, RiskCalculation, RiskLevel, Valuation
from core.valuation import average_valuation, criticality, risk_kind, risk_score, threat_level
from helpers import make_asset, make_threat

DIMENSIONS = ("confidentiality", "integrity", "availability", "authenticity", "traceability")


def _valuation_with_peak(dimension: str, peak: float = 9.0, rest: float = 2.0) -> Valuation:
    fields = {name: rest for name in DIMENSIONS}
    fields[dimension] = peak
    return Valuation(**fields)


def _risk(vulnerability_id=None, probability=6.0, impact=5.0) -> Risk:
    calc = RiskCalculation(
        inherent_risk=30.0,
        adjusted_probability=probability,
        computed_impact=impact,
        exposure=30.0,
        temporal_factor=1.0,
    )
    return Risk(
        asset_id=1,
        threat_id=1,
        calculation=calc,
        risk_value=30000.0,
        risk_level=RiskLevel.MEDIUM.value,
        probability=probability,
        impact=impact,
        vulnerability_id=vulnerability_id,
    )


class TestCriticality:
    @pytest.mark.parametrize("dimension", DIMENSIONS)
    def test_maximum_found_in_any_dimension(self, dimension):
        valuation = _valuation_with_peak(dimension)
        assert criticality(valuation) == 9.0

    @pytest.mark.parametrize("dimension", DIMENSIONS)
    def test_asset_and_valuation_agree(self, dimension):
        valuation = _valuation_with_peak(dimension)
        assert criticality(make_asset(valuation=valuation)) == criticality(valuation)

    def test_uniform_valuation(self):
        assert criticality(_valuation_with_peak("integrity", peak=4.0, rest=4.0)) == 4.0


class TestAverageValuation:
    @pytest.mark.parametrize("dimension", DIMENSIONS)
    def test_mean_of_five_dimensions(self, dimension):
        valuation = _valuation_with_peak(dimension)
        assert average_valuation(valuation) == pytest.approx((9.0 + 4 * 2.0) / 5)

    def test_accepts_asset(self):
        asset = make_asset(valuation=_valuation_with_peak("availability", peak=10.0, rest=0.0))
        assert average_valuation(asset) == pytest.approx(2.0)


class TestThreatLevel:
    @pytest.mark.parametrize(
        "probability, expected",
        [
            (10.0, RiskLevel.CRITICAL),
            (8.0, RiskLevel.CRITICAL),
            (7.9, RiskLevel.HIGH),
            (6.0, RiskLevel.HIGH),
            (5.9, RiskLevel.MEDIUM),
            (4.0, RiskLevel.MEDIUM),
            (3.9, RiskLevel.LOW),
            (2.0, RiskLevel.LOW),
            (1.9, RiskLevel.VERY_LOW),
            (0.0, RiskLevel.VERY_LOW),
        ],
    )
    def test_bands(self, probability, expected):
        assert threat_level(make_threat(probability=probability)) == expected.value


class TestRiskRecordDerivations:
    def test_score_is_probability_times_impact(self):
        assert risk_score(_risk(probability=6.0, impact=5.0)) == pytest.approx(30.0)

    def test_zero_impact_scores_zero(self):
        assert risk_score(_risk(impact=0.0)) == 0.0

    def test_kind_with_vulnerability_is_residual(self):
        assert risk_kind(_risk(vulnerability_id=3)) == "Residual"

    def test_kind_without_vulnerability_is_inherent(self):
        assert risk_kind(_risk()) == "Inherent"
