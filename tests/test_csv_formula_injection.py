"""
tests/test_csv_formula_injection.py -- Regression tests for CSV formula injection (CWE-1236).

Spreadsheet applications interpret cells that start with =, +, -, or @ as
formulas. Asset and threat names are free text (and CVE-derived threat names
come from an external feed), so a name like =HYPERLINK(...) written straight
into the risk register export would execute when the CSV is opened.

Mitigation: cells starting with a dangerous character are prefixed with \t,
which spreadsheets read as text. Numeric cells are never touched, so a
negative number stays a number.
"""

import csv
import io

import pytest

from core.formatter import to_csv
from core.models import Risk, RiskCalculation

# ---------------------------------------------------------------------------
# Test data helper
# ---------------------------------------------------------------------------


def _risk(risk_id: int = 1, asset_id: int = 10, threat_id: int = 20, risk_value: float = 40_000.0) -> Risk:
    return Risk(
        id=risk_id,
        asset_id=asset_id,
        threat_id=threat_id,
        calculation=RiskCalculation(
            inherent_risk=80.0,
            adjusted_probability=4.0,
            computed_impact=10.0,
            exposure=40.0,
            temporal_factor=1.0,
        ),
        risk_value=risk_value,
        risk_level="Medium",
        probability=8.0,
        impact=10.0,
        calculated_at="2025-06-01T12:00:00+00:00",
    )


def _rows(risks: list[Risk], asset_name: str = "ERP", threat_name: str = "Fire") -> list[dict]:
    output = to_csv(risks, asset_names={10: asset_name}, threat_names={20: threat_name})
    return list(csv.DictReader(io.StringIO(output)))


# ---------------------------------------------------------------------------
# Dangerous prefixes
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("payload", ["=CMD|'/C calc'", "+1+1", "-1+1", "@SUM(A1)"])
def test_asset_name_with_formula_prefix_is_neutralized(payload):
    cell = _rows([_risk()], asset_name=payload)[0]["asset"]
    assert cell == "\t" + payload


def test_threat_name_with_formula_prefix_is_neutralized():
    cell = _rows([_risk()], threat_name='=HYPERLINK("http://evil","x")')[0]["threat"]
    assert cell.startswith("\t=")


# ---------------------------------------------------------------------------
# Safe values -- no false-positive sanitization
# ---------------------------------------------------------------------------


def test_plain_names_unchanged():
    row = _rows([_risk()], asset_name="ERP system", threat_name="Fire")[0]
    assert row["asset"] == "ERP system"
    assert row["threat"] == "Fire"


def test_negative_number_stays_numeric():
    row = _rows([_risk(risk_value=-12.5)])[0]
    assert row["risk_value"] == "-12.5"


def test_unknown_names_and_no_vulnerability_are_blank():
    output = to_csv([_risk()])
    row = list(csv.DictReader(io.StringIO(output)))[0]
    assert row["asset"] == ""
    assert row["threat"] == ""
    assert row["vulnerability_id"] == ""


def test_header_and_row_count():
    output = to_csv([_risk(1), _risk(2)])
    rows = list(csv.reader(io.StringIO(output)))
    assert rows[0][:3] == ["id", "asset_id", "asset"]
    assert len(rows) == 3
