"""
core/formatter.py -- Renders risk reports to terminal output, JSON or CSV.

Works on the plain dataclasses produced by core.calculator and
registry.reports; it reads attributes only, so core/ keeps no import of
registry/.
"""

import csv
import io
import json
import os
import re
import sys
from dataclasses import asdict, is_dataclass
from typing import Any, Optional

from .models import Risk, RiskLevel

W = 78  # output width

# ---------------------------------------------------------------------------
# ANSI color control
# ---------------------------------------------------------------------------

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from a string."""
    return _ANSI_RE.sub("", text)


def _use_color() -> bool:
    """Return True if stdout is a TTY and color has not been disabled.

    Respects NO_COLOR env var (https://no-color.org) and checks sys.stdout.isatty().
    Can be overridden by calling disable_color() / enable_color().
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled: Optional[bool] = None  # None = auto-detect


def disable_color() -> None:
    """Force-disable color output (called when --no-color flag is set)."""
    global _color_enabled
    _color_enabled = False


def enable_color() -> None:
    global _color_enabled
    _color_enabled = True


def _color_active() -> bool:
    if _color_enabled is not None:
        return _color_enabled
    return _use_color()


LEVEL_COLORS = {
    RiskLevel.CRITICAL.value: "\033[91m",  # red
    RiskLevel.HIGH.value: "\033[93m",  # yellow
    RiskLevel.MEDIUM.value: "\033[94m",  # blue
    RiskLevel.LOW.value: "\033[92m",  # green
    RiskLevel.VERY_LOW.value: "\033[2m",  # dim
}


def _reset() -> str:
    return "\033[0m" if _color_active() else ""


def _bold() -> str:
    return "\033[1m" if _color_active() else ""


def _level_color(level: str) -> str:
    return LEVEL_COLORS.get(level, "") if _color_active() else ""


def _bar(char: str = "═") -> str:
    return char * W


def _money(value: float) -> str:
    return f"{value:,.2f}"


# ---------------------------------------------------------------------------
# Terminal renderers
# ---------------------------------------------------------------------------


def _risk_line(risk: Risk, asset_names: dict[int, str], threat_names: dict[int, str]) -> str:
    asset = asset_names.get(risk.asset_id, f"asset #{risk.asset_id}")[:22]
    threat = threat_names.get(risk.threat_id, f"threat #{risk.threat_id}")[:24]
    color = _level_color(risk.risk_level)
    reset = _reset()
    return (
        f"  #{risk.id or 0:<5} {asset:<22} {threat:<24} "
        f"{color}{risk.risk_level:<9}{reset} {risk.calculation.exposure:>7.2f} {_money(risk.risk_value):>12}"
    )


def print_matrix(
    matrix: Any,
    asset_names: Optional[dict[int, str]] = None,
    threat_names: Optional[dict[int, str]] = None,
) -> None:
    """Print active risks grouped by level, Critical first."""
    asset_names = asset_names or {}
    threat_names = threat_names or {}
    bold = _bold()
    reset = _reset()
    stats = matrix.stats

    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}RISK MATRIX: {stats.total_risks} active risks{reset}")
    print(f"  Total value at risk: {_money(stats.total_value_at_risk)}   Average score: {stats.average_score:.2f}")
    print(f"{bold}{_bar()}{reset}")

    for level in RiskLevel:
        group = matrix.by_level.get(level.value, [])
        color = _level_color(level.value)
        print(f"\n  {color}{bold}{level.value:<60}({len(group)}){reset}")
        print(f"  {'─' * (W - 2)}")
        for risk in group:
            print(_risk_line(risk, asset_names, threat_names))

    print(f"\n{_bar()}\n")


def print_top_risks(
    risks: list[Risk],
    asset_names: Optional[dict[int, str]] = None,
    threat_names: Optional[dict[int, str]] = None,
) -> None:
    """Print risks in the order given (callers pass them sorted by value)."""
    bold = _bold()
    reset = _reset()
    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}TOP {len(risks)} RISKS BY VALUE AT RISK{reset}")
    print(f"{bold}{_bar()}{reset}")
    print(f"  {'id':<6} {'asset':<22} {'threat':<24} {'level':<9} {'exposure':>7} {'VaR':>12}")
    print(f"  {'─' * (W - 2)}")
    for risk in risks:
        print(_risk_line(risk, asset_names or {}, threat_names or {}))
    print(f"\n{_bar()}\n")


def print_result(title: str, result: Any) -> None:
    """Print a batch result dataclass (counts) as aligned key/value lines."""
    bold = _bold()
    reset = _reset()
    print(f"\n  {bold}{title}{reset}")
    for key, value in asdict(result).items():
        print(f"    {key:<12} {value}")
    print()


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def to_json(value: Any) -> str:
    """Serialize a report dataclass (or a list of them) as indented JSON."""
    if isinstance(value, list):
        data = [asdict(v) if is_dataclass(v) else v for v in value]
    elif is_dataclass(value):
        data = asdict(value)
    else:
        data = value
    return json.dumps(data, indent=2)


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------

# Cells starting with these are evaluated as formulas by spreadsheet apps (CWE-1236).
_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def _sanitize_csv_cell(value: Any) -> Any:
    """Prefix text cells that a spreadsheet would read as a formula with a tab.

    Numbers pass through untouched so negative values stay numeric.
    """
    if isinstance(value, str) and value.startswith(_FORMULA_PREFIXES):
        return "\t" + value
    return value


def to_csv(
    risks: list[Risk],
    asset_names: Optional[dict[int, str]] = None,
    threat_names: Optional[dict[int, str]] = None,
) -> str:
    """Render a risk register as CSV.

    Columns: id, asset_id, asset, threat_id, threat, vulnerability_id,
             risk_level, risk_value, exposure, inherent_risk, probability,
             impact, temporal_factor, calculated_at, active
    """
    asset_names = asset_names or {}
    threat_names = threat_names or {}
    headers = [
        "id",
        "asset_id",
        "asset",
        "threat_id",
        "threat",
        "vulnerability_id",
        "risk_level",
        "risk_value",
        "exposure",
        "inherent_risk",
        "probability",
        "impact",
        "temporal_factor",
        "calculated_at",
        "active",
    ]

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(headers)

    for r in risks:
        c = r.calculation
        row = [
            r.id,
            r.asset_id,
            asset_names.get(r.asset_id, ""),
            r.threat_id,
            threat_names.get(r.threat_id, ""),
            r.vulnerability_id or "",
            r.risk_level,
            round(r.risk_value, 2),
            round(c.exposure, 4),
            round(c.inherent_risk, 4),
            round(r.probability, 4),
            round(r.impact, 4),
            round(c.temporal_factor, 4),
            r.calculated_at,
            r.active,
        ]
        writer.writerow([_sanitize_csv_cell(v) for v in row])

    return buf.getvalue()
