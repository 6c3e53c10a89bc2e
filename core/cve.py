"""
cve.py -- Maps raw NVD CVE records onto MAGERIT threats.

parse_nvd_cve() reduces an NVD 2.0 "cve" object to CVEData;
threat_from_cve() wraps that in a Threat with a probability derived from the
CVSS severity. The severity -> probability table is policy, not a standard:
it is exposed as SEVERITY_PROBABILITY and every function takes an override.
"""

from typing import Optional

from .config import now_iso
from .models import CVEData, CVESeverity, Threat, ThreatOrigin, ThreatType

# MAGERIT probability (0..10) assigned to each CVSS severity band.
SEVERITY_PROBABILITY: dict[str, float] = {
    CVESeverity.CRITICAL.value: 9,
    CVESeverity.HIGH.value: 7,
    CVESeverity.MEDIUM.value: 5,
    CVESeverity.LOW.value: 3,
}
# Probability for a CVE with neither a recognised severity nor a score.
UNSCORED_PROBABILITY = 1

# Score floors for each band, used when the severity label is missing.
_SCORE_BANDS: tuple[tuple[float, str], ...] = (
    (9.0, CVESeverity.CRITICAL.value),
    (7.0, CVESeverity.HIGH.value),
    (4.0, CVESeverity.MEDIUM.value),
    (0.1, CVESeverity.LOW.value),
)

# CVSS v2 has no CRITICAL band.
_V2_BANDS: tuple[tuple[float, str], ...] = (
    (7.0, CVESeverity.HIGH.value),
    (4.0, CVESeverity.MEDIUM.value),
)

_THREAT_VECTORS = ["Network", "Internet"]


def _severity_for_score(score: float, bands: tuple[tuple[float, str], ...] = _SCORE_BANDS) -> Optional[str]:
    for floor, severity in bands:
        if score >= floor:
            return severity
    return None


def _extract_cvss(cve: dict) -> tuple[float, Optional[str], str]:
    """Return (score, vector, severity), preferring CVSS v3.1, then v3.0, then v2."""
    metrics = cve.get("metrics", {})
    for key in ("cvssMetricV31", "cvssMetricV30"):
        if metrics.get(key):
            entry = metrics[key][0]
            cvss_data = entry.get("cvssData", {})
            score = float(cvss_data.get("baseScore") or 0.0)
            severity = (cvss_data.get("baseSeverity") or entry.get("baseSeverity") or "").upper()
            if severity not in SEVERITY_PROBABILITY:
                severity = _severity_for_score(score) or CVESeverity.LOW.value
            return score, cvss_data.get("vectorString"), severity
    if metrics.get("cvssMetricV2"):
        cvss_data = metrics["cvssMetricV2"][0].get("cvssData", {})
        score = float(cvss_data.get("baseScore") or 0.0)
        severity = _severity_for_score(score, _V2_BANDS) or CVESeverity.LOW.value
        return score, cvss_data.get("vectorString"), severity
    return 0.0, None, CVESeverity.MEDIUM.value


def _extract_affected_software(cve: dict) -> list[str]:
    """Return the CPE criteria of every configuration node marked vulnerable."""
    affected: list[str] = []
    for config in cve.get("configurations", []):
        for node in config.get("nodes", []):
            for match in node.get("cpeMatch", []):
                if not match.get("vulnerable"):
                    continue
                cpe = match.get("criteria", "")
                if cpe and cpe not in affected:
                    affected.append(cpe)
    return affected


def parse_nvd_cve(cve_raw: dict) -> CVEData:
    """Reduce an NVD 2.0 `cve` object to CVEData.

    Raises KeyError if the record has no id.
    """
    descriptions = cve_raw.get("descriptions", [])
    description = next((d["value"] for d in descriptions if d.get("lang") == "en"), None)
    if description is None:
        description = descriptions[0]["value"] if descriptions else "No description available."

    score, vector, severity = _extract_cvss(cve_raw)
    published = cve_raw.get("published") or now_iso()
    return CVEData(
        cve_id=cve_raw["id"].upper(),
        score=score,
        vector=vector,
        severity=severity,
        affected_software=_extract_affected_software(cve_raw),
        published_date=published,
        last_modified_date=cve_raw.get("lastModified") or published,
        description=description,
    )


def probability_from_cvss(
    score: float,
    severity: Optional[str],
    mapping: Optional[dict[str, float]] = None,
) -> float:
    """Translate a CVSS score/severity into a MAGERIT probability (0..10).

    The severity label wins when it is recognised; otherwise the score band
    decides. A CVE with neither maps to UNSCORED_PROBABILITY.
    """
    table = SEVERITY_PROBABILITY if mapping is None else mapping
    label = (severity or "").upper()
    if label in table:
        return table[label]
    band = _severity_for_score(score or 0.0)
    if band is not None and band in table:
        return table[band]
    return UNSCORED_PROBABILITY


def threat_from_cve(cve: CVEData, mapping: Optional[dict[str, float]] = None) -> Threat:
    """Build a new intentional-attack Threat for a CVE. The CVE id is its code."""
    return Threat(
        code=cve.cve_id,
        name=f"Vulnerability {cve.cve_id}",
        threat_type=ThreatType.INTENTIONAL_ATTACK.value,
        description=cve.description[:1000],
        probability=probability_from_cvss(cve.score, cve.severity, mapping),
        origin=ThreatOrigin.CVE.value,
        vectors=list(_THREAT_VECTORS),
        cve_data=cve,
        discovery_date=cve.published_date,
        last_update=cve.last_modified_date,
    )
