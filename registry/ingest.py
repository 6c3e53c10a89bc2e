"""
registry/ingest.py -- Bulk loaders that feed the registry.

Three sources:
  - NVD CVE records   -> ingest_cve_records() / sync_recent_cves()
  - MAGERIT catalog   -> import_magerit_threats()
  - Asset CSV         -> parse_asset_csv() + bulk_import_assets()

Every loader processes records independently and returns a result object
with counts: one malformed record is logged and counted, never fatal to
the batch.

Pipeline for CVEs:
  fetch_recent() -> raw NVD dicts -> parse_nvd_cve() -> CVEData
  -> RegistryStore.upsert_cve_threat() (keyed by CVE id, never duplicated)
  -> RiskService.refresh_threat_risks() for threats whose probability moved
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Optional

from core.config import now_iso
from core.cve import parse_nvd_cve
from core.errors import RiskEngineError, ValidationError
from core.fetcher import fetch_recent
from core.models import Asset, AssetType, Threat, ThreatOrigin, ThreatType, Valuation
from registry.risks import RiskService
from registry.store import RegistryStore

logger = logging.getLogger("sigrisk.ingest")


@dataclass
class IngestResult:
    processed: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0


@dataclass
class MageritImportResult:
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass
class BulkImportResult:
    successful: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# CVE feed
# ---------------------------------------------------------------------------


def ingest_cve_records(
    store: RegistryStore,
    raws: list[dict],
    mapping: Optional[dict[str, float]] = None,
    service: Optional[RiskService] = None,
) -> IngestResult:
    """Upsert one threat per CVE record.

    Args:
        raws:    NVD 2.0 `cve` objects.
        mapping: Optional override of the severity -> probability table.
        service: When given, risks built on an updated threat are recalculated.
    """
    result = IngestResult()
    for raw in raws:
        try:
            cve = parse_nvd_cve(raw)
            threat, created = store.upsert_cve_threat(cve, mapping)
        except (KeyError, TypeError, ValueError, RiskEngineError) as e:
            result.errors += 1
            logger.error("CVE record %s rejected: %s", raw.get("id", "<no id>") if isinstance(raw, dict) else "?", e)
            continue
        result.processed += 1
        if created:
            result.created += 1
        else:
            result.updated += 1
            if service is not None:
                service.refresh_threat_risks(threat.id)
    logger.info(
        "CVE ingest: processed=%d created=%d updated=%d errors=%d",
        result.processed,
        result.created,
        result.updated,
        result.errors,
    )
    return result


def sync_recent_cves(
    store: RegistryStore,
    days: int = 7,
    severity: Optional[str] = None,
    service: Optional[RiskService] = None,
) -> IngestResult:
    """Fetch CVEs modified in the last `days` days from NVD and ingest them.

    A failed fetch is already logged by the fetcher and yields an empty result.
    """
    raws = fetch_recent(days=days, severity=severity)
    logger.info("NVD returned %d CVE record(s) for the last %d day(s)", len(raws), days)
    return ingest_cve_records(store, raws, service=service)


# ---------------------------------------------------------------------------
# MAGERIT catalog
# ---------------------------------------------------------------------------

# Excerpt of the MAGERIT v3.0 threat catalog (book II, chapter 5).
MAGERIT_CATALOG: list[dict] = [
    {
        "code": "N.1",
        "name": "Fire",
        "threat_type": ThreatType.NATURAL_DISASTER.value,
        "description": "Fire: possibility that a fire destroys system resources",
        "probability": 2,
        "vectors": ["Physical"],
    },
    {
        "code": "N.2",
        "name": "Water damage",
        "threat_type": ThreatType.NATURAL_DISASTER.value,
        "description": "Flooding: possibility that water destroys system resources",
        "probability": 2,
        "vectors": ["Physical"],
    },
    {
        "code": "I.5",
        "name": "Equipment failure",
        "threat_type": ThreatType.TECHNICAL_FAILURE.value,
        "description": "Failures in equipment and/or programs",
        "probability": 4,
        "vectors": ["Physical", "Logical"],
    },
    {
        "code": "I.8",
        "name": "Communications service failure",
        "threat_type": ThreatType.SERVICE_FAILURE.value,
        "description": "Loss of communications capacity, by physical destruction or saturation",
        "probability": 3,
        "vectors": ["Network"],
    },
    {
        "code": "E.1",
        "name": "User errors",
        "threat_type": ThreatType.UNINTENTIONAL_ERROR.value,
        "description": "Mistakes by people when using the services, data, etc.",
        "probability": 5,
        "vectors": ["Internal"],
    },
    {
        "code": "E.2",
        "name": "Administrator errors",
        "threat_type": ThreatType.UNINTENTIONAL_ERROR.value,
        "description": "Mistakes by people with responsibilities for installation and operation",
        "probability": 4,
        "vectors": ["Internal"],
    },
    {
        "code": "A.25.01",
        "name": "Unauthorized access",
        "threat_type": ThreatType.INTENTIONAL_ATTACK.value,
        "description": "Access to the systems by unauthorized personnel",
        "probability": 6,
        "vectors": ["Physical", "Network"],
    },
    {
        "code": "A.25.02",
        "name": "Abuse of privileges",
        "threat_type": ThreatType.INTENTIONAL_ATTACK.value,
        "description": "Misuse of access privileges",
        "probability": 5,
        "vectors": ["Internal"],
    },
]


def import_magerit_threats(
    store: RegistryStore,
    overwrite: bool = False,
    threat_type: Optional[str] = None,
) -> MageritImportResult:
    """Load MAGERIT_CATALOG into the registry.

    Existing codes are skipped unless overwrite=True, in which case the
    catalog fields replace the stored ones (asset applicability is kept).
    """
    result = MageritImportResult()
    logger.info("Importing MAGERIT threat catalog (overwrite=%s)", overwrite)
    for entry in MAGERIT_CATALOG:
        if threat_type and entry["threat_type"] != threat_type:
            continue
        try:
            existing = store.get_threat_by_code(entry["code"])
            if existing is None:
                store.create_threat(
                    Threat(origin=ThreatOrigin.MAGERIT.value, discovery_date=now_iso(), **entry)
                )
                result.imported += 1
            elif overwrite:
                store.update_threat(existing.id, origin=ThreatOrigin.MAGERIT.value, **entry)
                result.updated += 1
            else:
                result.skipped += 1
        except RiskEngineError as e:
            result.errors += 1
            logger.error("MAGERIT threat %s failed to import: %s", entry["code"], e)
    logger.info(
        "MAGERIT import: imported=%d updated=%d skipped=%d errors=%d",
        result.imported,
        result.updated,
        result.skipped,
        result.errors,
    )
    return result


# ---------------------------------------------------------------------------
# Asset CSV
# ---------------------------------------------------------------------------

_REQUIRED_COLUMNS = (
    "code",
    "name",
    "asset_type",
    "owner",
    "custodian",
    "location",
    "confidentiality",
    "integrity",
    "availability",
    "authenticity",
    "traceability",
)

_ASSET_TYPES = {t.value for t in AssetType}


def _row_to_asset(row: dict) -> Asset:
    missing = [c for c in _REQUIRED_COLUMNS if not (row.get(c) or "").strip()]
    if missing:
        raise ValidationError(f"missing value(s) for {', '.join(missing)}")
    asset_type = row["asset_type"].strip()
    if asset_type not in _ASSET_TYPES:
        raise ValidationError(f"unknown asset_type {asset_type!r}")
    try:
        valuation = Valuation(
            confidentiality=float(row["confidentiality"]),
            integrity=float(row["integrity"]),
            availability=float(row["availability"]),
            authenticity=float(row["authenticity"]),
            traceability=float(row["traceability"]),
        )
        economic_value = float(row.get("economic_value") or 0)
    except ValueError as e:
        raise ValidationError(f"non-numeric value: {e}") from None
    services = [s.strip() for s in (row.get("services") or "").split(";") if s.strip()]
    return Asset(
        code=row["code"].strip(),
        name=row["name"].strip(),
        asset_type=asset_type,
        owner=row["owner"].strip(),
        custodian=row["custodian"].strip(),
        location=row["location"].strip(),
        valuation=valuation,
        economic_value=economic_value,
        category=(row.get("category") or "").strip(),
        services=services,
    )


def parse_asset_csv(content: str) -> tuple[list[Asset], list[str]]:
    """Parse an asset register CSV.

    Expected header (extra columns ignored):
      code,name,asset_type,owner,custodian,location,confidentiality,integrity,
      availability,authenticity,traceability[,economic_value,category,services]
    services is a ';'-separated list. Dependencies are not importable by CSV.

    Returns (assets, errors). Each bad row becomes an error string
    "line N: reason" and is skipped.
    """
    assets: list[Asset] = []
    errors: list[str] = []
    reader = csv.DictReader(io.StringIO(content))
    # Line 1 is the header.
    for line_no, row in enumerate(reader, start=2):
        try:
            assets.append(_row_to_asset(row))
        except ValidationError as e:
            errors.append(f"line {line_no}: {e}")
    return assets, errors


def bulk_import_assets(store: RegistryStore, assets: list[Asset]) -> BulkImportResult:
    """Create each asset independently; failures are collected as "code: reason"."""
    result = BulkImportResult()
    for asset in assets:
        try:
            store.create_asset(asset)
            result.successful += 1
        except RiskEngineError as e:
            result.failed += 1
            result.errors.append(f"{asset.code}: {e}")
    logger.info("Bulk asset import: %d successful, %d failed", result.successful, result.failed)
    return result
