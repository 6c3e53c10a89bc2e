"""
registry/store.py -- SQLAlchemy-backed persistence layer for the SIGRISK registry.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in core/models.py
remain the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. RegistryStore is the repository (one clean
interface per entity). The _row_to_* functions are the mappers. Route
handlers and services never touch SQL directly.

Risk triple uniqueness is enforced by the database, not by application
locking: UNIQUE(asset_id, threat_id, vulnerability_id) on the risks table.
SQL treats NULLs as distinct inside a unique constraint, so "no
vulnerability" is stored as 0 and mapped back to None on read.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = RegistryStore()                               # SQLite default
    store = RegistryStore("postgresql://user:pw@host/db") # PostgreSQL
    asset = store.create_asset(asset)
    risk = store.upsert_risk(risk)
    store.close()
"""

import dataclasses
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.config import now_iso, parse_iso
from core.cve import probability_from_cvss, threat_from_cve
from core.errors import ConflictError, NotFound, ValidationError
from core.models import (
    Asset,
    CVEData,
    Risk,
    RiskCalculation,
    Safeguard,
    SafeguardDocument,
    SafeguardKPI,
    SafeguardState,
    Threat,
    Valuation,
    Vulnerability,
)
from core.safeguards import apply_review_invariant, validate_safeguard
from core.valuation import validate_asset, validate_threat, validate_vulnerability

logger = logging.getLogger("sigrisk.store")

_DEFAULT_DB_URL = "sqlite:///sigrisk.db"

# Stored in risks.vulnerability_id when the risk has no linked vulnerability.
NO_VULNERABILITY = 0

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_assets = Table(
    "assets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("asset_type", String(50), nullable=False),
    Column("category", String(100), nullable=False, server_default=""),
    Column("owner", String(255), nullable=False),
    Column("custodian", String(255), nullable=False),
    Column("location", String(255), nullable=False),
    Column("confidentiality", Float, nullable=False),
    Column("integrity", Float, nullable=False),
    Column("availability", Float, nullable=False),
    Column("authenticity", Float, nullable=False),
    Column("traceability", Float, nullable=False),
    Column("economic_value", Float, nullable=False, server_default="0"),
    Column("services", Text),  # JSON array serialized as text
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# asset_id depends on depends_on_id. Weak reference: no cascade either way.
_asset_dependencies = Table(
    "asset_dependencies",
    metadata,
    Column("asset_id", Integer, nullable=False),
    Column("depends_on_id", Integer, nullable=False),
    UniqueConstraint("asset_id", "depends_on_id", name="uq_asset_dependency"),
)

_threats = Table(
    "threats",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("threat_type", String(50), nullable=False),
    Column("origin", String(20), nullable=False, server_default="Manual"),
    Column("description", Text, nullable=False),
    Column("probability", Float, nullable=False),
    Column("vectors", Text),  # JSON array
    Column("cve_id", String(30), unique=True),  # NULL for non-CVE threats
    Column("cve_data", Text),  # JSON object
    Column("discovery_date", String(32), nullable=False),
    Column("last_update", String(32), nullable=False),
)

_threat_assets = Table(
    "threat_assets",
    metadata,
    Column("threat_id", Integer, nullable=False),
    Column("asset_id", Integer, nullable=False),
    UniqueConstraint("threat_id", "asset_id", name="uq_threat_asset"),
)

_vulnerabilities = Table(
    "vulnerabilities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("category", String(100), nullable=False),
    Column("description", Text, nullable=False),
    Column("exploitability", Float, nullable=False),
    Column("attack_vectors", Text),  # JSON array
    Column("affected_assets", Text),  # JSON array of asset ids
    Column("related_threats", Text),  # JSON array of threat ids
    Column("state", String(20), nullable=False, server_default="Open"),
    Column("detected_at", String(32), nullable=False),
    Column("mitigated_at", String(32)),
)

_risks = Table(
    "risks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("asset_id", Integer, nullable=False),
    Column("threat_id", Integer, nullable=False),
    Column("vulnerability_id", Integer, nullable=False, server_default="0"),
    Column("inherent_risk", Float, nullable=False),
    Column("adjusted_probability", Float, nullable=False),
    Column("computed_impact", Float, nullable=False),
    Column("exposure", Float, nullable=False),
    Column("temporal_factor", Float, nullable=False),
    Column("risk_value", Float, nullable=False),
    Column("risk_level", String(20), nullable=False),
    Column("probability", Float, nullable=False),
    Column("impact", Float, nullable=False),
    Column("calculated_at", String(32), nullable=False),
    Column("active", Integer, nullable=False, server_default="1"),  # boolean stored as 0/1
    UniqueConstraint("asset_id", "threat_id", "vulnerability_id", name="uq_risk_triple"),
)

_safeguards = Table(
    "safeguards",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("safeguard_type", String(30), nullable=False),
    Column("category", String(30), nullable=False),
    Column("description", Text, nullable=False),
    Column("responsible", String(255), nullable=False),
    Column("state", String(20), nullable=False, server_default="Proposed"),
    Column("effectiveness", Float, nullable=False, server_default="0"),
    Column("implementation_cost", Float, nullable=False, server_default="0"),
    Column("monthly_maintenance_cost", Float, nullable=False, server_default="0"),
    Column("assets", Text),  # JSON array of asset ids
    Column("review_period_months", Integer, nullable=False, server_default="12"),
    Column("documentation", Text),  # JSON array of {name, url, description}
    Column("implemented_at", String(32)),
    Column("next_review_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_safeguard_risks = Table(
    "safeguard_risks",
    metadata,
    Column("safeguard_id", Integer, nullable=False),
    Column("risk_id", Integer, nullable=False),
    UniqueConstraint("safeguard_id", "risk_id", name="uq_safeguard_risk"),
)

_safeguard_kpis = Table(
    "safeguard_kpis",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("safeguard_id", Integer, nullable=False),
    Column("name", String(255), nullable=False),
    Column("value", Float, nullable=False),
    Column("unit", String(50), nullable=False),
    Column("measured_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dumps(value: Any) -> str:
    return json.dumps(value)


def _loads(value: Optional[str], default: Any) -> Any:
    return json.loads(value) if value else default


def _vuln_key(vulnerability_id: Optional[int]) -> int:
    return vulnerability_id if vulnerability_id else NO_VULNERABILITY


def _apply_fields(entity: Any, fields: dict[str, Any]) -> Any:
    """Return a copy of a dataclass with `fields` applied. Unknown or id fields are rejected."""
    allowed = {f.name for f in dataclasses.fields(entity)} - {"id", "created_at", "updated_at"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"unknown field(s): {', '.join(sorted(unknown))}")
    return dataclasses.replace(entity, **fields)


def _asset_values(asset: Asset) -> dict[str, Any]:
    v = asset.valuation
    return {
        "code": asset.code,
        "name": asset.name,
        "asset_type": asset.asset_type,
        "category": asset.category,
        "owner": asset.owner,
        "custodian": asset.custodian,
        "location": asset.location,
        "confidentiality": v.confidentiality,
        "integrity": v.integrity,
        "availability": v.availability,
        "authenticity": v.authenticity,
        "traceability": v.traceability,
        "economic_value": asset.economic_value,
        "services": _dumps(asset.services),
    }


def _threat_values(threat: Threat) -> dict[str, Any]:
    return {
        "code": threat.code,
        "name": threat.name,
        "threat_type": threat.threat_type,
        "origin": threat.origin,
        "description": threat.description,
        "probability": threat.probability,
        "vectors": _dumps(threat.vectors),
        "cve_id": threat.cve_data.cve_id if threat.cve_data else None,
        "cve_data": _dumps(dataclasses.asdict(threat.cve_data)) if threat.cve_data else None,
        "discovery_date": threat.discovery_date or now_iso(),
        "last_update": threat.last_update or now_iso(),
    }


def _vulnerability_values(vuln: Vulnerability) -> dict[str, Any]:
    return {
        "code": vuln.code,
        "name": vuln.name,
        "category": vuln.category,
        "description": vuln.description,
        "exploitability": vuln.exploitability,
        "attack_vectors": _dumps(vuln.attack_vectors),
        "affected_assets": _dumps(vuln.affected_assets),
        "related_threats": _dumps(vuln.related_threats),
        "state": vuln.state,
        "detected_at": vuln.detected_at or now_iso(),
        "mitigated_at": vuln.mitigated_at,
    }


def _risk_values(risk: Risk) -> dict[str, Any]:
    c = risk.calculation
    return {
        "inherent_risk": c.inherent_risk,
        "adjusted_probability": c.adjusted_probability,
        "computed_impact": c.computed_impact,
        "exposure": c.exposure,
        "temporal_factor": c.temporal_factor,
        "risk_value": risk.risk_value,
        "risk_level": risk.risk_level,
        "probability": risk.probability,
        "impact": risk.impact,
        "calculated_at": risk.calculated_at or now_iso(),
        "active": 1,
    }


def _safeguard_values(sg: Safeguard) -> dict[str, Any]:
    return {
        "code": sg.code,
        "name": sg.name,
        "safeguard_type": sg.safeguard_type,
        "category": sg.category,
        "description": sg.description,
        "responsible": sg.responsible,
        "state": sg.state,
        "effectiveness": sg.effectiveness,
        "implementation_cost": sg.implementation_cost,
        "monthly_maintenance_cost": sg.monthly_maintenance_cost,
        "assets": _dumps(sg.assets),
        "review_period_months": sg.review_period_months,
        "documentation": _dumps([dataclasses.asdict(d) for d in sg.documentation]),
        "implemented_at": sg.implemented_at,
        "next_review_at": sg.next_review_at,
    }


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RegistryStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # SQLite requires check_same_thread=False when used from FastAPI's
            # threadpool where one pooled connection may serve several threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def _check_assets_exist(self, conn, asset_ids: list[int]) -> None:
        if not asset_ids:
            return
        found = {r.id for r in conn.execute(select(_assets.c.id).where(_assets.c.id.in_(asset_ids)))}
        for asset_id in asset_ids:
            if asset_id not in found:
                raise NotFound("Asset", asset_id)

    def create_asset(self, asset: Asset) -> Asset:
        """Insert a new asset and its dependency links. Raises ConflictError on a duplicate code."""
        validate_asset(asset)
        now = now_iso()
        with self.engine.connect() as conn:
            self._check_assets_exist(conn, asset.dependencies)
            try:
                result = conn.execute(
                    _assets.insert().values(created_at=now, updated_at=now, **_asset_values(asset))
                )
            except IntegrityError:
                conn.rollback()
                raise ConflictError(f"asset code {asset.code!r} already exists") from None
            asset_id = result.inserted_primary_key[0]
            for dep in set(asset.dependencies):
                conn.execute(_asset_dependencies.insert().values(asset_id=asset_id, depends_on_id=dep))
            conn.commit()
        return self.get_asset(asset_id)

    def get_asset(self, asset_id: int) -> Optional[Asset]:
        """Fetch a single asset by ID. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_assets.select().where(_assets.c.id == asset_id)).fetchone()
            if row is None:
                return None
            deps = self._dependency_ids(conn, asset_id)
        return _row_to_asset(row, deps)

    def get_asset_by_code(self, code: str) -> Optional[Asset]:
        with self.engine.connect() as conn:
            row = conn.execute(_assets.select().where(_assets.c.code == code)).fetchone()
            if row is None:
                return None
            deps = self._dependency_ids(conn, row.id)
        return _row_to_asset(row, deps)

    def list_assets(self, asset_type: Optional[str] = None) -> list[Asset]:
        """Return all assets ordered by code, optionally filtered by type."""
        stmt = _assets.select().order_by(_assets.c.code)
        if asset_type:
            stmt = stmt.where(_assets.c.asset_type == asset_type)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
            links = conn.execute(_asset_dependencies.select()).fetchall()
        deps: dict[int, list[int]] = {}
        for link in links:
            deps.setdefault(link.asset_id, []).append(link.depends_on_id)
        return [_row_to_asset(r, sorted(deps.get(r.id, []))) for r in rows]

    def update_asset(self, asset_id: int, **fields) -> Asset:
        """Update mutable fields on an existing asset and return the new state.

        Accepts any subset of Asset fields except id and timestamps.
        `dependencies` replaces the whole dependency set. Raises NotFound,
        ValidationError, or ConflictError (code taken by another asset).
        """
        current = self.get_asset(asset_id)
        if current is None:
            raise NotFound("Asset", asset_id)
        updated = _apply_fields(current, fields)
        validate_asset(updated)
        if asset_id in updated.dependencies:
            raise ValidationError("an asset cannot depend on itself")
        with self.engine.connect() as conn:
            self._check_assets_exist(conn, updated.dependencies)
            try:
                conn.execute(
                    _assets.update()
                    .where(_assets.c.id == asset_id)
                    .values(updated_at=now_iso(), **_asset_values(updated))
                )
            except IntegrityError:
                conn.rollback()
                raise ConflictError(f"asset code {updated.code!r} already exists") from None
            if "dependencies" in fields:
                conn.execute(_asset_dependencies.delete().where(_asset_dependencies.c.asset_id == asset_id))
                for dep in set(updated.dependencies):
                    conn.execute(_asset_dependencies.insert().values(asset_id=asset_id, depends_on_id=dep))
            conn.commit()
        return self.get_asset(asset_id)

    def delete_asset(self, asset_id: int) -> None:
        """Hard-delete an asset.

        Blocked with ConflictError while any other asset lists it as a
        dependency. Risks that reference the asset are left in place; they
        fail recalculation and are retired by retire_orphaned_risks().
        """
        with self.engine.connect() as conn:
            if conn.execute(select(_assets.c.id).where(_assets.c.id == asset_id)).fetchone() is None:
                raise NotFound("Asset", asset_id)
            dependents = self._dependent_ids(conn, asset_id)
            if dependents:
                raise ConflictError(
                    f"asset {asset_id} is a dependency of asset(s) {', '.join(str(d) for d in dependents)}"
                )
            conn.execute(_asset_dependencies.delete().where(_asset_dependencies.c.asset_id == asset_id))
            conn.execute(_threat_assets.delete().where(_threat_assets.c.asset_id == asset_id))
            conn.execute(_assets.delete().where(_assets.c.id == asset_id))
            conn.commit()

    def _dependency_ids(self, conn, asset_id: int) -> list[int]:
        rows = conn.execute(
            select(_asset_dependencies.c.depends_on_id)
            .where(_asset_dependencies.c.asset_id == asset_id)
            .order_by(_asset_dependencies.c.depends_on_id)
        ).fetchall()
        return [r.depends_on_id for r in rows]

    def _dependent_ids(self, conn, asset_id: int) -> list[int]:
        rows = conn.execute(
            select(_asset_dependencies.c.asset_id)
            .where(_asset_dependencies.c.depends_on_id == asset_id)
            .order_by(_asset_dependencies.c.asset_id)
        ).fetchall()
        return [r.asset_id for r in rows]

    def get_dependencies(self, asset_id: int) -> list[Asset]:
        """Assets that asset_id relies on."""
        with self.engine.connect() as conn:
            ids = self._dependency_ids(conn, asset_id)
        return [a for a in (self.get_asset(i) for i in ids) if a is not None]

    def get_dependents(self, asset_id: int) -> list[Asset]:
        """Assets that rely on asset_id."""
        with self.engine.connect() as conn:
            ids = self._dependent_ids(conn, asset_id)
        return [a for a in (self.get_asset(i) for i in ids) if a is not None]

    def total_asset_value(self) -> float:
        with self.engine.connect() as conn:
            total = conn.execute(select(func.coalesce(func.sum(_assets.c.economic_value), 0.0))).scalar()
        return float(total)

    # ------------------------------------------------------------------
    # Threats
    # ------------------------------------------------------------------

    def create_threat(self, threat: Threat) -> Threat:
        """Insert a new threat and its applicability links. Raises ConflictError on a duplicate code."""
        validate_threat(threat)
        with self.engine.connect() as conn:
            self._check_assets_exist(conn, threat.applies_to)
            try:
                result = conn.execute(_threats.insert().values(**_threat_values(threat)))
            except IntegrityError:
                conn.rollback()
                raise ConflictError(f"threat code {threat.code!r} already exists") from None
            threat_id = result.inserted_primary_key[0]
            for asset_id in set(threat.applies_to):
                conn.execute(_threat_assets.insert().values(threat_id=threat_id, asset_id=asset_id))
            conn.commit()
        return self.get_threat(threat_id)

    def _applies_to(self, conn, threat_id: int) -> list[int]:
        rows = conn.execute(
            select(_threat_assets.c.asset_id)
            .where(_threat_assets.c.threat_id == threat_id)
            .order_by(_threat_assets.c.asset_id)
        ).fetchall()
        return [r.asset_id for r in rows]

    def _get_threat_where(self, clause) -> Optional[Threat]:
        with self.engine.connect() as conn:
            row = conn.execute(_threats.select().where(clause)).fetchone()
            if row is None:
                return None
            applies_to = self._applies_to(conn, row.id)
        return _row_to_threat(row, applies_to)

    def get_threat(self, threat_id: int) -> Optional[Threat]:
        return self._get_threat_where(_threats.c.id == threat_id)

    def get_threat_by_code(self, code: str) -> Optional[Threat]:
        return self._get_threat_where(_threats.c.code == code)

    def get_threat_by_cve(self, cve_id: str) -> Optional[Threat]:
        return self._get_threat_where(_threats.c.cve_id == cve_id.upper())

    def list_threats(self, threat_type: Optional[str] = None, origin: Optional[str] = None) -> list[Threat]:
        """Return all threats, highest probability first."""
        stmt = _threats.select().order_by(_threats.c.probability.desc(), _threats.c.code)
        if threat_type:
            stmt = stmt.where(_threats.c.threat_type == threat_type)
        if origin:
            stmt = stmt.where(_threats.c.origin == origin)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
            links = conn.execute(_threat_assets.select()).fetchall()
        applies: dict[int, list[int]] = {}
        for link in links:
            applies.setdefault(link.threat_id, []).append(link.asset_id)
        return [_row_to_threat(r, sorted(applies.get(r.id, []))) for r in rows]

    def update_threat(self, threat_id: int, **fields) -> Threat:
        """Update fields on an existing threat. `applies_to` replaces the whole set."""
        current = self.get_threat(threat_id)
        if current is None:
            raise NotFound("Threat", threat_id)
        fields.setdefault("last_update", now_iso())
        updated = _apply_fields(current, fields)
        validate_threat(updated)
        with self.engine.connect() as conn:
            self._check_assets_exist(conn, updated.applies_to)
            try:
                conn.execute(_threats.update().where(_threats.c.id == threat_id).values(**_threat_values(updated)))
            except IntegrityError:
                conn.rollback()
                raise ConflictError(f"threat code {updated.code!r} already exists") from None
            if "applies_to" in fields:
                conn.execute(_threat_assets.delete().where(_threat_assets.c.threat_id == threat_id))
                for asset_id in set(updated.applies_to):
                    conn.execute(_threat_assets.insert().values(threat_id=threat_id, asset_id=asset_id))
            conn.commit()
        return self.get_threat(threat_id)

    def delete_threat(self, threat_id: int) -> None:
        with self.engine.connect() as conn:
            result = conn.execute(_threats.delete().where(_threats.c.id == threat_id))
            if result.rowcount == 0:
                conn.rollback()
                raise NotFound("Threat", threat_id)
            conn.execute(_threat_assets.delete().where(_threat_assets.c.threat_id == threat_id))
            conn.commit()

    def assign_threat_to_asset(self, threat_id: int, asset_id: int) -> None:
        """Record that a threat applies to an asset. Idempotent."""
        with self.engine.connect() as conn:
            if conn.execute(select(_threats.c.id).where(_threats.c.id == threat_id)).fetchone() is None:
                raise NotFound("Threat", threat_id)
            self._check_assets_exist(conn, [asset_id])
            try:
                conn.execute(_threat_assets.insert().values(threat_id=threat_id, asset_id=asset_id))
                conn.commit()
            except IntegrityError:
                conn.rollback()

    def threats_for_asset(self, asset_id: int) -> list[Threat]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_threats)
                .select_from(_threats.join(_threat_assets, _threat_assets.c.threat_id == _threats.c.id))
                .where(_threat_assets.c.asset_id == asset_id)
                .order_by(_threats.c.probability.desc())
            ).fetchall()
            applies = {r.id: self._applies_to(conn, r.id) for r in rows}
        return [_row_to_threat(r, applies[r.id]) for r in rows]

    def upsert_cve_threat(
        self, cve: CVEData, mapping: Optional[dict[str, float]] = None
    ) -> tuple[Threat, bool]:
        """Create or refresh the threat for a CVE, keyed by CVE id.

        An existing threat has its CVE data, probability and last_update
        overwritten; nothing else changes. Returns (threat, created).
        A concurrent insert of the same CVE is retried as an update.
        """
        probability = probability_from_cvss(cve.score, cve.severity, mapping)
        refresh = {
            "cve_data": _dumps(dataclasses.asdict(cve)),
            "probability": probability,
            "last_update": cve.last_modified_date or now_iso(),
        }
        created = False
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(_threats.c.id).where(_threats.c.cve_id == cve.cve_id)
                ).fetchone()
                if existing is not None:
                    threat_id = existing.id
                    conn.execute(_threats.update().where(_threats.c.id == threat_id).values(**refresh))
                else:
                    threat = threat_from_cve(cve, mapping)
                    threat_id = conn.execute(_threats.insert().values(**_threat_values(threat))).inserted_primary_key[0]
                    created = True
        except IntegrityError:
            logger.info("Concurrent insert for %s; updating existing threat", cve.cve_id)
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(_threats.c.id).where(
                        (_threats.c.cve_id == cve.cve_id) | (_threats.c.code == cve.cve_id)
                    )
                ).fetchone()
                if row is None:
                    raise
                threat_id = row.id
                conn.execute(
                    _threats.update().where(_threats.c.id == threat_id).values(cve_id=cve.cve_id, **refresh)
                )
            created = False
        return self.get_threat(threat_id), created

    # ------------------------------------------------------------------
    # Vulnerabilities
    # ------------------------------------------------------------------

    def create_vulnerability(self, vuln: Vulnerability) -> Vulnerability:
        validate_vulnerability(vuln)
        with self.engine.connect() as conn:
            try:
                result = conn.execute(_vulnerabilities.insert().values(**_vulnerability_values(vuln)))
            except IntegrityError:
                conn.rollback()
                raise ConflictError(f"vulnerability code {vuln.code!r} already exists") from None
            conn.commit()
        return self.get_vulnerability(result.inserted_primary_key[0])

    def get_vulnerability(self, vuln_id: int) -> Optional[Vulnerability]:
        with self.engine.connect() as conn:
            row = conn.execute(_vulnerabilities.select().where(_vulnerabilities.c.id == vuln_id)).fetchone()
        return _row_to_vulnerability(row) if row is not None else None

    def list_vulnerabilities(self, state: Optional[str] = None) -> list[Vulnerability]:
        stmt = _vulnerabilities.select().order_by(_vulnerabilities.c.exploitability.desc(), _vulnerabilities.c.code)
        if state:
            stmt = stmt.where(_vulnerabilities.c.state == state)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_vulnerability(r) for r in rows]

    def update_vulnerability(self, vuln_id: int, **fields) -> Vulnerability:
        current = self.get_vulnerability(vuln_id)
        if current is None:
            raise NotFound("Vulnerability", vuln_id)
        updated = _apply_fields(current, fields)
        validate_vulnerability(updated)
        with self.engine.connect() as conn:
            try:
                conn.execute(
                    _vulnerabilities.update()
                    .where(_vulnerabilities.c.id == vuln_id)
                    .values(**_vulnerability_values(updated))
                )
            except IntegrityError:
                conn.rollback()
                raise ConflictError(f"vulnerability code {updated.code!r} already exists") from None
            conn.commit()
        return self.get_vulnerability(vuln_id)

    def delete_vulnerability(self, vuln_id: int) -> None:
        with self.engine.connect() as conn:
            result = conn.execute(_vulnerabilities.delete().where(_vulnerabilities.c.id == vuln_id))
            conn.commit()
        if result.rowcount == 0:
            raise NotFound("Vulnerability", vuln_id)

    # ------------------------------------------------------------------
    # Risks
    # ------------------------------------------------------------------

    def _triple_clause(self, asset_id: int, threat_id: int, vulnerability_id: Optional[int]):
        return and_(
            _risks.c.asset_id == asset_id,
            _risks.c.threat_id == threat_id,
            _risks.c.vulnerability_id == _vuln_key(vulnerability_id),
        )

    def upsert_risk(self, risk: Risk) -> Risk:
        """Write a risk for its (asset, threat, vulnerability) triple.

        Update the row for the triple if it exists (and reactivate it), else
        hand off to insert_risk. If a concurrent writer inserted the same
        triple between our SELECT and INSERT, insert_risk raises ConflictError
        and the write is retried as an update: last writer wins, and a second
        row for the triple is never created.
        """
        values = _risk_values(risk)
        clause = self._triple_clause(risk.asset_id, risk.threat_id, risk.vulnerability_id)
        with self.engine.begin() as conn:
            existing = conn.execute(select(_risks.c.id).where(clause)).fetchone()
            if existing is not None:
                conn.execute(_risks.update().where(_risks.c.id == existing.id).values(**values))
        if existing is not None:
            return self.get_risk(existing.id)
        try:
            return self.insert_risk(risk)
        except ConflictError:
            logger.info(
                "Concurrent write on risk triple (%s, %s, %s); retrying as update",
                risk.asset_id,
                risk.threat_id,
                risk.vulnerability_id,
            )
        with self.engine.begin() as conn:
            conn.execute(_risks.update().where(clause).values(**values))
            risk_id = conn.execute(select(_risks.c.id).where(clause)).scalar_one()
        return self.get_risk(risk_id)

    def insert_risk(self, risk: Risk) -> Risk:
        """Insert a brand-new risk. Raises ConflictError if the triple already exists.

        The unique (asset, threat, vulnerability) index is the last word on
        duplicates, so this is also the write path upsert_risk takes for a
        triple it has not seen.
        """
        with self.engine.connect() as conn:
            try:
                result = conn.execute(
                    _risks.insert().values(
                        asset_id=risk.asset_id,
                        threat_id=risk.threat_id,
                        vulnerability_id=_vuln_key(risk.vulnerability_id),
                        **_risk_values(risk),
                    )
                )
            except IntegrityError:
                conn.rollback()
                raise ConflictError(
                    f"risk for ({risk.asset_id}, {risk.threat_id}, {risk.vulnerability_id}) already exists"
                ) from None
            conn.commit()
        return self.get_risk(result.inserted_primary_key[0])

    def get_risk(self, risk_id: int) -> Optional[Risk]:
        with self.engine.connect() as conn:
            row = conn.execute(_risks.select().where(_risks.c.id == risk_id)).fetchone()
        return _row_to_risk(row) if row is not None else None

    def find_risk(self, asset_id: int, threat_id: int, vulnerability_id: Optional[int] = None) -> Optional[Risk]:
        """Look up the record for a triple (active or not). Returns None if absent."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _risks.select().where(self._triple_clause(asset_id, threat_id, vulnerability_id))
            ).fetchone()
        return _row_to_risk(row) if row is not None else None

    def list_risks(
        self,
        active_only: bool = True,
        order_by_value: bool = False,
        limit: Optional[int] = None,
        asset_id: Optional[int] = None,
        threat_id: Optional[int] = None,
        vulnerability_id: Optional[int] = None,
        level: Optional[str] = None,
    ) -> list[Risk]:
        """Return risks, active only by default.

        order_by_value sorts by risk_value descending (ties by id); the
        default order is by id.
        """
        stmt = _risks.select()
        if active_only:
            stmt = stmt.where(_risks.c.active == 1)
        if asset_id is not None:
            stmt = stmt.where(_risks.c.asset_id == asset_id)
        if threat_id is not None:
            stmt = stmt.where(_risks.c.threat_id == threat_id)
        if vulnerability_id is not None:
            stmt = stmt.where(_risks.c.vulnerability_id == vulnerability_id)
        if level:
            stmt = stmt.where(_risks.c.risk_level == level)
        if order_by_value:
            stmt = stmt.order_by(_risks.c.risk_value.desc(), _risks.c.id)
        else:
            stmt = stmt.order_by(_risks.c.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_risk(r) for r in rows]

    def deactivate_risk(self, risk_id: int) -> None:
        """Soft-delete: the row stays, with active = 0."""
        with self.engine.connect() as conn:
            result = conn.execute(_risks.update().where(_risks.c.id == risk_id).values(active=0))
            conn.commit()
        if result.rowcount == 0:
            raise NotFound("Risk", risk_id)

    def count_risks(self, active_only: bool = True) -> int:
        stmt = select(func.count()).select_from(_risks)
        if active_only:
            stmt = stmt.where(_risks.c.active == 1)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    def orphaned_risk_ids(self) -> list[int]:
        """Active risks whose asset, threat or linked vulnerability no longer exists."""
        missing_asset = ~_risks.c.asset_id.in_(select(_assets.c.id))
        missing_threat = ~_risks.c.threat_id.in_(select(_threats.c.id))
        missing_vuln = and_(
            _risks.c.vulnerability_id != NO_VULNERABILITY,
            ~_risks.c.vulnerability_id.in_(select(_vulnerabilities.c.id)),
        )
        stmt = (
            select(_risks.c.id)
            .where(_risks.c.active == 1)
            .where(missing_asset | missing_threat | missing_vuln)
            .order_by(_risks.c.id)
        )
        with self.engine.connect() as conn:
            return [r.id for r in conn.execute(stmt)]

    # ------------------------------------------------------------------
    # Safeguards
    # ------------------------------------------------------------------

    def _check_risks_exist(self, conn, risk_ids: list[int]) -> None:
        if not risk_ids:
            return
        found = {r.id for r in conn.execute(select(_risks.c.id).where(_risks.c.id.in_(risk_ids)))}
        for risk_id in risk_ids:
            if risk_id not in found:
                raise NotFound("Risk", risk_id)

    def create_safeguard(self, sg: Safeguard) -> Safeguard:
        """Insert a safeguard with its protection links and initial KPIs.

        The review invariant is applied before writing: an Implemented
        safeguard with an implementation date always gets a next review date.
        """
        validate_safeguard(sg)
        sg = dataclasses.replace(sg)
        apply_review_invariant(sg)
        now = now_iso()
        with self.engine.connect() as conn:
            self._check_risks_exist(conn, sg.protects)
            try:
                result = conn.execute(
                    _safeguards.insert().values(created_at=now, updated_at=now, **_safeguard_values(sg))
                )
            except IntegrityError:
                conn.rollback()
                raise ConflictError(f"safeguard code {sg.code!r} already exists") from None
            sg_id = result.inserted_primary_key[0]
            for risk_id in set(sg.protects):
                conn.execute(_safeguard_risks.insert().values(safeguard_id=sg_id, risk_id=risk_id))
            for kpi in sg.kpis:
                conn.execute(
                    _safeguard_kpis.insert().values(
                        safeguard_id=sg_id,
                        name=kpi.name,
                        value=kpi.value,
                        unit=kpi.unit,
                        measured_at=kpi.measured_at or now,
                    )
                )
            conn.commit()
        return self.get_safeguard(sg_id)

    def _load_safeguard(self, conn, row) -> Safeguard:
        protects = [
            r.risk_id
            for r in conn.execute(
                select(_safeguard_risks.c.risk_id)
                .where(_safeguard_risks.c.safeguard_id == row.id)
                .order_by(_safeguard_risks.c.risk_id)
            )
        ]
        kpis = conn.execute(
            _safeguard_kpis.select()
            .where(_safeguard_kpis.c.safeguard_id == row.id)
            .order_by(_safeguard_kpis.c.measured_at, _safeguard_kpis.c.id)
        ).fetchall()
        return _row_to_safeguard(row, protects, [_row_to_kpi(k) for k in kpis])

    def get_safeguard(self, sg_id: int) -> Optional[Safeguard]:
        with self.engine.connect() as conn:
            row = conn.execute(_safeguards.select().where(_safeguards.c.id == sg_id)).fetchone()
            if row is None:
                return None
            return self._load_safeguard(conn, row)

    def _list_safeguards_where(self, *clauses) -> list[Safeguard]:
        stmt = _safeguards.select().order_by(_safeguards.c.code)
        for clause in clauses:
            stmt = stmt.where(clause)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
            return [self._load_safeguard(conn, r) for r in rows]

    def list_safeguards(self, state: Optional[str] = None, category: Optional[str] = None) -> list[Safeguard]:
        clauses = []
        if state:
            clauses.append(_safeguards.c.state == state)
        if category:
            clauses.append(_safeguards.c.category == category)
        return self._list_safeguards_where(*clauses)

    def update_safeguard(self, sg_id: int, **fields) -> Safeguard:
        """Update safeguard fields; `protects` replaces the link set. KPIs are append-only (see add_kpi)."""
        current = self.get_safeguard(sg_id)
        if current is None:
            raise NotFound("Safeguard", sg_id)
        if "kpis" in fields:
            raise ValidationError("KPIs are append-only; use add_kpi")
        updated = _apply_fields(current, fields)
        validate_safeguard(updated)
        apply_review_invariant(updated)
        with self.engine.connect() as conn:
            self._check_risks_exist(conn, updated.protects)
            try:
                conn.execute(
                    _safeguards.update()
                    .where(_safeguards.c.id == sg_id)
                    .values(updated_at=now_iso(), **_safeguard_values(updated))
                )
            except IntegrityError:
                conn.rollback()
                raise ConflictError(f"safeguard code {updated.code!r} already exists") from None
            if "protects" in fields:
                conn.execute(_safeguard_risks.delete().where(_safeguard_risks.c.safeguard_id == sg_id))
                for risk_id in set(updated.protects):
                    conn.execute(_safeguard_risks.insert().values(safeguard_id=sg_id, risk_id=risk_id))
            conn.commit()
        return self.get_safeguard(sg_id)

    def delete_safeguard(self, sg_id: int) -> None:
        with self.engine.connect() as conn:
            result = conn.execute(_safeguards.delete().where(_safeguards.c.id == sg_id))
            if result.rowcount == 0:
                conn.rollback()
                raise NotFound("Safeguard", sg_id)
            conn.execute(_safeguard_risks.delete().where(_safeguard_risks.c.safeguard_id == sg_id))
            conn.execute(_safeguard_kpis.delete().where(_safeguard_kpis.c.safeguard_id == sg_id))
            conn.commit()

    def add_kpi(self, sg_id: int, kpi: SafeguardKPI) -> SafeguardKPI:
        """Append a KPI measurement to a safeguard's time series."""
        measured_at = kpi.measured_at or now_iso()
        with self.engine.connect() as conn:
            if conn.execute(select(_safeguards.c.id).where(_safeguards.c.id == sg_id)).fetchone() is None:
                raise NotFound("Safeguard", sg_id)
            result = conn.execute(
                _safeguard_kpis.insert().values(
                    safeguard_id=sg_id, name=kpi.name, value=kpi.value, unit=kpi.unit, measured_at=measured_at
                )
            )
            conn.commit()
        return SafeguardKPI(
            id=result.inserted_primary_key[0], name=kpi.name, value=kpi.value, unit=kpi.unit, measured_at=measured_at
        )

    def link_safeguard_to_risk(self, sg_id: int, risk_id: int) -> None:
        """Record that a safeguard protects a risk. Idempotent."""
        with self.engine.connect() as conn:
            if conn.execute(select(_safeguards.c.id).where(_safeguards.c.id == sg_id)).fetchone() is None:
                raise NotFound("Safeguard", sg_id)
            self._check_risks_exist(conn, [risk_id])
            try:
                conn.execute(_safeguard_risks.insert().values(safeguard_id=sg_id, risk_id=risk_id))
                conn.commit()
            except IntegrityError:
                conn.rollback()

    def safeguards_for_risk(self, risk_id: int) -> list[Safeguard]:
        linked = select(_safeguard_risks.c.safeguard_id).where(_safeguard_risks.c.risk_id == risk_id)
        return self._list_safeguards_where(_safeguards.c.id.in_(linked))

    def expired_safeguards(self, now: Optional[datetime] = None) -> list[Safeguard]:
        """Implemented safeguards whose next review date is already past."""
        cutoff = (now or datetime.now(timezone.utc)).isoformat()
        return [
            sg
            for sg in self._list_safeguards_where(
                _safeguards.c.state == SafeguardState.IMPLEMENTED.value,
                _safeguards.c.next_review_at.isnot(None),
            )
            if _before(sg.next_review_at, cutoff)
        ]

    def upcoming_reviews(self, days: int = 30, now: Optional[datetime] = None) -> list[Safeguard]:
        """Implemented safeguards whose next review falls within the next `days` days."""
        current = now or datetime.now(timezone.utc)
        start = current.isoformat()
        end = (current + timedelta(days=days)).isoformat()
        return [
            sg
            for sg in self._list_safeguards_where(
                _safeguards.c.state == SafeguardState.IMPLEMENTED.value,
                _safeguards.c.next_review_at.isnot(None),
            )
            if not _before(sg.next_review_at, start) and not _before(end, sg.next_review_at)
        ]


def _before(a: str, b: str) -> bool:
    """Compare two ISO timestamps as instants rather than strings."""
    return parse_iso(a) < parse_iso(b)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_asset(row, dependencies: list[int]) -> Asset:
    return Asset(
        id=row.id,
        code=row.code,
        name=row.name,
        asset_type=row.asset_type,
        category=row.category or "",
        owner=row.owner,
        custodian=row.custodian,
        location=row.location,
        valuation=Valuation(
            confidentiality=row.confidentiality,
            integrity=row.integrity,
            availability=row.availability,
            authenticity=row.authenticity,
            traceability=row.traceability,
        ),
        economic_value=row.economic_value,
        dependencies=dependencies,
        services=_loads(row.services, []),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_threat(row, applies_to: list[int]) -> Threat:
    cve_raw = _loads(row.cve_data, None)
    return Threat(
        id=row.id,
        code=row.code,
        name=row.name,
        threat_type=row.threat_type,
        origin=row.origin,
        description=row.description,
        probability=row.probability,
        vectors=_loads(row.vectors, []),
        cve_data=CVEData(**cve_raw) if cve_raw else None,
        applies_to=applies_to,
        discovery_date=row.discovery_date,
        last_update=row.last_update,
    )


def _row_to_vulnerability(row) -> Vulnerability:
    return Vulnerability(
        id=row.id,
        code=row.code,
        name=row.name,
        category=row.category,
        description=row.description,
        exploitability=row.exploitability,
        attack_vectors=_loads(row.attack_vectors, []),
        affected_assets=_loads(row.affected_assets, []),
        related_threats=_loads(row.related_threats, []),
        state=row.state,
        detected_at=row.detected_at,
        mitigated_at=row.mitigated_at,
    )


def _row_to_risk(row) -> Risk:
    return Risk(
        id=row.id,
        asset_id=row.asset_id,
        threat_id=row.threat_id,
        vulnerability_id=row.vulnerability_id or None,
        calculation=RiskCalculation(
            inherent_risk=row.inherent_risk,
            adjusted_probability=row.adjusted_probability,
            computed_impact=row.computed_impact,
            exposure=row.exposure,
            temporal_factor=row.temporal_factor,
        ),
        risk_value=row.risk_value,
        risk_level=row.risk_level,
        probability=row.probability,
        impact=row.impact,
        calculated_at=row.calculated_at,
        active=bool(row.active),
    )


def _row_to_kpi(row) -> SafeguardKPI:
    return SafeguardKPI(id=row.id, name=row.name, value=row.value, unit=row.unit, measured_at=row.measured_at)


def _row_to_safeguard(row, protects: list[int], kpis: list[SafeguardKPI]) -> Safeguard:
    return Safeguard(
        id=row.id,
        code=row.code,
        name=row.name,
        safeguard_type=row.safeguard_type,
        category=row.category,
        description=row.description,
        responsible=row.responsible,
        state=row.state,
        effectiveness=row.effectiveness,
        implementation_cost=row.implementation_cost,
        monthly_maintenance_cost=row.monthly_maintenance_cost,
        protects=protects,
        assets=_loads(row.assets, []),
        review_period_months=row.review_period_months,
        documentation=[SafeguardDocument(**d) for d in _loads(row.documentation, [])],
        kpis=kpis,
        implemented_at=row.implemented_at,
        next_review_at=row.next_review_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
