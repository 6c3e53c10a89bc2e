"""
registry/risks.py -- Risk consistency service.

RiskService owns the one rule the rest of the registry relies on: each
(asset, threat, vulnerability-or-none) triple has at most one risk record,
and that record reflects the current state of its three inputs.

  calculate_risk          -- load the triple and run core.calculator (no write)
  create_or_update_risk   -- calculate, classify, upsert by triple
  recalculate_all_risks   -- re-derive every active risk; per-record failures
                             are counted and logged, never raised
  refresh_asset_risks /
  refresh_threat_risks /
  refresh_vulnerability_risks -- same, scoped to one input after an edit
  retire_orphaned_risks   -- soft-delete risks whose inputs were deleted
  delete_risk             -- soft delete (active = False)

Batch operations are not transactional across records: each upsert
commits on its own.

Every write invalidates the injected report cache, if any.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cache.store import ReportCache
from core.calculator import DEFAULT_POLICY, RiskPolicy, calculate, classify, value_at_risk
from core.config import now_iso
from core.errors import NotFound, RiskEngineError
from core.models import Asset, Risk, RiskCalculation, Threat, Vulnerability
from registry.store import RegistryStore

logger = logging.getLogger("sigrisk.risks")


@dataclass
class RecalculationResult:
    processed: int
    errors: int


class RiskService:
    def __init__(
        self,
        store: RegistryStore,
        policy: Optional[RiskPolicy] = None,
        cache: Optional[ReportCache] = None,
    ) -> None:
        self.store = store
        self.policy = policy or DEFAULT_POLICY
        self.cache = cache

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_triple(
        self, asset_id: int, threat_id: int, vulnerability_id: Optional[int]
    ) -> tuple[Asset, Threat, Optional[Vulnerability]]:
        asset = self.store.get_asset(asset_id)
        if asset is None:
            raise NotFound("Asset", asset_id)
        threat = self.store.get_threat(threat_id)
        if threat is None:
            raise NotFound("Threat", threat_id)
        vulnerability = None
        if vulnerability_id:
            vulnerability = self.store.get_vulnerability(vulnerability_id)
            if vulnerability is None:
                raise NotFound("Vulnerability", vulnerability_id)
        return asset, threat, vulnerability

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()

    def _upsert(
        self,
        asset_id: int,
        threat_id: int,
        vulnerability_id: Optional[int],
        now: Optional[datetime],
    ) -> Risk:
        asset, threat, vulnerability = self._load_triple(asset_id, threat_id, vulnerability_id)
        calc = calculate(asset, threat, vulnerability, now=now, policy=self.policy)
        risk = Risk(
            asset_id=asset_id,
            threat_id=threat_id,
            vulnerability_id=vulnerability_id or None,
            calculation=calc,
            risk_value=value_at_risk(asset, calc),
            risk_level=classify(calc.exposure, self.policy).value,
            probability=calc.adjusted_probability,
            impact=calc.computed_impact,
            calculated_at=now.isoformat() if now is not None else now_iso(),
        )
        return self.store.upsert_risk(risk)

    # ------------------------------------------------------------------
    # Single-risk operations
    # ------------------------------------------------------------------

    def calculate_risk(
        self,
        asset_id: int,
        threat_id: int,
        vulnerability_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RiskCalculation:
        """Compute the breakdown for a triple without storing anything.

        Raises NotFound if the asset, the threat, or a given vulnerability is
        missing; ValidationError if any input is out of range.
        """
        asset, threat, vulnerability = self._load_triple(asset_id, threat_id, vulnerability_id)
        return calculate(asset, threat, vulnerability, now=now, policy=self.policy)

    def create_or_update_risk(
        self,
        asset_id: int,
        threat_id: int,
        vulnerability_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Risk:
        """Calculate and store the risk for a triple. Idempotent for unchanged inputs.

        A soft-deleted record for the same triple is reactivated rather than
        duplicated.
        """
        risk = self._upsert(asset_id, threat_id, vulnerability_id, now)
        self._invalidate()
        logger.debug(
            "Risk %s stored for (%s, %s, %s): %s", risk.id, asset_id, threat_id, vulnerability_id, risk.risk_level
        )
        return risk

    def get_risk(self, risk_id: int) -> Risk:
        risk = self.store.get_risk(risk_id)
        if risk is None:
            raise NotFound("Risk", risk_id)
        return risk

    def delete_risk(self, risk_id: int) -> None:
        """Soft delete. The record stays queryable with active=False."""
        self.store.deactivate_risk(risk_id)
        self._invalidate()
        logger.info("Risk %s deactivated", risk_id)

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    def _recalculate(self, risks: list[Risk], now: Optional[datetime], scope: str) -> RecalculationResult:
        logger.info("Recalculating %d risk(s) [%s]", len(risks), scope)
        processed = 0
        errors = 0
        for risk in risks:
            try:
                self._upsert(risk.asset_id, risk.threat_id, risk.vulnerability_id, now)
                processed += 1
            except RiskEngineError as e:
                errors += 1
                logger.error("Risk %s recalculation failed: %s", risk.id, e)
        if processed:
            self._invalidate()
        logger.info("Recalculation finished [%s]: processed=%d errors=%d", scope, processed, errors)
        return RecalculationResult(processed=processed, errors=errors)

    def recalculate_all_risks(self, now: Optional[datetime] = None) -> RecalculationResult:
        """Re-derive every active risk from its current asset, threat and vulnerability.

        A record whose inputs are missing or invalid is counted in `errors`
        and skipped. Storage failures are not caught.
        """
        return self._recalculate(self.store.list_risks(active_only=True), now, "all")

    def refresh_asset_risks(self, asset_id: int, now: Optional[datetime] = None) -> RecalculationResult:
        return self._recalculate(
            self.store.list_risks(active_only=True, asset_id=asset_id), now, f"asset {asset_id}"
        )

    def refresh_threat_risks(self, threat_id: int, now: Optional[datetime] = None) -> RecalculationResult:
        return self._recalculate(
            self.store.list_risks(active_only=True, threat_id=threat_id), now, f"threat {threat_id}"
        )

    def refresh_vulnerability_risks(self, vulnerability_id: int, now: Optional[datetime] = None) -> RecalculationResult:
        return self._recalculate(
            self.store.list_risks(active_only=True, vulnerability_id=vulnerability_id),
            now,
            f"vulnerability {vulnerability_id}",
        )

    def retire_orphaned_risks(self) -> int:
        """Soft-delete active risks whose asset, threat or vulnerability is gone.

        Returns the number of risks retired.
        """
        retired = 0
        for risk_id in self.store.orphaned_risk_ids():
            self.store.deactivate_risk(risk_id)
            retired += 1
        if retired:
            self._invalidate()
            logger.info("Retired %d orphaned risk(s)", retired)
        return retired
