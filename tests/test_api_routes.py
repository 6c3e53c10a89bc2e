"""
tests/test_api_routes.py -- Integration tests for the v1 registry and risk routes.

These tests exercise the full stack: FastAPI routing -> request model
validation -> RegistryStore/RiskService operations -> response model
serialization -> the error envelope. Unit testing individual route functions
would miss exception mapping and response model validation -- integration
tests are the right tool here.

Coverage:
  - Assets: POST 201, GET list/detail, PATCH, 404 envelope, 422 on an
    out-of-range valuation, 409 on duplicate code and on deleting an asset
    others depend on, CSV import with partial failure
  - Threats and vulnerabilities: create, filter, assign to asset
  - Risks: calculate without storing, idempotent POST, matrix, top, soft delete
  - Safeguards: create, implement, KPI, recommendations

Fixtures used (from conftest.py):
  - api_client: module-scoped TestClient; the registry is shared by every
    test in this module, so each test uses codes of its own.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

from registry.ingest import bulk_import_assets

_VALUATION = {"confidentiality": 10, "integrity": 5, "availability": 5, "authenticity": 5, "traceability": 5}


def _asset_body(code: str, **overrides) -> dict:
    body = {
        "code": code,
        "name": f"Asset {code}",
        "asset_type": "Software",
        "owner": "CISO",
        "custodian": "IT Ops",
        "location": "DC-1",
        "valuation": dict(_VALUATION),
        "economic_value": 100000,
    }
    body.update(overrides)
    return body


def _threat_body(code: str, **overrides) -> dict:
    body = {
        "code": code,
        "name": f"Threat {code}",
        "threat_type": "Intentional attack",
        "description": "Test threat",
        "probability": 8,
        # Inside the 30..90 day plateau, so the temporal factor is 1.0.
        "discovery_date": (datetime.now(timezone.utc) - timedelta(days=45)).isoformat(),
    }
    body.update(overrides)
    return body


def _create(client: TestClient, path: str, body: dict) -> dict:
    resp = client.post(f"/api/v1/{path}", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ===========================================================================
# Assets
# ===========================================================================


class TestApiAssetRoutes:
    def test_create_asset(self, api_client: TestClient) -> None:
        data = _create(api_client, "assets", _asset_body("AS-CREATE"))
        assert data["id"] > 0
        assert data["code"] == "AS-CREATE"
        assert data["criticality"] == 10.0
        assert data["average_valuation"] == 6.0

    def test_list_and_filter_assets(self, api_client: TestClient) -> None:
        _create(api_client, "assets", _asset_body("AS-LIST-HW", asset_type="Hardware"))
        resp = api_client.get("/api/v1/assets", params={"asset_type": "Hardware"})
        assert resp.status_code == 200
        codes = [a["code"] for a in resp.json()]
        assert "AS-LIST-HW" in codes
        assert all(a["asset_type"] == "Hardware" for a in resp.json())

    def test_get_asset_detail(self, api_client: TestClient) -> None:
        created = _create(api_client, "assets", _asset_body("AS-DETAIL"))
        resp = api_client.get(f"/api/v1/assets/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["code"] == "AS-DETAIL"

    def test_get_missing_asset_returns_404_envelope(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/assets/999999")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_out_of_range_valuation_rejected(self, api_client: TestClient) -> None:
        body = _asset_body("AS-BAD", valuation={**_VALUATION, "integrity": 11})
        resp = api_client.post("/api/v1/assets", json=body)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_duplicate_code_conflicts(self, api_client: TestClient) -> None:
        _create(api_client, "assets", _asset_body("AS-DUP"))
        resp = api_client.post("/api/v1/assets", json=_asset_body("AS-DUP"))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_dependencies_and_blocked_delete(self, api_client: TestClient) -> None:
        base = _create(api_client, "assets", _asset_body("AS-BASE"))
        top = _create(api_client, "assets", _asset_body("AS-TOP", dependencies=[base["id"]]))

        deps = api_client.get(f"/api/v1/assets/{top['id']}/dependencies").json()
        assert [a["id"] for a in deps] == [base["id"]]
        dependents = api_client.get(f"/api/v1/assets/{base['id']}/dependents").json()
        assert [a["id"] for a in dependents] == [top["id"]]

        assert api_client.delete(f"/api/v1/assets/{base['id']}").status_code == 409
        assert api_client.delete(f"/api/v1/assets/{top['id']}").status_code == 204
        assert api_client.delete(f"/api/v1/assets/{base['id']}").status_code == 204

    def test_unknown_dependency_is_404(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/assets", json=_asset_body("AS-ORPHAN", dependencies=[999999]))
        assert resp.status_code == 404

    def test_patch_updates_only_sent_fields(self, api_client: TestClient) -> None:
        created = _create(api_client, "assets", _asset_body("AS-PATCH"))
        resp = api_client.patch(f"/api/v1/assets/{created['id']}", json={"owner": "CFO"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["owner"] == "CFO"
        assert data["location"] == "DC-1"


class TestApiAssetImport:
    _HEADER = (
        "code,name,asset_type,owner,custodian,location,"
        "confidentiality,integrity,availability,authenticity,traceability\n"
    )

    def test_partial_import(self, api_client: TestClient) -> None:
        content = self._HEADER + "AS-IMP-1,Mail,Services,CIO,Ops,DC-1,6,6,8,5,5\nAS-IMP-2,Bad,Nope,CIO,Ops,DC-1,1,1,1,1,1\n"
        resp = api_client.post("/api/v1/assets/import", files={"file": ("assets.csv", content, "text/csv")})
        assert resp.status_code == 200
        data = resp.json()
        assert data["successful"] == 1
        assert data["failed"] == 1
        assert data["errors"][0].startswith("line 3:")

    def test_import_writes_off_the_event_loop(self, api_client: TestClient) -> None:
        loops = []

        def _recording(store, assets):
            try:
                loops.append(asyncio.get_running_loop())
            except RuntimeError:
                loops.append(None)
            return bulk_import_assets(store, assets)

        content = self._HEADER + "AS-IMP-3,Wiki,Services,CIO,Ops,DC-1,4,4,4,4,4\n"
        with patch("api.routes.v1.assets.bulk_import_assets", side_effect=_recording):
            resp = api_client.post("/api/v1/assets/import", files={"file": ("assets.csv", content, "text/csv")})
        assert resp.status_code == 200
        assert resp.json()["successful"] == 1
        assert loops == [None]

    def test_wrong_extension_is_415(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/assets/import", files={"file": ("assets.txt", "x", "text/plain")})
        assert resp.status_code == 415
        assert resp.json()["error"]["code"] == "unsupported_format"

    def test_oversized_upload_is_413(self, api_client: TestClient) -> None:
        content = self._HEADER + "x" * (1024 * 1024 + 10)
        resp = api_client.post("/api/v1/assets/import", files={"file": ("big.csv", content, "text/csv")})
        assert resp.status_code == 413
        assert resp.json()["error"]["code"] == "file_too_large"


# ===========================================================================
# Threats and vulnerabilities
# ===========================================================================


class TestApiThreatRoutes:
    def test_create_and_filter(self, api_client: TestClient) -> None:
        created = _create(api_client, "threats", _threat_body("TH-CREATE", threat_type="Natural disaster"))
        assert created["origin"] == "Manual"
        resp = api_client.get("/api/v1/threats", params={"threat_type": "Natural disaster"})
        assert "TH-CREATE" in [t["code"] for t in resp.json()]

    def test_missing_discovery_date_defaults_to_now(self, api_client: TestClient) -> None:
        body = _threat_body("TH-NODATE")
        del body["discovery_date"]
        assert _create(api_client, "threats", body)["discovery_date"]

    def test_probability_out_of_range(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/threats", json=_threat_body("TH-BAD", probability=12))
        assert resp.status_code == 422

    def test_assign_to_asset(self, api_client: TestClient) -> None:
        asset = _create(api_client, "assets", _asset_body("AS-ASSIGN"))
        threat = _create(api_client, "threats", _threat_body("TH-ASSIGN"))
        resp = api_client.post(f"/api/v1/threats/{threat['id']}/assets/{asset['id']}")
        assert resp.status_code == 200
        assert resp.json()["applies_to"] == [asset["id"]]
        threats = api_client.get(f"/api/v1/assets/{asset['id']}/threats").json()
        assert [t["id"] for t in threats] == [threat["id"]]

    def test_magerit_import_is_idempotent(self, api_client: TestClient) -> None:
        first = api_client.post("/api/v1/threats/import-magerit").json()
        second = api_client.post("/api/v1/threats/import-magerit").json()
        assert first["imported"] + first["skipped"] == 8
        assert second["imported"] == 0
        assert second["skipped"] == 8


class TestApiVulnerabilityRoutes:
    def test_crud(self, api_client: TestClient) -> None:
        created = _create(
            api_client,
            "vulnerabilities",
            {"code": "VU-CRUD", "name": "Weak TLS", "category": "Configuration", "description": "d", "exploitability": 6},
        )
        assert created["state"] == "Open"
        vuln_id = created["id"]
        resp = api_client.patch(f"/api/v1/vulnerabilities/{vuln_id}", json={"exploitability": 3})
        assert resp.json()["exploitability"] == 3
        assert api_client.delete(f"/api/v1/vulnerabilities/{vuln_id}").status_code == 204
        assert api_client.get(f"/api/v1/vulnerabilities/{vuln_id}").status_code == 404


# ===========================================================================
# Risks
# ===========================================================================


class TestApiRiskRoutes:
    def test_calculate_does_not_store(self, api_client: TestClient) -> None:
        asset = _create(api_client, "assets", _asset_body("AS-CALC"))
        threat = _create(api_client, "threats", _threat_body("TH-CALC"))
        resp = api_client.post("/api/v1/risks/calculate", json={"asset_id": asset["id"], "threat_id": threat["id"]})
        assert resp.status_code == 200
        calc = resp.json()
        assert calc["adjusted_probability"] == 4.0
        assert calc["computed_impact"] == 10.0
        assert calc["exposure"] == 40.0
        stored = api_client.get("/api/v1/risks", params={"asset_id": asset["id"]}).json()
        assert stored == []

    def test_create_is_idempotent(self, api_client: TestClient) -> None:
        asset = _create(api_client, "assets", _asset_body("AS-IDEM"))
        threat = _create(api_client, "threats", _threat_body("TH-IDEM"))
        body = {"asset_id": asset["id"], "threat_id": threat["id"]}
        first = api_client.post("/api/v1/risks", json=body).json()
        second = api_client.post("/api/v1/risks", json=body).json()
        assert first["id"] == second["id"]
        assert first["risk_level"] == "Medium"
        assert first["risk_value"] == 40000.0
        assert len(api_client.get("/api/v1/risks", params={"asset_id": asset["id"]}).json()) == 1

    def test_vulnerability_raises_level(self, api_client: TestClient) -> None:
        asset = _create(api_client, "assets", _asset_body("AS-VULN"))
        threat = _create(api_client, "threats", _threat_body("TH-VULN"))
        vuln = _create(
            api_client,
            "vulnerabilities",
            {"code": "VU-RISK", "name": "RCE", "category": "Software", "description": "d", "exploitability": 10},
        )
        risk = api_client.post(
            "/api/v1/risks",
            json={"asset_id": asset["id"], "threat_id": threat["id"], "vulnerability_id": vuln["id"]},
        ).json()
        assert risk["risk_level"] == "Critical"
        assert risk["risk_value"] == 80000.0

        matrix = api_client.get("/api/v1/risks/matrix").json()
        assert set(matrix["by_level"]) == {"Critical", "High", "Medium", "Low", "Very Low"}
        assert risk["id"] in [r["id"] for r in matrix["by_level"]["Critical"]]

        top = api_client.get("/api/v1/risks/top", params={"limit": 1}).json()
        assert len(top) == 1
        assert top[0]["risk_value"] >= 80000.0

    def test_unknown_inputs_are_404(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/risks", json={"asset_id": 999999, "threat_id": 999999})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_top_limit_bounds(self, api_client: TestClient) -> None:
        assert api_client.get("/api/v1/risks/top", params={"limit": 0}).status_code == 422
        assert api_client.get("/api/v1/risks/top", params={"limit": 101}).status_code == 422

    def test_soft_delete(self, api_client: TestClient) -> None:
        asset = _create(api_client, "assets", _asset_body("AS-SOFT"))
        threat = _create(api_client, "threats", _threat_body("TH-SOFT"))
        risk = api_client.post("/api/v1/risks", json={"asset_id": asset["id"], "threat_id": threat["id"]}).json()

        assert api_client.delete(f"/api/v1/risks/{risk['id']}").status_code == 204
        assert api_client.get("/api/v1/risks", params={"asset_id": asset["id"]}).json() == []
        kept = api_client.get("/api/v1/risks", params={"asset_id": asset["id"], "include_inactive": True}).json()
        assert [r["active"] for r in kept] == [False]
        assert api_client.get(f"/api/v1/risks/{risk['id']}").json()["active"] is False

    def test_retire_orphans_after_asset_delete(self, api_client: TestClient) -> None:
        asset = _create(api_client, "assets", _asset_body("AS-ORPH"))
        threat = _create(api_client, "threats", _threat_body("TH-ORPH"))
        risk = api_client.post("/api/v1/risks", json={"asset_id": asset["id"], "threat_id": threat["id"]}).json()
        api_client.delete(f"/api/v1/assets/{asset['id']}")

        recalc = api_client.post("/api/v1/risks/recalculate").json()
        assert recalc["errors"] >= 1
        assert api_client.post("/api/v1/risks/retire-orphans").json()["retired"] >= 1
        assert api_client.get(f"/api/v1/risks/{risk['id']}").json()["active"] is False


# ===========================================================================
# Safeguards
# ===========================================================================


class TestApiSafeguardRoutes:
    _BODY = {
        "name": "MFA",
        "safeguard_type": "Preventive",
        "category": "Technical",
        "description": "Multi-factor authentication",
        "responsible": "IAM team",
        "effectiveness": 80,
        "implementation_cost": 5000,
        "review_period_months": 6,
    }

    def test_create_and_implement(self, api_client: TestClient) -> None:
        sg = _create(api_client, "safeguards", {**self._BODY, "code": "SG-IMPL"})
        assert sg["state"] == "Proposed"
        assert sg["review_status"] == "Unscheduled"
        assert sg["effectiveness_level"] == "High"

        resp = api_client.post(
            f"/api/v1/safeguards/{sg['id']}/implement", json={"implemented_at": "2025-01-15T00:00:00Z"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "Implemented"
        assert data["next_review_at"] == "2025-07-15T00:00:00+00:00"

        expired = api_client.get("/api/v1/safeguards/expired").json()
        assert sg["id"] in [s["id"] for s in expired]

    def test_obsolete_cannot_be_implemented(self, api_client: TestClient) -> None:
        sg = _create(api_client, "safeguards", {**self._BODY, "code": "SG-OBS", "state": "Obsolete"})
        resp = api_client.post(f"/api/v1/safeguards/{sg['id']}/implement")
        assert resp.status_code == 422

    def test_effectiveness_over_100_rejected(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/safeguards", json={**self._BODY, "code": "SG-BAD", "effectiveness": 120})
        assert resp.status_code == 422

    def test_kpi_appended(self, api_client: TestClient) -> None:
        sg = _create(api_client, "safeguards", {**self._BODY, "code": "SG-KPI"})
        resp = api_client.post(
            f"/api/v1/safeguards/{sg['id']}/kpis", json={"name": "coverage", "value": 90, "unit": "%"}
        )
        assert resp.status_code == 201
        assert resp.json()["measured_at"]
        detail = api_client.get(f"/api/v1/safeguards/{sg['id']}").json()
        assert [k["name"] for k in detail["kpis"]] == ["coverage"]

    def test_recommendations_for_linked_risk(self, api_client: TestClient) -> None:
        asset = _create(api_client, "assets", _asset_body("AS-REC"))
        threat = _create(api_client, "threats", _threat_body("TH-REC"))
        risk = api_client.post("/api/v1/risks", json={"asset_id": asset["id"], "threat_id": threat["id"]}).json()
        sg = _create(api_client, "safeguards", {**self._BODY, "code": "SG-REC"})

        linked = api_client.post(f"/api/v1/safeguards/{sg['id']}/risks/{risk['id']}")
        assert linked.json()["protects"] == [risk["id"]]

        rec = api_client.get(f"/api/v1/safeguards/recommendations/{risk['id']}").json()
        assert [s["id"] for s in rec["existing"]] == [sg["id"]]
        # Medium risk on a Software asset: patch management only.
        assert [r["name"] for r in rec["recommended"]] == ["Patch and update management"]
