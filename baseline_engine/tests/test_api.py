from __future__ import annotations

from contextlib import closing

import pytest
from fastapi.testclient import TestClient

from baseline_engine.api import create_app
from baseline_engine.locks import try_acquire
from baseline_engine.storage import connect
from conftest import nessus_batch, nessus_row

DAY1 = "2024-03-01T00:00:00+00:00"


@pytest.fixture()
def client(settings):
    return TestClient(create_app(settings))


def _batch():
    return nessus_batch(
        "weekly-1.nessus",
        DAY1,
        [nessus_row("web01.example.com", "19506", "3"), nessus_row("web01.example.com", "11213", "2")],
    )


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["database"] is True


def test_import_and_read_back(client):
    resp = client.post("/api/imports", json=_batch())
    assert resp.status_code == 200
    body = resp.json()
    assert body["accepted"] is True
    assert body["duplicate"] is False
    assert body["inserted"] == 2

    again = client.post("/api/imports", json=_batch())
    assert again.status_code == 200
    assert again.json()["duplicate"] is True
    assert again.json()["report_id"] == body["report_id"]

    baseline = client.get("/api/baseline", params={"system_id": 42}).json()
    assert baseline["severity_counts"]["high"] == 1
    assert baseline["scope_type"] == "system"

    findings = client.get("/api/findings", params={"package_id": 7, "kind": "vulnerability"}).json()
    assert findings["total"] == 2

    report = client.get(f"/api/reports/{body['report_id']}").json()
    assert report["status"] == "applied"
    assert report["system_ids"] == [42]


def test_legacy_vulnerabilities_key_is_accepted(client):
    payload = _batch()
    payload["vulnerabilities"] = payload.pop("findings")
    resp = client.post("/api/imports", json=payload)
    assert resp.json()["inserted"] == 2


def test_unknown_report_is_404(client):
    assert client.get("/api/reports/12345").status_code == 404


def test_malformed_batch_is_422(client):
    payload = _batch()
    payload["report"]["scan_date"] = "soon"
    resp = client.post("/api/imports", json=payload)
    assert resp.status_code == 422
    assert resp.json()["field"] == "report.scan_date"


def test_unknown_scoped_system_is_422(client):
    payload = _batch()
    payload["system_id"] = 999
    assert client.post("/api/imports", json=payload).status_code == 422


def test_lock_timeout_is_503_with_retry_after(client, db_path):
    with closing(connect(db_path)) as other:
        assert try_acquire(other, 42, "someone-else", ttl_seconds=60)
        resp = client.post("/api/imports", json=_batch())
    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "5"
    assert resp.json()["retryable"] is True


def test_baseline_scope_validation(client):
    assert client.get("/api/baseline").status_code == 422


def test_reset_requires_confirmation(client):
    client.post("/api/imports", json=_batch())
    resp = client.post("/api/admin/reset-baseline", json={"package_id": 7, "confirm": "package:8"})
    assert resp.status_code == 400

    resp = client.post("/api/admin/reset-baseline", json={"package_id": 7, "confirm": "package:7"})
    assert resp.status_code == 200
    assert resp.json()["findings_removed"] == 2
    assert client.get("/api/baseline", params={"package_id": 7}).json()["open_total"] == 0


def test_import_counts_are_documented(client):
    schema = client.get("/openapi.json").json()["components"]["schemas"]["ImportOut"]["properties"]
    assert "state transition" in schema["updated"]["description"]
    assert "not included in updated" in schema["regressed"]["description"]
