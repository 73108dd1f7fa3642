"""
test_main.py
------------
ChartSync — EMR Sync & Audited Records — Test Suite for main.py
---------------------------------------------------------------
Uses FastAPI TestClient so no running server is needed.  The identity
provider is a dict-backed fake and every outbound EMR / token call goes to
``httpx.MockTransport``, so no live API is touched.

Tests cover:
    - GET /health returns 200 and required fields
    - medication routes require a bearer token
    - create → get → patch (10mg → 20mg) → history over HTTP, with the
      caller IP recorded from X-Forwarded-For
    - 400 on validation errors and malformed bodies, 404 on unknown ids
    - discontinue and soft delete over HTTP
    - /emr/authorize redirects; /emr/callback stores tokens or reports the
      provider rejection; /emr/status and /emr/disconnect
    - /emr/sync-all role check and 502 + hint when reauthorization is needed
    - /emr/cron-sync secret handling and a successful pass
    - /emr/authorize?redirect=false returns the consent URL as JSON
    - /emr/records/{entity_type} per-patient reads and 404 on unknown types
    - /emr/token-keepalive refresh + validation, rejected refresh, no credential

Run:
    pytest tests/test_main.py -v --tb=short

Project: ChartSync — EMR Sync & Audited Records
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from config import Settings
from identity import Actor
from main import create_app

DOCTOR_TOKEN = "doctor-session"
STAFF_TOKEN = "staff-session"
DOCTOR = {"Authorization": f"Bearer {DOCTOR_TOKEN}"}
STAFF = {"Authorization": f"Bearer {STAFF_TOKEN}"}


# ── Helpers ────────────────────────────────────────────────────────────────────

class FakeIdentity:
    """Maps bearer tokens to actors without calling an identity provider."""

    actors = {
        DOCTOR_TOKEN: Actor(principal_id="doc-1", email="dr.lee@clinic.example", role="doctor"),
        STAFF_TOKEN: Actor(principal_id="staff-1", email=None, role="front_desk"),
    }

    async def get_user(self, token):
        return self.actors.get(token)


class FakeProvider:
    """Token endpoint plus an EMR that returns one empty page per collection."""

    def __init__(self, token_status=200):
        self.token_status = token_status
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path == "/o/token/":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={
                "access_token": "a1", "refresh_token": "r1", "expires_in": 7200,
            })
        return httpx.Response(200, json={"results": [], "next": None})


async def _no_sleep(_seconds):
    return None


def _settings(tmp_path, **overrides):
    values = dict(
        db_path=tmp_path / "api.sqlite",
        emr_client_id="cid",
        emr_client_secret="secret",
        emr_redirect_uri="https://chartsync.example/emr/callback",
        emr_sync_principal="doc-1",
    )
    values.update(overrides)
    return Settings(**values)


def _client(tmp_path, provider=None, **overrides):
    app = create_app(
        _settings(tmp_path, **overrides),
        identity=FakeIdentity(),
        transport=httpx.MockTransport(provider or FakeProvider()),
        sleep=_no_sleep,
    )
    return TestClient(app)


def _connect(tmp_path):
    database.upsert_credential(
        "drchrono", "doc-1", access_token="tok", refresh_token="r0",
        expires_at=(datetime.now(timezone.utc) + timedelta(hours=1)).isoformat(),
        db_path=tmp_path / "api.sqlite",
    )


# ── GET /health ────────────────────────────────────────────────────────────────

def test_health_required_fields(tmp_path):
    """GET /health response must include service, version, status, timestamp."""
    with _client(tmp_path) as client:
        response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    for key in ("service", "version", "status", "timestamp"):
        assert key in data
    assert data["status"] == "ok"


# ── Medications ────────────────────────────────────────────────────────────────

class TestMedicationRoutes:

    def test_requires_bearer_token(self, tmp_path):
        with _client(tmp_path) as client:
            assert client.get("/medications", params={"patient_id": "p-1"}).status_code == 401
            assert client.post("/medications", json={}, headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_create_update_history_flow(self, tmp_path):
        with _client(tmp_path) as client:
            created = client.post(
                "/medications",
                json={"patient_id": "p-1", "medication_name": "Lisinopril", "dosage": "10mg"},
                headers={**DOCTOR, "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
            )
            assert created.status_code == 201
            med_id = created.json()["data"]["id"]

            patched = client.patch(f"/medications/{med_id}", json={"dosage": "20mg"}, headers=DOCTOR)
            assert patched.status_code == 200
            assert patched.json()["data"]["dosage"] == "20mg"

            assert client.get(f"/medications/{med_id}", headers=DOCTOR).json()["data"]["dosage"] == "20mg"
            listed = client.get("/medications", params={"patient_id": "p-1"}, headers=DOCTOR).json()["data"]
            assert [m["id"] for m in listed] == [med_id]

            history = client.get(f"/medications/{med_id}/history", headers=DOCTOR).json()["data"]
        assert [e["action"] for e in history] == ["create", "update"]
        assert history[0]["ip_address"] == "203.0.113.9"
        assert history[1]["previous_values"] == {"dosage": "10mg"}
        assert history[1]["new_values"] == {"dosage": "20mg"}
        assert history[1]["actor_id"] == "doc-1"

    def test_validation_errors_are_400(self, tmp_path):
        with _client(tmp_path) as client:
            missing = client.post("/medications", json={"patient_id": "p-1"}, headers=DOCTOR)
            not_object = client.post("/medications", json=["x"], headers=DOCTOR)
            no_patient = client.get("/medications", headers=DOCTOR)
        assert missing.status_code == 400
        assert missing.json()["detail"]["fields"][0]["field"] == "medication_name"
        assert not_object.status_code == 400
        assert no_patient.status_code == 400

    def test_unknown_id_is_404(self, tmp_path):
        with _client(tmp_path) as client:
            assert client.get("/medications/nope", headers=DOCTOR).status_code == 404
            assert client.patch("/medications/nope", json={"dosage": "1mg"}, headers=DOCTOR).status_code == 404
            assert client.delete("/medications/nope", headers=DOCTOR).status_code == 404
            assert client.get("/medications/nope/history", headers=DOCTOR).status_code == 404

    def test_discontinue_and_delete(self, tmp_path):
        with _client(tmp_path) as client:
            med_id = client.post(
                "/medications", json={"patient_id": "p-1", "medication_name": "Metformin"}, headers=DOCTOR,
            ).json()["data"]["id"]

            blank = client.post(f"/medications/{med_id}/discontinue", json={"reason": ""}, headers=DOCTOR)
            assert blank.status_code == 400

            stopped = client.post(
                f"/medications/{med_id}/discontinue", json={"reason": "GI upset"}, headers=DOCTOR,
            )
            assert stopped.status_code == 200
            assert stopped.json()["data"]["status"] == "discontinued"

            assert client.delete(f"/medications/{med_id}", headers=DOCTOR).json() == {"success": True}
            assert client.get(f"/medications/{med_id}", headers=DOCTOR).status_code == 404
            gone = client.patch(f"/medications/{med_id}", json={"dosage": "5mg"}, headers=DOCTOR)
            assert gone.status_code == 404

            actions = [e["action"] for e in client.get(f"/medications/{med_id}/history", headers=DOCTOR).json()["data"]]
        assert actions == ["create", "discontinue", "delete"]


# ── EMR connection ─────────────────────────────────────────────────────────────

class TestEmrConnection:

    def test_authorize_redirects_to_consent_page(self, tmp_path):
        with _client(tmp_path) as client:
            response = client.get("/emr/authorize", headers=DOCTOR, follow_redirects=False)
        assert response.status_code == 307
        assert response.headers["location"].startswith("https://drchrono.com/o/authorize/?")

    def test_authorize_returns_url_without_redirect(self, tmp_path):
        with _client(tmp_path) as client:
            response = client.get("/emr/authorize", params={"redirect": "false"}, headers=DOCTOR)
        assert response.status_code == 200
        url = response.json()["authorization_url"]
        assert url.startswith("https://drchrono.com/o/authorize/?")
        assert parse_qs(urlsplit(url).query)["client_id"] == ["cid"]

    def test_callback_stores_credential(self, tmp_path):
        with _client(tmp_path) as client:
            location = client.get("/emr/authorize", headers=DOCTOR, follow_redirects=False).headers["location"]
            state = parse_qs(urlsplit(location).query)["state"][0]

            callback = client.get("/emr/callback", params={"code": "abc", "state": state})
            assert callback.status_code == 200
            assert callback.json()["connected"] is True
            assert callback.json()["principal_id"] == "doc-1"

            status = client.get("/emr/status", headers=DOCTOR).json()
        assert status["token_status"] == "valid"
        assert status["sync_principal"] == "doc-1"

    def test_callback_reports_provider_rejection(self, tmp_path):
        with _client(tmp_path, provider=FakeProvider(token_status=400)) as client:
            location = client.get("/emr/authorize", headers=DOCTOR, follow_redirects=False).headers["location"]
            state = parse_qs(urlsplit(location).query)["state"][0]
            response = client.get("/emr/callback", params={"code": "stale", "state": state})
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["provider_status"] == 400
        assert "invalid_grant" in detail["provider_body"]
        assert detail["reauthorization_required"] is True

    def test_callback_rejects_bad_state(self, tmp_path):
        with _client(tmp_path) as client:
            assert client.get("/emr/callback", params={"code": "abc", "state": "forged"}).status_code == 400
            assert client.get("/emr/callback", params={"error": "access_denied"}).status_code == 400

    def test_disconnect(self, tmp_path):
        with _client(tmp_path) as client:
            _connect(tmp_path)
            first = client.post("/emr/disconnect", headers=DOCTOR).json()
            second = client.post("/emr/disconnect", headers=DOCTOR).json()
            status = client.get("/emr/status", headers=DOCTOR).json()
        assert first == {"disconnected": True, "removed": True}
        assert second == {"disconnected": True, "removed": False}
        assert status["token_status"] == "missing"


# ── Sync triggers ──────────────────────────────────────────────────────────────

class TestSyncTriggers:

    def test_sync_all_requires_operator_role(self, tmp_path):
        with _client(tmp_path) as client:
            assert client.post("/emr/sync-all").status_code == 401
            assert client.post("/emr/sync-all", headers=STAFF).status_code == 403

    def test_sync_all_without_credential_is_502_with_hint(self, tmp_path):
        provider = FakeProvider()
        with _client(tmp_path, provider=provider) as client:
            response = client.post("/emr/sync-all", headers=DOCTOR)
        assert response.status_code == 502
        body = response.json()
        assert body["overall_status"] == "failed"
        assert body["reauthorization_required"] is True
        assert "Reconnect" in body["hint"]
        assert provider.requests == []

    def test_cron_sync_not_configured(self, tmp_path):
        with _client(tmp_path) as client:
            assert client.post("/emr/cron-sync").status_code == 501

    def test_cron_sync_rejects_wrong_secret(self, tmp_path):
        with _client(tmp_path, cron_secret="s3cret") as client:
            assert client.post("/emr/cron-sync").status_code == 401
            assert client.get("/emr/cron-sync", headers={"Authorization": "Bearer wrong"}).status_code == 401

    def test_cron_sync_runs_full_catalog(self, tmp_path):
        with _client(tmp_path, cron_secret="s3cret") as client:
            _connect(tmp_path)
            response = client.get("/emr/cron-sync", headers={"Authorization": "Bearer s3cret"})
            status = client.get("/emr/status", headers=DOCTOR).json()
        assert response.status_code == 200
        body = response.json()
        assert body["overall_status"] == "success"
        assert len(body["entity_results"]) == 25
        assert {r["trigger"] for r in status["recent_runs"]} == {"cron"}


# ── Replicated records ─────────────────────────────────────────────────────────

class TestReplicatedRecords:

    def test_records_by_entity_and_patient(self, tmp_path):
        with _client(tmp_path) as client:
            database.upsert_emr_records(
                "allergies",
                [
                    {"id": 1, "patient": 10, "reaction": "hives"},
                    {"id": 2, "patient": 11, "reaction": "rash"},
                ],
                tmp_path / "api.sqlite",
            )
            everyone = client.get("/emr/records/allergies", headers=DOCTOR)
            one_patient = client.get("/emr/records/allergies", params={"patient_id": "10"}, headers=DOCTOR)
            empty = client.get("/emr/records/problems", headers=DOCTOR)
        assert everyone.status_code == 200
        assert [r["id"] for r in everyone.json()["data"]] == [1, 2]
        assert one_patient.json() == {
            "entity_type": "allergies",
            "data": [{"id": 1, "patient": 10, "reaction": "hives"}],
        }
        assert empty.json()["data"] == []

    def test_unknown_entity_type_is_404(self, tmp_path):
        with _client(tmp_path) as client:
            assert client.get("/emr/records/invoices", headers=DOCTOR).status_code == 404

    def test_records_require_bearer_token(self, tmp_path):
        with _client(tmp_path) as client:
            assert client.get("/emr/records/allergies").status_code == 401


# ── Token keepalive ────────────────────────────────────────────────────────────

class TestTokenKeepalive:

    def test_keepalive_requires_secret(self, tmp_path):
        with _client(tmp_path) as client:
            assert client.post("/emr/token-keepalive").status_code == 501
        with _client(tmp_path, cron_secret="s3cret") as client:
            assert client.post("/emr/token-keepalive").status_code == 401

    def test_keepalive_refreshes_and_validates(self, tmp_path):
        provider = FakeProvider()
        with _client(tmp_path, provider=provider, cron_secret="s3cret") as client:
            _connect(tmp_path)
            response = client.post("/emr/token-keepalive", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "refreshed"
        assert body["principal_id"] == "doc-1"
        assert body["validated"] is True

        stored = database.get_credential("drchrono", "doc-1", tmp_path / "api.sqlite")
        assert stored["access_token"] == "a1"
        assert stored["refresh_token"] == "r1"
        check = provider.requests[-1]
        assert check.url.path == "/api/users/current"
        assert check.headers["Authorization"] == "Bearer a1"

    def test_keepalive_rejected_refresh_needs_reauthorization(self, tmp_path):
        provider = FakeProvider(token_status=400)
        with _client(tmp_path, provider=provider, cron_secret="s3cret") as client:
            _connect(tmp_path)
            response = client.get("/emr/token-keepalive", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 502
        body = response.json()
        assert body["reauthorization_required"] is True
        assert "Reconnect" in body["hint"]
        assert len(provider.requests) == 1

    def test_keepalive_without_credential(self, tmp_path):
        provider = FakeProvider()
        with _client(tmp_path, provider=provider, cron_secret="s3cret") as client:
            response = client.post("/emr/token-keepalive", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 502
        assert response.json()["reauthorization_required"] is True
        assert provider.requests == []
