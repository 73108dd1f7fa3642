"""
test_token_manager.py
---------------------
ChartSync — EMR Sync & Audited Records — Test Suite for token_manager.py
------------------------------------------------------------------------
The token endpoint is replaced by ``httpx.MockTransport`` and the clock is
fixed, so every expiry decision is deterministic.

Tests cover:
    - begin_authorization builds a consent URL with a verifiable state
    - verify_state rejects tampered or malformed state
    - complete_authorization: success, default expiry, provider rejection,
      missing tokens, network failure
    - get_valid_access_token: not connected, fresh token (no HTTP),
      refresh inside the buffer, refresh when expiry is absent,
      rejected refresh (not retried)
    - concurrent callers trigger exactly one refresh and leave one row
    - a refresh that loses the compare-and-swap returns the winner's token
    - disconnect is idempotent; token_status reports valid/expired/missing
    - keepalive refreshes a still-fresh token, validates it against
      users/current, and raises once on a rejected refresh

Run:
    pytest tests/test_token_manager.py -v --tb=short

Project: ChartSync — EMR Sync & Audited Records
"""

import asyncio
import os
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from config import Settings
from errors import (
    ExchangeFailed,
    MissingCredentials,
    NotConnected,
    RefreshFailed,
    TransportError,
)
from token_manager import TokenManager

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
TOKEN_URL = "https://drchrono.com/o/token/"


# ── Helpers ────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path):
    path = tmp_path / "tokens.sqlite"
    database.init_db(path)
    return Settings(
        emr_client_id="client-id",
        emr_client_secret="client-secret",
        emr_redirect_uri="https://chartsync.example/emr/callback",
        emr_token_url=TOKEN_URL,
        db_path=path,
    )


class TokenEndpoint:
    """Scripted token endpoint that records every form it receives."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.forms = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.forms.append(parse_qs(request.content.decode()))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response


def _run(settings, handler, fn):
    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            manager = TokenManager(settings, http, now=lambda: NOW)
            return await fn(manager)
    return asyncio.run(_go())


def _seed(settings, expires_at, access="a-old", refresh="r-old"):
    database.upsert_credential(
        "drchrono", "doc-1", access_token=access, refresh_token=refresh,
        expires_at=expires_at.isoformat() if expires_at else None, db_path=settings.db_path,
    )


def _token_json(access="a-new", refresh="r-new", expires_in=3600):
    body = {"access_token": access, "refresh_token": refresh, "token_type": "Bearer"}
    if expires_in is not None:
        body["expires_in"] = expires_in
    return httpx.Response(200, json=body)


# ── Authorization ──────────────────────────────────────────────────────────────

class TestAuthorization:

    def test_consent_url_carries_verifiable_state(self, settings):
        manager = TokenManager(settings, MagicMock(), now=lambda: NOW)
        url = manager.begin_authorization("doc-1")
        query = parse_qs(urlsplit(url).query)
        assert url.startswith("https://drchrono.com/o/authorize/?")
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["client-id"]
        assert query["redirect_uri"] == ["https://chartsync.example/emr/callback"]
        assert manager.verify_state(query["state"][0]) == "doc-1"

    def test_tampered_state_is_rejected(self, settings):
        manager = TokenManager(settings, MagicMock())
        other = TokenManager(replace(settings, emr_client_secret="other-secret"), MagicMock())
        forged = parse_qs(urlsplit(other.begin_authorization("doc-1")).query)["state"][0]
        with pytest.raises(ExchangeFailed):
            manager.verify_state(forged)
        with pytest.raises(ExchangeFailed):
            manager.verify_state("not-base64-@@@")

    def test_missing_client_config_raises(self, tmp_path):
        manager = TokenManager(Settings(db_path=tmp_path / "x.sqlite"), MagicMock())
        with pytest.raises(RuntimeError):
            manager.begin_authorization("doc-1")


class TestCompleteAuthorization:

    def test_success_stores_credential(self, settings):
        endpoint = TokenEndpoint(_token_json(access="a1", refresh="r1", expires_in=3600))
        record = _run(settings, endpoint, lambda m: m.complete_authorization("code-1", "doc-1"))
        assert record.access_token == "a1"
        assert record.expires_at == (NOW + timedelta(seconds=3600)).isoformat()
        assert endpoint.forms[0]["grant_type"] == ["authorization_code"]
        assert endpoint.forms[0]["code"] == ["code-1"]
        assert database.get_credential("drchrono", "doc-1", settings.db_path)["refresh_token"] == "r1"

    def test_missing_expires_in_defaults_to_two_hours(self, settings):
        endpoint = TokenEndpoint(_token_json(expires_in=None))
        record = _run(settings, endpoint, lambda m: m.complete_authorization("code-1", "doc-1"))
        assert record.expires_at == (NOW + timedelta(seconds=7200)).isoformat()

    def test_provider_rejection_keeps_status_and_body(self, settings):
        endpoint = TokenEndpoint(httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(ExchangeFailed) as info:
            _run(settings, endpoint, lambda m: m.complete_authorization("bad", "doc-1"))
        assert info.value.status_code == 400
        assert "invalid_grant" in info.value.body
        assert info.value.requires_reauthorization is True
        assert database.get_credential("drchrono", "doc-1", settings.db_path) is None

    def test_missing_refresh_token(self, settings):
        endpoint = TokenEndpoint(httpx.Response(200, json={"access_token": "a1", "expires_in": 60}))
        with pytest.raises(MissingCredentials) as info:
            _run(settings, endpoint, lambda m: m.complete_authorization("code-1", "doc-1"))
        assert info.value.missing == ["refresh_token"]

    def test_network_failure(self, settings):
        endpoint = TokenEndpoint(httpx.ConnectError("connection refused"))
        with pytest.raises(TransportError):
            _run(settings, endpoint, lambda m: m.complete_authorization("code-1", "doc-1"))


# ── Access tokens ──────────────────────────────────────────────────────────────

class TestGetValidAccessToken:

    def test_not_connected(self, settings):
        with pytest.raises(NotConnected):
            _run(settings, TokenEndpoint(_token_json()), lambda m: m.get_valid_access_token("doc-1"))

    def test_fresh_token_makes_no_http_call(self, settings):
        _seed(settings, NOW + timedelta(hours=1))
        endpoint = TokenEndpoint(_token_json())
        token = _run(settings, endpoint, lambda m: m.get_valid_access_token("doc-1"))
        assert token == "a-old"
        assert endpoint.forms == []

    def test_refreshes_inside_buffer(self, settings):
        _seed(settings, NOW + timedelta(seconds=120))
        endpoint = TokenEndpoint(_token_json())
        token = _run(settings, endpoint, lambda m: m.get_valid_access_token("doc-1"))
        assert token == "a-new"
        assert endpoint.forms[0]["grant_type"] == ["refresh_token"]
        assert endpoint.forms[0]["refresh_token"] == ["r-old"]
        row = database.get_credential("drchrono", "doc-1", settings.db_path)
        assert row["refresh_token"] == "r-new"
        assert row["expires_at"] == (NOW + timedelta(seconds=3600)).isoformat()

    def test_refreshes_when_expiry_absent(self, settings):
        _seed(settings, None)
        endpoint = TokenEndpoint(_token_json())
        assert _run(settings, endpoint, lambda m: m.get_valid_access_token("doc-1")) == "a-new"
        assert len(endpoint.forms) == 1

    def test_refresh_keeps_old_refresh_token_when_not_rotated(self, settings):
        _seed(settings, NOW - timedelta(minutes=1))
        endpoint = TokenEndpoint(httpx.Response(200, json={"access_token": "a-new", "expires_in": 60}))
        _run(settings, endpoint, lambda m: m.get_valid_access_token("doc-1"))
        assert database.get_credential("drchrono", "doc-1", settings.db_path)["refresh_token"] == "r-old"

    def test_rejected_refresh_is_not_retried(self, settings):
        _seed(settings, NOW - timedelta(minutes=1))
        endpoint = TokenEndpoint(httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(RefreshFailed) as info:
            _run(settings, endpoint, lambda m: m.get_valid_access_token("doc-1"))
        assert info.value.status_code == 400
        assert len(endpoint.forms) == 1

    def test_concurrent_callers_share_one_refresh(self, settings):
        _seed(settings, NOW - timedelta(minutes=1))
        endpoint = TokenEndpoint(_token_json())

        async def many(manager):
            return await asyncio.gather(*(manager.get_valid_access_token("doc-1") for _ in range(5)))

        tokens = _run(settings, endpoint, many)
        assert tokens == ["a-new"] * 5
        assert len(endpoint.forms) == 1
        with database.get_connection(settings.db_path) as conn:
            rows = conn.execute("SELECT COUNT(*) AS n FROM credentials").fetchone()
        assert rows["n"] == 1

    def test_losing_the_swap_returns_the_winners_token(self, settings):
        _seed(settings, NOW - timedelta(minutes=1))

        def other_process_wins(request):
            # Another process rotates the credential while our refresh is in flight.
            database.swap_refreshed_credential(
                "drchrono", "doc-1", expected_refresh_token="r-old",
                access_token="a-winner", refresh_token="r-winner",
                expires_at=(NOW + timedelta(hours=2)).isoformat(),
                token_type="Bearer", scope="", db_path=settings.db_path,
            )
            return _token_json(access="a-loser", refresh="r-loser")

        token = _run(settings, TokenEndpoint(other_process_wins),
                     lambda m: m.get_valid_access_token("doc-1"))
        assert token == "a-winner"
        assert database.get_credential("drchrono", "doc-1", settings.db_path)["refresh_token"] == "r-winner"

    def test_rejection_after_rotation_elsewhere_uses_stored_token(self, settings):
        _seed(settings, NOW - timedelta(minutes=1))

        def rotated_then_rejected(request):
            database.swap_refreshed_credential(
                "drchrono", "doc-1", expected_refresh_token="r-old",
                access_token="a-winner", refresh_token="r-winner",
                expires_at=(NOW + timedelta(hours=2)).isoformat(),
                token_type="Bearer", scope="", db_path=settings.db_path,
            )
            return httpx.Response(400, json={"error": "invalid_grant"})

        token = _run(settings, TokenEndpoint(rotated_then_rejected),
                     lambda m: m.get_valid_access_token("doc-1"))
        assert token == "a-winner"


# ── Status / disconnect ────────────────────────────────────────────────────────

def test_token_status_and_disconnect(settings):
    endpoint = TokenEndpoint(_token_json())
    assert _run(settings, endpoint, lambda m: m.token_status("doc-1")) == "missing"

    _seed(settings, NOW - timedelta(minutes=1))
    assert _run(settings, endpoint, lambda m: m.token_status("doc-1")) == "expired"

    _seed(settings, NOW + timedelta(hours=1))
    assert _run(settings, endpoint, lambda m: m.token_status("doc-1")) == "valid"

    assert _run(settings, endpoint, lambda m: m.disconnect("doc-1")) is True
    assert _run(settings, endpoint, lambda m: m.disconnect("doc-1")) is False
    assert endpoint.forms == []


def test_default_principal_prefers_configured(settings):
    _seed(settings, NOW + timedelta(hours=1))
    endpoint = TokenEndpoint(_token_json())
    assert _run(settings, endpoint, lambda m: m.default_principal()) == "doc-1"

    pinned = Settings(emr_sync_principal="doc-9", db_path=settings.db_path)
    assert _run(pinned, endpoint, lambda m: m.default_principal()) == "doc-9"


# ── Keepalive ──────────────────────────────────────────────────────────────────

class KeepaliveProvider:
    """Token endpoint plus ``users/current``; records every request."""

    def __init__(self, token_response, user_status=200):
        self.token_response = token_response
        self.user_status = user_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/o/token/":
            return self.token_response
        return httpx.Response(self.user_status, json={"id": 7, "username": "dr.lee"})


class TestKeepalive:

    def test_refreshes_fresh_token_and_validates(self, settings):
        _seed(settings, NOW + timedelta(hours=1))
        provider = KeepaliveProvider(_token_json())
        result = _run(settings, provider, lambda m: m.keepalive("doc-1"))

        assert result["status"] == "refreshed"
        assert result["validated"] is True
        assert result["previous_expires_at"] == (NOW + timedelta(hours=1)).isoformat()
        assert result["expires_at"] == (NOW + timedelta(seconds=3600)).isoformat()
        token_call, check = provider.requests
        assert parse_qs(token_call.content.decode())["refresh_token"] == ["r-old"]
        assert check.url == httpx.URL("https://app.drchrono.com/api/users/current")
        assert check.headers["Authorization"] == "Bearer a-new"

    def test_unvalidated_when_emr_rejects_new_token(self, settings):
        _seed(settings, NOW + timedelta(hours=1))
        provider = KeepaliveProvider(_token_json(), user_status=403)
        result = _run(settings, provider, lambda m: m.keepalive("doc-1"))
        assert result["status"] == "refreshed_unvalidated"
        assert result["validated"] is False
        assert result["validation_status"] == 403

    def test_rejected_refresh_raises_once(self, settings):
        _seed(settings, NOW + timedelta(hours=1))
        provider = KeepaliveProvider(httpx.Response(401, json={"error": "invalid_grant"}))
        with pytest.raises(RefreshFailed):
            _run(settings, provider, lambda m: m.keepalive("doc-1"))
        assert len(provider.requests) == 1
        assert database.get_credential("drchrono", "doc-1", settings.db_path)["access_token"] == "a-old"

    def test_not_connected(self, settings):
        provider = KeepaliveProvider(_token_json())
        with pytest.raises(NotConnected):
            _run(settings, provider, lambda m: m.keepalive("doc-1"))
        assert provider.requests == []
