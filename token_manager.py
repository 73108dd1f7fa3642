"""
token_manager.py
----------------
ChartSync — EMR Sync & Audited Records — OAuth2 Token Lifecycle Manager
-----------------------------------------------------------------------
Obtains, stores and refreshes delegated EMR credentials (RFC 6749
authorization-code grant).

OAuth2 flow:
  1. begin_authorization() builds the provider consent URL.  The ``state``
     parameter carries the principal id, HMAC-signed with the client secret
     so the callback cannot be pointed at another principal.
  2. complete_authorization() exchanges the one-time code at the token
     endpoint and upserts the credential row keyed by (provider, principal).
  3. get_valid_access_token() re-reads the row on every call and refreshes
     it when ``expires_at`` is absent or inside the refresh buffer.
  4. keepalive() refreshes unconditionally and confirms the new token
     against the EMR, so the sync principal never lapses between passes.

There is no in-memory token cache: every read goes to the Credential Store,
so a process restart never serves a stale token.  Concurrent refreshes for
one principal are collapsed by a per-principal lock inside the process and
by a compare-and-swap write across processes.

Usage:
    async with httpx.AsyncClient(timeout=30) as http:
        tokens = TokenManager(settings, http)
        url    = tokens.begin_authorization("doctor-42")
        ...
        token  = await tokens.get_valid_access_token("doctor-42")

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

import database
from config import Settings
from errors import (
    ExchangeFailed,
    MissingCredentials,
    NotConnected,
    RefreshFailed,
    TransportError,
)
from schemas import CredentialRecord

logger = logging.getLogger(__name__)

# Lifetime assumed when the token endpoint omits ``expires_in``.
_DEFAULT_EXPIRES_IN_S = 7200

# Cheap authenticated call used to confirm a freshly refreshed token works.
_VALIDATION_ENDPOINT = "users/current"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """
    OAuth2 credential lifecycle for one EMR provider.

    Args:
        settings: Process settings (provider, endpoints, client credentials,
                  refresh buffer, database path).
        http:     Shared ``httpx.AsyncClient`` used for token endpoint calls.
        now:      Clock returning an aware UTC datetime (tests inject a
                  fixed clock).
    """

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient,
        *,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.provider = settings.emr_provider
        self.authorize_url = settings.emr_authorize_url
        self.token_url = settings.emr_token_url
        self.api_base = settings.emr_api_base
        self.client_id = settings.emr_client_id
        self.client_secret = settings.emr_client_secret
        self.redirect_uri = settings.emr_redirect_uri
        self.scopes = settings.emr_scopes
        self.refresh_buffer = timedelta(seconds=settings.token_refresh_buffer_s)
        self.sync_principal = settings.emr_sync_principal
        self._db_path = settings.db_path
        self._http = http
        self._now = now
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    # ── Authorization ────────────────────────────────────────────────────────

    def _require_client_config(self) -> None:
        missing = [
            name for name, value in (
                ("EMR_CLIENT_ID", self.client_id),
                ("EMR_CLIENT_SECRET", self.client_secret),
                ("EMR_REDIRECT_URI", self.redirect_uri),
            ) if not value
        ]
        if missing:
            raise RuntimeError(
                f"EMR OAuth client is not configured (missing {', '.join(missing)})."
            )

    def _signature(self, payload: str) -> str:
        digest = hmac.new(
            self.client_secret.encode(), payload.encode(), hashlib.sha256
        ).hexdigest()
        return digest[:32]

    def _sign_state(self, principal_id: str) -> str:
        payload = f"{principal_id}:{secrets.token_urlsafe(8)}"
        raw = f"{payload}:{self._signature(payload)}"
        return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")

    def verify_state(self, state: str) -> str:
        """
        Validate the ``state`` echoed back on the OAuth callback.

        Returns:
            str: The principal id the authorization was started for.

        Raises:
            ExchangeFailed: if the state is malformed or its signature is wrong.
        """
        try:
            padded = state + "=" * (-len(state) % 4)
            raw = base64.urlsafe_b64decode(padded.encode()).decode()
            principal_id, nonce, signature = raw.rsplit(":", 2)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ExchangeFailed(400, "Malformed OAuth state parameter.") from exc

        expected = self._signature(f"{principal_id}:{nonce}")
        if not principal_id or not hmac.compare_digest(expected.encode(), signature.encode()):
            raise ExchangeFailed(400, "OAuth state signature mismatch.")
        return principal_id

    def begin_authorization(self, principal_id: str) -> str:
        """
        Build the provider consent URL for ``principal_id``.

        Stateless apart from URL construction.

        Raises:
            RuntimeError: if the OAuth client id/secret/redirect URI are unset.
        """
        self._require_client_config()
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "state": self._sign_state(principal_id),
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def complete_authorization(self, code: str, principal_id: str) -> CredentialRecord:
        """
        Exchange a one-time authorization code for tokens and store them.

        Args:
            code:         Code received on the redirect URI.
            principal_id: Principal the credential belongs to.

        Returns:
            CredentialRecord: The stored credential.

        Raises:
            ExchangeFailed:     provider rejected the code (status + body kept).
            MissingCredentials: 2xx response without access/refresh token.
            TransportError:     token endpoint unreachable.
        """
        self._require_client_config()
        if not code or not code.strip():
            raise ExchangeFailed(400, "No authorization code received.")

        resp = await self._post_token({
            "grant_type": "authorization_code",
            "code": code.strip(),
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
        })
        if not resp.is_success:
            logger.warning(
                "TokenManager: code exchange rejected for principal=%s (HTTP %d).",
                principal_id, resp.status_code,
            )
            raise ExchangeFailed(resp.status_code, resp.text)

        token_data = self._json_body(resp)
        if token_data is None:
            raise ExchangeFailed(resp.status_code, f"Invalid JSON from token endpoint: {resp.text[:300]}")

        missing = [k for k in ("access_token", "refresh_token") if not token_data.get(k)]
        if missing:
            raise MissingCredentials(missing, sorted(token_data.keys()))

        row = await asyncio.to_thread(
            database.upsert_credential,
            self.provider,
            principal_id,
            access_token=token_data["access_token"],
            refresh_token=token_data["refresh_token"],
            expires_at=self._expiry(token_data.get("expires_in")),
            token_type=token_data.get("token_type") or "Bearer",
            scope=token_data.get("scope") or "",
            db_path=self._db_path,
        )
        logger.info(
            "TokenManager: %s connected for principal=%s.", self.provider, principal_id
        )
        return CredentialRecord(**row)

    # ── Access tokens ────────────────────────────────────────────────────────

    async def get_valid_access_token(self, principal_id: str) -> str:
        """
        Return a usable access token, refreshing it first when necessary.

        Raises:
            NotConnected:   no credential on file for the principal.
            RefreshFailed:  provider refused the refresh token (reauthorize).
            TransportError: token endpoint unreachable during refresh.
        """
        record = await self._read(principal_id)
        if record is None:
            raise NotConnected(self.provider, principal_id)
        if self._is_fresh(record):
            return record["access_token"]

        lock = self._refresh_locks.setdefault(principal_id, asyncio.Lock())
        async with lock:
            # Another task may have refreshed while we waited for the lock.
            record = await self._read(principal_id)
            if record is None:
                raise NotConnected(self.provider, principal_id)
            if self._is_fresh(record):
                return record["access_token"]
            return await self._refresh(record)

    async def _refresh(self, record: Dict[str, Any], reason: Optional[str] = None) -> str:
        principal_id = record["principal_id"]
        if reason is None:
            reason = "has no expiry" if not record.get("expires_at") else "expired"
        logger.info(
            "TokenManager: access token %s for principal=%s — refreshing.",
            reason, principal_id,
        )
        resp = await self._post_token({
            "grant_type": "refresh_token",
            "refresh_token": record["refresh_token"],
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        })

        if not resp.is_success:
            # A refresh token rotated by another process is rejected by the
            # provider; the winner's row is then fresh and usable.
            current = await self._read(principal_id)
            if (
                current is not None
                and current["refresh_token"] != record["refresh_token"]
                and self._is_fresh(current)
            ):
                return current["access_token"]
            logger.warning(
                "TokenManager: refresh rejected for principal=%s (HTTP %d) — "
                "reauthorization required.",
                principal_id, resp.status_code,
            )
            raise RefreshFailed(resp.status_code, resp.text)

        token_data = self._json_body(resp) or {}
        access_token = token_data.get("access_token")
        if not access_token:
            raise RefreshFailed(resp.status_code, "Refresh response did not include an access_token.")

        won = await asyncio.to_thread(
            database.swap_refreshed_credential,
            self.provider,
            principal_id,
            expected_refresh_token=record["refresh_token"],
            access_token=access_token,
            refresh_token=token_data.get("refresh_token") or record["refresh_token"],
            expires_at=self._expiry(token_data.get("expires_in")),
            token_type=token_data.get("token_type") or record.get("token_type") or "Bearer",
            scope=token_data.get("scope") or record.get("scope") or "",
            db_path=self._db_path,
        )
        if won:
            logger.info("TokenManager: token refreshed for principal=%s.", principal_id)
            return access_token

        current = await self._read(principal_id)
        if current is None:
            raise NotConnected(self.provider, principal_id)
        logger.debug(
            "TokenManager: concurrent refresh won elsewhere for principal=%s.", principal_id
        )
        return current["access_token"]

    async def force_refresh(self, principal_id: str) -> str:
        """
        Refresh the principal's token now, whatever its remaining lifetime.

        Goes through the same per-principal lock and compare-and-swap write
        as ``get_valid_access_token``.

        Raises:
            NotConnected:   no credential on file for the principal.
            RefreshFailed:  provider refused the refresh token (reauthorize).
            TransportError: token endpoint unreachable.
        """
        lock = self._refresh_locks.setdefault(principal_id, asyncio.Lock())
        async with lock:
            record = await self._read(principal_id)
            if record is None:
                raise NotConnected(self.provider, principal_id)
            return await self._refresh(record, reason="kept alive")

    async def keepalive(self, principal_id: str) -> Dict[str, Any]:
        """
        Refresh the principal's token ahead of expiry, then confirm the new
        token is accepted by the EMR (``GET users/current``).

        A refresh is attempted once; a rejected refresh propagates as
        ``RefreshFailed`` and the clinician has to reconnect.

        Returns:
            dict: principal_id, status (``refreshed`` or
                  ``refreshed_unvalidated``), expires_at, validated,
                  validation_status.
        """
        from emr_client import EMRClient

        previous = await self._read(principal_id)
        await self.force_refresh(principal_id)
        current = await self._read(principal_id)

        client = EMRClient(self, self._http, self.api_base, principal_id)
        check = await client.request(_VALIDATION_ENDPOINT)
        if check.ok:
            logger.info("TokenManager: keepalive ok for principal=%s.", principal_id)
        else:
            logger.warning(
                "TokenManager: keepalive refreshed principal=%s but validation returned HTTP %d.",
                principal_id, check.status,
            )
        return {
            "principal_id": principal_id,
            "status": "refreshed" if check.ok else "refreshed_unvalidated",
            "previous_expires_at": previous.get("expires_at") if previous else None,
            "expires_at": current.get("expires_at") if current else None,
            "validated": check.ok,
            "validation_status": check.status,
        }

    async def token_status(self, principal_id: str) -> str:
        """Return ``"valid"``, ``"expired"`` or ``"missing"`` without refreshing."""
        record = await self._read(principal_id)
        if record is None:
            return "missing"
        return "valid" if self._is_fresh(record) else "expired"

    async def disconnect(self, principal_id: str) -> bool:
        """
        Delete the principal's credential.  Idempotent.

        Returns:
            bool: ``True`` if a credential was removed.
        """
        removed = await asyncio.to_thread(
            database.delete_credential, self.provider, principal_id, self._db_path
        )
        logger.info(
            "TokenManager: disconnect principal=%s (%s).",
            principal_id, "removed" if removed else "was not connected",
        )
        return removed

    async def default_principal(self) -> Optional[str]:
        """
        Principal whose credential drives practice-wide syncs: the configured
        ``EMR_SYNC_PRINCIPAL``, else the most recently updated credential.
        """
        if self.sync_principal:
            return self.sync_principal
        latest = await asyncio.to_thread(
            database.get_latest_credential, self.provider, self._db_path
        )
        return latest["principal_id"] if latest else None

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _read(self, principal_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(
            database.get_credential, self.provider, principal_id, self._db_path
        )

    async def _post_token(self, form: Dict[str, str]) -> httpx.Response:
        try:
            return await self._http.post(
                self.token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Token request failed: {exc}") from exc

    @staticmethod
    def _json_body(resp: httpx.Response) -> Optional[Dict[str, Any]]:
        try:
            body = resp.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def _expiry(self, expires_in: Any) -> str:
        try:
            seconds = int(expires_in)
        except (TypeError, ValueError):
            seconds = _DEFAULT_EXPIRES_IN_S
        return (self._now() + timedelta(seconds=seconds)).isoformat()

    def _is_fresh(self, record: Dict[str, Any]) -> bool:
        raw = record.get("expires_at")
        if not raw:
            return False
        try:
            expires_at = datetime.fromisoformat(raw)
        except ValueError:
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return self._now() < expires_at - self.refresh_buffer
