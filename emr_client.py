"""
emr_client.py
-------------
ChartSync — EMR Sync & Audited Records — EMR REST Client
--------------------------------------------------------
Authenticated HTTP calls against the EMR's REST surface
(``https://app.drchrono.com/api`` by default).

Every call asks the TokenManager for a valid bearer token first, so an
expired token is refreshed transparently before the request goes out.

Outcome classification (never raises for provider or network outcomes):
  - 2xx                         → ok=True
  - non-2xx                     → ok=False, status = provider status
  - timeout / DNS / refused     → ok=False, status = 0 (TransportError)
  - no credential / refresh
    refused                     → ok=False, status = 401,
                                  reauthorization_required=True

Callers (the pagination engine) branch on the status instead of unwinding,
so one failing collection never aborts a whole sync pass.

Absolute URLs (the provider's ``next`` pointers) are only followed when
they point at the same scheme and host as the API base; the bearer token is
never sent anywhere else.

Usage:
    http   = build_http_client(settings)
    tokens = TokenManager(settings, http)
    client = EMRClient(tokens, http, settings.emr_api_base, principal_id="doctor-42")
    resp   = await client.request("medications?page_size=100")
    if resp.ok:
        ...

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import httpx

from config import Settings
from errors import TRANSPORT_ERROR_STATUS, ReauthorizationRequired, TransportError
from token_manager import TokenManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EMRResponse:
    """Classified outcome of one EMR call."""

    ok: bool
    status: int
    data: Any = None
    error: Optional[str] = None
    reauthorization_required: bool = False

    @property
    def is_transport_error(self) -> bool:
        return self.status == TRANSPORT_ERROR_STATUS


def build_http_client(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create the process-wide ``httpx.AsyncClient``.

    The caller owns its lifecycle (``await client.aclose()`` at shutdown).
    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """
    return httpx.AsyncClient(timeout=settings.http_timeout_s, transport=transport)


class EMRClient:
    """
    Bearer-authenticated EMR REST client bound to one principal.

    Args:
        tokens:       TokenManager supplying fresh access tokens.
        http:         Shared ``httpx.AsyncClient``.
        api_base:     REST base URL, e.g. ``https://app.drchrono.com/api``.
        principal_id: Principal whose delegated credential is used.
    """

    def __init__(
        self,
        tokens: TokenManager,
        http: httpx.AsyncClient,
        api_base: str,
        principal_id: str,
    ) -> None:
        self._tokens = tokens
        self._http = http
        self.api_base = api_base.rstrip("/")
        self.principal_id = principal_id
        base = urlsplit(self.api_base)
        self._origin = (base.scheme, base.netloc)

    # ── URL helpers ──────────────────────────────────────────────────────────

    def resolve_url(self, endpoint: str) -> Optional[str]:
        """
        Return the absolute URL for ``endpoint``, or ``None`` when an absolute
        URL points outside the API origin.
        """
        if endpoint.startswith(("http://", "https://")):
            parts = urlsplit(endpoint)
            if (parts.scheme, parts.netloc) != self._origin:
                return None
            return endpoint
        return f"{self.api_base}/{endpoint.lstrip('/')}"

    # ── Requests ─────────────────────────────────────────────────────────────

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
    ) -> EMRResponse:
        """
        Execute one authenticated call and classify the outcome.

        Args:
            endpoint: Path relative to the API base (``"allergies?page_size=100"``)
                      or an absolute same-origin URL (a ``next`` pointer).
            method:   HTTP method.
            body:     Optional JSON body.

        Returns:
            EMRResponse: Never raises for provider/network/token outcomes.
        """
        url = self.resolve_url(endpoint)
        if url is None:
            logger.warning("EMRClient: refusing off-origin URL %s.", endpoint)
            return EMRResponse(
                ok=False,
                status=TRANSPORT_ERROR_STATUS,
                error=f"Refused to follow URL outside {self.api_base}.",
            )

        try:
            token = await self._tokens.get_valid_access_token(self.principal_id)
        except ReauthorizationRequired as exc:
            logger.warning("EMRClient: %s", exc)
            return EMRResponse(
                ok=False,
                status=401,
                data={"error": str(exc), "hint": exc.hint},
                error=str(exc),
                reauthorization_required=True,
            )
        except TransportError as exc:
            logger.warning("EMRClient: token endpoint unreachable — %s", exc)
            return EMRResponse(ok=False, status=TRANSPORT_ERROR_STATUS, error=str(exc))

        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        logger.debug("EMRClient: %s %s", method.upper(), url)

        try:
            resp = await self._http.request(method.upper(), url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            logger.warning(
                "EMRClient: transport error on %s %s — %s: %s",
                method.upper(), url, type(exc).__name__, exc,
            )
            return EMRResponse(
                ok=False,
                status=TRANSPORT_ERROR_STATUS,
                error=f"{type(exc).__name__}: {exc}",
            )

        data: Any = None
        if resp.content:
            try:
                data = resp.json()
            except ValueError:
                data = None

        if resp.is_success:
            return EMRResponse(ok=True, status=resp.status_code, data=data)

        logger.warning(
            "EMRClient: %s %s returned HTTP %d.", method.upper(), url, resp.status_code
        )
        return EMRResponse(
            ok=False,
            status=resp.status_code,
            data=data,
            error=resp.text[:300],
            reauthorization_required=resp.status_code == 401,
        )
