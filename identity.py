"""
identity.py
-----------
ChartSync — EMR Sync & Audited Records — Identity Provider Adapter
------------------------------------------------------------------
Resolves a caller's bearer token to an ``Actor`` by asking the external
identity provider's userinfo endpoint (``IDENTITY_USERINFO_URL``).  Session
handling and login UI live entirely with that provider; this module only
answers "who is calling, and with what role?".

Userinfo payloads are read leniently: the principal comes from ``id`` or
``sub``, the role from ``role`` or ``app_metadata.role`` /
``user_metadata.role``.

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """An authenticated caller."""

    principal_id: str
    email: Optional[str] = None
    role: str = ""

    def has_role(self, *roles: str) -> bool:
        return self.role.lower() in {r.lower() for r in roles}


def _role_from(payload: Dict[str, Any]) -> str:
    role = payload.get("role")
    for key in ("app_metadata", "user_metadata"):
        if role:
            break
        meta = payload.get(key)
        if isinstance(meta, dict):
            role = meta.get("role")
    return str(role or "")


class IdentityProvider:
    """
    Thin client for an OIDC-style userinfo endpoint.

    Args:
        userinfo_url: Endpoint returning the caller's profile for a bearer token.
        http:         Shared ``httpx.AsyncClient``.
    """

    def __init__(self, userinfo_url: str, http: httpx.AsyncClient) -> None:
        self.userinfo_url = userinfo_url
        self._http = http

    async def get_user(self, token: str) -> Optional[Actor]:
        """
        Return the ``Actor`` for ``token``, or ``None`` if it is not accepted.

        Raises:
            TransportError: identity provider unreachable.
        """
        if not token:
            return None
        if not self.userinfo_url:
            logger.warning("IdentityProvider: IDENTITY_USERINFO_URL is not set — rejecting caller.")
            return None

        try:
            resp = await self._http.get(
                self.userinfo_url,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Identity provider unreachable: {exc}") from exc

        if not resp.is_success:
            if resp.status_code not in (401, 403):
                logger.warning("IdentityProvider: userinfo returned HTTP %d.", resp.status_code)
            return None

        try:
            payload = resp.json()
        except ValueError:
            logger.warning("IdentityProvider: userinfo returned a non-JSON body.")
            return None

        if not isinstance(payload, dict):
            return None
        principal = payload.get("id") or payload.get("sub")
        if not principal:
            return None
        return Actor(
            principal_id=str(principal),
            email=payload.get("email"),
            role=_role_from(payload),
        )
