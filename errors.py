"""
errors.py
---------
ChartSync — EMR Sync & Audited Records — Error Taxonomy
-------------------------------------------------------
Typed exceptions shared by the token lifecycle manager, EMR client,
pagination engine, sync orchestrator and audited mutation service.

Credential problems derive from ``ReauthorizationRequired`` so the HTTP
layer can route the clinician to the reconnect flow instead of showing a
generic 500.  In the synchronization path these errors never cross a
component boundary as exceptions: the EMR client folds them into an
``EMRResponse`` and the orchestrator reports them per entity.

Hierarchy:
    ChartSyncError
    ├── ReauthorizationRequired
    │   ├── NotConnected
    │   ├── ExchangeFailed
    │   ├── MissingCredentials
    │   └── RefreshFailed
    ├── TransportError
    ├── ValidationError
    ├── NotFound
    ├── PageDecodeError
    └── PartialSyncFailure

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

from typing import Any, Optional

# Status code used for network-level failures (timeouts, DNS, refused).
TRANSPORT_ERROR_STATUS = 0


class ChartSyncError(Exception):
    """Base class for all ChartSync errors."""


class ReauthorizationRequired(ChartSyncError):
    """The EMR credential is missing or was rejected; the user must reconnect."""

    requires_reauthorization = True
    hint = "EMR authorization is missing or expired. Reconnect via /emr/authorize."


class NotConnected(ReauthorizationRequired):
    """No credential record exists for the principal."""

    def __init__(self, provider: str, principal_id: str) -> None:
        self.provider = provider
        self.principal_id = principal_id
        super().__init__(
            f"No {provider} credential on file for principal '{principal_id}'."
        )


class ExchangeFailed(ReauthorizationRequired):
    """The provider rejected an authorization code (or the callback state)."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Authorization code exchange failed ({status_code}): {body}")


class MissingCredentials(ReauthorizationRequired):
    """The token endpoint answered 2xx but omitted a required token."""

    def __init__(self, missing: list[str], keys: Optional[list[str]] = None) -> None:
        self.missing = missing
        self.keys = keys or []
        super().__init__(
            f"Token response is missing {', '.join(missing)} "
            f"(received keys: {', '.join(self.keys) or '<none>'})."
        )


class RefreshFailed(ReauthorizationRequired):
    """The provider refused the refresh token."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Token refresh failed ({status_code}): {body}")


class TransportError(ChartSyncError):
    """Network-level failure talking to the EMR or identity provider."""

    status_code = TRANSPORT_ERROR_STATUS

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(ChartSyncError):
    """Caller-supplied data is malformed. Maps to HTTP 400; never retried."""

    def __init__(self, message: str, errors: Optional[list[Any]] = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class NotFound(ChartSyncError):
    """The referenced record does not exist or has been soft-deleted."""

    def __init__(self, record_type: str, record_id: str) -> None:
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(f"{record_type} '{record_id}' not found.")


class PageDecodeError(ChartSyncError):
    """An EMR page body matched none of the supported shapes."""


class PartialSyncFailure(ChartSyncError):
    """One or more entity types did not sync completely."""

    def __init__(self, report: Any) -> None:
        self.report = report
        failed = [
            r.entity_type for r in report.entity_results if r.status != "success"
        ]
        super().__init__(
            f"Sync {report.overall_status}: {len(failed)} entity type(s) "
            f"incomplete ({', '.join(failed)})."
        )
