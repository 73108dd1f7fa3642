"""
schemas.py
----------
ChartSync — EMR Sync & Audited Records — Pydantic Data Contracts
----------------------------------------------------------------
Pydantic v2 models that act as the data contract between the HTTP layer,
the audited mutation service, the sync orchestrator and the SQLite store,
plus the boundary decoder for EMR page bodies.

Validation policy
-----------------
MedicationCreate / MedicationPatch are the single gate between caller input
and the clinical_records table.  Unknown fields are rejected (``extra =
"forbid"``) so a typo can never silently become a no-op, and immutable
fields (``patient_id``) are not part of the patch contract at all.

decode_page() is the single gate between raw EMR JSON and the pagination
engine.  It accepts exactly three shapes and rejects everything else:

  1. ``{"results": [...], "next": url | null}`` — a list page.
  2. ``[...]``                                    — a bare array.
  3. ``{...}`` without ``results``                — a singleton object.

Public API
----------
    CredentialRecord        Stored OAuth credential.
    MedicationCreate        Validated create input.
    MedicationPatch         Validated partial update input.
    DecodedPage             Normalized page (records + next pointer).
    decode_page()           Decode one EMR response body.
    EntityResult            Per-entity outcome of a sync pass.
    SyncReport              Aggregate outcome of a sync pass.
    overall_status()        Aggregate rule over entity statuses.

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from errors import PageDecodeError, PartialSyncFailure

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

MedicationStatus = Literal["active", "on_hold", "discontinued", "completed"]
AuditAction = Literal["create", "update", "discontinue", "delete"]
SyncStatus = Literal["success", "partial", "failed"]



# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class CredentialRecord(BaseModel):
    """One delegated OAuth credential, unique per (provider, principal_id)."""

    provider: str
    principal_id: str
    access_token: str
    refresh_token: str
    expires_at: Optional[str] = None
    token_type: str = "Bearer"
    scope: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Medication input contracts
# ---------------------------------------------------------------------------

def _strip_optional(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class MedicationCreate(BaseModel):
    """Input for creating a locally-owned medication record."""

    model_config = ConfigDict(extra="forbid")

    patient_id: str
    medication_name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    route: str = "oral"
    prescriber: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: MedicationStatus = "active"
    is_prn: bool = False
    prn_reason: Optional[str] = None
    side_effects: Optional[str] = None
    adherence_score: Optional[int] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None

    @field_validator("patient_id", "medication_name")
    @classmethod
    def _required_text(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    @field_validator("dosage", "frequency", "prescriber", "prn_reason",
                     "side_effects", "notes", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Any:
        return _strip_optional(value)

    @field_validator("status")
    @classmethod
    def _not_discontinued(cls, value: str) -> str:
        if value == "discontinued":
            raise ValueError("a new medication cannot start discontinued")
        return value


class MedicationPatch(BaseModel):
    """
    Partial update for a medication.  Only fields the caller actually sent
    are applied (``model_dump(exclude_unset=True)``).
    """

    model_config = ConfigDict(extra="forbid")

    medication_name: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    route: Optional[str] = None
    prescriber: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[MedicationStatus] = None
    is_prn: Optional[bool] = None
    prn_reason: Optional[str] = None
    side_effects: Optional[str] = None
    adherence_score: Optional[int] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = None

    @field_validator("medication_name")
    @classmethod
    def _name_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            raise ValueError("medication_name cannot be blank")
        return value.strip()

    @field_validator("route")
    @classmethod
    def _route_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            raise ValueError("route cannot be blank")
        return value.strip()

    @field_validator("status")
    @classmethod
    def _status_not_null(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            raise ValueError("status cannot be null")
        return value

    @field_validator("is_prn")
    @classmethod
    def _is_prn_not_null(cls, value: Optional[bool]) -> Optional[bool]:
        if value is None:
            raise ValueError("is_prn cannot be null")
        return value

    @field_validator("dosage", "frequency", "prescriber", "prn_reason",
                     "side_effects", "notes", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Any:
        return _strip_optional(value)


# ---------------------------------------------------------------------------
# EMR page decoding
# ---------------------------------------------------------------------------

class DecodedPage(BaseModel):
    """A page body normalized to a list of records plus the next pointer."""

    records: List[Dict[str, Any]]
    next_url: Optional[str] = None
    shape: Literal["list_page", "bare_array", "singleton"]


def decode_page(data: Any) -> DecodedPage:
    """
    Normalize one EMR response body into ``DecodedPage``.

    Args:
        data: Parsed JSON body from ``EMRResponse.data``.

    Returns:
        DecodedPage: records in provider order and the ``next`` URL (if any).

    Raises:
        PageDecodeError: if the body matches none of the supported shapes.
    """
    if isinstance(data, list):
        _require_objects(data, "bare array")
        return DecodedPage(records=data, next_url=None, shape="bare_array")

    if not isinstance(data, dict):
        raise PageDecodeError(
            f"Expected a JSON object or array, got {type(data).__name__}."
        )

    if "results" in data:
        results = data["results"]
        if not isinstance(results, list):
            raise PageDecodeError(
                f"'results' must be a list, got {type(results).__name__}."
            )
        _require_objects(results, "'results'")
        next_url = data.get("next")
        if next_url is not None and (not isinstance(next_url, str) or not next_url.strip()):
            raise PageDecodeError(f"'next' must be a URL string or null, got {next_url!r}.")
        return DecodedPage(records=results, next_url=next_url or None, shape="list_page")

    if not data:
        raise PageDecodeError("Empty JSON object is neither a page nor a record.")
    return DecodedPage(records=[data], next_url=None, shape="singleton")


def _require_objects(items: List[Any], where: str) -> None:
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise PageDecodeError(
                f"{where}[{index}] is {type(item).__name__}, expected an object."
            )


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------

class EntityResult(BaseModel):
    """Outcome of syncing one entity type."""

    entity_type: str
    status: SyncStatus
    pages_fetched: int = 0
    records_fetched: int = 0
    records_stored: int = 0
    error: Optional[str] = None
    reauthorization_required: bool = False


def overall_status(statuses: List[str]) -> SyncStatus:
    """
    ``success`` iff every entity succeeded, ``failed`` iff none did,
    ``partial`` otherwise.  An empty catalog counts as success.
    """
    succeeded = sum(1 for s in statuses if s == "success")
    if succeeded == len(statuses):
        return "success"
    if succeeded == 0:
        return "failed"
    return "partial"


class SyncReport(BaseModel):
    """Aggregate result of one orchestration pass — identical for every trigger."""

    run_id: str
    started_at: str
    finished_at: str
    elapsed_ms: int
    entity_results: List[EntityResult]
    overall_status: SyncStatus
    total_records: int
    reauthorization_required: bool = False

    def raise_for_status(self) -> None:
        """Raise ``PartialSyncFailure`` unless every entity type succeeded."""
        if self.overall_status != "success":
            raise PartialSyncFailure(self)
