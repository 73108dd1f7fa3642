"""
clinical_records.py
-------------------
ChartSync — EMR Sync & Audited Records — Audited Mutation Service
-----------------------------------------------------------------
The only writer of locally-owned clinical records (medications).  Every
mutation and its audit entry are written in ONE SQLite transaction: if the
audit insert fails, the record change is rolled back and the error
propagates to the caller.

Audit rules:
  - create       previous_values = None, new_values = stored values
  - update       previous/new hold only the fields whose value changed;
                 a patch that changes nothing writes nothing
  - discontinue  status, discontinue_reason and end_date before and after;
                 end_date is stamped with today's date when it is unset
  - delete       previous_values = full prior snapshot,
                 new_values = {"is_deleted": True}
  - The entry timestamp equals the record's resulting ``updated_at``.

Records are never physically removed; soft-deleted records are invisible
to ``get``/``update``/``list_for_patient`` but keep their history.

Mutations open the transaction with ``BEGIN IMMEDIATE`` so two writers on
the same record cannot both compute a diff against the same prior state.

Usage:
    service = AuditedRecordService(settings.db_path)
    med = service.create({"patient_id": "p-1", "medication_name": "Lisinopril"}, actor)
    service.update(med["id"], {"dosage": "20mg"}, actor, ip_address="10.0.0.7")

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

import database
from errors import NotFound, ValidationError
from identity import Actor
from schemas import AuditAction, MedicationCreate, MedicationPatch

logger = logging.getLogger(__name__)

# Columns of clinical_records that are not clinical fields.
_RECORD_KEYS = frozenset(
    {"id", "record_type", "patient_id", "status", "is_deleted", "created_at", "updated_at"}
)
_IMMUTABLE_KEYS = frozenset({"id", "record_type", "patient_id", "is_deleted", "created_at", "updated_at"})


@dataclass(frozen=True)
class RecordType:
    """Validation contracts and lifecycle values for one clinical record type."""

    name: str
    create_model: Type[BaseModel]
    patch_model: Type[BaseModel]
    terminal_status: str = "discontinued"


MEDICATION = RecordType("medication", MedicationCreate, MedicationPatch)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validation_details(exc: PydanticValidationError) -> List[Dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "body", "message": err["msg"]}
        for err in exc.errors()
    ]


class AuditedRecordService:
    """
    Create/update/discontinue/delete clinical records with an audit trail.

    Args:
        db_path:     SQLite file location.
        record_type: Contracts for the record type served (default medication).
        now:         Clock returning an aware UTC datetime.
    """

    def __init__(
        self,
        db_path: Path,
        record_type: RecordType = MEDICATION,
        *,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._db_path = db_path
        self.record_type = record_type
        self._now = now

    # ── Mutations ────────────────────────────────────────────────────────────

    def create(self, data: Dict[str, Any], actor: Actor, ip_address: Optional[str] = None) -> dict:
        """
        Validate and insert a new record, writing a ``create`` audit entry.

        Raises:
            ValidationError: required field missing, wrong type or unknown field.
        """
        model = self._validate(self.record_type.create_model, data)
        values = model.model_dump(mode="json")
        patient_id = values.pop("patient_id")
        status = values.pop("status")

        record_id = str(uuid.uuid4())
        timestamp = self._now().isoformat()
        with database.get_connection(self._db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            database.insert_clinical_record(
                conn,
                record_id=record_id,
                record_type=self.record_type.name,
                patient_id=patient_id,
                status=status,
                fields=values,
                created_at=timestamp,
            )
            self._audit(
                conn, record_id, "create", actor, ip_address, timestamp,
                previous_values=None,
                new_values={"patient_id": patient_id, "status": status, **values},
            )
            record = database.fetch_clinical_record(conn, record_id, self.record_type.name)

        logger.info(
            "AuditedRecordService: %s %s created for patient %s by %s.",
            self.record_type.name, record_id, patient_id, actor.principal_id,
        )
        return record

    def update(
        self,
        record_id: str,
        patch: Dict[str, Any],
        actor: Actor,
        ip_address: Optional[str] = None,
    ) -> dict:
        """
        Apply a partial update and audit the changed fields.

        Raises:
            ValidationError: empty patch, immutable/unknown field, bad value,
                             ``status=discontinued`` (use ``discontinue``),
                             or a status change on a discontinued record.
            NotFound:        record absent or soft-deleted.
        """
        if not isinstance(patch, dict) or not patch:
            raise ValidationError("Patch is empty; nothing to update.")
        immutable = sorted(_IMMUTABLE_KEYS.intersection(patch))
        if immutable:
            raise ValidationError(f"Field(s) cannot be changed: {', '.join(immutable)}.")

        changes = self._validate(self.record_type.patch_model, patch).model_dump(
            mode="json", exclude_unset=True
        )
        if changes.get("status") == self.record_type.terminal_status:
            raise ValidationError(
                f"Use the discontinue action to set status '{self.record_type.terminal_status}'."
            )

        with database.get_connection(self._db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            current = self._fetch_live(conn, record_id)

            previous_values: Dict[str, Any] = {}
            new_values: Dict[str, Any] = {}
            for key, value in changes.items():
                if current.get(key) != value:
                    previous_values[key] = current.get(key)
                    new_values[key] = value
            if not new_values:
                logger.debug(
                    "AuditedRecordService: %s %s patch changes nothing.",
                    self.record_type.name, record_id,
                )
                return current
            # Terminal status is final; a discontinued record is never reactivated.
            if "status" in new_values and current["status"] == self.record_type.terminal_status:
                raise ValidationError(
                    f"{self.record_type.name} '{record_id}' is "
                    f"{self.record_type.terminal_status}; its status cannot change."
                )

            status, fields = self._split(current)
            status = new_values.get("status", status)
            fields.update({k: v for k, v in new_values.items() if k != "status"})

            timestamp = self._now().isoformat()
            database.write_clinical_record(
                conn,
                record_id=record_id,
                status=status,
                fields=fields,
                is_deleted=False,
                updated_at=timestamp,
            )
            self._audit(
                conn, record_id, "update", actor, ip_address, timestamp,
                previous_values=previous_values,
                new_values=new_values,
            )
            record = database.fetch_clinical_record(conn, record_id, self.record_type.name)

        logger.info(
            "AuditedRecordService: %s %s updated by %s (%s).",
            self.record_type.name, record_id, actor.principal_id, ", ".join(sorted(new_values)),
        )
        return record

    def discontinue(
        self,
        record_id: str,
        reason: str,
        actor: Actor,
        ip_address: Optional[str] = None,
    ) -> dict:
        """
        Move a record to the terminal status with a reason.

        Raises:
            ValidationError: blank reason, or record already discontinued.
            NotFound:        record absent or soft-deleted.
        """
        reason = (reason or "").strip() if isinstance(reason, str) else ""
        if not reason:
            raise ValidationError("A discontinue reason is required.")

        terminal = self.record_type.terminal_status
        with database.get_connection(self._db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            current = self._fetch_live(conn, record_id)
            if current["status"] == terminal:
                raise ValidationError(f"{self.record_type.name} '{record_id}' is already {terminal}.")

            _, fields = self._split(current)
            fields["discontinue_reason"] = reason
            moment = self._now()
            timestamp = moment.isoformat()
            if not fields.get("end_date"):
                fields["end_date"] = moment.date().isoformat()
            database.write_clinical_record(
                conn,
                record_id=record_id,
                status=terminal,
                fields=fields,
                is_deleted=False,
                updated_at=timestamp,
            )
            self._audit(
                conn, record_id, "discontinue", actor, ip_address, timestamp,
                previous_values={
                    "status": current["status"],
                    "discontinue_reason": current.get("discontinue_reason"),
                    "end_date": current.get("end_date"),
                },
                new_values={
                    "status": terminal,
                    "discontinue_reason": reason,
                    "end_date": fields["end_date"],
                },
            )
            record = database.fetch_clinical_record(conn, record_id, self.record_type.name)

        logger.info(
            "AuditedRecordService: %s %s discontinued by %s.",
            self.record_type.name, record_id, actor.principal_id,
        )
        return record

    def delete(self, record_id: str, actor: Actor, ip_address: Optional[str] = None) -> None:
        """
        Soft-delete a record.

        Raises:
            NotFound: record absent or already soft-deleted.
        """
        with database.get_connection(self._db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            current = self._fetch_live(conn, record_id)
            status, fields = self._split(current)
            timestamp = self._now().isoformat()
            database.write_clinical_record(
                conn,
                record_id=record_id,
                status=status,
                fields=fields,
                is_deleted=True,
                updated_at=timestamp,
            )
            self._audit(
                conn, record_id, "delete", actor, ip_address, timestamp,
                previous_values=current,
                new_values={"is_deleted": True},
            )

        logger.info(
            "AuditedRecordService: %s %s soft-deleted by %s.",
            self.record_type.name, record_id, actor.principal_id,
        )

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(self, record_id: str) -> dict:
        record = database.get_clinical_record(record_id, self.record_type.name, self._db_path)
        if record is None:
            raise NotFound(self.record_type.name, record_id)
        return record

    def list_for_patient(self, patient_id: str) -> List[dict]:
        """Non-deleted records for one patient, newest first."""
        if not patient_id or not patient_id.strip():
            raise ValidationError("patient_id is required.")
        return database.list_clinical_records(patient_id.strip(), self.record_type.name, self._db_path)

    def history(self, record_id: str) -> List[dict]:
        """Audit entries for a record (deleted records included), oldest first."""
        record = database.get_clinical_record(
            record_id, self.record_type.name, self._db_path, include_deleted=True
        )
        if record is None:
            raise NotFound(self.record_type.name, record_id)
        return database.get_audit_entries(record_id, self._db_path)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _validate(self, model: Type[BaseModel], data: Any) -> BaseModel:
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object.")
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            details = _validation_details(exc)
            summary = "; ".join(f"{d['field']}: {d['message']}" for d in details)
            raise ValidationError(f"Invalid {self.record_type.name}: {summary}", errors=details) from exc

    def _fetch_live(self, conn, record_id: str) -> dict:
        current = database.fetch_clinical_record(conn, record_id, self.record_type.name)
        if current is None:
            raise NotFound(self.record_type.name, record_id)
        return current

    @staticmethod
    def _split(record: dict) -> Tuple[str, Dict[str, Any]]:
        fields = {k: v for k, v in record.items() if k not in _RECORD_KEYS}
        return record["status"], fields

    def _audit(
        self,
        conn,
        record_id: str,
        action: AuditAction,
        actor: Actor,
        ip_address: Optional[str],
        timestamp: str,
        *,
        previous_values: Optional[Dict[str, Any]],
        new_values: Dict[str, Any],
    ) -> None:
        database.insert_audit_entry(
            conn,
            entry_id=str(uuid.uuid4()),
            subject_record_id=record_id,
            record_type=self.record_type.name,
            action=action,
            actor_id=actor.principal_id,
            actor_identity=actor.email,
            previous_values=previous_values,
            new_values=new_values,
            ip_address=ip_address,
            timestamp=timestamp,
        )
