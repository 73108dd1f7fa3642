"""
database.py
-----------
ChartSync — EMR Sync & Audited Records — Relational Store
---------------------------------------------------------
SQLite persistence layer.  Every function takes an explicit ``db_path`` so
callers decide which database they talk to; components receive that path
at construction instead of reaching for a module-level client.

Table: credentials
  - One row per (provider, principal_id).  Owned by the Credential Store
    functions below; no other table holds a token.
  - Refresh writes are a compare-and-swap on the refresh token that was
    used, so two racing refreshers leave exactly one consistent row.

Table: emr_records
  - Replicated EMR entities, one row per (entity_type, emr_id).
  - Read-mostly; upserted by the sync orchestrator in batches.

Table: sync_runs
  - One row per entity type per orchestration pass (observability).

Table: clinical_records
  - Locally-owned clinical records (medications).  Never physically
    deleted; ``is_deleted`` is the soft-delete flag.
  - Only the audited mutation service writes here, always inside the same
    transaction as the matching audit_entries insert.

Table: audit_entries
  - Append-only audit trail: one row per clinical record mutation.

Public API:
    init_db()                  — Create tables + indexes if absent. Idempotent.
    get_connection()           — Context manager: commit on success, rollback on error.
    get_credential()           — SELECT one credential by (provider, principal).
    get_latest_credential()    — SELECT the most recently updated credential.
    upsert_credential()        — INSERT … ON CONFLICT DO UPDATE keyed by (provider, principal).
    swap_refreshed_credential()— Compare-and-swap write after a token refresh.
    delete_credential()        — DELETE one credential (idempotent).
    upsert_emr_records()       — Batch upsert of replicated records.
    count_emr_records()        — Row count for one entity type.
    get_emr_record_counts()    — Row counts grouped by entity type.
    insert_sync_run()          — INSERT one Sync Run row.
    get_recent_sync_runs()     — SELECT recent Sync Run rows.
    insert_clinical_record()   — INSERT (transaction-scoped, takes a connection).
    fetch_clinical_record()    — SELECT by id (transaction-scoped).
    write_clinical_record()    — UPDATE mutable columns (transaction-scoped).
    insert_audit_entry()       — INSERT audit row (transaction-scoped).
    get_clinical_record()      — SELECT by id (own connection).
    list_clinical_records()    — SELECT a patient's non-deleted records.
    get_audit_entries()        — SELECT a record's audit trail, oldest first.

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------
_CREDENTIALS_DDL = """
CREATE TABLE IF NOT EXISTS credentials (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    provider       TEXT    NOT NULL,
    principal_id   TEXT    NOT NULL,
    access_token   TEXT    NOT NULL,
    refresh_token  TEXT    NOT NULL,
    expires_at     TEXT,
    token_type     TEXT    NOT NULL DEFAULT 'Bearer',
    scope          TEXT    NOT NULL DEFAULT '',
    created_at     TEXT    NOT NULL,
    updated_at     TEXT    NOT NULL,
    UNIQUE (provider, principal_id)
);

CREATE INDEX IF NOT EXISTS idx_cred_updated ON credentials (provider, updated_at DESC);
"""

_EMR_RECORDS_DDL = """
CREATE TABLE IF NOT EXISTS emr_records (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type     TEXT    NOT NULL,
    emr_id          TEXT    NOT NULL,
    emr_patient_id  TEXT,
    payload         TEXT    NOT NULL,
    last_synced_at  TEXT    NOT NULL,
    UNIQUE (entity_type, emr_id)
);

CREATE INDEX IF NOT EXISTS idx_emr_patient ON emr_records (entity_type, emr_patient_id);
"""

_SYNC_RUNS_DDL = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id           TEXT    NOT NULL,
    entity_type      TEXT    NOT NULL,
    trigger          TEXT    NOT NULL DEFAULT '',
    requested_at     TEXT    NOT NULL,
    finished_at      TEXT,
    pages_fetched    INTEGER NOT NULL DEFAULT 0,
    records_fetched  INTEGER NOT NULL DEFAULT 0,
    records_stored   INTEGER NOT NULL DEFAULT 0,
    status           TEXT    NOT NULL,
    error_detail     TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_run ON sync_runs (run_id);
CREATE INDEX IF NOT EXISTS idx_sync_runs_requested ON sync_runs (requested_at DESC);
"""

_CLINICAL_DDL = """
CREATE TABLE IF NOT EXISTS clinical_records (
    id           TEXT    PRIMARY KEY,
    record_type  TEXT    NOT NULL,
    patient_id   TEXT    NOT NULL,
    status       TEXT    NOT NULL DEFAULT 'active',
    fields       TEXT    NOT NULL DEFAULT '{}',
    is_deleted   INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT    NOT NULL,
    updated_at   TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cr_patient ON clinical_records (record_type, patient_id, is_deleted);

CREATE TABLE IF NOT EXISTS audit_entries (
    id                 TEXT    PRIMARY KEY,
    subject_record_id  TEXT    NOT NULL,
    record_type        TEXT    NOT NULL,
    action             TEXT    NOT NULL,
    actor_id           TEXT    NOT NULL,
    actor_identity     TEXT,
    previous_values    TEXT,
    new_values         TEXT    NOT NULL,
    ip_address         TEXT,
    timestamp          TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_subject ON audit_entries (subject_record_id, timestamp);
"""

_CREDENTIAL_COLUMNS = (
    "provider, principal_id, access_token, refresh_token, expires_at, "
    "token_type, scope, created_at, updated_at"
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------

def init_db(db_path: Path) -> None:
    """
    Create every table and index if they do not exist.

    Safe to call multiple times — uses ``IF NOT EXISTS`` throughout.

    Args:
        db_path: SQLite file location.

    Raises:
        sqlite3.Error: if the underlying SQLite operation fails.
    """
    with sqlite3.connect(str(db_path)) as conn:
        conn.executescript(_CREDENTIALS_DDL)
        conn.executescript(_EMR_RECORDS_DDL)
        conn.executescript(_SYNC_RUNS_DDL)
        conn.executescript(_CLINICAL_DDL)
        conn.commit()
    logger.info("chartsync DB ready at '%s'.", db_path)


@contextmanager
def get_connection(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """
    Yield an open ``sqlite3.Connection`` that commits on clean exit and rolls
    back on exception.

    Every statement issued on the yielded connection belongs to one
    transaction, which is what makes a clinical record write and its audit
    entry atomic.

    Args:
        db_path: SQLite file location.

    Yields:
        sqlite3.Connection: with ``row_factory = sqlite3.Row`` set.

    Raises:
        sqlite3.Error: propagated after rollback.
    """
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Credential Store
# ---------------------------------------------------------------------------

def get_credential(
    provider: str,
    principal_id: str,
    db_path: Path,
) -> Optional[dict]:
    """
    Return the credential row for ``(provider, principal_id)`` or ``None``.
    """
    with get_connection(db_path) as conn:
        row = conn.execute(
            f"SELECT {_CREDENTIAL_COLUMNS} FROM credentials "
            "WHERE provider = ? AND principal_id = ?",
            (provider, principal_id),
        ).fetchone()
        return dict(row) if row else None


def get_latest_credential(provider: str, db_path: Path) -> Optional[dict]:
    """Return the most recently updated credential for ``provider``, if any."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            f"SELECT {_CREDENTIAL_COLUMNS} FROM credentials "
            "WHERE provider = ? ORDER BY updated_at DESC LIMIT 1",
            (provider,),
        ).fetchone()
        return dict(row) if row else None


def upsert_credential(
    provider: str,
    principal_id: str,
    *,
    access_token: str,
    refresh_token: str,
    expires_at: Optional[str],
    token_type: str = "Bearer",
    scope: str = "",
    db_path: Path,
) -> dict:
    """
    INSERT or UPDATE the credential for ``(provider, principal_id)``.

    Used on a successful authorization-code exchange (first connection or
    reconnection).  ``created_at`` survives reconnection.

    Returns:
        dict: The row as stored.
    """
    now = _utc_now()
    with get_connection(db_path) as conn:
        conn.execute(
            f"""
            INSERT INTO credentials ({_CREDENTIAL_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(provider, principal_id) DO UPDATE SET
                access_token  = excluded.access_token,
                refresh_token = excluded.refresh_token,
                expires_at    = excluded.expires_at,
                token_type    = excluded.token_type,
                scope         = excluded.scope,
                updated_at    = excluded.updated_at
            """,
            (provider, principal_id, access_token, refresh_token, expires_at,
             token_type, scope, now, now),
        )
        row = conn.execute(
            f"SELECT {_CREDENTIAL_COLUMNS} FROM credentials "
            "WHERE provider = ? AND principal_id = ?",
            (provider, principal_id),
        ).fetchone()

    logger.debug(
        "credentials: upserted provider=%s principal=%s expires_at=%s.",
        provider, principal_id, expires_at or "<none>",
    )
    return dict(row)


def swap_refreshed_credential(
    provider: str,
    principal_id: str,
    *,
    expected_refresh_token: str,
    access_token: str,
    refresh_token: str,
    expires_at: Optional[str],
    token_type: str,
    scope: str,
    db_path: Path,
) -> bool:
    """
    Store refreshed tokens only if the row still holds ``expected_refresh_token``.

    A ``False`` return means another writer refreshed first; the caller
    should re-read the row and use the winner's access token.

    Returns:
        bool: ``True`` if this write won.
    """
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            UPDATE credentials
               SET access_token = ?, refresh_token = ?, expires_at = ?,
                   token_type = ?, scope = ?, updated_at = ?
             WHERE provider = ? AND principal_id = ? AND refresh_token = ?
            """,
            (access_token, refresh_token, expires_at, token_type, scope,
             _utc_now(), provider, principal_id, expected_refresh_token),
        )
        won = cur.rowcount == 1
    logger.debug(
        "credentials: refresh swap provider=%s principal=%s won=%s.",
        provider, principal_id, won,
    )
    return won


def delete_credential(provider: str, principal_id: str, db_path: Path) -> bool:
    """
    DELETE the credential for ``(provider, principal_id)``.

    Returns:
        bool: ``True`` if a row was removed, ``False`` if none existed.
    """
    with get_connection(db_path) as conn:
        cur = conn.execute(
            "DELETE FROM credentials WHERE provider = ? AND principal_id = ?",
            (provider, principal_id),
        )
        return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Replicated EMR records
# ---------------------------------------------------------------------------

def upsert_emr_records(
    entity_type: str,
    records: Iterable[Dict[str, Any]],
    db_path: Path,
    synced_at: Optional[str] = None,
) -> int:
    """
    Upsert replicated EMR records keyed by ``(entity_type, emr_id)``.

    All rows are written in one transaction: either the whole batch lands
    or none of it does.

    Args:
        entity_type: Catalog entity name (e.g. ``"medications"``).
        records:     Provider records; each must carry an ``"id"``.
        db_path:     SQLite file location.
        synced_at:   Timestamp stamped on every row (defaults to now).

    Returns:
        int: Number of rows written.

    Raises:
        ValueError:    if a record has no ``id``.
        sqlite3.Error: on I/O failures (batch rolled back).
    """
    stamp = synced_at or _utc_now()
    rows = []
    for record in records:
        emr_id = record.get("id")
        if emr_id is None or emr_id == "":
            raise ValueError(f"{entity_type} record without an 'id' cannot be replicated.")
        patient = record.get("patient")
        rows.append((
            entity_type,
            str(emr_id),
            str(patient) if patient not in (None, "") else None,
            _dumps(record),
            stamp,
        ))
    if not rows:
        return 0

    with get_connection(db_path) as conn:
        conn.executemany(
            """
            INSERT INTO emr_records
                (entity_type, emr_id, emr_patient_id, payload, last_synced_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(entity_type, emr_id) DO UPDATE SET
                emr_patient_id = excluded.emr_patient_id,
                payload        = excluded.payload,
                last_synced_at = excluded.last_synced_at
            """,
            rows,
        )
    return len(rows)


def count_emr_records(entity_type: str, db_path: Path) -> int:
    """Return how many rows are replicated locally for ``entity_type``."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM emr_records WHERE entity_type = ?",
            (entity_type,),
        ).fetchone()
        return int(row["n"])


def get_emr_record_counts(db_path: Path) -> Dict[str, int]:
    """Return ``{entity_type: row_count}`` for every replicated entity type."""
    with get_connection(db_path) as conn:
        cur = conn.execute(
            "SELECT entity_type, COUNT(*) AS n FROM emr_records GROUP BY entity_type"
        )
        return {row["entity_type"]: int(row["n"]) for row in cur.fetchall()}


def get_emr_records(
    entity_type: str,
    db_path: Path,
    emr_patient_id: Optional[str] = None,
) -> List[dict]:
    """Return decoded payloads for one entity type, optionally per patient."""
    with get_connection(db_path) as conn:
        if emr_patient_id:
            cur = conn.execute(
                "SELECT payload FROM emr_records "
                "WHERE entity_type = ? AND emr_patient_id = ? ORDER BY emr_id",
                (entity_type, emr_patient_id),
            )
        else:
            cur = conn.execute(
                "SELECT payload FROM emr_records WHERE entity_type = ? ORDER BY emr_id",
                (entity_type,),
            )
        return [json.loads(row["payload"]) for row in cur.fetchall()]


# ---------------------------------------------------------------------------
# Sync runs
# ---------------------------------------------------------------------------

def insert_sync_run(
    *,
    run_id: str,
    entity_type: str,
    trigger: str,
    requested_at: str,
    finished_at: Optional[str],
    pages_fetched: int,
    records_fetched: int,
    records_stored: int,
    status: str,
    error_detail: Optional[str],
    db_path: Path,
) -> int:
    """INSERT one Sync Run row and return its rowid."""
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            INSERT INTO sync_runs
                (run_id, entity_type, trigger, requested_at, finished_at,
                 pages_fetched, records_fetched, records_stored, status, error_detail)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (run_id, entity_type, trigger, requested_at, finished_at,
             pages_fetched, records_fetched, records_stored, status, error_detail),
        )
        return int(cur.lastrowid)


def get_recent_sync_runs(db_path: Path, limit: int = 50) -> List[dict]:
    """Return the most recent Sync Run rows, newest first."""
    with get_connection(db_path) as conn:
        cur = conn.execute(
            "SELECT * FROM sync_runs ORDER BY requested_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [dict(row) for row in cur.fetchall()]


# ---------------------------------------------------------------------------
# Clinical records + audit trail
# ---------------------------------------------------------------------------
# The transaction-scoped helpers take an open connection so the audited
# mutation service can put the record write and the audit insert in one
# transaction.

def _record_from_row(row: sqlite3.Row) -> dict:
    record = {
        "id": row["id"],
        "record_type": row["record_type"],
        "patient_id": row["patient_id"],
        "status": row["status"],
    }
    record.update(json.loads(row["fields"] or "{}"))
    record["is_deleted"] = bool(row["is_deleted"])
    record["created_at"] = row["created_at"]
    record["updated_at"] = row["updated_at"]
    return record


def insert_clinical_record(
    conn: sqlite3.Connection,
    *,
    record_id: str,
    record_type: str,
    patient_id: str,
    status: str,
    fields: Dict[str, Any],
    created_at: str,
) -> None:
    """INSERT a new clinical record (caller owns the transaction)."""
    conn.execute(
        """
        INSERT INTO clinical_records
            (id, record_type, patient_id, status, fields, is_deleted, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 0, ?, ?)
        """,
        (record_id, record_type, patient_id, status, _dumps(fields), created_at, created_at),
    )


def fetch_clinical_record(
    conn: sqlite3.Connection,
    record_id: str,
    record_type: str,
    include_deleted: bool = False,
) -> Optional[dict]:
    """SELECT one clinical record inside the caller's transaction."""
    sql = "SELECT * FROM clinical_records WHERE id = ? AND record_type = ?"
    if not include_deleted:
        sql += " AND is_deleted = 0"
    row = conn.execute(sql, (record_id, record_type)).fetchone()
    return _record_from_row(row) if row else None


def write_clinical_record(
    conn: sqlite3.Connection,
    *,
    record_id: str,
    status: str,
    fields: Dict[str, Any],
    is_deleted: bool,
    updated_at: str,
) -> None:
    """UPDATE the mutable columns of a clinical record (caller owns the transaction)."""
    conn.execute(
        """
        UPDATE clinical_records
           SET status = ?, fields = ?, is_deleted = ?, updated_at = ?
         WHERE id = ?
        """,
        (status, _dumps(fields), 1 if is_deleted else 0, updated_at, record_id),
    )


def insert_audit_entry(
    conn: sqlite3.Connection,
    *,
    entry_id: str,
    subject_record_id: str,
    record_type: str,
    action: str,
    actor_id: str,
    actor_identity: Optional[str],
    previous_values: Optional[Dict[str, Any]],
    new_values: Dict[str, Any],
    ip_address: Optional[str],
    timestamp: str,
) -> None:
    """INSERT one audit entry (caller owns the transaction)."""
    conn.execute(
        """
        INSERT INTO audit_entries
            (id, subject_record_id, record_type, action, actor_id, actor_identity,
             previous_values, new_values, ip_address, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry_id, subject_record_id, record_type, action, actor_id, actor_identity,
            _dumps(previous_values) if previous_values is not None else None,
            _dumps(new_values), ip_address, timestamp,
        ),
    )


def get_clinical_record(
    record_id: str,
    record_type: str,
    db_path: Path,
    include_deleted: bool = False,
) -> Optional[dict]:
    """Return one clinical record (own connection)."""
    with get_connection(db_path) as conn:
        return fetch_clinical_record(conn, record_id, record_type, include_deleted)


def list_clinical_records(
    patient_id: str,
    record_type: str,
    db_path: Path,
) -> List[dict]:
    """Return a patient's non-deleted records, newest first."""
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            SELECT * FROM clinical_records
             WHERE patient_id = ? AND record_type = ? AND is_deleted = 0
             ORDER BY created_at DESC
            """,
            (patient_id, record_type),
        )
        return [_record_from_row(row) for row in cur.fetchall()]


def get_audit_entries(subject_record_id: str, db_path: Path) -> List[dict]:
    """
    Return every audit entry for one clinical record, oldest first.

    ``previous_values`` / ``new_values`` are decoded back into dicts.
    """
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            SELECT * FROM audit_entries
             WHERE subject_record_id = ?
             ORDER BY timestamp ASC, rowid ASC
            """,
            (subject_record_id,),
        )
        entries = []
        for row in cur.fetchall():
            entry = dict(row)
            entry["previous_values"] = (
                json.loads(entry["previous_values"])
                if entry["previous_values"] is not None else None
            )
            entry["new_values"] = json.loads(entry["new_values"])
            entries.append(entry)
        return entries
