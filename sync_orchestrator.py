"""
sync_orchestrator.py
--------------------
ChartSync — EMR Sync & Audited Records — Sync Orchestrator
----------------------------------------------------------
Runs one full resynchronization pass over every entity in the catalog and
reports a per-entity and overall outcome.  Both trigger surfaces (the
scheduler endpoint and the operator endpoint) and the CLI call
``SyncOrchestrator.sync_all`` directly; the report shape does not depend on
who triggered it.

Pass lifecycle:
  1. Resolve the sync principal and validate its access token once
     (preflight).  A missing or rejected credential fails every entity with
     ``reauthorization_required`` set, without calling the EMR.
  2. Schedule one task per entity behind an ``asyncio.Semaphore``
     (``SYNC_CONCURRENCY``, default 1 = sequential in catalog order).
  3. Each task paginates its collection and upserts the records into
     ``emr_records`` in batches of 50.  Any exception inside one entity is
     logged and becomes that entity's ``failed`` result; it never reaches
     the other entities.
  4. When the time budget expires, in-flight tasks are cancelled and every
     unfinished entity is reported ``failed`` ("time budget exhausted").
  5. Each entity result is persisted as a ``sync_runs`` row.

Entity status:
    success  pagination complete, every record stored
    partial  stopped after at least one page, or some records not stored
    failed   no page fetched, or nothing could be stored

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

import database
from config import Settings
from emr_client import EMRClient
from entity_catalog import ENTITY_CATALOG, EntitySpec, build_path
from errors import ReauthorizationRequired, TransportError
from pagination import PageResult, Paginator
from schemas import EntityResult, SyncReport, overall_status
from token_manager import TokenManager

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 50
TIME_BUDGET_EXHAUSTED = "time budget exhausted"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """
    Multi-entity resynchronization with partial-failure tolerance.

    Args:
        settings: Process settings (API base, paging, concurrency, budget).
        tokens:   TokenManager for the sync principal's credential.
        http:     Shared ``httpx.AsyncClient``.
        catalog:  Entities to replicate, in priority order.
        sleep:    Awaitable sleep used between pages.
        now:      Clock returning an aware UTC datetime.
    """

    def __init__(
        self,
        settings: Settings,
        tokens: TokenManager,
        http: httpx.AsyncClient,
        *,
        catalog: Sequence[EntitySpec] = ENTITY_CATALOG,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.settings = settings
        self.catalog = tuple(catalog)
        self._tokens = tokens
        self._http = http
        self._sleep = sleep
        self._now = now
        self._db_path = settings.db_path

    # ── Public API ───────────────────────────────────────────────────────────

    async def sync_all(self, trigger: str = "manual", principal_id: Optional[str] = None) -> SyncReport:
        """
        Run one full pass over the catalog.

        Args:
            trigger:      Who asked for the pass (``"cron"``, ``"operator"``,
                          ``"cli"``); recorded on each sync run row.
            principal_id: Credential to sync with.  Defaults to the configured
                          sync principal or the most recent credential.

        Returns:
            SyncReport: Never raises for EMR, token or per-entity failures.
        """
        run_id = uuid.uuid4().hex
        started_at = self._now()
        t0 = time.monotonic()
        logger.info(
            "SyncOrchestrator: run %s started (trigger=%s, %d entities).",
            run_id, trigger, len(self.catalog),
        )

        principal = principal_id or await self._tokens.default_principal()
        preflight_error = await self._preflight(principal)
        if preflight_error is not None:
            message, reauth = preflight_error
            results = [
                EntityResult(
                    entity_type=entity.name,
                    status="failed",
                    error=message,
                    reauthorization_required=reauth,
                )
                for entity in self.catalog
            ]
        else:
            results = await self._run_entities(principal)

        finished_at = self._now()
        report = SyncReport(
            run_id=run_id,
            started_at=started_at.isoformat(),
            finished_at=finished_at.isoformat(),
            elapsed_ms=int((time.monotonic() - t0) * 1000),
            entity_results=results,
            overall_status=overall_status([r.status for r in results]),
            total_records=sum(r.records_stored for r in results),
            reauthorization_required=any(r.reauthorization_required for r in results),
        )
        await self._persist(report, trigger)

        logger.info(
            "SyncOrchestrator: run %s %s — %d record(s) in %d ms (%d/%d entities succeeded).",
            run_id, report.overall_status, report.total_records, report.elapsed_ms,
            sum(1 for r in results if r.status == "success"), len(results),
        )
        return report

    # ── Pass stages ──────────────────────────────────────────────────────────

    async def _preflight(self, principal: Optional[str]) -> Optional[Tuple[str, bool]]:
        """Return ``(error, reauthorization_required)`` or ``None`` when the token is usable."""
        if not principal:
            logger.warning("SyncOrchestrator: no EMR credential connected — skipping pass.")
            return (
                f"No {self._tokens.provider} credential connected. "
                f"{ReauthorizationRequired.hint}",
                True,
            )
        try:
            await self._tokens.get_valid_access_token(principal)
        except ReauthorizationRequired as exc:
            logger.warning("SyncOrchestrator: preflight failed — %s", exc)
            return f"{exc} {exc.hint}", True
        except TransportError as exc:
            logger.warning("SyncOrchestrator: token endpoint unreachable — %s", exc)
            return str(exc), False
        return None

    async def _run_entities(self, principal: str) -> List[EntityResult]:
        client = EMRClient(self._tokens, self._http, self.settings.emr_api_base, principal)
        paginator = Paginator(client, page_delay_s=self.settings.page_delay_s, sleep=self._sleep)
        semaphore = asyncio.Semaphore(self.settings.sync_concurrency)

        tasks: Dict[asyncio.Task, EntitySpec] = {
            asyncio.create_task(self._guarded(entity, paginator, semaphore)): entity
            for entity in self.catalog
        }
        if not tasks:
            return []

        _, pending = await asyncio.wait(tasks.keys(), timeout=self.settings.sync_time_budget_s)
        if pending:
            logger.warning(
                "SyncOrchestrator: time budget of %.0fs exhausted — abandoning %d entit%s.",
                self.settings.sync_time_budget_s, len(pending),
                "y" if len(pending) == 1 else "ies",
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for task, entity in tasks.items():
            if task in pending:
                results.append(
                    EntityResult(entity_type=entity.name, status="failed", error=TIME_BUDGET_EXHAUSTED)
                )
            else:
                results.append(task.result())
        return results

    async def _guarded(
        self,
        entity: EntitySpec,
        paginator: Paginator,
        semaphore: asyncio.Semaphore,
    ) -> EntityResult:
        async with semaphore:
            try:
                return await self._sync_entity(entity, paginator)
            except Exception as exc:
                logger.error(
                    "SyncOrchestrator: %s failed unexpectedly — %s", entity.name, exc, exc_info=True
                )
                return EntityResult(
                    entity_type=entity.name,
                    status="failed",
                    error=f"{type(exc).__name__}: {exc}",
                )

    async def _sync_entity(self, entity: EntitySpec, paginator: Paginator) -> EntityResult:
        existing = await asyncio.to_thread(database.count_emr_records, entity.name, self._db_path)
        path = build_path(entity, existing, self._now())
        if path != entity.path:
            logger.info(
                "SyncOrchestrator: %s incremental (%d existing records) — %s",
                entity.name, existing, path,
            )

        page = await paginator.fetch_all(path, max_pages=self.settings.max_pages)
        stored, errored = await asyncio.to_thread(self._store, entity.name, page.records)
        status, error = self._classify(page, stored, errored)

        logger.info(
            "SyncOrchestrator: %s %s — %d page(s), %d fetched, %d stored.",
            entity.name, status, page.pages_fetched, page.total_fetched, stored,
        )
        return EntityResult(
            entity_type=entity.name,
            status=status,
            pages_fetched=page.pages_fetched,
            records_fetched=page.total_fetched,
            records_stored=stored,
            error=error,
            reauthorization_required=page.reauthorization_required,
        )

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _store(self, entity_type: str, records: List[Dict[str, Any]]) -> Tuple[int, int]:
        """Upsert ``records`` in batches; return ``(stored, errored)``."""
        keyed = [r for r in records if r.get("id") not in (None, "")]
        errored = len(records) - len(keyed)
        if errored:
            logger.warning(
                "SyncOrchestrator: %s — %d record(s) without an id skipped.", entity_type, errored
            )

        stored = 0
        synced_at = self._now().isoformat()
        for start in range(0, len(keyed), UPSERT_BATCH_SIZE):
            batch = keyed[start:start + UPSERT_BATCH_SIZE]
            try:
                stored += database.upsert_emr_records(
                    entity_type, batch, self._db_path, synced_at=synced_at
                )
            except (sqlite3.Error, ValueError) as exc:
                errored += len(batch)
                logger.error(
                    "SyncOrchestrator: %s batch at offset %d not stored — %s",
                    entity_type, start, exc,
                )
        return stored, errored

    @staticmethod
    def _classify(page: PageResult, stored: int, errored: int) -> Tuple[str, Optional[str]]:
        if page.pages_fetched == 0:
            return "failed", page.error or "No page fetched."
        if page.records and stored == 0:
            return "failed", page.error or f"None of {len(page.records)} record(s) could be stored."
        if page.complete and not page.truncated and errored == 0:
            return "success", None

        problems = []
        if page.error:
            problems.append(page.error)
        elif page.truncated:
            problems.append(f"Page limit reached after {page.pages_fetched} page(s).")
        if errored:
            problems.append(f"{errored} record(s) not stored.")
        return "partial", " ".join(problems)

    async def _persist(self, report: SyncReport, trigger: str) -> None:
        try:
            await asyncio.to_thread(self._write_runs, report, trigger)
        except sqlite3.Error as exc:
            logger.error("SyncOrchestrator: could not record sync runs for %s — %s", report.run_id, exc)

    def _write_runs(self, report: SyncReport, trigger: str) -> None:
        for result in report.entity_results:
            database.insert_sync_run(
                run_id=report.run_id,
                entity_type=result.entity_type,
                trigger=trigger,
                requested_at=report.started_at,
                finished_at=report.finished_at,
                pages_fetched=result.pages_fetched,
                records_fetched=result.records_fetched,
                records_stored=result.records_stored,
                status=result.status,
                error_detail=result.error,
                db_path=self._db_path,
            )
