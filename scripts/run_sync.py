#!/usr/bin/env python3
"""
run_sync.py
-----------
ChartSync — EMR Sync & Audited Records — Scheduler CLI
------------------------------------------------------
Runs one full resynchronization pass outside the web process (system cron,
Kubernetes CronJob, CI) and prints the per-entity report.

Exit codes:
    0  every entity synced
    1  partial: at least one entity incomplete
    2  failed: nothing synced (3 when EMR reauthorization is required)

Usage:
    cd chartsync
    python scripts/run_sync.py [--principal doctor-42] [--db ./chartsync.sqlite]
                               [--entities allergies,medications] [--json]

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path

# ── Path bootstrap ────────────────────────────────────────────────────────────
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_REPO_ROOT = os.path.dirname(_SCRIPT_DIR)
sys.path.insert(0, _REPO_ROOT)

from dotenv import load_dotenv
load_dotenv(os.path.join(_REPO_ROOT, ".env"), override=False)

import database                                              # noqa: E402
from config import load_settings                             # noqa: E402
from emr_client import build_http_client                     # noqa: E402
from entity_catalog import ENTITY_CATALOG                    # noqa: E402
from errors import PartialSyncFailure                        # noqa: E402
from schemas import SyncReport                               # noqa: E402
from sync_orchestrator import SyncOrchestrator               # noqa: E402
from token_manager import TokenManager                       # noqa: E402

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("run_sync")

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FAILED = 2
EXIT_REAUTH = 3


async def run(args: argparse.Namespace) -> SyncReport:
    settings = load_settings(db_path=Path(args.db) if args.db else None)
    if args.concurrency:
        settings = dataclasses.replace(settings, sync_concurrency=max(1, min(4, args.concurrency)))

    catalog = ENTITY_CATALOG
    if args.entities:
        wanted = {name.strip() for name in args.entities.split(",") if name.strip()}
        unknown = wanted - {e.name for e in ENTITY_CATALOG}
        if unknown:
            raise SystemExit(f"Unknown entity type(s): {', '.join(sorted(unknown))}")
        catalog = tuple(e for e in ENTITY_CATALOG if e.name in wanted)

    database.init_db(settings.db_path)
    http = build_http_client(settings)
    try:
        tokens = TokenManager(settings, http)
        orchestrator = SyncOrchestrator(settings, tokens, http, catalog=catalog)
        return await orchestrator.sync_all(trigger="cli", principal_id=args.principal or None)
    finally:
        await http.aclose()


def _print_report(report: SyncReport) -> None:
    log.info("Run %s — %s (%d records, %d ms)",
             report.run_id, report.overall_status.upper(), report.total_records, report.elapsed_ms)
    for result in report.entity_results:
        line = (f"  {result.entity_type:<24} {result.status:<8} "
                f"pages={result.pages_fetched:<4} fetched={result.records_fetched:<6} "
                f"stored={result.records_stored}")
        if result.error:
            line += f"  error={result.error}"
        log.info(line)


def _exit_code(report: SyncReport) -> int:
    try:
        report.raise_for_status()
    except PartialSyncFailure as exc:
        log.warning("%s", exc)
        if report.overall_status == "partial":
            return EXIT_PARTIAL
        return EXIT_REAUTH if report.reauthorization_required else EXIT_FAILED
    return EXIT_OK


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one full EMR resynchronization pass.")
    parser.add_argument("--principal", default="",
                        help="Principal whose EMR credential to use (default: EMR_SYNC_PRINCIPAL "
                             "or the most recently connected credential).")
    parser.add_argument("--db", default="", help="SQLite path (default: CHARTSYNC_DB_PATH).")
    parser.add_argument("--entities", default="",
                        help="Comma-separated subset of entity types to sync.")
    parser.add_argument("--concurrency", type=int, default=0,
                        help="Entities synced at once, 1-4 (default: SYNC_CONCURRENCY).")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON on stdout.")
    return parser.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    report = asyncio.run(run(args))
    if args.json:
        print(json.dumps(report.model_dump(), indent=2))
    else:
        _print_report(report)
    sys.exit(_exit_code(report))
