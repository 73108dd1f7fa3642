"""
tests/
------
ChartSync — EMR Sync & Audited Records — Test Package
-----------------------------------------------------
pytest suites for the sync engine and the audited record service.

Test Modules:
    - test_database.py: SQLite store (credentials, replicated records, sync runs, audit rows)
    - test_token_manager.py: OAuth code exchange, refresh, single-flight + compare-and-swap
    - test_emr_client.py: Outcome classification and same-origin URL policy
    - test_pagination.py: Page walking, partial results, page-shape decoding
    - test_sync_orchestrator.py: Multi-entity passes, isolation, budget, incremental sync
    - test_clinical_records.py: Audited medication mutations and rollback
    - test_identity.py: Userinfo-backed caller resolution
    - test_config.py: Environment-driven settings
    - test_main.py: FastAPI routes end to end

Project: ChartSync — EMR Sync & Audited Records
"""
