"""
test_config.py
--------------
ChartSync — EMR Sync & Audited Records — Test Suite for config.py
-----------------------------------------------------------------
Tests cover:
    - defaults when the environment is empty
    - environment overrides, concurrency clamping, bad numbers fall back

Run:
    pytest tests/test_config.py -v --tb=short

Project: ChartSync — EMR Sync & Audited Records
"""

import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import load_settings

_VARS = (
    "EMR_API_BASE", "SYNC_CONCURRENCY", "EMR_PAGE_DELAY_S", "EMR_MAX_PAGES",
    "SYNC_TIME_BUDGET_S", "CRON_SECRET", "OPERATOR_ROLES", "CHARTSYNC_DB_PATH",
    "EMR_SYNC_PRINCIPAL", "CORS_ORIGINS",
)


def _clear(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    _clear(monkeypatch)
    settings = load_settings()
    assert settings.emr_api_base == "https://app.drchrono.com/api"
    assert settings.page_delay_s == 0.2
    assert settings.max_pages == 100
    assert settings.sync_concurrency == 1
    assert settings.sync_time_budget_s == 270.0
    assert settings.token_refresh_buffer_s == 300
    assert settings.cron_secret == ""
    assert settings.operator_roles == ("clinician", "doctor", "admin")


def test_overrides_and_clamping(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.setenv("EMR_API_BASE", "https://emr.example/api/")
    monkeypatch.setenv("SYNC_CONCURRENCY", "9")
    monkeypatch.setenv("EMR_PAGE_DELAY_S", "fast")
    monkeypatch.setenv("OPERATOR_ROLES", " Admin , nurse ")
    monkeypatch.setenv("CHARTSYNC_DB_PATH", str(tmp_path / "env.sqlite"))
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")

    settings = load_settings()
    assert settings.emr_api_base == "https://emr.example/api"
    assert settings.sync_concurrency == 4
    assert settings.page_delay_s == 0.2
    assert settings.operator_roles == ("admin", "nurse")
    assert settings.db_path == tmp_path / "env.sqlite"
    assert settings.cors_origins == ("https://a.example", "https://b.example")

    explicit = load_settings(db_path=Path("/tmp/explicit.sqlite"))
    assert explicit.db_path == Path("/tmp/explicit.sqlite")


def test_concurrency_floor(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("SYNC_CONCURRENCY", "0")
    assert load_settings().sync_concurrency == 1
