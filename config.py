"""
config.py
---------
ChartSync — EMR Sync & Audited Records — Runtime Settings
---------------------------------------------------------
Collects every environment-driven knob into one frozen ``Settings`` object
that is built once at process start and passed explicitly to each
component.  Nothing else in the code base reads ``os.environ``.

Call ``load_dotenv()`` (done by ``main.py`` and ``scripts/run_sync.py``)
before ``load_settings()`` so values from ``.env`` are visible.

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path(__file__).parent / "chartsync.sqlite"

_DEFAULT_SCOPES = "user:read patients:read patients:summary:read clinical:read"

# SYNC_CONCURRENCY is clamped to this range; 1 means sequential.
_MIN_CONCURRENCY = 1
_MAX_CONCURRENCY = 4


@dataclass(frozen=True)
class Settings:
    """Immutable process configuration."""

    emr_provider: str = "drchrono"
    emr_api_base: str = "https://app.drchrono.com/api"
    emr_authorize_url: str = "https://drchrono.com/o/authorize/"
    emr_token_url: str = "https://drchrono.com/o/token/"
    emr_client_id: str = ""
    emr_client_secret: str = ""
    emr_redirect_uri: str = ""
    emr_scopes: str = _DEFAULT_SCOPES

    # Principal whose delegated credential drives practice-wide syncs.
    # Empty means "most recently updated credential for the provider".
    emr_sync_principal: str = ""

    cron_secret: str = ""
    db_path: Path = _DEFAULT_DB_PATH

    page_delay_s: float = 0.2
    max_pages: int = 100
    sync_concurrency: int = 1
    sync_time_budget_s: float = 270.0
    token_refresh_buffer_s: int = 300
    http_timeout_s: float = 30.0

    identity_userinfo_url: str = ""
    operator_roles: Tuple[str, ...] = field(default=("clinician", "doctor", "admin"))
    cors_origins: Tuple[str, ...] = ()


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("config: %s=%r is not a number; using %s.", name, raw, default)
        return default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("config: %s=%r is not an integer; using %d.", name, raw, default)
        return default


def load_settings(db_path: Optional[Path] = None) -> Settings:
    """
    Build ``Settings`` from the process environment.

    Args:
        db_path: Override the SQLite file location (tests, CLI flags).

    Returns:
        Settings: Frozen configuration with defaults applied.
    """
    concurrency = _int_env("SYNC_CONCURRENCY", 1)
    clamped = max(_MIN_CONCURRENCY, min(_MAX_CONCURRENCY, concurrency))
    if clamped != concurrency:
        logger.warning(
            "config: SYNC_CONCURRENCY=%d outside [%d, %d]; clamped to %d.",
            concurrency, _MIN_CONCURRENCY, _MAX_CONCURRENCY, clamped,
        )

    roles_raw = os.getenv("OPERATOR_ROLES", "clinician,doctor,admin")
    roles = tuple(r.strip().lower() for r in roles_raw.split(",") if r.strip())

    env_db = os.getenv("CHARTSYNC_DB_PATH", "").strip()
    origins = tuple(o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip())

    return Settings(
        emr_provider=os.getenv("EMR_PROVIDER", "drchrono").strip() or "drchrono",
        emr_api_base=os.getenv("EMR_API_BASE", "https://app.drchrono.com/api").rstrip("/"),
        emr_authorize_url=os.getenv("EMR_AUTHORIZE_URL", "https://drchrono.com/o/authorize/"),
        emr_token_url=os.getenv("EMR_TOKEN_URL", "https://drchrono.com/o/token/"),
        emr_client_id=os.getenv("EMR_CLIENT_ID", ""),
        emr_client_secret=os.getenv("EMR_CLIENT_SECRET", ""),
        emr_redirect_uri=os.getenv("EMR_REDIRECT_URI", ""),
        emr_scopes=os.getenv("EMR_SCOPES", _DEFAULT_SCOPES),
        emr_sync_principal=os.getenv("EMR_SYNC_PRINCIPAL", "").strip(),
        cron_secret=os.getenv("CRON_SECRET", "").strip(),
        db_path=db_path or (Path(env_db) if env_db else _DEFAULT_DB_PATH),
        page_delay_s=_float_env("EMR_PAGE_DELAY_S", 0.2),
        max_pages=_int_env("EMR_MAX_PAGES", 100),
        sync_concurrency=clamped,
        sync_time_budget_s=_float_env("SYNC_TIME_BUDGET_S", 270.0),
        token_refresh_buffer_s=_int_env("TOKEN_REFRESH_BUFFER_S", 300),
        http_timeout_s=_float_env("EMR_HTTP_TIMEOUT_S", 30.0),
        identity_userinfo_url=os.getenv("IDENTITY_USERINFO_URL", "").strip(),
        operator_roles=roles or ("clinician", "doctor", "admin"),
        cors_origins=origins,
    )
