"""
main.py
-------
ChartSync — EMR Sync & Audited Records — FastAPI server
-------------------------------------------------------
HTTP surface over the sync engine and the audited medication service.
``create_app()`` builds every component once (settings, shared
``httpx.AsyncClient``, TokenManager, SyncOrchestrator, AuditedRecordService,
IdentityProvider) and hangs them on ``app.state``; handlers only read from
there.

Callers authenticate with ``Authorization: Bearer <identity-provider token>``;
the scheduler authenticates with ``Authorization: Bearer <CRON_SECRET>``.

Endpoints:
    GET      /health                          — Service health check
    GET      /emr/authorize                   — 307 to the EMR consent page (JSON with redirect=false)
    GET      /emr/callback?code&state         — OAuth code exchange
    POST     /emr/disconnect                  — Delete the caller's EMR credential
    GET      /emr/status                      — Token health, recent sync runs, record counts
    GET      /emr/records/{entity_type}       — Replicated payloads, optionally per patient
    POST     /emr/sync-all                    — Operator-triggered full sync
    GET|POST /emr/cron-sync                   — Scheduler-triggered full sync
    GET|POST /emr/token-keepalive             — Scheduler-triggered token refresh + validation
    GET      /medications?patient_id=         — A patient's medications
    POST     /medications                     — Create (audited)
    GET      /medications/{id}                — Read one
    PATCH    /medications/{id}                — Partial update (audited)
    POST     /medications/{id}/discontinue    — Discontinue with reason (audited)
    DELETE   /medications/{id}                — Soft delete (audited)
    GET      /medications/{id}/history        — Audit trail, oldest first

Project: ChartSync — EMR Sync & Audited Records
"""

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from dotenv import load_dotenv
from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

import database
from clinical_records import AuditedRecordService
from config import Settings, load_settings
from emr_client import build_http_client
from entity_catalog import ENTITY_CATALOG
from errors import (
    ExchangeFailed,
    MissingCredentials,
    NotFound,
    ReauthorizationRequired,
    TransportError,
    ValidationError,
)
from identity import Actor, IdentityProvider
from schemas import SyncReport
from sync_orchestrator import SyncOrchestrator
from token_manager import TokenManager

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "ChartSync EMR Sync & Audited Records"

_CATALOG_NAMES = frozenset(entity.name for entity in ENTITY_CATALOG)


# ── Request models ─────────────────────────────────────────────────────────────

class DiscontinueRequest(BaseModel):
    """Request body for POST /medications/{id}/discontinue."""
    reason: str = ""


# ── Helpers ────────────────────────────────────────────────────────────────────

def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.strip().lower().startswith("bearer "):
        return None
    return authorization.strip()[7:].strip() or None


def _client_ip(request: Request) -> Optional[str]:
    """Caller IP for the audit trail: first X-Forwarded-For hop, X-Real-IP, then the socket."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def _require_cron_secret(request: Request, authorization: Optional[str]) -> None:
    """501 when CRON_SECRET is unset, 401 when the bearer secret does not match."""
    secret = request.app.state.settings.cron_secret
    if not secret:
        raise HTTPException(status_code=501, detail="Scheduler endpoints not configured (CRON_SECRET not set).")
    token = _bearer(authorization)
    if not token or not hmac.compare_digest(token.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized.")


def _sync_response(report: SyncReport) -> JSONResponse:
    """200 for success/partial; 502 when nothing synced, with a hint on rejected credentials."""
    body: Dict[str, Any] = report.model_dump()
    status_code = 200
    if report.overall_status == "failed":
        status_code = 502
        if report.reauthorization_required:
            body["hint"] = ReauthorizationRequired.hint
    return JSONResponse(status_code=status_code, content=body)


# ── Dependencies ───────────────────────────────────────────────────────────────

async def current_actor(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Actor:
    """
    Resolve the caller through the identity provider.

    Raises:
        HTTPException 401: missing, malformed or rejected bearer token.
        HTTPException 503: identity provider unreachable.
    """
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized: missing or invalid Authorization header.")
    try:
        actor = await request.app.state.identity.get_user(token)
    except TransportError as exc:
        logger.error("main: identity provider unreachable — %s", exc)
        raise HTTPException(status_code=503, detail="Identity provider unavailable.")
    if actor is None:
        raise HTTPException(status_code=401, detail="Unauthorized.")
    return actor


async def operator_actor(request: Request, actor: Actor = Depends(current_actor)) -> Actor:
    """Require one of the configured operator roles (clinician/admin by default)."""
    roles = request.app.state.settings.operator_roles
    if not actor.has_role(*roles):
        raise HTTPException(status_code=403, detail="Forbidden: clinician or admin role required.")
    return actor


def _medications(request: Request) -> AuditedRecordService:
    return request.app.state.medications


# ── Routes ─────────────────────────────────────────────────────────────────────

router = APIRouter()


@router.get("/health")
def health_check() -> dict:
    """
    Return service health status.

    Returns:
        dict: service, version, status, timestamp.
    """
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── EMR connection ─────────────────────────────────────────────────────────────

@router.get("/emr/authorize")
def emr_authorize(
    request: Request,
    redirect: bool = Query(True),
    actor: Actor = Depends(current_actor),
):
    """
    Send the clinician to the EMR consent page.

    A browser navigation cannot carry the bearer header, so UIs call this
    with ``redirect=false`` and navigate to the returned
    ``authorization_url`` themselves.

    Raises:
        HTTPException 503: OAuth client id/secret/redirect URI not configured.
    """
    tokens: TokenManager = request.app.state.tokens
    try:
        url = tokens.begin_authorization(actor.principal_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if not redirect:
        return {"authorization_url": url}
    return RedirectResponse(url=url, status_code=307)


@router.get("/emr/callback")
async def emr_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
) -> dict:
    """
    Complete the OAuth flow: verify ``state``, exchange ``code``, store tokens.

    Raises:
        HTTPException 400: provider denied consent, bad state, or rejected code.
        HTTPException 502: token endpoint unreachable.
    """
    tokens: TokenManager = request.app.state.tokens
    if error:
        raise HTTPException(
            status_code=400,
            detail={"error": f"Authorization denied by provider: {error}", "reauthorization_required": True},
        )
    if not code or not state:
        raise HTTPException(
            status_code=400,
            detail={"error": "Missing code or state.", "reauthorization_required": True},
        )

    try:
        principal_id = tokens.verify_state(state)
        credential = await tokens.complete_authorization(code, principal_id)
    except ExchangeFailed as exc:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Authorization code exchange failed.",
                "provider_status": exc.status_code,
                "provider_body": exc.body[:500],
                "reauthorization_required": True,
            },
        )
    except MissingCredentials as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": str(exc), "reauthorization_required": True},
        )
    except TransportError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    return {
        "connected": True,
        "provider": credential.provider,
        "principal_id": credential.principal_id,
        "expires_at": credential.expires_at,
    }


@router.post("/emr/disconnect")
async def emr_disconnect(request: Request, actor: Actor = Depends(current_actor)) -> dict:
    """Delete the caller's EMR credential. Idempotent."""
    removed = await request.app.state.tokens.disconnect(actor.principal_id)
    return {"disconnected": True, "removed": removed}


@router.get("/emr/status")
async def emr_status(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(current_actor),
) -> dict:
    """
    Token health for the caller and the sync principal, recent sync runs,
    and replicated record counts per entity.
    """
    tokens: TokenManager = request.app.state.tokens
    db_path = request.app.state.settings.db_path
    sync_principal = await tokens.default_principal()
    return {
        "provider": tokens.provider,
        "principal_id": actor.principal_id,
        "token_status": await tokens.token_status(actor.principal_id),
        "sync_principal": sync_principal,
        "sync_token_status": (
            await tokens.token_status(sync_principal) if sync_principal else "missing"
        ),
        "recent_runs": await asyncio.to_thread(database.get_recent_sync_runs, db_path, limit),
        "record_counts": await asyncio.to_thread(database.get_emr_record_counts, db_path),
    }


@router.get("/emr/records/{entity_type}")
async def emr_records(
    entity_type: str,
    request: Request,
    patient_id: Optional[str] = Query(None),
    actor: Actor = Depends(current_actor),
) -> dict:
    """
    Replicated EMR payloads for one entity type, optionally for one patient.

    Raises:
        HTTPException 404: entity type is not part of the sync catalog.
    """
    if entity_type not in _CATALOG_NAMES:
        raise HTTPException(status_code=404, detail=f"Unknown entity type '{entity_type}'.")
    records = await asyncio.to_thread(
        database.get_emr_records,
        entity_type,
        request.app.state.settings.db_path,
        (patient_id or "").strip() or None,
    )
    return {"entity_type": entity_type, "data": records}


# ── Sync triggers ──────────────────────────────────────────────────────────────

@router.post("/emr/sync-all")
async def emr_sync_all(request: Request, actor: Actor = Depends(operator_actor)) -> JSONResponse:
    """Operator-triggered full resynchronization."""
    logger.info("main: operator sync requested by %s.", actor.principal_id)
    report = await request.app.state.orchestrator.sync_all(trigger="operator")
    return _sync_response(report)


@router.api_route("/emr/cron-sync", methods=["GET", "POST"])
async def emr_cron_sync(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> JSONResponse:
    """
    Scheduler-triggered full resynchronization.

    Raises:
        HTTPException 501: CRON_SECRET not configured.
        HTTPException 401: missing or wrong secret.
    """
    _require_cron_secret(request, authorization)
    report = await request.app.state.orchestrator.sync_all(trigger="cron")
    return _sync_response(report)


@router.api_route("/emr/token-keepalive", methods=["GET", "POST"])
async def emr_token_keepalive(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> JSONResponse:
    """
    Scheduler-triggered refresh of the sync principal's token.

    Raises:
        HTTPException 501: CRON_SECRET not configured.
        HTTPException 401: missing or wrong secret.
    """
    _require_cron_secret(request, authorization)
    tokens: TokenManager = request.app.state.tokens
    principal_id = await tokens.default_principal()
    if not principal_id:
        return JSONResponse(status_code=502, content={
            "status": "reauthorization_required",
            "error": "No EMR credential on file.",
            "reauthorization_required": True,
            "hint": ReauthorizationRequired.hint,
        })
    try:
        result = await tokens.keepalive(principal_id)
    except ReauthorizationRequired as exc:
        logger.error("main: keepalive failed for principal=%s — %s", principal_id, exc)
        return JSONResponse(status_code=502, content={
            "status": "reauthorization_required",
            "principal_id": principal_id,
            "error": str(exc),
            "reauthorization_required": True,
            "hint": exc.hint,
        })
    except TransportError as exc:
        logger.error("main: keepalive could not reach the token endpoint — %s", exc)
        return JSONResponse(status_code=502, content={
            "status": "error",
            "principal_id": principal_id,
            "error": str(exc),
            "reauthorization_required": False,
        })
    return JSONResponse(status_code=200, content=result)


# ── Medications ────────────────────────────────────────────────────────────────

@router.get("/medications")
def list_medications(
    patient_id: str = Query(..., min_length=1),
    actor: Actor = Depends(current_actor),
    service: AuditedRecordService = Depends(_medications),
) -> dict:
    """Non-deleted medications for one patient, newest first."""
    try:
        return {"data": service.list_for_patient(patient_id)}
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/medications", status_code=201)
def create_medication(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    actor: Actor = Depends(current_actor),
    service: AuditedRecordService = Depends(_medications),
) -> dict:
    """Create a medication and its ``create`` audit entry."""
    try:
        record = service.create(payload, actor, ip_address=_client_ip(request))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail={"error": str(exc), "fields": exc.errors})
    return {"data": record}


@router.get("/medications/{medication_id}")
def get_medication(
    medication_id: str,
    actor: Actor = Depends(current_actor),
    service: AuditedRecordService = Depends(_medications),
) -> dict:
    try:
        return {"data": service.get(medication_id)}
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.patch("/medications/{medication_id}")
def update_medication(
    medication_id: str,
    request: Request,
    payload: Dict[str, Any] = Body(...),
    actor: Actor = Depends(current_actor),
    service: AuditedRecordService = Depends(_medications),
) -> dict:
    """Apply a partial update; only changed fields are audited."""
    try:
        record = service.update(medication_id, payload, actor, ip_address=_client_ip(request))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail={"error": str(exc), "fields": exc.errors})
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"data": record}


@router.post("/medications/{medication_id}/discontinue")
def discontinue_medication(
    medication_id: str,
    request: Request,
    body: DiscontinueRequest,
    actor: Actor = Depends(current_actor),
    service: AuditedRecordService = Depends(_medications),
) -> dict:
    try:
        record = service.discontinue(
            medication_id, body.reason, actor, ip_address=_client_ip(request)
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"data": record}


@router.delete("/medications/{medication_id}")
def delete_medication(
    medication_id: str,
    request: Request,
    actor: Actor = Depends(current_actor),
    service: AuditedRecordService = Depends(_medications),
) -> dict:
    """Soft delete; the record keeps its history."""
    try:
        service.delete(medication_id, actor, ip_address=_client_ip(request))
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"success": True}


@router.get("/medications/{medication_id}/history")
def medication_history(
    medication_id: str,
    actor: Actor = Depends(current_actor),
    service: AuditedRecordService = Depends(_medications),
) -> dict:
    try:
        return {"data": service.history(medication_id)}
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))


# ── App factory ────────────────────────────────────────────────────────────────

async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed bodies and query strings are caller errors like any other.
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def create_app(
    settings: Optional[Settings] = None,
    *,
    identity: Optional[Any] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> FastAPI:
    """
    Build the FastAPI app and wire every component at startup.

    Args:
        settings:  Process settings (defaults to ``load_settings()``).
        identity:  Object with ``async get_user(token) -> Actor | None``;
                   defaults to the userinfo-backed ``IdentityProvider``.
        transport: httpx transport for outbound calls (tests pass
                   ``httpx.MockTransport``).
        sleep:     Inter-page sleep handed to the orchestrator.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # init_db is idempotent; it runs on every startup.
        database.init_db(settings.db_path)
        http = build_http_client(settings, transport)
        tokens = TokenManager(settings, http)
        app.state.settings = settings
        app.state.http = http
        app.state.tokens = tokens
        app.state.orchestrator = SyncOrchestrator(settings, tokens, http, sleep=sleep)
        app.state.medications = AuditedRecordService(settings.db_path)
        app.state.identity = identity or IdentityProvider(settings.identity_userinfo_url, http)
        logger.info("main: %s %s ready (db=%s).", SERVICE_NAME, VERSION, settings.db_path)
        try:
            yield
        finally:
            await http.aclose()

    app = FastAPI(
        title=SERVICE_NAME,
        version=VERSION,
        description="EMR synchronization and audited clinical records.",
        lifespan=lifespan,
    )
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.include_router(router)
    return app


app = create_app()
