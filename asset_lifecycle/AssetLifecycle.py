import os
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

load_dotenv()

from db.deps import get_asset_db
from db.session import SessionLocalAsset
from models import directory_models  # noqa: F401  registers Users for foreign keys
from schemas.assets import (
    AssetLossDeleteRequest,
    AssetLossRequest,
    BookInRequest,
    BookOutRequest,
    DailyResetRequest,
    MarkFoundRequest,
    ResetAgentRequest,
    ResolveIncidentRequest,
    SchedulerTriggerRequest,
)
from services.asset_errors import AssetLifecycleError
from services.daily_reset_service import get_reset_status, perform_daily_reset
from services.daily_state_service import (
    book_in,
    book_out,
    delete_asset_loss_record,
    get_state_audit_for_user,
    get_states_for_date,
    get_states_for_user_and_date,
    get_unreturned_assets,
    has_unreturned_assets,
    list_asset_loss_records,
    mark_found,
    report_asset_loss,
    reset_agent_day,
    serialize_daily_state,
    serialize_loss_record,
    serialize_state_audit,
)
from services.incident_service import list_incidents, resolve_incident, serialize_incident
from services.notification_service import list_pending_notifications, serialize_notification
from services.scheduler_service import DailyResetScheduler
from services.snapshot_service import get_historical_records, serialize_historical_record
from services.user_access_service import get_session, remove_session
from services.user_directory_service import MANAGEMENT_ROLES


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


logging.basicConfig(
    level=(os.environ.get("ASSET_LIFECYCLE_LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
API_LOGGER = logging.getLogger("asset_lifecycle.api")

DAILY_RESET_SCHEDULER_ENABLED = _env_flag("DAILY_RESET_SCHEDULER_ENABLED", "true")
DAILY_RESET_HOUR = int(os.environ.get("DAILY_RESET_HOUR") or "1")
DAILY_RESET_CHECK_INTERVAL_SECONDS = int(os.environ.get("DAILY_RESET_CHECK_INTERVAL_SECONDS") or "3600")

RESET_OPERATOR_ROLES = {"admin", "hr"}
ASSET_LOSS_ROLES = {"admin", "hr", "team_leader"}

daily_reset_scheduler = DailyResetScheduler(
    SessionLocalAsset,
    check_interval_seconds=DAILY_RESET_CHECK_INTERVAL_SECONDS,
    reset_hour=DAILY_RESET_HOUR,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if DAILY_RESET_SCHEDULER_ENABLED:
        daily_reset_scheduler.start()
    try:
        yield
    finally:
        daily_reset_scheduler.stop()


app = FastAPI(lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env("CORS_ALLOW_ORIGINS", "http://127.0.0.1,http://localhost")
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="asset_lifecycle_session",
    same_site="lax",
    https_only=False,
)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_asset_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    session = _require_session_or_401(request, x_session_token)
    return {"user": session}


@app.post("/api/assets/book-in")
def book_in_asset(
    request: Request,
    payload: BookInRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    try:
        row = book_in(db, payload.userId, payload.assetType, payload.date, payload.status, payload.reason, session["userID"])
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc
    return serialize_daily_state(row)


@app.post("/api/assets/book-out")
def book_out_asset(
    request: Request,
    payload: BookOutRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    try:
        row = book_out(db, payload.userId, payload.assetType, payload.date, payload.status, payload.reason, session["userID"])
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc
    return serialize_daily_state(row)


@app.post("/api/assets/mark-found")
def mark_asset_found(
    request: Request,
    payload: MarkFoundRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    try:
        row = mark_found(db, payload.userId, payload.assetType, payload.date, payload.recoveryReason, session["userID"])
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc
    return serialize_daily_state(row)


@app.post("/api/assets/reset-agent")
def reset_agent_assets(
    request: Request,
    payload: ResetAgentRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_roles_or_403(request, x_session_token, {"team_leader"}, detail="Forbidden - Team leaders only")
    try:
        return reset_agent_day(db, payload.agentId, payload.date or date.today(), session["userID"], payload.password)
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc


@app.post("/api/assets/daily-reset")
def run_daily_reset(
    request: Request,
    payload: DailyResetRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_roles_or_403(request, x_session_token, RESET_OPERATOR_ROLES)
    try:
        result = perform_daily_reset(db, payload.date, session["userID"])
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc
    API_LOGGER.info("Manual daily reset date=%s by=%s skipped=%s", payload.date, session["userID"], result["skipped"])
    return result


@app.post("/api/assets/daily-reset/auto")
def run_automatic_daily_reset(
    request: Request,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_roles_or_403(request, x_session_token, {"admin"})
    today = date.today()
    try:
        result = perform_daily_reset(db, today, session["userID"])
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc
    return {**result, "automated": True, "processedDate": today.isoformat()}


@app.get("/api/assets/daily-reset/status/{target_date}")
def daily_reset_status(
    target_date: date,
    request: Request,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    return get_reset_status(db, target_date)


@app.get("/api/assets/daily-reset/scheduler/status")
def daily_reset_scheduler_status(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    _require_roles_or_403(request, x_session_token, RESET_OPERATOR_ROLES)
    return daily_reset_scheduler.get_status()


@app.post("/api/assets/daily-reset/scheduler/trigger")
def trigger_daily_reset(
    request: Request,
    payload: SchedulerTriggerRequest | None = None,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_roles_or_403(request, x_session_token, RESET_OPERATOR_ROLES)
    target_date = payload.date if payload else None
    try:
        result = daily_reset_scheduler.trigger_manual_reset(target_date, performed_by=session["userID"])
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc
    return {**result, "triggeredBy": session.get("username") or session["userID"], "triggeredAt": datetime.now().isoformat()}


@app.get("/api/assets/state-audit/{user_id}")
def asset_state_audit(
    user_id: str,
    request: Request,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_self_or_roles(request, x_session_token, user_id, MANAGEMENT_ROLES)
    return [serialize_state_audit(row) for row in get_state_audit_for_user(db, user_id)]


@app.get("/api/assets/unreturned")
def unreturned_assets(
    request: Request,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    return get_unreturned_assets(db)


@app.get("/api/assets/unreturned/user/{user_id}")
def user_has_unreturned_assets(
    user_id: str,
    request: Request,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_self_or_roles(request, x_session_token, user_id, MANAGEMENT_ROLES)
    return {"hasUnreturnedAssets": has_unreturned_assets(db, user_id)}


@app.get("/api/assets/daily-states/{target_date}")
def daily_states_for_date(
    target_date: date,
    request: Request,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    return [serialize_daily_state(row) for row in get_states_for_date(db, target_date)]


@app.get("/api/assets/daily-states/user/{user_id}/date/{target_date}")
def daily_states_for_user(
    user_id: str,
    target_date: date,
    request: Request,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_self_or_roles(request, x_session_token, user_id, MANAGEMENT_ROLES)
    return [serialize_daily_state(row) for row in get_states_for_user_and_date(db, user_id, target_date)]


@app.get("/api/asset-loss")
def get_asset_loss_records(
    request: Request,
    target_date: date | None = Query(None, alias="date"),
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_roles_or_403(request, x_session_token, ASSET_LOSS_ROLES)
    return [serialize_loss_record(row) for row in list_asset_loss_records(db, target_date)]


@app.post("/api/asset-loss")
def create_asset_loss_record(
    request: Request,
    payload: AssetLossRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_roles_or_403(request, x_session_token, ASSET_LOSS_ROLES)
    try:
        record = report_asset_loss(db, payload.userId, payload.assetType, payload.dateLost, payload.reason, session["userID"])
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc
    return serialize_loss_record(record)


@app.delete("/api/asset-loss")
def remove_asset_loss_record(
    request: Request,
    payload: AssetLossDeleteRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_roles_or_403(request, x_session_token, ASSET_LOSS_ROLES)
    try:
        removed = delete_asset_loss_record(db, payload.userId, payload.assetType, payload.date)
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc
    return {"success": True, "removed": removed}


@app.get("/api/assets/incidents")
def get_asset_incidents(
    request: Request,
    user_id: str | None = Query(None, alias="userId"),
    status: str | None = Query(None),
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    try:
        return [serialize_incident(row) for row in list_incidents(db, user_id=user_id, status=status)]
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc


@app.post("/api/assets/incidents/{incident_id}/resolve")
def resolve_asset_incident(
    incident_id: str,
    request: Request,
    payload: ResolveIncidentRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    try:
        incident = resolve_incident(db, incident_id, payload.resolution, session["userID"])
    except AssetLifecycleError as exc:
        raise _http_error(exc) from exc
    API_LOGGER.info("Incident resolved incident_id=%s by=%s", incident_id, session["userID"])
    return serialize_incident(incident)


@app.get("/api/historical-asset-records")
def historical_asset_records(
    request: Request,
    target_date: date | None = Query(None, alias="date"),
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    return [serialize_historical_record(row) for row in get_historical_records(db, target_date)]


@app.get("/api/notifications/pending")
def get_pending_notifications(
    request: Request,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_roles_or_403(request, x_session_token, MANAGEMENT_ROLES)
    return [serialize_notification(row) for row in list_pending_notifications(db)]


def _http_error(exc: AssetLifecycleError) -> HTTPException:
    if exc.status_code >= 500:
        API_LOGGER.error("Request failed: %s", exc)
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    token = session_token or request.session.get("sessionToken")
    session = get_session(token)
    if not session:
        return None
    # The cookie only remembers the token, so revocation applies to both paths.
    request.session["sessionToken"] = token
    return session


def _require_session_or_401(request: Request, session_token: str | None) -> dict:
    session = _get_active_session(request, session_token)
    if not session or not session.get("userID"):
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _require_roles_or_403(request: Request, session_token: str | None, roles: set[str], detail: str = "Forbidden") -> dict:
    session = _require_session_or_401(request, session_token)
    role = str(session.get("role") or "").strip().lower()
    if role not in roles:
        API_LOGGER.warning("Forbidden user_id=%s role=%s path=%s", session.get("userID"), role, request.url.path)
        raise HTTPException(status_code=403, detail=detail)
    return session


def _require_self_or_roles(request: Request, session_token: str | None, user_id: str, roles: set[str]) -> dict:
    session = _require_session_or_401(request, session_token)
    if str(session.get("userID")) == str(user_id):
        return session
    return _require_roles_or_403(request, session_token, roles)
