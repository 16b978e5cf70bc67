from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.asset_models import AssetDailyState, AssetIncident, AuditLog
from services.asset_errors import PersistenceError, ValidationError
from services.incident_service import add_incident, find_open_incident
from services.notification_service import ASSET_NOT_RETURNED, enqueue_asset_notification
from services.transition_rules import AssetState, parse_state


LOGGER = logging.getLogger("asset_lifecycle.daily_reset")

RUN_MARKER_ENTITY = "DailyReset"
RUN_MARKER_ACTION = "DailyResetCompleted"

ACTION_FLAG_UNRETURNED = "auto_flag_unreturned"
ACTION_CARRY_FORWARD = "carry_forward_open_issue"
ACTION_ERROR = "error"


def _as_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValidationError("Date must be in YYYY-MM-DD format") from exc


def _run_marker(db: Session, date_key: str) -> AuditLog | None:
    return db.execute(
        select(AuditLog)
        .where(AuditLog.EntityType == RUN_MARKER_ENTITY)
        .where(AuditLog.EntityID == date_key)
        .where(AuditLog.Action == RUN_MARKER_ACTION)
    ).scalars().first()


def is_reset_performed(db: Session, target_date: date | str) -> bool:
    return _run_marker(db, _as_date(target_date).isoformat()) is not None


def _flag_unreturned(db: Session, row: AssetDailyState, previous_key: str, performed_by: str) -> tuple[str, bool]:
    agent_name = row.AgentName or row.UserID
    existing = db.execute(
        select(AssetIncident.IncidentID)
        .where(AssetIncident.UserID == row.UserID)
        .where(AssetIncident.AssetType == row.AssetType)
        .where(AssetIncident.IncidentType == "not_returned")
        .where(AssetIncident.Source == "daily_reset")
        .where(AssetIncident.SourceDate == previous_key)
    ).first()
    if existing:
        return "Unreturned asset already flagged for this date", False
    add_incident(
        db,
        user_id=row.UserID,
        asset_type=row.AssetType,
        incident_type="not_returned",
        description=(
            f"{agent_name} collected the {row.AssetType} on {previous_key} but it was not booked out. "
            "Automatically flagged as not returned during daily reset."
        ),
        reported_by=performed_by,
        source="daily_reset",
        source_date=previous_key,
    )
    enqueue_asset_notification(db, row, ASSET_NOT_RETURNED, performed_by)
    return "Asset was collected but not returned on the previous day", True


def _carry_forward(db: Session, row: AssetDailyState, state: AssetState, previous_key: str, performed_by: str) -> tuple[str, bool]:
    incident_type = state.value
    if find_open_incident(db, row.UserID, row.AssetType, {incident_type}):
        return f"Open {incident_type} incident already tracked", False
    add_incident(
        db,
        user_id=row.UserID,
        asset_type=row.AssetType,
        incident_type=incident_type,
        description=(
            f"{row.AgentName or row.UserID}'s {row.AssetType} was still {incident_type} at the end of {previous_key}. "
            "Carried forward until the asset is marked found."
        ),
        reported_by=performed_by,
        source="daily_reset",
        source_date=previous_key,
    )
    return f"Carried forward {incident_type} state from previous day", True


def perform_daily_reset(db: Session, target_date: date | str, performed_by: str) -> dict[str, Any]:
    day = _as_date(target_date)
    date_key = day.isoformat()
    previous_key = (day - timedelta(days=1)).isoformat()

    if is_reset_performed(db, day):
        LOGGER.info("Daily reset already performed for date=%s, skipping", date_key)
        return {
            "message": f"Daily reset already performed for {date_key}",
            "date": date_key,
            "previousDate": previous_key,
            "resetCount": 0,
            "incidentsCreated": 0,
            "details": [],
            "skipped": True,
        }

    rows = db.execute(
        select(AssetDailyState)
        .where(AssetDailyState.Date == previous_key)
        .order_by(AssetDailyState.UserID, AssetDailyState.AssetType)
    ).scalars().all()

    details: list[dict[str, Any]] = []
    reset_count = 0
    incidents_created = 0
    for row in rows:
        user_id, asset_type, agent_name, raw_state = row.UserID, row.AssetType, row.AgentName or row.UserID, row.CurrentState
        try:
            state = parse_state(raw_state)
            if state == AssetState.COLLECTED:
                action = ACTION_FLAG_UNRETURNED
                reason, created = _flag_unreturned(db, row, previous_key, performed_by)
            elif state in {AssetState.NOT_RETURNED, AssetState.LOST}:
                action = ACTION_CARRY_FORWARD
                reason, created = _carry_forward(db, row, state, previous_key, performed_by)
            else:
                continue
            db.commit()
        except Exception as exc:
            db.rollback()
            LOGGER.exception(
                "Daily reset failed for user_id=%s asset_type=%s date=%s",
                user_id,
                asset_type,
                previous_key,
            )
            details.append(
                {
                    "userId": user_id,
                    "agentName": agent_name,
                    "assetType": asset_type,
                    "action": ACTION_ERROR,
                    "previousState": raw_state,
                    "reason": str(exc) or exc.__class__.__name__,
                }
            )
            continue

        reset_count += 1
        if created:
            incidents_created += 1
        details.append(
            {
                "userId": user_id,
                "agentName": agent_name,
                "assetType": asset_type,
                "action": action,
                "previousState": state.value,
                "reason": reason,
            }
        )

    db.add(
        AuditLog(
            EntityType=RUN_MARKER_ENTITY,
            EntityID=date_key,
            Action=RUN_MARKER_ACTION,
            Details=json.dumps(
                {
                    "previousDate": previous_key,
                    "resetCount": reset_count,
                    "incidentsCreated": incidents_created,
                    "errors": sum(1 for item in details if item["action"] == ACTION_ERROR),
                },
                ensure_ascii=True,
            ),
            UserID=performed_by,
            CreatedAt=datetime.now(),
        )
    )
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        LOGGER.exception("Could not record daily reset marker for date=%s", date_key)
        raise PersistenceError(f"Daily reset for {date_key} ran but could not be recorded.") from exc

    LOGGER.info(
        "Daily reset completed date=%s previous_date=%s reset_count=%s incidents_created=%s",
        date_key,
        previous_key,
        reset_count,
        incidents_created,
    )
    return {
        "message": f"Daily reset completed for {date_key}",
        "date": date_key,
        "previousDate": previous_key,
        "resetCount": reset_count,
        "incidentsCreated": incidents_created,
        "details": details,
        "skipped": False,
    }


def get_reset_status(db: Session, target_date: date | str) -> dict[str, Any]:
    day = _as_date(target_date)
    date_key = day.isoformat()
    breakdown_rows = db.execute(
        select(AssetDailyState.CurrentState, func.count(AssetDailyState.StateID))
        .where(AssetDailyState.Date == date_key)
        .group_by(AssetDailyState.CurrentState)
    ).all()
    breakdown = {str(state): int(count) for state, count in breakdown_rows}
    last_activity = db.execute(
        select(func.max(AssetDailyState.UpdatedAt)).where(AssetDailyState.Date == date_key)
    ).scalar()
    return {
        "date": date_key,
        "resetPerformed": is_reset_performed(db, day),
        "totalStates": sum(breakdown.values()),
        "stateBreakdown": breakdown,
        "lastActivity": last_activity,
    }
