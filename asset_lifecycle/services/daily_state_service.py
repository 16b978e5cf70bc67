from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models.asset_models import AssetDailyState, AssetLossRecord, AssetStateAudit
from models.directory_models import User
from services.asset_errors import AuthorizationError, NotFoundError, ReauthenticationError, ValidationError
from services.incident_service import add_incident, resolve_open_incidents
from services.notification_service import ASSET_LOST, ASSET_NOT_RETURNED, enqueue_asset_notification
from services.persistence import commit_or_raise
from services.snapshot_service import safe_sync_historical_record
from services.transition_rules import (
    AssetState,
    clears_loss_record,
    parse_asset_type,
    parse_state,
    validate_book_in,
    validate_book_out,
    validate_mark_found,
)
from services.user_directory_service import (
    display_name,
    get_display_names,
    get_teams_led_by,
    get_user,
    is_agent_in_leader_team,
    verify_password,
)


LOGGER = logging.getLogger("asset_lifecycle.daily_state")

UNRESOLVED_INCIDENT_TYPES = {"lost", "not_returned"}


def date_key(value: date | str) -> str:
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError as exc:
        raise ValidationError("Date must be in YYYY-MM-DD format") from exc


def _commit(db: Session, action: str) -> None:
    commit_or_raise(db, action, LOGGER)


def _require_user(db: Session, user_id: str) -> User:
    user = get_user(db, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    return user


def _get_state_row(db: Session, user_id: str, asset_type: str, key: str) -> AssetDailyState | None:
    return db.execute(
        select(AssetDailyState)
        .where(AssetDailyState.UserID == user_id)
        .where(AssetDailyState.Date == key)
        .where(AssetDailyState.AssetType == asset_type)
    ).scalars().first()


def _write_state(
    db: Session,
    *,
    user: User,
    asset_type: str,
    key: str,
    existing: AssetDailyState | None,
    new_state: AssetState,
    reason: str | None,
    audit_reason: str,
    actor_id: str,
) -> AssetDailyState:
    now = datetime.now()
    previous = parse_state(existing.CurrentState if existing else None)
    row = existing
    if row is None:
        row = AssetDailyState(
            StateID=str(uuid.uuid4()),
            UserID=user.UserID,
            Date=key,
            AssetType=asset_type,
            CreatedAt=now,
        )
        db.add(row)
    row.CurrentState = new_state.value
    row.ConfirmedBy = actor_id
    row.ConfirmedAt = now
    row.Reason = reason
    row.AgentName = display_name(user)
    row.UpdatedAt = now

    db.add(
        AssetStateAudit(
            DailyStateID=row.StateID,
            UserID=user.UserID,
            AssetType=asset_type,
            PreviousState=previous.value,
            NewState=new_state.value,
            Reason=audit_reason,
            ChangedBy=actor_id,
            ChangedAt=now,
        )
    )
    return row


def _delete_loss_record(db: Session, user_id: str, asset_type: str, key: str) -> int:
    result = db.execute(
        delete(AssetLossRecord)
        .where(AssetLossRecord.UserID == user_id)
        .where(AssetLossRecord.AssetType == asset_type)
        .where(AssetLossRecord.DateLost == date.fromisoformat(key))
    )
    return int(result.rowcount or 0)


def _record_loss(db: Session, user_id: str, asset_type: str, key: str, reason: str, actor_id: str) -> AssetLossRecord:
    lost_on = date.fromisoformat(key)
    record = db.execute(
        select(AssetLossRecord)
        .where(AssetLossRecord.UserID == user_id)
        .where(AssetLossRecord.AssetType == asset_type)
        .where(AssetLossRecord.DateLost == lost_on)
    ).scalars().first()
    now = datetime.now()
    if not record:
        record = AssetLossRecord(UserID=user_id, AssetType=asset_type, DateLost=lost_on, CreatedAt=now)
        db.add(record)
    record.Reason = reason
    record.ReportedBy = actor_id
    record.Status = "reported"
    record.UpdatedAt = now
    return record


def book_in(
    db: Session,
    user_id: str,
    asset_type: str,
    target_date: date | str,
    status: str,
    reason: str | None,
    actor_id: str,
) -> AssetDailyState:
    kind = parse_asset_type(asset_type).value
    key = date_key(target_date)
    user = _require_user(db, user_id)

    existing = _get_state_row(db, user.UserID, kind, key)
    current = parse_state(existing.CurrentState if existing else None)
    try:
        target = validate_book_in(current, status)
    except ValidationError:
        LOGGER.warning("Book in rejected user_id=%s asset_type=%s date=%s current=%s", user.UserID, kind, key, current.value)
        raise

    row = _write_state(
        db,
        user=user,
        asset_type=kind,
        key=key,
        existing=existing,
        new_state=target,
        reason=reason or None,
        audit_reason=reason or f"Book in: {target.value}",
        actor_id=actor_id,
    )
    cleared = _delete_loss_record(db, user.UserID, kind, key) if clears_loss_record(target) else 0
    _commit(db, "book-in")
    LOGGER.info(
        "Book in user_id=%s asset_type=%s date=%s %s->%s loss_records_cleared=%s",
        user.UserID,
        kind,
        key,
        current.value,
        target.value,
        cleared,
    )
    safe_sync_historical_record(db, key)
    return row


def book_out(
    db: Session,
    user_id: str,
    asset_type: str,
    target_date: date | str,
    status: str,
    reason: str | None,
    actor_id: str,
) -> AssetDailyState:
    kind = parse_asset_type(asset_type).value
    key = date_key(target_date)
    user = _require_user(db, user_id)

    existing = _get_state_row(db, user.UserID, kind, key)
    current = parse_state(existing.CurrentState if existing else None)
    try:
        target = validate_book_out(current, status)
    except ValidationError:
        LOGGER.warning("Book out rejected user_id=%s asset_type=%s date=%s current=%s", user.UserID, kind, key, current.value)
        raise

    row = _write_state(
        db,
        user=user,
        asset_type=kind,
        key=key,
        existing=existing,
        new_state=target,
        reason=reason or None,
        audit_reason=reason or f"Book out: {target.value}",
        actor_id=actor_id,
    )
    if target == AssetState.LOST:
        _record_loss(db, user.UserID, kind, key, reason or "Reported lost at book out", actor_id)
        enqueue_asset_notification(db, row, ASSET_LOST, actor_id)
    elif target == AssetState.NOT_RETURNED:
        enqueue_asset_notification(db, row, ASSET_NOT_RETURNED, actor_id)
    elif clears_loss_record(target):
        _delete_loss_record(db, user.UserID, kind, key)
    _commit(db, "book-out")
    LOGGER.info("Book out user_id=%s asset_type=%s date=%s %s->%s", user.UserID, kind, key, current.value, target.value)
    safe_sync_historical_record(db, key)
    return row


def mark_found(
    db: Session,
    user_id: str,
    asset_type: str,
    target_date: date | str,
    recovery_reason: str,
    actor_id: str,
) -> AssetDailyState:
    kind = parse_asset_type(asset_type).value
    key = date_key(target_date)
    recovery = (recovery_reason or "").strip()
    if not recovery:
        raise ValidationError("Recovery reason is required")
    user = _require_user(db, user_id)

    existing = _get_state_row(db, user.UserID, kind, key)
    current = parse_state(existing.CurrentState if existing else None)
    target = validate_mark_found(current)

    row = _write_state(
        db,
        user=user,
        asset_type=kind,
        key=key,
        existing=existing,
        new_state=target,
        reason=f"Found: {recovery}",
        audit_reason=f"Asset found: {recovery}",
        actor_id=actor_id,
    )
    _delete_loss_record(db, user.UserID, kind, key)
    resolved = resolve_open_incidents(
        db,
        user.UserID,
        kind,
        UNRESOLVED_INCIDENT_TYPES,
        resolution=f"Asset found: {recovery}",
        resolved_by=actor_id,
    )
    _commit(db, "mark-found")
    LOGGER.info(
        "Mark found user_id=%s asset_type=%s date=%s %s->returned incidents_resolved=%s",
        user.UserID,
        kind,
        key,
        current.value,
        resolved,
    )
    safe_sync_historical_record(db, key)
    return row


def reset_agent_day(
    db: Session,
    agent_id: str,
    target_date: date | str,
    leader_id: str,
    password: str,
) -> dict[str, Any]:
    key = date_key(target_date)
    leader = get_user(db, leader_id)
    if not leader or (leader.Role or "").strip().lower() != "team_leader":
        raise AuthorizationError("Forbidden - Team leaders only")
    if not verify_password(db, leader.UserID, password):
        LOGGER.warning("Agent reset password re-check failed leader_id=%s", leader.UserID)
        raise ReauthenticationError("Invalid password")

    agent = get_user(db, agent_id)
    if not agent:
        raise NotFoundError("Agent not found")
    if not get_teams_led_by(db, leader.UserID):
        raise AuthorizationError("You are not assigned as a team leader")
    if not is_agent_in_leader_team(db, leader.UserID, agent.UserID):
        raise AuthorizationError("Agent is not in your team")

    rows = get_states_for_user_and_date(db, agent.UserID, key)
    wiped = [(row.StateID, row.AssetType, row.CurrentState) for row in rows]
    state_ids = [state_id for state_id, _, _ in wiped]
    if state_ids:
        db.execute(delete(AssetStateAudit).where(AssetStateAudit.DailyStateID.in_(state_ids)))
        db.execute(delete(AssetDailyState).where(AssetDailyState.StateID.in_(state_ids)))

    now = datetime.now()
    leader_name = leader.Username
    for _, kind, previous in wiped:
        db.add(
            AssetStateAudit(
                DailyStateID=None,
                UserID=agent.UserID,
                AssetType=kind,
                PreviousState=previous,
                NewState=AssetState.READY_FOR_COLLECTION.value,
                Reason=f"Asset records reset by team leader: {leader_name}",
                ChangedBy=leader.UserID,
                ChangedAt=now,
            )
        )
        add_incident(
            db,
            user_id=agent.UserID,
            asset_type=kind,
            incident_type="maintenance",
            description=f"Asset records reset by team leader: {leader_name}. Previous state was: {previous}",
            reported_by=leader.UserID,
            source="agent_reset",
            source_date=key,
            resolution="Records reset - agent can start fresh booking process",
        )
    _commit(db, "agent reset")
    LOGGER.info("Agent reset agent_id=%s date=%s leader_id=%s states_reset=%s", agent.UserID, key, leader.UserID, len(wiped))
    safe_sync_historical_record(db, key)
    return {
        "message": "Agent asset records reset successfully",
        "agentId": agent.UserID,
        "date": key,
        "resetBy": leader_name,
        "statesReset": len(wiped),
    }


def get_states_for_user_and_date(db: Session, user_id: str, target_date: date | str) -> list[AssetDailyState]:
    return db.execute(
        select(AssetDailyState)
        .where(AssetDailyState.UserID == str(user_id))
        .where(AssetDailyState.Date == date_key(target_date))
        .order_by(AssetDailyState.AssetType)
    ).scalars().all()


def get_states_for_date(db: Session, target_date: date | str) -> list[AssetDailyState]:
    return db.execute(
        select(AssetDailyState)
        .where(AssetDailyState.Date == date_key(target_date))
        .order_by(AssetDailyState.UserID, AssetDailyState.AssetType)
    ).scalars().all()


def get_state_audit_for_user(db: Session, user_id: str) -> list[AssetStateAudit]:
    return db.execute(
        select(AssetStateAudit)
        .where(AssetStateAudit.UserID == str(user_id))
        .order_by(AssetStateAudit.ChangedAt.desc())
    ).scalars().all()


def get_unreturned_assets(db: Session) -> list[dict[str, Any]]:
    lost_rows = db.execute(
        select(AssetLossRecord).where(AssetLossRecord.Status == "reported")
    ).scalars().all()
    unreturned_rows = db.execute(
        select(AssetDailyState).where(AssetDailyState.CurrentState == AssetState.NOT_RETURNED.value)
    ).scalars().all()
    names = get_display_names(db, {row.UserID for row in lost_rows} | {row.UserID for row in unreturned_rows})

    output: list[dict[str, Any]] = []
    lost_keys: set[tuple[str, str]] = set()
    for row in lost_rows:
        lost_keys.add((row.UserID, row.AssetType))
        output.append(
            {
                "userId": row.UserID,
                "agentName": names.get(row.UserID) or "Unknown User",
                "assetType": row.AssetType,
                "status": "Lost",
                "date": row.DateLost.isoformat() if row.DateLost else None,
                "reason": row.Reason,
            }
        )
    for row in unreturned_rows:
        if (row.UserID, row.AssetType) in lost_keys:
            continue
        output.append(
            {
                "userId": row.UserID,
                "agentName": names.get(row.UserID) or row.AgentName or "Unknown User",
                "assetType": row.AssetType,
                "status": "Not Returned Yet",
                "date": row.Date,
                "reason": row.Reason,
            }
        )
    output.sort(key=lambda item: (str(item["agentName"]).lower(), item["assetType"], item["date"] or ""))
    return output


def has_unreturned_assets(db: Session, user_id: str) -> bool:
    lost = db.execute(
        select(AssetLossRecord.LossID)
        .where(AssetLossRecord.UserID == str(user_id))
        .where(AssetLossRecord.Status == "reported")
    ).first()
    if lost:
        return True
    unreturned = db.execute(
        select(AssetDailyState.StateID)
        .where(AssetDailyState.UserID == str(user_id))
        .where(AssetDailyState.CurrentState == AssetState.NOT_RETURNED.value)
    ).first()
    return unreturned is not None


def report_asset_loss(
    db: Session,
    user_id: str,
    asset_type: str,
    date_lost: date | str,
    reason: str,
    actor_id: str,
) -> AssetLossRecord:
    kind = parse_asset_type(asset_type).value
    key = date_key(date_lost)
    text = (reason or "").strip()
    if not text:
        raise ValidationError("Loss reason is required")
    user = _require_user(db, user_id)
    record = _record_loss(db, user.UserID, kind, key, text, actor_id)
    _commit(db, "asset loss report")
    LOGGER.info("Asset loss reported user_id=%s asset_type=%s date=%s", user.UserID, kind, key)
    safe_sync_historical_record(db, key)
    return record


def list_asset_loss_records(db: Session, target_date: date | str | None = None) -> list[AssetLossRecord]:
    stmt = select(AssetLossRecord)
    if target_date:
        stmt = stmt.where(AssetLossRecord.DateLost == date.fromisoformat(date_key(target_date)))
    return db.execute(stmt.order_by(AssetLossRecord.CreatedAt.desc())).scalars().all()


def delete_asset_loss_record(db: Session, user_id: str, asset_type: str, target_date: date | str) -> int:
    kind = parse_asset_type(asset_type).value
    key = date_key(target_date)
    removed = _delete_loss_record(db, str(user_id), kind, key)
    _commit(db, "asset loss delete")
    LOGGER.info("Asset loss records removed user_id=%s asset_type=%s date=%s count=%s", user_id, kind, key, removed)
    safe_sync_historical_record(db, key)
    return removed


def serialize_daily_state(row: AssetDailyState) -> dict[str, Any]:
    return {
        "stateID": row.StateID,
        "userID": row.UserID,
        "date": row.Date,
        "assetType": row.AssetType,
        "currentState": row.CurrentState,
        "confirmedBy": row.ConfirmedBy,
        "confirmedAt": row.ConfirmedAt,
        "reason": row.Reason,
        "agentName": row.AgentName,
        "createdAt": row.CreatedAt,
        "updatedAt": row.UpdatedAt,
    }


def serialize_state_audit(row: AssetStateAudit) -> dict[str, Any]:
    return {
        "auditID": row.AuditID,
        "dailyStateID": row.DailyStateID,
        "userID": row.UserID,
        "assetType": row.AssetType,
        "previousState": row.PreviousState,
        "newState": row.NewState,
        "reason": row.Reason,
        "changedBy": row.ChangedBy,
        "changedAt": row.ChangedAt,
    }


def serialize_loss_record(row: AssetLossRecord) -> dict[str, Any]:
    return {
        "lossID": row.LossID,
        "userID": row.UserID,
        "assetType": row.AssetType,
        "dateLost": row.DateLost.isoformat() if row.DateLost else None,
        "reason": row.Reason,
        "reportedBy": row.ReportedBy,
        "status": row.Status,
        "createdAt": row.CreatedAt,
        "updatedAt": row.UpdatedAt,
    }
