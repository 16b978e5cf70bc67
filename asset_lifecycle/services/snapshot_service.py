from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.asset_models import AssetDailyState, AssetLossRecord, HistoricalAssetRecord
from services.transition_rules import ASSET_TYPES, AssetState, is_booked_out, parse_state
from services.user_directory_service import get_display_names


LOGGER = logging.getLogger("asset_lifecycle.snapshot")


def _date_key(value: date | str) -> str:
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(str(value).strip()).isoformat()


def _empty_entry(agent_name: str, date_key: str) -> dict[str, Any]:
    entry: dict[str, Any] = {"agentName": agent_name, "date": date_key}
    for asset_type in ASSET_TYPES:
        entry[asset_type] = None
    return entry


def _from_json(value: str | None, fallback):
    if not value:
        return fallback
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError, json.JSONDecodeError):
        return fallback
    return parsed if isinstance(parsed, type(fallback)) else fallback


def build_snapshot(db: Session, target_date: date | str) -> dict[str, Any]:
    date_key = _date_key(target_date)
    states = db.execute(
        select(AssetDailyState)
        .where(AssetDailyState.Date == date_key)
        .order_by(AssetDailyState.UserID, AssetDailyState.AssetType)
    ).scalars().all()

    book_in: dict[str, dict[str, Any]] = {}
    book_out: dict[str, dict[str, Any]] = {}
    for row in states:
        state = parse_state(row.CurrentState)
        agent_name = row.AgentName or row.UserID
        entry = book_in.setdefault(row.UserID, _empty_entry(agent_name, date_key))
        if is_booked_out(state):
            entry[row.AssetType] = AssetState.COLLECTED.value
            out_entry = book_out.setdefault(row.UserID, _empty_entry(agent_name, date_key))
            out_entry[row.AssetType] = state.value
        elif state != AssetState.READY_FOR_COLLECTION:
            entry[row.AssetType] = state.value

    loss_rows = db.execute(
        select(AssetLossRecord)
        .where(AssetLossRecord.DateLost == date.fromisoformat(date_key))
        .order_by(AssetLossRecord.UserID, AssetLossRecord.AssetType)
    ).scalars().all()
    names = get_display_names(db, {row.UserID for row in loss_rows})
    lost_assets = [
        {
            "agentId": row.UserID,
            "agentName": names.get(row.UserID) or (book_in.get(row.UserID) or {}).get("agentName") or row.UserID,
            "assetType": row.AssetType,
            "dateLost": date_key,
            "reason": row.Reason,
            "status": row.Status,
        }
        for row in loss_rows
    ]

    return {
        "date": date_key,
        "bookInRecords": book_in,
        "bookOutRecords": book_out,
        "lostAssets": lost_assets,
    }


def sync_historical_record(db: Session, target_date: date | str) -> HistoricalAssetRecord:
    snapshot = build_snapshot(db, target_date)
    date_key = snapshot["date"]
    record = db.execute(
        select(HistoricalAssetRecord).where(HistoricalAssetRecord.Date == date_key)
    ).scalars().first()
    now = datetime.now()
    if not record:
        record = HistoricalAssetRecord(Date=date_key, CreatedAt=now)
        db.add(record)
    record.BookInRecords = json.dumps(snapshot["bookInRecords"], ensure_ascii=True, sort_keys=True)
    record.BookOutRecords = json.dumps(snapshot["bookOutRecords"], ensure_ascii=True, sort_keys=True)
    record.LostAssets = json.dumps(snapshot["lostAssets"], ensure_ascii=True)
    record.UpdatedAt = now
    db.commit()
    LOGGER.info(
        "Historical snapshot rebuilt date=%s book_in_users=%s book_out_users=%s lost=%s",
        date_key,
        len(snapshot["bookInRecords"]),
        len(snapshot["bookOutRecords"]),
        len(snapshot["lostAssets"]),
    )
    return record


def safe_sync_historical_record(db: Session, target_date: date | str) -> bool:
    try:
        sync_historical_record(db, target_date)
        return True
    except Exception:
        db.rollback()
        LOGGER.exception("Historical snapshot sync failed for date=%s", target_date)
        return False


def serialize_historical_record(record: HistoricalAssetRecord) -> dict[str, Any]:
    return {
        "recordID": record.RecordID,
        "date": record.Date,
        "bookInRecords": _from_json(record.BookInRecords, {}),
        "bookOutRecords": _from_json(record.BookOutRecords, {}),
        "lostAssets": _from_json(record.LostAssets, []),
        "createdAt": record.CreatedAt,
        "updatedAt": record.UpdatedAt,
    }


def get_historical_records(db: Session, target_date: date | str | None = None) -> list[HistoricalAssetRecord]:
    stmt = select(HistoricalAssetRecord)
    if target_date:
        stmt = stmt.where(HistoricalAssetRecord.Date == _date_key(target_date))
    return db.execute(stmt.order_by(HistoricalAssetRecord.Date.desc())).scalars().all()
