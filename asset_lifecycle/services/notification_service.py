from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.asset_models import AssetDailyState, NotificationQueue


LOGGER = logging.getLogger("asset_lifecycle.notifications")

ASSET_LOST = "AssetLost"
ASSET_NOT_RETURNED = "AssetNotReturned"

_TITLES = {
    ASSET_LOST: "Asset Reported Lost",
    ASSET_NOT_RETURNED: "Asset Not Returned",
}


def _build_body(notification_type: str, agent_name: str, asset_type: str, reason: str | None) -> str:
    if notification_type == ASSET_LOST:
        body = f"{agent_name}'s {asset_type} has been reported as lost."
        if reason:
            body = f"{body} Reason: {reason}"
        return body
    return f"{agent_name} has not returned their {asset_type}."


def enqueue_asset_notification(
    db: Session,
    state: AssetDailyState,
    notification_type: str,
    actor_id: str | None,
) -> NotificationQueue:
    agent_name = state.AgentName or state.UserID
    payload = {
        "title": _TITLES.get(notification_type, notification_type),
        "body": _build_body(notification_type, agent_name, state.AssetType, state.Reason),
        "assetType": state.AssetType,
        "targetUserId": state.UserID,
        "agentName": agent_name,
        "date": state.Date,
        "currentState": state.CurrentState,
        "reason": state.Reason,
        "reportedBy": actor_id,
    }
    row = NotificationQueue(
        UserID=state.UserID,
        NotificationType=notification_type,
        Payload=json.dumps(payload, ensure_ascii=True),
        CreatedAt=datetime.now(),
    )
    db.add(row)
    LOGGER.info(
        "Queued %s notification user_id=%s asset_type=%s date=%s",
        notification_type,
        state.UserID,
        state.AssetType,
        state.Date,
    )
    return row


def serialize_notification(row: NotificationQueue) -> dict[str, Any]:
    try:
        payload = json.loads(row.Payload or "{}")
    except (TypeError, ValueError, json.JSONDecodeError):
        payload = {}
    return {
        "notificationID": row.NotificationID,
        "userID": row.UserID,
        "notificationType": row.NotificationType,
        "payload": payload if isinstance(payload, dict) else {},
        "createdAt": row.CreatedAt,
        "sentAt": row.SentAt,
    }


def list_pending_notifications(db: Session) -> list[NotificationQueue]:
    return db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .order_by(NotificationQueue.CreatedAt)
    ).scalars().all()
