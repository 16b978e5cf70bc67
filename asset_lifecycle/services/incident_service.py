from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.asset_models import AssetIncident
from services.asset_errors import NotFoundError, ValidationError
from services.persistence import commit_or_raise


LOGGER = logging.getLogger("asset_lifecycle.incidents")

INCIDENT_TYPES = {"lost", "not_returned", "maintenance", "other"}
INCIDENT_STATUSES = {"open", "resolved"}
INCIDENT_SOURCES = {"daily_reset", "agent_reset", "manual"}


def add_incident(
    db: Session,
    *,
    user_id: str,
    asset_type: str,
    incident_type: str,
    description: str,
    reported_by: str,
    source: str = "manual",
    source_date: str | None = None,
    resolution: str | None = None,
) -> AssetIncident:
    if incident_type not in INCIDENT_TYPES:
        raise ValidationError(f"Unknown incident type: {incident_type}")
    if source not in INCIDENT_SOURCES:
        raise ValidationError(f"Unknown incident source: {source}")
    now = datetime.now()
    incident = AssetIncident(
        UserID=user_id,
        AssetType=asset_type,
        IncidentType=incident_type,
        Description=description,
        ReportedBy=reported_by,
        ReportedAt=now,
        Status="open",
        Source=source,
        SourceDate=source_date,
    )
    if resolution:
        incident.Status = "resolved"
        incident.Resolution = resolution
        incident.ResolvedBy = reported_by
        incident.ResolvedAt = now
    db.add(incident)
    return incident


def find_open_incident(db: Session, user_id: str, asset_type: str, incident_types: set[str]) -> AssetIncident | None:
    return db.execute(
        select(AssetIncident)
        .where(AssetIncident.UserID == user_id)
        .where(AssetIncident.AssetType == asset_type)
        .where(AssetIncident.IncidentType.in_(sorted(incident_types)))
        .where(AssetIncident.Status == "open")
        .order_by(AssetIncident.ReportedAt)
    ).scalars().first()


def resolve_open_incidents(
    db: Session,
    user_id: str,
    asset_type: str,
    incident_types: set[str],
    resolution: str,
    resolved_by: str,
) -> int:
    rows = db.execute(
        select(AssetIncident)
        .where(AssetIncident.UserID == user_id)
        .where(AssetIncident.AssetType == asset_type)
        .where(AssetIncident.IncidentType.in_(sorted(incident_types)))
        .where(AssetIncident.Status == "open")
    ).scalars().all()
    now = datetime.now()
    for row in rows:
        row.Status = "resolved"
        row.Resolution = resolution
        row.ResolvedBy = resolved_by
        row.ResolvedAt = now
    return len(rows)


def resolve_incident(db: Session, incident_id: str, resolution: str, resolved_by: str) -> AssetIncident:
    incident = db.get(AssetIncident, str(incident_id))
    if not incident:
        raise NotFoundError("Incident not found")
    if incident.Status == "resolved":
        raise ValidationError("Incident is already resolved")
    text = (resolution or "").strip()
    if not text:
        raise ValidationError("Resolution is required")
    incident.Status = "resolved"
    incident.Resolution = text
    incident.ResolvedBy = resolved_by
    incident.ResolvedAt = datetime.now()
    commit_or_raise(db, "incident resolution", LOGGER)
    return incident


def list_incidents(db: Session, user_id: str | None = None, status: str | None = None) -> list[AssetIncident]:
    stmt = select(AssetIncident)
    if user_id:
        stmt = stmt.where(AssetIncident.UserID == user_id)
    if status:
        if status not in INCIDENT_STATUSES:
            raise ValidationError(f"Unknown incident status: {status}")
        stmt = stmt.where(AssetIncident.Status == status)
    return db.execute(stmt.order_by(AssetIncident.ReportedAt.desc())).scalars().all()


def serialize_incident(incident: AssetIncident) -> dict[str, Any]:
    return {
        "incidentID": incident.IncidentID,
        "userID": incident.UserID,
        "assetType": incident.AssetType,
        "incidentType": incident.IncidentType,
        "description": incident.Description,
        "reportedBy": incident.ReportedBy,
        "reportedAt": incident.ReportedAt,
        "status": incident.Status,
        "resolution": incident.Resolution,
        "resolvedBy": incident.ResolvedBy,
        "resolvedAt": incident.ResolvedAt,
        "source": incident.Source,
        "sourceDate": incident.SourceDate,
    }
