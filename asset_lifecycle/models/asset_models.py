import uuid

from sqlalchemy import Column, Date, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class AssetDailyState(Base):
    __tablename__ = "AssetDailyStates"
    __table_args__ = (
        UniqueConstraint("UserID", "Date", "AssetType", name="UQ_AssetDailyStates_UserDateType"),
    )

    StateID = Column(String(36), primary_key=True, default=_new_id)
    UserID = Column(String(36), ForeignKey("Users.UserID"), nullable=False, index=True)
    Date = Column(String(10), nullable=False, index=True)
    AssetType = Column(String(20), nullable=False)
    CurrentState = Column(String(30), nullable=False)
    ConfirmedBy = Column(String(36), ForeignKey("Users.UserID"))
    ConfirmedAt = Column(DateTime)
    Reason = Column(Text)
    AgentName = Column(String(255))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    AuditEntries = relationship("AssetStateAudit", back_populates="DailyState")


class AssetStateAudit(Base):
    __tablename__ = "AssetStateAudit"

    AuditID = Column(String(36), primary_key=True, default=_new_id)
    DailyStateID = Column(String(36), ForeignKey("AssetDailyStates.StateID"), nullable=True, index=True)
    UserID = Column(String(36), ForeignKey("Users.UserID"), nullable=False, index=True)
    AssetType = Column(String(20), nullable=False)
    PreviousState = Column(String(30))
    NewState = Column(String(30), nullable=False)
    Reason = Column(Text)
    ChangedBy = Column(String(36), ForeignKey("Users.UserID"), nullable=False)
    ChangedAt = Column(DateTime, nullable=False, server_default=func.now())

    DailyState = relationship("AssetDailyState", back_populates="AuditEntries")


class AssetIncident(Base):
    __tablename__ = "AssetIncidents"

    IncidentID = Column(String(36), primary_key=True, default=_new_id)
    UserID = Column(String(36), ForeignKey("Users.UserID"), nullable=False, index=True)
    AssetType = Column(String(20), nullable=False)
    IncidentType = Column(String(20), nullable=False)
    Description = Column(Text, nullable=False)
    ReportedBy = Column(String(36), ForeignKey("Users.UserID"), nullable=False)
    ReportedAt = Column(DateTime, nullable=False, server_default=func.now())
    Status = Column(String(20), nullable=False, default="open")
    Resolution = Column(Text)
    ResolvedBy = Column(String(36), ForeignKey("Users.UserID"))
    ResolvedAt = Column(DateTime)
    SourceDate = Column(String(10), index=True)
    Source = Column(String(20), nullable=False, default="manual")


class AssetLossRecord(Base):
    __tablename__ = "AssetLossRecords"

    LossID = Column(String(36), primary_key=True, default=_new_id)
    UserID = Column(String(36), ForeignKey("Users.UserID"), nullable=False, index=True)
    AssetType = Column(String(20), nullable=False)
    DateLost = Column(Date, nullable=False, index=True)
    Reason = Column(Text, nullable=False)
    ReportedBy = Column(String(36), ForeignKey("Users.UserID"), nullable=False)
    Status = Column(String(20), nullable=False, default="reported")
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class HistoricalAssetRecord(Base):
    __tablename__ = "HistoricalAssetRecords"

    RecordID = Column(String(36), primary_key=True, default=_new_id)
    Date = Column(String(10), nullable=False, unique=True)
    BookInRecords = Column(Text, nullable=False)
    BookOutRecords = Column(Text, nullable=False)
    LostAssets = Column(Text, nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(String(36), primary_key=True, default=_new_id)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(50), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(36))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(String(36), primary_key=True, default=_new_id)
    UserID = Column(String(36))
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
