import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class BookInRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: str
    assetType: str
    date: datetime.date
    status: str
    reason: Optional[str] = None


class BookOutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: str
    assetType: str
    date: datetime.date
    status: str
    reason: Optional[str] = None


class MarkFoundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: str
    assetType: str
    date: datetime.date
    recoveryReason: str


class ResetAgentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    agentId: str
    password: str
    date: Optional[datetime.date] = None


class DailyResetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date: datetime.date


class SchedulerTriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date: Optional[datetime.date] = None


class AssetLossRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: str
    assetType: str
    dateLost: datetime.date
    reason: str


class AssetLossDeleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: str
    assetType: str
    date: datetime.date


class ResolveIncidentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    resolution: str
