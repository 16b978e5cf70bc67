import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.sql import func

from db.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "Users"

    UserID = Column(String(36), primary_key=True, default=_new_id)
    Username = Column(String(100), nullable=False, unique=True)
    FirstName = Column(String(100))
    LastName = Column(String(100))
    Role = Column(String(50), nullable=False, default="agent")
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    IsActive = Column(Boolean, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())


class Team(Base):
    __tablename__ = "Teams"

    TeamID = Column(String(36), primary_key=True, default=_new_id)
    TeamName = Column(String(255), nullable=False)
    LeaderID = Column(String(36), ForeignKey("Users.UserID"))
    CreatedAt = Column(DateTime, server_default=func.now())


class TeamMember(Base):
    __tablename__ = "TeamMembers"

    MembershipID = Column(String(36), primary_key=True, default=_new_id)
    TeamID = Column(String(36), ForeignKey("Teams.TeamID"), nullable=False)
    UserID = Column(String(36), ForeignKey("Users.UserID"), nullable=False)
    JoinedAt = Column(DateTime, server_default=func.now())
