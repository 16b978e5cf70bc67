from __future__ import annotations

import hashlib
import hmac
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.directory_models import Team, TeamMember, User


DEFAULT_ROLE = "agent"
KNOWN_ROLES = {
    "admin",
    "hr",
    "contact_center_ops_manager",
    "contact_center_manager",
    "team_leader",
    "agent",
}
MANAGEMENT_ROLES = {
    "admin",
    "hr",
    "team_leader",
    "contact_center_manager",
    "contact_center_ops_manager",
}


def _normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role in KNOWN_ROLES:
        return role
    return DEFAULT_ROLE


def password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def display_name(user: User | None) -> str:
    if not user:
        return "Unknown"
    full_name = f"{user.FirstName or ''} {user.LastName or ''}".strip()
    return full_name or user.Username or "Unknown"


def get_user(db: Session, user_id: str | None) -> User | None:
    if not user_id:
        return None
    return db.get(User, str(user_id))


def get_display_names(db: Session, user_ids: set[str]) -> dict[str, str]:
    if not user_ids:
        return {}
    rows = db.execute(select(User).where(User.UserID.in_(sorted(user_ids)))).scalars().all()
    return {row.UserID: display_name(row) for row in rows}


def serialize_user(user: User) -> dict[str, Any]:
    return {
        "userID": user.UserID,
        "username": user.Username,
        "firstName": user.FirstName,
        "lastName": user.LastName,
        "displayName": display_name(user),
        "role": _normalize_role(user.Role),
        "isActive": bool(user.IsActive),
    }


def verify_password(db: Session, user_id: str, password: str) -> bool:
    candidate = (password or "").strip()
    if not candidate:
        return False
    user = get_user(db, user_id)
    if not user or not user.PasswordHash or not user.PasswordSalt:
        return False
    return hmac.compare_digest(password_hash(candidate, user.PasswordSalt), user.PasswordHash)


def get_teams_led_by(db: Session, leader_id: str) -> list[Team]:
    return db.execute(select(Team).where(Team.LeaderID == str(leader_id)).order_by(Team.TeamName)).scalars().all()


def is_agent_in_leader_team(db: Session, leader_id: str, agent_id: str) -> bool:
    team_ids = [team.TeamID for team in get_teams_led_by(db, leader_id)]
    if not team_ids:
        return False
    membership = db.execute(
        select(TeamMember.MembershipID)
        .where(TeamMember.TeamID.in_(team_ids))
        .where(TeamMember.UserID == str(agent_id))
    ).first()
    return membership is not None


def count_users(db: Session) -> int:
    return int(db.execute(select(func.count(User.UserID))).scalar() or 0)


def resolve_system_actor(db: Session) -> str:
    admin = db.execute(
        select(User)
        .where(User.Role == "admin")
        .where(User.IsActive == True)
        .order_by(User.CreatedAt, User.Username)
    ).scalars().first()
    if admin:
        return admin.UserID
    fallback = db.execute(select(User).order_by(User.CreatedAt, User.Username)).scalars().first()
    if fallback:
        return fallback.UserID
    raise RuntimeError("No users available for automated reset")
