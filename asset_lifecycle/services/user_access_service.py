from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any

from models.directory_models import User
from services.user_directory_service import display_name, serialize_user


SESSION_TTL_SECONDS = 60 * 60 * 12
LOGGER = logging.getLogger("asset_lifecycle.auth")

_BASE_DIR = Path(__file__).resolve().parent.parent
_REVOKED_TOKENS_PATH = Path(
    os.environ.get("SESSION_REVOKED_STORE_PATH") or (_BASE_DIR / "data" / "revoked_sessions.json")
)
_LOCK = threading.Lock()
_SESSIONS: dict[str, dict[str, Any]] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _ensure_data_dir() -> None:
    _REVOKED_TOKENS_PATH.parent.mkdir(parents=True, exist_ok=True)


def _load_revoked_tokens_unlocked() -> dict[str, float]:
    if not _REVOKED_TOKENS_PATH.exists():
        return {}
    try:
        payload = json.loads(_REVOKED_TOKENS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, ValueError):
        return {}
    if not isinstance(payload, dict):
        return {}
    out: dict[str, float] = {}
    for token, expires_at in payload.items():
        try:
            out[str(token)] = float(expires_at)
        except (TypeError, ValueError):
            continue
    return out


def _save_revoked_tokens_unlocked(tokens: dict[str, float]) -> None:
    _ensure_data_dir()
    _REVOKED_TOKENS_PATH.write_text(json.dumps(tokens, ensure_ascii=True, indent=2), encoding="utf-8")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def build_session_payload(user: User) -> dict[str, Any]:
    profile = serialize_user(user)
    return {
        "userID": profile["userID"],
        "username": profile["username"],
        "displayName": display_name(user),
        "role": profile["role"],
    }


def create_session(payload: dict[str, Any]) -> str:
    expires_at = time.time() + SESSION_TTL_SECONDS
    session_payload = dict(payload)
    session_payload["expiresAt"] = expires_at
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = base64.urlsafe_b64encode(body).decode("ascii").rstrip("=")
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    encoded_sig = base64.urlsafe_b64encode(signature).decode("ascii").rstrip("=")
    token = f"{encoded}.{encoded_sig}"
    with _LOCK:
        _SESSIONS[token] = session_payload
    return token


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            LOGGER.warning("Rejected session token with invalid signature")
            return None
        decoded_session = json.loads(_b64decode(encoded).decode("utf-8"))
    except ValueError:
        return None

    if not isinstance(decoded_session, dict):
        return None

    expires_at = float(decoded_session.get("expiresAt") or 0.0)
    if now >= expires_at:
        with _LOCK:
            _SESSIONS.pop(token, None)
        return None

    with _LOCK:
        revoked = _load_revoked_tokens_unlocked()
        changed = False
        for revoked_token, revoked_exp in list(revoked.items()):
            if now >= float(revoked_exp):
                revoked.pop(revoked_token, None)
                changed = True
        if changed:
            _save_revoked_tokens_unlocked(revoked)
        if token in revoked:
            _SESSIONS.pop(token, None)
            return None

        # Cache for this process; cross-process validation remains token-based.
        _SESSIONS[token] = decoded_session
        return dict(decoded_session)


def remove_session(token: str | None) -> None:
    if not token:
        return
    with _LOCK:
        _SESSIONS.pop(token, None)
        now = time.time()
        revoked = _load_revoked_tokens_unlocked()
        try:
            decoded = json.loads(_b64decode(token.split(".", 1)[0]).decode("utf-8"))
            expires_at = float(decoded.get("expiresAt") or 0.0)
        except (ValueError, AttributeError):
            expires_at = now + SESSION_TTL_SECONDS
        if expires_at <= now:
            return
        revoked[token] = expires_at
        _save_revoked_tokens_unlocked(revoked)
    LOGGER.info("Session revoked")
