from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_dashboard.models.rental_models import AppUser, Profile


SESSION_TTL_SECONDS = 60 * 60 * 12
MIN_PASSWORD_LENGTH = 8

_LOCK = threading.Lock()
# token -> expiresAt; entries drop out once the token would have expired anyway.
_REVOKED: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def normalize_email(raw: str | None) -> str:
    return (raw or "").strip().lower()


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def get_user_by_email(db: Session, email: str | None) -> AppUser | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.execute(select(AppUser).where(func.lower(AppUser.Email) == normalized)).scalars().first()


def set_password(user: AppUser, password: str) -> None:
    trimmed = str(password or "").strip()
    if len(trimmed) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    salt = secrets.token_hex(16)
    user.PasswordSalt = salt
    user.PasswordHash = _password_hash(trimmed, salt)
    user.PasswordUpdatedAt = int(time.time())


def create_user(db: Session, email: str, password: str, business_name: str | None = None) -> AppUser:
    """Add a login user with an empty company profile. The caller commits."""
    normalized = normalize_email(email)
    if "@" not in normalized:
        raise ValueError("A valid email is required.")
    if get_user_by_email(db, normalized):
        raise ValueError(f"User {normalized} already exists.")
    user = AppUser(Email=normalized, IsActive=True)
    set_password(user, password)
    user.Profile = Profile(BusinessName=(business_name or "").strip() or None)
    db.add(user)
    db.flush()
    return user


def verify_password(user: AppUser | None, password: str) -> bool:
    candidate = (password or "").strip()
    if not user or not user.IsActive or not candidate:
        return False
    if not user.PasswordHash or not user.PasswordSalt:
        return False
    return hmac.compare_digest(_password_hash(candidate, user.PasswordSalt), user.PasswordHash)


def authenticate(db: Session, email: str | None, password: str) -> AppUser | None:
    user = get_user_by_email(db, email)
    return user if verify_password(user, password) else None


def _sign(encoded: str) -> str:
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(signature).decode("ascii").rstrip("=")


def _decode_payload(encoded: str) -> dict[str, Any]:
    payload_raw = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
    decoded = json.loads(payload_raw.decode("utf-8"))
    if not isinstance(decoded, dict):
        raise ValueError("Session payload must be an object.")
    return decoded


def create_session(payload: dict[str, Any]) -> str:
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + SESSION_TTL_SECONDS
    session_payload["nonce"] = secrets.token_hex(8)
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = base64.urlsafe_b64encode(body).decode("ascii").rstrip("=")
    return f"{encoded}.{_sign(encoded)}"


def _purge_revoked_unlocked(now: float) -> None:
    for revoked_token, revoked_exp in list(_REVOKED.items()):
        if now >= revoked_exp:
            _REVOKED.pop(revoked_token, None)


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    try:
        encoded, supplied_sig = token.split(".", 1)
        if not hmac.compare_digest(_sign(encoded), supplied_sig):
            return None
        decoded_session = _decode_payload(encoded)
    except (ValueError, UnicodeError, TypeError):
        return None

    try:
        expires_at = float(decoded_session.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if now >= expires_at:
        return None

    with _LOCK:
        _purge_revoked_unlocked(now)
        if token in _REVOKED:
            return None
        return dict(decoded_session)


def remove_session(token: str | None) -> None:
    if not token:
        return
    now = time.time()
    try:
        expires_at = float(_decode_payload(token.split(".", 1)[0]).get("expiresAt") or 0.0)
    except (ValueError, UnicodeError, TypeError):
        expires_at = now + SESSION_TTL_SECONDS
    with _LOCK:
        _purge_revoked_unlocked(now)
        if expires_at > now:
            _REVOKED[token] = expires_at
