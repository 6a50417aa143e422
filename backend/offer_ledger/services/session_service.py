# Overview: Bearer session tokens; issue, resolve to a Principal, revoke.

"""
Session Token Management Service

WHY: Requests carry a bearer token issued for a user of the external identity
provider. Tokens are cryptographically secure, hashed in database, and
time-limited.

SECURITY:
- 32 random bytes per token, hex encoded
- Only the SHA-256 digest is persisted
- Hard expiry after SESSION_TTL_HOURS (default 24); no sliding renewal
- Revocation is immediate
"""

import hashlib
import secrets
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User
from ..time_utils import utcnow
from .auth_service import Principal


def generate_token() -> str:
    """Fresh plaintext token. Handed to the client once and never persisted."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """Hash token for database storage using SHA-256."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(user_id: int) -> tuple[SessionToken, str]:
    """
    Create new session token for user.

    Returns (session_record, plaintext_token); only the digest is stored.

    Raises ValueError if the user is missing or deactivated.
    """
    user = db.session.get(User, user_id)
    if not user:
        raise ValueError("User not found")
    if not user.is_active:
        raise ValueError("User is not active")

    plaintext_token = generate_token()
    now = utcnow()
    ttl_hours = current_app.config.get("SESSION_TTL_HOURS", 24)

    session = SessionToken(
        user_id=user_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
    )
    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def validate_session(token: str) -> Principal | None:
    """
    Resolve a bearer token into a Principal.

    Returns None when the token is unknown, revoked, expired, or belongs to a
    deactivated user.
    """
    if not token:
        return None

    session = db.session.query(SessionToken).filter_by(token_hash=hash_token(token)).first()
    if not session or session.revoked_at is not None:
        return None

    now = utcnow()
    if now >= session.expires_at:
        return None

    user = db.session.get(User, session.user_id)
    if not user or not user.is_active:
        return None

    session.last_used_at = now
    db.session.commit()

    return Principal.for_user(user)


def revoke_session(token: str) -> bool:
    session = db.session.query(SessionToken).filter_by(token_hash=hash_token(token)).first()
    if not session or session.revoked_at is not None:
        return False
    session.revoked_at = utcnow()
    db.session.commit()
    return True
