# Overview: Service-layer operations for session; bearer token issue, validation and revocation.

"""
Bearer sessions for every tier of the distribution network.

- Tokens are 32 random bytes (hex); only their SHA-256 digest is stored.
- A session ends at expires_at (SESSION_TTL_HOURS), after
  SESSION_IDLE_HOURS without use, on logout, or when its user is deactivated.
- Ended sessions are kept (is_revoked + reason) until cleanup_expired_sessions.
"""

import hashlib
import secrets
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User
from ..time_utils import utcnow


# Revoked/expired sessions are kept this long for audit before cleanup
SESSION_RETENTION = timedelta(days=30)


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """High-entropy tokens need no salt or slow hash; SHA-256 is enough."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def _idle_timeout() -> timedelta:
    return timedelta(hours=current_app.config.get("SESSION_IDLE_HOURS", 2))


def _find_live(token: str) -> SessionToken | None:
    return db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()


def _end(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """
    Open a session for user_id.

    Returns (session_record, plaintext_token); the plaintext is never stored.
    """
    if db.session.get(User, user_id) is None:
        raise ValueError("User not found")

    token = generate_token()
    now = utcnow()
    ttl = timedelta(hours=current_app.config.get("SESSION_TTL_HOURS", 24))

    session = SessionToken(
        user_id=user_id,
        token_hash=hash_token(token),
        created_at=now,
        last_used_at=now,
        expires_at=now + ttl,
        user_agent=(user_agent or "")[:255] or None,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, token


def validate_session(token: str) -> User | None:
    """
    Resolve a bearer token to its active user, or None.

    Idle sessions and sessions of deactivated users are ended on the spot,
    so a later reactivation does not revive old tokens.
    """
    session = _find_live(token)
    if session is None:
        return None

    now = utcnow()
    if session.expires_at < now:
        return None

    if session.last_used_at and now - session.last_used_at > _idle_timeout():
        _end(session, "Idle timeout")
        return None

    user = session.user
    if user is None or not user.is_active:
        _end(session, "User account deactivated")
        return None

    session.last_used_at = now
    db.session.commit()
    return user


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """End a live session. Returns False if the token is unknown or already ended."""
    session = _find_live(token)
    if session is None:
        return False
    _end(session, reason)
    return True


def cleanup_expired_sessions() -> int:
    """Delete ended sessions past the retention window. Returns the count deleted."""
    now = utcnow()
    deleted = db.session.query(SessionToken).filter(
        db.or_(
            SessionToken.expires_at < now,
            SessionToken.is_revoked.is_(True),
        ),
        SessionToken.created_at < now - SESSION_RETENTION,
    ).delete(synchronize_session=False)

    db.session.commit()
    return deleted
