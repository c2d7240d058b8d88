"""Security utilities: admin JWTs and cron shared-secret checks."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import jwt

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_ROLE = "ADMIN"


def create_access_token(subject: str, role: str = ADMIN_ROLE, email: str | None = None, expires_minutes: int = 60) -> str:
    """Create a JWT access token."""
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET must be set")

    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(subject),
        "role": role,
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
        "jti": str(uuid4()),
        "type": "access",
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def verify_access_token(token: str) -> dict[str, Any]:
    """Verify and decode a JWT access token."""
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET must be set")

    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
        if payload.get("type") != "access":
            raise jwt.InvalidTokenError("Token is not an access token")
        return payload
    except jwt.ExpiredSignatureError:
        raise jwt.InvalidTokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise jwt.InvalidTokenError(f"Invalid token: {e}")


def is_admin_claims(payload: dict[str, Any]) -> bool:
    """Admin iff the role claim is ADMIN or the email claim is an allow-listed admin."""
    if payload.get("role") == ADMIN_ROLE:
        return True
    email = (payload.get("email") or "").strip().lower()
    return bool(email) and email in settings.admin_email_list


def verify_cron_secret(provided: str) -> bool:
    """Constant-time comparison against CRON_SECRET."""
    if not settings.CRON_SECRET:
        logger.warning("CRON_SECRET is not configured; rejecting cron caller")
        return False
    return secrets.compare_digest(provided.encode(), settings.CRON_SECRET.encode())
