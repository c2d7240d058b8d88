"""FastAPI dependencies for caller authentication."""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Header, HTTPException, status

# Error handling is done via HTTPException which uses the global error handler
from app.core.security import is_admin_claims, verify_access_token, verify_cron_secret


@dataclass
class Caller:
    """Authenticated caller of a scheduler entry point."""

    kind: str  # cron, admin
    subject: str
    email: str | None = None


def _bearer_token(authorization: str) -> str:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid authorization scheme")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format. Expected: Bearer <token>",
        ) from None
    return token


def _admin_from_header(authorization: str | None) -> Caller:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
        )
    token = _bearer_token(authorization)
    try:
        payload = verify_access_token(token)
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {str(e)}",
        ) from e

    if not is_admin_claims(payload):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return Caller(kind="admin", subject=str(payload.get("sub")), email=payload.get("email"))


def require_admin(authorization: Annotated[str | None, Header()] = None) -> Caller:
    """Dependency requiring an admin bearer token."""
    return _admin_from_header(authorization)


def require_cron_or_admin(
    x_cron_secret: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> Caller:
    """Dependency accepting either the cron shared secret or an admin bearer token."""
    if x_cron_secret is not None:
        if not verify_cron_secret(x_cron_secret):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid cron secret",
            )
        return Caller(kind="cron", subject="cron")
    return _admin_from_header(authorization)
