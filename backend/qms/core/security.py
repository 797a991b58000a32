"""JWT access tokens for staff and admin users.

Every token carries the tenant it was issued for (``org``) next to the user
id (``sub``) and role, so queue endpoints never have to look the user up to
scope a request to its organization.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from jwt.exceptions import PyJWTError

from qms.core.config import settings

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ("sub", "org", "role")


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Sign *data* with an expiry (one shift by default) and a unique JTI."""
    now = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    claims = {
        **data,
        "iat": now,
        "exp": now + lifetime,
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def create_staff_token(
    user_id: int,
    organization_id: int,
    role: str,
    username: str = "",
    expires_delta: timedelta | None = None,
) -> str:
    """Access token for a staff member of one organization."""
    return create_access_token(
        {"sub": str(user_id), "org": organization_id, "role": role, "username": username},
        expires_delta,
    )


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Verified claims, or None when the token is invalid, expired or not a staff token."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"require": ["exp", "sub"]},
        )
    except PyJWTError as e:
        logger.debug(f"Rejected access token: {e}")
        return None

    missing = [claim for claim in REQUIRED_CLAIMS if payload.get(claim) in (None, "")]
    if missing:
        logger.debug(f"Rejected access token: missing claims {missing}")
        return None
    return payload
