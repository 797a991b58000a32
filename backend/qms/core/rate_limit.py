"""Shared rate limiter instance for use across route files.

Authenticated staff are limited per user, so a counter display polling the
status endpoint from behind a shared NAT does not starve its neighbours.
Anonymous callers (the kiosk endpoint) are limited per client address.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from qms.core.config import settings
from qms.core.security import decode_access_token


def rate_limit_key(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        payload = decode_access_token(auth_header.split(" ", 1)[1])
        if payload and payload.get("sub"):
            return f"user:{payload['sub']}"
    return get_remote_address(request)


limiter = Limiter(key_func=rate_limit_key, enabled=settings.rate_limit_enabled)
