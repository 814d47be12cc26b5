"""Rate limiter configuration shared across all routers."""

import hashlib
from typing import Optional
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


def get_rate_limit_key(request: Request) -> str:
    """
    Get rate limit key from request.

    Uses the session token if present, otherwise the client IP (first
    X-Forwarded-For hop behind a proxy). Tokens are hashed to avoid
    storing raw secrets.
    """
    authz = request.headers.get("Authorization")

    bearer_token: Optional[str] = None
    if authz and authz.lower().startswith("bearer "):
        bearer_token = authz.split(" ", 1)[1].strip() or None

    if bearer_token:
        return "session:" + hashlib.sha256(bearer_token.encode("utf-8")).hexdigest()

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(key_func=get_rate_limit_key)
