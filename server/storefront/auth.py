"""
Storefront Authentication

- Customer sessions: short-lived HS256 JWTs issued after OTP or Google login
- Admin access: env-configured service keys (X-API-Key) or a customer
  session whose user has role 'admin'
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader, HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from .settings import settings
from . import db


logger = logging.getLogger(__name__)

# Security headers
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)

SESSION_TOKEN_KIND = "storefront_session"


class UserContext(BaseModel):
    """
    Authenticated caller context.
    """
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"
    is_admin: bool = False
    via_api_key: bool = False  # True for env service keys (no customer account)


def create_session_token(user: dict, now: Optional[datetime] = None) -> str:
    """Sign a session token for a user row (id, email, name, role)."""
    now = now or datetime.now(timezone.utc)
    claims = {
        "kind": SESSION_TOKEN_KIND,
        "sub": str(user["id"]),
        "email": user["email"],
        "name": user.get("name") or "",
        "role": user.get("role") or "user",
        "iat": now,
        "exp": now + timedelta(seconds=settings.session_ttl_seconds),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_session_token(token: str) -> dict:
    """Verify signature and expiry. Raises jwt.InvalidTokenError."""
    claims = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        options={"require": ["exp", "iat", "sub"]},
    )
    if claims.get("kind") != SESSION_TOKEN_KIND:
        raise jwt.InvalidTokenError("Not a session token")
    return claims


def _context_from_token(token: str) -> UserContext:
    try:
        claims = decode_session_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired. Please sign in again.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return UserContext(
        user_id=claims["sub"],
        email=claims.get("email"),
        name=claims.get("name"),
        role=claims.get("role", "user"),
    )


async def get_current_user(
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> UserContext:
    """Require a customer session (Authorization: Bearer <token>)."""
    if not bearer or not bearer.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized. Please sign in.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _context_from_token(bearer.credentials)


async def get_optional_user(
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[UserContext]:
    if not bearer or not bearer.credentials:
        return None
    try:
        return _context_from_token(bearer.credentials)
    except HTTPException:
        return None


async def require_admin(
    api_key: Optional[str] = Depends(api_key_header),
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> UserContext:
    """
    Admin access.

    Service keys are accepted as-is. For customer sessions the role is
    re-read from the database so a revoked admin loses access immediately.
    """
    if api_key:
        if api_key in settings.api_keys:
            return UserContext(role="admin", is_admin=True, via_api_key=True)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required.",
        )

    if not bearer or not bearer.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized. Please sign in.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = _context_from_token(bearer.credentials)
    try:
        row = await db.get_user_by_id(user.user_id)
    except Exception as e:
        logger.error(f"[auth] Admin role lookup failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to verify admin access.",
        )
    if not row or row.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required.",
        )
    user.role = "admin"
    user.is_admin = True
    return user
