"""
Google sign-in: ID token verification via the tokeninfo endpoint.
"""

import logging
from typing import Optional

import httpx

from ..settings import settings


logger = logging.getLogger(__name__)

VALID_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}


class OAuthError(Exception):
    pass


async def verify_google_id_token(
    id_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """
    Verify a Google ID token and return {email, name, picture, sub}.

    Raises OAuthError when the token is invalid, issued for another client
    or belongs to an unverified email.
    """
    if not settings.google_client_id:
        raise OAuthError("Google sign-in is not configured")

    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        try:
            response = await client.get(settings.google_tokeninfo_url, params={"id_token": id_token})
        except httpx.HTTPError as e:
            logger.error(f"[oauth] tokeninfo request failed: {e}")
            raise OAuthError("Could not reach Google") from e

    if response.status_code != 200:
        raise OAuthError("Invalid Google token")

    claims = response.json()
    if claims.get("aud") != settings.google_client_id:
        raise OAuthError("Google token was issued for a different client")
    if claims.get("iss") not in VALID_ISSUERS:
        raise OAuthError("Unexpected token issuer")
    if str(claims.get("email_verified")).lower() != "true":
        raise OAuthError("Google account email is not verified")

    return {
        "email": claims["email"].lower(),
        "name": claims.get("name") or claims["email"].split("@")[0],
        "picture": claims.get("picture"),
        "sub": claims["sub"],
    }
