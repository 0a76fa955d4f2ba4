"""Utilities for issuing and validating application JWTs."""

from __future__ import annotations

import time
from typing import Any

import jwt

from ..config import get_settings

INVITE_PURPOSE = "invite"


def issue_access_token(*, subject: str, email: str | None = None) -> tuple[str, int]:
    """Create a signed JWT representing an authenticated actor.

    Parameters
    ----------
    subject:
        Actor identifier to embed in the token `sub` claim.
    email:
        Optional email claim; used to seed the user row during setup.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = settings.jwt_ttl_seconds
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": subject,
        "iat": now,
        "exp": now + expires_in,
    }
    if email:
        payload["email"] = email

    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    claims = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "exp"]},
    )
    if claims.get("purpose"):
        # invitation tokens share the signing key but never authenticate an actor
        raise jwt.InvalidTokenError("not an access token")
    return claims


def issue_invitation_token(*, client_id: str, portal_id: str, email: str) -> str:
    """Sign a single-purpose token the invited client presents to accept."""
    settings = get_settings()
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": client_id,
        "portal_id": portal_id,
        "email": email,
        "purpose": INVITE_PURPOSE,
        "iat": now,
        "exp": now + settings.invite_ttl_seconds,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_invitation_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    claims = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "exp", "purpose"]},
    )
    if claims["purpose"] != INVITE_PURPOSE:
        raise jwt.InvalidTokenError("not an invitation token")
    return claims
