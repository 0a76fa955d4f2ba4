"""Resolve the current actor from an opaque request credential."""

from __future__ import annotations

import logging

import jwt

from ..domain.contracts import Actor
from .tokens import decode_access_token

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Bearer-token identity collaborator.

    Token issuance belongs to the identity provider; this side only verifies
    signature, issuer and expiry and extracts the actor id.
    """

    scheme = "bearer"

    def current_actor(self, authorization: str | None) -> Actor | None:
        """Return the actor behind an ``Authorization`` header, or ``None``."""
        if not authorization:
            return None
        scheme, _, credential = authorization.partition(" ")
        if scheme.lower() != self.scheme or not credential.strip():
            logger.debug("unsupported authorization scheme %r", scheme)
            return None
        try:
            claims = decode_access_token(credential.strip())
        except jwt.PyJWTError as exc:
            logger.debug("rejected access token: %s", exc)
            return None
        return Actor(actor_id=str(claims["sub"]), email=claims.get("email"))
