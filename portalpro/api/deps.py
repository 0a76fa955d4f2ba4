"""Request-scoped dependencies: actor, tenant and service resolution.

Handlers that touch tenant data depend on :func:`current_tenant`, which runs
before the handler body and hands it an explicit :class:`TenantContext`.
"""

from __future__ import annotations

from fastapi import Depends, Header, Request

from ..domain.contracts import Actor, TenantContext
from ..domain.errors import UnauthenticatedError
from ..domain.service import PortalService
from ..security.identity import IdentityResolver

identity = IdentityResolver()


def get_service(request: Request) -> PortalService:
    """Resolve the `PortalService` stored on the FastAPI application state."""
    service: PortalService = request.app.state.portal_service
    return service


def current_actor(authorization: str | None = Header(default=None)) -> Actor:
    actor = identity.current_actor(authorization)
    if actor is None:
        raise UnauthenticatedError()
    return actor


def current_tenant(
    actor: Actor = Depends(current_actor),
    service: PortalService = Depends(get_service),
) -> TenantContext:
    return service.require_tenant(actor.actor_id)
