from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .contracts import NotOnboarded, TenantContext
from .errors import NotOnboardedError

if TYPE_CHECKING:
    from ..repository import PortalRepository

logger = logging.getLogger(__name__)


class TenantResolver:
    """Map an actor to the single account that owns their data."""

    def __init__(self, repository: PortalRepository) -> None:
        self._repository = repository

    def resolve(self, actor_id: str) -> TenantContext | NotOnboarded:
        """Return the actor's tenant scope, or ``NotOnboarded`` while setup is pending.

        A missing user row counts as pending setup: the identity provider
        knows the actor, but onboarding has not created their profile yet.
        """
        user = self._repository.get_user(actor_id)
        if user is None or user.account_id is None:
            logger.debug("actor %s has no account", actor_id)
            return NotOnboarded(actor_id=actor_id)
        return TenantContext(actor_id=actor_id, account_id=user.account_id, role=user.role)

    def require(self, actor_id: str) -> TenantContext:
        resolution = self.resolve(actor_id)
        if isinstance(resolution, NotOnboarded):
            raise NotOnboardedError(actor_id)
        return resolution
