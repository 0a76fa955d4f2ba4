"""Portal slug derivation and allocation.

A slug names the portal's subdomain (``<slug>.<portal_domain>``), so it is
unique across every tenant, not only within one account, and it never changes
after creation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .contracts import TenantContext
from .errors import ValidationError
from .models import Portal

if TYPE_CHECKING:
    from ..repository import PortalRepository

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")
MAX_SLUG_LENGTH = 63  # one DNS label
_NON_SLUG_RUN = re.compile(r"[^a-z0-9]+")


def derive_slug(name: str) -> str:
    """``"My Client Portal!!"`` becomes ``"my-client-portal"``."""
    return _NON_SLUG_RUN.sub("-", name.lower()).strip("-")


def validate_slug(slug: str) -> str | None:
    """Return why ``slug`` is unusable, or ``None`` when it is valid."""
    if not slug:
        return "Slug is required."
    if not SLUG_PATTERN.match(slug):
        return "Invalid slug. Use only lowercase letters, numbers, and hyphens."
    if len(slug) > MAX_SLUG_LENGTH:
        return f"Slug must be at most {MAX_SLUG_LENGTH} characters."
    return None


@dataclass(frozen=True, slots=True)
class Allocated:
    portal: Portal


@dataclass(frozen=True, slots=True)
class InvalidSlug:
    slug: str
    reason: str


@dataclass(frozen=True, slots=True)
class SlugTaken:
    slug: str


AllocationResult = Allocated | InvalidSlug | SlugTaken


class SlugAllocator:
    """Claim a slug and create its portal in one conditional insert.

    There is no existence query ahead of the insert: the unique constraint on
    ``portals.slug`` decides, so of N concurrent callers for the same slug
    exactly one gets :class:`Allocated`.
    """

    def __init__(self, repository: PortalRepository) -> None:
        self._repository = repository

    def allocate(
        self,
        tenant: TenantContext,
        name: str,
        slug: str | None = None,
        custom_domain: str | None = None,
    ) -> AllocationResult:
        name = name.strip()
        if not name:
            raise ValidationError("Portal name is required.", field="name")

        candidate = derive_slug(name) if slug is None else slug.strip()
        reason = validate_slug(candidate)
        if reason is not None:
            return InvalidSlug(slug=candidate, reason=reason)

        portal = self._repository.insert_portal(
            account_id=tenant.account_id,
            name=name,
            slug=candidate,
            created_by_id=tenant.actor_id,
            custom_domain=(custom_domain or "").strip().lower() or None,
        )
        if portal is None:
            logger.info("slug %s already taken", candidate)
            return SlugTaken(slug=candidate)
        logger.info("allocated slug %s for account %s", candidate, tenant.account_id)
        return Allocated(portal=portal)
