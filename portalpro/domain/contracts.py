"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from .models import Role


@dataclass(slots=True, frozen=True)
class Actor:
    """Identity resolved from the request credential."""

    actor_id: str
    email: str | None = None


@dataclass(slots=True, frozen=True)
class TenantContext:
    """Resolved tenant scope passed explicitly to every tenant-owned operation."""

    actor_id: str
    account_id: str
    role: Role = Role.OWNER


@dataclass(slots=True, frozen=True)
class NotOnboarded:
    """Marker returned for actors without an account reference."""

    actor_id: str


@dataclass(slots=True)
class SetupAccountInput:
    account_name: str
    user_name: str


@dataclass(slots=True)
class InviteClientInput:
    portal_id: str
    name: str
    email: str
    company: str | None = None


@dataclass(slots=True)
class CreateInvoiceInput:
    portal_id: str
    client_id: str
    number: str
    total: Decimal
    due_date: date


@dataclass(slots=True)
class UploadItem:
    """One client-supplied file in an upload batch."""

    name: str
    content: bytes
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)
