"""Aggregates owned by a tenant, mirroring the rows of the relational store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum


class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class Plan(str, Enum):
    STARTER = "STARTER"
    PROFESSIONAL = "PROFESSIONAL"
    ENTERPRISE = "ENTERPRISE"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    VIEWED = "VIEWED"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


@dataclass(slots=True)
class Account:
    """Billing and ownership root for one organization."""

    account_id: str
    name: str
    plan: Plan
    created_at: datetime


@dataclass(slots=True)
class User:
    """Actor profile; ``account_id`` is ``None`` while setup is pending."""

    user_id: str
    email: str
    name: str | None
    account_id: str | None
    role: Role

    @property
    def onboarded(self) -> bool:
        return self.account_id is not None


@dataclass(slots=True)
class Portal:
    portal_id: str
    account_id: str
    name: str
    slug: str
    custom_domain: str | None
    is_active: bool
    created_at: datetime
    created_by_id: str


@dataclass(slots=True)
class Client:
    """Portal guest; ``accepted_at`` is ``None`` until the invitation is accepted."""

    client_id: str
    portal_id: str
    name: str
    email: str
    company: str | None
    accepted_at: datetime | None
    created_at: datetime

    @property
    def is_active(self) -> bool:
        return self.accepted_at is not None


@dataclass(slots=True)
class Folder:
    folder_id: str
    portal_id: str
    parent_id: str | None
    name: str
    created_at: datetime


@dataclass(slots=True)
class PortalFile:
    """Metadata row for a blob held in the object store."""

    file_id: str
    portal_id: str
    folder_id: str | None
    name: str
    mime_type: str
    size: int
    storage_path: str
    uploaded_by_id: str
    created_at: datetime


@dataclass(slots=True)
class Invoice:
    invoice_id: str
    account_id: str
    portal_id: str
    client_id: str
    number: str
    total: Decimal
    status: InvoiceStatus
    due_date: date
    created_at: datetime


@dataclass(slots=True)
class PortalStats:
    clients: int = 0
    files: int = 0
    invoices: int = 0


@dataclass(slots=True)
class AccountSummary:
    portals: int = 0
    clients: int = 0
    files: int = 0
    invoices: int = 0
