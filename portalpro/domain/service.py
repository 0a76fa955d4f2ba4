"""Portal service orchestrating tenant scoping, persistence, storage and auditing."""

from __future__ import annotations

import logging
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from threading import Event
import json
from typing import Optional, Sequence, Tuple

import jwt
from email_validator import EmailNotValidError, validate_email

from ..config import Settings, get_settings
from ..repository import AuditLogRecord, PortalRepository
from ..security.tokens import decode_invitation_token, issue_invitation_token
from ..storage import ObjectStore
from .billing import InvoiceSummary, can_transition, summarize_invoices
from .contracts import (
    Actor,
    CreateInvoiceInput,
    InviteClientInput,
    NotOnboarded,
    SetupAccountInput,
    TenantContext,
    UploadItem,
)
from .errors import (
    ConflictError,
    NotFoundError,
    SlugTakenError,
    StorageError,
    ValidationError,
)
from .guard import Operation, ResourceRef, ScopeGuard
from .models import (
    Account,
    AccountSummary,
    Client,
    Folder,
    Invoice,
    InvoiceStatus,
    Portal,
    PortalFile,
    PortalStats,
    User,
)
from .slugs import Allocated, InvalidSlug, SlugAllocator
from .tenancy import TenantResolver
from .uploads import BatchResult, UploadOrchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PortalOverview:
    portal: Portal
    stats: PortalStats
    public_url: str


@dataclass(slots=True)
class Invitation:
    """A freshly invited client and the token the email collaborator delivers."""

    client: Client
    token: str


@dataclass(slots=True)
class FolderListing:
    folder: Folder | None
    folders: list[Folder]
    files: list[PortalFile]


class PortalService:
    """Tenant-scoped portal workflows.

    Every method taking a :class:`TenantContext` authorizes through the
    :class:`ScopeGuard` before touching a resource; callers resolve the tenant
    once per request and pass it in.
    """

    def __init__(
        self,
        repository: PortalRepository,
        store: ObjectStore,
        settings: Settings | None = None,
    ) -> None:
        """Wire the access-control core around the store collaborators."""
        self._repository = repository
        self._store = store
        self._settings = settings or get_settings()
        self.tenants = TenantResolver(repository)
        self.guard = ScopeGuard(repository, on_broken_chain=self._report_broken_chain)
        self.slugs = SlugAllocator(repository)
        self.uploads = UploadOrchestrator(
            repository,
            store,
            self.guard,
            workers=self._settings.upload_workers,
            max_file_bytes=self._settings.max_upload_bytes,
        )

    # -- tenancy ----------------------------------------------------------

    def resolve_tenant(self, actor_id: str) -> TenantContext | NotOnboarded:
        return self.tenants.resolve(actor_id)

    def require_tenant(self, actor_id: str) -> TenantContext:
        return self.tenants.require(actor_id)

    def complete_setup(self, actor: Actor, payload: SetupAccountInput) -> Tuple[Account, User]:
        """Create the actor's account and make them its owner, exactly once."""
        account_name = payload.account_name.strip()
        user_name = payload.user_name.strip()
        if not account_name:
            raise ValidationError("Company name is required.", field="account_name")
        if not user_name:
            raise ValidationError("Your name is required.", field="user_name")

        existing = self._repository.get_user(actor.actor_id)
        if existing is not None and existing.onboarded:
            raise ConflictError("account setup already completed")
        email = actor.email or (existing.email if existing else None)
        if not email:
            raise ValidationError("An email address is required to complete setup.", field="email")

        result = self._repository.complete_setup(
            user_id=actor.actor_id,
            email=email,
            user_name=user_name,
            account_name=account_name,
        )
        if result is None:
            raise ConflictError("account setup already completed")
        account, user = result
        self._repository.write_audit_event(
            account_id=account.account_id,
            portal_id=None,
            event_type="account.created",
            actor=actor.actor_id,
            metadata={"name": account.name, "plan": account.plan.value},
        )
        logger.info("actor %s completed setup for account %s", actor.actor_id, account.account_id)
        return account, user

    def dashboard(self, tenant: TenantContext) -> AccountSummary:
        return self._repository.account_summary(tenant.account_id)

    # -- portals ----------------------------------------------------------

    def list_portals(self, tenant: TenantContext) -> list[Portal]:
        return self._repository.list_portals(tenant.account_id)

    def create_portal(
        self,
        tenant: TenantContext,
        name: str,
        slug: str | None = None,
        custom_domain: str | None = None,
    ) -> Portal:
        result = self.slugs.allocate(tenant, name, slug=slug, custom_domain=custom_domain)
        if isinstance(result, InvalidSlug):
            raise ValidationError(result.reason, field="slug")
        if not isinstance(result, Allocated):
            raise SlugTakenError(result.slug)
        portal = result.portal
        self._repository.write_audit_event(
            account_id=tenant.account_id,
            portal_id=portal.portal_id,
            event_type="portal.created",
            actor=tenant.actor_id,
            metadata={"slug": portal.slug, "name": portal.name},
        )
        return portal

    def get_portal_overview(self, tenant: TenantContext, portal_id: str) -> PortalOverview:
        portal: Portal = self.guard.require(tenant, ResourceRef.portal(portal_id), Operation.READ)
        return PortalOverview(
            portal=portal,
            stats=self._repository.portal_stats(portal.portal_id),
            public_url=self.public_url(portal),
        )

    def public_url(self, portal: Portal) -> str:
        return f"https://{portal.slug}.{self._settings.portal_domain}"

    def portal_activity(
        self,
        tenant: TenantContext,
        portal_id: str,
        *,
        limit: int = 20,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return the portal's recent activity, newest first, with an opaque cursor."""
        self.guard.require(tenant, ResourceRef.portal(portal_id), Operation.READ)
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._repository.list_audit_events(
            account_id=tenant.account_id,
            portal_id=portal_id,
            limit=limit,
            cursor=decoded_cursor,
        )
        return records, self._encode_cursor(next_cursor_tuple)

    # -- clients ----------------------------------------------------------

    def invite_client(self, tenant: TenantContext, payload: InviteClientInput) -> Invitation:
        """Create an invited client; a second invite of the same email to the portal conflicts."""
        self.guard.require(tenant, ResourceRef.portal(payload.portal_id), Operation.WRITE)
        name = payload.name.strip()
        if not name:
            raise ValidationError("Client name is required.", field="name")
        try:
            email = validate_email(payload.email.strip(), check_deliverability=False).normalized
        except EmailNotValidError as exc:
            raise ValidationError(str(exc), field="email") from exc
        email = email.lower()

        client = self._repository.insert_client(
            portal_id=payload.portal_id,
            name=name,
            email=email,
            company=(payload.company or "").strip() or None,
        )
        if client is None:
            raise ConflictError("A client with this email already exists in this portal.")

        self._repository.write_audit_event(
            account_id=tenant.account_id,
            portal_id=client.portal_id,
            event_type="client.invited",
            actor=tenant.actor_id,
            metadata={"client_id": client.client_id, "email": client.email},
        )
        token = issue_invitation_token(
            client_id=client.client_id, portal_id=client.portal_id, email=client.email
        )
        return Invitation(client=client, token=token)

    def accept_invitation(self, token: str) -> Client:
        """Move the invited client to active; accepting again keeps the first timestamp."""
        try:
            claims = decode_invitation_token(token)
        except jwt.PyJWTError as exc:
            raise ValidationError("invalid or expired invitation", field="token") from exc

        current = self._repository.get_client(claims["sub"])
        if current is None or current.portal_id != claims.get("portal_id"):
            raise NotFoundError("client", claims["sub"])
        if current.is_active:
            return current

        client = self._repository.activate_client(current.client_id, datetime.now(timezone.utc))
        if client is None:
            raise NotFoundError("client", current.client_id)
        portal = self._repository.get_portal(client.portal_id)
        self._repository.write_audit_event(
            account_id=portal.account_id if portal else None,
            portal_id=client.portal_id,
            event_type="client.accepted",
            actor=client.email,
            metadata={"client_id": client.client_id},
        )
        return client

    def list_clients(self, tenant: TenantContext, portal_id: str | None = None) -> list[Client]:
        if portal_id:
            self.guard.require(tenant, ResourceRef.portal(portal_id), Operation.READ)
        return self._repository.list_clients(tenant.account_id, portal_id)

    # -- folders and files -----------------------------------------------

    def create_folder(
        self, tenant: TenantContext, portal_id: str, name: str, parent_id: str | None = None
    ) -> Folder:
        self.guard.require(tenant, ResourceRef.portal(portal_id), Operation.WRITE)
        if parent_id:
            self.guard.require(tenant, ResourceRef.folder(parent_id, portal_id=portal_id), Operation.WRITE)
        name = name.strip()
        if not name or "/" in name:
            raise ValidationError("Folder name must be non-empty and contain no '/'.", field="name")
        folder = self._repository.insert_folder(portal_id=portal_id, parent_id=parent_id, name=name)
        self._repository.write_audit_event(
            account_id=tenant.account_id,
            portal_id=portal_id,
            event_type="folder.created",
            actor=tenant.actor_id,
            metadata={"folder_id": folder.folder_id, "name": folder.name},
        )
        return folder

    def list_folder(
        self, tenant: TenantContext, portal_id: str, folder_id: str | None = None
    ) -> FolderListing:
        self.guard.require(tenant, ResourceRef.portal(portal_id), Operation.READ)
        folder: Folder | None = None
        if folder_id:
            folder = self.guard.require(
                tenant, ResourceRef.folder(folder_id, portal_id=portal_id), Operation.READ
            )
        return FolderListing(
            folder=folder,
            folders=self._repository.list_folders(portal_id, folder_id),
            files=self._repository.list_files(portal_id, folder_id),
        )

    def upload_files(
        self,
        tenant: TenantContext,
        portal_id: str,
        items: Sequence[UploadItem],
        folder_id: str | None = None,
        cancel: Event | None = None,
    ) -> BatchResult:
        return self.uploads.upload_batch(tenant, portal_id, folder_id, items, cancel=cancel)

    def download_file(self, tenant: TenantContext, file_id: str) -> tuple[PortalFile, bytes]:
        stored: PortalFile = self.guard.require(tenant, ResourceRef.file(file_id), Operation.READ)
        return stored, self._store.get(stored.storage_path)

    def delete_file(self, tenant: TenantContext, file_id: str) -> None:
        """Delete the metadata row, then the blob; a blob left behind is reported as orphaned."""
        stored: PortalFile = self.guard.require(tenant, ResourceRef.file(file_id), Operation.DELETE)
        if not self._repository.delete_file(stored.file_id):
            raise NotFoundError("file", file_id)
        self._repository.write_audit_event(
            account_id=tenant.account_id,
            portal_id=stored.portal_id,
            event_type="file.deleted",
            actor=tenant.actor_id,
            metadata={"file_id": stored.file_id, "name": stored.name},
        )
        try:
            self._store.delete(stored.storage_path)
        except StorageError as exc:
            logger.warning("blob %s left orphaned after delete: %s", stored.storage_path, exc)
            self._repository.write_audit_event(
                account_id=tenant.account_id,
                portal_id=stored.portal_id,
                event_type="file.orphaned",
                actor=tenant.actor_id,
                metadata={"storage_path": stored.storage_path, "stage": "delete"},
            )

    # -- invoices ---------------------------------------------------------

    def create_invoice(self, tenant: TenantContext, payload: CreateInvoiceInput) -> Invoice:
        self.guard.require(
            tenant,
            ResourceRef.client(payload.client_id, portal_id=payload.portal_id),
            Operation.WRITE,
        )
        number = payload.number.strip()
        if not number:
            raise ValidationError("Invoice number is required.", field="number")
        total = Decimal(payload.total)
        if total < 0:
            raise ValidationError("Invoice total cannot be negative.", field="total")

        invoice = self._repository.insert_invoice(
            account_id=tenant.account_id,
            portal_id=payload.portal_id,
            client_id=payload.client_id,
            number=number,
            total=total,
            due_date=payload.due_date,
        )
        if invoice is None:
            raise ConflictError(f"Invoice number {number} is already in use.")
        self._repository.write_audit_event(
            account_id=tenant.account_id,
            portal_id=invoice.portal_id,
            event_type="invoice.created",
            actor=tenant.actor_id,
            metadata={"invoice_id": invoice.invoice_id, "number": invoice.number},
        )
        return invoice

    def list_invoices(
        self, tenant: TenantContext, portal_id: str | None = None
    ) -> tuple[list[Invoice], InvoiceSummary]:
        if portal_id:
            self.guard.require(tenant, ResourceRef.portal(portal_id), Operation.READ)
        invoices = self._repository.list_invoices(tenant.account_id, portal_id)
        return invoices, summarize_invoices(invoices)

    def update_invoice_status(
        self, tenant: TenantContext, invoice_id: str, status: InvoiceStatus
    ) -> Invoice:
        invoice: Invoice = self.guard.require(
            tenant, ResourceRef.invoice(invoice_id), Operation.WRITE
        )
        if not can_transition(invoice.status, status):
            raise ValidationError(
                f"cannot move invoice from {invoice.status.value} to {status.value}",
                field="status",
            )
        updated = self._repository.update_invoice_status(invoice.invoice_id, invoice.status, status)
        if updated is None:
            raise ConflictError("invoice was modified concurrently; reload and retry")
        self._repository.write_audit_event(
            account_id=tenant.account_id,
            portal_id=updated.portal_id,
            event_type="invoice.status_changed",
            actor=tenant.actor_id,
            metadata={"from": invoice.status.value, "to": status.value},
        )
        return updated

    # -- internals --------------------------------------------------------

    def _report_broken_chain(self, tenant: TenantContext, ref: ResourceRef, detail: str) -> None:
        self._repository.write_audit_event(
            account_id=tenant.account_id,
            portal_id=None,
            event_type="integrity.broken_chain",
            actor=tenant.actor_id,
            metadata={"kind": ref.kind.value, "resource_id": ref.id, "detail": detail},
        )

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            return datetime.fromisoformat(data["created_at"]), int(data["audit_id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ValidationError("invalid cursor", field="cursor") from exc
