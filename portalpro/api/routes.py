"""HTTP route definitions for the portal service."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from pydantic import BaseModel, EmailStr, Field

from ..config import get_settings
from ..domain.billing import InvoiceSummary
from ..domain.contracts import (
    Actor,
    CreateInvoiceInput,
    InviteClientInput,
    SetupAccountInput,
    TenantContext,
    UploadItem,
)
from ..domain.formatting import format_currency, format_file_size
from ..domain.models import (
    Account,
    Client,
    Folder,
    Invoice,
    InvoiceStatus,
    Portal,
    PortalFile,
    User,
)
from ..domain.service import PortalService
from ..domain.uploads import UploadOutcome, sanitize_filename
from ..repository import AuditLogRecord
from ..security.rate_limiter import build_rate_limiter, rate_key
from .deps import current_actor, current_tenant, get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


class AccountResponse(BaseModel):
    account_id: str
    name: str
    plan: str
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        return cls(
            account_id=account.account_id,
            name=account.name,
            plan=account.plan.value,
            created_at=account.created_at,
        )


class UserResponse(BaseModel):
    user_id: str
    email: str
    name: str | None
    account_id: str | None
    role: str

    @classmethod
    def from_domain(cls, user: User) -> "UserResponse":
        return cls(
            user_id=user.user_id,
            email=user.email,
            name=user.name,
            account_id=user.account_id,
            role=user.role.value,
        )


class SetupRequest(BaseModel):
    """Onboarding form: company name and the owner's display name."""

    account_name: str = Field(..., min_length=1, max_length=200)
    user_name: str = Field(..., min_length=1, max_length=200)


class SetupResponse(BaseModel):
    account: AccountResponse
    user: UserResponse


class DashboardResponse(BaseModel):
    portals: int
    clients: int
    files: int
    invoices: int


class PortalResponse(BaseModel):
    """Serialised representation of a `Portal` aggregate."""

    id: str
    account_id: str
    name: str
    slug: str
    custom_domain: str | None
    is_active: bool
    created_at: datetime
    created_by_id: str
    public_url: str

    @classmethod
    def from_domain(cls, portal: Portal, public_url: str) -> "PortalResponse":
        return cls(
            id=portal.portal_id,
            account_id=portal.account_id,
            name=portal.name,
            slug=portal.slug,
            custom_domain=portal.custom_domain,
            is_active=portal.is_active,
            created_at=portal.created_at,
            created_by_id=portal.created_by_id,
            public_url=public_url,
        )


class CreatePortalRequest(BaseModel):
    """Portal form; the slug is derived from the name when omitted."""

    name: str = Field(..., max_length=200)
    slug: str | None = None
    custom_domain: str | None = Field(default=None, max_length=253)


class PortalOverviewResponse(BaseModel):
    portal: PortalResponse
    stats: dict[str, int]


class ClientResponse(BaseModel):
    id: str
    portal_id: str
    name: str
    email: str
    company: str | None
    accepted_at: datetime | None
    status: str
    created_at: datetime

    @classmethod
    def from_domain(cls, client: Client) -> "ClientResponse":
        return cls(
            id=client.client_id,
            portal_id=client.portal_id,
            name=client.name,
            email=client.email,
            company=client.company,
            accepted_at=client.accepted_at,
            status="active" if client.is_active else "invited",
            created_at=client.created_at,
        )


class InviteClientRequest(BaseModel):
    name: str = Field(..., max_length=200)
    email: EmailStr
    company: str | None = Field(default=None, max_length=200)


class InvitationResponse(BaseModel):
    client: ClientResponse
    invitation_token: str


class AcceptInvitationRequest(BaseModel):
    token: str


class FolderResponse(BaseModel):
    id: str
    portal_id: str
    parent_id: str | None
    name: str
    created_at: datetime

    @classmethod
    def from_domain(cls, folder: Folder) -> "FolderResponse":
        return cls(
            id=folder.folder_id,
            portal_id=folder.portal_id,
            parent_id=folder.parent_id,
            name=folder.name,
            created_at=folder.created_at,
        )


class CreateFolderRequest(BaseModel):
    name: str = Field(..., max_length=255)
    parent_id: str | None = None


class FileResponse(BaseModel):
    id: str
    portal_id: str
    folder_id: str | None
    name: str
    mime_type: str
    size: int
    size_display: str
    uploaded_by_id: str
    created_at: datetime

    @classmethod
    def from_domain(cls, stored: PortalFile) -> "FileResponse":
        return cls(
            id=stored.file_id,
            portal_id=stored.portal_id,
            folder_id=stored.folder_id,
            name=stored.name,
            mime_type=stored.mime_type,
            size=stored.size,
            size_display=format_file_size(stored.size),
            uploaded_by_id=stored.uploaded_by_id,
            created_at=stored.created_at,
        )


class FolderContentsResponse(BaseModel):
    folder: FolderResponse | None
    folders: list[FolderResponse]
    files: list[FileResponse]


class UploadOutcomeResponse(BaseModel):
    name: str
    status: str
    file: FileResponse | None = None
    reason: str | None = None
    orphaned_path: str | None = None

    @classmethod
    def from_domain(cls, outcome: UploadOutcome) -> "UploadOutcomeResponse":
        return cls(
            name=outcome.name,
            status=outcome.status.value,
            file=FileResponse.from_domain(outcome.file) if outcome.file else None,
            reason=outcome.reason,
            orphaned_path=outcome.orphaned_path,
        )


class UploadBatchResponse(BaseModel):
    results: list[UploadOutcomeResponse]
    uploaded: int
    failed: int


class InvoiceResponse(BaseModel):
    id: str
    account_id: str
    portal_id: str
    client_id: str
    number: str
    total: Decimal
    total_display: str
    status: InvoiceStatus
    due_date: date
    created_at: datetime

    @classmethod
    def from_domain(cls, invoice: Invoice) -> "InvoiceResponse":
        return cls(
            id=invoice.invoice_id,
            account_id=invoice.account_id,
            portal_id=invoice.portal_id,
            client_id=invoice.client_id,
            number=invoice.number,
            total=invoice.total,
            total_display=format_currency(invoice.total),
            status=invoice.status,
            due_date=invoice.due_date,
            created_at=invoice.created_at,
        )


class InvoiceSummaryResponse(BaseModel):
    total: int
    paid: int
    outstanding: int
    overdue: int
    paid_amount: str
    outstanding_amount: str
    overdue_amount: str

    @classmethod
    def from_domain(cls, summary: InvoiceSummary) -> "InvoiceSummaryResponse":
        return cls(
            total=summary.total,
            paid=summary.paid,
            outstanding=summary.outstanding,
            overdue=summary.overdue,
            paid_amount=format_currency(summary.paid_amount),
            outstanding_amount=format_currency(summary.outstanding_amount),
            overdue_amount=format_currency(summary.overdue_amount),
        )


class InvoiceListResponse(BaseModel):
    items: list[InvoiceResponse]
    summary: InvoiceSummaryResponse


class CreateInvoiceRequest(BaseModel):
    portal_id: str
    client_id: str
    number: str = Field(..., max_length=64)
    total: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    due_date: date


class UpdateInvoiceRequest(BaseModel):
    status: InvoiceStatus


class ActivityEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    portal_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_record(cls, record: AuditLogRecord) -> "ActivityEntry":
        return cls(
            audit_id=record.audit_id,
            portal_id=record.portal_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )


class ActivityResponse(BaseModel):
    """Envelope for paginated activity data."""

    items: list[ActivityEntry]
    next_cursor: str | None = None


settings = get_settings()
rate_limiter = build_rate_limiter(settings)


def _enforce_rate_limit(action: str, tenant: TenantContext) -> None:
    if not rate_limiter.allow(rate_key(action, tenant.account_id)):
        logger.info("rate limited %s for account %s", action, tenant.account_id)
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


@router.post("/setup", response_model=SetupResponse, status_code=status.HTTP_201_CREATED)
def complete_setup(
    payload: SetupRequest,
    actor: Actor = Depends(current_actor),
    service: PortalService = Depends(get_service),
) -> SetupResponse:
    """Create the caller's account and make them its owner."""
    account, user = service.complete_setup(
        actor, SetupAccountInput(account_name=payload.account_name, user_name=payload.user_name)
    )
    return SetupResponse(account=AccountResponse.from_domain(account), user=UserResponse.from_domain(user))


@router.get("/dashboard", response_model=DashboardResponse)
def dashboard(
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> DashboardResponse:
    summary = service.dashboard(tenant)
    return DashboardResponse(
        portals=summary.portals,
        clients=summary.clients,
        files=summary.files,
        invoices=summary.invoices,
    )


@router.get("/portals", response_model=list[PortalResponse])
def list_portals(
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> list[PortalResponse]:
    """List the caller's portals, newest first."""
    return [
        PortalResponse.from_domain(portal, service.public_url(portal))
        for portal in service.list_portals(tenant)
    ]


@router.post("/portals", response_model=PortalResponse, status_code=status.HTTP_201_CREATED)
def create_portal(
    payload: CreatePortalRequest,
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> PortalResponse:
    """Create a portal under a globally unique slug."""
    _enforce_rate_limit("create-portal", tenant)
    portal = service.create_portal(
        tenant, payload.name, slug=payload.slug, custom_domain=payload.custom_domain
    )
    return PortalResponse.from_domain(portal, service.public_url(portal))


@router.get("/portals/{portal_id}", response_model=PortalOverviewResponse)
def get_portal(
    portal_id: str,
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> PortalOverviewResponse:
    overview = service.get_portal_overview(tenant, portal_id)
    return PortalOverviewResponse(
        portal=PortalResponse.from_domain(overview.portal, overview.public_url),
        stats={
            "clients": overview.stats.clients,
            "files": overview.stats.files,
            "invoices": overview.stats.invoices,
        },
    )


@router.get("/portals/{portal_id}/activity", response_model=ActivityResponse)
def portal_activity(
    portal_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    cursor: str | None = Query(default=None),
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> ActivityResponse:
    """Return paginated activity for the portal, newest first."""
    records, next_cursor = service.portal_activity(tenant, portal_id, limit=limit, cursor=cursor)
    return ActivityResponse(
        items=[ActivityEntry.from_record(record) for record in records],
        next_cursor=next_cursor,
    )


@router.get("/portals/{portal_id}/clients", response_model=list[ClientResponse])
def list_portal_clients(
    portal_id: str,
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> list[ClientResponse]:
    return [ClientResponse.from_domain(client) for client in service.list_clients(tenant, portal_id)]


@router.post(
    "/portals/{portal_id}/clients",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
)
def invite_client(
    portal_id: str,
    payload: InviteClientRequest,
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> InvitationResponse:
    """Invite a client to the portal; the token is delivered by the email collaborator."""
    _enforce_rate_limit("invite", tenant)
    invitation = service.invite_client(
        tenant,
        InviteClientInput(
            portal_id=portal_id,
            name=payload.name,
            email=str(payload.email),
            company=payload.company,
        ),
    )
    return InvitationResponse(
        client=ClientResponse.from_domain(invitation.client),
        invitation_token=invitation.token,
    )


@router.get("/clients", response_model=list[ClientResponse])
def list_clients(
    portal: str | None = Query(default=None),
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> list[ClientResponse]:
    return [ClientResponse.from_domain(client) for client in service.list_clients(tenant, portal)]


@router.post("/invitations/accept", response_model=ClientResponse)
def accept_invitation(
    payload: AcceptInvitationRequest,
    service: PortalService = Depends(get_service),
) -> ClientResponse:
    return ClientResponse.from_domain(service.accept_invitation(payload.token))


@router.post(
    "/portals/{portal_id}/folders",
    response_model=FolderResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_folder(
    portal_id: str,
    payload: CreateFolderRequest,
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> FolderResponse:
    folder = service.create_folder(tenant, portal_id, payload.name, parent_id=payload.parent_id)
    return FolderResponse.from_domain(folder)


@router.get("/portals/{portal_id}/contents", response_model=FolderContentsResponse)
def folder_contents(
    portal_id: str,
    folder_id: str | None = Query(default=None),
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> FolderContentsResponse:
    listing = service.list_folder(tenant, portal_id, folder_id)
    return FolderContentsResponse(
        folder=FolderResponse.from_domain(listing.folder) if listing.folder else None,
        folders=[FolderResponse.from_domain(folder) for folder in listing.folders],
        files=[FileResponse.from_domain(stored) for stored in listing.files],
    )


@router.post(
    "/portals/{portal_id}/files",
    response_model=UploadBatchResponse,
    status_code=status.HTTP_201_CREATED,
)
def upload_files(
    portal_id: str,
    response: Response,
    files: list[UploadFile] = File(...),
    folder_id: str | None = Form(default=None),
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> UploadBatchResponse:
    """Upload a batch of files; 207 signals that some files did not make it."""
    _enforce_rate_limit("upload", tenant)
    # read one byte past the limit so oversize files are reported, not buffered whole
    limit = settings.max_upload_bytes + 1
    items = [
        UploadItem(
            name=upload.filename or "upload",
            content=upload.file.read(limit),
            mime_type=upload.content_type or "application/octet-stream",
        )
        for upload in files
    ]
    result = service.upload_files(tenant, portal_id, items, folder_id=folder_id or None)
    if not result.complete:
        response.status_code = status.HTTP_207_MULTI_STATUS
    uploaded = len(result.uploaded)
    return UploadBatchResponse(
        results=[UploadOutcomeResponse.from_domain(outcome) for outcome in result.outcomes],
        uploaded=uploaded,
        failed=len(result.outcomes) - uploaded,
    )


@router.get("/files/{file_id}/download")
def download_file(
    file_id: str,
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> Response:
    stored, data = service.download_file(tenant, file_id)
    # header values are latin-1; the UTF-8 name travels in filename* (RFC 5987)
    disposition = (
        f'attachment; filename="{sanitize_filename(stored.name)}"; '
        f"filename*=UTF-8''{quote(stored.name, safe='')}"
    )
    return Response(
        content=data,
        media_type=stored.mime_type,
        headers={"Content-Disposition": disposition},
    )


@router.delete("/files/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_file(
    file_id: str,
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> Response:
    service.delete_file(tenant, file_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/invoices", response_model=InvoiceListResponse)
def list_invoices(
    portal: str | None = Query(default=None),
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> InvoiceListResponse:
    invoices, summary = service.list_invoices(tenant, portal)
    return InvoiceListResponse(
        items=[InvoiceResponse.from_domain(invoice) for invoice in invoices],
        summary=InvoiceSummaryResponse.from_domain(summary),
    )


@router.post("/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: CreateInvoiceRequest,
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> InvoiceResponse:
    invoice = service.create_invoice(
        tenant,
        CreateInvoiceInput(
            portal_id=payload.portal_id,
            client_id=payload.client_id,
            number=payload.number,
            total=payload.total,
            due_date=payload.due_date,
        ),
    )
    return InvoiceResponse.from_domain(invoice)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceResponse)
def update_invoice(
    invoice_id: str,
    payload: UpdateInvoiceRequest,
    tenant: TenantContext = Depends(current_tenant),
    service: PortalService = Depends(get_service),
) -> InvoiceResponse:
    return InvoiceResponse.from_domain(service.update_invoice_status(tenant, invoice_id, payload.status))
