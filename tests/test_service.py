from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest

from portalpro.domain.billing import summarize_invoices
from portalpro.domain.contracts import CreateInvoiceInput, InviteClientInput, UploadItem
from portalpro.domain.errors import ConflictError, NotFoundError, ValidationError
from portalpro.domain.formatting import format_currency, format_file_size
from portalpro.domain.models import InvoiceStatus


def _invite(service, tenant, portal, email="client@example.com", name="Client Co"):
    return service.invite_client(
        tenant, InviteClientInput(portal_id=portal.portal_id, name=name, email=email)
    )


def test_invite_client_creates_invited_client(service, repository, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)

    invitation = _invite(service, tenant, portal, email="Client@Example.com")

    assert invitation.client.email == "client@example.com"
    assert invitation.client.accepted_at is None
    assert not invitation.client.is_active
    assert invitation.token
    assert repository.events("client.invited")[0].metadata["client_id"] == invitation.client.client_id


def test_duplicate_client_email_conflicts(service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    _invite(service, tenant, portal)

    with pytest.raises(ConflictError) as excinfo:
        _invite(service, tenant, portal, email="CLIENT@example.com")

    assert excinfo.value.message == "A client with this email already exists in this portal."


def test_concurrent_invites_for_one_email_create_one_client(service, repository, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    attempts = 8

    def invite(_):
        try:
            return _invite(service, tenant, portal)
        except ConflictError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        results = list(pool.map(invite, range(attempts)))

    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(conflicts) == attempts - 1
    assert len(repository.clients) == 1
    assert len(repository.events("client.invited")) == 1


def test_same_email_allowed_in_another_portal(service, make_tenant, make_portal):
    tenant = make_tenant()
    _invite(service, tenant, make_portal(tenant))

    second = _invite(service, tenant, make_portal(tenant))

    assert second.client.email == "client@example.com"


def test_invite_rejects_bad_email(service, make_tenant, make_portal):
    tenant = make_tenant()

    with pytest.raises(ValidationError) as excinfo:
        _invite(service, tenant, make_portal(tenant), email="not-an-email")

    assert excinfo.value.field == "email"


def test_accept_invitation_is_idempotent(service, repository, make_tenant, make_portal):
    tenant = make_tenant()
    invitation = _invite(service, tenant, make_portal(tenant))

    first = service.accept_invitation(invitation.token)
    second = service.accept_invitation(invitation.token)

    assert first.is_active
    assert second.accepted_at == first.accepted_at
    assert len(repository.events("client.accepted")) == 1


def test_accept_rejects_garbage_token(service):
    with pytest.raises(ValidationError):
        service.accept_invitation("not-a-token")


def test_list_clients_scoped_to_tenant(service, make_tenant, make_portal):
    acme = make_tenant("Acme")
    globex = make_tenant("Globex")
    acme_portal = make_portal(acme)
    _invite(service, acme, acme_portal, email="a@example.com")
    _invite(service, globex, make_portal(globex), email="g@example.com")

    assert [c.email for c in service.list_clients(acme)] == ["a@example.com"]
    assert [c.email for c in service.list_clients(acme, acme_portal.portal_id)] == ["a@example.com"]


def test_portal_overview_counts(service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = service.create_portal(tenant, "Acme Portal")
    _invite(service, tenant, portal)
    service.upload_files(tenant, portal.portal_id, [UploadItem(name="a.txt", content=b"abc")])

    overview = service.get_portal_overview(tenant, portal.portal_id)

    assert overview.public_url == "https://acme-portal.portalpro.app"
    assert (overview.stats.clients, overview.stats.files, overview.stats.invoices) == (1, 1, 0)
    summary = service.dashboard(tenant)
    assert (summary.portals, summary.clients, summary.files) == (1, 1, 1)


def test_list_portals_newest_first(service, make_tenant):
    tenant = make_tenant()
    service.create_portal(tenant, "First")
    service.create_portal(tenant, "Second")

    assert [p.slug for p in service.list_portals(tenant)] == ["second", "first"]


def test_folder_listing(service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    parent = service.create_folder(tenant, portal.portal_id, "Contracts")
    service.create_folder(tenant, portal.portal_id, "B", parent_id=parent.folder_id)
    service.create_folder(tenant, portal.portal_id, "A", parent_id=parent.folder_id)

    listing = service.list_folder(tenant, portal.portal_id, parent.folder_id)

    assert listing.folder.folder_id == parent.folder_id
    assert [f.name for f in listing.folders] == ["A", "B"]
    assert [f.name for f in service.list_folder(tenant, portal.portal_id).folders] == ["Contracts"]


def test_folder_name_rejects_slash(service, make_tenant, make_portal):
    tenant = make_tenant()

    with pytest.raises(ValidationError):
        service.create_folder(tenant, make_portal(tenant).portal_id, "a/b")


def test_download_and_delete_file(service, repository, store, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    stored = service.upload_files(
        tenant, portal.portal_id, [UploadItem(name="a.txt", content=b"hello")]
    ).uploaded[0]

    downloaded, data = service.download_file(tenant, stored.file_id)
    assert downloaded.file_id == stored.file_id
    assert data == b"hello"

    service.delete_file(tenant, stored.file_id)
    assert repository.get_file(stored.file_id) is None
    assert stored.storage_path not in store.blobs
    with pytest.raises(NotFoundError):
        service.download_file(tenant, stored.file_id)


def test_delete_file_reports_orphaned_blob(service, repository, store, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    stored = service.upload_files(
        tenant, portal.portal_id, [UploadItem(name="a.txt", content=b"hello")]
    ).uploaded[0]
    store.fail_deletes = True

    service.delete_file(tenant, stored.file_id)

    assert repository.get_file(stored.file_id) is None
    orphaned = repository.events("file.orphaned")
    assert orphaned[0].metadata == {"storage_path": stored.storage_path, "stage": "delete"}


def test_other_tenant_cannot_delete_file(service, make_tenant, make_portal):
    owner = make_tenant("Acme")
    intruder = make_tenant("Globex")
    portal = make_portal(owner)
    stored = service.upload_files(
        owner, portal.portal_id, [UploadItem(name="a.txt", content=b"x")]
    ).uploaded[0]

    with pytest.raises(NotFoundError):
        service.delete_file(intruder, stored.file_id)


def _create_invoice(service, tenant, portal, client, number="INV-001", total="1234.50"):
    return service.create_invoice(
        tenant,
        CreateInvoiceInput(
            portal_id=portal.portal_id,
            client_id=client.client_id,
            number=number,
            total=Decimal(total),
            due_date=date(2030, 1, 31),
        ),
    )


def test_invoice_lifecycle(service, repository, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    client = _invite(service, tenant, portal).client

    invoice = _create_invoice(service, tenant, portal, client)
    assert invoice.status is InvoiceStatus.DRAFT

    sent = service.update_invoice_status(tenant, invoice.invoice_id, InvoiceStatus.SENT)
    paid = service.update_invoice_status(tenant, invoice.invoice_id, InvoiceStatus.PAID)
    assert (sent.status, paid.status) == (InvoiceStatus.SENT, InvoiceStatus.PAID)

    with pytest.raises(ValidationError):
        service.update_invoice_status(tenant, invoice.invoice_id, InvoiceStatus.DRAFT)
    assert len(repository.events("invoice.status_changed")) == 2


def test_invoice_number_unique_per_account(service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    client = _invite(service, tenant, portal).client
    _create_invoice(service, tenant, portal, client)

    with pytest.raises(ConflictError):
        _create_invoice(service, tenant, portal, client)


def test_invoice_client_must_belong_to_portal(service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    other = make_portal(tenant)
    client = _invite(service, tenant, other).client

    with pytest.raises(NotFoundError):
        _create_invoice(service, tenant, portal, client)


def test_invoice_summary(service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    client = _invite(service, tenant, portal).client
    paid = _create_invoice(service, tenant, portal, client, "INV-1", "100.00")
    sent = _create_invoice(service, tenant, portal, client, "INV-2", "50.25")
    _create_invoice(service, tenant, portal, client, "INV-3", "10.00")
    service.update_invoice_status(tenant, paid.invoice_id, InvoiceStatus.SENT)
    service.update_invoice_status(tenant, paid.invoice_id, InvoiceStatus.PAID)
    service.update_invoice_status(tenant, sent.invoice_id, InvoiceStatus.SENT)

    invoices, summary = service.list_invoices(tenant, portal.portal_id)

    assert len(invoices) == 3
    assert summary == summarize_invoices(invoices)
    assert (summary.total, summary.paid, summary.outstanding, summary.overdue) == (3, 1, 1, 0)
    assert summary.paid_amount == Decimal("100.00")
    assert summary.outstanding_amount == Decimal("50.25")


def test_portal_activity_paginates(service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    for idx in range(4):
        _invite(service, tenant, portal, email=f"c{idx}@example.com")

    first, cursor = service.portal_activity(tenant, portal.portal_id, limit=3)
    rest, _ = service.portal_activity(tenant, portal.portal_id, limit=3, cursor=cursor)

    assert len(first) == 3
    assert cursor is not None
    # four invitations plus the portal creation
    assert len(first) + len(rest) == 5
    assert first[0].event_type == "client.invited"


def test_portal_activity_rejects_bad_cursor(service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)

    with pytest.raises(ValidationError):
        service.portal_activity(tenant, portal.portal_id, cursor="not-valid")


@pytest.mark.parametrize(
    ("amount", "expected"),
    [
        (Decimal("1234.5"), "$1,234.50"),
        (0, "$0.00"),
        (Decimal("-12.345"), "-$12.35"),
        (1000000, "$1,000,000.00"),
    ],
)
def test_format_currency(amount, expected):
    assert format_currency(amount) == expected


def test_format_currency_other_codes():
    assert format_currency(10, "EUR") == "€10.00"
    assert format_currency(10, "JPY") == "JPY 10.00"


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "0 Bytes"),
        (512, "512 Bytes"),
        (1024, "1 KB"),
        (1536, "1.5 KB"),
        (5 * 1024 * 1024, "5 MB"),
        (1234567890, "1.15 GB"),
    ],
)
def test_format_file_size(size, expected):
    assert format_file_size(size) == expected
