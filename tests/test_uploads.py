from __future__ import annotations

from threading import Event

import pytest

from portalpro.domain.contracts import UploadItem
from portalpro.domain.errors import NotFoundError
from portalpro.domain.uploads import (
    PathTokenSource,
    UploadOrchestrator,
    UploadStatus,
    build_storage_path,
    sanitize_filename,
)


def _items(*names: str) -> list[UploadItem]:
    return [UploadItem(name=name, content=name.encode(), mime_type="text/plain") for name in names]


def test_sanitize_filename():
    assert sanitize_filename("Q3 report (final).pdf") == "Q3_report__final_.pdf"
    assert sanitize_filename("../etc/passwd") == ".._etc_passwd"


def test_storage_path_layout():
    assert build_storage_path("p1", None, 42, "a b.txt") == "p1/root/42_a_b.txt"
    assert build_storage_path("p1", "f1", 43, "x.txt") == "p1/f1/43_x.txt"


def test_path_tokens_strictly_increase():
    tokens = PathTokenSource()
    issued = [tokens.next() for _ in range(1000)]
    assert issued == sorted(set(issued))


def test_all_files_uploaded_in_input_order(service, store, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)

    result = service.upload_files(tenant, portal.portal_id, _items("a.txt", "b.txt", "c.txt"))

    assert result.complete
    assert [o.name for o in result.outcomes] == ["a.txt", "b.txt", "c.txt"]
    assert [f.name for f in result.uploaded] == ["a.txt", "b.txt", "c.txt"]
    for outcome in result.outcomes:
        assert outcome.storage_path.startswith(f"{portal.portal_id}/root/")
        assert store.blobs[outcome.storage_path] == outcome.name.encode()


def test_row_failure_reports_orphan_and_keeps_others(
    service, repository, store, make_tenant, make_portal
):
    tenant = make_tenant()
    portal = make_portal(tenant)
    repository.fail_file_rows.add("b.txt")

    result = service.upload_files(tenant, portal.portal_id, _items("a.txt", "b.txt", "c.txt"))

    statuses = [o.status for o in result.outcomes]
    assert statuses == [UploadStatus.UPLOADED, UploadStatus.ROW_FAILED, UploadStatus.UPLOADED]
    assert not result.complete
    orphan = result.outcomes[1].orphaned_path
    assert orphan is not None and orphan.endswith("_b.txt")
    assert orphan in store.blobs
    assert result.orphaned_paths == [orphan]
    assert sorted(f.name for f in repository.files.values()) == ["a.txt", "c.txt"]

    orphaned_events = repository.events("file.orphaned")
    assert [e.metadata["storage_path"] for e in orphaned_events] == [orphan]
    assert repository.events("file.uploaded")[0].metadata["count"] == 2


def test_blob_failure_writes_no_row(service, repository, store, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    store.fail_puts.add("b.txt")

    result = service.upload_files(tenant, portal.portal_id, _items("a.txt", "b.txt"))

    failed = result.outcomes[1]
    assert failed.status is UploadStatus.BLOB_FAILED
    assert failed.orphaned_path is None
    assert "bucket unavailable" in failed.reason
    assert [f.name for f in repository.files.values()] == ["a.txt"]
    assert repository.events("file.orphaned") == []


def test_oversize_file_is_rejected_before_store(repository, store, service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    orchestrator = UploadOrchestrator(repository, store, service.guard, max_file_bytes=4)

    result = orchestrator.upload_batch(
        tenant, portal.portal_id, None, [UploadItem(name="big.bin", content=b"12345")]
    )

    assert result.outcomes[0].status is UploadStatus.BLOB_FAILED
    assert store.blobs == {}


def test_upload_into_folder_of_another_portal_is_rejected(
    service, repository, store, make_tenant, make_portal
):
    tenant = make_tenant()
    target = make_portal(tenant)
    other = make_portal(tenant)
    folder = repository.insert_folder(portal_id=other.portal_id, parent_id=None, name="Docs")

    with pytest.raises(NotFoundError):
        service.upload_files(tenant, target.portal_id, _items("a.txt"), folder_id=folder.folder_id)

    assert store.blobs == {}
    assert repository.files == {}


def test_upload_into_foreign_portal_is_not_found(service, store, make_tenant, make_portal):
    owner = make_tenant("Acme")
    intruder = make_tenant("Globex")
    portal = make_portal(owner)

    with pytest.raises(NotFoundError):
        service.upload_files(intruder, portal.portal_id, _items("a.txt"))

    assert store.blobs == {}


def test_upload_into_folder_uses_folder_path(service, repository, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    folder = service.create_folder(tenant, portal.portal_id, "Contracts")

    result = service.upload_files(
        tenant, portal.portal_id, _items("a.txt"), folder_id=folder.folder_id
    )

    stored = result.uploaded[0]
    assert stored.folder_id == folder.folder_id
    assert stored.storage_path.startswith(f"{portal.portal_id}/{folder.folder_id}/")


def test_cancelled_batch_skips_unstarted_files(service, repository, store, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)
    cancel = Event()
    cancel.set()

    result = service.upload_files(tenant, portal.portal_id, _items("a.txt", "b.txt"), cancel=cancel)

    assert [o.status for o in result.outcomes] == [UploadStatus.CANCELLED, UploadStatus.CANCELLED]
    assert store.blobs == {}
    assert repository.files == {}


def test_empty_batch(service, make_tenant, make_portal):
    tenant = make_tenant()
    portal = make_portal(tenant)

    result = service.upload_files(tenant, portal.portal_id, [])

    assert result.outcomes == []
    assert result.complete
