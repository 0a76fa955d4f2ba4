"""Batch upload of client files into a portal.

Each file is two writes, blob first and metadata row second, with no
transaction spanning them. A row failure after a successful blob write leaves
an orphaned blob; it is reported per file with its path instead of being lost.
Files are independent: one failure never aborts or rolls back the others.
"""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from threading import Event, Lock
from typing import TYPE_CHECKING, Sequence

from prometheus_client import Counter

from .contracts import TenantContext, UploadItem
from .guard import Operation, ResourceRef, ScopeGuard
from .models import PortalFile

if TYPE_CHECKING:
    from ..repository import PortalRepository
    from ..storage import ObjectStore

logger = logging.getLogger(__name__)

UPLOAD_OUTCOMES = Counter(
    "portalpro_upload_files_total",
    "Per-file outcomes of upload batches.",
    ["status"],
)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9.-]")


class UploadStatus(str, Enum):
    UPLOADED = "uploaded"
    BLOB_FAILED = "blob_failed"
    ROW_FAILED = "row_failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class UploadOutcome:
    """Result for one input file, in the same position as the input."""

    name: str
    status: UploadStatus
    storage_path: str | None = None
    file: PortalFile | None = None
    reason: str | None = None

    @property
    def orphaned_path(self) -> str | None:
        return self.storage_path if self.status is UploadStatus.ROW_FAILED else None


@dataclass(slots=True)
class BatchResult:
    outcomes: list[UploadOutcome] = field(default_factory=list)

    @property
    def uploaded(self) -> list[PortalFile]:
        return [o.file for o in self.outcomes if o.status is UploadStatus.UPLOADED and o.file]

    @property
    def orphaned_paths(self) -> list[str]:
        return [o.orphaned_path for o in self.outcomes if o.orphaned_path]

    @property
    def complete(self) -> bool:
        return all(o.status is UploadStatus.UPLOADED for o in self.outcomes)


def sanitize_filename(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", name)


class PathTokenSource:
    """Strictly increasing nanosecond tokens, unique within the process."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = Lock()

    def next(self) -> int:
        with self._lock:
            self._last = max(time.time_ns(), self._last + 1)
            return self._last


def build_storage_path(portal_id: str, folder_id: str | None, token: int, filename: str) -> str:
    return f"{portal_id}/{folder_id or 'root'}/{token}_{sanitize_filename(filename)}"


class UploadOrchestrator:
    def __init__(
        self,
        repository: PortalRepository,
        store: ObjectStore,
        guard: ScopeGuard,
        *,
        workers: int = 4,
        max_file_bytes: int | None = None,
        tokens: PathTokenSource | None = None,
    ) -> None:
        self._repository = repository
        self._store = store
        self._guard = guard
        self._workers = max(1, workers)
        self._max_file_bytes = max_file_bytes
        self._tokens = tokens or PathTokenSource()

    def upload_batch(
        self,
        tenant: TenantContext,
        portal_id: str,
        folder_id: str | None,
        files: Sequence[UploadItem],
        cancel: Event | None = None,
    ) -> BatchResult:
        """Upload ``files`` into a portal (optionally a folder) and report per-file outcomes.

        Authorization is checked once before any write and raises on denial.
        After that the call always returns. Setting ``cancel`` stops files that
        have not started yet; files already in flight finish.
        """
        self._guard.require(tenant, ResourceRef.portal(portal_id), Operation.WRITE)
        if folder_id:
            # a folder of another portal is rejected before anything is written
            self._guard.require(
                tenant, ResourceRef.folder(folder_id, portal_id=portal_id), Operation.WRITE
            )
        if not files:
            return BatchResult()

        cancel = cancel or Event()
        with ThreadPoolExecutor(
            max_workers=min(self._workers, len(files)), thread_name_prefix="upload"
        ) as pool:
            futures = [
                pool.submit(self._upload_one, tenant, portal_id, folder_id, item, cancel)
                for item in files
            ]
            result = BatchResult([future.result() for future in futures])

        self._record(tenant, portal_id, result)
        return result

    def _upload_one(
        self,
        tenant: TenantContext,
        portal_id: str,
        folder_id: str | None,
        item: UploadItem,
        cancel: Event,
    ) -> UploadOutcome:
        if cancel.is_set():
            return self._count(UploadOutcome(item.name, UploadStatus.CANCELLED))
        if self._max_file_bytes is not None and item.size > self._max_file_bytes:
            return self._count(
                UploadOutcome(
                    item.name,
                    UploadStatus.BLOB_FAILED,
                    reason=f"file exceeds {self._max_file_bytes} bytes",
                )
            )

        path = build_storage_path(portal_id, folder_id, self._tokens.next(), item.name)
        try:
            self._store.put(path, item.content, item.mime_type)
        except Exception as exc:
            logger.warning("blob upload failed for %s: %s", path, exc)
            return self._count(
                UploadOutcome(item.name, UploadStatus.BLOB_FAILED, reason=_describe(exc))
            )

        try:
            stored = self._repository.insert_file(
                portal_id=portal_id,
                folder_id=folder_id,
                name=item.name,
                mime_type=item.mime_type,
                size=item.size,
                storage_path=path,
                uploaded_by_id=tenant.actor_id,
            )
        except Exception as exc:
            logger.warning("file row insert failed, blob %s is orphaned: %s", path, exc)
            return self._count(
                UploadOutcome(
                    item.name, UploadStatus.ROW_FAILED, storage_path=path, reason=_describe(exc)
                )
            )
        return self._count(
            UploadOutcome(item.name, UploadStatus.UPLOADED, storage_path=path, file=stored)
        )

    @staticmethod
    def _count(outcome: UploadOutcome) -> UploadOutcome:
        UPLOAD_OUTCOMES.labels(status=outcome.status.value).inc()
        return outcome

    def _record(self, tenant: TenantContext, portal_id: str, result: BatchResult) -> None:
        """Audit the batch; audit failures are logged so the result still reaches the caller."""
        events: list[tuple[str, dict]] = []
        if result.uploaded:
            events.append(
                ("file.uploaded", {"files": [f.name for f in result.uploaded], "count": len(result.uploaded)})
            )
        for path in result.orphaned_paths:
            events.append(("file.orphaned", {"storage_path": path, "stage": "upload"}))

        for event_type, metadata in events:
            try:
                self._repository.write_audit_event(
                    account_id=tenant.account_id,
                    portal_id=portal_id,
                    event_type=event_type,
                    actor=tenant.actor_id,
                    metadata=metadata,
                )
            except Exception:
                logger.exception("could not record %s for portal %s", event_type, portal_id)


def _describe(exc: Exception) -> str:
    return str(exc) or type(exc).__name__
