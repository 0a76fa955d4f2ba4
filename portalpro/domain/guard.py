"""Ownership-chain authorization for tenant-owned resources.

Every portal child resolves to exactly one account:

    File   -> (Folder ->)* Portal -> Account
    Folder -> (Folder ->)* Portal -> Account
    Client -> Portal -> Account
    Invoice -> Client -> Portal -> Account, and Invoice -> Account directly

:class:`ScopeGuard` walks that chain from the stored leaf row upwards and
grants access only when every link agrees and the chain ends at the caller's
account. It reads rows and never writes them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from prometheus_client import Counter

from .contracts import TenantContext
from .errors import (
    BrokenChainError,
    CrossTenantError,
    ForbiddenError,
    NotFoundError,
    PortalError,
)
from .models import Client, Folder, Invoice, Portal, PortalFile, Role

if TYPE_CHECKING:
    from ..repository import PortalRepository

logger = logging.getLogger(__name__)

SCOPE_DENIALS = Counter(
    "portalpro_scope_denials_total",
    "Resource access denied by the scope guard.",
    ["reason"],
)

# Folder trees are created parent-first, so a walk longer than this means corrupted data.
MAX_FOLDER_DEPTH = 64


class ResourceKind(str, Enum):
    PORTAL = "portal"
    CLIENT = "client"
    FOLDER = "folder"
    FILE = "file"
    INVOICE = "invoice"


class Operation(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class DenialReason(str, Enum):
    NOT_FOUND = "not_found"
    CROSS_TENANT = "cross_tenant"
    BROKEN_CHAIN = "broken_chain"
    FORBIDDEN = "forbidden"


ROLE_OPERATIONS: dict[Role, frozenset[Operation]] = {
    Role.OWNER: frozenset(Operation),
    Role.ADMIN: frozenset(Operation),
    Role.MEMBER: frozenset({Operation.READ, Operation.WRITE}),
}


@dataclass(frozen=True, slots=True)
class ResourceRef:
    """A leaf resource plus the parent chain the caller claims it lives under."""

    kind: ResourceKind
    id: str
    parent: ResourceRef | None = None

    @classmethod
    def portal(cls, portal_id: str) -> "ResourceRef":
        return cls(ResourceKind.PORTAL, portal_id)

    @classmethod
    def client(cls, client_id: str, portal_id: str | None = None) -> "ResourceRef":
        return cls(ResourceKind.CLIENT, client_id, _portal_parent(portal_id))

    @classmethod
    def folder(cls, folder_id: str, portal_id: str | None = None) -> "ResourceRef":
        return cls(ResourceKind.FOLDER, folder_id, _portal_parent(portal_id))

    @classmethod
    def file(
        cls, file_id: str, portal_id: str | None = None, folder_id: str | None = None
    ) -> "ResourceRef":
        parent = _portal_parent(portal_id)
        if folder_id:
            parent = cls(ResourceKind.FOLDER, folder_id, parent)
        return cls(ResourceKind.FILE, file_id, parent)

    @classmethod
    def invoice(cls, invoice_id: str, portal_id: str | None = None) -> "ResourceRef":
        return cls(ResourceKind.INVOICE, invoice_id, _portal_parent(portal_id))


def _portal_parent(portal_id: str | None) -> ResourceRef | None:
    return ResourceRef(ResourceKind.PORTAL, portal_id) if portal_id else None


@dataclass(frozen=True, slots=True)
class Granted:
    resource: Any

    @property
    def granted(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Denied:
    reason: DenialReason
    detail: str = ""

    @property
    def granted(self) -> bool:
        return False


class _ChainBroken(Exception):
    pass


def _stored_parents(kind: ResourceKind, row: Any) -> dict[ResourceKind, str | None]:
    if kind is ResourceKind.FILE:
        return {ResourceKind.FOLDER: row.folder_id, ResourceKind.PORTAL: row.portal_id}
    if kind is ResourceKind.FOLDER:
        return {ResourceKind.FOLDER: row.parent_id, ResourceKind.PORTAL: row.portal_id}
    if kind is ResourceKind.CLIENT:
        return {ResourceKind.PORTAL: row.portal_id}
    if kind is ResourceKind.INVOICE:
        return {ResourceKind.CLIENT: row.client_id, ResourceKind.PORTAL: row.portal_id}
    return {}


class ScopeGuard:
    """Single authorization gate in front of every tenant-owned read and write."""

    def __init__(
        self,
        repository: PortalRepository,
        on_broken_chain: Callable[[TenantContext, ResourceRef, str], None] | None = None,
    ) -> None:
        self._on_broken_chain = on_broken_chain
        self._loaders: dict[ResourceKind, Callable[[str], Any]] = {
            ResourceKind.PORTAL: repository.get_portal,
            ResourceKind.CLIENT: repository.get_client,
            ResourceKind.FOLDER: repository.get_folder,
            ResourceKind.FILE: repository.get_file,
            ResourceKind.INVOICE: repository.get_invoice,
        }

    def authorize(
        self, tenant: TenantContext, ref: ResourceRef, operation: Operation
    ) -> Granted | Denied:
        """Decide whether ``tenant`` may perform ``operation`` on ``ref``.

        A missing resource and another tenant's resource produce the same
        visible outcome at the API boundary; they are kept distinct here for
        logging only.
        """
        decision = self._decide(tenant, ref, operation)
        if isinstance(decision, Denied):
            SCOPE_DENIALS.labels(reason=decision.reason.value).inc()
            if decision.reason is DenialReason.BROKEN_CHAIN:
                logger.error(
                    "ownership chain broken for %s %s (account %s): %s",
                    ref.kind.value,
                    ref.id,
                    tenant.account_id,
                    decision.detail,
                )
                if self._on_broken_chain is not None:
                    self._on_broken_chain(tenant, ref, decision.detail)
            elif decision.reason is DenialReason.CROSS_TENANT:
                logger.info(
                    "account %s denied %s on %s %s owned by another account",
                    tenant.account_id,
                    operation.value,
                    ref.kind.value,
                    ref.id,
                )
        return decision

    def require(self, tenant: TenantContext, ref: ResourceRef, operation: Operation) -> Any:
        """Return the authorized leaf row or raise the matching domain error."""
        decision = self.authorize(tenant, ref, operation)
        if isinstance(decision, Granted):
            return decision.resource
        raise _error_for(decision, ref, operation)

    def _decide(
        self, tenant: TenantContext, ref: ResourceRef, operation: Operation
    ) -> Granted | Denied:
        if operation not in ROLE_OPERATIONS.get(tenant.role, frozenset()):
            return Denied(DenialReason.FORBIDDEN, f"role {tenant.role.value} cannot {operation.value}")

        leaf = self._loaders[ref.kind](ref.id)
        if leaf is None:
            return Denied(DenialReason.NOT_FOUND)
        if not self._matches_declared_parents(ref, leaf):
            return Denied(DenialReason.NOT_FOUND, "declared parent does not match")

        try:
            account_id = self._owning_account(ref.kind, leaf)
        except _ChainBroken as exc:
            return Denied(DenialReason.BROKEN_CHAIN, str(exc))

        if account_id != tenant.account_id:
            return Denied(DenialReason.CROSS_TENANT)
        return Granted(leaf)

    def _matches_declared_parents(self, ref: ResourceRef, leaf: Any) -> bool:
        kind, row, declared = ref.kind, leaf, ref.parent
        while declared is not None:
            stored = _stored_parents(kind, row)
            if declared.kind not in stored or stored[declared.kind] != declared.id:
                return False
            if declared.parent is None:
                return True
            row = self._loaders[declared.kind](declared.id)
            if row is None:
                return False
            kind, declared = declared.kind, declared.parent
        return True

    def _load_parent(self, kind: ResourceKind, resource_id: str, child: str) -> Any:
        row = self._loaders[kind](resource_id)
        if row is None:
            raise _ChainBroken(f"{child} references missing {kind.value} {resource_id}")
        return row

    def _owning_account(self, kind: ResourceKind, row: Any) -> str:
        if kind is ResourceKind.PORTAL:
            return row.account_id
        if kind is ResourceKind.CLIENT:
            return self._client_account(row)
        if kind is ResourceKind.FOLDER:
            return self._folder_account(row)
        if kind is ResourceKind.FILE:
            return self._file_account(row)
        return self._invoice_account(row)

    def _portal_account(self, portal_id: str, child: str) -> str:
        portal: Portal = self._load_parent(ResourceKind.PORTAL, portal_id, child)
        return portal.account_id

    def _client_account(self, client: Client) -> str:
        return self._portal_account(client.portal_id, f"client {client.client_id}")

    def _folder_account(self, folder: Folder) -> str:
        self._check_folder_ancestry(folder.parent_id, folder.portal_id, f"folder {folder.folder_id}")
        return self._portal_account(folder.portal_id, f"folder {folder.folder_id}")

    def _file_account(self, stored: PortalFile) -> str:
        self._check_folder_ancestry(stored.folder_id, stored.portal_id, f"file {stored.file_id}")
        return self._portal_account(stored.portal_id, f"file {stored.file_id}")

    def _invoice_account(self, invoice: Invoice) -> str:
        label = f"invoice {invoice.invoice_id}"
        client: Client = self._load_parent(ResourceKind.CLIENT, invoice.client_id, label)
        if client.portal_id != invoice.portal_id:
            raise _ChainBroken(f"{label} client {client.client_id} belongs to another portal")
        if self._portal_account(invoice.portal_id, label) != invoice.account_id:
            raise _ChainBroken(f"{label} portal belongs to another account")
        return invoice.account_id

    def _check_folder_ancestry(self, folder_id: str | None, portal_id: str, child: str) -> None:
        """Every ancestor folder must exist and sit in ``portal_id``."""
        seen: set[str] = set()
        while folder_id is not None:
            if folder_id in seen or len(seen) >= MAX_FOLDER_DEPTH:
                raise _ChainBroken(f"{child} has a cyclic folder ancestry")
            seen.add(folder_id)
            folder: Folder = self._load_parent(ResourceKind.FOLDER, folder_id, child)
            if folder.portal_id != portal_id:
                raise _ChainBroken(f"{child} sits under folder {folder_id} of another portal")
            child, folder_id = f"folder {folder_id}", folder.parent_id


def _error_for(decision: Denied, ref: ResourceRef, operation: Operation) -> PortalError:
    if decision.reason is DenialReason.CROSS_TENANT:
        return CrossTenantError(ref.kind.value, ref.id)
    if decision.reason is DenialReason.BROKEN_CHAIN:
        return BrokenChainError(ref.kind.value, ref.id, decision.detail)
    if decision.reason is DenialReason.FORBIDDEN:
        return ForbiddenError(f"not allowed to {operation.value} {ref.kind.value}")
    return NotFoundError(ref.kind.value, ref.id)
