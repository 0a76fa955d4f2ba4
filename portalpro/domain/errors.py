"""Error taxonomy for tenant-scoped operations.

Everything except :class:`BrokenChainError` and :class:`StorageError` is an
expected outcome of user input with a defined recovery path; the HTTP layer
maps each class to a status code in one place.
"""

from __future__ import annotations


class PortalError(Exception):
    """Base class for all domain errors raised by the portal service."""

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class UnauthenticatedError(PortalError):
    """No resolvable actor behind the request credential."""

    def __init__(self, message: str = "not authenticated") -> None:
        super().__init__(message)


class NotOnboardedError(PortalError):
    """The actor exists but has not completed account setup."""

    def __init__(self, actor_id: str) -> None:
        super().__init__("No account found", actor_id=actor_id)
        self.actor_id = actor_id


class NotFoundError(PortalError):
    def __init__(self, kind: str, resource_id: str | None = None) -> None:
        super().__init__(f"{kind} not found", kind=kind, resource_id=resource_id)
        self.kind = kind
        self.resource_id = resource_id


class CrossTenantError(NotFoundError):
    """Resource exists but belongs to another account.

    Subclasses :class:`NotFoundError` so callers that only care about
    visibility cannot tell the two apart.
    """


class BrokenChainError(PortalError):
    """Stored parent references disagree; indicates a write-side bug."""

    def __init__(self, kind: str, resource_id: str, detail: str) -> None:
        super().__init__(
            f"ownership chain broken for {kind} {resource_id}: {detail}",
            kind=kind,
            resource_id=resource_id,
        )
        self.kind = kind
        self.resource_id = resource_id
        self.detail = detail


class ForbiddenError(PortalError):
    pass


class ValidationError(PortalError):
    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, field=field)
        self.field = field


class ConflictError(PortalError):
    pass


class SlugTakenError(ConflictError):
    def __init__(self, slug: str) -> None:
        super().__init__("This URL is already taken.", slug=slug)
        self.slug = slug


class StorageError(PortalError):
    """The object store rejected or failed an operation."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, path=path)
        self.path = path
