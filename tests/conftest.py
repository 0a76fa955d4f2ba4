from __future__ import annotations

import uuid
from typing import Callable

import pytest
from fastapi.testclient import TestClient

from fakes import FakeObjectStore, FakeRepository
from portalpro.api import routes
from portalpro.config import get_settings
from portalpro.domain.contracts import TenantContext
from portalpro.domain.models import Portal, Role
from portalpro.domain.service import PortalService
from portalpro.main import create_app
from portalpro.security.rate_limiter import SlidingWindowRateLimiter


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def service(repository: FakeRepository, store: FakeObjectStore) -> PortalService:
    return PortalService(repository, store, get_settings())


@pytest.fixture
def make_tenant(repository: FakeRepository) -> Callable[..., TenantContext]:
    """Create an onboarded account with one user and return its tenant scope."""

    def factory(name: str = "Acme", role: Role = Role.OWNER) -> TenantContext:
        account = repository.add_account(name)
        actor_id = f"user-{uuid.uuid4().hex[:8]}"
        repository.add_user(
            actor_id,
            f"{actor_id}@example.com",
            account_id=account.account_id,
            name="Jane",
            role=role,
        )
        return TenantContext(actor_id=actor_id, account_id=account.account_id, role=role)

    return factory


@pytest.fixture
def make_portal(service: PortalService) -> Callable[..., Portal]:
    def factory(tenant: TenantContext, name: str | None = None) -> Portal:
        return service.create_portal(tenant, name or f"Portal {uuid.uuid4().hex[:6]}")

    return factory


@pytest.fixture
def api_client(service: PortalService):
    """Provide a FastAPI test client with isolated state."""
    app = create_app(with_lifespan=False)
    app.state.portal_service = service

    original_limiter = routes.rate_limiter
    routes.rate_limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60)

    with TestClient(app) as client:
        yield client

    routes.rate_limiter = original_limiter
