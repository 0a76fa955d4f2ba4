from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from portalpro.domain.errors import SlugTakenError, ValidationError
from portalpro.domain.slugs import (
    MAX_SLUG_LENGTH,
    Allocated,
    InvalidSlug,
    SlugAllocator,
    SlugTaken,
    derive_slug,
    validate_slug,
)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("My Client Portal!!", "my-client-portal"),
        ("  ---  ", ""),
        ("Acme & Co. 2024", "acme-co-2024"),
        ("already-a-slug", "already-a-slug"),
        ("Ünïcode Name", "n-code-name"),
    ],
)
def test_derive_slug(name, expected):
    assert derive_slug(name) == expected


def test_validate_slug_reasons():
    assert validate_slug("acme-portal") is None
    assert validate_slug("") == "Slug is required."
    assert "lowercase" in validate_slug("Acme")
    assert "lowercase" in validate_slug("acme_portal")
    assert validate_slug("a" * MAX_SLUG_LENGTH) is None
    assert validate_slug("a" * (MAX_SLUG_LENGTH + 1)) is not None


def test_allocate_derives_slug_from_name(repository, make_tenant):
    tenant = make_tenant()
    result = SlugAllocator(repository).allocate(tenant, "My Client Portal!!")

    assert isinstance(result, Allocated)
    assert result.portal.slug == "my-client-portal"
    assert result.portal.account_id == tenant.account_id
    assert result.portal.created_by_id == tenant.actor_id


def test_allocate_rejects_invalid_explicit_slug(repository, make_tenant):
    result = SlugAllocator(repository).allocate(make_tenant(), "Acme", slug="Bad Slug")

    assert isinstance(result, InvalidSlug)
    assert repository.portals == {}


def test_allocate_rejects_name_without_slug_characters(repository, make_tenant):
    result = SlugAllocator(repository).allocate(make_tenant(), "!!!")

    assert isinstance(result, InvalidSlug)
    assert result.slug == ""


def test_allocate_requires_name(repository, make_tenant):
    with pytest.raises(ValidationError):
        SlugAllocator(repository).allocate(make_tenant(), "   ")


def test_slug_is_unique_across_accounts(repository, make_tenant):
    allocator = SlugAllocator(repository)
    first = allocator.allocate(make_tenant("Acme"), "Shared", slug="shared")
    second = allocator.allocate(make_tenant("Globex"), "Shared", slug="shared")

    assert isinstance(first, Allocated)
    assert second == SlugTaken(slug="shared")
    assert len(repository.portals) == 1


def test_concurrent_allocation_grants_exactly_one(repository, make_tenant):
    allocator = SlugAllocator(repository)
    tenants = [make_tenant(f"Account {idx}") for idx in range(8)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda t: allocator.allocate(t, "Launch", slug="launch"), tenants))

    allocated = [r for r in results if isinstance(r, Allocated)]
    taken = [r for r in results if isinstance(r, SlugTaken)]
    assert len(allocated) == 1
    assert len(taken) == 7
    assert [p.slug for p in repository.portals.values()] == ["launch"]


def test_create_portal_maps_taken_slug_to_error(service, make_tenant, repository):
    service.create_portal(make_tenant(), "Acme", slug="acme")

    with pytest.raises(SlugTakenError) as excinfo:
        service.create_portal(make_tenant("Other"), "Acme Again", slug="acme")

    assert excinfo.value.message == "This URL is already taken."
    assert len(repository.events("portal.created")) == 1


def test_create_portal_maps_invalid_slug_to_validation_error(service, make_tenant):
    with pytest.raises(ValidationError) as excinfo:
        service.create_portal(make_tenant(), "Acme", slug="UPPER")

    assert excinfo.value.field == "slug"
