from __future__ import annotations

import pytest

from tenancy.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from tenancy.persistence.db import SessionLocal
from tenancy.services.tenants import domains, store
from tenancy.tests.utils.factories import Services, load_tenant, register_tenant


async def _add(tenant_id: str, hostname: str):
    async with SessionLocal() as session:
        tenant = await store.get_tenant(session, tenant_id)
        return await domains.add_domain(session, tenant, hostname)


@pytest.mark.asyncio
async def test_custom_domains_need_the_plan_feature() -> None:
    services = Services()
    tenant = await register_tenant(services, plan="basic")

    with pytest.raises(AuthorizationError) as excinfo:
        await _add(tenant.id, "shop.example.com")
    assert excinfo.value.code == "PLAN_FEATURE_REQUIRED"

    # Extra subdomains of the base domain stay available on every plan.
    extra = await _add(tenant.id, f"{tenant.slug}-eu.localhost")
    assert extra.type == "subdomain"
    assert extra.status == domains.DOMAIN_STATUS_PENDING

    with pytest.raises(ValidationError):
        await _add(tenant.id, "not a domain")


@pytest.mark.asyncio
async def test_domains_are_unique_across_tenants() -> None:
    services = Services()
    first = await register_tenant(services, plan="enterprise")
    second = await register_tenant(services, plan="enterprise")

    await _add(first.id, "Shared.Example.com.")
    with pytest.raises(ConflictError) as excinfo:
        await _add(second.id, "shared.example.com")
    assert excinfo.value.code == "DOMAIN_TAKEN"
    with pytest.raises(ConflictError):
        await _add(second.id, first.primary_domain)


@pytest.mark.asyncio
async def test_verify_promote_and_remove() -> None:
    services = Services()
    tenant = await register_tenant(services, plan="enterprise")
    added = await _add(tenant.id, "portal.example.com")
    assert added.verification_token

    async with SessionLocal() as session:
        live = await store.get_tenant(session, tenant.id)
        with pytest.raises(ConflictError) as unverified:
            await domains.set_primary_domain(session, live, added.id)
        assert unverified.value.code == "DOMAIN_NOT_VERIFIED"
        failed = await domains.verify_domain(session, live, added.id, "wrong-token")
        assert failed.status == domains.DOMAIN_STATUS_FAILED

    async with SessionLocal() as session:
        live = await store.get_tenant(session, tenant.id)
        verified = await domains.verify_domain(
            session, live, added.id, added.verification_token, now=services.clock()
        )
        assert verified.status == domains.DOMAIN_STATUS_ACTIVE
        await domains.set_primary_domain(session, live, added.id)

    promoted = await load_tenant(tenant.id)
    assert promoted.primary_domain == "portal.example.com"
    async with SessionLocal() as session:
        by_new_host = await store.resolve_tenant_by_host(session, "PORTAL.example.com:443")
        by_old_host = await store.resolve_tenant_by_host(session, tenant.primary_domain)
        listed = await domains.list_domains(session, tenant.id)
    assert by_new_host.id == tenant.id
    assert by_old_host.id == tenant.id
    assert [domain.is_primary for domain in listed] == [True, False]

    old_primary = next(domain for domain in listed if not domain.is_primary)
    async with SessionLocal() as session:
        live = await store.get_tenant(session, tenant.id)
        with pytest.raises(ConflictError) as protected:
            await domains.remove_domain(session, live, added.id)
        assert protected.value.code == "PRIMARY_DOMAIN_PROTECTED"
        await domains.remove_domain(session, live, old_primary.id)

    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await domains.get_domain(session, tenant.id, old_primary.id)
        assert await store.resolve_tenant_by_host(session, old_primary.domain) is None


@pytest.mark.asyncio
async def test_domains_are_scoped_to_their_tenant() -> None:
    services = Services()
    owner = await register_tenant(services, plan="enterprise")
    stranger = await register_tenant(services, plan="enterprise")
    added = await _add(owner.id, "owned.example.com")

    async with SessionLocal() as session:
        live = await store.get_tenant(session, stranger.id)
        with pytest.raises(NotFoundError):
            await domains.verify_domain(session, live, added.id, added.verification_token)
