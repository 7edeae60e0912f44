from __future__ import annotations

import pytest

from tenancy.core.errors import AuthenticationError, ValidationError
from tenancy.persistence.db import SessionLocal
from tenancy.persistence.tenant_db import tenant_databases
from tenancy.services.audit import list_events
from tenancy.tests.utils.factories import Services, login, register_tenant


async def _request_reset(services: Services, tenant, email: str) -> None:
    async with SessionLocal() as session:
        async with tenant_databases.open(tenant) as ctx:
            await services.auth.request_password_reset(session, ctx=ctx, tenant=tenant, email=email)


async def _reset(services: Services, tenant, email: str, token: str, new_password: str) -> None:
    async with SessionLocal() as session:
        async with tenant_databases.open(tenant) as ctx:
            await services.auth.reset_password(
                session, ctx=ctx, tenant=tenant, email=email, token=token, new_password=new_password
            )


@pytest.mark.asyncio
async def test_reset_request_is_uniform_for_unknown_addresses() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="known@example.com")
    sent_before = len(services.mailer.sent)

    # Neither call raises; only the known address receives mail.
    await _request_reset(services, tenant, "unknown@example.com")
    assert len(services.mailer.sent) == sent_before
    await _request_reset(services, tenant, "known@example.com")
    message = services.mailer.last_to("known@example.com")
    assert message.template == "password_reset"
    assert message.context["reset_token"]

    async with SessionLocal() as session:
        requested = await list_events(session, tenant_id=tenant.id, event_type="auth.password_reset.requested")
    assert len(requested) == 2
    # Tokens never land in audit metadata.
    assert all("reset_token" not in (event.metadata_json or {}) for event in requested)


@pytest.mark.asyncio
async def test_reset_token_is_single_use_and_revokes_sessions() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="reset@example.com")
    existing = await login(services, tenant, "reset@example.com")

    await _request_reset(services, tenant, "reset@example.com")
    token = services.mailer.last_to("reset@example.com").context["reset_token"]

    await _reset(services, tenant, "reset@example.com", token, "fresh-password-1")
    with pytest.raises(AuthenticationError) as reused:
        await _reset(services, tenant, "reset@example.com", token, "fresh-password-2")
    assert reused.value.code == "RESET_TOKEN_INVALID"

    async with SessionLocal() as session:
        with pytest.raises(AuthenticationError):
            await services.auth.resolve_session(session, existing.token)
    assert (await login(services, tenant, "reset@example.com", "fresh-password-1")).tenant_id == tenant.id


@pytest.mark.asyncio
async def test_only_the_newest_token_works() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="newest@example.com")
    await _request_reset(services, tenant, "newest@example.com")
    stale = services.mailer.last_to("newest@example.com").context["reset_token"]
    await _request_reset(services, tenant, "newest@example.com")
    fresh = services.mailer.last_to("newest@example.com").context["reset_token"]

    with pytest.raises(AuthenticationError):
        await _reset(services, tenant, "newest@example.com", stale, "fresh-password-1")
    await _reset(services, tenant, "newest@example.com", fresh, "fresh-password-1")


@pytest.mark.asyncio
async def test_reset_token_expires_and_is_bound_to_email() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="expiry@example.com")
    await _request_reset(services, tenant, "expiry@example.com")
    token = services.mailer.last_to("expiry@example.com").context["reset_token"]

    with pytest.raises(AuthenticationError):
        await _reset(services, tenant, "someone-else@example.com", token, "fresh-password-1")
    with pytest.raises(ValidationError):
        await _reset(services, tenant, "expiry@example.com", token, "short")

    services.clock.advance(minutes=61)
    with pytest.raises(AuthenticationError) as expired:
        await _reset(services, tenant, "expiry@example.com", token, "fresh-password-1")
    assert expired.value.code == "RESET_TOKEN_INVALID"
