from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from tenancy.core.errors import AuthorizationError, ConflictError, ValidationError
from tenancy.domain.models import Tenant, User
from tenancy.persistence.db import SessionLocal
from tenancy.persistence.tenant_db import tenant_databases
from tenancy.services.access_control import build_principal
from tenancy.services.bootstrap import bootstrap, is_bootstrapped
from tenancy.services.tenants import store
from tenancy.tests.utils.factories import (
    SETUP_KEY,
    SUPER_ADMIN_EMAIL,
    SUPER_ADMIN_PASSWORD,
    Services,
    login,
)


@pytest.mark.asyncio
async def test_bootstrap_creates_system_tenant_and_super_admin() -> None:
    async with SessionLocal() as session:
        assert not await is_bootstrapped(session)
        user = await bootstrap(
            session,
            name="Root",
            email="Root@Example.com",
            password=SUPER_ADMIN_PASSWORD,
            setup_key=SETUP_KEY,
        )
        assert await is_bootstrapped(session)
        system = await store.get_system_tenant(session)

    assert user.email == "root@example.com"
    assert user.is_super_admin is True
    assert system.slug == "system"
    assert system.database is None
    assert system.plan == "unlimited"
    assert system.status == "active"
    assert user.tenant_id == system.id

    # The system tenant resolves to the central store; the principal is central scoped.
    async with tenant_databases.open(system) as ctx:
        assert ctx.is_central
        principal = await build_principal(ctx.session, user)
    assert principal.scope == "central"
    assert "tenants.impersonate" in principal.permissions


@pytest.mark.asyncio
async def test_bootstrap_happens_once(super_admin) -> None:
    async with SessionLocal() as session:
        with pytest.raises(ConflictError) as excinfo:
            await bootstrap(
                session, name="Again", email="again@example.com", password=SUPER_ADMIN_PASSWORD, setup_key=SETUP_KEY
            )
    assert excinfo.value.code == "ALREADY_BOOTSTRAPPED"


@pytest.mark.asyncio
async def test_bootstrap_rejects_wrong_setup_key_and_bad_input() -> None:
    async with SessionLocal() as session:
        with pytest.raises(AuthorizationError) as wrong_key:
            await bootstrap(session, name="Root", email=SUPER_ADMIN_EMAIL, password=SUPER_ADMIN_PASSWORD, setup_key="nope")
        with pytest.raises(AuthorizationError):
            await bootstrap(session, name="Root", email=SUPER_ADMIN_EMAIL, password=SUPER_ADMIN_PASSWORD, setup_key=None)
        with pytest.raises(ValidationError):
            await bootstrap(session, name="Root", email=SUPER_ADMIN_EMAIL, password="short", setup_key=SETUP_KEY)
        assert not await is_bootstrapped(session)
    assert wrong_key.value.code == "INVALID_SETUP_KEY"


@pytest.mark.asyncio
async def test_concurrent_bootstrap_yields_exactly_one_super_admin() -> None:
    async def attempt(index: int):
        async with SessionLocal() as session:
            return await bootstrap(
                session,
                name=f"Root {index}",
                email=f"root-{index}@example.com",
                password=SUPER_ADMIN_PASSWORD,
                setup_key=SETUP_KEY,
            )

    results = await asyncio.gather(*(attempt(index) for index in range(3)), return_exceptions=True)
    winners = [result for result in results if isinstance(result, User)]
    losers = [result for result in results if not isinstance(result, User)]
    assert len(winners) == 1
    assert all(isinstance(result, ConflictError) for result in losers)

    async with SessionLocal() as session:
        admins = (await session.execute(select(func.count()).select_from(User).where(User.is_super_admin.is_(True)))).scalar_one()
        systems = (await session.execute(select(func.count()).select_from(Tenant).where(Tenant.is_system.is_(True)))).scalar_one()
    assert admins == 1
    assert systems == 1


@pytest.mark.asyncio
async def test_super_admin_logs_in_against_the_system_tenant(super_admin) -> None:
    services = Services()
    async with SessionLocal() as session:
        system = await store.get_system_tenant(session)
    result = await login(services, system, SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)
    assert result.tenant_id == system.id
    assert result.user_id == super_admin.id
