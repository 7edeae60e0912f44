from __future__ import annotations

import pytest

from tenancy.core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    ResourceLimitError,
    ValidationError,
)
from tenancy.persistence.db import SessionLocal
from tenancy.persistence.repos import users as users_repo
from tenancy.persistence.tenant_db import tenant_databases
from tenancy.services.tenants import store
from tenancy.tests.utils.factories import (
    ADMIN_PASSWORD,
    Services,
    create_member,
    get_user_by_email,
    load_tenant,
    login,
    principal_for,
    register_tenant,
)


async def _call(services: Services, tenant, method: str, **kwargs):
    # Run a TenantUserService operation with fresh central and tenant sessions.
    async with SessionLocal() as session:
        live = await store.get_tenant(session, tenant.id)
        async with tenant_databases.open(live) as ctx:
            return await getattr(services.users, method)(session, ctx, live, **kwargs)


@pytest.mark.asyncio
async def test_admin_creates_members_and_counts_seats() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="seats@example.com")
    admin = await principal_for(tenant, "seats@example.com")

    member = await create_member(services, tenant, admin, role="manager", email="Manager@Example.com")
    assert member.email == "manager@example.com"
    assert member.role == "manager"
    assert (await load_tenant(tenant.id)).user_count == 2
    assert (await login(services, tenant, "manager@example.com")).user_id == member.id

    with pytest.raises(ConflictError) as duplicate:
        await create_member(services, tenant, admin, email="manager@example.com")
    assert duplicate.value.code == "USER_EMAIL_TAKEN"
    # A rejected create does not consume a seat.
    assert (await load_tenant(tenant.id)).user_count == 2

    async with tenant_databases.open(tenant) as ctx:
        users = await services.users.list_users(ctx, tenant, principal=admin)
    assert {user.email for user in users} == {"seats@example.com", "manager@example.com"}


@pytest.mark.asyncio
async def test_user_limit_of_the_basic_plan() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="full@example.com", plan="basic")
    admin = await principal_for(tenant, "full@example.com")

    for _ in range(4):
        await create_member(services, tenant, admin)
    with pytest.raises(ResourceLimitError) as excinfo:
        await create_member(services, tenant, admin)
    assert excinfo.value.resource == "users"
    assert excinfo.value.limit == 5
    assert (await load_tenant(tenant.id)).user_count == 5


@pytest.mark.asyncio
async def test_role_ladder_limits_what_members_can_do() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="ladder@example.com")
    admin = await principal_for(tenant, "ladder@example.com")
    await create_member(services, tenant, admin, role="manager", email="mgr@example.com")
    await create_member(services, tenant, admin, role="user", email="plain@example.com")
    manager = await principal_for(tenant, "mgr@example.com")
    plain = await principal_for(tenant, "plain@example.com")

    # Managers create users but never grant a role above their own.
    await create_member(services, tenant, manager, role="user")
    with pytest.raises(AuthorizationError):
        await create_member(services, tenant, manager, role="admin")
    with pytest.raises(AuthorizationError):
        await create_member(services, tenant, plain)
    with pytest.raises(AuthorizationError):
        await _call(services, tenant, "delete_user", principal=manager, user_id=plain.subject_id)


@pytest.mark.asyncio
async def test_admin_cannot_act_on_own_account() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="self@example.com")
    admin = await principal_for(tenant, "self@example.com")

    for method in ("deactivate_user", "delete_user"):
        with pytest.raises(AuthorizationError) as excinfo:
            await _call(services, tenant, method, principal=admin, user_id=admin.subject_id)
        assert excinfo.value.code == "USER_SELF_ACTION_FORBIDDEN"

    async with tenant_databases.open(tenant) as ctx:
        with pytest.raises(AuthorizationError) as removal:
            await services.users.remove_own_account(ctx, principal=admin)
    assert removal.value.code == "SELF_SERVICE_ACCOUNT_REMOVAL_FORBIDDEN"


@pytest.mark.asyncio
async def test_last_active_admin_is_protected() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="first-admin@example.com")
    first = await principal_for(tenant, "first-admin@example.com")
    await create_member(services, tenant, first, role="admin", email="second-admin@example.com")
    second = await principal_for(tenant, "second-admin@example.com")

    # With two admins one may step down; afterwards the remaining one is untouchable.
    await _call(services, tenant, "deactivate_user", principal=first, user_id=second.subject_id)
    with pytest.raises(AuthorizationError) as demote:
        await _call(services, tenant, "change_role", principal=second, user_id=first.subject_id, role="user")
    with pytest.raises(AuthorizationError) as deactivate:
        await _call(services, tenant, "deactivate_user", principal=second, user_id=first.subject_id)
    with pytest.raises(AuthorizationError) as delete:
        await _call(services, tenant, "delete_user", principal=second, user_id=first.subject_id)
    for excinfo in (demote, deactivate, delete):
        assert excinfo.value.code == "TENANT_LAST_ADMIN"

    assert (await get_user_by_email(tenant, "first-admin@example.com")).role == "admin"


@pytest.mark.asyncio
async def test_deactivation_blocks_login_and_reactivation_restores_it() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="boss@example.com")
    admin = await principal_for(tenant, "boss@example.com")
    member = await create_member(services, tenant, admin, email="worker@example.com")
    session_before = await login(services, tenant, "worker@example.com")

    await _call(services, tenant, "deactivate_user", principal=admin, user_id=member.id)
    with pytest.raises(AuthenticationError):
        await login(services, tenant, "worker@example.com")
    async with SessionLocal() as session:
        with pytest.raises(AuthenticationError):
            await services.auth.resolve_session(session, session_before.token)

    reactivated = await _call(services, tenant, "activate_user", principal=admin, user_id=member.id)
    assert reactivated.status == "active"
    assert (await login(services, tenant, "worker@example.com")).user_id == member.id


@pytest.mark.asyncio
async def test_delete_keeps_the_row_but_frees_the_seat_and_the_email() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="owner@example.com")
    admin = await principal_for(tenant, "owner@example.com")
    member = await create_member(services, tenant, admin, email="leaving@example.com")
    assert (await load_tenant(tenant.id)).user_count == 2

    await _call(services, tenant, "delete_user", principal=admin, user_id=member.id)
    assert (await load_tenant(tenant.id)).user_count == 1
    assert await get_user_by_email(tenant, "leaving@example.com") is None
    # The row is retained for history, marked deleted and inactive.
    async with tenant_databases.open(tenant) as ctx:
        retained = await users_repo.get_user(ctx, member.id, include_deleted=True)
        assert await users_repo.get_user(ctx, member.id) is None
    assert retained is not None
    assert retained.deleted_at is not None
    assert retained.status == "inactive"

    returning = await create_member(services, tenant, admin, email="leaving@example.com")
    assert returning.id != member.id


@pytest.mark.asyncio
async def test_change_role_updates_capabilities() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="promoter@example.com")
    admin = await principal_for(tenant, "promoter@example.com")
    member = await create_member(services, tenant, admin, email="promoted@example.com")

    updated = await _call(services, tenant, "change_role", principal=admin, user_id=member.id, role="manager")
    assert updated.role == "manager"
    promoted = await principal_for(tenant, "promoted@example.com")
    assert "tenant.users.create" in promoted.permissions
    with pytest.raises(ValidationError):
        await _call(services, tenant, "change_role", principal=admin, user_id=member.id, role="owner")


@pytest.mark.asyncio
async def test_self_registration_follows_the_tenant_setting() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="open@example.com")

    with pytest.raises(AuthorizationError) as closed:
        await _call(services, tenant, "register_member", name="Walk In", email="walkin@example.com", password=ADMIN_PASSWORD)
    assert closed.value.code == "REGISTRATION_DISABLED"

    async with SessionLocal() as session:
        live = await store.get_tenant(session, tenant.id)
        live.settings = {**live.settings, "allow_registration": True}
        await session.commit()

    joined = await _call(services, tenant, "register_member", name="Walk In", email="walkin@example.com", password=ADMIN_PASSWORD)
    assert joined.role == "user"
    assert (await load_tenant(tenant.id)).user_count == 2


@pytest.mark.asyncio
async def test_storage_counter_respects_plan_limit() -> None:
    services = Services()
    tenant = await register_tenant(services, plan="basic")
    one_gib = 1024 * 1024 * 1024

    async with SessionLocal() as session:
        assert await store.adjust_storage(session, tenant.id, one_gib - 10) == one_gib - 10
        await session.commit()
        with pytest.raises(ResourceLimitError) as over:
            await store.adjust_storage(session, tenant.id, 11)
        await session.rollback()
        assert await store.adjust_storage(session, tenant.id, -(one_gib - 10)) == 0
        await session.commit()
        with pytest.raises(ValidationError) as under:
            await store.adjust_storage(session, tenant.id, -1)
        await session.rollback()
        assert await store.record_api_calls(session, tenant.id, 3) == 3
        await session.commit()
    assert over.value.resource == "storage"
    assert under.value.code == "COUNTER_UNDERFLOW"
