from __future__ import annotations

import pytest

from tenancy.core.errors import AuthenticationError, TooManyAttemptsError
from tenancy.persistence.db import SessionLocal
from tenancy.persistence.repos import sessions as sessions_repo
from tenancy.persistence.repos import users as users_repo
from tenancy.persistence.tenant_db import tenant_databases
from tenancy.services.audit import AuditActor, list_events
from tenancy.services.auth.sessions import INVALID_CREDENTIALS_MESSAGE
from tenancy.tests.utils.factories import (
    ADMIN_PASSWORD,
    Services,
    get_user_by_email,
    login,
    register_tenant,
)


@pytest.mark.asyncio
async def test_login_issues_a_session_token() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="login@example.com")

    result = await login(services, tenant, "LOGIN@example.com")
    assert sessions_repo.is_session_token(result.token)
    assert result.tenant_id == tenant.id
    assert result.two_factor_method is None

    async with SessionLocal() as session:
        auth_session, resolved_tenant = await services.auth.resolve_session(session, result.token)
    assert auth_session.id == result.session_id
    assert resolved_tenant.id == tenant.id

    async with tenant_databases.open(tenant) as ctx:
        user = await services.auth.load_session_user(ctx, auth_session)
    assert user.email == "login@example.com"
    assert user.login_count == 1
    assert user.last_login_at is not None


@pytest.mark.asyncio
async def test_bad_credentials_share_one_message() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="same@example.com")

    with pytest.raises(AuthenticationError) as wrong_password:
        await login(services, tenant, "same@example.com", "wrong-password")
    with pytest.raises(AuthenticationError) as unknown_user:
        await login(services, tenant, "nobody@example.com", "wrong-password")

    assert wrong_password.value.code == unknown_user.value.code == "INVALID_CREDENTIALS"
    assert wrong_password.value.message == unknown_user.value.message == INVALID_CREDENTIALS_MESSAGE

    async with SessionLocal() as session:
        failures = await list_events(session, tenant_id=tenant.id, event_type="auth.login.failed")
    assert len(failures) == 2
    assert all(event.outcome == "failure" for event in failures)


@pytest.mark.asyncio
async def test_rate_limit_locks_out_before_checking_credentials() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="limited@example.com")

    for _ in range(5):
        with pytest.raises(AuthenticationError) as excinfo:
            await login(services, tenant, "limited@example.com", "wrong-password")
        assert not isinstance(excinfo.value, TooManyAttemptsError)

    # The correct password no longer helps while the key is locked.
    with pytest.raises(TooManyAttemptsError) as locked:
        await login(services, tenant, "limited@example.com", ADMIN_PASSWORD)
    assert 1 <= locked.value.retry_after_seconds <= 300

    # Locked-out attempts never reach the user row.
    user = await get_user_by_email(tenant, "limited@example.com")
    assert user.failed_login_attempts == 5

    services.clock.advance(seconds=301)
    result = await login(services, tenant, "limited@example.com", ADMIN_PASSWORD)
    assert result.user_id == user.id
    assert (await get_user_by_email(tenant, "limited@example.com")).failed_login_attempts == 0


@pytest.mark.asyncio
async def test_rate_limit_keys_are_scoped_per_tenant() -> None:
    services = Services()
    first = await register_tenant(services, admin_email="first@example.com")
    second = await register_tenant(services, admin_email="second@example.com")

    for _ in range(5):
        with pytest.raises(AuthenticationError):
            await login(services, first, "first@example.com", "wrong-password")
    with pytest.raises(TooManyAttemptsError):
        await login(services, first, "first@example.com")
    assert (await login(services, second, "second@example.com")).tenant_id == second.id


@pytest.mark.asyncio
async def test_account_lockout_after_repeated_failures() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="lockout@example.com")

    for attempt in range(10):
        # Step past the IP window so only the account counter accumulates.
        if attempt and attempt % 4 == 0:
            services.clock.advance(seconds=301)
        with pytest.raises(AuthenticationError):
            await login(services, tenant, "lockout@example.com", "wrong-password")

    services.clock.advance(seconds=301)
    user = await get_user_by_email(tenant, "lockout@example.com")
    assert user.locked_until is not None
    with pytest.raises(AuthenticationError) as excinfo:
        await login(services, tenant, "lockout@example.com", ADMIN_PASSWORD)
    assert excinfo.value.code == "INVALID_CREDENTIALS"

    services.clock.advance(minutes=16)
    assert (await login(services, tenant, "lockout@example.com")).user_id == user.id


@pytest.mark.asyncio
async def test_logout_revokes_the_session() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="logout@example.com")
    result = await login(services, tenant, "logout@example.com")

    async with SessionLocal() as session:
        assert await services.auth.logout(session, result.token) is True
        assert await services.auth.logout(session, result.token) is False
        with pytest.raises(AuthenticationError):
            await services.auth.resolve_session(session, result.token)


@pytest.mark.asyncio
async def test_session_expiry_and_password_change() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="rotate@example.com")
    first = await login(services, tenant, "rotate@example.com")
    second = await login(services, tenant, "rotate@example.com")

    async with SessionLocal() as session:
        async with tenant_databases.open(tenant) as ctx:
            user = await users_repo.get_user_by_email(ctx, "rotate@example.com")
            revoked = await services.auth.change_password(
                session,
                ctx=ctx,
                user=user,
                current_password=ADMIN_PASSWORD,
                new_password="a-brand-new-password",
                keep_session_id=second.session_id,
                actor=AuditActor(actor_type="user", actor_id=user.id),
            )
    assert revoked == 1

    async with SessionLocal() as session:
        with pytest.raises(AuthenticationError):
            await services.auth.resolve_session(session, first.token)
        await services.auth.resolve_session(session, second.token)
        services.clock.advance(hours=9)
        with pytest.raises(AuthenticationError):
            await services.auth.resolve_session(session, second.token)

    services.clock.advance(seconds=1)
    assert (await login(services, tenant, "rotate@example.com", "a-brand-new-password")).tenant_id == tenant.id


@pytest.mark.asyncio
async def test_successful_login_resets_the_failure_counters() -> None:
    services = Services()
    tenant = await register_tenant(services, admin_email="reset-counter@example.com")

    for _ in range(4):
        with pytest.raises(AuthenticationError):
            await login(services, tenant, "reset-counter@example.com", "wrong-password")
    await login(services, tenant, "reset-counter@example.com")
    assert (await get_user_by_email(tenant, "reset-counter@example.com")).failed_login_attempts == 0

    # Four more failures stay under the limit because the earlier run was cleared.
    for _ in range(4):
        with pytest.raises(AuthenticationError) as excinfo:
            await login(services, tenant, "reset-counter@example.com", "wrong-password")
        assert not isinstance(excinfo.value, TooManyAttemptsError)
    result = await login(services, tenant, "reset-counter@example.com")
    assert result.tenant_id == tenant.id
