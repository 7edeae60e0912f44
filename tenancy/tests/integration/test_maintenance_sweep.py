from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from tenancy.domain.models import AuditEvent, AuthSession, ImpersonationToken, LoginAttempt, PasswordResetToken
from tenancy.persistence.db import SessionLocal
from tenancy.services.audit import record_event
from tenancy.services.maintenance import run_task, sweep_expired
from tenancy.tests.utils.factories import Services, register_tenant
from tenancy.tests.utils.fakes import FrozenClock


def _auth_session(tenant_id: str, *, expires_at, revoked_at=None) -> AuthSession:
    return AuthSession(
        id=str(uuid4()),
        tenant_id=tenant_id,
        user_id=str(uuid4()),
        token_prefix="tnss_abc",
        token_hash=uuid4().hex + uuid4().hex,
        expires_at=expires_at,
        revoked_at=revoked_at,
    )


def _impersonation_token(tenant_id: str, *, expires_at) -> ImpersonationToken:
    return ImpersonationToken(
        token=uuid4().hex + uuid4().hex,
        tenant_id=tenant_id,
        target_user_id=str(uuid4()),
        impersonator_id=str(uuid4()),
        allowed_actions=[],
        restrictions={},
        status="active",
        expires_at=expires_at,
    )


def _reset_token(tenant_id: str, *, expires_at) -> PasswordResetToken:
    return PasswordResetToken(
        id=str(uuid4()),
        tenant_id=tenant_id,
        email="someone@example.com",
        token_hash=uuid4().hex + uuid4().hex,
        used=False,
        expires_at=expires_at,
    )


@pytest.mark.asyncio
async def test_expired_impersonation_tokens_are_marked_expired() -> None:
    clock = FrozenClock()
    services = Services(clock)
    tenant = await register_tenant(services)
    now = clock()
    stale = _impersonation_token(tenant.id, expires_at=now + timedelta(minutes=5))
    fresh = _impersonation_token(tenant.id, expires_at=now + timedelta(hours=1))
    async with SessionLocal() as session:
        session.add_all([stale, fresh])
        await session.commit()

    clock.advance(minutes=10)
    async with SessionLocal() as session:
        count = await run_task(session, "expire_impersonation_tokens", time_provider=clock)
        assert count == 1
        statuses = {
            row.token: row.status
            for row in (await session.execute(select(ImpersonationToken))).scalars()
        }
    assert statuses[stale.token] == "expired"
    assert statuses[fresh.token] == "active"


@pytest.mark.asyncio
async def test_prune_sessions_drops_expired_and_revoked_rows() -> None:
    clock = FrozenClock()
    services = Services(clock)
    tenant = await register_tenant(services)
    now = clock()
    expired = _auth_session(tenant.id, expires_at=now + timedelta(hours=8))
    revoked = _auth_session(tenant.id, expires_at=now + timedelta(days=30), revoked_at=now)
    live = _auth_session(tenant.id, expires_at=now + timedelta(days=30))
    async with SessionLocal() as session:
        session.add_all([expired, revoked, live])
        await session.commit()

    clock.advance(hours=9)
    async with SessionLocal() as session:
        assert await run_task(session, "prune_sessions", time_provider=clock) == 2
        remaining = (await session.execute(select(AuthSession.id))).scalars().all()
    assert remaining == [live.id]


@pytest.mark.asyncio
async def test_prune_login_attempts_keeps_attempts_inside_the_window() -> None:
    clock = FrozenClock()
    now = clock()
    async with SessionLocal() as session:
        session.add_all(
            [
                LoginAttempt(key="login:t1:10.0.0.1", attempted_at=now - timedelta(seconds=600)),
                LoginAttempt(key="login:t1:10.0.0.1", attempted_at=now - timedelta(seconds=30)),
            ]
        )
        await session.commit()

    async with SessionLocal() as session:
        assert await run_task(session, "prune_login_attempts", time_provider=clock) == 1
        remaining = (await session.execute(select(LoginAttempt))).scalars().all()
    assert len(remaining) == 1


@pytest.mark.asyncio
async def test_prune_reset_tokens_after_retention() -> None:
    clock = FrozenClock()
    services = Services(clock)
    tenant = await register_tenant(services)
    now = clock()
    old = _reset_token(tenant.id, expires_at=now + timedelta(minutes=60))
    async with SessionLocal() as session:
        session.add(old)
        await session.commit()

    # Expired but still inside the retention window.
    clock.advance(days=2)
    async with SessionLocal() as session:
        assert await run_task(session, "prune_reset_tokens", time_provider=clock) == 0

    clock.advance(days=6)
    async with SessionLocal() as session:
        assert await run_task(session, "prune_reset_tokens", time_provider=clock) == 1
        assert await session.get(PasswordResetToken, old.id) is None


@pytest.mark.asyncio
async def test_prune_audit_uses_event_time() -> None:
    clock = FrozenClock()
    clock.advance(days=100)
    await record_event(
        occurred_at=clock() - timedelta(days=91),
        tenant_id=None,
        actor_type="system",
        actor_id=None,
        actor_role=None,
        event_type="maintenance.test_old",
        outcome="success",
    )
    await record_event(
        occurred_at=clock() - timedelta(days=1),
        tenant_id=None,
        actor_type="system",
        actor_id=None,
        actor_role=None,
        event_type="maintenance.test_recent",
        outcome="success",
    )

    async with SessionLocal() as session:
        assert await run_task(session, "prune_audit", time_provider=clock) >= 1
        kept = (
            await session.execute(select(AuditEvent.event_type).where(AuditEvent.event_type.like("maintenance.test_%")))
        ).scalars().all()
    assert kept == ["maintenance.test_recent"]


@pytest.mark.asyncio
async def test_sweep_runs_every_task() -> None:
    clock = FrozenClock()
    async with SessionLocal() as session:
        results = await sweep_expired(session, time_provider=clock)
    assert set(results) == {
        "expire_impersonation_tokens",
        "prune_sessions",
        "prune_reset_tokens",
        "prune_login_attempts",
        "prune_audit",
    }
    assert results["prune_sessions"] == 0


@pytest.mark.asyncio
async def test_unknown_task_is_rejected() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValueError):
            await run_task(session, "vacuum_everything")  # type: ignore[arg-type]
