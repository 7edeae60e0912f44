from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Literal

from sqlalchemy import delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, utc_now
from tenancy.core.config import get_settings
from tenancy.domain.models import AuditEvent, LoginAttempt, PasswordResetToken
from tenancy.persistence.repos import sessions as sessions_repo
from tenancy.services.impersonation import ImpersonationBroker


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "expire_impersonation_tokens",
    "prune_sessions",
    "prune_reset_tokens",
    "prune_login_attempts",
    "prune_audit",
]


async def expire_impersonation_tokens(session: AsyncSession, *, now: datetime) -> int:
    # Lazily expired rows are also caught at redeem time; this keeps status queries honest.
    return await ImpersonationBroker(time_provider=lambda: now).sweep_expired(session)


async def prune_sessions(session: AsyncSession, *, now: datetime) -> int:
    return await sessions_repo.delete_expired(session, now=now)


async def prune_reset_tokens(session: AsyncSession, *, now: datetime) -> int:
    # Used or expired tokens are kept for a short window for audit correlation.
    cutoff = now - timedelta(days=get_settings().reset_token_retention_days)
    result = await session.execute(
        delete(PasswordResetToken).where(
            or_(PasswordResetToken.expires_at < cutoff, PasswordResetToken.used_at < cutoff)
        )
    )
    return int(result.rowcount or 0)


async def prune_login_attempts(session: AsyncSession, *, now: datetime) -> int:
    # Attempts outside the longest decay window no longer count toward any ceiling.
    settings = get_settings()
    window = max(settings.auth_login_decay_seconds, settings.auth_register_decay_seconds)
    result = await session.execute(
        delete(LoginAttempt).where(LoginAttempt.attempted_at < now - timedelta(seconds=window))
    )
    return int(result.rowcount or 0)


async def prune_audit_events(session: AsyncSession, *, now: datetime) -> int:
    # Remove audit events beyond the retention window.
    cutoff = now - timedelta(days=get_settings().audit_retention_days)
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < cutoff))
    return int(result.rowcount or 0)


_TASKS = {
    "expire_impersonation_tokens": expire_impersonation_tokens,
    "prune_sessions": prune_sessions,
    "prune_reset_tokens": prune_reset_tokens,
    "prune_login_attempts": prune_login_attempts,
    "prune_audit": prune_audit_events,
}


async def run_task(session: AsyncSession, task: MaintenanceTask, *, time_provider: Clock | None = None) -> int:
    now = (time_provider or utc_now)()
    handler = _TASKS.get(task)
    if handler is None:
        raise ValueError(f"Unknown maintenance task: {task}")
    count = await handler(session, now=now)
    await session.commit()
    logger.info("maintenance_task_completed task=%s count=%s", task, count)
    return count


async def sweep_expired(session: AsyncSession, *, time_provider: Clock | None = None) -> dict[str, int]:
    """Run every expiry task against the central store; returns rows affected per task."""
    results: dict[str, int] = {}
    for task in _TASKS:
        results[task] = await run_task(session, task, time_provider=time_provider)
    return results
