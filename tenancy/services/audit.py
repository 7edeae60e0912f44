from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from tenancy.domain.models import AuditEvent
from tenancy.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = [
    "password",
    "token",
    "secret",
    "authorization",
    "recovery_code",
    "one_time_code",
    "setup_key",
]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class AuditActor:
    # Who performed an action, plus the request it arrived on.
    actor_type: str
    actor_id: str | None = None
    actor_role: str | None = None
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def with_request(self, request: Request | None) -> "AuditActor":
        context = get_request_context(request)
        return replace(self, **context)


SYSTEM_ACTOR = AuditActor(actor_type="system", actor_id="system")
ANONYMOUS_ACTOR = AuditActor(actor_type="anonymous")


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Audit failures never fail the audited operation unless best_effort is off.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            await _persist(audit_session, event, commit=True, best_effort=best_effort)
        return
    await _persist(session, event, commit=bool(commit), best_effort=best_effort)


async def _persist(session: AsyncSession, event: AuditEvent, *, commit: bool, best_effort: bool) -> None:
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s tenant_id=%s request_id=%s",
            event.event_type,
            event.tenant_id,
            event.request_id,
            exc_info=exc,
        )


async def audit(
    actor: AuditActor,
    *,
    event_type: str,
    tenant_id: str | None,
    session: AsyncSession | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    outcome: str = "success",
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
) -> None:
    """Single audit sink used by every core operation.

    Pass the operation's own session to make the audit row part of its
    transaction; omit it to write the row independently (used for failures,
    after the business transaction has been rolled back).
    """
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        actor_role=actor.actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=actor.request_id,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
        metadata=metadata,
        error_code=error_code,
        commit=commit,
    )


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    # Newest first, for admin views and assertions.
    stmt = select(AuditEvent)
    if tenant_id is not None:
        stmt = stmt.where(AuditEvent.tenant_id == tenant_id)
    if event_type is not None:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    stmt = stmt.order_by(AuditEvent.id.desc()).limit(limit)
    return list((await session.execute(stmt)).scalars().all())
