from __future__ import annotations

from datetime import datetime
import hashlib
import secrets
from uuid import uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.domain.models import AuthSession


TOKEN_PREFIX = "tnss_"


def is_session_token(raw_token: str) -> bool:
    return raw_token.startswith(TOKEN_PREFIX)


def hash_session_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_session_token() -> tuple[str, str, str, str]:
    # Embed a short id prefix to support operational tracing without plaintext tokens.
    token_id = uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_token = f"{TOKEN_PREFIX}{token_id}_{secret}"
    return token_id, raw_token, raw_token[:12], hash_session_token(raw_token)


async def get_by_token(session: AsyncSession, raw_token: str) -> AuthSession | None:
    result = await session.execute(
        select(AuthSession).where(AuthSession.token_hash == hash_session_token(raw_token or ""))
    )
    return result.scalar_one_or_none()


async def create_session(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    now: datetime,
    expires_at: datetime,
    ip_address: str | None = None,
    user_agent: str | None = None,
    impersonation_token: str | None = None,
    impersonator_id: str | None = None,
) -> tuple[str, AuthSession]:
    token_id, raw_token, token_prefix, token_hash = generate_session_token()
    row = AuthSession(
        id=token_id,
        tenant_id=tenant_id,
        user_id=user_id,
        token_prefix=token_prefix,
        token_hash=token_hash,
        ip_address=ip_address,
        user_agent=user_agent,
        impersonation_token=impersonation_token,
        impersonator_id=impersonator_id,
        created_at=now,
        expires_at=expires_at,
    )
    session.add(row)
    await session.flush()
    return raw_token, row


async def revoke_user_sessions(session: AsyncSession, *, tenant_id: str, user_id: str, now: datetime) -> int:
    result = await session.execute(
        update(AuthSession)
        .where(
            AuthSession.tenant_id == tenant_id,
            AuthSession.user_id == user_id,
            AuthSession.revoked_at.is_(None),
        )
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def revoke_impersonation_sessions(session: AsyncSession, *, token_hash: str, now: datetime) -> int:
    result = await session.execute(
        update(AuthSession)
        .where(AuthSession.impersonation_token == token_hash, AuthSession.revoked_at.is_(None))
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def revoke_tenant_sessions(session: AsyncSession, *, tenant_id: str, now: datetime) -> int:
    # Used when a tenant is suspended or deleted.
    result = await session.execute(
        update(AuthSession)
        .where(AuthSession.tenant_id == tenant_id, AuthSession.revoked_at.is_(None))
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def delete_expired(session: AsyncSession, *, now: datetime) -> int:
    result = await session.execute(
        delete(AuthSession).where(or_(AuthSession.expires_at <= now, AuthSession.revoked_at.is_not(None)))
    )
    return int(result.rowcount or 0)
