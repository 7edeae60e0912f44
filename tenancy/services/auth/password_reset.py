from __future__ import annotations

from datetime import datetime, timedelta
import hashlib
import logging
import secrets
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.config import get_settings
from tenancy.core.errors import AuthenticationError
from tenancy.domain.models import PasswordResetToken, Tenant
from tenancy.persistence.repos import sessions as sessions_repo
from tenancy.persistence.repos import users as users_repo
from tenancy.persistence.tenant_db import TenantContext
from tenancy.services.audit import ANONYMOUS_ACTOR, AuditActor, audit
from tenancy.services.auth.passwords import hash_password, validate_password
from tenancy.services.mailer import TEMPLATE_PASSWORD_RESET, EmailDispatcher, EmailMessage, dispatch_email


logger = logging.getLogger(__name__)

INVALID_RESET_TOKEN_MESSAGE = "This password reset token is invalid."


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


async def request_reset(
    central: AsyncSession,
    *,
    ctx: TenantContext,
    tenant: Tenant,
    email: str,
    now: datetime,
    mailer: EmailDispatcher,
    actor: AuditActor | None = None,
) -> None:
    """Issue a reset token when the email belongs to an active user.

    Returns nothing in every case so callers answer unknown and known
    addresses identically.
    """
    ctx.require_tenant(tenant.id)
    normalized_email = users_repo.normalize_email(email)
    user = await users_repo.get_user_by_email(ctx, normalized_email)
    raw_token = secrets.token_urlsafe(48)
    if user is None or user.status != "active":
        logger.info("password_reset_requested_unknown tenant_id=%s", tenant.id)
        await audit(
            actor or ANONYMOUS_ACTOR,
            event_type="auth.password_reset.requested",
            tenant_id=tenant.id,
            metadata={"email": normalized_email},
        )
        return

    # Only the newest token is ever redeemable.
    await central.execute(
        update(PasswordResetToken)
        .where(
            PasswordResetToken.tenant_id == tenant.id,
            PasswordResetToken.email == normalized_email,
            PasswordResetToken.used.is_(False),
        )
        .values(used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    ttl_minutes = get_settings().password_reset_ttl_minutes
    central.add(
        PasswordResetToken(
            id=uuid4().hex,
            tenant_id=tenant.id,
            email=normalized_email,
            token_hash=hash_reset_token(raw_token),
            ip_address=(actor.ip_address if actor else None),
            user_agent=(actor.user_agent if actor else None),
            used=False,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )
    )
    await audit(
        actor or ANONYMOUS_ACTOR,
        session=central,
        event_type="auth.password_reset.requested",
        tenant_id=tenant.id,
        resource_type="user",
        resource_id=user.id,
        metadata={"email": normalized_email},
    )
    await central.commit()
    await dispatch_email(
        mailer,
        EmailMessage(
            to=normalized_email,
            template=TEMPLATE_PASSWORD_RESET,
            context={
                "name": user.name,
                "tenant": tenant.slug,
                "reset_token": raw_token,
                "expires_in_minutes": ttl_minutes,
            },
        ),
    )


async def reset_password(
    central: AsyncSession,
    *,
    ctx: TenantContext,
    tenant: Tenant,
    email: str,
    token: str,
    new_password: str,
    now: datetime,
    actor: AuditActor | None = None,
) -> None:
    ctx.require_tenant(tenant.id)
    validate_password(new_password)
    normalized_email = users_repo.normalize_email(email)

    # Consume first: a single conditional UPDATE makes redemption exactly-once.
    consumed = (
        await central.execute(
            update(PasswordResetToken)
            .where(
                PasswordResetToken.token_hash == hash_reset_token(token or ""),
                PasswordResetToken.email == normalized_email,
                PasswordResetToken.tenant_id == tenant.id,
                PasswordResetToken.used.is_(False),
                PasswordResetToken.expires_at > now,
            )
            .values(used=True, used_at=now)
            .returning(PasswordResetToken.id)
            .execution_options(synchronize_session=False)
        )
    ).scalar_one_or_none()
    if consumed is None:
        await central.rollback()
        await audit(
            actor or ANONYMOUS_ACTOR,
            event_type="auth.password_reset.failed",
            tenant_id=tenant.id,
            outcome="failure",
            error_code="RESET_TOKEN_INVALID",
            metadata={"email": normalized_email},
        )
        raise AuthenticationError(INVALID_RESET_TOKEN_MESSAGE, code="RESET_TOKEN_INVALID")
    await central.commit()

    user = await users_repo.get_user_by_email(ctx, normalized_email)
    if user is None:
        raise AuthenticationError(INVALID_RESET_TOKEN_MESSAGE, code="RESET_TOKEN_INVALID")
    user.password_hash = hash_password(new_password)
    user.password_changed_at = now
    user.must_change_password = False
    user.failed_login_attempts = 0
    user.locked_until = None
    user_id = user.id
    await ctx.session.commit()

    revoked = await sessions_repo.revoke_user_sessions(central, tenant_id=tenant.id, user_id=user_id, now=now)
    await audit(
        actor or ANONYMOUS_ACTOR,
        session=central,
        event_type="auth.password_reset.completed",
        tenant_id=tenant.id,
        resource_type="user",
        resource_id=user_id,
        metadata={"sessions_revoked": revoked},
    )
    await central.commit()
    logger.info("password_reset_completed tenant_id=%s user_id=%s", tenant.id, user_id)
