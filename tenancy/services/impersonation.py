"""Audited, time-boxed impersonation of tenant users by super-admins.

Token states: ``active -> used`` on redemption, ``active -> expired`` once the
TTL passes (recorded lazily or by the sweep), ``active -> revoked`` by an
admin. Redemption is one conditional UPDATE, so concurrent redeemers of a
single-use token see exactly one success.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
import secrets
from typing import Any, Iterable

from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, as_utc, utc_now
from tenancy.core.config import get_settings
from tenancy.core.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    TenantSuspendedError,
    ValidationError,
)
from tenancy.domain.models import ImpersonationToken, Tenant
from tenancy.persistence.repos import sessions as sessions_repo
from tenancy.persistence.repos import users as users_repo
from tenancy.persistence.tenant_db import TenantContext
from tenancy.services.access_control import TENANT_PERMISSIONS, Principal, require
from tenancy.services.audit import AuditActor, audit
from tenancy.services.tenants.store import TENANT_STATUS_ACTIVE, TENANT_STATUS_SUSPENDED


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "tnimp_"

STATUS_ACTIVE = "active"
STATUS_USED = "used"
STATUS_EXPIRED = "expired"
STATUS_REVOKED = "revoked"


def hash_impersonation_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_impersonation_token() -> tuple[str, str]:
    raw_token = f"{TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
    return raw_token, hash_impersonation_token(raw_token)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    tenant_id: str
    target_user_id: str
    expires_at: datetime
    max_uses: int


@dataclass(frozen=True)
class ImpersonationSession:
    session_token: str
    session_id: str
    tenant_id: str
    user_id: str
    impersonator_id: str
    expires_at: datetime
    allowed_actions: tuple[str, ...]
    redirect_url: str | None = None


def _actor_for(principal: Principal, actor: AuditActor | None) -> AuditActor:
    if actor is not None:
        return actor
    return AuditActor(actor_type="user", actor_id=principal.subject_id, actor_role=principal.role)


def _log_entry(action: str, now: datetime, **fields: Any) -> dict[str, Any]:
    entry = {"action": action, "at": now.isoformat()}
    entry.update({key: value for key, value in fields.items() if value is not None})
    return entry


class ImpersonationBroker:
    def __init__(self, *, time_provider: Clock | None = None) -> None:
        self._time_provider = time_provider or utc_now

    def now(self) -> datetime:
        return self._time_provider()

    async def issue(
        self,
        central: AsyncSession,
        *,
        ctx: TenantContext,
        principal: Principal,
        tenant: Tenant,
        target_user_id: str,
        reason: str | None = None,
        ttl_minutes: int | None = None,
        max_duration_minutes: int | None = None,
        max_uses: int = 1,
        allowed_actions: Iterable[str] = (),
        restrictions: dict[str, Any] | None = None,
        redirect_url: str | None = None,
        return_url: str | None = None,
        actor: AuditActor | None = None,
    ) -> IssuedToken:
        require(principal, "tenants.impersonate")
        ctx.require_tenant(tenant.id)
        settings = get_settings()

        ttl = settings.impersonation_default_ttl_minutes if ttl_minutes is None else int(ttl_minutes)
        if ttl < 1 or ttl > settings.impersonation_max_ttl_minutes:
            raise ValidationError.for_field(
                "ttl_minutes", f"TTL must be between 1 and {settings.impersonation_max_ttl_minutes} minutes"
            )
        duration = (
            settings.impersonation_default_max_duration_minutes
            if max_duration_minutes is None
            else int(max_duration_minutes)
        )
        if duration < 1:
            raise ValidationError.for_field("max_duration_minutes", "Maximum duration must be positive")
        if max_uses < 1:
            raise ValidationError.for_field("max_uses", "max_uses must be at least 1")
        actions = tuple(dict.fromkeys(allowed_actions))
        unknown = [action for action in actions if action not in TENANT_PERMISSIONS]
        if unknown:
            raise ValidationError.for_field("allowed_actions", f"Unknown actions: {', '.join(unknown)}")

        if tenant.is_system or tenant.deleted_at is not None or tenant.status != TENANT_STATUS_ACTIVE:
            raise ConflictError("Tenant is not active", code="TENANT_NOT_ACTIVE", details={"tenant_id": tenant.id})

        target = await users_repo.get_user(ctx, target_user_id)
        if target is None:
            raise NotFoundError("User not found", details={"user_id": target_user_id})
        if target.is_super_admin or target.status != "active":
            raise ValidationError.for_field("target_user_id", "User cannot be impersonated")

        now = self.now()
        raw_token, token_hash = generate_impersonation_token()
        expires_at = now + timedelta(minutes=ttl)
        row = ImpersonationToken(
            token=token_hash,
            tenant_id=tenant.id,
            target_user_id=target.id,
            impersonator_id=principal.subject_id,
            allowed_actions=list(actions),
            restrictions=restrictions or {},
            redirect_url=redirect_url,
            return_url=return_url,
            session_id=principal.session_id,
            ip_address=actor.ip_address if actor else None,
            user_agent=actor.user_agent if actor else None,
            status=STATUS_ACTIVE,
            expires_at=expires_at,
            max_uses=max_uses,
            used_count=0,
            single_use=max_uses == 1,
            max_duration_minutes=duration,
            created_by=principal.subject_id,
            reason=reason,
            context={"target_email": target.email, "tenant_slug": tenant.slug},
            audit_log=[_log_entry("issued", now, by=principal.subject_id)],
        )
        central.add(row)
        await audit(
            _actor_for(principal, actor),
            session=central,
            event_type="impersonation.token.issued",
            tenant_id=tenant.id,
            resource_type="impersonation_token",
            resource_id=token_hash,
            metadata={"target_user_id": target.id, "ttl_minutes": ttl, "reason": reason},
        )
        await central.commit()
        logger.info(
            "impersonation_token_issued tenant_id=%s target_user_id=%s impersonator_id=%s",
            tenant.id,
            target.id,
            principal.subject_id,
        )
        return IssuedToken(
            token=raw_token,
            token_id=token_hash,
            tenant_id=tenant.id,
            target_user_id=target.id,
            expires_at=expires_at,
            max_uses=max_uses,
        )

    async def _classify_failure(self, central: AsyncSession, token_hash: str, now: datetime) -> Exception:
        row = await central.get(ImpersonationToken, token_hash, populate_existing=True)
        if row is None:
            return AuthenticationError("Invalid impersonation token", code="IMPERSONATION_TOKEN_INVALID")
        if row.status == STATUS_REVOKED:
            return AuthenticationError("Impersonation token revoked", code="IMPERSONATION_TOKEN_REVOKED")
        if row.status == STATUS_EXPIRED or as_utc(row.expires_at) <= now:
            if row.status == STATUS_ACTIVE:
                await central.execute(
                    update(ImpersonationToken)
                    .where(ImpersonationToken.token == token_hash, ImpersonationToken.status == STATUS_ACTIVE)
                    .values(status=STATUS_EXPIRED)
                    .execution_options(synchronize_session=False)
                )
                await central.commit()
            return AuthenticationError("Impersonation token expired", code="IMPERSONATION_TOKEN_EXPIRED")
        return ConflictError("Impersonation token already used", code="TOKEN_ALREADY_USED")

    async def redeem(
        self,
        central: AsyncSession,
        *,
        ctx: TenantContext,
        tenant: Tenant,
        raw_token: str,
        actor: AuditActor | None = None,
    ) -> ImpersonationSession:
        token_hash = hash_impersonation_token(raw_token or "")
        now = self.now()

        row = await central.get(ImpersonationToken, token_hash)
        if row is None:
            raise AuthenticationError("Invalid impersonation token", code="IMPERSONATION_TOKEN_INVALID")
        # A token only opens a session on the tenant it was issued for.
        token_tenant_id = row.tenant_id
        ctx.require_tenant(token_tenant_id)
        if tenant.id != token_tenant_id or tenant.deleted_at is not None:
            raise AuthenticationError("Invalid impersonation token", code="IMPERSONATION_TOKEN_INVALID")
        if tenant.status == TENANT_STATUS_SUSPENDED:
            raise TenantSuspendedError("This tenant account is suspended.")

        consumed = (
            await central.execute(
                update(ImpersonationToken)
                .where(
                    ImpersonationToken.token == token_hash,
                    ImpersonationToken.status == STATUS_ACTIVE,
                    ImpersonationToken.expires_at > now,
                    ImpersonationToken.used_count < ImpersonationToken.max_uses,
                )
                .values(
                    used_count=ImpersonationToken.used_count + 1,
                    used_at=now,
                    status=case(
                        (
                            or_(
                                ImpersonationToken.single_use.is_(True),
                                ImpersonationToken.used_count + 1 >= ImpersonationToken.max_uses,
                            ),
                            STATUS_USED,
                        ),
                        else_=ImpersonationToken.status,
                    ),
                )
                .returning(ImpersonationToken.token)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        if consumed is None:
            await central.rollback()
            error = await self._classify_failure(central, token_hash, now)
            logger.info("impersonation_redeem_rejected code=%s", getattr(error, "code", None))
            await audit(
                actor or AuditActor(actor_type="anonymous"),
                event_type="impersonation.token.redeem_failed",
                tenant_id=token_tenant_id,
                outcome="failure",
                resource_type="impersonation_token",
                resource_id=token_hash,
                error_code=getattr(error, "code", None),
            )
            raise error

        await central.refresh(row)
        target = await users_repo.get_user(ctx, row.target_user_id)
        if target is None or target.status != "active":
            await central.rollback()
            raise AuthenticationError("Impersonated user is not active", code="IMPERSONATION_TARGET_INACTIVE")

        # Hard ceiling from redemption time, independent of normal session TTL.
        duration = row.max_duration_minutes or get_settings().impersonation_default_max_duration_minutes
        expires_at = now + timedelta(minutes=duration)
        session_token, auth_session = await sessions_repo.create_session(
            central,
            tenant_id=row.tenant_id,
            user_id=row.target_user_id,
            now=now,
            expires_at=expires_at,
            ip_address=actor.ip_address if actor else None,
            user_agent=actor.user_agent if actor else None,
            impersonation_token=token_hash,
            impersonator_id=row.impersonator_id,
        )
        row.audit_log = [
            *(row.audit_log or []),
            _log_entry("redeemed", now, session_id=auth_session.id, ip=actor.ip_address if actor else None),
        ]
        await audit(
            AuditActor(
                actor_type="user",
                actor_id=row.impersonator_id,
                request_id=actor.request_id if actor else None,
                ip_address=actor.ip_address if actor else None,
                user_agent=actor.user_agent if actor else None,
            ),
            session=central,
            event_type="impersonation.token.redeemed",
            tenant_id=row.tenant_id,
            resource_type="impersonation_token",
            resource_id=token_hash,
            metadata={"target_user_id": row.target_user_id, "session_id": auth_session.id},
        )
        await central.commit()
        logger.info(
            "impersonation_token_redeemed tenant_id=%s target_user_id=%s impersonator_id=%s",
            row.tenant_id,
            row.target_user_id,
            row.impersonator_id,
        )
        return ImpersonationSession(
            session_token=session_token,
            session_id=auth_session.id,
            tenant_id=row.tenant_id,
            user_id=row.target_user_id,
            impersonator_id=row.impersonator_id,
            expires_at=expires_at,
            allowed_actions=tuple(row.allowed_actions or ()),
            redirect_url=row.redirect_url,
        )

    async def record_action(
        self,
        central: AsyncSession,
        *,
        principal: Principal,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        # Append an action taken under impersonation to the token's review log.
        if not principal.is_impersonating or principal.impersonation_token is None:
            return
        row = (
            await central.execute(
                select(ImpersonationToken)
                .where(ImpersonationToken.token == principal.impersonation_token)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if row is None:
            return
        row.audit_log = [
            *(row.audit_log or []),
            _log_entry("action", self.now(), performed=action, user_id=principal.subject_id, details=details),
        ]
        await audit(
            AuditActor(actor_type="user", actor_id=principal.impersonator_id),
            session=central,
            event_type="impersonation.action",
            tenant_id=principal.tenant_id,
            resource_type="impersonation_token",
            resource_id=row.token,
            metadata={"action": action, "target_user_id": principal.subject_id, **(details or {})},
        )
        await central.commit()

    async def revoke(
        self,
        central: AsyncSession,
        *,
        principal: Principal,
        token_id: str,
        reason: str | None = None,
        actor: AuditActor | None = None,
    ) -> bool:
        """Revoke an active token and end any sessions it opened.

        Tokens already used, expired or revoked are left alone and the call
        still succeeds; the return value says whether anything changed.
        """
        require(principal, "tenants.impersonate")
        row = await central.get(ImpersonationToken, token_id)
        if row is None:
            raise NotFoundError("Impersonation token not found", details={"token_id": token_id})
        now = self.now()
        revoked = await central.execute(
            update(ImpersonationToken)
            .where(ImpersonationToken.token == token_id, ImpersonationToken.status == STATUS_ACTIVE)
            .values(status=STATUS_REVOKED, revoked_at=now, revoked_by=principal.subject_id, revoke_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if (revoked.rowcount or 0) == 0:
            await central.rollback()
            return False
        await central.refresh(row)
        ended = await sessions_repo.revoke_impersonation_sessions(central, token_hash=token_id, now=now)
        row.audit_log = [*(row.audit_log or []), _log_entry("revoked", now, by=principal.subject_id, reason=reason)]
        await audit(
            _actor_for(principal, actor),
            session=central,
            event_type="impersonation.token.revoked",
            tenant_id=row.tenant_id,
            resource_type="impersonation_token",
            resource_id=token_id,
            metadata={"reason": reason, "sessions_revoked": ended},
        )
        await central.commit()
        return True

    async def get_token(self, central: AsyncSession, token_id: str) -> ImpersonationToken:
        row = await central.get(ImpersonationToken, token_id)
        if row is None:
            raise NotFoundError("Impersonation token not found", details={"token_id": token_id})
        return row

    async def sweep_expired(self, central: AsyncSession) -> int:
        result = await central.execute(
            update(ImpersonationToken)
            .where(ImpersonationToken.status == STATUS_ACTIVE, ImpersonationToken.expires_at <= self.now())
            .values(status=STATUS_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await central.commit()
        return int(result.rowcount or 0)


async def allowed_actions_for(central: AsyncSession, token_hash: str | None) -> tuple[str, ...]:
    if token_hash is None:
        return ()
    row = await central.get(ImpersonationToken, token_hash)
    return tuple(row.allowed_actions or ()) if row is not None else ()
