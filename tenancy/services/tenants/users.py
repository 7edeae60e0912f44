"""User management inside one tenant's isolated store.

The central ``user_count`` is reserved before the user row is written and
released again if that write fails, so the plan limit holds under
concurrent creations. Removing or demoting an admin goes through a
conditional statement that only matches while another active admin exists.
"""

from __future__ import annotations

from datetime import datetime
import logging
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, utc_now
from tenancy.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from tenancy.domain.models import Tenant, User
from tenancy.persistence.repos import sessions as sessions_repo
from tenancy.persistence.repos import users as users_repo
from tenancy.persistence.tenant_db import TenantContext
from tenancy.services.access_control import (
    ROLE_ADMIN,
    ROLE_USER,
    Principal,
    ResourceRef,
    normalize_role,
    replace_roles,
    require,
    role_allows,
)
from tenancy.services.audit import ANONYMOUS_ACTOR, AuditActor, audit
from tenancy.services.auth.passwords import generate_password, hash_password, validate_password
from tenancy.services.tenants import store


logger = logging.getLogger(__name__)


def _actor(principal: Principal, actor: AuditActor | None) -> AuditActor:
    if actor is not None:
        return actor
    return AuditActor(actor_type="user", actor_id=principal.subject_id, actor_role=principal.role)


def _user_ref(tenant: Tenant, user_id: str | None = None) -> ResourceRef:
    return ResourceRef(kind="user", tenant_id=tenant.id, resource_id=user_id)


def _last_admin() -> AuthorizationError:
    return AuthorizationError("A tenant must keep at least one active admin", code="TENANT_LAST_ADMIN")


def _self_action() -> AuthorizationError:
    return AuthorizationError("Administrators cannot perform this action on their own account", code="USER_SELF_ACTION_FORBIDDEN")


class TenantUserService:
    def __init__(self, *, time_provider: Clock | None = None) -> None:
        self._time_provider = time_provider or utc_now

    def now(self) -> datetime:
        return self._time_provider()

    async def list_users(
        self,
        ctx: TenantContext,
        tenant: Tenant,
        *,
        principal: Principal,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[User]:
        require(principal, "tenant.users.view", _user_ref(tenant))
        ctx.require_tenant(tenant.id)
        return await users_repo.list_users(ctx, status=status, limit=limit, offset=offset)

    async def create_user(
        self,
        central: AsyncSession,
        ctx: TenantContext,
        tenant: Tenant,
        *,
        principal: Principal,
        name: str,
        email: str,
        role: str = ROLE_USER,
        password: str | None = None,
        actor: AuditActor | None = None,
    ) -> User:
        require(principal, "tenant.users.create", _user_ref(tenant))
        normalized_role = normalize_role(role)
        # Nobody grants a role above their own.
        if not role_allows(role=principal.role, minimum_role=normalized_role):
            raise AuthorizationError("Cannot grant a role above your own", details={"role": normalized_role})
        if password is not None:
            validate_password(password)
        return await self._provision(
            central,
            ctx,
            tenant,
            name=name,
            email=email,
            role=normalized_role,
            password=password or generate_password(12),
            must_change_password=password is None,
            actor=_actor(principal, actor),
            event_type="tenant.user.created",
        )

    async def register_member(
        self,
        central: AsyncSession,
        ctx: TenantContext,
        tenant: Tenant,
        *,
        name: str,
        email: str,
        password: str,
        actor: AuditActor | None = None,
    ) -> User:
        # Self-registration, honoring the tenant's allow_registration setting.
        if tenant.status != store.TENANT_STATUS_ACTIVE:
            raise AuthorizationError("Tenant is not accepting registrations", code="REGISTRATION_DISABLED")
        if not (tenant.settings or {}).get("allow_registration", False):
            raise AuthorizationError("Tenant is not accepting registrations", code="REGISTRATION_DISABLED")
        validate_password(password)
        return await self._provision(
            central,
            ctx,
            tenant,
            name=name,
            email=email,
            role=ROLE_USER,
            password=password,
            must_change_password=False,
            actor=actor or ANONYMOUS_ACTOR,
            event_type="tenant.user.registered",
        )

    async def _provision(
        self,
        central: AsyncSession,
        ctx: TenantContext,
        tenant: Tenant,
        *,
        name: str,
        email: str,
        role: str,
        password: str,
        must_change_password: bool,
        actor: AuditActor,
        event_type: str,
    ) -> User:
        ctx.require_tenant(tenant.id)
        name = (name or "").strip()
        if not name:
            raise ValidationError.for_field("name", "Name is required")
        normalized_email = users_repo.normalize_email(email)
        if "@" not in normalized_email:
            raise ValidationError.for_field("email", "A valid email address is required")
        if await users_repo.get_user_by_email(ctx, normalized_email) is not None:
            raise ConflictError("Email already in use", code="USER_EMAIL_TAKEN", details={"field": "email"})

        # Reserve the seat first; a full plan fails here with nothing written.
        await store.increment_user_count(central, tenant.id)
        await central.commit()
        await central.refresh(tenant)

        now = self.now()
        user = User(
            id=uuid4().hex,
            tenant_id=tenant.id,
            name=name,
            email=normalized_email,
            password_hash=hash_password(password),
            status="active",
            role=role,
            is_super_admin=False,
            password_changed_at=None if must_change_password else now,
            must_change_password=must_change_password,
        )
        try:
            ctx.session.add(user)
            await ctx.session.flush()
            await replace_roles(ctx.session, tenant_id=tenant.id, user_id=user.id, role_names=[role])
            await ctx.session.commit()
        except Exception as exc:
            await ctx.session.rollback()
            await store.decrement_user_count(central, tenant.id)
            await central.commit()
            await central.refresh(tenant)
            if isinstance(exc, IntegrityError):
                raise ConflictError("Email already in use", code="USER_EMAIL_TAKEN", details={"field": "email"}) from exc
            raise

        await audit(
            actor,
            session=central,
            event_type=event_type,
            tenant_id=tenant.id,
            resource_type="user",
            resource_id=user.id,
            metadata={"email": normalized_email, "role": role},
        )
        await central.commit()
        logger.info("tenant_user_created tenant_id=%s user_id=%s role=%s", tenant.id, user.id, role)
        return user

    async def _target(self, ctx: TenantContext, user_id: str) -> User:
        user = await users_repo.get_user(ctx, user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return user

    async def _set_status(
        self,
        central: AsyncSession,
        ctx: TenantContext,
        tenant: Tenant,
        *,
        principal: Principal,
        user_id: str,
        status: str,
        actor: AuditActor | None,
    ) -> User:
        require(principal, "tenant.users.deactivate", _user_ref(tenant, user_id))
        ctx.require_tenant(tenant.id)
        if user_id == principal.subject_id:
            raise _self_action()
        target = await self._target(ctx, user_id)
        keep_an_admin = status != "active" and target.role == ROLE_ADMIN and target.status == "active"
        updated = await users_repo.update_user_guarded(
            ctx, user_id, values={"status": status}, keep_an_admin=keep_an_admin
        )
        if not updated:
            await ctx.session.rollback()
            raise _last_admin() if keep_an_admin else NotFoundError("User not found", details={"user_id": user_id})
        await ctx.session.commit()
        await ctx.session.refresh(target)

        now = self.now()
        revoked = 0
        if status != "active":
            revoked = await sessions_repo.revoke_user_sessions(central, tenant_id=tenant.id, user_id=user_id, now=now)
        await audit(
            _actor(principal, actor),
            session=central,
            event_type="tenant.user.activated" if status == "active" else "tenant.user.deactivated",
            tenant_id=tenant.id,
            resource_type="user",
            resource_id=user_id,
            metadata={"sessions_revoked": revoked},
        )
        await central.commit()
        return target

    async def deactivate_user(
        self,
        central: AsyncSession,
        ctx: TenantContext,
        tenant: Tenant,
        *,
        principal: Principal,
        user_id: str,
        actor: AuditActor | None = None,
    ) -> User:
        return await self._set_status(
            central, ctx, tenant, principal=principal, user_id=user_id, status="inactive", actor=actor
        )

    async def activate_user(
        self,
        central: AsyncSession,
        ctx: TenantContext,
        tenant: Tenant,
        *,
        principal: Principal,
        user_id: str,
        actor: AuditActor | None = None,
    ) -> User:
        return await self._set_status(
            central, ctx, tenant, principal=principal, user_id=user_id, status="active", actor=actor
        )

    async def delete_user(
        self,
        central: AsyncSession,
        ctx: TenantContext,
        tenant: Tenant,
        *,
        principal: Principal,
        user_id: str,
        actor: AuditActor | None = None,
    ) -> None:
        """Admin path: soft-delete another user of the tenant.

        The row is kept with ``deleted_at`` set and its email freed for reuse.
        The last active admin cannot be deleted, and ``user_count`` drops by
        exactly one on success.
        """
        require(principal, "tenant.users.delete", _user_ref(tenant, user_id))
        ctx.require_tenant(tenant.id)
        if user_id == principal.subject_id:
            raise _self_action()
        target = await self._target(ctx, user_id)
        keep_an_admin = target.role == ROLE_ADMIN and target.status == "active"
        now = self.now()
        deleted = await users_repo.delete_user_guarded(ctx, user_id, now=now, keep_an_admin=keep_an_admin)
        if not deleted:
            await ctx.session.rollback()
            raise _last_admin() if keep_an_admin else NotFoundError("User not found", details={"user_id": user_id})
        await ctx.session.commit()

        await store.decrement_user_count(central, tenant.id)
        revoked = await sessions_repo.revoke_user_sessions(central, tenant_id=tenant.id, user_id=user_id, now=now)
        await audit(
            _actor(principal, actor),
            session=central,
            event_type="tenant.user.deleted",
            tenant_id=tenant.id,
            resource_type="user",
            resource_id=user_id,
            metadata={"email": target.email, "sessions_revoked": revoked},
        )
        await central.commit()
        await central.refresh(tenant)
        logger.info("tenant_user_deleted tenant_id=%s user_id=%s", tenant.id, user_id)

    async def change_role(
        self,
        central: AsyncSession,
        ctx: TenantContext,
        tenant: Tenant,
        *,
        principal: Principal,
        user_id: str,
        role: str,
        actor: AuditActor | None = None,
    ) -> User:
        require(principal, "tenant.roles.manage", _user_ref(tenant, user_id))
        ctx.require_tenant(tenant.id)
        new_role = normalize_role(role)
        target = await self._target(ctx, user_id)
        previous = target.role
        if previous == new_role:
            return target
        keep_an_admin = previous == ROLE_ADMIN and target.status == "active"
        updated = await users_repo.update_user_guarded(
            ctx, user_id, values={"role": new_role}, keep_an_admin=keep_an_admin
        )
        if not updated:
            await ctx.session.rollback()
            raise _last_admin() if keep_an_admin else NotFoundError("User not found", details={"user_id": user_id})
        await replace_roles(ctx.session, tenant_id=tenant.id, user_id=user_id, role_names=[new_role])
        await ctx.session.commit()
        await ctx.session.refresh(target)
        await audit(
            _actor(principal, actor),
            session=central,
            event_type="tenant.user.role_changed",
            tenant_id=tenant.id,
            resource_type="user",
            resource_id=user_id,
            metadata={"previous_role": previous, "role": new_role},
        )
        await central.commit()
        return target

    async def remove_own_account(self, ctx: TenantContext, *, principal: Principal) -> None:
        # Self-service removal is never allowed; an admin must remove the account.
        ctx.require_tenant(principal.tenant_id)
        logger.info("self_service_removal_rejected tenant_id=%s user_id=%s", principal.tenant_id, principal.subject_id)
        raise AuthorizationError(
            "You cannot deactivate or delete your own account",
            code="SELF_SERVICE_ACCOUNT_REMOVAL_FORBIDDEN",
        )
