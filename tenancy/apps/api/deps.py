from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.errors import AuthenticationError, AuthorizationError, NotFoundError
from tenancy.domain.models import AuthSession, Tenant, User
from tenancy.persistence.db import get_session
from tenancy.persistence.tenant_db import TenantContext, tenant_databases
from tenancy.services.access_control import SCOPE_CENTRAL, Principal, build_principal
from tenancy.services.audit import ANONYMOUS_ACTOR, AuditActor
from tenancy.services.auth.rate_limiter import LoginRateLimiter, get_rate_limiter
from tenancy.services.auth.sessions import AuthService
from tenancy.services.impersonation import ImpersonationBroker, allowed_actions_for
from tenancy.services.tenants import store
from tenancy.services.tenants.lifecycle import TenantLifecycle
from tenancy.services.tenants.users import TenantUserService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


# Service factories are dependencies so tests can swap in a fixed clock or a fake mailer.
def get_rate_limiter_dep() -> LoginRateLimiter:
    return get_rate_limiter()


def get_auth_service() -> AuthService:
    return AuthService()


def get_lifecycle() -> TenantLifecycle:
    return TenantLifecycle()


def get_broker() -> ImpersonationBroker:
    return ImpersonationBroker()


def get_user_service() -> TenantUserService:
    return TenantUserService()


def request_actor(request: Request) -> AuditActor:
    return ANONYMOUS_ACTOR.with_request(request)


def principal_actor(request: Request, principal: Principal) -> AuditActor:
    return AuditActor(actor_type="user", actor_id=principal.subject_id, actor_role=principal.role).with_request(request)


def request_host(request: Request) -> str:
    return request.headers.get("host") or (request.url.hostname or "")


async def get_request_tenant(request: Request, db: AsyncSession = Depends(get_db)) -> Tenant:
    # Tenant-facing routes are addressed by the tenant's domain, never by an id in the body.
    tenant = await store.resolve_tenant_by_host(db, request_host(request))
    if tenant is None:
        raise NotFoundError("Unknown tenant", code="TENANT_NOT_FOUND", details={"host": request_host(request)})
    return tenant


async def get_system_tenant(db: AsyncSession = Depends(get_db)) -> Tenant:
    tenant = await store.get_system_tenant(db)
    if tenant is None:
        raise NotFoundError("System is not bootstrapped", code="SYSTEM_NOT_BOOTSTRAPPED")
    return tenant


async def open_request_tenant(
    tenant: Tenant = Depends(get_request_tenant),
) -> AsyncGenerator[TenantContext, None]:
    async with tenant_databases.open(tenant) as ctx:
        yield ctx


async def open_system_tenant(
    tenant: Tenant = Depends(get_system_tenant),
) -> AsyncGenerator[TenantContext, None]:
    async with tenant_databases.open(tenant) as ctx:
        yield ctx


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise AuthenticationError("Missing or invalid bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Missing or invalid bearer token")
    return parts[1]


@dataclass
class Authenticated:
    principal: Principal
    tenant: Tenant
    user: User
    auth_session: AuthSession
    ctx: TenantContext
    raw_token: str


_READ_ONLY_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


async def get_authenticated(
    request: Request,
    authorization: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
    broker: ImpersonationBroker = Depends(get_broker),
) -> AsyncGenerator[Authenticated, None]:
    raw_token = _parse_bearer_token(authorization)
    auth_session, tenant = await auth_service.resolve_session(db, raw_token)
    # A tenant session only works on that tenant's own hosts.
    host_tenant = await store.resolve_tenant_by_host(db, request_host(request))
    if host_tenant is not None and host_tenant.id != tenant.id:
        raise AuthenticationError("Invalid session token")
    allowed = await allowed_actions_for(db, auth_session.impersonation_token)
    async with tenant_databases.open(tenant) as ctx:
        user = await auth_service.load_session_user(ctx, auth_session)
        principal = await build_principal(
            ctx.session,
            user,
            session_id=auth_session.id,
            impersonator_id=auth_session.impersonator_id,
            impersonation_token=auth_session.impersonation_token,
            allowed_actions=allowed,
        )
        await ctx.session.commit()
        request.state.principal = principal
        yield Authenticated(
            principal=principal,
            tenant=tenant,
            user=user,
            auth_session=auth_session,
            ctx=ctx,
            raw_token=raw_token,
        )
    # Runs only after the route returned without raising.
    if principal.is_impersonating and request.method not in _READ_ONLY_METHODS:
        route = request.scope.get("route")
        await broker.record_action(
            db,
            principal=principal,
            action=f"{request.method} {getattr(route, 'path', request.url.path)}",
            details={"path": request.url.path, **request.path_params},
        )


async def require_central_principal(auth: Authenticated = Depends(get_authenticated)) -> Authenticated:
    # Super-admin routes; the per-action permission is still checked by the service.
    if auth.principal.scope != SCOPE_CENTRAL:
        raise AuthorizationError("Central administrator access required", code="CENTRAL_SCOPE_REQUIRED")
    return auth


async def require_own_session(auth: Authenticated = Depends(get_authenticated)) -> Authenticated:
    # Credentials and second factors are managed by the account holder only.
    if auth.principal.is_impersonating:
        raise AuthorizationError(
            "Not permitted during impersonation",
            code="IMPERSONATION_FORBIDDEN",
            details={"user_id": auth.principal.subject_id},
        )
    return auth
