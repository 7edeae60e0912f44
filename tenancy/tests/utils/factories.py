from __future__ import annotations

from uuid import uuid4

from tenancy.domain.models import Tenant, User
from tenancy.persistence.db import SessionLocal
from tenancy.persistence.repos import users as users_repo
from tenancy.persistence.tenant_db import tenant_databases
from tenancy.services.access_control import Principal, build_principal
from tenancy.services.auth.rate_limiter import DatabaseRateLimiter
from tenancy.services.auth.sessions import AuthService, LoginResult
from tenancy.services.bootstrap import bootstrap
from tenancy.services.impersonation import ImpersonationBroker
from tenancy.services.tenants import store
from tenancy.services.tenants.lifecycle import TenantLifecycle
from tenancy.services.tenants.users import TenantUserService
from tenancy.tests.utils.fakes import FrozenClock, RecordingEmailDispatcher

ADMIN_PASSWORD = "correct-horse-battery"
SUPER_ADMIN_EMAIL = "root@example.com"
SUPER_ADMIN_PASSWORD = "super-secret-password"
SETUP_KEY = "test-setup-key"


class Services:
    # One clock and one outbox shared by every service a test touches.
    def __init__(self, clock: FrozenClock | None = None) -> None:
        self.clock = clock or FrozenClock()
        self.mailer = RecordingEmailDispatcher()
        self.lifecycle = TenantLifecycle(mailer=self.mailer, time_provider=self.clock)
        self.auth = AuthService(
            rate_limiter=DatabaseRateLimiter(time_provider=self.clock),
            mailer=self.mailer,
            time_provider=self.clock,
        )
        self.broker = ImpersonationBroker(time_provider=self.clock)
        self.users = TenantUserService(time_provider=self.clock)


def unique_name(prefix: str = "Acme") -> str:
    return f"{prefix} {uuid4().hex[:8]}"


async def register_tenant(
    services: Services,
    *,
    name: str | None = None,
    plan: str = "basic",
    admin_email: str | None = None,
    activate: bool = True,
) -> Tenant:
    name = name or unique_name()
    async with SessionLocal() as session:
        tenant = await services.lifecycle.register(
            session,
            name=name,
            admin_email=admin_email or f"admin-{uuid4().hex[:8]}@example.com",
            admin_name="Tenant Admin",
            admin_password=ADMIN_PASSWORD,
            plan=plan,
        )
        if activate:
            tenant = await services.lifecycle.activate(session, tenant)
        return await store.get_tenant(session, tenant.id)


async def load_tenant(tenant_id: str) -> Tenant:
    async with SessionLocal() as session:
        return await store.get_tenant(session, tenant_id, include_deleted=True)


async def bootstrap_super_admin() -> User:
    async with SessionLocal() as session:
        return await bootstrap(
            session,
            name="Root",
            email=SUPER_ADMIN_EMAIL,
            password=SUPER_ADMIN_PASSWORD,
            setup_key=SETUP_KEY,
        )


async def login(
    services: Services,
    tenant: Tenant,
    email: str,
    password: str = ADMIN_PASSWORD,
    *,
    one_time_code: str | None = None,
) -> LoginResult:
    async with SessionLocal() as session:
        async with tenant_databases.open(tenant) as ctx:
            return await services.auth.login(
                session,
                ctx=ctx,
                tenant=tenant,
                email=email,
                password=password,
                one_time_code=one_time_code,
            )


async def get_user_by_email(tenant: Tenant, email: str) -> User | None:
    async with tenant_databases.open(tenant) as ctx:
        return await users_repo.get_user_by_email(ctx, email)


async def principal_for(tenant: Tenant, email: str, **kwargs) -> Principal:
    async with tenant_databases.open(tenant) as ctx:
        user = await users_repo.get_user_by_email(ctx, email)
        assert user is not None
        return await build_principal(ctx.session, user, **kwargs)


async def create_member(
    services: Services,
    tenant: Tenant,
    principal: Principal,
    *,
    role: str = "user",
    email: str | None = None,
    password: str = ADMIN_PASSWORD,
) -> User:
    async with SessionLocal() as session:
        tenant = await store.get_tenant(session, tenant.id)
        async with tenant_databases.open(tenant) as ctx:
            return await services.users.create_user(
                session,
                ctx,
                tenant,
                principal=principal,
                name="Member",
                email=email or f"member-{uuid4().hex[:8]}@example.com",
                role=role,
                password=password,
            )
