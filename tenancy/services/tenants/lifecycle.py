"""Tenant registration, status transitions, deletion and migration.

Every operation takes the central session explicitly and commits it; a
failure after the tenant row is written rolls the row back and drops any
database that was created, so registration leaves all or nothing behind.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import re
import secrets
import unicodedata
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, utc_now
from tenancy.core.config import get_settings
from tenancy.core.errors import (
    ConflictError,
    ProvisioningError,
    ResourceLimitError,
    TenancyError,
    ValidationError,
)
from tenancy.domain.models import Domain, Tenant, User
from tenancy.persistence.db import STORE_UNAVAILABLE_ERRORS, store_unavailable
from tenancy.persistence.repos import sessions as sessions_repo
from tenancy.persistence.repos.users import normalize_email
from tenancy.persistence.tenant_db import TenantDatabaseRegistry, tenant_databases, validate_database_name
from tenancy.services.access_control import ROLE_ADMIN, assign_role, seed_tenant_roles
from tenancy.services.audit import SYSTEM_ACTOR, AuditActor, audit
from tenancy.services.auth.passwords import generate_password, hash_password, validate_password
from tenancy.services.mailer import (
    TEMPLATE_TENANT_SUSPENDED,
    TEMPLATE_TENANT_WELCOME,
    EmailDispatcher,
    EmailMessage,
    dispatch_email,
    get_email_dispatcher,
)
from tenancy.services.provisioning import DatabaseProvisioner, get_provisioner
from tenancy.services.tenants import store
from tenancy.services.tenants.domains import is_valid_domain, normalize_domain
from tenancy.services.tenants.plans import (
    LIMIT_API_CALLS,
    LIMIT_STORAGE,
    LIMIT_USERS,
    PLAN_BASIC,
    REGISTRABLE_PLANS,
    get_plan,
    is_unlimited,
)


logger = logging.getLogger(__name__)

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_DASH_RE = re.compile(r"[\s_-]+")
_MAX_SLUG_LENGTH = 63

# Allowed source states per transition.
_TRANSITIONS: dict[str, frozenset[str]] = {
    "activate": frozenset(
        {store.TENANT_STATUS_PENDING, store.TENANT_STATUS_SUSPENDED, store.TENANT_STATUS_INACTIVE}
    ),
    "suspend": frozenset({store.TENANT_STATUS_ACTIVE}),
}

DEFAULT_TENANT_SETTINGS = {
    "allow_registration": False,
    "require_email_verification": True,
    "timezone": "UTC",
}


def normalize_slug(value: str) -> str:
    """URL-safe slug; deterministic and idempotent (``normalize_slug(normalize_slug(x)) == normalize_slug(x)``)."""
    ascii_value = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode("ascii")
    lowered = _SLUG_STRIP_RE.sub("", ascii_value.lower())
    slug = _SLUG_DASH_RE.sub("-", lowered).strip("-")
    return slug[:_MAX_SLUG_LENGTH].rstrip("-")


def derived_domain(slug: str) -> str:
    return f"{slug}.{get_settings().tenant_base_domain}"


def database_name_for(slug: str, now: datetime) -> str:
    # Slug plus a timestamp: deterministic for one registration, distinct across re-registrations.
    base = slug.replace("-", "_")[:40].rstrip("_")
    return validate_database_name(f"tenant_{base}_{now:%Y%m%d%H%M%S}")


@dataclass(frozen=True)
class Availability:
    available: bool
    slug: str
    domain: str

    def as_dict(self) -> dict[str, object]:
        return {"available": self.available, "slug": self.slug, "domain": self.domain}


def _taken(field: str, message: str) -> ConflictError:
    return ConflictError(message, code="TENANT_ALREADY_EXISTS", details={"field": field})


class TenantLifecycle:
    def __init__(
        self,
        *,
        provisioner: DatabaseProvisioner | None = None,
        registry: TenantDatabaseRegistry | None = None,
        mailer: EmailDispatcher | None = None,
        time_provider: Clock | None = None,
    ) -> None:
        self.registry = registry or tenant_databases
        self.provisioner = provisioner or get_provisioner()
        self.mailer = mailer or get_email_dispatcher()
        self._time_provider = time_provider or utc_now

    def now(self) -> datetime:
        return self._time_provider()

    async def check_availability(self, session: AsyncSession, name_or_slug: str) -> Availability:
        slug = normalize_slug(name_or_slug)
        if not slug:
            raise ValidationError.for_field("slug", "Slug must contain letters or digits")
        domain = derived_domain(slug)
        available = not await store.slug_taken(session, slug) and not await store.domain_taken(session, domain)
        return Availability(available=available, slug=slug, domain=domain)

    async def register(
        self,
        session: AsyncSession,
        *,
        name: str,
        admin_email: str,
        admin_name: str,
        plan: str = PLAN_BASIC,
        domain: str | None = None,
        admin_password: str | None = None,
        phone: str | None = None,
        actor: AuditActor | None = None,
    ) -> Tenant:
        actor = actor or SYSTEM_ACTOR
        name = (name or "").strip()
        if not name:
            raise ValidationError.for_field("name", "Tenant name is required")
        email = normalize_email(admin_email)
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise ValidationError.for_field("admin_email", "A valid email address is required")
        if not (admin_name or "").strip():
            raise ValidationError.for_field("admin_name", "Admin name is required")
        plan_definition = get_plan(plan)
        if plan_definition.plan_id not in REGISTRABLE_PLANS:
            raise ValidationError.for_field("plan", f"Plan is not available for registration: {plan}")
        if admin_password is not None:
            validate_password(admin_password, field="admin_password")

        slug = normalize_slug(name)
        if not slug:
            raise ValidationError.for_field("name", "Tenant name must contain letters or digits")
        primary_domain = normalize_domain(domain) if domain else derived_domain(slug)
        if not is_valid_domain(primary_domain):
            raise ValidationError.for_field("domain", "Invalid domain")

        if await store.slug_taken(session, slug):
            raise _taken("slug", "Tenant slug already taken")
        if await store.domain_taken(session, primary_domain):
            raise _taken("domain", "Domain already taken")
        if await store.admin_email_taken(session, email):
            raise _taken("admin_email", "Admin email already registered")

        now = self.now()
        tenant_id = uuid4().hex
        database = database_name_for(slug, now)
        is_subdomain = primary_domain.endswith(f".{get_settings().tenant_base_domain}")
        tenant = Tenant(
            id=tenant_id,
            name=name,
            slug=slug,
            primary_domain=primary_domain,
            database=database,
            is_system=False,
            plan=plan_definition.plan_id,
            monthly_revenue=plan_definition.monthly_price,
            status=store.TENANT_STATUS_PENDING,
            admin_email=email,
            admin_name=admin_name.strip(),
            phone=phone,
            settings={**DEFAULT_TENANT_SETTINGS, **plan_definition.settings},
            features=dict(plan_definition.features),
            limits=dict(plan_definition.limits),
            metadata_json={},
            user_count=0,
            storage_used=0,
            api_calls_count=0,
        )
        primary = Domain(
            id=uuid4().hex,
            tenant_id=tenant_id,
            domain=primary_domain,
            subdomain=slug if is_subdomain else None,
            type="subdomain" if is_subdomain else "custom",
            status="active" if is_subdomain else "pending_verification",
            verified_at=now if is_subdomain else None,
            verification_token=None if is_subdomain else secrets.token_hex(16),
            verification_method=None if is_subdomain else "dns_txt",
            is_primary=True,
        )
        # Unique constraints decide concurrent registrations here.
        await store.insert_tenant(session, tenant, [primary])

        password = admin_password or generate_password(12)
        database_created = False
        try:
            await self.provisioner.create_database(database)
            database_created = True
            await self.provisioner.run_migrations(database)
            admin_user_id = await self._create_admin(
                tenant,
                name=admin_name.strip(),
                email=email,
                password=password,
                must_change_password=admin_password is None,
                now=now,
            )
            tenant.user_count = 1
            tenant.database_migrated_at = now
            await audit(
                actor,
                session=session,
                event_type="tenant.registered",
                tenant_id=tenant_id,
                resource_type="tenant",
                resource_id=tenant_id,
                metadata={"slug": slug, "plan": plan_definition.plan_id, "domain": primary_domain},
            )
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if database_created:
                await self._discard_database(database)
            logger.error(
                "tenant_registration_failed slug=%s database=%s request_id=%s",
                slug,
                database,
                actor.request_id,
                exc_info=exc,
            )
            await audit(
                actor,
                event_type="tenant.registration_failed",
                tenant_id=None,
                outcome="failure",
                resource_type="tenant",
                error_code=exc.code if isinstance(exc, TenancyError) else type(exc).__name__,
                metadata={"slug": slug},
            )
            if isinstance(exc, TenancyError):
                raise
            if isinstance(exc, STORE_UNAVAILABLE_ERRORS):
                raise store_unavailable("tenant.register", exc) from exc
            if isinstance(exc, SQLAlchemyError):
                raise ProvisioningError("Tenant registration failed", details={"slug": slug}) from exc
            raise

        logger.info("tenant_registered tenant_id=%s slug=%s database=%s", tenant_id, slug, database)
        await dispatch_email(
            self.mailer,
            EmailMessage(
                to=email,
                template=TEMPLATE_TENANT_WELCOME,
                context={
                    "tenant": name,
                    "admin_name": admin_name.strip(),
                    "login_url": f"https://{primary_domain}/login",
                    "temporary_password": None if admin_password else password,
                },
            ),
        )
        return tenant

    async def _create_admin(
        self,
        tenant: Tenant,
        *,
        name: str,
        email: str,
        password: str,
        must_change_password: bool,
        now: datetime,
    ) -> str:
        async with self.registry.open(tenant) as ctx:
            await seed_tenant_roles(ctx.session, tenant.id)
            user = User(
                id=uuid4().hex,
                tenant_id=tenant.id,
                name=name,
                email=email,
                password_hash=hash_password(password),
                status="active",
                role=ROLE_ADMIN,
                is_super_admin=False,
                email_verified_at=now,
                password_changed_at=None if must_change_password else now,
                must_change_password=must_change_password,
            )
            ctx.session.add(user)
            await ctx.session.flush()
            await assign_role(ctx.session, tenant_id=tenant.id, user_id=user.id, role_name=ROLE_ADMIN)
            await ctx.session.commit()
            return user.id

    async def _discard_database(self, database: str) -> None:
        # Cleanup after a failed registration; the original error is what gets raised.
        try:
            await self.provisioner.drop_database(database)
        except ProvisioningError as exc:
            logger.error("tenant_database_cleanup_failed database=%s", database, exc_info=exc)

    def _check_transition(self, tenant: Tenant, transition: str) -> None:
        if tenant.is_system:
            raise ConflictError("The system tenant cannot change status", code="SYSTEM_TENANT_PROTECTED")
        if tenant.status not in _TRANSITIONS[transition]:
            raise ConflictError(
                f"Cannot {transition} a tenant in status {tenant.status}",
                code="INVALID_STATUS_TRANSITION",
                details={"status": tenant.status, "transition": transition},
            )

    async def activate(self, session: AsyncSession, tenant: Tenant, *, actor: AuditActor | None = None) -> Tenant:
        self._check_transition(tenant, "activate")
        previous = tenant.status
        if tenant.database is not None and tenant.database_migrated_at is None:
            await self._migrate_store(tenant)
            tenant.database_migrated_at = self.now()
        tenant.status = store.TENANT_STATUS_ACTIVE
        tenant.activated_at = self.now()
        tenant.suspended_at = None
        tenant.suspension_reason = None
        await audit(
            actor or SYSTEM_ACTOR,
            session=session,
            event_type="tenant.activated",
            tenant_id=tenant.id,
            resource_type="tenant",
            resource_id=tenant.id,
            metadata={"previous_status": previous},
        )
        await session.commit()
        logger.info("tenant_activated tenant_id=%s previous_status=%s", tenant.id, previous)
        return tenant

    async def suspend(
        self,
        session: AsyncSession,
        tenant: Tenant,
        *,
        reason: str | None = None,
        actor: AuditActor | None = None,
    ) -> Tenant:
        self._check_transition(tenant, "suspend")
        now = self.now()
        tenant.status = store.TENANT_STATUS_SUSPENDED
        tenant.suspended_at = now
        tenant.suspension_reason = (reason or "").strip() or "Suspended by administrator"
        revoked = await sessions_repo.revoke_tenant_sessions(session, tenant_id=tenant.id, now=now)
        await audit(
            actor or SYSTEM_ACTOR,
            session=session,
            event_type="tenant.suspended",
            tenant_id=tenant.id,
            resource_type="tenant",
            resource_id=tenant.id,
            metadata={"reason": tenant.suspension_reason, "sessions_revoked": revoked},
        )
        await session.commit()
        logger.info("tenant_suspended tenant_id=%s", tenant.id)
        if tenant.admin_email:
            await dispatch_email(
                self.mailer,
                EmailMessage(
                    to=tenant.admin_email,
                    template=TEMPLATE_TENANT_SUSPENDED,
                    context={"tenant": tenant.name, "reason": tenant.suspension_reason},
                ),
            )
        return tenant

    async def delete(self, session: AsyncSession, tenant: Tenant, *, actor: AuditActor | None = None) -> None:
        """Soft-delete the tenant and drop its database as one unit.

        The row changes are staged first and only committed after the drop
        succeeded; a failed drop rolls them back and raises ``ProvisioningError``.
        """
        if tenant.is_system:
            raise ConflictError("The system tenant cannot be deleted", code="SYSTEM_TENANT_PROTECTED")
        now = self.now()
        tenant_id = tenant.id
        database = tenant.database
        tenant.deleted_at = now
        tenant.status = store.TENANT_STATUS_INACTIVE
        await session.execute(
            update(Domain)
            .where(Domain.tenant_id == tenant_id, Domain.deleted_at.is_(None))
            .values(deleted_at=now)
            .execution_options(synchronize_session=False)
        )
        await sessions_repo.revoke_tenant_sessions(session, tenant_id=tenant_id, now=now)
        await session.flush()

        if database is not None:
            try:
                await self.provisioner.drop_database(database)
            except ProvisioningError as exc:
                await session.rollback()
                logger.error(
                    "tenant_delete_failed tenant_id=%s database=%s",
                    tenant_id,
                    database,
                    exc_info=exc,
                )
                await audit(
                    actor or SYSTEM_ACTOR,
                    event_type="tenant.delete_failed",
                    tenant_id=tenant_id,
                    outcome="failure",
                    resource_type="tenant",
                    resource_id=tenant_id,
                    error_code=exc.code,
                )
                raise

        await audit(
            actor or SYSTEM_ACTOR,
            session=session,
            event_type="tenant.deleted",
            tenant_id=tenant_id,
            resource_type="tenant",
            resource_id=tenant_id,
            metadata={"database": database},
        )
        await session.commit()
        logger.info("tenant_deleted tenant_id=%s database=%s", tenant_id, database)

    async def _migrate_store(self, tenant: Tenant) -> None:
        await self.provisioner.run_migrations(tenant.database)
        async with self.registry.open(tenant) as ctx:
            await seed_tenant_roles(ctx.session, tenant.id)
            await ctx.session.commit()

    async def migrate(self, session: AsyncSession, tenant: Tenant, *, actor: AuditActor | None = None) -> Tenant:
        if tenant.database is None:
            raise ConflictError("Tenant has no isolated database", code="NO_TENANT_DATABASE")
        await self._migrate_store(tenant)
        tenant.database_migrated_at = self.now()
        await audit(
            actor or SYSTEM_ACTOR,
            session=session,
            event_type="tenant.migrated",
            tenant_id=tenant.id,
            resource_type="tenant",
            resource_id=tenant.id,
            metadata={"database": tenant.database},
        )
        await session.commit()
        return tenant

    async def change_plan(
        self,
        session: AsyncSession,
        tenant: Tenant,
        plan: str,
        *,
        actor: AuditActor | None = None,
    ) -> Tenant:
        definition = get_plan(plan)
        if tenant.is_system:
            raise ConflictError("The system tenant plan is fixed", code="SYSTEM_TENANT_PROTECTED")
        # A downgrade may not leave current usage above the new limits.
        for resource, current in (
            (LIMIT_USERS, tenant.user_count),
            (LIMIT_STORAGE, tenant.storage_used),
            (LIMIT_API_CALLS, tenant.api_calls_count),
        ):
            limit = definition.limits.get(resource, -1)
            if not is_unlimited(limit) and current > limit:
                raise ResourceLimitError(resource, current=int(current), limit=int(limit))
        previous = tenant.plan
        tenant.plan = definition.plan_id
        tenant.features = dict(definition.features)
        tenant.limits = dict(definition.limits)
        tenant.monthly_revenue = definition.monthly_price
        await audit(
            actor or SYSTEM_ACTOR,
            session=session,
            event_type="tenant.plan_changed",
            tenant_id=tenant.id,
            resource_type="tenant",
            resource_id=tenant.id,
            metadata={"previous_plan": previous, "plan": definition.plan_id},
        )
        await session.commit()
        return tenant
