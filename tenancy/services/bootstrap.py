"""One-shot creation of the first super-admin.

The ``system_setup_complete`` row in ``system_settings`` is the persisted
flag; its primary key makes the insert itself the race guard. The flag, the
system tenant, the user and the RBAC grants commit in one transaction, so a
crash can never leave one without the others.
"""

from __future__ import annotations

from datetime import datetime
import hmac
import logging
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, utc_now
from tenancy.core.config import get_settings
from tenancy.core.errors import AuthorizationError, ConflictError, ValidationError
from tenancy.domain.models import SystemSetting, Tenant, User
from tenancy.persistence.repos.users import normalize_email
from tenancy.services.access_control import (
    ROLE_ADMIN,
    SUPER_ADMIN_PERMISSIONS,
    SYSTEM_ADMIN_ROLE,
    assign_role,
    seed_rbac,
)
from tenancy.services.audit import AuditActor, audit
from tenancy.services.auth.passwords import hash_password, validate_password
from tenancy.services.tenants.plans import PLAN_UNLIMITED, get_plan
from tenancy.services.tenants.store import TENANT_STATUS_ACTIVE, get_system_tenant


logger = logging.getLogger(__name__)

SETUP_COMPLETE_KEY = "system_setup_complete"
SYSTEM_TENANT_SLUG = "system"


async def is_bootstrapped(session: AsyncSession) -> bool:
    # The flag is a fast path; an existing super-admin also counts.
    flag = await session.get(SystemSetting, SETUP_COMPLETE_KEY)
    if flag is not None:
        return True
    super_admins = (
        await session.execute(
            select(func.count()).select_from(User).where(User.is_super_admin.is_(True), User.deleted_at.is_(None))
        )
    ).scalar_one()
    return int(super_admins) > 0


def setup_key_matches(provided: str | None) -> bool:
    expected = get_settings().setup_key
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def _ensure_system_tenant(session: AsyncSession, *, now: datetime) -> Tenant:
    tenant = await get_system_tenant(session)
    if tenant is not None:
        return tenant
    plan = get_plan(PLAN_UNLIMITED)
    tenant = Tenant(
        id=uuid4().hex,
        name="System",
        slug=SYSTEM_TENANT_SLUG,
        primary_domain=None,
        database=None,
        is_system=True,
        plan=plan.plan_id,
        status=TENANT_STATUS_ACTIVE,
        activated_at=now,
        settings={"is_system_tenant": True, "allow_registration": False},
        features=dict(plan.features),
        limits=dict(plan.limits),
        metadata_json={},
        user_count=0,
        storage_used=0,
        api_calls_count=0,
    )
    session.add(tenant)
    await session.flush()
    return tenant


async def bootstrap(
    session: AsyncSession,
    *,
    name: str,
    email: str,
    password: str,
    setup_key: str | None,
    actor: AuditActor | None = None,
    time_provider: Clock | None = None,
) -> User:
    """Create the system tenant and its first super-admin.

    Raises ``ConflictError`` once bootstrap has happened (including when a
    concurrent call wins the flag insert) and ``AuthorizationError`` for a
    missing or wrong setup key.
    """
    if await is_bootstrapped(session):
        raise ConflictError("System is already bootstrapped", code="ALREADY_BOOTSTRAPPED")
    if not setup_key_matches(setup_key):
        logger.warning("bootstrap_setup_key_rejected")
        raise AuthorizationError("Invalid setup key", code="INVALID_SETUP_KEY")

    if not (name or "").strip():
        raise ValidationError.for_field("name", "Name is required")
    normalized_email = normalize_email(email)
    if "@" not in normalized_email:
        raise ValidationError.for_field("email", "A valid email address is required")
    validate_password(password)

    now = (time_provider or utc_now)()
    try:
        # Flag row first: a concurrent bootstrap fails here on the primary key.
        session.add(SystemSetting(key=SETUP_COMPLETE_KEY, value={"completed_at": now.isoformat()}))
        await session.flush()
        tenant = await _ensure_system_tenant(session, now=now)
        user = User(
            id=uuid4().hex,
            tenant_id=tenant.id,
            name=name.strip(),
            email=normalized_email,
            password_hash=hash_password(password),
            status="active",
            role=ROLE_ADMIN,
            is_super_admin=True,
            email_verified_at=now,
            password_changed_at=now,
        )
        session.add(user)
        await session.flush()
        await seed_rbac(
            session,
            tenant_id=tenant.id,
            role_permissions={SYSTEM_ADMIN_ROLE: SUPER_ADMIN_PERMISSIONS},
        )
        await assign_role(session, tenant_id=tenant.id, user_id=user.id, role_name=SYSTEM_ADMIN_ROLE)
        tenant.user_count = (tenant.user_count or 0) + 1
        await audit(
            actor or AuditActor(actor_type="system", actor_id="setup"),
            session=session,
            event_type="system.bootstrapped",
            tenant_id=tenant.id,
            resource_type="user",
            resource_id=user.id,
            metadata={"email": normalized_email},
        )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        logger.info("bootstrap_conflict")
        raise ConflictError("System is already bootstrapped", code="ALREADY_BOOTSTRAPPED") from exc
    except BaseException:
        await session.rollback()
        raise

    logger.info("system_bootstrapped user_id=%s tenant_id=%s", user.id, tenant.id)
    return user
