from __future__ import annotations

from datetime import datetime
import hmac
import logging
import re
import secrets
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import utc_now
from tenancy.core.config import get_settings
from tenancy.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from tenancy.domain.models import Domain, Tenant
from tenancy.services.audit import SYSTEM_ACTOR, AuditActor, audit
from tenancy.services.tenants import store
from tenancy.services.tenants.plans import FEATURE_CUSTOM_DOMAIN


logger = logging.getLogger(__name__)

DOMAIN_STATUS_PENDING = "pending_verification"
DOMAIN_STATUS_ACTIVE = "active"
DOMAIN_STATUS_FAILED = "failed_verification"

_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9-]{2,63}$|^[a-z0-9-]+\.localhost$"
)


def normalize_domain(value: str) -> str:
    return (value or "").strip().lower().rstrip(".")


def is_valid_domain(value: str) -> bool:
    return bool(_DOMAIN_RE.match(value))


async def list_domains(session: AsyncSession, tenant_id: str) -> list[Domain]:
    result = await session.execute(
        select(Domain)
        .where(Domain.tenant_id == tenant_id, Domain.deleted_at.is_(None))
        .order_by(Domain.is_primary.desc(), Domain.created_at.asc())
    )
    return list(result.scalars().all())


async def get_domain(session: AsyncSession, tenant_id: str, domain_id: str) -> Domain:
    domain = (
        await session.execute(
            select(Domain).where(
                Domain.id == domain_id,
                Domain.tenant_id == tenant_id,
                Domain.deleted_at.is_(None),
            )
        )
    ).scalar_one_or_none()
    if domain is None:
        raise NotFoundError("Domain not found", details={"domain_id": domain_id})
    return domain


async def add_domain(
    session: AsyncSession,
    tenant: Tenant,
    hostname: str,
    *,
    actor: AuditActor | None = None,
) -> Domain:
    normalized = normalize_domain(hostname)
    if not is_valid_domain(normalized):
        raise ValidationError.for_field("domain", "Invalid domain")
    is_subdomain = normalized.endswith(f".{get_settings().tenant_base_domain}")
    if not is_subdomain and not (tenant.features or {}).get(FEATURE_CUSTOM_DOMAIN, False):
        raise AuthorizationError(
            "The tenant plan does not include custom domains",
            code="PLAN_FEATURE_REQUIRED",
            details={"feature": FEATURE_CUSTOM_DOMAIN},
        )
    if await store.domain_taken(session, normalized):
        raise ConflictError("Domain already taken", code="DOMAIN_TAKEN", details={"field": "domain"})
    domain = Domain(
        id=uuid4().hex,
        tenant_id=tenant.id,
        domain=normalized,
        subdomain=normalized.split(".", 1)[0] if is_subdomain else None,
        type="subdomain" if is_subdomain else "custom",
        status=DOMAIN_STATUS_PENDING,
        verification_token=secrets.token_hex(16),
        verification_method="dns_txt",
        is_primary=False,
    )
    try:
        session.add(domain)
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Domain already taken", code="DOMAIN_TAKEN", details={"field": "domain"}) from exc
    await audit(
        actor or SYSTEM_ACTOR,
        session=session,
        event_type="tenant.domain.added",
        tenant_id=tenant.id,
        resource_type="domain",
        resource_id=domain.id,
        metadata={"domain": normalized},
    )
    await session.commit()
    return domain


async def verify_domain(
    session: AsyncSession,
    tenant: Tenant,
    domain_id: str,
    token: str,
    *,
    actor: AuditActor | None = None,
    now: datetime | None = None,
) -> Domain:
    # Mismatches are recorded on the row rather than raised.
    domain = await get_domain(session, tenant.id, domain_id)
    expected = domain.verification_token or ""
    matched = bool(expected) and hmac.compare_digest(expected.encode("utf-8"), (token or "").encode("utf-8"))
    if matched:
        domain.status = DOMAIN_STATUS_ACTIVE
        domain.verified_at = now or utc_now()
    else:
        domain.status = DOMAIN_STATUS_FAILED
    await audit(
        actor or SYSTEM_ACTOR,
        session=session,
        event_type="tenant.domain.verified" if matched else "tenant.domain.verification_failed",
        tenant_id=tenant.id,
        resource_type="domain",
        resource_id=domain.id,
        outcome="success" if matched else "failure",
        metadata={"domain": domain.domain},
    )
    await session.commit()
    return domain


async def set_primary_domain(
    session: AsyncSession,
    tenant: Tenant,
    domain_id: str,
    *,
    actor: AuditActor | None = None,
) -> Domain:
    domain = await get_domain(session, tenant.id, domain_id)
    if domain.status != DOMAIN_STATUS_ACTIVE:
        raise ConflictError("Only verified domains can be primary", code="DOMAIN_NOT_VERIFIED")
    if domain.is_primary:
        return domain
    # Clear the old primary before setting the new one; the partial unique index allows one.
    await session.execute(
        update(Domain)
        .where(Domain.tenant_id == tenant.id, Domain.is_primary.is_(True))
        .values(is_primary=False)
        .execution_options(synchronize_session=False)
    )
    domain.is_primary = True
    tenant.primary_domain = domain.domain
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Primary domain changed concurrently", code="DOMAIN_PRIMARY_CONFLICT") from exc
    await audit(
        actor or SYSTEM_ACTOR,
        session=session,
        event_type="tenant.domain.primary_changed",
        tenant_id=tenant.id,
        resource_type="domain",
        resource_id=domain.id,
        metadata={"domain": domain.domain},
    )
    await session.commit()
    logger.info("tenant_primary_domain_changed tenant_id=%s domain=%s", tenant.id, domain.domain)
    return domain


async def remove_domain(
    session: AsyncSession,
    tenant: Tenant,
    domain_id: str,
    *,
    actor: AuditActor | None = None,
) -> None:
    domain = await get_domain(session, tenant.id, domain_id)
    if domain.is_primary:
        raise ConflictError("The primary domain cannot be removed", code="PRIMARY_DOMAIN_PROTECTED")
    domain.deleted_at = utc_now()
    await audit(
        actor or SYSTEM_ACTOR,
        session=session,
        event_type="tenant.domain.removed",
        tenant_id=tenant.id,
        resource_type="domain",
        resource_id=domain.id,
        metadata={"domain": domain.domain},
    )
    await session.commit()
