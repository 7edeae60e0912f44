from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.errors import ConflictError, NotFoundError, ResourceLimitError, ValidationError
from tenancy.domain.models import Domain, Tenant
from tenancy.services.tenants.plans import (
    LIMIT_API_CALLS,
    LIMIT_STORAGE,
    LIMIT_USERS,
    is_unlimited,
    resolve_limit,
)


logger = logging.getLogger(__name__)

TENANT_STATUS_PENDING = "pending"
TENANT_STATUS_ACTIVE = "active"
TENANT_STATUS_INACTIVE = "inactive"
TENANT_STATUS_SUSPENDED = "suspended"

TENANT_STATUSES = (
    TENANT_STATUS_PENDING,
    TENANT_STATUS_ACTIVE,
    TENANT_STATUS_INACTIVE,
    TENANT_STATUS_SUSPENDED,
)

# Counter column -> plan limit key.
_COUNTERS: dict[str, str] = {
    "user_count": LIMIT_USERS,
    "storage_used": LIMIT_STORAGE,
    "api_calls_count": LIMIT_API_CALLS,
}


@dataclass(frozen=True)
class TenantStats:
    total: int
    by_status: dict[str, int]
    total_users: int
    total_storage: int
    monthly_revenue: Decimal


async def get_tenant(session: AsyncSession, tenant_id: str, *, include_deleted: bool = False) -> Tenant:
    stmt = select(Tenant).where(Tenant.id == tenant_id)
    if not include_deleted:
        stmt = stmt.where(Tenant.deleted_at.is_(None))
    tenant = (await session.execute(stmt)).scalar_one_or_none()
    if tenant is None:
        raise NotFoundError("Tenant not found", details={"tenant_id": tenant_id})
    return tenant


async def get_tenant_by_slug(session: AsyncSession, slug: str) -> Tenant | None:
    return (
        await session.execute(
            select(Tenant).where(Tenant.slug == slug, Tenant.deleted_at.is_(None))
        )
    ).scalar_one_or_none()


async def get_system_tenant(session: AsyncSession) -> Tenant | None:
    return (
        await session.execute(select(Tenant).where(Tenant.is_system.is_(True)))
    ).scalar_one_or_none()


async def resolve_tenant_by_host(session: AsyncSession, host: str) -> Tenant | None:
    # Match the request host against primary domains first, then active extra domains.
    normalized = (host or "").split(":", 1)[0].strip().lower()
    if not normalized:
        return None
    tenant = (
        await session.execute(
            select(Tenant).where(Tenant.primary_domain == normalized, Tenant.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if tenant is not None:
        return tenant
    return (
        await session.execute(
            select(Tenant)
            .join(Domain, Domain.tenant_id == Tenant.id)
            .where(
                Domain.domain == normalized,
                Domain.status == "active",
                Domain.deleted_at.is_(None),
                Tenant.deleted_at.is_(None),
            )
        )
    ).scalar_one_or_none()


async def slug_taken(session: AsyncSession, slug: str) -> bool:
    # Soft-deleted rows keep their slug reserved.
    count = (await session.execute(select(func.count()).select_from(Tenant).where(Tenant.slug == slug))).scalar_one()
    return count > 0


async def domain_taken(session: AsyncSession, domain: str) -> bool:
    tenant_count = (
        await session.execute(
            select(func.count()).select_from(Tenant).where(Tenant.primary_domain == domain)
        )
    ).scalar_one()
    domain_count = (
        await session.execute(select(func.count()).select_from(Domain).where(Domain.domain == domain))
    ).scalar_one()
    return (tenant_count + domain_count) > 0


async def admin_email_taken(session: AsyncSession, email: str) -> bool:
    count = (
        await session.execute(
            select(func.count())
            .select_from(Tenant)
            .where(func.lower(Tenant.admin_email) == email.lower(), Tenant.deleted_at.is_(None))
        )
    ).scalar_one()
    return count > 0


def _conflict_from_integrity(exc: IntegrityError) -> ConflictError:
    # Name the colliding field when the driver message allows it.
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    for field in ("admin_email", "slug", "primary_domain", "domain", "database", "is_system"):
        if field in message:
            return ConflictError(
                f"Tenant {field.replace('_', ' ')} already taken",
                code="TENANT_ALREADY_EXISTS",
                details={"field": field},
            )
    return ConflictError("Tenant already exists", code="TENANT_ALREADY_EXISTS")


async def insert_tenant(session: AsyncSession, tenant: Tenant, domains: list[Domain] | None = None) -> Tenant:
    # Flush immediately so unique constraints decide concurrent registrations.
    try:
        session.add(tenant)
        await session.flush()
        for domain in domains or []:
            session.add(domain)
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise _conflict_from_integrity(exc) from exc
    return tenant


async def list_tenants(
    session: AsyncSession,
    *,
    status: str | None = None,
    include_deleted: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[Tenant]:
    stmt = select(Tenant)
    if status is not None:
        stmt = stmt.where(Tenant.status == status)
    if not include_deleted:
        stmt = stmt.where(Tenant.deleted_at.is_(None))
    stmt = stmt.order_by(Tenant.created_at.desc(), Tenant.id).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())


async def adjust_counter(
    session: AsyncSession,
    *,
    tenant_id: str,
    counter: str,
    delta: int,
) -> int:
    """Atomically add ``delta`` to a tenant counter and return the new value.

    Increments are guarded by the plan limit in the same UPDATE statement and
    decrements by a non-negative floor, so concurrent requests can never lose
    an update or overshoot. A rejected change leaves the row untouched.
    """
    if counter not in _COUNTERS:
        raise ValueError(f"Unsupported counter: {counter}")
    limits = (
        await session.execute(
            select(Tenant.limits).where(Tenant.id == tenant_id, Tenant.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if limits is None:
        raise NotFoundError("Tenant not found", details={"tenant_id": tenant_id})
    if delta == 0:
        return await _read_counter(session, tenant_id, counter)

    column = getattr(Tenant, counter)
    limit = resolve_limit(limits, _COUNTERS[counter])
    conditions: list[Any] = [Tenant.id == tenant_id, Tenant.deleted_at.is_(None)]
    if delta > 0 and not is_unlimited(limit):
        conditions.append(column + delta <= limit)
    if delta < 0:
        conditions.append(column + delta >= 0)

    new_value = (
        await session.execute(
            update(Tenant)
            .where(*conditions)
            .values({counter: column + delta})
            .returning(column)
            .execution_options(synchronize_session=False)
        )
    ).scalar_one_or_none()
    if new_value is not None:
        return int(new_value)

    current = await _read_counter(session, tenant_id, counter)
    if delta > 0:
        logger.info(
            "tenant_limit_reached tenant_id=%s counter=%s current=%s limit=%s",
            tenant_id,
            counter,
            current,
            limit,
        )
        raise ResourceLimitError(_COUNTERS[counter], current=current, limit=limit)
    raise ValidationError(
        f"{counter} cannot go below zero",
        code="COUNTER_UNDERFLOW",
        details={"fields": {counter: "cannot go below zero"}, "current": current},
    )


async def _read_counter(session: AsyncSession, tenant_id: str, counter: str) -> int:
    value = (
        await session.execute(select(getattr(Tenant, counter)).where(Tenant.id == tenant_id))
    ).scalar_one()
    return int(value)


async def increment_user_count(session: AsyncSession, tenant_id: str, delta: int = 1) -> int:
    return await adjust_counter(session, tenant_id=tenant_id, counter="user_count", delta=delta)


async def decrement_user_count(session: AsyncSession, tenant_id: str, delta: int = 1) -> int:
    return await adjust_counter(session, tenant_id=tenant_id, counter="user_count", delta=-delta)


async def adjust_storage(session: AsyncSession, tenant_id: str, delta_bytes: int) -> int:
    # Uploads pass a positive delta, deletions a negative one.
    return await adjust_counter(session, tenant_id=tenant_id, counter="storage_used", delta=delta_bytes)


async def record_api_calls(session: AsyncSession, tenant_id: str, calls: int = 1) -> int:
    if calls < 0:
        raise ValidationError.for_field("calls", "API call count must be positive")
    return await adjust_counter(session, tenant_id=tenant_id, counter="api_calls_count", delta=calls)


async def stats(session: AsyncSession) -> TenantStats:
    # System dashboard totals; excludes soft-deleted tenants and the system tenant. Revenue counts active tenants only.
    live = [Tenant.deleted_at.is_(None), Tenant.is_system.is_(False)]
    rows = (
        await session.execute(select(Tenant.status, func.count()).where(*live).group_by(Tenant.status))
    ).all()
    by_status = {status: 0 for status in TENANT_STATUSES}
    for status, count in rows:
        by_status[status] = int(count)
    totals = (
        await session.execute(
            select(
                func.coalesce(func.sum(Tenant.user_count), 0),
                func.coalesce(func.sum(Tenant.storage_used), 0),
                func.coalesce(
                    func.sum(case((Tenant.status == TENANT_STATUS_ACTIVE, Tenant.monthly_revenue), else_=0)),
                    0,
                ),
            ).where(*live)
        )
    ).one()
    return TenantStats(
        total=sum(by_status.values()),
        by_status=by_status,
        total_users=int(totals[0]),
        total_storage=int(totals[1]),
        monthly_revenue=Decimal(str(totals[2])),
    )
