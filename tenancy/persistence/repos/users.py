from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select, update

from tenancy.domain.models import User, UserRole
from tenancy.persistence.guards import tenant_predicate
from tenancy.persistence.tenant_db import TenantContext


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def get_user(ctx: TenantContext, user_id: str, *, include_deleted: bool = False) -> User | None:
    stmt = select(User).where(tenant_predicate(User, ctx.tenant_id), User.id == user_id)
    if not include_deleted:
        stmt = stmt.where(User.deleted_at.is_(None))
    return (await ctx.session.execute(stmt)).scalar_one_or_none()


async def get_user_by_email(ctx: TenantContext, email: str) -> User | None:
    # Only rows of the context's tenant are ever candidates.
    return (
        await ctx.session.execute(
            select(User).where(
                tenant_predicate(User, ctx.tenant_id),
                User.email == normalize_email(email),
                User.deleted_at.is_(None),
            )
        )
    ).scalar_one_or_none()


async def list_users(ctx: TenantContext, *, status: str | None = None, limit: int = 100, offset: int = 0) -> list[User]:
    stmt = select(User).where(tenant_predicate(User, ctx.tenant_id), User.deleted_at.is_(None))
    if status is not None:
        stmt = stmt.where(User.status == status)
    stmt = stmt.order_by(User.created_at.asc(), User.id).limit(limit).offset(offset)
    return list((await ctx.session.execute(stmt)).scalars().all())


async def update_user_guarded(
    ctx: TenantContext,
    user_id: str,
    *,
    values: dict,
    keep_an_admin: bool,
) -> bool:
    """Apply ``values`` to one user in a single conditional UPDATE.

    With ``keep_an_admin`` the statement only matches while another active
    admin remains, so the last admin can never be removed even when two
    admins act on each other concurrently.
    """
    if keep_an_admin:
        await _lock_admins(ctx)
    conditions = _guarded_conditions(ctx, user_id, keep_an_admin=keep_an_admin)
    result = await ctx.session.execute(
        update(User).where(*conditions).values(**values).execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def record_login_success(ctx: TenantContext, user: User, *, now: datetime, ip_address: str | None) -> None:
    user.failed_login_attempts = 0
    user.locked_until = None
    user.last_login_at = now
    user.last_login_ip = ip_address
    user.login_count = (user.login_count or 0) + 1
    await ctx.session.flush()


async def _lock_admins(ctx: TenantContext) -> None:
    # Row locks serialize concurrent admin removals on Postgres; sqlite already serializes writers.
    await ctx.session.execute(
        select(User.id)
        .where(
            tenant_predicate(User, ctx.tenant_id),
            User.role == "admin",
            User.status == "active",
            User.deleted_at.is_(None),
        )
        .with_for_update()
    )


def _guarded_conditions(ctx: TenantContext, user_id: str, *, keep_an_admin: bool) -> list:
    conditions = [tenant_predicate(User, ctx.tenant_id), User.id == user_id, User.deleted_at.is_(None)]
    if keep_an_admin:
        other_admins = (
            select(func.count())
            .select_from(User)
            .where(
                tenant_predicate(User, ctx.tenant_id),
                User.role == "admin",
                User.status == "active",
                User.deleted_at.is_(None),
                User.id != user_id,
            )
            .scalar_subquery()
        )
        conditions.append(other_admins >= 1)
    return conditions


async def delete_user_guarded(ctx: TenantContext, user_id: str, *, now: datetime, keep_an_admin: bool) -> bool:
    # Soft delete under the same guard as update_user_guarded.
    if keep_an_admin:
        await _lock_admins(ctx)
    result = await ctx.session.execute(
        update(User)
        .where(*_guarded_conditions(ctx, user_id, keep_an_admin=keep_an_admin))
        .values(deleted_at=now, status="inactive")
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        return False
    await ctx.session.execute(delete(UserRole).where(UserRole.user_id == user_id))
    return True
