"""Role/permission model and the fail-closed authorization check.

Capabilities resolve by set union: the simple ``role`` column maps to a
permission set, and RBAC role assignments add more. ``is_super_admin``
short-circuits central-scope actions only; tenant-scope actions always
require a tenant-scope principal, which a super-admin obtains solely by
redeeming an impersonation token.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Mapping
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.errors import AuthorizationError, ValidationError
from tenancy.domain.models import Permission, Role, RolePermission, User, UserRole
from tenancy.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

SCOPE_CENTRAL = "central"
SCOPE_TENANT = "tenant"

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_USER = "user"

ROLE_ORDER: dict[str, int] = {
    ROLE_USER: 1,
    ROLE_MANAGER: 2,
    ROLE_ADMIN: 3,
}

SYSTEM_ADMIN_ROLE = "system-administrator"

SUPER_ADMIN_PERMISSIONS: tuple[str, ...] = (
    "tenants.view",
    "tenants.create",
    "tenants.edit",
    "tenants.delete",
    "tenants.suspend",
    "tenants.activate",
    "tenants.impersonate",
    "users.view",
    "users.create",
    "users.edit",
    "users.delete",
    "users.impersonate",
    "users.suspend",
    "users.activate",
    "system.settings",
    "system.maintenance",
    "system.logs",
    "system.cache",
    "system.queue",
    "system.backup",
    "analytics.view",
    "reports.generate",
    "billing.view",
    "security.audit",
    "security.permissions",
    "security.roles",
)

TENANT_PERMISSIONS: tuple[str, ...] = (
    "tenant.users.view",
    "tenant.users.create",
    "tenant.users.edit",
    "tenant.users.deactivate",
    "tenant.users.delete",
    "tenant.roles.manage",
    "tenant.settings.manage",
    "tenant.domains.manage",
    "tenant.files.upload",
    "tenant.files.delete",
    "tenant.reports.view",
    "tenant.profile.edit",
)

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_ADMIN: frozenset(TENANT_PERMISSIONS),
    ROLE_MANAGER: frozenset(
        {
            "tenant.users.view",
            "tenant.users.create",
            "tenant.users.edit",
            "tenant.files.upload",
            "tenant.files.delete",
            "tenant.reports.view",
            "tenant.profile.edit",
        }
    ),
    ROLE_USER: frozenset({"tenant.files.upload", "tenant.reports.view", "tenant.profile.edit"}),
}

ACTION_SCOPES: dict[str, str] = {
    **{action: SCOPE_CENTRAL for action in SUPER_ADMIN_PERMISSIONS},
    **{action: SCOPE_TENANT for action in TENANT_PERMISSIONS},
}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = (role or "").strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValidationError.for_field("role", f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


class Principal(BaseModel):
    # Authenticated identity evaluated by authorize().
    model_config = ConfigDict(frozen=True)

    subject_id: str
    tenant_id: str
    role: str
    scope: str
    is_super_admin: bool = False
    permissions: frozenset[str] = frozenset()
    session_id: str | None = None
    # Set when the session came from an impersonation token.
    impersonator_id: str | None = None
    impersonation_token: str | None = None
    # Empty means no extra restriction beyond the target user's capabilities.
    allowed_actions: tuple[str, ...] = ()

    @property
    def is_impersonating(self) -> bool:
        return self.impersonator_id is not None


@dataclass(frozen=True)
class ResourceRef:
    # What an action targets; tenant_id drives the cross-tenant check.
    kind: str
    tenant_id: str | None = None
    resource_id: str | None = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str


def _deny(reason: str) -> Decision:
    return Decision(allowed=False, reason=reason)


def capability_set(role: str | None, granted: Iterable[str] = ()) -> frozenset[str]:
    # Union of the simple role's permissions and RBAC grants.
    return ROLE_PERMISSIONS.get(role or "", frozenset()) | frozenset(granted)


def authorize(principal: Principal, action: str, resource: ResourceRef | None = None) -> Decision:
    scope = ACTION_SCOPES.get(action)
    if scope is None:
        return _deny("unknown_action")

    if scope == SCOPE_CENTRAL:
        if principal.scope != SCOPE_CENTRAL or principal.is_impersonating:
            return _deny("central_scope_required")
        if principal.is_super_admin:
            return Decision(allowed=True, reason="super_admin")
        if action in principal.permissions:
            return Decision(allowed=True, reason="permission")
        return _deny("missing_permission")

    if resource is not None and resource.tenant_id is not None and resource.tenant_id != principal.tenant_id:
        return _deny("cross_tenant")
    if principal.scope != SCOPE_TENANT:
        # Super-admins reach tenant data only through impersonation.
        return _deny("tenant_scope_required")
    if principal.allowed_actions and action not in principal.allowed_actions:
        return _deny("impersonation_restricted")
    if action in capability_set(principal.role, principal.permissions):
        return Decision(allowed=True, reason="role")
    return _deny("missing_permission")


def require(principal: Principal, action: str, resource: ResourceRef | None = None) -> None:
    decision = authorize(principal, action, resource)
    if not decision.allowed:
        logger.info(
            "authorization_denied subject_id=%s tenant_id=%s action=%s reason=%s",
            principal.subject_id,
            principal.tenant_id,
            action,
            decision.reason,
        )
        raise AuthorizationError(
            "Insufficient permissions",
            details={"action": action, "reason": decision.reason},
        )


async def seed_rbac(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_permissions: Mapping[str, Iterable[str]],
) -> dict[str, str]:
    """Create missing permissions, roles and grants; returns role name -> role id.

    Safe to run repeatedly against the same store.
    """
    wanted_permissions = {name for names in role_permissions.values() for name in names}
    existing_permissions = {
        row.name: row.id
        for row in (
            await session.execute(select(Permission).where(Permission.name.in_(wanted_permissions)))
        ).scalars()
    }
    for name in sorted(wanted_permissions - set(existing_permissions)):
        permission = Permission(id=uuid4().hex, name=name)
        session.add(permission)
        existing_permissions[name] = permission.id

    existing_roles = {
        row.name: row.id
        for row in (
            await session.execute(select(Role).where(tenant_predicate(Role, tenant_id)))
        ).scalars()
    }
    for role_name in role_permissions:
        if role_name not in existing_roles:
            role = Role(id=uuid4().hex, tenant_id=tenant_id, name=role_name)
            session.add(role)
            existing_roles[role_name] = role.id
    await session.flush()

    existing_grants = set(
        (
            await session.execute(
                select(RolePermission.role_id, RolePermission.permission_id).where(
                    RolePermission.role_id.in_(list(existing_roles.values()))
                )
            )
        ).all()
    )
    for role_name, names in role_permissions.items():
        role_id = existing_roles[role_name]
        for name in names:
            pair = (role_id, existing_permissions[name])
            if pair not in existing_grants:
                session.add(RolePermission(role_id=role_id, permission_id=existing_permissions[name]))
                existing_grants.add(pair)
    await session.flush()
    return existing_roles


async def seed_tenant_roles(session: AsyncSession, tenant_id: str) -> dict[str, str]:
    return await seed_rbac(session, tenant_id=tenant_id, role_permissions=ROLE_PERMISSIONS)


async def assign_role(session: AsyncSession, *, tenant_id: str, user_id: str, role_name: str) -> None:
    role = (
        await session.execute(
            select(Role).where(tenant_predicate(Role, tenant_id), Role.name == role_name)
        )
    ).scalar_one_or_none()
    if role is None:
        raise ValidationError.for_field("role", f"Role is not defined for tenant: {role_name}")
    existing = await session.get(UserRole, (user_id, role.id))
    if existing is None:
        session.add(UserRole(user_id=user_id, role_id=role.id))
        await session.flush()


async def replace_roles(session: AsyncSession, *, tenant_id: str, user_id: str, role_names: Iterable[str]) -> None:
    # Keep RBAC assignments in step with the simple role column.
    role_ids = (
        await session.execute(select(Role.id).where(tenant_predicate(Role, tenant_id)))
    ).scalars().all()
    for assignment in (
        await session.execute(
            select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id.in_(role_ids))
        )
    ).scalars():
        await session.delete(assignment)
    await session.flush()
    for role_name in role_names:
        await assign_role(session, tenant_id=tenant_id, user_id=user_id, role_name=role_name)


async def load_permissions(session: AsyncSession, *, tenant_id: str, user_id: str) -> frozenset[str]:
    rows = (
        await session.execute(
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .join(Role, Role.id == RolePermission.role_id)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id, tenant_predicate(Role, tenant_id))
        )
    ).scalars()
    return frozenset(rows)


async def build_principal(
    session: AsyncSession,
    user: User,
    *,
    session_id: str | None = None,
    impersonator_id: str | None = None,
    impersonation_token: str | None = None,
    allowed_actions: Iterable[str] = (),
) -> Principal:
    # Central principals are system-tenant super-admins; everyone else is tenant scoped.
    permissions = await load_permissions(session, tenant_id=user.tenant_id, user_id=user.id)
    scope = SCOPE_CENTRAL if user.is_super_admin and impersonator_id is None else SCOPE_TENANT
    return Principal(
        subject_id=user.id,
        tenant_id=user.tenant_id,
        role=user.role,
        scope=scope,
        is_super_admin=bool(user.is_super_admin) and impersonator_id is None,
        permissions=permissions,
        session_id=session_id,
        impersonator_id=impersonator_id,
        impersonation_token=impersonation_token,
        allowed_actions=tuple(allowed_actions),
    )
