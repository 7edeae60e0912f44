from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.apps.api.deps import Authenticated, get_db, get_lifecycle, principal_actor, require_central_principal
from tenancy.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenancy.domain.models import Tenant
from tenancy.services.access_control import require
from tenancy.services.audit import list_events
from tenancy.services.tenants import store
from tenancy.services.tenants.lifecycle import TenantLifecycle

router = APIRouter(prefix="/admin/tenants", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class TenantResponse(BaseModel):
    tenant_id: str
    name: str
    slug: str
    domain: str | None
    database: str | None
    plan: str
    status: str
    is_system: bool
    admin_email: str | None
    plan_expires_at: datetime | None
    activated_at: datetime | None
    suspended_at: datetime | None
    suspension_reason: str | None
    database_migrated_at: datetime | None
    features: dict[str, Any]
    limits: dict[str, Any]
    user_count: int
    storage_used: int
    api_calls_count: int


class TenantListResponse(BaseModel):
    items: list[TenantResponse]


class TenantStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    total_users: int
    total_storage: int
    monthly_revenue: Decimal


class SuspendRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1024)


class PlanChangeRequest(BaseModel):
    plan: Literal["basic", "pro", "enterprise", "unlimited"]


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: datetime
    event_type: str
    outcome: str
    actor_type: str
    actor_id: str | None
    resource_type: str | None
    resource_id: str | None
    error_code: str | None
    metadata: dict[str, Any] | None


class AuditEventListResponse(BaseModel):
    items: list[AuditEventResponse]


def _tenant_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        tenant_id=tenant.id,
        name=tenant.name,
        slug=tenant.slug,
        domain=tenant.primary_domain,
        database=tenant.database,
        plan=tenant.plan,
        status=tenant.status,
        is_system=bool(tenant.is_system),
        admin_email=tenant.admin_email,
        plan_expires_at=tenant.plan_expires_at,
        activated_at=tenant.activated_at,
        suspended_at=tenant.suspended_at,
        suspension_reason=tenant.suspension_reason,
        database_migrated_at=tenant.database_migrated_at,
        features=dict(tenant.features or {}),
        limits=dict(tenant.limits or {}),
        user_count=int(tenant.user_count or 0),
        storage_used=int(tenant.storage_used or 0),
        api_calls_count=int(tenant.api_calls_count or 0),
    )


@router.get("")
async def list_tenants(
    status: Literal["pending", "active", "inactive", "suspended"] | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
) -> TenantListResponse:
    require(auth.principal, "tenants.view")
    tenants = await store.list_tenants(db, status=status, limit=limit, offset=offset)
    return TenantListResponse(items=[_tenant_response(tenant) for tenant in tenants])


@router.get("/stats")
async def tenant_stats(
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
) -> TenantStatsResponse:
    require(auth.principal, "analytics.view")
    stats = await store.stats(db)
    return TenantStatsResponse(
        total=stats.total,
        by_status=stats.by_status,
        total_users=stats.total_users,
        total_storage=stats.total_storage,
        monthly_revenue=stats.monthly_revenue,
    )


@router.get("/{tenant_id}")
async def get_tenant(
    tenant_id: str,
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
) -> TenantResponse:
    require(auth.principal, "tenants.view")
    return _tenant_response(await store.get_tenant(db, tenant_id))


@router.get("/{tenant_id}/audit")
async def tenant_audit(
    tenant_id: str,
    event_type: str | None = Query(default=None, max_length=100),
    limit: int = Query(default=100, ge=1, le=500),
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
) -> AuditEventListResponse:
    require(auth.principal, "security.audit")
    events = await list_events(db, tenant_id=tenant_id, event_type=event_type, limit=limit)
    return AuditEventListResponse(
        items=[
            AuditEventResponse(
                id=event.id,
                occurred_at=event.occurred_at,
                event_type=event.event_type,
                outcome=event.outcome,
                actor_type=event.actor_type,
                actor_id=event.actor_id,
                resource_type=event.resource_type,
                resource_id=event.resource_id,
                error_code=event.error_code,
                metadata=event.metadata_json,
            )
            for event in events
        ]
    )


@router.post("/{tenant_id}/activate")
async def activate_tenant(
    tenant_id: str,
    request: Request,
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: TenantLifecycle = Depends(get_lifecycle),
) -> TenantResponse:
    require(auth.principal, "tenants.activate")
    tenant = await store.get_tenant(db, tenant_id)
    tenant = await lifecycle.activate(db, tenant, actor=principal_actor(request, auth.principal))
    return _tenant_response(tenant)


@router.post("/{tenant_id}/suspend")
async def suspend_tenant(
    tenant_id: str,
    payload: SuspendRequest,
    request: Request,
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: TenantLifecycle = Depends(get_lifecycle),
) -> TenantResponse:
    require(auth.principal, "tenants.suspend")
    tenant = await store.get_tenant(db, tenant_id)
    tenant = await lifecycle.suspend(db, tenant, reason=payload.reason, actor=principal_actor(request, auth.principal))
    return _tenant_response(tenant)


@router.post("/{tenant_id}/migrate")
async def migrate_tenant(
    tenant_id: str,
    request: Request,
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: TenantLifecycle = Depends(get_lifecycle),
) -> TenantResponse:
    require(auth.principal, "system.maintenance")
    tenant = await store.get_tenant(db, tenant_id)
    tenant = await lifecycle.migrate(db, tenant, actor=principal_actor(request, auth.principal))
    return _tenant_response(tenant)


@router.put("/{tenant_id}/plan")
async def change_plan(
    tenant_id: str,
    payload: PlanChangeRequest,
    request: Request,
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: TenantLifecycle = Depends(get_lifecycle),
) -> TenantResponse:
    require(auth.principal, "tenants.edit")
    tenant = await store.get_tenant(db, tenant_id)
    tenant = await lifecycle.change_plan(db, tenant, payload.plan, actor=principal_actor(request, auth.principal))
    return _tenant_response(tenant)


@router.delete("/{tenant_id}", status_code=204)
async def delete_tenant(
    tenant_id: str,
    request: Request,
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: TenantLifecycle = Depends(get_lifecycle),
) -> None:
    require(auth.principal, "tenants.delete")
    tenant = await store.get_tenant(db, tenant_id)
    await lifecycle.delete(db, tenant, actor=principal_actor(request, auth.principal))
