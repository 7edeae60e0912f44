from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.apps.api.deps import (
    Authenticated,
    get_authenticated,
    get_db,
    get_request_tenant,
    get_user_service,
    open_request_tenant,
    principal_actor,
    request_actor,
)
from tenancy.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenancy.domain.models import Tenant, User
from tenancy.persistence.tenant_db import TenantContext
from tenancy.services.access_control import require
from tenancy.services.audit import audit
from tenancy.services.tenants import store
from tenancy.services.tenants.users import TenantUserService

router = APIRouter(prefix="/tenant", tags=["tenant"], responses=DEFAULT_ERROR_RESPONSES)


class UserResponse(BaseModel):
    user_id: str
    tenant_id: str
    name: str
    email: str
    role: str
    status: str
    must_change_password: bool
    two_factor_enabled: bool
    last_login_at: datetime | None


class UserListResponse(BaseModel):
    items: list[UserResponse]


class CreateUserRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    role: Literal["admin", "manager", "user"] = "user"
    password: str | None = Field(default=None, max_length=255)


class RegisterMemberRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RoleChangeRequest(BaseModel):
    role: Literal["admin", "manager", "user"]


class StorageRequest(BaseModel):
    delta_bytes: int


class UsageResponse(BaseModel):
    tenant_id: str
    plan: str
    user_count: int
    storage_used: int
    api_calls_count: int
    limits: dict[str, Any]


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        user_id=user.id,
        tenant_id=user.tenant_id,
        name=user.name,
        email=user.email,
        role=user.role,
        status=user.status,
        must_change_password=bool(user.must_change_password),
        two_factor_enabled=user.has_two_factor,
        last_login_at=user.last_login_at,
    )


def _usage_response(tenant: Tenant) -> UsageResponse:
    return UsageResponse(
        tenant_id=tenant.id,
        plan=tenant.plan,
        user_count=int(tenant.user_count or 0),
        storage_used=int(tenant.storage_used or 0),
        api_calls_count=int(tenant.api_calls_count or 0),
        limits=dict(tenant.limits or {}),
    )


@router.get("/users")
async def list_users(
    status: Literal["active", "inactive"] | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    auth: Authenticated = Depends(get_authenticated),
    users: TenantUserService = Depends(get_user_service),
) -> UserListResponse:
    rows = await users.list_users(
        auth.ctx, auth.tenant, principal=auth.principal, status=status, limit=limit, offset=offset
    )
    return UserListResponse(items=[_user_response(row) for row in rows])


@router.post("/users", status_code=201)
async def create_user(
    payload: CreateUserRequest,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
    users: TenantUserService = Depends(get_user_service),
) -> UserResponse:
    user = await users.create_user(
        db,
        auth.ctx,
        auth.tenant,
        principal=auth.principal,
        name=payload.name,
        email=payload.email,
        role=payload.role,
        password=payload.password,
        actor=principal_actor(request, auth.principal),
    )
    return _user_response(user)


@router.post("/register", status_code=201)
async def register_member(
    payload: RegisterMemberRequest,
    request: Request,
    tenant: Tenant = Depends(get_request_tenant),
    ctx: TenantContext = Depends(open_request_tenant),
    db: AsyncSession = Depends(get_db),
    users: TenantUserService = Depends(get_user_service),
) -> UserResponse:
    user = await users.register_member(
        db,
        ctx,
        tenant,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        actor=request_actor(request),
    )
    return _user_response(user)


@router.post("/users/{user_id}/deactivate")
async def deactivate_user(
    user_id: str,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
    users: TenantUserService = Depends(get_user_service),
) -> UserResponse:
    user = await users.deactivate_user(
        db, auth.ctx, auth.tenant, principal=auth.principal, user_id=user_id, actor=principal_actor(request, auth.principal)
    )
    return _user_response(user)


@router.post("/users/{user_id}/activate")
async def activate_user(
    user_id: str,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
    users: TenantUserService = Depends(get_user_service),
) -> UserResponse:
    user = await users.activate_user(
        db, auth.ctx, auth.tenant, principal=auth.principal, user_id=user_id, actor=principal_actor(request, auth.principal)
    )
    return _user_response(user)


@router.put("/users/{user_id}/role")
async def change_role(
    user_id: str,
    payload: RoleChangeRequest,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
    users: TenantUserService = Depends(get_user_service),
) -> UserResponse:
    user = await users.change_role(
        db,
        auth.ctx,
        auth.tenant,
        principal=auth.principal,
        user_id=user_id,
        role=payload.role,
        actor=principal_actor(request, auth.principal),
    )
    return _user_response(user)


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(
    user_id: str,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
    users: TenantUserService = Depends(get_user_service),
) -> Response:
    await users.delete_user(
        db, auth.ctx, auth.tenant, principal=auth.principal, user_id=user_id, actor=principal_actor(request, auth.principal)
    )
    return Response(status_code=204)


@router.delete("/account/self")
async def remove_own_account(
    auth: Authenticated = Depends(get_authenticated),
    users: TenantUserService = Depends(get_user_service),
) -> None:
    await users.remove_own_account(auth.ctx, principal=auth.principal)


@router.get("/usage")
async def usage(auth: Authenticated = Depends(get_authenticated)) -> UsageResponse:
    require(auth.principal, "tenant.reports.view")
    return _usage_response(auth.tenant)


@router.post("/storage")
async def adjust_storage(
    payload: StorageRequest,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
) -> UsageResponse:
    # Uploads report a positive delta and deletions a negative one.
    action = "tenant.files.upload" if payload.delta_bytes >= 0 else "tenant.files.delete"
    require(auth.principal, action)
    storage_used = await store.adjust_storage(db, auth.tenant.id, payload.delta_bytes)
    await audit(
        principal_actor(request, auth.principal),
        session=db,
        event_type="tenant.storage.adjusted",
        tenant_id=auth.tenant.id,
        resource_type="tenant",
        resource_id=auth.tenant.id,
        metadata={"delta_bytes": payload.delta_bytes, "storage_used": storage_used},
    )
    await db.commit()
    await db.refresh(auth.tenant)
    return _usage_response(auth.tenant)
