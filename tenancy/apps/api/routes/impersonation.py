from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.apps.api.deps import (
    Authenticated,
    get_broker,
    get_db,
    get_request_tenant,
    open_request_tenant,
    principal_actor,
    request_actor,
    require_central_principal,
)
from tenancy.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenancy.domain.models import Tenant
from tenancy.persistence.tenant_db import TenantContext, tenant_databases
from tenancy.services.access_control import require
from tenancy.services.impersonation import ImpersonationBroker
from tenancy.services.tenants import store

router = APIRouter(tags=["impersonation"], responses=DEFAULT_ERROR_RESPONSES)


class IssueRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=36)
    target_user_id: str = Field(min_length=1, max_length=36)
    reason: str | None = Field(default=None, max_length=1024)
    ttl_minutes: int | None = Field(default=None, ge=1)
    max_duration_minutes: int | None = Field(default=None, ge=1)
    max_uses: int = Field(default=1, ge=1, le=10)
    allowed_actions: list[str] = Field(default_factory=list)
    redirect_url: str | None = Field(default=None, max_length=2048)
    return_url: str | None = Field(default=None, max_length=2048)


class IssueResponse(BaseModel):
    token: str
    token_id: str
    tenant_id: str
    target_user_id: str
    expires_at: datetime
    max_uses: int


class RevokeRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1024)


class RevokeResponse(BaseModel):
    token_id: str
    revoked: bool


class TokenResponse(BaseModel):
    token_id: str
    tenant_id: str
    target_user_id: str
    impersonator_id: str
    status: str
    expires_at: datetime
    used_count: int
    max_uses: int
    audit_log: list[dict[str, Any]]


class RedeemRequest(BaseModel):
    token: str = Field(min_length=1, max_length=255)


class RedeemResponse(BaseModel):
    session_token: str
    token_type: str = "bearer"
    session_id: str
    tenant_id: str
    user_id: str
    impersonator_id: str
    expires_at: datetime
    allowed_actions: list[str]
    redirect_url: str | None


@router.post("/admin/impersonation", status_code=201)
async def issue_token(
    payload: IssueRequest,
    request: Request,
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
    broker: ImpersonationBroker = Depends(get_broker),
) -> IssueResponse:
    require(auth.principal, "tenants.impersonate")
    tenant = await store.get_tenant(db, payload.tenant_id)
    async with tenant_databases.open(tenant) as ctx:
        issued = await broker.issue(
            db,
            ctx=ctx,
            principal=auth.principal,
            tenant=tenant,
            target_user_id=payload.target_user_id,
            reason=payload.reason,
            ttl_minutes=payload.ttl_minutes,
            max_duration_minutes=payload.max_duration_minutes,
            max_uses=payload.max_uses,
            allowed_actions=payload.allowed_actions,
            redirect_url=payload.redirect_url,
            return_url=payload.return_url,
            actor=principal_actor(request, auth.principal),
        )
    return IssueResponse(
        token=issued.token,
        token_id=issued.token_id,
        tenant_id=issued.tenant_id,
        target_user_id=issued.target_user_id,
        expires_at=issued.expires_at,
        max_uses=issued.max_uses,
    )


@router.get("/admin/impersonation/{token_id}")
async def get_token(
    token_id: str,
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
    broker: ImpersonationBroker = Depends(get_broker),
) -> TokenResponse:
    require(auth.principal, "tenants.impersonate")
    row = await broker.get_token(db, token_id)
    return TokenResponse(
        token_id=row.token,
        tenant_id=row.tenant_id,
        target_user_id=row.target_user_id,
        impersonator_id=row.impersonator_id,
        status=row.status,
        expires_at=row.expires_at,
        used_count=row.used_count,
        max_uses=row.max_uses,
        audit_log=list(row.audit_log or []),
    )


@router.post("/admin/impersonation/{token_id}/revoke")
async def revoke_token(
    token_id: str,
    payload: RevokeRequest,
    request: Request,
    auth: Authenticated = Depends(require_central_principal),
    db: AsyncSession = Depends(get_db),
    broker: ImpersonationBroker = Depends(get_broker),
) -> RevokeResponse:
    revoked = await broker.revoke(
        db,
        principal=auth.principal,
        token_id=token_id,
        reason=payload.reason,
        actor=principal_actor(request, auth.principal),
    )
    return RevokeResponse(token_id=token_id, revoked=revoked)


@router.post("/impersonation/redeem")
async def redeem_token(
    payload: RedeemRequest,
    request: Request,
    tenant: Tenant = Depends(get_request_tenant),
    ctx: TenantContext = Depends(open_request_tenant),
    db: AsyncSession = Depends(get_db),
    broker: ImpersonationBroker = Depends(get_broker),
) -> RedeemResponse:
    # Redeemed on the target tenant's own host; the session is scoped to that tenant.
    redeemed = await broker.redeem(db, ctx=ctx, tenant=tenant, raw_token=payload.token, actor=request_actor(request))
    return RedeemResponse(
        session_token=redeemed.session_token,
        session_id=redeemed.session_id,
        tenant_id=redeemed.tenant_id,
        user_id=redeemed.user_id,
        impersonator_id=redeemed.impersonator_id,
        expires_at=redeemed.expires_at,
        allowed_actions=list(redeemed.allowed_actions),
        redirect_url=redeemed.redirect_url,
    )
