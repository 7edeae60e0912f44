from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.apps.api.deps import (
    Authenticated,
    get_auth_service,
    get_authenticated,
    get_db,
    get_request_tenant,
    get_system_tenant,
    open_request_tenant,
    open_system_tenant,
    principal_actor,
    request_actor,
    require_own_session,
)
from tenancy.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenancy.domain.models import Tenant
from tenancy.persistence.tenant_db import TenantContext
from tenancy.services.auth.sessions import AuthService, LoginResult

router = APIRouter(tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)

# Same answer whether or not the address belongs to an account.
RESET_REQUESTED_MESSAGE = "If that address has an account, a reset link has been sent."


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    one_time_code: str | None = Field(default=None, max_length=32)


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    session_id: str
    tenant_id: str
    user_id: str
    expires_at: datetime
    must_change_password: bool


class ForgotPasswordRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    token: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class MessageResponse(BaseModel):
    message: str


class MeResponse(BaseModel):
    user_id: str
    tenant_id: str
    name: str
    email: str
    role: str
    scope: str
    is_super_admin: bool
    impersonator_id: str | None
    permissions: list[str]
    two_factor_enabled: bool


class TwoFactorEnrollResponse(BaseModel):
    secret: str
    provisioning_uri: str


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=32)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(min_length=1, max_length=255)


class RecoveryCodesResponse(BaseModel):
    recovery_codes: list[str]


def _login_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(
        token=result.token,
        session_id=result.session_id,
        tenant_id=result.tenant_id,
        user_id=result.user_id,
        expires_at=result.expires_at,
        must_change_password=result.must_change_password,
    )


@router.post("/auth/login")
async def login(
    payload: LoginRequest,
    request: Request,
    tenant: Tenant = Depends(get_request_tenant),
    ctx: TenantContext = Depends(open_request_tenant),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    result = await auth_service.login(
        db,
        ctx=ctx,
        tenant=tenant,
        email=payload.email,
        password=payload.password,
        one_time_code=payload.one_time_code,
        actor=request_actor(request),
    )
    return _login_response(result)


@router.post("/admin/auth/login")
async def central_login(
    payload: LoginRequest,
    request: Request,
    tenant: Tenant = Depends(get_system_tenant),
    ctx: TenantContext = Depends(open_system_tenant),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    result = await auth_service.login(
        db,
        ctx=ctx,
        tenant=tenant,
        email=payload.email,
        password=payload.password,
        one_time_code=payload.one_time_code,
        actor=request_actor(request),
    )
    return _login_response(result)


@router.post("/auth/logout")
async def logout(
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth_service.logout(db, auth.raw_token, actor=principal_actor(request, auth.principal))
    return MessageResponse(message="Logged out")


@router.get("/auth/me")
async def me(auth: Authenticated = Depends(get_authenticated)) -> MeResponse:
    return MeResponse(
        user_id=auth.user.id,
        tenant_id=auth.tenant.id,
        name=auth.user.name,
        email=auth.user.email,
        role=auth.user.role,
        scope=auth.principal.scope,
        is_super_admin=auth.principal.is_super_admin,
        impersonator_id=auth.principal.impersonator_id,
        permissions=sorted(auth.principal.permissions),
        two_factor_enabled=auth.user.has_two_factor,
    )


@router.post("/auth/password/forgot", status_code=202)
async def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    tenant: Tenant = Depends(get_request_tenant),
    ctx: TenantContext = Depends(open_request_tenant),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth_service.request_password_reset(
        db, ctx=ctx, tenant=tenant, email=payload.email, actor=request_actor(request)
    )
    return MessageResponse(message=RESET_REQUESTED_MESSAGE)


@router.post("/auth/password/reset")
async def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    tenant: Tenant = Depends(get_request_tenant),
    ctx: TenantContext = Depends(open_request_tenant),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth_service.reset_password(
        db,
        ctx=ctx,
        tenant=tenant,
        email=payload.email,
        token=payload.token,
        new_password=payload.password,
        actor=request_actor(request),
    )
    return MessageResponse(message="Password has been reset")


@router.post("/auth/password/change")
async def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    auth: Authenticated = Depends(require_own_session),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth_service.change_password(
        db,
        ctx=auth.ctx,
        user=auth.user,
        current_password=payload.current_password,
        new_password=payload.new_password,
        keep_session_id=auth.auth_session.id,
        actor=principal_actor(request, auth.principal),
    )
    return MessageResponse(message="Password changed")


@router.post("/auth/2fa/enroll")
async def two_factor_enroll(
    auth: Authenticated = Depends(require_own_session),
    auth_service: AuthService = Depends(get_auth_service),
) -> TwoFactorEnrollResponse:
    enrollment = await auth_service.begin_two_factor(auth.ctx, auth.user)
    return TwoFactorEnrollResponse(secret=enrollment.secret, provisioning_uri=enrollment.provisioning_uri)


@router.post("/auth/2fa/confirm")
async def two_factor_confirm(
    payload: TwoFactorCodeRequest,
    request: Request,
    auth: Authenticated = Depends(require_own_session),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> RecoveryCodesResponse:
    codes = await auth_service.confirm_two_factor(
        db, ctx=auth.ctx, user=auth.user, code=payload.code, actor=principal_actor(request, auth.principal)
    )
    return RecoveryCodesResponse(recovery_codes=codes)


@router.post("/auth/2fa/disable")
async def two_factor_disable(
    payload: TwoFactorDisableRequest,
    request: Request,
    auth: Authenticated = Depends(require_own_session),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth_service.disable_two_factor(
        db, ctx=auth.ctx, user=auth.user, password=payload.password, actor=principal_actor(request, auth.principal)
    )
    return MessageResponse(message="Two-factor authentication disabled")
