from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.apps.api.deps import get_db, get_lifecycle, request_actor
from tenancy.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenancy.apps.api.rate_limit import enforce_registration_limit
from tenancy.services.tenants.lifecycle import TenantLifecycle

router = APIRouter(prefix="/tenants", tags=["tenants"], responses=DEFAULT_ERROR_RESPONSES)


class AvailabilityResponse(BaseModel):
    available: bool
    slug: str
    domain: str


class TenantRegistrationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    admin_email: str = Field(min_length=3, max_length=255)
    admin_name: str = Field(min_length=1, max_length=255)
    admin_password: str | None = Field(default=None, max_length=255)
    plan: Literal["basic", "pro", "enterprise"] = "basic"
    domain: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)


class TenantRegistrationResponse(BaseModel):
    tenant_id: str
    slug: str
    domain: str | None
    status: str
    plan: str


@router.get("/availability")
async def check_availability(
    name: str = Query(min_length=1, max_length=255),
    db: AsyncSession = Depends(get_db),
    lifecycle: TenantLifecycle = Depends(get_lifecycle),
) -> AvailabilityResponse:
    availability = await lifecycle.check_availability(db, name)
    return AvailabilityResponse(**availability.as_dict())


@router.post("/register", status_code=201, dependencies=[Depends(enforce_registration_limit)])
async def register_tenant(
    payload: TenantRegistrationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: TenantLifecycle = Depends(get_lifecycle),
) -> TenantRegistrationResponse:
    # New tenants start pending; a super-admin or a successful payment activates them.
    tenant = await lifecycle.register(
        db,
        name=payload.name,
        admin_email=payload.admin_email,
        admin_name=payload.admin_name,
        admin_password=payload.admin_password,
        plan=payload.plan,
        domain=payload.domain,
        phone=payload.phone,
        actor=request_actor(request),
    )
    return TenantRegistrationResponse(
        tenant_id=tenant.id,
        slug=tenant.slug,
        domain=tenant.primary_domain,
        status=tenant.status,
        plan=tenant.plan,
    )
