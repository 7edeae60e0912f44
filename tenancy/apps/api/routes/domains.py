from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.apps.api.deps import Authenticated, get_authenticated, get_db, principal_actor
from tenancy.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenancy.domain.models import Domain
from tenancy.services.access_control import require
from tenancy.services.tenants import domains as domain_service

router = APIRouter(prefix="/tenant/domains", tags=["domains"], responses=DEFAULT_ERROR_RESPONSES)


class DomainResponse(BaseModel):
    domain_id: str
    domain: str
    type: str
    status: str
    is_primary: bool
    verified_at: datetime | None
    verification_method: str | None
    verification_token: str | None


class DomainListResponse(BaseModel):
    items: list[DomainResponse]


class AddDomainRequest(BaseModel):
    domain: str = Field(min_length=1, max_length=255)


class VerifyDomainRequest(BaseModel):
    token: str = Field(min_length=1, max_length=64)


def _domain_response(domain: Domain) -> DomainResponse:
    # The verification token is only useful until the domain is verified.
    return DomainResponse(
        domain_id=domain.id,
        domain=domain.domain,
        type=domain.type,
        status=domain.status,
        is_primary=bool(domain.is_primary),
        verified_at=domain.verified_at,
        verification_method=domain.verification_method,
        verification_token=None if domain.status == domain_service.DOMAIN_STATUS_ACTIVE else domain.verification_token,
    )


@router.get("")
async def list_domains(
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
) -> DomainListResponse:
    require(auth.principal, "tenant.domains.manage")
    rows = await domain_service.list_domains(db, auth.tenant.id)
    return DomainListResponse(items=[_domain_response(row) for row in rows])


@router.post("", status_code=201)
async def add_domain(
    payload: AddDomainRequest,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
) -> DomainResponse:
    require(auth.principal, "tenant.domains.manage")
    domain = await domain_service.add_domain(
        db, auth.tenant, payload.domain, actor=principal_actor(request, auth.principal)
    )
    return _domain_response(domain)


@router.post("/{domain_id}/verify")
async def verify_domain(
    domain_id: str,
    payload: VerifyDomainRequest,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
) -> DomainResponse:
    require(auth.principal, "tenant.domains.manage")
    domain = await domain_service.verify_domain(
        db, auth.tenant, domain_id, payload.token, actor=principal_actor(request, auth.principal)
    )
    return _domain_response(domain)


@router.post("/{domain_id}/primary")
async def set_primary_domain(
    domain_id: str,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
) -> DomainResponse:
    require(auth.principal, "tenant.domains.manage")
    domain = await domain_service.set_primary_domain(
        db, auth.tenant, domain_id, actor=principal_actor(request, auth.principal)
    )
    return _domain_response(domain)


@router.delete("/{domain_id}", status_code=204)
async def remove_domain(
    domain_id: str,
    request: Request,
    auth: Authenticated = Depends(get_authenticated),
    db: AsyncSession = Depends(get_db),
) -> Response:
    require(auth.principal, "tenant.domains.manage")
    await domain_service.remove_domain(db, auth.tenant, domain_id, actor=principal_actor(request, auth.principal))
    return Response(status_code=204)
