from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.apps.api.deps import get_db, request_actor
from tenancy.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenancy.services.bootstrap import bootstrap, is_bootstrapped

router = APIRouter(prefix="/setup", tags=["setup"], responses=DEFAULT_ERROR_RESPONSES)


class SetupStatusResponse(BaseModel):
    bootstrapped: bool


class BootstrapRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class BootstrapResponse(BaseModel):
    user_id: str
    tenant_id: str
    email: str


@router.get("/status")
async def setup_status(db: AsyncSession = Depends(get_db)) -> SetupStatusResponse:
    return SetupStatusResponse(bootstrapped=await is_bootstrapped(db))


@router.post("/bootstrap", status_code=201)
async def run_bootstrap(
    payload: BootstrapRequest,
    request: Request,
    setup_key: str | None = Header(default=None, alias="X-Setup-Key"),
    db: AsyncSession = Depends(get_db),
) -> BootstrapResponse:
    # The setup key travels in a header so it never lands in request-body logs.
    user = await bootstrap(
        db,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        setup_key=setup_key,
        actor=request_actor(request),
    )
    return BootstrapResponse(user_id=user.id, tenant_id=user.tenant_id, email=user.email)
