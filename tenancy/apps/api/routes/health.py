from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.apps.api.deps import get_db
from tenancy.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenancy.persistence.db import pool_stats, translate_store_errors

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, int | None]


@router.get("/health")
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    # An unreachable central store surfaces as 503 through the shared error mapping.
    with translate_store_errors("health"):
        await db.execute(text("SELECT 1"))
    return HealthResponse(status="ok", database="ok", pool=pool_stats())
