"""Per-tenant store resolution.

Every operation that touches an isolated tenant store receives an explicit
``TenantContext``; nothing in the core keeps an ambient "current tenant".
The system tenant has no isolated store and resolves to the central session.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import re
from typing import TYPE_CHECKING, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from tenancy.core.config import get_settings
from tenancy.core.errors import ValidationError
from tenancy.persistence.db import SessionLocal, engine_kwargs_for
from tenancy.persistence.guards import ensure_same_tenant

if TYPE_CHECKING:
    from tenancy.domain.models import Tenant


_DATABASE_NAME_RE = re.compile(r"^[a-z][a-z0-9_]{0,62}$")


def validate_database_name(database: str) -> str:
    # Database names are interpolated into DDL, so only a strict identifier subset is allowed.
    if not _DATABASE_NAME_RE.match(database or ""):
        raise ValidationError.for_field("database", "Invalid tenant database name")
    return database


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    session: AsyncSession
    # None when the tenant shares the central store (system tenant).
    database: str | None = None

    @property
    def is_central(self) -> bool:
        return self.database is None

    def require_tenant(self, tenant_id: str | None) -> None:
        ensure_same_tenant(self.tenant_id, tenant_id)


class TenantDatabaseRegistry:
    def __init__(self) -> None:
        self._engines: dict[str, AsyncEngine] = {}
        self._lock = asyncio.Lock()

    def url_for(self, database: str) -> str:
        settings = get_settings()
        validate_database_name(database)
        return settings.tenant_database_url_template.format(
            database=database,
            database_dir=settings.tenant_database_dir,
        )

    async def engine_for(self, database: str) -> AsyncEngine:
        # Cache one engine per tenant database so pools are shared across requests.
        engine = self._engines.get(database)
        if engine is not None:
            return engine
        async with self._lock:
            engine = self._engines.get(database)
            if engine is None:
                url = self.url_for(database)
                engine = create_async_engine(url, **engine_kwargs_for(url))
                self._engines[database] = engine
        return engine

    async def dispose(self, database: str | None = None) -> None:
        # Release pooled connections before a drop or at shutdown.
        if database is not None:
            engine = self._engines.pop(database, None)
            if engine is not None:
                await engine.dispose()
            return
        engines = list(self._engines.values())
        self._engines.clear()
        for engine in engines:
            await engine.dispose()

    @asynccontextmanager
    async def open(self, tenant: "Tenant") -> AsyncIterator[TenantContext]:
        if tenant.database is None:
            async with SessionLocal() as session:
                yield TenantContext(tenant_id=tenant.id, session=session, database=None)
            return
        engine = await self.engine_for(tenant.database)
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield TenantContext(tenant_id=tenant.id, session=session, database=tenant.database)


tenant_databases = TenantDatabaseRegistry()
