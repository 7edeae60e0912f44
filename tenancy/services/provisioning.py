from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
import logging
from pathlib import Path
from typing import Awaitable

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from tenancy.core.config import get_settings
from tenancy.core.errors import ProvisioningError
from tenancy.domain.models import TENANT_TABLES, Base
from tenancy.persistence.tenant_db import TenantDatabaseRegistry, tenant_databases, validate_database_name


logger = logging.getLogger(__name__)


class DatabaseProvisioner(ABC):
    """Creates, drops and migrates isolated tenant stores.

    Every call is bounded by a timeout and reports failure as
    ``ProvisioningError``; callers own the surrounding rollback.
    """

    def __init__(
        self,
        *,
        registry: TenantDatabaseRegistry | None = None,
        timeout_s: float | None = None,
        migration_timeout_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self.registry = registry or tenant_databases
        self.timeout_s = timeout_s if timeout_s is not None else settings.provisioning_timeout_s
        self.migration_timeout_s = (
            migration_timeout_s if migration_timeout_s is not None else settings.migration_timeout_s
        )

    async def create_database(self, database: str) -> None:
        validate_database_name(database)
        await self._bounded(self._create(database), operation="create", database=database, timeout_s=self.timeout_s)
        logger.info("tenant_database_created database=%s", database)

    async def drop_database(self, database: str) -> None:
        validate_database_name(database)
        await self.registry.dispose(database)
        await self._bounded(self._drop(database), operation="drop", database=database, timeout_s=self.timeout_s)
        logger.info("tenant_database_dropped database=%s", database)

    async def database_exists(self, database: str) -> bool:
        validate_database_name(database)
        return await self._bounded(
            self._exists(database), operation="exists", database=database, timeout_s=self.timeout_s
        )

    async def run_migrations(self, database: str) -> None:
        # The tenant migration set is idempotent; re-running only adds missing tables.
        validate_database_name(database)
        await self._bounded(
            self._migrate(database),
            operation="migrate",
            database=database,
            timeout_s=self.migration_timeout_s,
        )
        logger.info("tenant_database_migrated database=%s", database)

    async def _migrate(self, database: str) -> None:
        engine = await self.registry.engine_for(database)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, tables=TENANT_TABLES)

    async def _bounded(self, awaitable: Awaitable, *, operation: str, database: str, timeout_s: float):
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            logger.error(
                "tenant_database_timeout operation=%s database=%s timeout_s=%s",
                operation,
                database,
                timeout_s,
            )
            raise ProvisioningError(
                f"Tenant database {operation} timed out",
                code="PROVISIONING_TIMEOUT",
                details={"operation": operation, "database": database, "timeout_s": timeout_s},
            ) from exc
        except ProvisioningError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "tenant_database_failed operation=%s database=%s",
                operation,
                database,
                exc_info=exc,
            )
            raise ProvisioningError(
                f"Tenant database {operation} failed",
                details={"operation": operation, "database": database},
            ) from exc

    @abstractmethod
    async def _create(self, database: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _drop(self, database: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _exists(self, database: str) -> bool:
        raise NotImplementedError


class PostgresDatabaseProvisioner(DatabaseProvisioner):
    def __init__(self, *, admin_url: str | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.admin_url = admin_url or get_settings().tenant_admin_database_url
        self._admin_engine: AsyncEngine | None = None

    def _engine(self) -> AsyncEngine:
        # CREATE/DROP DATABASE cannot run inside a transaction block.
        if self._admin_engine is None:
            self._admin_engine = create_async_engine(
                self.admin_url,
                isolation_level="AUTOCOMMIT",
                poolclass=NullPool,
            )
        return self._admin_engine

    async def _exists(self, database: str) -> bool:
        async with self._engine().connect() as conn:
            result = await conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": database}
            )
            return result.scalar_one_or_none() is not None

    async def _create(self, database: str) -> None:
        if await self._exists(database):
            raise ProvisioningError(
                "Tenant database already exists",
                code="DATABASE_EXISTS",
                details={"database": database},
            )
        async with self._engine().connect() as conn:
            await conn.execute(text(f'CREATE DATABASE "{database}"'))

    async def _drop(self, database: str) -> None:
        async with self._engine().connect() as conn:
            await conn.execute(text(f'DROP DATABASE IF EXISTS "{database}"'))


class SqliteDatabaseProvisioner(DatabaseProvisioner):
    """One sqlite file per tenant; used for local development and tests."""

    def path_for(self, database: str) -> Path:
        url = make_url(self.registry.url_for(database))
        if not url.database:
            raise ProvisioningError("Tenant database URL has no file path", details={"database": database})
        return Path(url.database)

    async def _exists(self, database: str) -> bool:
        return self.path_for(database).exists()

    async def _create(self, database: str) -> None:
        path = self.path_for(database)
        if path.exists():
            raise ProvisioningError(
                "Tenant database already exists",
                code="DATABASE_EXISTS",
                details={"database": database},
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        # An empty file is a valid, empty sqlite database.
        path.touch(exist_ok=False)

    async def _drop(self, database: str) -> None:
        path = self.path_for(database)
        for candidate in (path, Path(f"{path}-wal"), Path(f"{path}-shm"), Path(f"{path}-journal")):
            candidate.unlink(missing_ok=True)


def get_provisioner() -> DatabaseProvisioner:
    # Pick the backend from the tenant URL template.
    template = get_settings().tenant_database_url_template
    if template.startswith("sqlite"):
        return SqliteDatabaseProvisioner()
    return PostgresDatabaseProvisioner()
