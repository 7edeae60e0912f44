from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any, AsyncIterator, Iterator

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenancy.core.config import get_settings
from tenancy.core.errors import TransientInfrastructureError


logger = logging.getLogger(__name__)


def engine_kwargs_for(database_url: str) -> dict[str, Any]:
    # Shared by the central engine and per-tenant engines.
    settings = get_settings()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # Wait on sqlite's file lock instead of failing immediately under concurrent writers.
        kwargs["connect_args"] = {"timeout": 30}
        return kwargs
    # Configure bounded asyncpg pools for predictable latency under load.
    kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
    kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    kwargs["pool_timeout"] = 30
    kwargs["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return kwargs


settings = get_settings()
engine = create_async_engine(settings.database_url, **engine_kwargs_for(settings.database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


# Connectivity failures and timeouts; retryable by the caller.
STORE_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, asyncio.TimeoutError)


def store_unavailable(operation: str, exc: BaseException) -> TransientInfrastructureError:
    logger.warning("store_unavailable operation=%s", operation, exc_info=exc)
    return TransientInfrastructureError(
        "Data store unavailable, try again later",
        details={"operation": operation},
    )


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except STORE_UNAVAILABLE_ERRORS as exc:
        raise store_unavailable(operation, exc) from exc


def pool_stats() -> dict[str, int | None]:
    # Expose DB pool counters for ops visibility without querying server internals.
    pool = engine.sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
