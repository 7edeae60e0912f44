from __future__ import annotations

import os
from pathlib import Path
import shutil
import tempfile

# Point the central and tenant stores at throwaway sqlite files before any
# tenancy module builds its engine from settings.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="tenancy-tests-"))
_TENANT_DIR = _TEST_ROOT / "tenants"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT / 'central.db'}")
os.environ.setdefault("TENANT_DATABASE_URL_TEMPLATE", "sqlite+aiosqlite:///{database_dir}/{database}.db")
os.environ.setdefault("TENANT_DATABASE_DIR", str(_TENANT_DIR))
os.environ.setdefault("SETUP_KEY", "test-setup-key")
os.environ.setdefault("BILLING_WEBHOOK_SECRET", "test-billing-secret")
os.environ.setdefault("AUTH_RATE_LIMIT_BACKEND", "database")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from tenancy.core.config import get_settings  # noqa: E402
from tenancy.domain.models import Base  # noqa: E402
from tenancy.persistence.db import engine  # noqa: E402
from tenancy.persistence.tenant_db import tenant_databases  # noqa: E402
from tenancy.services.auth.rate_limiter import reset_rate_limiter_state  # noqa: E402


@pytest.fixture(autouse=True)
async def central_schema() -> None:
    # Fresh central schema and no tenant stores for every test.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await tenant_databases.dispose()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
    shutil.rmtree(get_settings().tenant_database_dir, ignore_errors=True)


@pytest.fixture(autouse=True)
def _reset_caches() -> None:
    yield
    reset_rate_limiter_state()


def pytest_sessionfinish(session, exitstatus) -> None:
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
async def super_admin():
    # Bootstrapped system tenant plus its first super-admin.
    from tenancy.tests.utils.factories import bootstrap_super_admin

    return await bootstrap_super_admin()
