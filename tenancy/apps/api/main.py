from __future__ import annotations

from contextlib import asynccontextmanager
import json
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from sqlalchemy.exc import InterfaceError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from tenancy.apps.api.errors import (
    http_exception_handler,
    store_unavailable_handler,
    tenancy_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenancy.apps.api.response import API_VERSION, envelope, is_enveloped, is_versioned_request
from tenancy.apps.api.routes.admin_tenants import router as admin_tenants_router
from tenancy.apps.api.routes.auth import router as auth_router
from tenancy.apps.api.routes.billing import router as billing_router
from tenancy.apps.api.routes.domains import router as domains_router
from tenancy.apps.api.routes.health import router as health_router
from tenancy.apps.api.routes.impersonation import router as impersonation_router
from tenancy.apps.api.routes.setup import router as setup_router
from tenancy.apps.api.routes.tenant_users import router as tenant_users_router
from tenancy.apps.api.routes.tenants import router as tenants_router
from tenancy.core.errors import TenancyError
from tenancy.core.logging import configure_logging
from tenancy.persistence.db import engine
from tenancy.persistence.tenant_db import tenant_databases


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)
_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/setup/status",
    "/v1/setup/bootstrap",
    "/v1/tenants/availability",
    "/v1/tenants/register",
    "/v1/tenant/register",
    "/v1/auth/login",
    "/v1/admin/auth/login",
    "/v1/auth/password/forgot",
    "/v1/auth/password/reset",
    "/v1/impersonation/redeem",
    "/v1/billing/events",
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Tenant engines are opened lazily per database; close them all on shutdown.
    await tenant_databases.dispose()
    await engine.dispose()


async def _wrap_success(request: Request, response: Response) -> Response:
    # Responses from call_next are streamed, so the body is drained before wrapping.
    chunks = [chunk async for chunk in response.body_iterator]  # type: ignore[attr-defined]
    raw_body = b"".join(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8") for chunk in chunks)
    headers = {
        key: value
        for key, value in response.headers.items()
        if key.lower() not in {"content-length", "content-type"}
    }
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError:
        payload = None
    if payload is None or is_enveloped(payload):
        return Response(
            content=raw_body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type or "application/json",
        )
    return JSONResponse(
        content=envelope(request=request, data=payload),
        status_code=response.status_code,
        headers=headers,
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Tenancy API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and 200 <= response.status_code < 400
            and response.status_code != 204
            and (response.headers.get("content-type") or "").startswith("application/json")
        ):
            response = await _wrap_success(request, response)
        response.headers.setdefault("X-Request-Id", request_id)
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    @app.exception_handler(TenancyError)
    async def _tenancy_exception_handler(request: Request, exc: TenancyError):
        return await tenancy_exception_handler(request, exc)

    @app.exception_handler(OperationalError)
    async def _operational_error_handler(request: Request, exc: OperationalError):
        return await store_unavailable_handler(request, exc)

    @app.exception_handler(InterfaceError)
    async def _interface_error_handler(request: Request, exc: InterfaceError):
        return await store_unavailable_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(setup_router, prefix=f"/{API_VERSION}")
    app.include_router(auth_router, prefix=f"/{API_VERSION}")
    app.include_router(tenants_router, prefix=f"/{API_VERSION}")
    # Super-admin surface: tenant lifecycle and impersonation.
    app.include_router(admin_tenants_router, prefix=f"/{API_VERSION}")
    app.include_router(impersonation_router, prefix=f"/{API_VERSION}")
    # Tenant-scoped surface, addressed by the tenant's own host.
    app.include_router(tenant_users_router, prefix=f"/{API_VERSION}")
    app.include_router(domains_router, prefix=f"/{API_VERSION}")
    app.include_router(billing_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Tenancy API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="Tenancy API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
