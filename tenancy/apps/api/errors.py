from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenancy.apps.api.response import error_response, get_request_id, is_versioned_request
from tenancy.persistence.db import store_unavailable
from tenancy.core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProvisioningError,
    ResourceLimitError,
    TenancyError,
    TenantSuspendedError,
    TooManyAttemptsError,
    TransientInfrastructureError,
    TwoFactorRequiredError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "RESOURCE_LIMIT_REACHED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_ATTEMPTS",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; the first isinstance match wins.
_STATUS_BY_ERROR: tuple[tuple[type[TenancyError], int], ...] = (
    (TooManyAttemptsError, 429),
    (TenantSuspendedError, 403),
    (TwoFactorRequiredError, 401),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (ConflictError, 409),
    (ValidationError, 422),
    (ResourceLimitError, 402),
    (NotFoundError, 404),
    (ProvisioningError, 500),
    (TransientInfrastructureError, 503),
)

# Failures the caller cannot act on; clients get a generic message and a correlation id.
_OPAQUE_ERRORS = (ProvisioningError, TransientInfrastructureError)


def status_for_error(exc: TenancyError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def tenancy_exception_handler(request: Request, exc: TenancyError) -> JSONResponse:
    status_code = status_for_error(exc)
    headers: dict[str, str] = {}
    message = exc.message
    details = dict(exc.details)
    if isinstance(exc, TooManyAttemptsError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    elif status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, _OPAQUE_ERRORS):
        correlation_id = get_request_id(request)
        logger.error(
            "request_failed code=%s correlation_id=%s path=%s",
            exc.code,
            correlation_id,
            request.url.path,
            exc_info=exc,
        )
        message = "Something went wrong, please try again later."
        details = {"correlation_id": correlation_id}
    if not is_versioned_request(request):
        return JSONResponse(
            content={"detail": {"code": exc.code, "message": message, **details}},
            status_code=status_code,
            headers=headers,
        )
    payload = error_response(request=request, code=exc.code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def store_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    # Connectivity failures anywhere in a request surface as a retryable 503.
    return await tenancy_exception_handler(request, store_unavailable(f"{request.method} {request.url.path}", exc))


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Body/query validation uses the same per-field shape as core ValidationError.
    fields: dict[str, str] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields[".".join(location) or "request"] = str(error.get("msg", "Invalid value"))
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": {"fields": fields}}, status_code=422)
    payload = error_response(
        request=request,
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"fields": fields},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    correlation_id = get_request_id(request)
    logger.error("request_unhandled_error correlation_id=%s path=%s", correlation_id, request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
        details={"correlation_id": correlation_id},
    )
    return JSONResponse(content=payload, status_code=500)
