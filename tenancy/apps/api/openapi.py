from __future__ import annotations

from typing import Any

from tenancy.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        code="INVALID_CREDENTIALS",
        message="These credentials do not match our records.",
    ),
    402: _response(
        "Plan limit reached",
        code="RESOURCE_LIMIT_REACHED",
        message="Plan limit reached for users",
        details={"resource": "users", "current": 5, "limit": 5},
    ),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient permissions"),
    404: _response("Not found", code="NOT_FOUND", message="Tenant not found"),
    409: _response(
        "Conflict",
        code="TENANT_ALREADY_EXISTS",
        message="Tenant slug already taken",
        details={"field": "slug"},
    ),
    422: _response(
        "Validation error",
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"fields": {"admin_email": "A valid email address is required"}},
    ),
    429: _response(
        "Too many attempts",
        code="TOO_MANY_ATTEMPTS",
        message="Too many attempts, try again in 120 seconds.",
        details={"retry_after_seconds": 120},
    ),
    500: _response(
        "Provisioning or internal failure",
        code="PROVISIONING_FAILED",
        message="Something went wrong, please try again later.",
        details={"correlation_id": "req_example"},
    ),
    503: _response(
        "Service unavailable",
        code="SERVICE_UNAVAILABLE",
        message="Something went wrong, please try again later.",
        details={"correlation_id": "req_example"},
    ),
}
