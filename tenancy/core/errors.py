from __future__ import annotations

from typing import Any


class TenancyError(Exception):
    """Base error for the tenancy core."""

    code = "TENANCY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ConflictError(TenancyError):
    """Uniqueness violation or state conflict; never retried automatically."""

    code = "CONFLICT"


class ValidationError(TenancyError):
    """Malformed input; details["fields"] maps field names to messages."""

    code = "VALIDATION_ERROR"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, details={"fields": {field: message}})


class NotFoundError(TenancyError):
    """Referenced record does not exist or is soft-deleted."""

    code = "NOT_FOUND"


class AuthenticationError(TenancyError):
    """Bad credentials, locked account, or invalid token."""

    code = "AUTH_UNAUTHORIZED"


class TenantSuspendedError(AuthenticationError):
    """Tenant is suspended; distinguishable from bad credentials."""

    code = "TENANT_SUSPENDED"


class TooManyAttemptsError(AuthenticationError):
    """Rate limit ceiling reached for a login or registration key."""

    code = "TOO_MANY_ATTEMPTS"

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            f"Too many attempts, try again in {retry_after_seconds} seconds.",
            details={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class TwoFactorRequiredError(AuthenticationError):
    """Password accepted but a second factor must be presented."""

    code = "TWO_FACTOR_REQUIRED"


class AuthorizationError(TenancyError):
    """Authenticated principal lacks the capability."""

    code = "AUTH_FORBIDDEN"


class TenantIsolationError(AuthorizationError):
    """A tenant context was used against another tenant's data."""

    code = "TENANT_ISOLATION_VIOLATION"


class ResourceLimitError(TenancyError):
    """Plan limit would be exceeded."""

    code = "RESOURCE_LIMIT_REACHED"

    def __init__(self, resource: str, *, current: int, limit: int) -> None:
        super().__init__(
            f"Plan limit reached for {resource}",
            details={"resource": resource, "current": current, "limit": limit},
        )
        self.resource = resource
        self.current = current
        self.limit = limit


class ProvisioningError(TenancyError):
    """Tenant database create/drop/migrate failure."""

    code = "PROVISIONING_FAILED"


class TransientInfrastructureError(TenancyError):
    """Store unavailable or timed out; safe for the caller to retry."""

    code = "SERVICE_UNAVAILABLE"
