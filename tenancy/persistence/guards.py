from __future__ import annotations

from tenancy.core.config import get_settings
from tenancy.core.errors import TenantIsolationError


class TenantPredicateError(TenantIsolationError):
    """Tenant-store query built without a tenant id."""

    code = "TENANT_PREDICATE_MISSING"


def require_tenant_id(tenant_id: str | None) -> None:
    # Enforce non-empty tenant identifiers when tenant guard checks are enabled.
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str | None) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


def ensure_same_tenant(expected_tenant_id: str, actual_tenant_id: str | None) -> None:
    # A context resolved for one tenant must never touch another tenant's rows.
    if actual_tenant_id != expected_tenant_id:
        raise TenantIsolationError(
            "Tenant context does not match the requested tenant",
            details={"context_tenant_id": expected_tenant_id, "requested_tenant_id": actual_tenant_id},
        )
