from __future__ import annotations

import pytest

from tenancy.core.errors import AuthorizationError, ValidationError
from tenancy.services.access_control import (
    Principal,
    ResourceRef,
    authorize,
    capability_set,
    normalize_role,
    require,
    role_allows,
)


def _tenant_principal(role: str = "user", **overrides) -> Principal:
    values = {
        "subject_id": "u-1",
        "tenant_id": "t-1",
        "role": role,
        "scope": "tenant",
    }
    values.update(overrides)
    return Principal(**values)


def _super_admin(**overrides) -> Principal:
    values = {
        "subject_id": "root",
        "tenant_id": "system",
        "role": "admin",
        "scope": "central",
        "is_super_admin": True,
    }
    values.update(overrides)
    return Principal(**values)


def test_role_capabilities_follow_the_role_ladder() -> None:
    admin = _tenant_principal("admin")
    manager = _tenant_principal("manager")
    user = _tenant_principal("user")

    assert authorize(admin, "tenant.users.delete").allowed
    assert authorize(manager, "tenant.users.create").allowed
    assert not authorize(manager, "tenant.users.delete").allowed
    assert not authorize(manager, "tenant.domains.manage").allowed
    assert authorize(user, "tenant.files.upload").allowed
    assert not authorize(user, "tenant.users.view").allowed
    assert capability_set("user") <= capability_set("manager") <= capability_set("admin")


def test_rbac_grants_extend_the_role() -> None:
    principal = _tenant_principal("user", permissions=frozenset({"tenant.users.view"}))
    decision = authorize(principal, "tenant.users.view")
    assert decision.allowed
    assert decision.reason == "role"


def test_cross_tenant_resources_are_denied_even_for_admins() -> None:
    admin = _tenant_principal("admin")
    decision = authorize(admin, "tenant.users.view", ResourceRef(kind="user", tenant_id="t-2"))
    assert not decision.allowed
    assert decision.reason == "cross_tenant"
    assert authorize(admin, "tenant.users.view", ResourceRef(kind="user", tenant_id="t-1")).allowed


def test_central_actions_need_a_central_super_admin() -> None:
    assert authorize(_super_admin(), "tenants.suspend").allowed
    assert authorize(_tenant_principal("admin"), "tenants.suspend").reason == "central_scope_required"
    # Impersonation never carries central powers.
    impersonating = _super_admin(impersonator_id="root")
    assert authorize(impersonating, "tenants.view").reason == "central_scope_required"


def test_super_admins_reach_tenant_actions_only_through_impersonation() -> None:
    decision = authorize(_super_admin(), "tenant.users.view")
    assert not decision.allowed
    assert decision.reason == "tenant_scope_required"


def test_impersonation_allowed_actions_narrow_the_target_capabilities() -> None:
    restricted = _tenant_principal(
        "admin",
        impersonator_id="root",
        impersonation_token="hash",
        allowed_actions=("tenant.users.view",),
    )
    assert authorize(restricted, "tenant.users.view").allowed
    assert authorize(restricted, "tenant.users.delete").reason == "impersonation_restricted"

    # Allowed actions never grant more than the impersonated user has.
    restricted_user = _tenant_principal("user", impersonator_id="root", allowed_actions=("tenant.users.delete",))
    assert authorize(restricted_user, "tenant.users.delete").reason == "missing_permission"


def test_unknown_actions_are_denied() -> None:
    assert authorize(_super_admin(), "tenants.launch_rockets").reason == "unknown_action"


def test_require_raises_with_action_and_reason() -> None:
    with pytest.raises(AuthorizationError) as excinfo:
        require(_tenant_principal("user"), "tenant.roles.manage")
    assert excinfo.value.details == {"action": "tenant.roles.manage", "reason": "missing_permission"}


def test_role_helpers() -> None:
    assert normalize_role(" Manager ") == "manager"
    with pytest.raises(ValidationError):
        normalize_role("owner")
    assert role_allows(role="admin", minimum_role="manager")
    assert not role_allows(role="user", minimum_role="manager")
