from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from tenancy.core.errors import ValidationError


PLAN_BASIC = "basic"
PLAN_PRO = "pro"
PLAN_ENTERPRISE = "enterprise"
PLAN_UNLIMITED = "unlimited"

UNLIMITED = -1

LIMIT_USERS = "users"
LIMIT_STORAGE = "storage"
LIMIT_API_CALLS = "api_calls"
LIMIT_PROJECTS = "projects"

FEATURE_USERS = "users"
FEATURE_TEAMS = "teams"
FEATURE_API_ACCESS = "api_access"
FEATURE_CUSTOM_DOMAIN = "custom_domain"
FEATURE_PRIORITY_SUPPORT = "priority_support"
FEATURE_ADVANCED_ANALYTICS = "advanced_analytics"

_GIB = 1024 * 1024 * 1024


@dataclass(frozen=True)
class PlanDefinition:
    # Feature flags and integer limits for one tier; -1 means unlimited.
    plan_id: str
    features: dict[str, bool]
    limits: dict[str, int]
    monthly_price: Decimal = Decimal("0.00")
    settings: dict[str, Any] = field(default_factory=dict)


PLAN_CATALOG: dict[str, PlanDefinition] = {
    PLAN_BASIC: PlanDefinition(
        plan_id=PLAN_BASIC,
        features={
            FEATURE_USERS: True,
            FEATURE_TEAMS: False,
            FEATURE_API_ACCESS: False,
            FEATURE_CUSTOM_DOMAIN: False,
            FEATURE_PRIORITY_SUPPORT: False,
            FEATURE_ADVANCED_ANALYTICS: False,
        },
        limits={LIMIT_USERS: 5, LIMIT_STORAGE: 1 * _GIB, LIMIT_API_CALLS: 1000, LIMIT_PROJECTS: 3},
        monthly_price=Decimal("29.00"),
    ),
    PLAN_PRO: PlanDefinition(
        plan_id=PLAN_PRO,
        features={
            FEATURE_USERS: True,
            FEATURE_TEAMS: True,
            FEATURE_API_ACCESS: True,
            FEATURE_CUSTOM_DOMAIN: False,
            FEATURE_PRIORITY_SUPPORT: False,
            FEATURE_ADVANCED_ANALYTICS: True,
        },
        limits={LIMIT_USERS: 25, LIMIT_STORAGE: 10 * _GIB, LIMIT_API_CALLS: 10000, LIMIT_PROJECTS: 15},
        monthly_price=Decimal("99.00"),
    ),
    PLAN_ENTERPRISE: PlanDefinition(
        plan_id=PLAN_ENTERPRISE,
        features={
            FEATURE_USERS: True,
            FEATURE_TEAMS: True,
            FEATURE_API_ACCESS: True,
            FEATURE_CUSTOM_DOMAIN: True,
            FEATURE_PRIORITY_SUPPORT: True,
            FEATURE_ADVANCED_ANALYTICS: True,
        },
        limits={
            LIMIT_USERS: UNLIMITED,
            LIMIT_STORAGE: UNLIMITED,
            LIMIT_API_CALLS: UNLIMITED,
            LIMIT_PROJECTS: UNLIMITED,
        },
        monthly_price=Decimal("299.00"),
    ),
    # Reserved for the system tenant; not offered at registration.
    PLAN_UNLIMITED: PlanDefinition(
        plan_id=PLAN_UNLIMITED,
        features={
            "unlimited_users": True,
            "unlimited_storage": True,
            "all_modules": True,
        },
        limits={
            LIMIT_USERS: UNLIMITED,
            LIMIT_STORAGE: UNLIMITED,
            LIMIT_API_CALLS: UNLIMITED,
            LIMIT_PROJECTS: UNLIMITED,
        },
    ),
}

REGISTRABLE_PLANS = (PLAN_BASIC, PLAN_PRO, PLAN_ENTERPRISE)


def get_plan(plan_id: str) -> PlanDefinition:
    plan = PLAN_CATALOG.get((plan_id or "").strip().lower())
    if plan is None:
        raise ValidationError.for_field("plan", f"Unknown plan: {plan_id}")
    return plan


def resolve_limit(limits: dict[str, Any] | None, key: str) -> int:
    # Missing keys are treated as unlimited; stored values are coerced to int.
    if not limits or key not in limits or limits[key] is None:
        return UNLIMITED
    return int(limits[key])


def is_unlimited(limit: int) -> bool:
    return limit < 0
