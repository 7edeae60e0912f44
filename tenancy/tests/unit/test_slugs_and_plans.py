from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tenancy.core.errors import ValidationError
from tenancy.services.tenants.billing import add_one_month
from tenancy.services.tenants.lifecycle import database_name_for, derived_domain, normalize_slug
from tenancy.services.tenants.plans import (
    LIMIT_STORAGE,
    LIMIT_USERS,
    REGISTRABLE_PLANS,
    UNLIMITED,
    get_plan,
    resolve_limit,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Acme Corp", "acme-corp"),
        ("  Acme   Corp  ", "acme-corp"),
        ("Crème Brûlée & Co.", "creme-brulee-co"),
        ("under_score name", "underscore-name"),
        ("--Edge--", "edge"),
        ("!!!", ""),
    ],
)
def test_normalize_slug(raw: str, expected: str) -> None:
    assert normalize_slug(raw) == expected


def test_normalize_slug_is_idempotent() -> None:
    for raw in ("Acme Corp", "Ünïcode Name 42", "a" * 100, "x -_- y"):
        once = normalize_slug(raw)
        assert normalize_slug(once) == once
        assert len(once) <= 63


def test_derived_domain_and_database_name() -> None:
    now = datetime(2026, 3, 2, 12, 30, 5, tzinfo=timezone.utc)
    assert derived_domain("acme-corp") == "acme-corp.localhost"
    assert database_name_for("acme-corp", now) == "tenant_acme_corp_20260302123005"


def test_plan_catalog_limits() -> None:
    basic = get_plan("basic")
    assert basic.limits[LIMIT_USERS] == 5
    assert basic.limits[LIMIT_STORAGE] == 1024 * 1024 * 1024
    assert get_plan("pro").limits[LIMIT_USERS] == 25
    enterprise = get_plan("ENTERPRISE")
    assert enterprise.limits[LIMIT_USERS] == UNLIMITED
    assert enterprise.features["custom_domain"] is True
    assert "unlimited" not in REGISTRABLE_PLANS


def test_unknown_plan_is_a_validation_error() -> None:
    with pytest.raises(ValidationError) as excinfo:
        get_plan("platinum")
    assert excinfo.value.details["fields"]["plan"].startswith("Unknown plan")


def test_resolve_limit_defaults_to_unlimited() -> None:
    assert resolve_limit(None, LIMIT_USERS) == UNLIMITED
    assert resolve_limit({LIMIT_USERS: "7"}, LIMIT_USERS) == 7
    assert resolve_limit({LIMIT_USERS: None}, LIMIT_USERS) == UNLIMITED
    assert resolve_limit({}, LIMIT_STORAGE) == UNLIMITED


def test_add_one_month_clamps_the_day() -> None:
    assert add_one_month(datetime(2026, 1, 31, tzinfo=timezone.utc)) == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert add_one_month(datetime(2028, 1, 31, tzinfo=timezone.utc)) == datetime(2028, 2, 29, tzinfo=timezone.utc)
    assert add_one_month(datetime(2026, 12, 15, tzinfo=timezone.utc)) == datetime(2027, 1, 15, tzinfo=timezone.utc)
