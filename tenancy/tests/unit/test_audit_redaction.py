from __future__ import annotations

import pytest

from tenancy.persistence.db import SessionLocal
from tenancy.services.audit import AuditActor, audit, list_events, sanitize_metadata


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    payload = {
        "email": "ada@example.com",
        "password": "hunter22",
        "nested": {"reset_token": "abc", "Authorization": "Bearer x", "keep": 1},
        "items": [{"one_time_code": "123456"}, {"recovery_code": "AAAA-BBBB"}, "plain"],
        "setup_key": "k",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["email"] == "ada@example.com"
    assert sanitized["password"] == "[REDACTED]"
    assert sanitized["nested"] == {"reset_token": "[REDACTED]", "Authorization": "[REDACTED]", "keep": 1}
    assert sanitized["items"] == [{"one_time_code": "[REDACTED]"}, {"recovery_code": "[REDACTED]"}, "plain"]
    assert sanitized["setup_key"] == "[REDACTED]"
    # The input is left untouched.
    assert payload["password"] == "hunter22"


@pytest.mark.asyncio
async def test_audit_rows_are_written_redacted() -> None:
    actor = AuditActor(actor_type="user", actor_id="u-1", ip_address="10.0.0.1")
    await audit(
        actor,
        event_type="auth.password.changed",
        tenant_id="t-audit",
        metadata={"new_password": "s3cret-value", "sessions_revoked": 2},
    )
    async with SessionLocal() as session:
        events = await list_events(session, tenant_id="t-audit")
    assert len(events) == 1
    event = events[0]
    assert event.actor_id == "u-1"
    assert event.ip_address == "10.0.0.1"
    assert event.metadata_json == {"new_password": "[REDACTED]", "sessions_revoked": 2}


@pytest.mark.asyncio
async def test_list_events_filters_and_orders_newest_first() -> None:
    actor = AuditActor(actor_type="system", actor_id="system")
    for event_type in ("tenant.registered", "tenant.activated", "tenant.suspended"):
        await audit(actor, event_type=event_type, tenant_id="t-order")
    await audit(actor, event_type="tenant.activated", tenant_id="t-other")

    async with SessionLocal() as session:
        events = await list_events(session, tenant_id="t-order")
        activated = await list_events(session, event_type="tenant.activated")
    assert [event.event_type for event in events] == ["tenant.suspended", "tenant.activated", "tenant.registered"]
    assert {event.tenant_id for event in activated} == {"t-order", "t-other"}
