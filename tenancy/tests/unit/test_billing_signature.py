from __future__ import annotations

import json

import pytest

from tenancy.core.errors import ValidationError
from tenancy.services.tenants.billing import (
    build_billing_signature,
    parse_billing_event,
    verify_billing_signature,
)


def test_signature_round_trip_and_tamper_detection() -> None:
    body = json.dumps({"type": "payment_succeeded", "tenant_id": "t-1"}).encode("utf-8")
    signature = build_billing_signature("whsec", body)

    assert len(signature) == 64
    assert verify_billing_signature("whsec", body, signature)
    assert verify_billing_signature("whsec", body, f"  {signature.upper()} ")
    assert not verify_billing_signature("whsec", body + b" ", signature)
    assert not verify_billing_signature("other", body, signature)
    assert not verify_billing_signature(None, body, signature)
    assert not verify_billing_signature("whsec", body, None)


def test_parse_billing_event() -> None:
    event = parse_billing_event(
        {"type": "payment_failed", "tenant_id": " t-9 ", "reference": "inv_1", "amount": 29}
    )
    assert event.event_type == "payment_failed"
    assert event.tenant_id == "t-9"
    assert event.reference == "inv_1"
    assert event.amount == "29"


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        ({"type": "refund_issued", "tenant_id": "t-1"}, "type"),
        ({"tenant_id": "t-1"}, "type"),
        ({"type": "subscription_cancelled"}, "tenant_id"),
    ],
)
def test_parse_billing_event_rejects_bad_payloads(payload: dict, field: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        parse_billing_event(payload)
    assert field in excinfo.value.details["fields"]
