from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime
import hashlib
import hmac
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import as_utc
from tenancy.core.errors import ValidationError
from tenancy.domain.models import Tenant
from tenancy.services.audit import SYSTEM_ACTOR, AuditActor, audit
from tenancy.services.tenants import store
from tenancy.services.tenants.lifecycle import TenantLifecycle


logger = logging.getLogger(__name__)

EVENT_PAYMENT_SUCCEEDED = "payment_succeeded"
EVENT_PAYMENT_FAILED = "payment_failed"
EVENT_SUBSCRIPTION_CANCELLED = "subscription_cancelled"

BILLING_EVENT_TYPES = (EVENT_PAYMENT_SUCCEEDED, EVENT_PAYMENT_FAILED, EVENT_SUBSCRIPTION_CANCELLED)

SIGNATURE_HEADER = "X-Billing-Signature"


def build_billing_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures for billing webhook payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_billing_signature(secret: str | None, payload: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(build_billing_signature(secret, payload), signature.strip().lower())


@dataclass(frozen=True)
class BillingEvent:
    event_type: str
    tenant_id: str
    reference: str | None = None
    amount: str | None = None


def parse_billing_event(payload: dict[str, Any]) -> BillingEvent:
    event_type = str(payload.get("type") or "").strip()
    if event_type not in BILLING_EVENT_TYPES:
        raise ValidationError.for_field("type", f"Unsupported billing event: {event_type or '<missing>'}")
    tenant_id = str(payload.get("tenant_id") or "").strip()
    if not tenant_id:
        raise ValidationError.for_field("tenant_id", "tenant_id is required")
    amount = payload.get("amount")
    return BillingEvent(
        event_type=event_type,
        tenant_id=tenant_id,
        reference=payload.get("reference"),
        amount=None if amount is None else str(amount),
    )


def add_one_month(value: datetime) -> datetime:
    # Calendar month; the day is clamped (Jan 31 -> Feb 28/29).
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


async def apply_billing_event(
    session: AsyncSession,
    tenant: Tenant,
    event: BillingEvent,
    *,
    lifecycle: TenantLifecycle,
    actor: AuditActor | None = None,
) -> Tenant:
    actor = actor or SYSTEM_ACTOR
    metadata = {"event": event.event_type, "reference": event.reference, "amount": event.amount}

    if event.event_type == EVENT_PAYMENT_SUCCEEDED:
        now = lifecycle.now()
        current = as_utc(tenant.plan_expires_at)
        tenant.plan_expires_at = add_one_month(max(now, current) if current else now)
        if tenant.status != store.TENANT_STATUS_ACTIVE:
            # activate() commits the new expiry together with the status change.
            await lifecycle.activate(session, tenant, actor=actor)
        await audit(
            actor,
            session=session,
            event_type="billing.payment_succeeded",
            tenant_id=tenant.id,
            resource_type="tenant",
            resource_id=tenant.id,
            metadata={**metadata, "plan_expires_at": tenant.plan_expires_at.isoformat()},
        )
        await session.commit()
    elif event.event_type == EVENT_PAYMENT_FAILED:
        logger.warning("billing_payment_failed tenant_id=%s reference=%s", tenant.id, event.reference)
        await audit(
            actor,
            session=session,
            event_type="billing.payment_failed",
            tenant_id=tenant.id,
            resource_type="tenant",
            resource_id=tenant.id,
            outcome="failure",
            metadata=metadata,
        )
        await session.commit()
    else:
        if tenant.status == store.TENANT_STATUS_ACTIVE:
            await lifecycle.suspend(session, tenant, reason="Subscription cancelled", actor=actor)
        await audit(
            actor,
            session=session,
            event_type="billing.subscription_cancelled",
            tenant_id=tenant.id,
            resource_type="tenant",
            resource_id=tenant.id,
            metadata=metadata,
        )
        await session.commit()

    logger.info("billing_event_applied tenant_id=%s event=%s status=%s", tenant.id, event.event_type, tenant.status)
    return tenant
