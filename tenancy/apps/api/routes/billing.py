from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.apps.api.deps import get_db, get_lifecycle
from tenancy.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenancy.core.config import get_settings
from tenancy.core.errors import AuthenticationError, ValidationError
from tenancy.services.audit import AuditActor
from tenancy.services.tenants import store
from tenancy.services.tenants.billing import (
    SIGNATURE_HEADER,
    apply_billing_event,
    parse_billing_event,
    verify_billing_signature,
)
from tenancy.services.tenants.lifecycle import TenantLifecycle


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)

BILLING_ACTOR = AuditActor(actor_type="billing")


class BillingEventResponse(BaseModel):
    tenant_id: str
    event: str
    status: str


@router.post("/events")
async def receive_billing_event(
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: TenantLifecycle = Depends(get_lifecycle),
) -> BillingEventResponse:
    # Verify against the raw body; re-serialized JSON would not match the signature.
    body = await request.body()
    if not verify_billing_signature(get_settings().billing_webhook_secret, body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("billing_signature_rejected request_id=%s", getattr(request.state, "request_id", None))
        raise AuthenticationError("Invalid billing signature", code="BILLING_SIGNATURE_INVALID")
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise ValidationError("Billing payload must be a JSON object", code="BILLING_PAYLOAD_INVALID") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Billing payload must be a JSON object", code="BILLING_PAYLOAD_INVALID")

    event = parse_billing_event(payload)
    tenant = await store.get_tenant(db, event.tenant_id)
    tenant = await apply_billing_event(
        db,
        tenant,
        event,
        lifecycle=lifecycle,
        actor=BILLING_ACTOR.with_request(request),
    )
    return BillingEventResponse(tenant_id=tenant.id, event=event.event_type, status=tenant.status)
