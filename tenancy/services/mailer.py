from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Protocol

import httpx

from tenancy.core.config import get_settings


logger = logging.getLogger(__name__)

TEMPLATE_TENANT_WELCOME = "tenant_welcome"
TEMPLATE_PASSWORD_RESET = "password_reset"
TEMPLATE_TENANT_SUSPENDED = "tenant_suspended"


@dataclass(frozen=True)
class EmailMessage:
    to: str
    template: str
    context: dict[str, Any] = field(default_factory=dict)


class EmailDispatcher(Protocol):
    async def send(self, message: EmailMessage) -> None:
        ...


class LoggingEmailDispatcher:
    # Default when no relay is configured; never logs template context (may hold secrets).
    async def send(self, message: EmailMessage) -> None:
        logger.info("email_dispatched to=%s template=%s", message.to, message.template)


class WebhookEmailDispatcher:
    # Hand messages to an HTTP mail relay with a short timeout.
    def __init__(self, url: str, *, timeout_ms: int, sender: str) -> None:
        self.url = url
        self.timeout_s = timeout_ms / 1000.0
        self.sender = sender

    async def send(self, message: EmailMessage) -> None:
        body = json.dumps(
            {
                "from": self.sender,
                "to": message.to,
                "template": message.template,
                "context": message.context,
            },
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        ).encode("utf-8")
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            response = await client.post(
                self.url,
                content=body,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()


def get_email_dispatcher() -> EmailDispatcher:
    settings = get_settings()
    if settings.mail_webhook_url:
        return WebhookEmailDispatcher(
            settings.mail_webhook_url,
            timeout_ms=settings.mail_webhook_timeout_ms,
            sender=settings.mail_from_address,
        )
    return LoggingEmailDispatcher()


async def dispatch_email(dispatcher: EmailDispatcher, message: EmailMessage) -> bool:
    # Fire-and-forget: delivery problems are logged, never raised into core operations.
    try:
        await dispatcher.send(message)
    except (httpx.HTTPError, OSError) as exc:
        logger.warning(
            "email_dispatch_failed to=%s template=%s",
            message.to,
            message.template,
            exc_info=exc,
        )
        return False
    return True
