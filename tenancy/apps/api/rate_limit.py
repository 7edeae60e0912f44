from __future__ import annotations

import logging

from fastapi import Depends, Request

from tenancy.apps.api.deps import get_rate_limiter_dep
from tenancy.core.errors import TooManyAttemptsError
from tenancy.services.audit import get_request_context
from tenancy.services.auth.rate_limiter import LoginRateLimiter, register_key, register_policy


logger = logging.getLogger(__name__)


async def enforce_registration_limit(
    request: Request,
    limiter: LoginRateLimiter = Depends(get_rate_limiter_dep),
) -> None:
    # Every public registration attempt counts, successful or not.
    ip_address = get_request_context(request)["ip_address"]
    key = register_key(ip_address)
    policy = register_policy()
    state = await limiter.check(key, policy)
    if state.locked:
        logger.info("registration_rate_limited ip=%s retry_after=%s", ip_address, state.retry_after_seconds)
        raise TooManyAttemptsError(state.retry_after_seconds)
    await limiter.hit(key, policy)
