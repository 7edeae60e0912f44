from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
import secrets

import pyotp
from pyotp.utils import strings_equal

from tenancy.core.clock import as_utc
from tenancy.core.config import get_settings
from tenancy.core.errors import AuthenticationError, ConflictError
from tenancy.domain.models import User
from tenancy.persistence.tenant_db import TenantContext
from tenancy.services.auth.passwords import verify_password


logger = logging.getLogger(__name__)

_RECOVERY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    provisioning_uri: str


def _hash_recovery_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()


def generate_recovery_codes(count: int) -> list[str]:
    # XXXX-XXXX codes; only their hashes are persisted.
    codes = []
    for _ in range(count):
        raw = "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(8))
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def _is_recovery_code(code: str) -> bool:
    return len(code) == 9 and code[4] == "-"


def _matched_step(secret: str, code: str, now: datetime) -> int | None:
    # Time step of the code within one step of clock drift either way.
    totp = pyotp.TOTP(secret)
    current = totp.timecode(now)
    for step in (current - 1, current, current + 1):
        if strings_equal(code, totp.generate_otp(step)):
            return step
    return None


def _step_started_at(secret: str, step: int) -> datetime:
    return datetime.fromtimestamp(step * pyotp.TOTP(secret).interval, tz=timezone.utc)


def _already_used(user: User, step: int) -> bool:
    # two_factor_last_used_at holds the start of the last accepted step.
    last_used = as_utc(user.two_factor_last_used_at)
    return last_used is not None and step <= pyotp.TOTP(user.two_factor_secret).timecode(last_used)


async def begin_enrollment(ctx: TenantContext, user: User) -> TwoFactorEnrollment:
    ctx.require_tenant(user.tenant_id)
    if user.has_two_factor:
        raise ConflictError("Two-factor authentication is already enabled", code="TWO_FACTOR_ALREADY_ENABLED")
    secret = pyotp.random_base32()
    user.two_factor_secret = secret
    user.two_factor_enabled = False
    user.two_factor_confirmed_at = None
    await ctx.session.flush()
    uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=get_settings().two_factor_issuer)
    return TwoFactorEnrollment(secret=secret, provisioning_uri=uri)


async def confirm_enrollment(ctx: TenantContext, user: User, code: str, *, now: datetime) -> list[str]:
    ctx.require_tenant(user.tenant_id)
    if not user.two_factor_secret:
        raise ConflictError("Two-factor enrollment has not been started", code="TWO_FACTOR_NOT_STARTED")
    step = _matched_step(user.two_factor_secret, code.strip(), now)
    if step is None:
        raise AuthenticationError("Invalid two-factor code", code="TWO_FACTOR_INVALID")
    codes = generate_recovery_codes(get_settings().two_factor_recovery_code_count)
    user.two_factor_enabled = True
    user.two_factor_confirmed_at = now
    user.two_factor_recovery_codes = [_hash_recovery_code(code) for code in codes]
    user.two_factor_failed_attempts = 0
    user.two_factor_locked_until = None
    user.two_factor_last_used_at = _step_started_at(user.two_factor_secret, step)
    await ctx.session.flush()
    return codes


async def disable(ctx: TenantContext, user: User, password: str) -> None:
    ctx.require_tenant(user.tenant_id)
    if not verify_password(password, user.password_hash):
        raise AuthenticationError("Password confirmation failed", code="INVALID_CREDENTIALS")
    user.two_factor_secret = None
    user.two_factor_enabled = False
    user.two_factor_confirmed_at = None
    user.two_factor_recovery_codes = []
    user.two_factor_failed_attempts = 0
    user.two_factor_locked_until = None
    await ctx.session.flush()


def _consume_recovery_code(user: User, code: str) -> bool:
    hashed = _hash_recovery_code(code)
    remaining = list(user.two_factor_recovery_codes or [])
    for index, stored in enumerate(remaining):
        if hmac.compare_digest(stored, hashed):
            del remaining[index]
            # Reassign so the JSON column is marked dirty.
            user.two_factor_recovery_codes = remaining
            return True
    return False


async def verify_login_code(ctx: TenantContext, user: User, code: str, *, now: datetime) -> str:
    """Check a TOTP or recovery code during login; returns the method used.

    A run of failures opens a lock window on the user, independent of the IP
    rate limiter. Counter changes are flushed; the caller commits them.
    """
    settings = get_settings()
    locked_until = as_utc(user.two_factor_locked_until)
    if locked_until is not None and locked_until > now:
        raise AuthenticationError(
            "Two-factor verification is temporarily locked",
            code="TWO_FACTOR_LOCKED",
            details={"retry_after_seconds": int((locked_until - now).total_seconds()) + 1},
        )
    candidate = (code or "").strip()
    method: str | None = None
    if _is_recovery_code(candidate):
        if _consume_recovery_code(user, candidate):
            method = "recovery_code"
    elif user.two_factor_secret:
        step = _matched_step(user.two_factor_secret, candidate, now)
        if step is not None and _already_used(user, step):
            logger.warning("two_factor_code_replayed user_id=%s tenant_id=%s", user.id, user.tenant_id)
        elif step is not None:
            method = "totp"
            user.two_factor_last_used_at = _step_started_at(user.two_factor_secret, step)

    if method is None:
        user.two_factor_failed_attempts = (user.two_factor_failed_attempts or 0) + 1
        if user.two_factor_failed_attempts >= settings.two_factor_max_failed_attempts:
            user.two_factor_locked_until = now + timedelta(minutes=settings.two_factor_lock_minutes)
            user.two_factor_failed_attempts = 0
            logger.warning("two_factor_locked user_id=%s tenant_id=%s", user.id, user.tenant_id)
        await ctx.session.flush()
        raise AuthenticationError("Invalid two-factor code", code="TWO_FACTOR_INVALID")

    user.two_factor_failed_attempts = 0
    user.two_factor_locked_until = None
    await ctx.session.flush()
    return method
