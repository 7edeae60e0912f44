from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenancy.core.clock import Clock, as_utc, utc_now
from tenancy.core.config import get_settings
from tenancy.core.errors import (
    AuthenticationError,
    TenantSuspendedError,
    TooManyAttemptsError,
    TwoFactorRequiredError,
)
from tenancy.domain.models import AuthSession, Tenant, User
from tenancy.persistence.repos import sessions as sessions_repo
from tenancy.persistence.repos import users as users_repo
from tenancy.persistence.tenant_db import TenantContext
from tenancy.services.audit import AuditActor, audit
from tenancy.services.auth import password_reset, two_factor
from tenancy.services.auth.passwords import burn_password_check, hash_password, validate_password, verify_password
from tenancy.services.auth.rate_limiter import LoginRateLimiter, get_rate_limiter, login_key, login_policy
from tenancy.services.mailer import EmailDispatcher, get_email_dispatcher
from tenancy.services.tenants.store import TENANT_STATUS_ACTIVE, TENANT_STATUS_SUSPENDED


logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "These credentials do not match our records."


@dataclass(frozen=True)
class LoginResult:
    token: str
    session_id: str
    tenant_id: str
    user_id: str
    expires_at: datetime
    must_change_password: bool = False
    two_factor_method: str | None = None


def _invalid_credentials() -> AuthenticationError:
    # One message for unknown email, wrong password, locked or inactive user.
    return AuthenticationError(INVALID_CREDENTIALS_MESSAGE, code="INVALID_CREDENTIALS")


class AuthService:
    """Credential login, session resolution and logout.

    The rate limiter is consulted before anything else; a locked key never
    reaches the user lookup or the password hash. Failures cost an attempt,
    a success clears the key.
    """

    def __init__(
        self,
        *,
        rate_limiter: LoginRateLimiter | None = None,
        mailer: EmailDispatcher | None = None,
        time_provider: Clock | None = None,
    ) -> None:
        self._time_provider = time_provider or utc_now
        self.rate_limiter = rate_limiter or get_rate_limiter(self._time_provider)
        self.mailer = mailer or get_email_dispatcher()

    def now(self) -> datetime:
        return self._time_provider()

    async def login(
        self,
        central: AsyncSession,
        *,
        ctx: TenantContext,
        tenant: Tenant,
        email: str,
        password: str,
        one_time_code: str | None = None,
        actor: AuditActor | None = None,
    ) -> LoginResult:
        actor = actor or AuditActor(actor_type="anonymous")
        policy = login_policy()
        key = login_key(actor.ip_address, None if tenant.is_system else tenant.id)
        normalized_email = users_repo.normalize_email(email)

        state = await self.rate_limiter.check(key, policy)
        if state.locked:
            logger.info("login_locked_out tenant_id=%s retry_after=%s", tenant.id, state.retry_after_seconds)
            await audit(
                actor,
                event_type="auth.login.locked_out",
                tenant_id=tenant.id,
                outcome="failure",
                error_code=TooManyAttemptsError.code,
                metadata={"email": normalized_email, "retry_after_seconds": state.retry_after_seconds},
            )
            raise TooManyAttemptsError(state.retry_after_seconds)

        ctx.require_tenant(tenant.id)

        if tenant.status == TENANT_STATUS_SUSPENDED:
            await self._fail(key, actor, tenant_id=tenant.id, email=normalized_email, error_code=TenantSuspendedError.code)
            raise TenantSuspendedError("This tenant account is suspended.")
        if tenant.status != TENANT_STATUS_ACTIVE or tenant.deleted_at is not None:
            await self._fail(key, actor, tenant_id=tenant.id, email=normalized_email, error_code="TENANT_INACTIVE")
            raise AuthenticationError("This tenant account is not active.", code="TENANT_INACTIVE")

        now = self.now()
        user = await users_repo.get_user_by_email(ctx, normalized_email)
        if user is None:
            burn_password_check(password)
            await self._fail(key, actor, tenant_id=tenant.id, email=normalized_email, error_code="INVALID_CREDENTIALS")
            raise _invalid_credentials()

        locked_until = as_utc(user.locked_until)
        if locked_until is not None and locked_until > now:
            burn_password_check(password)
            await self._fail(key, actor, tenant_id=tenant.id, email=normalized_email, error_code="ACCOUNT_LOCKED")
            raise _invalid_credentials()

        if not verify_password(password, user.password_hash):
            await self._record_bad_password(ctx, user, now=now)
            await self._fail(key, actor, tenant_id=tenant.id, email=normalized_email, error_code="INVALID_CREDENTIALS")
            raise _invalid_credentials()

        if user.status != "active":
            await self._fail(key, actor, tenant_id=tenant.id, email=normalized_email, error_code="USER_INACTIVE")
            raise _invalid_credentials()

        method = None
        if user.has_two_factor:
            if not one_time_code:
                raise TwoFactorRequiredError("A two-factor code is required.")
            try:
                method = await two_factor.verify_login_code(ctx, user, one_time_code, now=now)
            except AuthenticationError as exc:
                await ctx.session.commit()
                await self._fail(key, actor, tenant_id=tenant.id, email=normalized_email, error_code=exc.code)
                raise

        await users_repo.record_login_success(ctx, user, now=now, ip_address=actor.ip_address)
        user_id = user.id
        must_change_password = bool(user.must_change_password)
        # The tenant store commits first; for the system tenant it shares the central database.
        await ctx.session.commit()
        await self.rate_limiter.clear(key)

        expires_at = now + timedelta(hours=get_settings().auth_session_ttl_hours)
        raw_token, row = await sessions_repo.create_session(
            central,
            tenant_id=tenant.id,
            user_id=user_id,
            now=now,
            expires_at=expires_at,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
        )
        await audit(
            AuditActor(
                actor_type="user",
                actor_id=user_id,
                actor_role=user.role,
                request_id=actor.request_id,
                ip_address=actor.ip_address,
                user_agent=actor.user_agent,
            ),
            session=central,
            event_type="auth.login.succeeded",
            tenant_id=tenant.id,
            resource_type="auth_session",
            resource_id=row.id,
            metadata={"two_factor_method": method},
        )
        await central.commit()
        logger.info("login_succeeded tenant_id=%s user_id=%s session_id=%s", tenant.id, user_id, row.id)
        return LoginResult(
            token=raw_token,
            session_id=row.id,
            tenant_id=tenant.id,
            user_id=user_id,
            expires_at=expires_at,
            must_change_password=must_change_password,
            two_factor_method=method,
        )

    async def _record_bad_password(self, ctx: TenantContext, user: User, *, now: datetime) -> None:
        settings = get_settings()
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        if user.failed_login_attempts >= settings.auth_account_lockout_threshold:
            user.locked_until = now + timedelta(minutes=settings.auth_account_lockout_minutes)
            user.failed_login_attempts = 0
            logger.warning("account_locked tenant_id=%s user_id=%s", user.tenant_id, user.id)
        await ctx.session.commit()

    async def _fail(self, key: str, actor: AuditActor, *, tenant_id: str, email: str, error_code: str) -> None:
        await self.rate_limiter.hit(key, login_policy())
        await audit(
            actor,
            event_type="auth.login.failed",
            tenant_id=tenant_id,
            outcome="failure",
            error_code=error_code,
            metadata={"email": email},
        )

    async def resolve_session(self, central: AsyncSession, raw_token: str) -> tuple[AuthSession, Tenant]:
        """Validate a bearer session token and return it with its tenant.

        Suspended tenants surface as ``TenantSuspendedError`` so clients can
        tell that case apart from an invalid token.
        """
        if not raw_token or not sessions_repo.is_session_token(raw_token):
            raise AuthenticationError("Invalid session token")
        row = (
            await central.execute(
                select(AuthSession, Tenant)
                .join(Tenant, Tenant.id == AuthSession.tenant_id)
                .where(AuthSession.token_hash == sessions_repo.hash_session_token(raw_token))
            )
        ).first()
        if row is None:
            raise AuthenticationError("Invalid session token")
        auth_session, tenant = row
        now = self.now()
        if auth_session.revoked_at is not None:
            raise AuthenticationError("Session token revoked")
        if as_utc(auth_session.expires_at) <= now:
            raise AuthenticationError("Session token expired")
        if tenant.deleted_at is not None:
            raise AuthenticationError("Invalid session token")
        if tenant.status == TENANT_STATUS_SUSPENDED:
            raise TenantSuspendedError("This tenant account is suspended.")
        if tenant.status != TENANT_STATUS_ACTIVE:
            raise AuthenticationError("This tenant account is not active.", code="TENANT_INACTIVE")
        await central.execute(
            update(AuthSession)
            .where(AuthSession.id == auth_session.id)
            .values(last_seen_at=now)
            .execution_options(synchronize_session=False)
        )
        await central.commit()
        return auth_session, tenant

    async def load_session_user(self, ctx: TenantContext, auth_session: AuthSession) -> User:
        ctx.require_tenant(auth_session.tenant_id)
        user = await users_repo.get_user(ctx, auth_session.user_id)
        if user is None or user.status != "active":
            raise AuthenticationError("Session user is not active")
        return user

    async def logout(self, central: AsyncSession, raw_token: str, *, actor: AuditActor | None = None) -> bool:
        # Idempotent: an unknown or already revoked token is not an error.
        now = self.now()
        row = await sessions_repo.get_by_token(central, raw_token)
        if row is None or row.revoked_at is not None:
            return False
        row.revoked_at = now
        await audit(
            actor or AuditActor(actor_type="user", actor_id=row.user_id),
            session=central,
            event_type="auth.logout",
            tenant_id=row.tenant_id,
            resource_type="auth_session",
            resource_id=row.id,
        )
        await central.commit()
        return True

    async def request_password_reset(
        self,
        central: AsyncSession,
        *,
        ctx: TenantContext,
        tenant: Tenant,
        email: str,
        actor: AuditActor | None = None,
    ) -> None:
        await password_reset.request_reset(
            central,
            ctx=ctx,
            tenant=tenant,
            email=email,
            now=self.now(),
            mailer=self.mailer,
            actor=actor,
        )

    async def reset_password(
        self,
        central: AsyncSession,
        *,
        ctx: TenantContext,
        tenant: Tenant,
        email: str,
        token: str,
        new_password: str,
        actor: AuditActor | None = None,
    ) -> None:
        await password_reset.reset_password(
            central,
            ctx=ctx,
            tenant=tenant,
            email=email,
            token=token,
            new_password=new_password,
            now=self.now(),
            actor=actor,
        )

    async def change_password(
        self,
        central: AsyncSession,
        *,
        ctx: TenantContext,
        user: User,
        current_password: str,
        new_password: str,
        keep_session_id: str | None = None,
        actor: AuditActor | None = None,
    ) -> int:
        """Rotate a signed-in user's password; other sessions of the user are revoked.

        Returns the number of sessions ended.
        """
        ctx.require_tenant(user.tenant_id)
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect", code="INVALID_CREDENTIALS")
        validate_password(new_password, field="new_password")
        now = self.now()
        user.password_hash = hash_password(new_password)
        user.password_changed_at = now
        user.must_change_password = False
        user_id, tenant_id = user.id, user.tenant_id
        await ctx.session.commit()

        stmt = update(AuthSession).where(
            AuthSession.tenant_id == tenant_id,
            AuthSession.user_id == user_id,
            AuthSession.revoked_at.is_(None),
        )
        if keep_session_id is not None:
            stmt = stmt.where(AuthSession.id != keep_session_id)
        result = await central.execute(
            stmt.values(revoked_at=now).execution_options(synchronize_session=False)
        )
        revoked = int(result.rowcount or 0)
        await audit(
            actor or AuditActor(actor_type="user", actor_id=user_id),
            session=central,
            event_type="auth.password.changed",
            tenant_id=tenant_id,
            resource_type="user",
            resource_id=user_id,
            metadata={"sessions_revoked": revoked},
        )
        await central.commit()
        return revoked

    async def begin_two_factor(self, ctx: TenantContext, user: User) -> two_factor.TwoFactorEnrollment:
        enrollment = await two_factor.begin_enrollment(ctx, user)
        await ctx.session.commit()
        return enrollment

    async def confirm_two_factor(
        self,
        central: AsyncSession,
        *,
        ctx: TenantContext,
        user: User,
        code: str,
        actor: AuditActor | None = None,
    ) -> list[str]:
        # The plaintext recovery codes are only ever returned here.
        codes = await two_factor.confirm_enrollment(ctx, user, code, now=self.now())
        await ctx.session.commit()
        await audit(
            actor or AuditActor(actor_type="user", actor_id=user.id),
            session=central,
            event_type="auth.two_factor.enabled",
            tenant_id=user.tenant_id,
            resource_type="user",
            resource_id=user.id,
        )
        await central.commit()
        return codes

    async def disable_two_factor(
        self,
        central: AsyncSession,
        *,
        ctx: TenantContext,
        user: User,
        password: str,
        actor: AuditActor | None = None,
    ) -> None:
        await two_factor.disable(ctx, user, password)
        await ctx.session.commit()
        await audit(
            actor or AuditActor(actor_type="user", actor_id=user.id),
            session=central,
            event_type="auth.two_factor.disabled",
            tenant_id=user.tenant_id,
            resource_type="user",
            resource_id=user.id,
        )
        await central.commit()
