from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math
from typing import Protocol
from uuid import uuid4

from redis.asyncio import Redis
from sqlalchemy import delete, func, select

from tenancy.core.clock import Clock, as_utc, utc_now
from tenancy.core.config import get_settings
from tenancy.domain.models import LoginAttempt
from tenancy.persistence.db import SessionLocal


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptPolicy:
    # Fixed ceiling of failures inside a sliding window.
    max_attempts: int
    decay_seconds: int


@dataclass(frozen=True)
class AttemptState:
    attempts: int
    locked: bool
    retry_after_seconds: int


class LoginRateLimiter(Protocol):
    async def check(self, key: str, policy: AttemptPolicy) -> AttemptState:
        ...

    async def hit(self, key: str, policy: AttemptPolicy) -> None:
        ...

    async def clear(self, key: str) -> None:
        ...


def login_policy() -> AttemptPolicy:
    settings = get_settings()
    return AttemptPolicy(settings.auth_login_max_attempts, settings.auth_login_decay_seconds)


def register_policy() -> AttemptPolicy:
    settings = get_settings()
    return AttemptPolicy(settings.auth_register_max_attempts, settings.auth_register_decay_seconds)


def login_key(ip_address: str | None, tenant_id: str | None = None) -> str:
    # Central logins are keyed by IP alone; tenant logins by tenant and IP.
    ip = (ip_address or "unknown").strip().lower()
    if tenant_id is None:
        return f"login:central:{ip}"
    return f"login:{tenant_id}:{ip}"


def register_key(ip_address: str | None) -> str:
    return f"register:{(ip_address or 'unknown').strip().lower()}"


def _retry_after(oldest_counted: datetime, *, now: datetime, decay_seconds: int) -> int:
    remaining = (oldest_counted + timedelta(seconds=decay_seconds) - now).total_seconds()
    return max(1, int(math.ceil(remaining)))


class DatabaseRateLimiter:
    """Attempts stored as rows in the central store.

    Each call uses its own short transaction so recorded failures survive a
    rolled-back login transaction.
    """

    def __init__(self, *, time_provider: Clock | None = None) -> None:
        self._time_provider = time_provider or utc_now

    async def check(self, key: str, policy: AttemptPolicy) -> AttemptState:
        now = self._time_provider()
        window_start = now - timedelta(seconds=policy.decay_seconds)
        async with SessionLocal() as session:
            attempts = (
                await session.execute(
                    select(func.count())
                    .select_from(LoginAttempt)
                    .where(LoginAttempt.key == key, LoginAttempt.attempted_at > window_start)
                )
            ).scalar_one()
            if attempts < policy.max_attempts:
                return AttemptState(attempts=attempts, locked=False, retry_after_seconds=0)
            # The lock lifts once enough attempts age out to drop below the ceiling.
            releasing = (
                await session.execute(
                    select(LoginAttempt.attempted_at)
                    .where(LoginAttempt.key == key, LoginAttempt.attempted_at > window_start)
                    .order_by(LoginAttempt.attempted_at.asc())
                    .offset(attempts - policy.max_attempts)
                    .limit(1)
                )
            ).scalar_one()
        return AttemptState(
            attempts=attempts,
            locked=True,
            retry_after_seconds=_retry_after(as_utc(releasing), now=now, decay_seconds=policy.decay_seconds),
        )

    async def hit(self, key: str, policy: AttemptPolicy) -> None:
        async with SessionLocal() as session:
            session.add(LoginAttempt(key=key, attempted_at=self._time_provider()))
            await session.commit()

    async def clear(self, key: str) -> None:
        async with SessionLocal() as session:
            await session.execute(delete(LoginAttempt).where(LoginAttempt.key == key))
            await session.commit()


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections per event loop to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


class RedisRateLimiter:
    # Sliding window kept as a sorted set of attempt timestamps (ms) per key.
    def __init__(self, *, time_provider: Clock | None = None, prefix: str | None = None) -> None:
        self._time_provider = time_provider or utc_now
        self._prefix = prefix or get_settings().auth_rate_limit_redis_prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def check(self, key: str, policy: AttemptPolicy) -> AttemptState:
        now = self._time_provider()
        now_ms = int(now.timestamp() * 1000)
        window_start_ms = now_ms - policy.decay_seconds * 1000
        redis = await _get_redis()
        redis_key = self._key(key)
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, window_start_ms)
            pipe.zcard(redis_key)
            _removed, attempts = await pipe.execute()
        attempts = int(attempts)
        if attempts < policy.max_attempts:
            return AttemptState(attempts=attempts, locked=False, retry_after_seconds=0)
        index = attempts - policy.max_attempts
        releasing = await redis.zrange(redis_key, index, index, withscores=True)
        releasing_ms = int(releasing[0][1]) if releasing else now_ms
        remaining_ms = releasing_ms + policy.decay_seconds * 1000 - now_ms
        return AttemptState(
            attempts=attempts,
            locked=True,
            retry_after_seconds=max(1, int(math.ceil(remaining_ms / 1000.0))),
        )

    async def hit(self, key: str, policy: AttemptPolicy) -> None:
        now_ms = int(self._time_provider().timestamp() * 1000)
        redis = await _get_redis()
        redis_key = self._key(key)
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zadd(redis_key, {f"{now_ms}:{uuid4().hex[:8]}": now_ms})
            pipe.expire(redis_key, max(1, policy.decay_seconds))
            await pipe.execute()

    async def clear(self, key: str) -> None:
        redis = await _get_redis()
        await redis.delete(self._key(key))


def get_rate_limiter(time_provider: Clock | None = None) -> LoginRateLimiter:
    backend = get_settings().auth_rate_limit_backend.lower()
    if backend == "redis":
        return RedisRateLimiter(time_provider=time_provider)
    return DatabaseRateLimiter(time_provider=time_provider)


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None
