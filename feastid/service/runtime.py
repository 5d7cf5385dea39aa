from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from feastid.config import Environment, get_settings, reset_settings_cache
from feastid.logging import get_logger
from feastid.service.auth import AuthService
from feastid.service.authorization import AuthorizationEngine
from feastid.service.email import EmailService
from feastid.service.gate import RequestGate
from feastid.service.magic_link import MagicLinkEngine
from feastid.service.otp import OTPEngine
from feastid.service.passwords import PasswordManager
from feastid.service.sessions import SessionManager
from feastid.storage.errors import StoreUnavailable
from feastid.storage.memory import MemoryStore
from feastid.storage.postgres import PostgresStore
from feastid.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    lock_timeout_seconds=self.settings.store_timeout_seconds,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except (StoreUnavailable, OSError) as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to per-test event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:  # redis raises a wide family on connect
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.passwords = PasswordManager(
            min_length=self.settings.password_min_length,
            memory_cost=self.settings.argon2_memory_cost,
            time_cost=self.settings.argon2_time_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.otp = OTPEngine(self.store, self.settings)
        self.magic_links = MagicLinkEngine(self.store, self.settings)
        self.sessions = SessionManager(self.store, self.settings)
        self.authz = AuthorizationEngine(
            self.store, super_admin_role=self.settings.super_admin_role
        )
        self.gate = RequestGate(self.sessions, self.authz)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            log_bodies=self.settings.environment != Environment.PRODUCTION,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            passwords=self.passwords,
            otp=self.otp,
            magic_links=self.magic_links,
            sessions=self.sessions,
            authz=self.authz,
            email=self.email,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime, int]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            environment=self.settings.environment.value,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            secure_cookies=self.settings.secure_cookies,
        )

    async def close(self) -> None:
        """Release the Redis client and the database pool."""
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


LOCAL_RATE_LIMIT_SWEEP_SIZE = 10_000


def _evict_idle_buckets(
    buckets: Dict[str, Tuple[float, datetime, int]], now: datetime
) -> int:
    """Drop buckets idle for a full window; they would read as full anyway."""
    idle = [
        key
        for key, (_, last_ts, window) in buckets.items()
        if (now - last_ts).total_seconds() >= window
    ]
    for key in idle:
        del buckets[key]
    if idle:
        logger.debug("rate_limit_buckets_evicted", evicted=len(idle), remaining=len(buckets))
    return len(idle)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit in Redis, or in-process when Redis is disabled."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        buckets = runtime._local_rate_limits
        tokens, last_ts, _ = buckets.get(key, (float(limit), now, window_seconds))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        buckets[key] = (tokens, now, window_seconds)
        if len(buckets) > LOCAL_RATE_LIMIT_SWEEP_SIZE:
            _evict_idle_buckets(buckets, now)
        reset_seconds = (
            int(timedelta(seconds=(cost - tokens) / refill_rate).total_seconds()) + 1
            if not allowed
            else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
