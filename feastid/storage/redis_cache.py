from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from feastid.storage.errors import StoreUnavailable


class RedisCache:
    """Thin Redis wrapper for login, passcode and invite rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Token bucket: refill and consume in one atomic step
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str, scope: Optional[str]) -> str:
        """Hash the subject so user-supplied emails cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        scope_prefix = f"{scope}:" if scope else ""
        return f"rate:{scope_prefix}{digest}"

    @staticmethod
    def _unpack(result, return_remaining: bool) -> Union[bool, Tuple[bool, int, int]]:
        allowed, tokens, reset_after = result
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        scope: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key, scope)
        refill_rate = float(limit) / float(window_seconds)
        try:
            result = await self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )
        except RedisError as exc:
            raise StoreUnavailable("check_rate_limit", exc) from exc
        return self._unpack(result, return_remaining)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable surface as :class:`RedisCache` without binding a
    client to pytest's per-test event loops.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        scope: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key, scope)
        refill_rate = float(limit) / float(window_seconds)
        try:
            result = self._token_bucket(
                keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
            )
        except RedisError as exc:
            raise StoreUnavailable("check_rate_limit", exc) from exc
        return RedisCache._unpack(result, return_remaining)

    async def close(self) -> None:
        self.client.close()
