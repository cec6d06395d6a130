from __future__ import annotations

import hashlib
import json
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume so concurrent requests cannot overdraw a bucket
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

# KEYS: lockout flag, attempt counter. ARGV: max attempts, lockout seconds.
_FAILED_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""


def _normalize_rate_key(key: str) -> str:
    """Hash rate keys so user-supplied parts cannot collide on delimiters."""
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _lockout_keys(scope: str, subject: str) -> Tuple[str, str]:
    digest = hashlib.sha256(subject.encode()).hexdigest()
    return f"lockout:{scope}:{digest}", f"attempts:{scope}:{digest}"


def _token_key(purpose: str, token: str) -> str:
    return f"token:{purpose}:{hashlib.sha256(token.encode()).hexdigest()}"


class RedisCache:
    """Redis wrapper for rate limits, attempt lockouts and one-time tokens.

    Session validity is not cached here. Every session resolution reads the
    store, so a revoke or ban is visible on the very next request.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._failed_attempt = self.client.register_script(_FAILED_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = _normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after) if reset_after else 0)
        return allowed_bool

    async def is_locked_out(self, scope: str, subject: str) -> bool:
        lockout_key, _ = _lockout_keys(scope, subject)
        return bool(await self.client.exists(lockout_key))

    async def record_failed_attempt(
        self, scope: str, subject: str, *, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        """Count a failure and trip the lockout atomically.

        Returns ``(locked_out, attempts)``; attempts is -1 when already locked.
        """
        lockout_key, attempts_key = _lockout_keys(scope, subject)
        result = await self._failed_attempt(
            keys=[lockout_key, attempts_key], args=[max_attempts, lockout_seconds]
        )
        return (bool(result[0]), int(result[1]))

    async def clear_attempts(self, scope: str, subject: str) -> None:
        _, attempts_key = _lockout_keys(scope, subject)
        await self.client.delete(attempts_key)

    async def set_token(self, purpose: str, token: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(
            _token_key(purpose, token), json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def pop_token(self, purpose: str, token: str) -> Optional[dict]:
        """Consume a one-time token; a second pop of the same token returns None."""
        cached = await self.client.getdel(_token_key(purpose, token))
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable surface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._failed_attempt = self._sync_client.register_script(_FAILED_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = _normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after) if reset_after else 0)
        return allowed_bool

    async def is_locked_out(self, scope: str, subject: str) -> bool:
        lockout_key, _ = _lockout_keys(scope, subject)
        return bool(self._sync_client.exists(lockout_key))

    async def record_failed_attempt(
        self, scope: str, subject: str, *, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        lockout_key, attempts_key = _lockout_keys(scope, subject)
        result = self._failed_attempt(
            keys=[lockout_key, attempts_key], args=[max_attempts, lockout_seconds]
        )
        return (bool(result[0]), int(result[1]))

    async def clear_attempts(self, scope: str, subject: str) -> None:
        _, attempts_key = _lockout_keys(scope, subject)
        self._sync_client.delete(attempts_key)

    async def set_token(self, purpose: str, token: str, payload: dict, ttl_seconds: int) -> None:
        self._sync_client.set(
            _token_key(purpose, token), json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def pop_token(self, purpose: str, token: str) -> Optional[dict]:
        cached = self._sync_client.getdel(_token_key(purpose, token))
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def close(self) -> None:
        self._sync_client.close()
