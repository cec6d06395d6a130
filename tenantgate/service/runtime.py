from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from tenantgate.config import Settings, get_settings, reset_settings_cache
from tenantgate.logging import get_logger
from tenantgate.service.access import AccessControl
from tenantgate.service.auth import AuthService
from tenantgate.service.email import EmailService
from tenantgate.service.identity import IdentityService
from tenantgate.service.invitations import InvitationService
from tenantgate.service.organizations import OrganizationService
from tenantgate.service.sessions import SessionService
from tenantgate.service.two_factor import TwoFactorService, build_lockout_policy
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import utcnow
from tenantgate.storage.postgres import PostgresStore
from tenantgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# buckets are pruned once the in-process map grows past this many keys
LOCAL_RATE_LIMIT_PRUNE_THRESHOLD = 4096


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds and owns the store, cache and services handed to request handlers."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root, secret_key=self.settings.secret_key
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, secret_key=self.settings.secret_key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode; TestClient runs each request on its own loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits, lockouts and one-time tokens; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits, lockouts and "
                    "one-time tokens are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.email = EmailService.from_settings(self.settings)
        self.access = AccessControl(self.store)
        self.sessions = SessionService(self.store, self.settings)
        self.identity = IdentityService(self.store, self.settings, self.access, self.sessions)
        self.lockout = build_lockout_policy(self.settings, self.cache)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            self.identity,
            self.sessions,
            email=self.email,
            lockout=self.lockout,
        )
        self.two_factor = TwoFactorService(
            self.store,
            self.settings,
            self.identity,
            lockout=self.lockout,
            email=self.email,
            tokens=self.auth,
        )
        self.organizations = OrganizationService(self.store, self.settings, self.access)
        self.invitations = InvitationService(
            self.store, self.settings, self.access, email=self.email
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            lockout_enabled=bool(self.settings.login_lockout_max_attempts),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once built.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from freshly read settings (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


def _prune_local_rate_limits(runtime: Runtime, now: datetime) -> None:
    """Drop buckets that are back at capacity; an absent key reads as a full bucket."""
    buckets = runtime._local_rate_limits
    refilled = [key for key, (_, _, full_at) in buckets.items() if full_at <= now]
    for key in refilled:
        del buckets[key]
    if refilled:
        logger.debug("rate_limit_buckets_pruned", pruned=len(refilled))


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit in Redis, or in process memory without it.

    Returns ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set. A non-positive ``limit`` disables the check.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        if len(runtime._local_rate_limits) > LOCAL_RATE_LIMIT_PRUNE_THRESHOLD:
            _prune_local_rate_limits(runtime, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
