from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import os
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union
from urllib.parse import quote

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import (
    ExpiredError,
    ForbiddenError,
    InvalidCodeError,
    InvalidPasswordError,
    InvalidStateError,
    NotFoundError,
    RateLimitedError,
    TwoFactorRequiredError,
)
from tenantgate.service.identity import IdentityService
from tenantgate.storage.models import (
    TWO_FACTOR_DISABLED,
    TWO_FACTOR_ENABLED,
    TWO_FACTOR_PENDING,
    TwoFactorCredential,
    utcnow,
)
from tenantgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
OTP_PURPOSE = "two_factor_otp"
OTP_MAX_ATTEMPTS = 3


def generate_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string on a bad secret."""
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def _otp_digest(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    interval: int = TOTP_INTERVAL,
    window: int = 1,
) -> bool:
    """Accept the current step and ``window`` adjacent steps for clock skew."""
    if not code or not code.isdigit():
        return False
    now = time.time() if at is None else at
    for step in range(-window, window + 1):
        generated = generate_totp(secret, now + step * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


class LockoutPolicy:
    """Extension point for throttling repeated credential failures.

    The default policy never locks anyone out. Deployments opt in through
    ``LOGIN_LOCKOUT_MAX_ATTEMPTS``; see ``build_lockout_policy``.
    """

    async def is_locked(self, scope: str, subject: str) -> bool:
        return False

    async def register_failure(self, scope: str, subject: str) -> bool:
        """Record a failure; returns True when the subject is now locked out."""
        return False

    async def reset(self, scope: str, subject: str) -> None:
        return None


class AttemptLockout(LockoutPolicy):
    """Fixed-threshold lockout, kept in Redis or, without it, in process memory."""

    def __init__(
        self,
        max_attempts: int,
        lockout_seconds: int,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.cache = cache
        self._state_lock = threading.Lock()
        self._attempts: dict[tuple[str, str], tuple[int, datetime]] = {}
        self._lockouts: dict[tuple[str, str], datetime] = {}

    async def is_locked(self, scope: str, subject: str) -> bool:
        if self.cache:
            return await self.cache.is_locked_out(scope, subject)
        now = utcnow()
        with self._state_lock:
            locked_until = self._lockouts.get((scope, subject))
            if locked_until and locked_until > now:
                return True
            self._lockouts.pop((scope, subject), None)
            return False

    async def register_failure(self, scope: str, subject: str) -> bool:
        if self.cache:
            locked, attempts = await self.cache.record_failed_attempt(
                scope,
                subject,
                max_attempts=self.max_attempts,
                lockout_seconds=self.lockout_seconds,
            )
            if locked and attempts >= 0:
                logger.warning("lockout_triggered", scope=scope, attempts=attempts)
            return locked
        now = utcnow()
        window = timedelta(seconds=self.lockout_seconds)
        key = (scope, subject)
        with self._state_lock:
            count, window_start = self._attempts.get(key, (0, now))
            if now - window_start >= window:
                count, window_start = 0, now
            count += 1
            if count >= self.max_attempts:
                self._lockouts[key] = now + window
                self._attempts.pop(key, None)
                logger.warning("lockout_triggered", scope=scope, attempts=count)
                return True
            self._attempts[key] = (count, window_start)
            return False

    async def reset(self, scope: str, subject: str) -> None:
        if self.cache:
            await self.cache.clear_attempts(scope, subject)
            return
        with self._state_lock:
            self._attempts.pop((scope, subject), None)


def build_lockout_policy(
    settings: Settings, cache: Optional[Union[RedisCache, SyncRedisCache]]
) -> LockoutPolicy:
    if not settings.login_lockout_max_attempts:
        return LockoutPolicy()
    return AttemptLockout(
        settings.login_lockout_max_attempts, settings.login_lockout_seconds, cache
    )


@dataclass
class TwoFactorStatus:
    state: str
    enabled: bool
    pending_expires_at: Optional[datetime] = None


class TwoFactorService:
    """TOTP enrollment state machine: disabled -> pending_verification -> enabled.

    A provisioning attempt lapses after the configured timeout and is
    discarded after the configured number of consecutive wrong codes, in
    both cases returning the user to ``disabled``.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        identity: IdentityService,
        *,
        lockout: Optional[LockoutPolicy] = None,
        email=None,
        tokens=None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.identity = identity
        self.lockout = lockout or LockoutPolicy()
        self.email = email
        # single-use token store for emailed codes (put_token/consume_token)
        self.tokens = tokens

    @property
    def _provisioning_window(self) -> timedelta:
        return timedelta(minutes=self.settings.two_factor_provisioning_timeout_minutes)

    def _current(self, user_id: str, now: Optional[datetime] = None) -> Optional[TwoFactorCredential]:
        """Load the credential, discarding a provisioning attempt that timed out."""
        cred = self.store.get_two_factor(user_id)
        if not cred or cred.enabled:
            return cred
        if cred.pending_since is None:
            return None
        if (now or utcnow()) - cred.pending_since > self._provisioning_window:
            self.store.delete_two_factor(user_id)
            logger.info("two_factor_provisioning_expired", user_id=user_id)
            return None
        return cred

    def status(self, user_id: str) -> TwoFactorStatus:
        cred = self._current(user_id)
        if not cred:
            return TwoFactorStatus(state=TWO_FACTOR_DISABLED, enabled=False)
        if cred.enabled:
            return TwoFactorStatus(state=TWO_FACTOR_ENABLED, enabled=True)
        return TwoFactorStatus(
            state=TWO_FACTOR_PENDING,
            enabled=False,
            pending_expires_at=cred.pending_since + self._provisioning_window,
        )

    def _provisioning_uri(self, email: str, secret: str) -> str:
        issuer = self.settings.two_factor_issuer
        label = quote(f"{issuer}:{email}")
        return (
            f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
            f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
        )

    def begin_enable(self, user_id: str, password: str) -> dict:
        """Re-confirm the password and issue a fresh provisioning URI.

        Starting over while already pending replaces the earlier secret.
        """
        user = self.identity.get_user(user_id)
        cred = self._current(user_id)
        if cred and cred.enabled:
            raise ForbiddenError("two-factor is already enabled")
        if not self.identity.has_password(user_id):
            raise ForbiddenError("a password is required to enable two-factor")
        if not self.identity.verify_password(user_id, password):
            raise InvalidPasswordError("password is incorrect")
        now = utcnow()
        secret = generate_secret()
        self.store.save_two_factor(
            TwoFactorCredential(user_id=user_id, secret=secret, pending_since=now, created_at=now)
        )
        logger.info("two_factor_provisioning_started", user_id=user_id)
        return {
            "totp_uri": self._provisioning_uri(user.email, secret),
            "expires_at": now + self._provisioning_window,
        }

    def verify_enable(self, user_id: str, code: str, *, session_id: Optional[str] = None) -> None:
        cred = self._current(user_id)
        if not cred or cred.enabled:
            raise InvalidStateError(
                "no two-factor provisioning in progress", detail={"state": self.status(user_id).state}
            )
        if not verify_totp(cred.secret, code):
            attempts, invalidated = self.store.register_two_factor_failure(
                user_id, self.settings.two_factor_max_provisioning_failures
            )
            logger.warning(
                "two_factor_provisioning_code_invalid",
                user_id=user_id,
                attempts=attempts,
                invalidated=invalidated,
            )
            raise InvalidCodeError(
                "verification code is incorrect",
                detail={"attempts": attempts, "provisioning_invalidated": invalidated},
            )
        now = utcnow()
        self.store.save_two_factor(
            TwoFactorCredential(
                user_id=user_id,
                secret=cred.secret,
                enabled=True,
                pending_since=None,
                failed_attempts=0,
                last_verified_at=now,
                created_at=cred.created_at,
            )
        )
        if session_id:
            self.store.mark_session_verified(session_id)
        logger.info("two_factor_enabled", user_id=user_id)

    def notify_enabled(self, user_id: str) -> bool:
        """Tell the user by email that two-factor was turned on. Blocks on SMTP."""
        if not self.email:
            return False
        return self.email.send_two_factor_enabled(self.identity.get_user(user_id).email)

    def disable(self, user_id: str, password: str) -> None:
        cred = self._current(user_id)
        if not cred or not cred.enabled:
            raise ForbiddenError("two-factor is not enabled")
        if not self.identity.verify_password(user_id, password):
            raise InvalidPasswordError("password is incorrect")
        self.store.delete_two_factor(user_id)
        logger.info("two_factor_disabled", user_id=user_id)

    def get_totp_uri(self, user_id: str, password: str) -> dict:
        """Re-issue the provisioning URI of an enabled credential, e.g. for a new device."""
        cred = self._current(user_id)
        if not cred or not cred.enabled:
            raise ForbiddenError("two-factor is not enabled")
        if not self.identity.verify_password(user_id, password):
            raise InvalidPasswordError("password is incorrect")
        user = self.identity.get_user(user_id)
        logger.info("two_factor_uri_viewed", user_id=user_id)
        return {"totp_uri": self._provisioning_uri(user.email, cred.secret)}

    async def _mark_verified(self, user_id: str, session_id: Optional[str]) -> None:
        await self.lockout.reset("two_factor", user_id)
        self.store.mark_two_factor_verified(user_id, utcnow())
        if session_id:
            self.store.mark_session_verified(session_id)

    async def verify(self, user_id: str, code: str, *, session_id: Optional[str] = None) -> None:
        """Check a code for sign-in or step-up; never changes the enabled flag."""
        cred = self.store.get_two_factor(user_id)
        if not cred or not cred.enabled:
            raise InvalidStateError("two-factor is not enabled")
        if await self.lockout.is_locked("two_factor", user_id):
            raise RateLimitedError("too many failed codes; try again later")
        if not verify_totp(cred.secret, code):
            locked = await self.lockout.register_failure("two_factor", user_id)
            logger.warning("two_factor_code_invalid", user_id=user_id, locked=locked)
            raise InvalidCodeError("verification code is incorrect")
        await self._mark_verified(user_id, session_id)

    async def send_otp(self, user_id: str) -> str:
        """Email a one-time code usable in place of the authenticator app.

        A new code replaces any earlier one. The code is returned to the
        caller for delivery bookkeeping and must never be echoed over HTTP.
        """
        cred = self.store.get_two_factor(user_id)
        if not cred or not cred.enabled:
            raise InvalidStateError("two-factor is not enabled")
        if self.tokens is None:
            raise InvalidStateError("email codes are not available")
        user = self.identity.get_user(user_id)
        ttl_minutes = self.settings.two_factor_otp_ttl_minutes
        ttl = timedelta(minutes=ttl_minutes)
        code = f"{secrets.randbelow(10**TOTP_DIGITS):0{TOTP_DIGITS}d}"
        payload = {
            "digest": _otp_digest(code),
            "attempts": 0,
            "expires_at": (utcnow() + ttl).isoformat(),
        }
        await self.tokens.put_token(OTP_PURPOSE, user_id, payload, ttl)
        if self.email:
            await asyncio.to_thread(
                self.email.send_two_factor_otp, user.email, code, ttl_minutes=ttl_minutes
            )
        logger.info("two_factor_otp_sent", user_id=user_id)
        return code

    async def verify_otp(self, user_id: str, code: str, *, session_id: Optional[str] = None) -> None:
        """Check an emailed code. Each code works once and survives a few wrong guesses."""
        cred = self.store.get_two_factor(user_id)
        if not cred or not cred.enabled:
            raise InvalidStateError("two-factor is not enabled")
        if self.tokens is None:
            raise InvalidStateError("email codes are not available")
        if await self.lockout.is_locked("two_factor", user_id):
            raise RateLimitedError("too many failed codes; try again later")
        payload = await self.tokens.consume_token(OTP_PURPOSE, user_id)
        if not payload:
            raise ExpiredError("no active email code; request a new one")
        if not hmac.compare_digest(payload["digest"], _otp_digest(code or "")):
            attempts = payload.get("attempts", 0) + 1
            remaining = datetime.fromisoformat(payload["expires_at"]) - utcnow()
            if attempts < OTP_MAX_ATTEMPTS and remaining.total_seconds() >= 1:
                await self.tokens.put_token(
                    OTP_PURPOSE, user_id, {**payload, "attempts": attempts}, remaining
                )
            locked = await self.lockout.register_failure("two_factor", user_id)
            logger.warning(
                "two_factor_otp_invalid", user_id=user_id, attempts=attempts, locked=locked
            )
            raise InvalidCodeError(
                "verification code is incorrect",
                detail={"attempts": attempts, "code_invalidated": attempts >= OTP_MAX_ATTEMPTS},
            )
        await self._mark_verified(user_id, session_id)
        logger.info("two_factor_otp_verified", user_id=user_id)

    async def require_step_up(self, user_id: str, code: Optional[str] = None) -> None:
        """Gate a high-risk action on a fresh second factor.

        Passes immediately when two-factor is off. Otherwise a supplied code is
        verified, or a verification inside the step-up window is accepted.
        """
        cred = self.store.get_two_factor(user_id)
        if not cred or not cred.enabled:
            return
        if code:
            await self.verify(user_id, code)
            return
        window = timedelta(minutes=self.settings.two_factor_step_up_window_minutes)
        if cred.last_verified_at and utcnow() - cred.last_verified_at <= window:
            return
        raise TwoFactorRequiredError("recent two-factor verification required")

    def reset_for_user(self, user_id: str) -> None:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found")
        self.store.delete_two_factor(user_id)
