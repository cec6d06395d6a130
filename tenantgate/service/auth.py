from __future__ import annotations

import asyncio
import hashlib
import secrets
import threading
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.email import EmailService
from tenantgate.service.errors import (
    BannedError,
    ExpiredError,
    ForbiddenError,
    InvalidPasswordError,
    RateLimitedError,
    ValidationError,
)
from tenantgate.service.identity import IdentityService
from tenantgate.service.sessions import SessionService
from tenantgate.service.two_factor import LockoutPolicy
from tenantgate.storage.models import Session, User, normalize_email, utcnow
from tenantgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8

_RESET_PURPOSE = "reset"
_VERIFY_PURPOSE = "verify"


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


class AuthService:
    """Credential flows that end in a session: sign-up, sign-in, sign-out.

    Also issues the single-use email verification and password reset tokens.
    Tokens live in Redis when it is configured and in process memory
    otherwise.
    """

    def __init__(
        self,
        store,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        identity: IdentityService,
        sessions: SessionService,
        *,
        email: Optional[EmailService] = None,
        lockout: Optional[LockoutPolicy] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.identity = identity
        self.sessions = sessions
        self.email = email
        self.lockout = lockout or LockoutPolicy()
        self._state_lock = threading.Lock()
        self._tokens: dict[Tuple[str, str], Tuple[dict, datetime]] = {}

    @staticmethod
    def _check_password_strength(password: str) -> None:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                "password too short", detail={"min_length": MIN_PASSWORD_LENGTH}
            )

    async def sign_up(
        self,
        email: str,
        password: str,
        name: str = "",
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[User, Session]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signups are disabled")
        self._check_password_strength(password)
        user = self.identity.create_user(email, name, password)
        session = self.sessions.create_session(user.id, user_agent=user_agent, ip_addr=ip_addr)
        logger.info("signup_completed", user_id=user.id)
        return user, session

    async def sign_in(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[User, Session]:
        """Verify the password and open a session.

        A user with two-factor enabled gets a session marked pending; it cannot
        be resolved until ``TwoFactorService.verify`` succeeds against it.
        """
        subject = _email_hash(normalize_email(email))
        if await self.lockout.is_locked("login", subject):
            raise RateLimitedError("too many failed sign-in attempts; try again later")
        user = self.store.get_user_by_email(email)
        if not user or not self.identity.verify_password(user.id, password):
            await self.lockout.register_failure("login", subject)
            logger.info("signin_failed", email_hash=subject)
            raise InvalidPasswordError("invalid email or password")
        await self.lockout.reset("login", subject)
        if user.is_banned():
            logger.info("signin_banned", user_id=user.id)
            raise BannedError(
                "user is banned",
                detail={
                    "ban_reason": user.ban_reason,
                    "ban_expires_at": user.ban_expires_at.isoformat()
                    if user.ban_expires_at
                    else None,
                },
            )
        session = self.sessions.create_session(
            user.id,
            user_agent=user_agent,
            ip_addr=ip_addr,
            two_factor_pending=user.two_factor_enabled,
        )
        return user, session

    def sign_out(self, token: str) -> None:
        self.sessions.revoke_session(token)

    def revoke_other_sessions(self, user_id: str, current_session: Session) -> int:
        return self.sessions.revoke_all_sessions(user_id, except_session_id=current_session.id)

    def change_password(
        self,
        user_id: str,
        current_session: Session,
        current_password: str,
        new_password: str,
        *,
        revoke_other_sessions: bool = False,
    ) -> int:
        """Replace the password after re-checking the current one.

        Returns how many other sessions were revoked; the current session
        always survives.
        """
        self._check_password_strength(new_password)
        if not self.identity.verify_password(user_id, current_password):
            raise InvalidPasswordError("current password is incorrect")
        self.identity.set_password(user_id, new_password)
        revoked = 0
        if revoke_other_sessions:
            revoked = self.sessions.revoke_all_sessions(
                user_id, except_session_id=current_session.id
            )
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    # single-use tokens
    async def put_token(self, purpose: str, key: str, payload: dict, ttl: timedelta) -> None:
        """Store ``payload`` under ``key`` until it is consumed or ``ttl`` passes."""
        if self.cache:
            await self.cache.set_token(purpose, key, payload, int(ttl.total_seconds()))
        else:
            with self._state_lock:
                self._tokens[(purpose, key)] = (payload, utcnow() + ttl)

    async def _issue_token(self, purpose: str, payload: dict, ttl: timedelta) -> str:
        token = secrets.token_urlsafe(32)
        await self.put_token(purpose, token, payload, ttl)
        return token

    async def consume_token(self, purpose: str, token: str) -> Optional[dict]:
        if not token:
            return None
        if self.cache:
            return await self.cache.pop_token(purpose, token)
        with self._state_lock:
            stored = self._tokens.pop((purpose, token), None)
            now = utcnow()
            for key in [k for k, (_, exp) in self._tokens.items() if exp <= now]:
                self._tokens.pop(key, None)
        if not stored:
            return None
        payload, expires_at = stored
        if expires_at <= utcnow():
            return None
        return payload

    async def request_email_verification(self, user_id: str) -> str:
        user = self.identity.get_user(user_id)
        ttl_hours = self.settings.email_verification_ttl_hours
        token = await self._issue_token(
            _VERIFY_PURPOSE, {"user_id": user.id}, timedelta(hours=ttl_hours)
        )
        if self.email:
            await asyncio.to_thread(
                self.email.send_email_verification, user.email, token, ttl_hours=ttl_hours
            )
        logger.info("email_verification_requested", user_id=user.id)
        return token

    async def complete_email_verification(self, token: str) -> User:
        payload = await self.consume_token(_VERIFY_PURPOSE, token)
        if not payload:
            logger.warning("email_verification_invalid_token", token_prefix=(token or "")[:8])
            raise ExpiredError("verification link is invalid or expired")
        user = self.store.mark_email_verified(payload["user_id"])
        if not user:
            raise ExpiredError("verification link is invalid or expired")
        logger.info("email_verified", user_id=user.id)
        return user

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token when the address is registered.

        Callers report success either way so the endpoint does not reveal
        which addresses have accounts.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            logger.info("password_reset_unknown_email", email_hash=_email_hash(normalize_email(email)))
            return None
        ttl_minutes = self.settings.password_reset_ttl_minutes
        token = await self._issue_token(
            _RESET_PURPOSE, {"user_id": user.id}, timedelta(minutes=ttl_minutes)
        )
        if self.email:
            await asyncio.to_thread(
                self.email.send_password_reset, user.email, token, ttl_minutes=ttl_minutes
            )
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> int:
        """Replace the password and revoke every existing session; returns the count."""
        self._check_password_strength(new_password)
        payload = await self.consume_token(_RESET_PURPOSE, token)
        if not payload:
            logger.warning("password_reset_invalid_token", token_prefix=(token or "")[:8])
            raise ExpiredError("reset link is invalid or expired")
        user = self.store.get_user(payload["user_id"])
        if not user:
            raise ExpiredError("reset link is invalid or expired")
        self.identity.set_password(user.id, new_password)
        revoked = self.sessions.revoke_all_sessions(user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return revoked
