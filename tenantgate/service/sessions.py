from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import NotFoundError
from tenantgate.storage.models import Session, User, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(
        self,
        user_id: str,
        *,
        ttl_minutes: int = 60 * 24 * 7,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        impersonated_by: Optional[str] = None,
        two_factor_pending: bool = False,
        active_organization_id: Optional[str] = None,
    ) -> Session: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def list_sessions(self, user_id: str) -> List[Session]: ...

    def revoke_session(self, token: str, *, now: Optional[datetime] = None) -> Optional[Session]: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        before: Optional[datetime] = None,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int: ...

    def mark_session_verified(self, session_id: str) -> None: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    """Result of resolving a presented session token."""

    user: User
    session: Session

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def impersonated_by(self) -> Optional[str]:
        return self.session.impersonated_by


@dataclass
class RevokeResult:
    session: Session
    own_session: bool


class SessionService:
    """Session lifecycle: creation after authentication, resolution, revocation.

    Validity is always read from the store. Nothing here caches whether a
    token is still good, so a revoke or ban takes effect on the next request.
    """

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def create_session(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        two_factor_pending: bool = False,
        impersonated_by: Optional[str] = None,
        ttl_minutes: Optional[int] = None,
    ) -> Session:
        session = self.store.create_session(
            user_id,
            ttl_minutes=ttl_minutes or self.settings.session_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            impersonated_by=impersonated_by,
            two_factor_pending=two_factor_pending,
        )
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            impersonated_by=impersonated_by,
            two_factor_pending=two_factor_pending,
        )
        return session

    def resolve(
        self, token: Optional[str], *, allow_two_factor_pending: bool = False
    ) -> Optional[AuthContext]:
        """Return ``AuthContext`` for a usable token, otherwise ``None``.

        A session is unusable once revoked, past ``expires_at``, still waiting
        on a second factor, or owned by a user who is currently banned.
        """
        if not token:
            return None
        session = self.store.get_session_by_token(token)
        now = utcnow()
        if not session or not session.is_active(now):
            return None
        if session.two_factor_pending and not allow_two_factor_pending:
            return None
        user = self.store.get_user(session.user_id)
        if not user or user.is_banned(now):
            return None
        return AuthContext(user=user, session=session)

    def list_sessions(self, user_id: str) -> List[Session]:
        """Active sessions the user sees for themself, newest first.

        Impersonation sessions are left out; they show up only in the audit view.
        """
        now = utcnow()
        return [
            s
            for s in self.store.list_sessions(user_id)
            if s.is_active(now) and s.impersonated_by is None
        ]

    def list_sessions_for_audit(self, user_id: str) -> List[Session]:
        return self.store.list_sessions(user_id)

    def revoke_session(
        self,
        token: str,
        *,
        owner_id: Optional[str] = None,
        current_token: Optional[str] = None,
    ) -> RevokeResult:
        """Revoke one session by token.

        With ``owner_id`` the token must belong to that user; someone else's
        token reports ``NotFoundError`` exactly like an unknown one.
        """
        if owner_id is not None:
            existing = self.store.get_session_by_token(token)
            if not existing or existing.user_id != owner_id:
                raise NotFoundError("session not found")
        revoked = self.store.revoke_session(token)
        if not revoked:
            raise NotFoundError("session not found")
        own = current_token is not None and token == current_token
        logger.info(
            "session_revoked", user_id=revoked.user_id, session_id=revoked.id, own_session=own
        )
        return RevokeResult(session=revoked, own_session=own)

    def revoke_all_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        """Revoke the sessions that exist now; logins racing this call survive."""
        snapshot_at = utcnow()
        count = self.store.revoke_user_sessions(
            user_id, before=snapshot_at, except_session_id=except_session_id
        )
        logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            count=count,
            kept_session_id=except_session_id,
        )
        return count

    def mark_verified(self, session_id: str) -> None:
        self.store.mark_session_verified(session_id)
