from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.access import AccessControl, global_rank
from tenantgate.service.errors import (
    AlreadyBannedError,
    BannedError,
    EmailTakenError,
    ForbiddenError,
    LastOwnerError,
    NotFoundError,
    ValidationError,
)
from tenantgate.service.sessions import SessionService
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import GLOBAL_ROLES, Session, User, ensure_aware, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
_PRIVILEGED_ROLES = frozenset({"admin", "superadmin"})
_USER_SORT_FIELDS = frozenset({"created_at", "email", "name"})


class IdentityService:
    """Users, global roles, bans, impersonation and password credentials."""

    def __init__(
        self,
        store,
        settings: Settings,
        access: AccessControl,
        sessions: SessionService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.access = access
        self.sessions = sessions
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # passwords
    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def has_password(self, user_id: str) -> bool:
        return self.store.get_password_record(user_id) is not None

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    # users
    def create_user(
        self,
        email: str,
        name: str = "",
        password: Optional[str] = None,
        *,
        role: str = "user",
        image: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        """Create a user; ``password`` may be omitted for passwordless accounts."""
        if role not in GLOBAL_ROLES:
            raise ValidationError("unknown role", detail={"role": role})
        try:
            user = self.store.create_user(
                email, name, role=role, image=image, email_verified=email_verified
            )
        except ConstraintViolation as exc:
            raise EmailTakenError("email already registered") from exc
        if password:
            self.set_password(user.id, password)
        logger.info("user_created", user_id=user.id, role=role, has_password=bool(password))
        return user

    def admin_create_user(
        self,
        actor_id: str,
        email: str,
        name: str = "",
        password: Optional[str] = None,
        *,
        role: str = "user",
    ) -> User:
        self.access.require(actor_id, {"user": ["create"]})
        actor = self._get(actor_id)
        if role in _PRIVILEGED_ROLES and actor.role != "superadmin":
            raise ForbiddenError(
                "only a superadmin may grant admin roles", detail={"role": role}
            )
        return self.create_user(email, name, password, role=role)

    def get_user(self, user_id: str) -> User:
        return self._get(user_id)

    def _get(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def list_users(
        self,
        actor_id: str,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        sort_by: str = "created_at",
        sort_direction: str = "desc",
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[User], int]:
        self.access.require(actor_id, {"user": ["list"]})
        if sort_by not in _USER_SORT_FIELDS:
            raise ValidationError("unsupported sort field", detail={"sort_by": sort_by})
        if sort_direction not in {"asc", "desc"}:
            raise ValidationError(
                "sort direction must be asc or desc", detail={"sort_direction": sort_direction}
            )
        if role is not None and role not in GLOBAL_ROLES:
            raise ValidationError("unknown role", detail={"role": role})
        return self.store.list_users(
            search=search,
            role=role,
            sort_by=sort_by,
            sort_direction=sort_direction,
            limit=max(1, min(limit, 500)),
            offset=max(0, offset),
        )

    def update_profile(
        self, user_id: str, *, name: Optional[str] = None, image: Optional[str] = None
    ) -> User:
        user = self.store.update_user_profile(user_id, name=name, image=image)
        if not user:
            raise NotFoundError("user not found")
        return user

    def set_global_role(self, actor_id: str, target_id: str, role: str) -> User:
        """Change ``target_id``'s global role.

        Granting, revoking, or touching admin and superadmin roles is reserved
        to superadmins. Anyone may lower their own role. Roles are read live on
        every check, so existing sessions pick the change up without revocation.
        """
        if role not in GLOBAL_ROLES:
            raise ValidationError("unknown role", detail={"role": role})
        actor = self.access.require_user(actor_id)
        target = self._get(target_id)
        if actor.id == target.id:
            if global_rank(role) > global_rank(actor.role):
                raise ForbiddenError("cannot elevate own role")
        else:
            self.access.require(actor_id, {"user": ["set-role"]})
            touches_privileged = role in _PRIVILEGED_ROLES or target.role in _PRIVILEGED_ROLES
            if touches_privileged and actor.role != "superadmin":
                raise ForbiddenError(
                    "only a superadmin may grant or revoke admin roles",
                    detail={"role": role, "target_role": target.role},
                )
        updated = self.store.update_user_role(target.id, role)
        if not updated:
            raise NotFoundError("user not found")
        logger.info(
            "user_role_updated",
            actor_id=actor_id,
            user_id=target.id,
            previous_role=target.role,
            new_role=role,
        )
        return updated

    def _require_manageable(self, actor_id: str, target_id: str, action: str) -> Tuple[User, User]:
        self.access.require(actor_id, {"user": [action]})
        actor = self._get(actor_id)
        target = self._get(target_id)
        if actor.id == target.id:
            raise ForbiddenError(f"cannot {action} yourself")
        if self.access.target_outranks(actor, target):
            raise ForbiddenError(
                f"cannot {action} a user with a higher role",
                detail={"target_role": target.role},
            )
        return actor, target

    def ban_user(
        self,
        actor_id: str,
        target_id: str,
        *,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[User, int]:
        """Ban a user and revoke all of their sessions in the same transaction."""
        _, target = self._require_manageable(actor_id, target_id, "ban")
        now = utcnow()
        expires_at = ensure_aware(expires_at)
        if expires_at is not None and expires_at <= now:
            raise ValidationError("ban expiry must be in the future")
        try:
            user, revoked = self.store.ban_user(
                target.id, reason=reason, expires_at=expires_at, now=now
            )
        except ConstraintViolation as exc:
            if exc.reason == "already_banned":
                raise AlreadyBannedError("user is already banned") from exc
            raise NotFoundError("user not found") from exc
        logger.info(
            "user_banned",
            actor_id=actor_id,
            user_id=target.id,
            expires_at=expires_at.isoformat() if expires_at else None,
            sessions_revoked=revoked,
        )
        return user, revoked

    def unban_user(self, actor_id: str, target_id: str) -> User:
        self.access.require(actor_id, {"user": ["ban"]})
        user = self.store.unban_user(target_id)
        if not user:
            raise NotFoundError("user not found")
        logger.info("user_unbanned", actor_id=actor_id, user_id=target_id)
        return user

    def impersonate(
        self,
        actor_id: str,
        target_id: str,
        *,
        acting_session: Optional[Session] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        """Open a short-lived session owned by ``target_id`` and tagged with the admin."""
        if acting_session is not None and acting_session.impersonated_by:
            raise ForbiddenError("cannot impersonate from an impersonation session")
        _, target = self._require_manageable(actor_id, target_id, "impersonate")
        if target.is_banned():
            raise BannedError("cannot impersonate a banned user")
        session = self.sessions.create_session(
            target.id,
            user_agent=user_agent,
            ip_addr=ip_addr,
            impersonated_by=actor_id,
            ttl_minutes=self.settings.impersonation_session_ttl_minutes,
        )
        logger.warning("impersonation_started", actor_id=actor_id, user_id=target.id)
        return session

    def stop_impersonating(
        self, session: Session, *, admin_token: Optional[str] = None
    ) -> Optional[Session]:
        """End an impersonation session and hand back the admin's own session.

        ``admin_token`` is the session the admin impersonated from. It is
        returned only while it is still usable and belongs to the impersonator;
        otherwise the result is ``None`` and the admin must sign in again.
        """
        if not session.impersonated_by:
            raise ForbiddenError("session is not an impersonation session")
        self.sessions.revoke_session(session.token)
        restored = self.sessions.resolve(admin_token)
        if restored and restored.user_id != session.impersonated_by:
            restored = None
        logger.info(
            "impersonation_stopped",
            actor_id=session.impersonated_by,
            user_id=session.user_id,
            admin_session_restored=restored is not None,
        )
        return restored.session if restored else None

    def _require_session_admin(self, actor_id: str, target_id: str, action: str) -> User:
        self.access.require(actor_id, {"session": [action]})
        actor = self._get(actor_id)
        target = self._get(target_id)
        if self.access.target_outranks(actor, target):
            raise ForbiddenError(
                "cannot manage sessions of a user with a higher role",
                detail={"target_role": target.role},
            )
        return target

    def list_user_sessions(self, actor_id: str, target_id: str) -> List[Session]:
        """Audit view of every session the user has, impersonations included."""
        target = self._require_session_admin(actor_id, target_id, "list")
        return self.sessions.list_sessions_for_audit(target.id)

    def revoke_user_session(self, actor_id: str, target_id: str, token: str) -> Session:
        target = self._require_session_admin(actor_id, target_id, "revoke")
        result = self.sessions.revoke_session(token, owner_id=target.id)
        logger.info(
            "admin_session_revoked",
            actor_id=actor_id,
            user_id=target.id,
            session_id=result.session.id,
        )
        return result.session

    def revoke_user_sessions(self, actor_id: str, target_id: str) -> int:
        target = self._require_session_admin(actor_id, target_id, "revoke")
        count = self.sessions.revoke_all_sessions(target.id)
        logger.info("admin_sessions_revoked", actor_id=actor_id, user_id=target.id, count=count)
        return count

    def remove_user(self, actor_id: str, target_id: str) -> None:
        """Delete a user with their sessions, memberships and credentials."""
        _, target = self._require_manageable(actor_id, target_id, "delete")
        try:
            deleted = self.store.delete_user(target.id)
        except ConstraintViolation as exc:
            raise LastOwnerError(
                "user is the only owner of an organization",
                detail={"organization_ids": exc.detail.get("organization_ids", [])},
            ) from exc
        if not deleted:
            raise NotFoundError("user not found")
        logger.info("user_deleted", actor_id=actor_id, user_id=target.id)
