from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from cryptography.fernet import Fernet, InvalidToken

from tenantgate.logging import get_logger
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    INVITATION_ACCEPTED,
    INVITATION_CANCELED,
    INVITATION_EXPIRED,
    INVITATION_PENDING,
    Invitation,
    Member,
    Organization,
    Session,
    TwoFactorCredential,
    User,
    normalize_email,
    utcnow,
)

_USER_SORT_KEYS = {"created_at", "email", "name"}


class MemoryStore:
    """In-process backing store with JSON persistence under ``fs_root/state``.

    All reads and writes run under one re-entrant lock, so every multi-step
    check-and-set below is atomic with respect to other threads.
    """

    def __init__(self, fs_root: str = "/tmp/tenantgate", *, secret_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.organizations: Dict[str, Organization] = {}
        self.members: Dict[str, Member] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.two_factor: Dict[str, TwoFactorCredential] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = self._build_cipher(secret_key)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("SECRET_KEY")
        if not material:
            raise RuntimeError("SECRET_KEY is required to encrypt two-factor secrets")
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            raise

    # users
    def create_user(
        self,
        email: str,
        name: str = "",
        *,
        role: str = "user",
        image: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "reason": "email_taken"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=role,
                image=image,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.copy(user) if user else None

    def list_users(
        self,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        sort_by: str = "created_at",
        sort_direction: str = "desc",
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[User], int]:
        if sort_by not in _USER_SORT_KEYS:
            sort_by = "created_at"
        needle = search.strip().lower() if search else None
        with self._data_lock:
            results = [
                u
                for u in self.users.values()
                if (not role or u.role == role)
                and (not needle or needle in u.email or needle in (u.name or "").lower())
            ]
            results.sort(
                key=lambda u: getattr(u, sort_by) or "", reverse=sort_direction == "desc"
            )
            total = len(results)
            page = results[offset : offset + limit]
            return [copy.copy(u) for u in page], total

    def _touch_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return copy.copy(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._touch_user(user_id, role=role)

    def update_user_profile(
        self, user_id: str, *, name: Optional[str] = None, image: Optional[str] = None
    ) -> Optional[User]:
        changes = {}
        if name is not None:
            changes["name"] = name
        if image is not None:
            changes["image"] = image
        return self._touch_user(user_id, **changes)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._touch_user(user_id, email_verified=True)

    def ban_user(
        self,
        user_id: str,
        *,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[User, int]:
        """Ban ``user_id`` and revoke all of their live sessions in one step."""
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"reason": "not_found"})
            if user.is_banned(now):
                raise ConstraintViolation("user already banned", {"reason": "already_banned"})
            user.banned = True
            user.ban_reason = reason
            user.ban_expires_at = expires_at
            user.updated_at = now
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.revoked_at is None:
                    sess.revoked_at = now
                    revoked += 1
            self._persist_state()
            return copy.copy(user), revoked

    def unban_user(self, user_id: str) -> Optional[User]:
        return self._touch_user(user_id, banned=False, ban_reason=None, ban_expires_at=None)

    def _sole_owned_organizations(self, user_id: str) -> List[str]:
        owned = [
            m.organization_id
            for m in self.members.values()
            if m.user_id == user_id and m.role == "owner"
        ]
        return [
            org_id
            for org_id in owned
            if sum(
                1
                for m in self.members.values()
                if m.organization_id == org_id and m.role == "owner"
            )
            == 1
        ]

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            sole_owned = self._sole_owned_organizations(user_id)
            if sole_owned:
                raise ConstraintViolation(
                    "user is the last owner of an organization",
                    {"reason": "last_owner", "organization_ids": sole_owned},
                )
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.two_factor.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            for member_id, member in list(self.members.items()):
                if member.user_id == user_id:
                    self.members.pop(member_id, None)
            now = utcnow()
            for invitation in self.invitations.values():
                if invitation.email == user.email and invitation.status == INVITATION_PENDING:
                    invitation.status = INVITATION_CANCELED
                    invitation.updated_at = now
            self._persist_state()
            return True

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
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
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                ttl_minutes,
                user_agent,
                ip_addr,
                impersonated_by=impersonated_by,
                two_factor_pending=two_factor_pending,
            )
            sess.active_organization_id = active_organization_id
            self.sessions[sess.id] = sess
            self._persist_state()
            return copy.copy(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.copy(sess) if sess else None

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.token == token), None)
            return copy.copy(sess) if sess else None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [s for s in self.sessions.values() if s.user_id == user_id]
            owned.sort(key=lambda s: s.created_at, reverse=True)
            return [copy.copy(s) for s in owned]

    def revoke_session(self, token: str, *, now: Optional[datetime] = None) -> Optional[Session]:
        """Mark the session revoked; ``None`` when unknown or already revoked."""
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.token == token), None)
            if not sess or sess.revoked_at is not None:
                return None
            sess.revoked_at = now or utcnow()
            self._persist_state()
            return copy.copy(sess)

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        before: Optional[datetime] = None,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Revoke sessions that existed at ``before``; later logins are untouched."""
        now = now or utcnow()
        cutoff = before or now
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.revoked_at is not None:
                    continue
                if sess.id == except_session_id or sess.created_at > cutoff:
                    continue
                sess.revoked_at = now
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def mark_session_verified(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.two_factor_pending = False
            self._persist_state()

    def set_active_organization(
        self, session_id: str, organization_id: Optional[str]
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.active_organization_id = organization_id
            self._persist_state()
            return copy.copy(sess)

    # organizations
    def create_organization(
        self,
        name: str,
        slug: str,
        owner_user_id: str,
        *,
        logo: Optional[str] = None,
    ) -> Tuple[Organization, Member]:
        with self._data_lock:
            if owner_user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": owner_user_id})
            if any(org.slug == slug for org in self.organizations.values()):
                raise ConstraintViolation(
                    "slug already exists", {"field": "slug", "reason": "slug_taken"}
                )
            org = Organization(id=str(uuid.uuid4()), name=name, slug=slug, logo=logo)
            member = Member(
                id=str(uuid.uuid4()),
                organization_id=org.id,
                user_id=owner_user_id,
                role="owner",
            )
            self.organizations[org.id] = org
            self.members[member.id] = member
            self._persist_state()
            return copy.copy(org), copy.copy(member)

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            return copy.copy(org) if org else None

    def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        with self._data_lock:
            org = next((o for o in self.organizations.values() if o.slug == slug), None)
            return copy.copy(org) if org else None

    def update_organization(
        self, organization_id: str, *, name: Optional[str] = None, logo: Optional[str] = None
    ) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            if not org:
                return None
            if name is not None:
                org.name = name
            if logo is not None:
                org.logo = logo
            self._persist_state()
            return copy.copy(org)

    def list_user_organizations(self, user_id: str) -> List[Tuple[Organization, Member]]:
        with self._data_lock:
            pairs = [
                (self.organizations[m.organization_id], m)
                for m in self.members.values()
                if m.user_id == user_id and m.organization_id in self.organizations
            ]
            pairs.sort(key=lambda pair: pair[1].created_at)
            return [(copy.copy(org), copy.copy(m)) for org, m in pairs]

    def get_member(self, organization_id: str, user_id: str) -> Optional[Member]:
        with self._data_lock:
            member = next(
                (
                    m
                    for m in self.members.values()
                    if m.organization_id == organization_id and m.user_id == user_id
                ),
                None,
            )
            return copy.copy(member) if member else None

    def get_member_by_id(self, member_id: str) -> Optional[Member]:
        with self._data_lock:
            member = self.members.get(member_id)
            return copy.copy(member) if member else None

    def list_members(self, organization_id: str) -> List[Member]:
        with self._data_lock:
            rows = [m for m in self.members.values() if m.organization_id == organization_id]
            rows.sort(key=lambda m: m.created_at)
            return [copy.copy(m) for m in rows]

    def _owner_count(self, organization_id: str) -> int:
        return sum(
            1
            for m in self.members.values()
            if m.organization_id == organization_id and m.role == "owner"
        )

    def remove_member(self, organization_id: str, member_id: str) -> Member:
        """Delete a membership unless it is the organization's last owner."""
        with self._data_lock:
            member = self.members.get(member_id)
            if not member or member.organization_id != organization_id:
                raise ConstraintViolation("member not found", {"reason": "not_found"})
            if member.role == "owner" and self._owner_count(organization_id) <= 1:
                raise ConstraintViolation(
                    "organization must keep an owner", {"reason": "last_owner"}
                )
            self.members.pop(member_id, None)
            for sess in self.sessions.values():
                if (
                    sess.user_id == member.user_id
                    and sess.active_organization_id == organization_id
                ):
                    sess.active_organization_id = None
            self._persist_state()
            return copy.copy(member)

    def update_member_role(self, organization_id: str, member_id: str, role: str) -> Member:
        with self._data_lock:
            member = self.members.get(member_id)
            if not member or member.organization_id != organization_id:
                raise ConstraintViolation("member not found", {"reason": "not_found"})
            if (
                member.role == "owner"
                and role != "owner"
                and self._owner_count(organization_id) <= 1
            ):
                raise ConstraintViolation(
                    "organization must keep an owner", {"reason": "last_owner"}
                )
            member.role = role
            self._persist_state()
            return copy.copy(member)

    # invitations
    def _expire_past_due(self, now: datetime, organization_id: Optional[str] = None) -> int:
        expired = 0
        for invitation in self.invitations.values():
            if organization_id and invitation.organization_id != organization_id:
                continue
            if invitation.status == INVITATION_PENDING and invitation.is_past_due(now):
                invitation.status = INVITATION_EXPIRED
                invitation.updated_at = now
                expired += 1
        return expired

    def create_invitation(
        self,
        organization_id: str,
        email: str,
        role: str,
        inviter_id: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> Invitation:
        now = now or utcnow()
        normalized = normalize_email(email)
        with self._data_lock:
            if organization_id not in self.organizations:
                raise ConstraintViolation("organization not found", {"reason": "not_found"})
            self._expire_past_due(now, organization_id)
            invitee = next((u for u in self.users.values() if u.email == normalized), None)
            if invitee and any(
                m.organization_id == organization_id and m.user_id == invitee.id
                for m in self.members.values()
            ):
                raise ConstraintViolation("already a member", {"reason": "already_member"})
            if any(
                inv.organization_id == organization_id
                and inv.email == normalized
                and inv.status == INVITATION_PENDING
                for inv in self.invitations.values()
            ):
                raise ConstraintViolation(
                    "pending invitation exists", {"reason": "already_invited"}
                )
            invitation = Invitation(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                email=normalized,
                role=role,
                inviter_id=inviter_id,
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
            self.invitations[invitation.id] = invitation
            self._persist_state()
            return copy.copy(invitation)

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            return copy.copy(invitation) if invitation else None

    def list_invitations(self, organization_id: str) -> List[Invitation]:
        with self._data_lock:
            rows = [
                inv for inv in self.invitations.values() if inv.organization_id == organization_id
            ]
            rows.sort(key=lambda inv: inv.created_at, reverse=True)
            return [copy.copy(inv) for inv in rows]

    def list_invitations_for_email(
        self, email: str, *, statuses: Sequence[str] = (INVITATION_PENDING,)
    ) -> List[Invitation]:
        normalized = normalize_email(email)
        with self._data_lock:
            rows = [
                inv
                for inv in self.invitations.values()
                if inv.email == normalized and inv.status in statuses
            ]
            rows.sort(key=lambda inv: inv.created_at, reverse=True)
            return [copy.copy(inv) for inv in rows]

    def transition_invitation(
        self,
        invitation_id: str,
        expected_status: str,
        new_status: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Invitation]:
        """Compare-and-set the status; ``None`` when the current status differs."""
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation or invitation.status != expected_status:
                return None
            invitation.status = new_status
            invitation.updated_at = now or utcnow()
            self._persist_state()
            return copy.copy(invitation)

    def accept_invitation(
        self, invitation_id: str, user_id: str, *, now: Optional[datetime] = None
    ) -> Tuple[Invitation, Member]:
        now = now or utcnow()
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation:
                raise ConstraintViolation("invitation not found", {"reason": "not_found"})
            if invitation.status != INVITATION_PENDING:
                raise ConstraintViolation(
                    "invitation is not pending",
                    {"reason": "invalid_state", "status": invitation.status},
                )
            if invitation.is_past_due(now):
                invitation.status = INVITATION_EXPIRED
                invitation.updated_at = now
                self._persist_state()
                raise ConstraintViolation("invitation expired", {"reason": "expired"})
            if any(
                m.organization_id == invitation.organization_id and m.user_id == user_id
                for m in self.members.values()
            ):
                raise ConstraintViolation("already a member", {"reason": "already_member"})
            member = Member(
                id=str(uuid.uuid4()),
                organization_id=invitation.organization_id,
                user_id=user_id,
                role=invitation.role,
                created_at=now,
            )
            self.members[member.id] = member
            invitation.status = INVITATION_ACCEPTED
            invitation.updated_at = now
            self._persist_state()
            return copy.copy(invitation), copy.copy(member)

    def expire_invitations(self, *, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            expired = self._expire_past_due(now or utcnow())
            if expired:
                self._persist_state()
            return expired

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]:
        with self._data_lock:
            cred = self.two_factor.get(user_id)
            if not cred:
                return None
            plain = copy.copy(cred)
            plain.secret = self._decrypt_secret(cred.secret)
            return plain

    def save_two_factor(self, credential: TwoFactorCredential) -> TwoFactorCredential:
        with self._data_lock:
            user = self.users.get(credential.user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for two-factor", {"user_id": credential.user_id}
                )
            stored = copy.copy(credential)
            stored.secret = self._encrypt_secret(credential.secret)
            self.two_factor[credential.user_id] = stored
            user.two_factor_enabled = credential.enabled
            self._persist_state()
            return copy.copy(credential)

    def delete_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop(user_id, None)
            user = self.users.get(user_id)
            if user:
                user.two_factor_enabled = False
            self._persist_state()
            return removed is not None

    def register_two_factor_failure(self, user_id: str, max_failures: int) -> Tuple[int, bool]:
        """Count a failed provisioning code; drop the pending secret at ``max_failures``."""
        with self._data_lock:
            cred = self.two_factor.get(user_id)
            if not cred or cred.enabled:
                return 0, False
            cred.failed_attempts += 1
            attempts = cred.failed_attempts
            invalidated = attempts >= max_failures
            if invalidated:
                self.two_factor.pop(user_id, None)
            self._persist_state()
            return attempts, invalidated

    def mark_two_factor_verified(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            cred = self.two_factor.get(user_id)
            if not cred:
                return
            cred.last_verified_at = at or utcnow()
            self._persist_state()

    def ping(self) -> bool:
        return self._state_path().parent.exists()

    def close(self) -> None:
        return None

    # persistence
    @staticmethod
    def _serialize(record) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(record_cls, data: dict, datetime_fields: Sequence[str]):
        values = dict(data)
        for key in datetime_fields:
            raw = values.get(key)
            if isinstance(raw, str):
                values[key] = datetime.fromisoformat(raw)
        return record_cls(**values)

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "organizations": [self._serialize(o) for o in self.organizations.values()],
            "members": [self._serialize(m) for m in self.members.values()],
            "invitations": [self._serialize(i) for i in self.invitations.values()],
            "two_factor": [self._serialize(c) for c in self.two_factor.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize(User, u, ("ban_expires_at", "created_at", "updated_at"))
            for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize(Session, s, ("created_at", "expires_at", "revoked_at"))
            for s in data.get("sessions", [])
        }
        self.organizations = {
            o["id"]: self._deserialize(Organization, o, ("created_at",))
            for o in data.get("organizations", [])
        }
        self.members = {
            m["id"]: self._deserialize(Member, m, ("created_at",))
            for m in data.get("members", [])
        }
        self.invitations = {
            i["id"]: self._deserialize(Invitation, i, ("expires_at", "created_at", "updated_at"))
            for i in data.get("invitations", [])
        }
        self.two_factor = {
            c["user_id"]: self._deserialize(
                TwoFactorCredential, c, ("pending_since", "last_verified_at", "created_at")
            )
            for c in data.get("two_factor", [])
        }
        return True
