from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

GLOBAL_ROLES = ("user", "admin", "superadmin")
ORGANIZATION_ROLES = ("member", "admin", "owner")
INVITABLE_ROLES = ("member", "admin")

INVITATION_PENDING = "pending"
INVITATION_ACCEPTED = "accepted"
INVITATION_REJECTED = "rejected"
INVITATION_CANCELED = "canceled"
INVITATION_EXPIRED = "expired"
TERMINAL_INVITATION_STATUSES = frozenset(
    {INVITATION_ACCEPTED, INVITATION_REJECTED, INVITATION_CANCELED, INVITATION_EXPIRED}
)

TWO_FACTOR_DISABLED = "disabled"
TWO_FACTOR_PENDING = "pending_verification"
TWO_FACTOR_ENABLED = "enabled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps read back from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    email_verified: bool = False
    image: Optional[str] = None
    role: str = "user"
    banned: bool = False
    ban_reason: Optional[str] = None
    ban_expires_at: Optional[datetime] = None
    two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_banned(self, now: Optional[datetime] = None) -> bool:
        """Effective ban state; a ban whose expiry has passed no longer applies."""
        if not self.banned:
            return False
        if self.ban_expires_at is None:
            return True
        return (now or utcnow()) < self.ban_expires_at


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    impersonated_by: Optional[str] = None
    active_organization_id: Optional[str] = None
    two_factor_pending: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24 * 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        impersonated_by: str | None = None,
        two_factor_pending: bool = False,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=secrets.token_urlsafe(32),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            impersonated_by=impersonated_by,
            two_factor_pending=two_factor_pending,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.revoked_at is not None:
            return False
        return (now or utcnow()) < self.expires_at


@dataclass
class Organization:
    id: str
    name: str
    slug: str
    logo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Member:
    id: str
    organization_id: str
    user_id: str
    role: str = "member"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Invitation:
    id: str
    organization_id: str
    email: str
    role: str
    inviter_id: str
    expires_at: datetime
    status: str = INVITATION_PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_past_due(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INVITATION_STATUSES


@dataclass
class TwoFactorCredential:
    user_id: str
    secret: str
    enabled: bool = False
    pending_since: Optional[datetime] = None
    failed_attempts: int = 0
    last_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def state(self) -> str:
        if self.enabled:
            return TWO_FACTOR_ENABLED
        if self.pending_since is not None:
            return TWO_FACTOR_PENDING
        return TWO_FACTOR_DISABLED
