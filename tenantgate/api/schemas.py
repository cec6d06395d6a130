from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Maximum requested resources in one permission check
MAX_PERMISSION_RESOURCES = 16

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credential",
    "forbidden",
    "not_found",
    "invalid_state",
    "already_exists",
    "last_owner",
    "expired",
    "rate_limited",
    "validation_error",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is the stable error kind."""

    code: str = Field(..., description="Stable error kind")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _normalize_unicode(value).strip()
    if len(normalized) > 128:
        raise ValueError("name must be at most 128 characters")
    return normalized


# credentials and sessions
class SignUpRequest(BaseModel):
    email: str
    password: str
    name: str = Field(default="", max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_signup_name(cls, value: str) -> str:
        return _validate_name(value) or ""


class SignInRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_signin_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str = ""
    email_verified: bool = False
    image: Optional[str] = None
    role: str
    banned: bool = False
    ban_reason: Optional[str] = None
    ban_expires_at: Optional[datetime] = None
    two_factor_enabled: bool = False
    created_at: datetime


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    token: str
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    impersonated_by: Optional[str] = None
    active_organization_id: Optional[str] = None
    revoked_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: UserResponse
    session: SessionResponse
    two_factor_required: bool = False


class CurrentSessionResponse(BaseModel):
    user: UserResponse
    session: SessionResponse


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class RevokeSessionRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class RevokeSessionResponse(BaseModel):
    revoked: bool = True
    own_session: bool = False


class RevokeSessionsResponse(BaseModel):
    revoked: int


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str
    revoke_other_sessions: bool = False

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=256)
    image: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationConfirm(BaseModel):
    token: str = Field(..., max_length=256)


# user administration
class AdminCreateUserRequest(BaseModel):
    email: str
    name: str = Field(default="", max_length=256)
    password: Optional[str] = Field(
        default=None, description="Omit for accounts that sign in without a password"
    )
    role: Literal["user", "admin", "superadmin"] = "user"

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_admin_password(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            return _validate_password_strength(value)
        return value


class UserListResponse(BaseModel):
    items: List[UserResponse]
    total: int


class SetRoleRequest(BaseModel):
    role: Literal["user", "admin", "superadmin"]


class BanUserRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=512)
    expires_at: Optional[datetime] = None


class BanUserResponse(BaseModel):
    user: UserResponse
    sessions_revoked: int


# organizations
class OrganizationCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    slug: str = Field(..., min_length=2, max_length=48)
    logo: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("slug")
    @classmethod
    def _normalize_slug(cls, value: str) -> str:
        return value.strip().lower()


class OrganizationUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    logo: Optional[str] = Field(default=None, max_length=2048)


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    slug: str
    logo: Optional[str] = None
    created_at: datetime


class OrganizationMembershipResponse(BaseModel):
    organization: OrganizationResponse
    role: str


class OrganizationListResponse(BaseModel):
    items: List[OrganizationMembershipResponse]


class MemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    user_id: str
    role: str
    created_at: datetime
    user: Optional[UserResponse] = None


class UpdateMemberRoleRequest(BaseModel):
    role: Literal["member", "admin", "owner"]


class SetActiveOrganizationRequest(BaseModel):
    organization_id: Optional[str] = Field(
        default=None, description="Omit or null to select the personal context"
    )


class InvitationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    email: str
    role: str
    inviter_id: str
    status: str
    expires_at: datetime
    created_at: datetime


class InvitationDetailResponse(InvitationResponse):
    organization_name: Optional[str] = None
    organization_slug: Optional[str] = None
    inviter_email: Optional[str] = None


class InvitationListResponse(BaseModel):
    items: List[InvitationDetailResponse]


class FullOrganizationResponse(BaseModel):
    organization: OrganizationResponse
    members: List[MemberResponse]
    invitations: List[InvitationResponse]


class InviteMemberRequest(BaseModel):
    email: str
    role: Literal["member", "admin"] = "member"

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class AcceptInvitationResponse(BaseModel):
    invitation: InvitationResponse
    member: MemberResponse


# two-factor
class TwoFactorPasswordRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class TwoFactorEnableResponse(BaseModel):
    totp_uri: str
    expires_at: datetime


class TwoFactorUriResponse(BaseModel):
    totp_uri: str


class TwoFactorStatusResponse(BaseModel):
    state: Literal["disabled", "pending_verification", "enabled"]
    enabled: bool
    pending_expires_at: Optional[datetime] = None


# access control
class PermissionCheckRequest(BaseModel):
    permissions: Dict[str, List[str]]
    organization_id: Optional[str] = None

    @field_validator("permissions")
    @classmethod
    def _validate_permissions(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        if len(value) > MAX_PERMISSION_RESOURCES:
            raise ValueError(f"at most {MAX_PERMISSION_RESOURCES} resources per check")
        return value


class PermissionCheckResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
