from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from tenantgate.api.schemas import (
    AcceptInvitationResponse,
    AdminCreateUserRequest,
    AuthResponse,
    BanUserRequest,
    BanUserResponse,
    ChangePasswordRequest,
    CurrentSessionResponse,
    EmailVerificationConfirm,
    Envelope,
    FullOrganizationResponse,
    InvitationDetailResponse,
    InvitationListResponse,
    InvitationResponse,
    InviteMemberRequest,
    MemberResponse,
    OrganizationCreateRequest,
    OrganizationListResponse,
    OrganizationMembershipResponse,
    OrganizationResponse,
    OrganizationUpdateRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PermissionCheckRequest,
    PermissionCheckResponse,
    ProfileUpdateRequest,
    RevokeSessionRequest,
    RevokeSessionResponse,
    RevokeSessionsResponse,
    SessionListResponse,
    SessionResponse,
    SetActiveOrganizationRequest,
    SetRoleRequest,
    SignInRequest,
    SignUpRequest,
    TwoFactorCodeRequest,
    TwoFactorEnableResponse,
    TwoFactorPasswordRequest,
    TwoFactorStatusResponse,
    TwoFactorUriResponse,
    UpdateMemberRoleRequest,
    UserListResponse,
    UserResponse,
)
from tenantgate.logging import get_logger
from tenantgate.service.invitations import InvitationView
from tenantgate.service.runtime import Runtime, check_rate_limit, get_runtime
from tenantgate.service.sessions import AuthContext
from tenantgate.storage.models import Member, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_token"
ADMIN_SESSION_COOKIE = "admin_session_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = 60,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Raise 429 once ``key`` exceeds ``limit`` requests per window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": info.reset_seconds},
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _extract_token(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return cookie_token or None


async def get_optional_context(
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    runtime: Runtime = Depends(get_runtime),
) -> Optional[AuthContext]:
    """Public procedure gate: the caller's context, or ``None`` when anonymous."""
    return runtime.sessions.resolve(_extract_token(authorization, session_token))


async def get_context(
    ctx: Optional[AuthContext] = Depends(get_optional_context),
) -> AuthContext:
    """Protected procedure gate: 401 unless the token resolves to a usable session."""
    if not ctx:
        raise _http_error("unauthorized", "invalid or missing session", status_code=401)
    return ctx


async def get_pending_context(
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    """Like ``get_context`` but also admits sessions still awaiting a second factor."""
    ctx = runtime.sessions.resolve(
        _extract_token(authorization, session_token), allow_two_factor_pending=True
    )
    if not ctx:
        raise _http_error("unauthorized", "invalid or missing session", status_code=401)
    return ctx


def _set_session_cookie(response: Response, runtime: Runtime, session: Session) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session.token,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
        expires=session.expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
    )


def _user_out(user: User) -> UserResponse:
    # report the effective ban so lapsed bans read as unbanned
    return UserResponse.model_validate(user).model_copy(update={"banned": user.is_banned()})


def _member_out(member: Member, user: Optional[User] = None) -> MemberResponse:
    out = MemberResponse.model_validate(member)
    return out.model_copy(update={"user": _user_out(user)}) if user else out


def _invitation_out(view: InvitationView) -> InvitationDetailResponse:
    return InvitationDetailResponse(
        **InvitationResponse.model_validate(view.invitation).model_dump(),
        organization_name=view.organization_name,
        organization_slug=view.organization_slug,
        inviter_email=view.inviter_email,
    )


# credentials
@router.post("/auth/sign-up", response_model=Envelope, status_code=201, tags=["auth"])
async def sign_up(
    body: SignUpRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_ip(request) or body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        response=response,
    )
    user, session = await runtime.auth.sign_up(
        body.email,
        body.password,
        body.name,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    _set_session_cookie(response, runtime, session)
    return Envelope(
        status="ok",
        data=AuthResponse(user=_user_out(user), session=SessionResponse.model_validate(session)),
    )


@router.post("/auth/sign-in", response_model=Envelope, tags=["auth"])
async def sign_in(
    body: SignInRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password.

    When the user has two-factor enabled the returned session is pending;
    finish with ``POST /auth/two-factor/verify`` before using it.
    """
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    user, session = await runtime.auth.sign_in(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    _set_session_cookie(response, runtime, session)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_out(user),
            session=SessionResponse.model_validate(session),
            two_factor_required=session.two_factor_pending,
        ),
    )


@router.post("/auth/sign-out", response_model=Envelope, tags=["auth"])
async def sign_out(
    response: Response,
    ctx: AuthContext = Depends(get_pending_context),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.auth.sign_out(ctx.session.token)
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data={"signed_out": True})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(ctx: AuthContext = Depends(get_context)):
    return Envelope(
        status="ok",
        data=CurrentSessionResponse(
            user=_user_out(ctx.user), session=SessionResponse.model_validate(ctx.session)
        ),
    )


@router.post("/auth/two-factor/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: TwoFactorCodeRequest,
    response: Response,
    ctx: AuthContext = Depends(get_pending_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"2fa:{ctx.user_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
        response=response,
    )
    await runtime.two_factor.verify(ctx.user_id, body.code, session_id=ctx.session_id)
    return Envelope(status="ok", data={"verified": True})


@router.post("/auth/two-factor/otp/send", response_model=Envelope, tags=["auth"])
async def send_two_factor_otp(
    response: Response,
    ctx: AuthContext = Depends(get_pending_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"2fa-otp:{ctx.user_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
        response=response,
    )
    await runtime.two_factor.send_otp(ctx.user_id)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/two-factor/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor_otp(
    body: TwoFactorCodeRequest,
    response: Response,
    ctx: AuthContext = Depends(get_pending_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"2fa:{ctx.user_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
        response=response,
    )
    await runtime.two_factor.verify_otp(ctx.user_id, body.code, session_id=ctx.session_id)
    return Envelope(status="ok", data={"verified": True})


@router.post("/auth/email-verification/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(
    response: Response,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"verify-email:{ctx.user_id}",
        runtime.settings.signup_rate_limit_per_minute,
        response=response,
    )
    await runtime.auth.request_email_verification(ctx.user_id)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/email-verification/confirm", response_model=Envelope, tags=["auth"])
async def confirm_email_verification(
    body: EmailVerificationConfirm, runtime: Runtime = Depends(get_runtime)
):
    user = await runtime.auth.complete_email_verification(body.token)
    return Envelope(status="ok", data=_user_out(user))


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_ip(request) or body.email}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    await runtime.auth.request_password_reset(body.email)
    # identical response whether or not the address is registered
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(
    body: PasswordResetConfirm, runtime: Runtime = Depends(get_runtime)
):
    revoked = await runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data=RevokeSessionsResponse(revoked=revoked))


# profile and sessions
@router.patch("/me", response_model=Envelope, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    user = runtime.identity.update_profile(ctx.user_id, name=body.name, image=body.image)
    return Envelope(status="ok", data=_user_out(user))


@router.post("/me/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = runtime.auth.change_password(
        ctx.user_id,
        ctx.session,
        body.current_password,
        body.new_password,
        revoke_other_sessions=body.revoke_other_sessions,
    )
    return Envelope(status="ok", data=RevokeSessionsResponse(revoked=revoked))


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    sessions = runtime.sessions.list_sessions(ctx.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(items=[SessionResponse.model_validate(s) for s in sessions]),
    )


@router.post("/sessions/revoke", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    body: RevokeSessionRequest,
    response: Response,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke one of the caller's sessions by token.

    Revoking the session making this request also clears the session cookie.
    """
    result = runtime.sessions.revoke_session(
        body.token, owner_id=ctx.user_id, current_token=ctx.session.token
    )
    if result.own_session:
        _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data=RevokeSessionResponse(own_session=result.own_session))


@router.post("/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
    two_factor_code: Optional[str] = Header(None, alias="X-Two-Factor-Code"),
):
    await runtime.two_factor.require_step_up(ctx.user_id, two_factor_code)
    count = runtime.auth.revoke_other_sessions(ctx.user_id, ctx.session)
    return Envelope(status="ok", data=RevokeSessionsResponse(revoked=count))


# two-factor
@router.get("/two-factor", response_model=Envelope, tags=["two-factor"])
async def two_factor_status(
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    status = runtime.two_factor.status(ctx.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            state=status.state,
            enabled=status.enabled,
            pending_expires_at=status.pending_expires_at,
        ),
    )


@router.post("/two-factor/enable", response_model=Envelope, tags=["two-factor"])
async def begin_two_factor_enable(
    body: TwoFactorPasswordRequest,
    response: Response,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"2fa:{ctx.user_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
        response=response,
    )
    provisioning = runtime.two_factor.begin_enable(ctx.user_id, body.password)
    return Envelope(status="ok", data=TwoFactorEnableResponse(**provisioning))


@router.post("/two-factor/enable/verify", response_model=Envelope, tags=["two-factor"])
async def verify_two_factor_enable(
    body: TwoFactorCodeRequest,
    response: Response,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"2fa:{ctx.user_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
        response=response,
    )
    runtime.two_factor.verify_enable(ctx.user_id, body.code, session_id=ctx.session_id)
    await asyncio.to_thread(runtime.two_factor.notify_enabled, ctx.user_id)
    return Envelope(status="ok", data={"enabled": True})


@router.post("/two-factor/totp-uri", response_model=Envelope, tags=["two-factor"])
async def get_totp_uri(
    body: TwoFactorPasswordRequest,
    response: Response,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"2fa:{ctx.user_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
        response=response,
    )
    uri = runtime.two_factor.get_totp_uri(ctx.user_id, body.password)
    return Envelope(status="ok", data=TwoFactorUriResponse(**uri))


@router.post("/two-factor/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(
    body: TwoFactorPasswordRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
    two_factor_code: Optional[str] = Header(None, alias="X-Two-Factor-Code"),
):
    await runtime.two_factor.require_step_up(ctx.user_id, two_factor_code)
    runtime.two_factor.disable(ctx.user_id, body.password)
    return Envelope(status="ok", data={"enabled": False})


# user administration
async def _admin_rate_limit(runtime: Runtime, ctx: AuthContext) -> None:
    await _enforce_rate_limit(
        runtime, f"admin:{ctx.user_id}", runtime.settings.admin_rate_limit_per_minute
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    search: Optional[str] = Query(None, max_length=256),
    role: Optional[str] = Query(None),
    sort_by: str = Query("created_at"),
    sort_direction: str = Query("desc"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _admin_rate_limit(runtime, ctx)
    users, total = runtime.identity.list_users(
        ctx.user_id,
        search=search,
        role=role,
        sort_by=sort_by,
        sort_direction=sort_direction,
        limit=limit,
        offset=offset,
    )
    return Envelope(
        status="ok", data=UserListResponse(items=[_user_out(u) for u in users], total=total)
    )


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _admin_rate_limit(runtime, ctx)
    user = runtime.identity.admin_create_user(
        ctx.user_id, body.email, body.name, body.password, role=body.role
    )
    return Envelope(status="ok", data=_user_out(user))


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: str,
    body: SetRoleRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _admin_rate_limit(runtime, ctx)
    user = runtime.identity.set_global_role(ctx.user_id, user_id, body.role)
    return Envelope(status="ok", data=_user_out(user))


@router.post("/admin/users/{user_id}/ban", response_model=Envelope, tags=["admin"])
async def admin_ban_user(
    user_id: str,
    body: BanUserRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
    two_factor_code: Optional[str] = Header(None, alias="X-Two-Factor-Code"),
):
    await _admin_rate_limit(runtime, ctx)
    await runtime.two_factor.require_step_up(ctx.user_id, two_factor_code)
    user, revoked = runtime.identity.ban_user(
        ctx.user_id, user_id, reason=body.reason, expires_at=body.expires_at
    )
    return Envelope(
        status="ok", data=BanUserResponse(user=_user_out(user), sessions_revoked=revoked)
    )


@router.post("/admin/users/{user_id}/unban", response_model=Envelope, tags=["admin"])
async def admin_unban_user(
    user_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _admin_rate_limit(runtime, ctx)
    user = runtime.identity.unban_user(ctx.user_id, user_id)
    return Envelope(status="ok", data=_user_out(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_remove_user(
    user_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
    two_factor_code: Optional[str] = Header(None, alias="X-Two-Factor-Code"),
):
    await _admin_rate_limit(runtime, ctx)
    await runtime.two_factor.require_step_up(ctx.user_id, two_factor_code)
    runtime.identity.remove_user(ctx.user_id, user_id)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_user_sessions(
    user_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _admin_rate_limit(runtime, ctx)
    sessions = runtime.identity.list_user_sessions(ctx.user_id, user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(items=[SessionResponse.model_validate(s) for s in sessions]),
    )


@router.post("/admin/users/{user_id}/sessions/revoke", response_model=Envelope, tags=["admin"])
async def admin_revoke_user_session(
    user_id: str,
    body: RevokeSessionRequest,
    response: Response,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
    two_factor_code: Optional[str] = Header(None, alias="X-Two-Factor-Code"),
):
    await _admin_rate_limit(runtime, ctx)
    await runtime.two_factor.require_step_up(ctx.user_id, two_factor_code)
    runtime.identity.revoke_user_session(ctx.user_id, user_id, body.token)
    own = body.token == ctx.session.token
    if own:
        _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data=RevokeSessionResponse(own_session=own))


@router.post(
    "/admin/users/{user_id}/sessions/revoke-all", response_model=Envelope, tags=["admin"]
)
async def admin_revoke_user_sessions(
    user_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
    two_factor_code: Optional[str] = Header(None, alias="X-Two-Factor-Code"),
):
    await _admin_rate_limit(runtime, ctx)
    await runtime.two_factor.require_step_up(ctx.user_id, two_factor_code)
    count = runtime.identity.revoke_user_sessions(ctx.user_id, user_id)
    return Envelope(status="ok", data=RevokeSessionsResponse(revoked=count))


@router.post("/admin/users/{user_id}/impersonate", response_model=Envelope, tags=["admin"])
async def admin_impersonate(
    user_id: str,
    request: Request,
    response: Response,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _admin_rate_limit(runtime, ctx)
    session = runtime.identity.impersonate(
        ctx.user_id,
        user_id,
        acting_session=ctx.session,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    target = runtime.identity.get_user(user_id)
    _set_session_cookie(response, runtime, session)
    # remembered so stopping can return the admin to this session
    response.set_cookie(
        ADMIN_SESSION_COOKIE,
        ctx.session.token,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
        expires=session.expires_at,
        path="/",
    )
    return Envelope(
        status="ok",
        data=AuthResponse(user=_user_out(target), session=SessionResponse.model_validate(session)),
    )


@router.post("/admin/impersonation/stop", response_model=Envelope, tags=["admin"])
async def admin_stop_impersonating(
    response: Response,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
    admin_session_token: Optional[str] = Cookie(None, alias=ADMIN_SESSION_COOKIE),
):
    """Revoke the impersonation session and, when possible, resume the admin's own."""
    restored = runtime.identity.stop_impersonating(ctx.session, admin_token=admin_session_token)
    response.delete_cookie(
        ADMIN_SESSION_COOKIE,
        path="/",
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
    )
    if restored:
        _set_session_cookie(response, runtime, restored)
    else:
        _clear_session_cookie(response, runtime)
    return Envelope(
        status="ok",
        data={
            "impersonating": False,
            "session": SessionResponse.model_validate(restored) if restored else None,
        },
    )


# organizations
@router.post("/organizations", response_model=Envelope, status_code=201, tags=["organizations"])
async def create_organization(
    body: OrganizationCreateRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    org, member = runtime.organizations.create_organization(
        ctx.user_id, body.name, body.slug, logo=body.logo
    )
    return Envelope(
        status="ok",
        data=OrganizationMembershipResponse(
            organization=OrganizationResponse.model_validate(org), role=member.role
        ),
    )


@router.get("/organizations", response_model=Envelope, tags=["organizations"])
async def list_organizations(
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    pairs = runtime.organizations.list_organizations(ctx.user_id)
    return Envelope(
        status="ok",
        data=OrganizationListResponse(
            items=[
                OrganizationMembershipResponse(
                    organization=OrganizationResponse.model_validate(org), role=member.role
                )
                for org, member in pairs
            ]
        ),
    )


@router.post("/organizations/active", response_model=Envelope, tags=["organizations"])
async def set_active_organization(
    body: SetActiveOrganizationRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    org = runtime.organizations.set_active_organization(ctx.session, body.organization_id)
    return Envelope(
        status="ok",
        data={
            "active_organization_id": org.id if org else None,
            "organization": OrganizationResponse.model_validate(org) if org else None,
        },
    )


@router.get("/organizations/by-slug/{slug}", response_model=Envelope, tags=["organizations"])
async def get_organization_by_slug(
    slug: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    org = runtime.organizations.get_organization_by_slug(ctx.user_id, slug)
    return Envelope(status="ok", data=OrganizationResponse.model_validate(org))


@router.get("/organizations/{organization_id}", response_model=Envelope, tags=["organizations"])
async def get_full_organization(
    organization_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    full = runtime.organizations.get_full_organization(ctx.user_id, organization_id)
    return Envelope(
        status="ok",
        data=FullOrganizationResponse(
            organization=OrganizationResponse.model_validate(full.organization),
            members=[_member_out(view.member, view.user) for view in full.members],
            invitations=[InvitationResponse.model_validate(inv) for inv in full.invitations],
        ),
    )


@router.patch("/organizations/{organization_id}", response_model=Envelope, tags=["organizations"])
async def update_organization(
    organization_id: str,
    body: OrganizationUpdateRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    org = runtime.organizations.update_organization(
        ctx.user_id, organization_id, name=body.name, logo=body.logo
    )
    return Envelope(status="ok", data=OrganizationResponse.model_validate(org))


@router.delete(
    "/organizations/{organization_id}/members/{member_id}",
    response_model=Envelope,
    tags=["organizations"],
)
async def remove_member(
    organization_id: str,
    member_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    removed = runtime.organizations.remove_member(ctx.user_id, organization_id, member_id)
    return Envelope(status="ok", data=_member_out(removed))


@router.patch(
    "/organizations/{organization_id}/members/{member_id}",
    response_model=Envelope,
    tags=["organizations"],
)
async def update_member_role(
    organization_id: str,
    member_id: str,
    body: UpdateMemberRoleRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    member = runtime.organizations.update_member_role(
        ctx.user_id, organization_id, member_id, body.role
    )
    return Envelope(status="ok", data=_member_out(member))


@router.post(
    "/organizations/{organization_id}/leave", response_model=Envelope, tags=["organizations"]
)
async def leave_organization(
    organization_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    removed = runtime.organizations.leave_organization(ctx.user_id, organization_id)
    return Envelope(status="ok", data=_member_out(removed))


@router.post(
    "/organizations/{organization_id}/invitations",
    response_model=Envelope,
    status_code=201,
    tags=["invitations"],
)
async def invite_member(
    organization_id: str,
    body: InviteMemberRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _admin_rate_limit(runtime, ctx)
    invitation = runtime.invitations.invite_member(
        ctx.user_id, organization_id, body.email, body.role
    )
    await asyncio.to_thread(runtime.invitations.send_invitation_email, invitation)
    return Envelope(status="ok", data=InvitationResponse.model_validate(invitation))


@router.get(
    "/organizations/{organization_id}/invitations", response_model=Envelope, tags=["invitations"]
)
async def list_organization_invitations(
    organization_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    invitations = runtime.invitations.list_organization_invitations(ctx.user_id, organization_id)
    return Envelope(
        status="ok", data=[InvitationResponse.model_validate(inv) for inv in invitations]
    )


# invitations addressed to the caller
@router.get("/invitations", response_model=Envelope, tags=["invitations"])
async def list_user_invitations(
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    views = runtime.invitations.list_user_invitations(ctx.user_id)
    return Envelope(
        status="ok", data=InvitationListResponse(items=[_invitation_out(v) for v in views])
    )


@router.get("/invitations/{invitation_id}", response_model=Envelope, tags=["invitations"])
async def get_invitation(
    invitation_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Invitation details for the accept page; the id in the link is the capability."""
    view = runtime.invitations.get_invitation(invitation_id)
    return Envelope(status="ok", data=_invitation_out(view))


@router.post("/invitations/{invitation_id}/accept", response_model=Envelope, tags=["invitations"])
async def accept_invitation(
    invitation_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    invitation, member = runtime.invitations.accept_invitation(
        ctx.user_id, invitation_id, session_id=ctx.session_id
    )
    return Envelope(
        status="ok",
        data=AcceptInvitationResponse(
            invitation=InvitationResponse.model_validate(invitation),
            member=_member_out(member),
        ),
    )


@router.post("/invitations/{invitation_id}/reject", response_model=Envelope, tags=["invitations"])
async def reject_invitation(
    invitation_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    invitation = runtime.invitations.reject_invitation(ctx.user_id, invitation_id)
    return Envelope(status="ok", data=InvitationResponse.model_validate(invitation))


@router.post("/invitations/{invitation_id}/cancel", response_model=Envelope, tags=["invitations"])
async def cancel_invitation(
    invitation_id: str,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    invitation = runtime.invitations.cancel_invitation(ctx.user_id, invitation_id)
    return Envelope(status="ok", data=InvitationResponse.model_validate(invitation))


# access control
@router.post("/access/has-permission", response_model=Envelope, tags=["access"])
async def has_permission(
    body: PermissionCheckRequest,
    ctx: AuthContext = Depends(get_context),
    runtime: Runtime = Depends(get_runtime),
):
    decision = runtime.access.has_permission(
        ctx.user_id, body.permissions, body.organization_id
    )
    return Envelope(
        status="ok",
        data=PermissionCheckResponse(allowed=decision.allowed, reason=decision.reason),
    )
