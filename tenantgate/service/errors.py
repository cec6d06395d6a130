from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every error carries a stable ``error_code`` (the error kind) and an HTTP
    ``status_code``. Subclasses that narrow a kind put a ``reason`` into
    ``detail`` so clients can tell e.g. ``email_taken`` from ``slug_taken``
    without the kind changing:

    - unauthorized (401)
    - invalid_credential (401)
    - forbidden (403)
    - not_found (404)
    - invalid_state (409)
    - already_exists (409)
    - last_owner (409)
    - expired (410)
    - validation_error (400)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = dict(detail or {})
        if self.reason and "reason" not in self.detail:
            self.detail["reason"] = self.reason


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialError(ServiceError):
    """A presented password or code did not match (401)."""
    status_code = 401
    error_code = "invalid_credential"


class InvalidPasswordError(InvalidCredentialError):
    reason = "invalid_password"


class InvalidCodeError(InvalidCredentialError):
    reason = "invalid_code"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailMismatchError(ForbiddenError):
    """Invitation addressed to a different email than the acting user's."""
    reason = "email_mismatch"


class BannedError(ForbiddenError):
    reason = "banned"


class TwoFactorRequiredError(ForbiddenError):
    """A recent two-factor verification is needed for this action."""
    reason = "two_factor_required"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class InvalidStateError(ServiceError):
    """Entity is not in a state that allows the operation (409)."""
    status_code = 409
    error_code = "invalid_state"


class AlreadyBannedError(InvalidStateError):
    reason = "already_banned"


class AlreadyExistsError(ServiceError):
    """Uniqueness conflict (409)."""
    status_code = 409
    error_code = "already_exists"


class EmailTakenError(AlreadyExistsError):
    reason = "email_taken"


class SlugTakenError(AlreadyExistsError):
    reason = "slug_taken"


class AlreadyMemberError(AlreadyExistsError):
    reason = "already_member"


class AlreadyInvitedError(AlreadyExistsError):
    reason = "already_invited"


class LastOwnerError(ServiceError):
    """Operation would leave an organization without an owner (409)."""
    status_code = 409
    error_code = "last_owner"


class ExpiredError(ServiceError):
    """Invitation, token or provisioning window has lapsed (410)."""
    status_code = 410
    error_code = "expired"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialError",
    "InvalidPasswordError",
    "InvalidCodeError",
    "ForbiddenError",
    "EmailMismatchError",
    "BannedError",
    "TwoFactorRequiredError",
    "NotFoundError",
    "InvalidStateError",
    "AlreadyBannedError",
    "AlreadyExistsError",
    "EmailTakenError",
    "SlugTakenError",
    "AlreadyMemberError",
    "AlreadyInvitedError",
    "LastOwnerError",
    "ExpiredError",
    "RateLimitedError",
    "ServerError",
]
