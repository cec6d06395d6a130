from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Tuple

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.access import AccessControl
from tenantgate.service.email import EmailService
from tenantgate.service.errors import (
    AlreadyInvitedError,
    AlreadyMemberError,
    EmailMismatchError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    INVITABLE_ROLES,
    INVITATION_CANCELED,
    INVITATION_EXPIRED,
    INVITATION_PENDING,
    INVITATION_REJECTED,
    Invitation,
    Member,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class InvitationView:
    """An invitation joined with what the accept page needs to show."""

    invitation: Invitation
    organization_name: Optional[str]
    organization_slug: Optional[str]
    inviter_email: Optional[str]


class InvitationService:
    """Invitation state machine: pending -> accepted | rejected | canceled | expired.

    Every transition is a compare-and-set from ``pending``; a second attempt
    against a terminal invitation reports ``InvalidStateError`` instead of
    being applied again. Past-due invitations are expired lazily on read and
    by ``expire_due_invitations``, which the app runs periodically.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        access: AccessControl,
        *,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.access = access
        self.email = email

    def _get(self, invitation_id: str) -> Invitation:
        """Load an invitation, expiring it first when it is past due."""
        invitation = self.store.get_invitation(invitation_id)
        if not invitation:
            raise NotFoundError("invitation not found", detail={"invitation_id": invitation_id})
        if invitation.status == INVITATION_PENDING and invitation.is_past_due():
            expired = self.store.transition_invitation(
                invitation.id, INVITATION_PENDING, INVITATION_EXPIRED
            )
            invitation = expired or self.store.get_invitation(invitation_id) or invitation
            if expired:
                logger.info("invitation_expired", invitation_id=invitation_id)
        return invitation

    @staticmethod
    def _require_pending(invitation: Invitation, *, report_expiry: bool = True) -> None:
        if report_expiry and invitation.status == INVITATION_EXPIRED:
            raise ExpiredError("invitation has expired", detail={"invitation_id": invitation.id})
        if invitation.status != INVITATION_PENDING:
            raise InvalidStateError(
                "invitation is no longer pending", detail={"status": invitation.status}
            )

    def _require_recipient(self, user_id: str, invitation: Invitation):
        user = self.access.require_user(user_id)
        if normalize_email(user.email) != normalize_email(invitation.email):
            raise EmailMismatchError("invitation was sent to a different email address")
        return user

    def invite_member(
        self, actor_id: str, organization_id: str, email: str, role: str = "member"
    ) -> Invitation:
        if role not in INVITABLE_ROLES:
            raise ValidationError("role must be member or admin", detail={"role": role})
        org = self.store.get_organization(organization_id)
        if not org:
            raise NotFoundError("organization not found")
        self.access.require(actor_id, {"invitation": ["create"]}, organization_id)
        now = utcnow()
        expires_at = now + timedelta(hours=self.settings.invitation_expires_in_hours)
        try:
            invitation = self.store.create_invitation(
                organization_id, email, role, actor_id, expires_at, now=now
            )
        except ConstraintViolation as exc:
            if exc.reason == "already_member":
                raise AlreadyMemberError("user is already a member") from exc
            if exc.reason == "already_invited":
                raise AlreadyInvitedError("a pending invitation already exists") from exc
            raise NotFoundError("organization not found") from exc
        logger.info(
            "invitation_created",
            invitation_id=invitation.id,
            organization_id=organization_id,
            inviter_id=actor_id,
            role=role,
        )
        return invitation

    def send_invitation_email(self, invitation: Invitation) -> bool:
        """Mail the invitation link. Blocks on SMTP, so async callers run it in a thread."""
        if not self.email:
            return False
        org = self.store.get_organization(invitation.organization_id)
        inviter = self.store.get_user(invitation.inviter_id)
        return self.email.send_invitation(
            invitation.email,
            invitation_id=invitation.id,
            organization_name=org.name if org else "your organization",
            inviter_email=inviter.email if inviter else None,
            role=invitation.role,
            expires_at=invitation.expires_at,
        )

    def cancel_invitation(self, actor_id: str, invitation_id: str) -> Invitation:
        invitation = self._get(invitation_id)
        self.access.require(actor_id, {"invitation": ["cancel"]}, invitation.organization_id)
        self._require_pending(invitation, report_expiry=False)
        return self._transition(invitation, INVITATION_CANCELED, actor_id=actor_id)

    def _transition(self, invitation: Invitation, new_status: str, *, actor_id: str) -> Invitation:
        updated = self.store.transition_invitation(invitation.id, INVITATION_PENDING, new_status)
        if not updated:
            current = self.store.get_invitation(invitation.id)
            raise InvalidStateError(
                "invitation is no longer pending",
                detail={"status": current.status if current else None},
            )
        logger.info(
            "invitation_transitioned",
            invitation_id=invitation.id,
            actor_id=actor_id,
            status=new_status,
        )
        return updated

    def accept_invitation(
        self, user_id: str, invitation_id: str, *, session_id: Optional[str] = None
    ) -> Tuple[Invitation, Member]:
        """Join the organization as the invited role.

        The accepting user's email must match the invitation. When
        ``session_id`` is given the organization becomes that session's
        active organization.
        """
        invitation = self._get(invitation_id)
        self._require_pending(invitation)
        self._require_recipient(user_id, invitation)
        try:
            accepted, member = self.store.accept_invitation(invitation.id, user_id)
        except ConstraintViolation as exc:
            reason = exc.reason
            if reason == "expired":
                raise ExpiredError("invitation has expired") from exc
            if reason == "already_member":
                raise AlreadyMemberError("already a member of this organization") from exc
            if reason == "invalid_state":
                raise InvalidStateError(
                    "invitation is no longer pending",
                    detail={"status": exc.detail.get("status")},
                ) from exc
            raise NotFoundError("invitation not found") from exc
        if session_id:
            self.store.set_active_organization(session_id, accepted.organization_id)
        logger.info(
            "invitation_accepted",
            invitation_id=invitation.id,
            organization_id=accepted.organization_id,
            user_id=user_id,
        )
        return accepted, member

    def reject_invitation(self, user_id: str, invitation_id: str) -> Invitation:
        invitation = self._get(invitation_id)
        self._require_pending(invitation)
        self._require_recipient(user_id, invitation)
        return self._transition(invitation, INVITATION_REJECTED, actor_id=user_id)

    def get_invitation(self, invitation_id: str) -> InvitationView:
        """Read an invitation by id alone; knowing the id is the capability."""
        invitation = self._get(invitation_id)
        org = self.store.get_organization(invitation.organization_id)
        inviter = self.store.get_user(invitation.inviter_id)
        return InvitationView(
            invitation=invitation,
            organization_name=org.name if org else None,
            organization_slug=org.slug if org else None,
            inviter_email=inviter.email if inviter else None,
        )

    def list_organization_invitations(self, actor_id: str, organization_id: str) -> List[Invitation]:
        self.access.require(actor_id, {"organization": ["read"]}, organization_id)
        return [self._get(inv.id) for inv in self.store.list_invitations(organization_id)]

    def list_user_invitations(self, user_id: str) -> List[InvitationView]:
        user = self.access.require_user(user_id)
        views = []
        for invitation in self.store.list_invitations_for_email(user.email):
            view = self.get_invitation(invitation.id)
            if view.invitation.status == INVITATION_PENDING:
                views.append(view)
        return views

    def expire_due_invitations(self) -> int:
        count = self.store.expire_invitations()
        if count:
            logger.info("invitations_swept", expired=count)
        return count
