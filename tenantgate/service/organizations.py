from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Tuple

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.access import AccessControl, organization_rank
from tenantgate.service.errors import (
    ForbiddenError,
    LastOwnerError,
    NotFoundError,
    SlugTakenError,
    ValidationError,
)
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    INVITATION_EXPIRED,
    INVITATION_PENDING,
    ORGANIZATION_ROLES,
    Invitation,
    Member,
    Organization,
    Session,
    User,
    utcnow,
)

logger = get_logger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9-]{2,48}$")


@dataclass
class MemberView:
    member: Member
    user: Optional[User]


@dataclass
class FullOrganization:
    organization: Organization
    members: List[MemberView] = field(default_factory=list)
    invitations: List[Invitation] = field(default_factory=list)


class OrganizationService:
    """Organizations, memberships and the per-session active organization.

    Every organization keeps at least one owner; the store enforces this
    under a lock on the owner rows so concurrent removals cannot both pass.
    """

    def __init__(self, store, settings: Settings, access: AccessControl) -> None:
        self.store = store
        self.settings = settings
        self.access = access

    def _get_organization(self, organization_id: str) -> Organization:
        org = self.store.get_organization(organization_id)
        if not org:
            raise NotFoundError("organization not found", detail={"organization_id": organization_id})
        return org

    def _authorize(
        self,
        actor_id: str,
        organization_id: str,
        permissions: Mapping[str, Iterable[str]],
    ) -> str:
        """Check ``permissions`` and return the actor's effective organization role.

        Superadmins without a membership act with owner rights.
        """
        self.access.require(actor_id, permissions, organization_id)
        role = self.access.member_role(organization_id, actor_id)
        return role or "owner"

    def create_organization(
        self, owner_id: str, name: str, slug: str, *, logo: Optional[str] = None
    ) -> Tuple[Organization, Member]:
        self.access.require_user(owner_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("organization name is required")
        if not SLUG_PATTERN.match(slug or ""):
            raise ValidationError(
                "slug must be 2-48 lowercase letters, digits or hyphens", detail={"slug": slug}
            )
        try:
            org, member = self.store.create_organization(name, slug, owner_id, logo=logo)
        except ConstraintViolation as exc:
            if exc.reason == "slug_taken":
                raise SlugTakenError("slug already in use", detail={"slug": slug}) from exc
            raise NotFoundError("user not found") from exc
        logger.info("organization_created", organization_id=org.id, owner_id=owner_id, slug=slug)
        return org, member

    def list_organizations(self, user_id: str) -> List[Tuple[Organization, Member]]:
        return self.store.list_user_organizations(user_id)

    def get_organization_by_slug(self, actor_id: str, slug: str) -> Organization:
        org = self.store.get_organization_by_slug(slug)
        if not org:
            raise NotFoundError("organization not found", detail={"slug": slug})
        self.access.require(actor_id, {"organization": ["read"]}, org.id)
        return org

    def get_full_organization(self, actor_id: str, organization_id: str) -> FullOrganization:
        """Organization with its members and invitations.

        Pending invitations found past due are moved to ``expired`` on the way
        out, so the view never shows a stale pending row.
        """
        org = self._get_organization(organization_id)
        self.access.require(actor_id, {"organization": ["read"]}, organization_id)
        members = [
            MemberView(member=m, user=self.store.get_user(m.user_id))
            for m in self.store.list_members(organization_id)
        ]
        now = utcnow()
        invitations: List[Invitation] = []
        for invitation in self.store.list_invitations(organization_id):
            if invitation.status == INVITATION_PENDING and invitation.is_past_due(now):
                invitation = (
                    self.store.transition_invitation(
                        invitation.id, INVITATION_PENDING, INVITATION_EXPIRED, now=now
                    )
                    or self.store.get_invitation(invitation.id)
                    or invitation
                )
            invitations.append(invitation)
        return FullOrganization(organization=org, members=members, invitations=invitations)

    def update_organization(
        self,
        actor_id: str,
        organization_id: str,
        *,
        name: Optional[str] = None,
        logo: Optional[str] = None,
    ) -> Organization:
        self._get_organization(organization_id)
        self.access.require(actor_id, {"organization": ["update"]}, organization_id)
        if name is not None and not name.strip():
            raise ValidationError("organization name is required")
        org = self.store.update_organization(
            organization_id, name=name.strip() if name is not None else None, logo=logo
        )
        if not org:
            raise NotFoundError("organization not found")
        logger.info("organization_updated", organization_id=organization_id, actor_id=actor_id)
        return org

    def set_active_organization(
        self, session: Session, organization_id: Optional[str]
    ) -> Optional[Organization]:
        """Point ``session`` at an organization; ``None`` selects the personal context."""
        org = None
        if organization_id is not None:
            org = self._get_organization(organization_id)
            if not self.store.get_member(organization_id, session.user_id):
                raise ForbiddenError(
                    "not a member of this organization", detail={"reason": "not_member"}
                )
        if not self.store.set_active_organization(session.id, organization_id):
            raise NotFoundError("session not found")
        return org

    def _resolve_member(self, organization_id: str, member_or_user_id: str) -> Member:
        member = self.store.get_member_by_id(member_or_user_id)
        if member and member.organization_id == organization_id:
            return member
        member = self.store.get_member(organization_id, member_or_user_id)
        if not member:
            raise NotFoundError("member not found", detail={"member_id": member_or_user_id})
        return member

    def _delete_member(self, organization_id: str, member: Member) -> Member:
        try:
            removed = self.store.remove_member(organization_id, member.id)
        except ConstraintViolation as exc:
            if exc.reason == "last_owner":
                raise LastOwnerError(
                    "organization must keep at least one owner",
                    detail={"organization_id": organization_id},
                ) from exc
            raise NotFoundError("member not found") from exc
        return removed

    def remove_member(self, actor_id: str, organization_id: str, member_or_user_id: str) -> Member:
        """Remove a membership by member id or user id.

        Owners may remove anyone, themselves included. Admins may remove
        members and admins but never an owner.
        """
        self._get_organization(organization_id)
        actor_role = self._authorize(actor_id, organization_id, {"member": ["delete"]})
        target = self._resolve_member(organization_id, member_or_user_id)
        if target.role == "owner" and actor_role != "owner":
            raise ForbiddenError("only an owner may remove an owner")
        removed = self._delete_member(organization_id, target)
        logger.info(
            "member_removed",
            organization_id=organization_id,
            actor_id=actor_id,
            user_id=removed.user_id,
            role=removed.role,
        )
        return removed

    def leave_organization(self, user_id: str, organization_id: str) -> Member:
        self._get_organization(organization_id)
        member = self.store.get_member(organization_id, user_id)
        if not member:
            raise NotFoundError("not a member of this organization")
        removed = self._delete_member(organization_id, member)
        logger.info("member_left", organization_id=organization_id, user_id=user_id)
        return removed

    def update_member_role(
        self, actor_id: str, organization_id: str, member_or_user_id: str, role: str
    ) -> Member:
        """Change a member's role.

        Granting or revoking ``owner`` is reserved to owners; demoting the
        last owner fails with ``LastOwnerError``.
        """
        if role not in ORGANIZATION_ROLES:
            raise ValidationError("unknown organization role", detail={"role": role})
        self._get_organization(organization_id)
        actor_role = self._authorize(actor_id, organization_id, {"member": ["update"]})
        target = self._resolve_member(organization_id, member_or_user_id)
        touches_owner = role == "owner" or target.role == "owner"
        if touches_owner and actor_role != "owner":
            raise ForbiddenError("only an owner may grant or revoke ownership")
        if organization_rank(role) > organization_rank(actor_role):
            raise ForbiddenError("cannot grant a role above your own")
        try:
            updated = self.store.update_member_role(organization_id, target.id, role)
        except ConstraintViolation as exc:
            if exc.reason == "last_owner":
                raise LastOwnerError("organization must keep at least one owner") from exc
            raise NotFoundError("member not found") from exc
        logger.info(
            "member_role_updated",
            organization_id=organization_id,
            actor_id=actor_id,
            user_id=updated.user_id,
            previous_role=target.role,
            new_role=role,
        )
        return updated
