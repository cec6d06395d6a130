from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.errors import BannedError, ForbiddenError, NotFoundError
from tenantgate.storage.models import Member, User, utcnow

logger = get_logger(__name__)

GLOBAL_ROLE_RANK = {"user": 0, "admin": 1, "superadmin": 2}
ORGANIZATION_ROLE_RANK = {"member": 0, "admin": 1, "owner": 2}

# Resources checked against the actor's global role
GLOBAL_RESOURCES = frozenset({"user", "session"})
# Resources checked against the actor's membership in one organization
ORGANIZATION_RESOURCES = frozenset({"organization", "member", "invitation"})

_ADMIN_STATEMENTS: Dict[str, frozenset[str]] = {
    "user": frozenset({"create", "list", "set-role", "ban", "impersonate", "delete"}),
    "session": frozenset({"list", "revoke"}),
}

GLOBAL_STATEMENTS: Dict[str, Dict[str, frozenset[str]]] = {
    "user": {},
    "admin": _ADMIN_STATEMENTS,
    # Superadmins short-circuit to allowed; the table entry documents the floor
    "superadmin": _ADMIN_STATEMENTS,
}

_ORG_ADMIN_STATEMENTS: Dict[str, frozenset[str]] = {
    "organization": frozenset({"read", "update"}),
    "member": frozenset({"create", "update", "delete"}),
    "invitation": frozenset({"create", "cancel"}),
}

ORGANIZATION_STATEMENTS: Dict[str, Dict[str, frozenset[str]]] = {
    "member": {"organization": frozenset({"read"})},
    "admin": _ORG_ADMIN_STATEMENTS,
    "owner": {
        **_ORG_ADMIN_STATEMENTS,
        "organization": _ORG_ADMIN_STATEMENTS["organization"] | {"delete"},
    },
}


class AccessStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_member(self, organization_id: str, user_id: str) -> Optional[Member]: ...


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def global_rank(role: str) -> int:
    return GLOBAL_ROLE_RANK.get(role, -1)


def organization_rank(role: str) -> int:
    return ORGANIZATION_ROLE_RANK.get(role, -1)


def _statements_allow(
    statements: Mapping[str, frozenset[str]], resource: str, actions: Iterable[str]
) -> bool:
    granted = statements.get(resource, frozenset())
    return all(action in granted for action in actions)


class AccessControl:
    """Evaluates ``(user, organization, permissions)`` against the role policy.

    ``permissions`` maps a resource to the actions requested on it, e.g.
    ``{"member": ["delete"]}``. Every requested action must be granted.
    Superadmins are granted everything; an effectively banned user nothing.
    """

    def __init__(self, store: AccessStore) -> None:
        self.store = store

    def has_permission(
        self,
        user_id: str,
        permissions: Mapping[str, Iterable[str]],
        organization_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Decision:
        user = self.store.get_user(user_id)
        if not user:
            return Decision(False, "unknown_user")
        if user.is_banned(now or utcnow()):
            return Decision(False, "banned")
        if not permissions:
            return Decision(False, "no_permissions_requested")

        unknown = [r for r in permissions if r not in GLOBAL_RESOURCES | ORGANIZATION_RESOURCES]
        if unknown:
            return Decision(False, "unknown_resource")
        if user.role == "superadmin":
            return Decision(True)

        global_requested = {r: a for r, a in permissions.items() if r in GLOBAL_RESOURCES}
        org_requested = {r: a for r, a in permissions.items() if r in ORGANIZATION_RESOURCES}

        role_statements = GLOBAL_STATEMENTS.get(user.role, {})
        for resource, actions in global_requested.items():
            if not _statements_allow(role_statements, resource, actions):
                return Decision(False, "insufficient_role")

        if org_requested:
            if not organization_id:
                return Decision(False, "organization_required")
            member = self.store.get_member(organization_id, user_id)
            if not member:
                return Decision(False, "not_member")
            member_statements = ORGANIZATION_STATEMENTS.get(member.role, {})
            for resource, actions in org_requested.items():
                if not _statements_allow(member_statements, resource, actions):
                    return Decision(False, "insufficient_organization_role")
        return Decision(True)

    def require(
        self,
        user_id: str,
        permissions: Mapping[str, Iterable[str]],
        organization_id: Optional[str] = None,
    ) -> None:
        decision = self.has_permission(user_id, permissions, organization_id)
        if decision.allowed:
            return
        logger.info(
            "access_denied",
            user_id=user_id,
            organization_id=organization_id,
            permissions={k: list(v) for k, v in permissions.items()},
            reason=decision.reason,
        )
        if decision.reason == "banned":
            raise BannedError("user is banned")
        raise ForbiddenError("permission denied", detail={"reason": decision.reason})

    def require_user(self, user_id: str) -> User:
        """Load an actor who must exist and must not be banned."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.is_banned():
            raise BannedError("user is banned")
        return user

    def member_role(self, organization_id: str, user_id: str) -> Optional[str]:
        member = self.store.get_member(organization_id, user_id)
        return member.role if member else None

    @staticmethod
    def target_outranks(actor: User, target: User) -> bool:
        """True when ``target`` holds a strictly higher global role than ``actor``."""
        return global_rank(target.role) > global_rank(actor.role)
