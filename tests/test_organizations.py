"""Organization and membership engine tests.

Covers the owner invariant, member role changes, the active organization
pointer and the full organization view.
"""

import threading

import pytest

from tenantgate.service.errors import (
    ForbiddenError,
    LastOwnerError,
    NotFoundError,
    ServiceError,
    SlugTakenError,
    ValidationError,
)


@pytest.fixture
def acme(runtime, make_user):
    """Acme with alice as owner, bob as admin and carol as member."""
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    carol = make_user("carol@example.com")
    org, _ = runtime.organizations.create_organization(alice.id, "Acme", "acme")
    for user, role in ((bob, "admin"), (carol, "member")):
        invitation = runtime.invitations.invite_member(alice.id, org.id, user.email, role)
        runtime.invitations.accept_invitation(user.id, invitation.id)
    return org, alice, bob, carol


def _owners(store, org_id):
    return [m for m in store.list_members(org_id) if m.role == "owner"]


class TestCreate:
    def test_creator_becomes_owner(self, runtime, store, make_user):
        alice = make_user("alice@example.com")

        org, member = runtime.organizations.create_organization(alice.id, "Acme", "acme")

        assert member.role == "owner"
        assert member.user_id == alice.id
        assert [m.user_id for m in _owners(store, org.id)] == [alice.id]

    def test_slug_is_unique(self, runtime, make_user):
        alice = make_user("alice@example.com")
        bob = make_user("bob@example.com")
        runtime.organizations.create_organization(alice.id, "Acme", "acme")

        with pytest.raises(SlugTakenError) as excinfo:
            runtime.organizations.create_organization(bob.id, "Acme Two", "acme")
        assert excinfo.value.detail["reason"] == "slug_taken"

    @pytest.mark.parametrize("slug", ["A", "Acme", "acme corp", "a" * 49, ""])
    def test_bad_slugs_are_rejected(self, runtime, make_user, slug):
        alice = make_user("alice@example.com")

        with pytest.raises(ValidationError):
            runtime.organizations.create_organization(alice.id, "Acme", slug)

    def test_lists_only_own_organizations(self, runtime, make_user):
        alice = make_user("alice@example.com")
        bob = make_user("bob@example.com")
        runtime.organizations.create_organization(alice.id, "Acme", "acme")
        runtime.organizations.create_organization(bob.id, "Globex", "globex")

        pairs = runtime.organizations.list_organizations(alice.id)

        assert [org.slug for org, _ in pairs] == ["acme"]
        assert pairs[0][1].role == "owner"


class TestOwnerInvariant:
    def test_last_owner_cannot_leave(self, runtime, acme):
        org, alice, _, _ = acme

        with pytest.raises(LastOwnerError):
            runtime.organizations.leave_organization(alice.id, org.id)

    def test_last_owner_cannot_remove_self(self, runtime, acme):
        org, alice, _, _ = acme

        with pytest.raises(LastOwnerError):
            runtime.organizations.remove_member(alice.id, org.id, alice.id)

    def test_last_owner_cannot_be_demoted(self, runtime, store, acme):
        org, alice, _, _ = acme

        with pytest.raises(LastOwnerError):
            runtime.organizations.update_member_role(alice.id, org.id, alice.id, "admin")
        assert len(_owners(store, org.id)) == 1

    def test_owner_can_leave_after_handing_over(self, runtime, store, acme):
        org, alice, bob, _ = acme

        runtime.organizations.update_member_role(alice.id, org.id, bob.id, "owner")
        runtime.organizations.leave_organization(alice.id, org.id)

        assert [m.user_id for m in _owners(store, org.id)] == [bob.id]

    def test_two_owners_leaving_at_once_keeps_one(self, runtime, store, acme):
        org, alice, bob, _ = acme
        runtime.organizations.update_member_role(alice.id, org.id, bob.id, "owner")
        barrier = threading.Barrier(2)
        results = []

        def leave(user_id):
            barrier.wait()
            try:
                runtime.organizations.leave_organization(user_id, org.id)
                results.append("ok")
            except ServiceError as exc:
                results.append(exc.error_code)

        threads = [threading.Thread(target=leave, args=(uid,)) for uid in (alice.id, bob.id)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == ["last_owner", "ok"]
        assert len(_owners(store, org.id)) == 1

    def test_concurrent_removals_of_last_two_owners(self, runtime, store, acme):
        org, alice, bob, _ = acme
        runtime.organizations.update_member_role(alice.id, org.id, bob.id, "owner")
        barrier = threading.Barrier(2)
        results = []

        def remove(actor_id, target_id):
            barrier.wait()
            try:
                runtime.organizations.remove_member(actor_id, org.id, target_id)
                results.append("ok")
            except ServiceError as exc:
                results.append(exc.error_code)

        threads = [
            threading.Thread(target=remove, args=(alice.id, bob.id)),
            threading.Thread(target=remove, args=(bob.id, alice.id)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert "ok" in results
        assert len(_owners(store, org.id)) == 1


class TestRemoveMember:
    def test_admin_removes_member(self, runtime, store, acme):
        org, _, bob, carol = acme

        removed = runtime.organizations.remove_member(bob.id, org.id, carol.id)

        assert removed.user_id == carol.id
        assert store.get_member(org.id, carol.id) is None

    def test_remove_by_member_id(self, runtime, store, acme):
        org, alice, _, carol = acme
        member = store.get_member(org.id, carol.id)

        runtime.organizations.remove_member(alice.id, org.id, member.id)

        assert store.get_member(org.id, carol.id) is None

    def test_admin_cannot_remove_owner(self, runtime, acme):
        org, alice, bob, _ = acme

        with pytest.raises(ForbiddenError):
            runtime.organizations.remove_member(bob.id, org.id, alice.id)

    def test_member_cannot_remove_anyone(self, runtime, acme):
        org, _, bob, carol = acme

        with pytest.raises(ForbiddenError):
            runtime.organizations.remove_member(carol.id, org.id, bob.id)

    def test_outsider_is_forbidden(self, runtime, make_user, acme):
        org, _, _, carol = acme
        mallory = make_user("mallory@example.com")

        with pytest.raises(ForbiddenError) as excinfo:
            runtime.organizations.remove_member(mallory.id, org.id, carol.id)
        assert excinfo.value.detail["reason"] == "not_member"

    def test_unknown_member(self, runtime, acme):
        org, alice, _, _ = acme

        with pytest.raises(NotFoundError):
            runtime.organizations.remove_member(alice.id, org.id, "no-such-member")

    def test_removal_clears_active_organization(self, runtime, store, acme):
        org, alice, _, carol = acme
        session = runtime.sessions.create_session(carol.id)
        runtime.organizations.set_active_organization(session, org.id)

        runtime.organizations.remove_member(alice.id, org.id, carol.id)

        assert store.get_session(session.id).active_organization_id is None


class TestMemberRoles:
    def test_admin_cannot_grant_ownership(self, runtime, acme):
        org, _, bob, carol = acme

        with pytest.raises(ForbiddenError):
            runtime.organizations.update_member_role(bob.id, org.id, carol.id, "owner")

    def test_admin_promotes_member_to_admin(self, runtime, acme):
        org, _, bob, carol = acme

        updated = runtime.organizations.update_member_role(bob.id, org.id, carol.id, "admin")

        assert updated.role == "admin"

    def test_unknown_role(self, runtime, acme):
        org, alice, _, carol = acme

        with pytest.raises(ValidationError):
            runtime.organizations.update_member_role(alice.id, org.id, carol.id, "boss")

    def test_superadmin_acts_as_owner_without_membership(self, runtime, make_user, acme):
        org, _, bob, _ = acme
        root = make_user("root@example.com", role="superadmin")

        updated = runtime.organizations.update_member_role(root.id, org.id, bob.id, "owner")

        assert updated.role == "owner"


class TestActiveOrganization:
    def test_member_sets_and_clears_active_organization(self, runtime, store, acme):
        org, _, _, carol = acme
        session = runtime.sessions.create_session(carol.id)

        selected = runtime.organizations.set_active_organization(session, org.id)
        assert selected.id == org.id
        assert store.get_session(session.id).active_organization_id == org.id

        assert runtime.organizations.set_active_organization(session, None) is None
        assert store.get_session(session.id).active_organization_id is None

    def test_non_member_cannot_select(self, runtime, make_user, acme):
        org, _, _, _ = acme
        mallory = make_user("mallory@example.com")
        session = runtime.sessions.create_session(mallory.id)

        with pytest.raises(ForbiddenError):
            runtime.organizations.set_active_organization(session, org.id)

    def test_active_organization_is_per_session(self, runtime, store, acme):
        org, _, _, carol = acme
        first = runtime.sessions.create_session(carol.id)
        second = runtime.sessions.create_session(carol.id)

        runtime.organizations.set_active_organization(first, org.id)

        assert store.get_session(second.id).active_organization_id is None


class TestFullOrganization:
    def test_members_see_members_and_invitations(self, runtime, acme):
        org, alice, _, carol = acme
        runtime.invitations.invite_member(alice.id, org.id, "dave@example.com")

        full = runtime.organizations.get_full_organization(carol.id, org.id)

        assert full.organization.id == org.id
        assert {view.user.email for view in full.members} == {
            "alice@example.com",
            "bob@example.com",
            "carol@example.com",
        }
        assert [inv.email for inv in full.invitations if inv.status == "pending"] == [
            "dave@example.com"
        ]

    def test_outsiders_cannot_read(self, runtime, make_user, acme):
        org, _, _, _ = acme
        mallory = make_user("mallory@example.com")

        with pytest.raises(ForbiddenError):
            runtime.organizations.get_full_organization(mallory.id, org.id)

    def test_update_requires_admin(self, runtime, acme):
        org, _, bob, carol = acme

        with pytest.raises(ForbiddenError):
            runtime.organizations.update_organization(carol.id, org.id, name="Renamed")
        updated = runtime.organizations.update_organization(bob.id, org.id, name="Acme Inc")
        assert updated.name == "Acme Inc"

    def test_lookup_by_slug(self, runtime, acme):
        org, _, _, carol = acme

        assert runtime.organizations.get_organization_by_slug(carol.id, "acme").id == org.id
        with pytest.raises(NotFoundError):
            runtime.organizations.get_organization_by_slug(carol.id, "nope")
