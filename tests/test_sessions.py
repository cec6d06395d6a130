"""Session store behavior: resolution, revocation and listing."""

from datetime import timedelta

import pytest

from tenantgate.service.errors import NotFoundError
from tenantgate.storage.models import utcnow


class TestResolve:
    def test_fresh_session_resolves(self, runtime, make_user):
        user = make_user("alice@example.com")
        session = runtime.sessions.create_session(user.id, user_agent="pytest")

        ctx = runtime.sessions.resolve(session.token)

        assert ctx is not None
        assert ctx.user_id == user.id
        assert ctx.session_id == session.id

    def test_unknown_and_empty_tokens_do_not_resolve(self, runtime):
        assert runtime.sessions.resolve(None) is None
        assert runtime.sessions.resolve("") is None
        assert runtime.sessions.resolve("not-a-token") is None

    def test_expired_session_does_not_resolve(self, runtime, make_user):
        user = make_user("alice@example.com")
        session = runtime.store.create_session(user.id, ttl_minutes=-1)

        assert runtime.sessions.resolve(session.token) is None

    def test_two_factor_pending_session_needs_explicit_opt_in(self, runtime, make_user):
        user = make_user("alice@example.com")
        session = runtime.sessions.create_session(user.id, two_factor_pending=True)

        assert runtime.sessions.resolve(session.token) is None
        assert runtime.sessions.resolve(session.token, allow_two_factor_pending=True) is not None

        runtime.sessions.mark_verified(session.id)
        assert runtime.sessions.resolve(session.token) is not None

    def test_banned_owner_blocks_resolution(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        session = runtime.sessions.create_session(user.id)
        # a session created after the ban (e.g. by a racing sign-in) still must not resolve
        store.ban_user(user.id, reason="spam")
        late = store.create_session(user.id)

        assert runtime.sessions.resolve(session.token) is None
        assert runtime.sessions.resolve(late.token) is None

    def test_lapsed_ban_no_longer_blocks(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        now = utcnow()
        store._touch_user(user.id, banned=True, ban_expires_at=now - timedelta(minutes=1))
        session = store.create_session(user.id)

        assert runtime.sessions.resolve(session.token) is not None


class TestRevocation:
    def test_revoked_session_stops_resolving(self, runtime, make_user):
        user = make_user("alice@example.com")
        session = runtime.sessions.create_session(user.id)

        result = runtime.sessions.revoke_session(session.token, owner_id=user.id)

        assert result.session.revoked_at is not None
        assert runtime.sessions.resolve(session.token) is None

    def test_revoking_twice_reports_not_found(self, runtime, make_user):
        user = make_user("alice@example.com")
        session = runtime.sessions.create_session(user.id)
        runtime.sessions.revoke_session(session.token)

        with pytest.raises(NotFoundError):
            runtime.sessions.revoke_session(session.token)

    def test_cannot_revoke_someone_elses_session(self, runtime, make_user):
        alice = make_user("alice@example.com")
        bob = make_user("bob@example.com")
        bobs = runtime.sessions.create_session(bob.id)

        with pytest.raises(NotFoundError):
            runtime.sessions.revoke_session(bobs.token, owner_id=alice.id)
        assert runtime.sessions.resolve(bobs.token) is not None

    def test_own_session_flag(self, runtime, make_user):
        user = make_user("alice@example.com")
        current = runtime.sessions.create_session(user.id)

        result = runtime.sessions.revoke_session(
            current.token, owner_id=user.id, current_token=current.token
        )

        assert result.own_session is True

    def test_revoke_all_keeps_the_excepted_session(self, runtime, make_user):
        user = make_user("alice@example.com")
        keep = runtime.sessions.create_session(user.id)
        others = [runtime.sessions.create_session(user.id) for _ in range(3)]

        count = runtime.sessions.revoke_all_sessions(user.id, except_session_id=keep.id)

        assert count == 3
        assert runtime.sessions.resolve(keep.token) is not None
        assert all(runtime.sessions.resolve(s.token) is None for s in others)

    def test_revoke_all_leaves_later_sessions_alone(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        old = store.create_session(user.id)
        cutoff = utcnow()
        newer = store.create_session(user.id)
        store.sessions[newer.id].created_at = cutoff + timedelta(seconds=5)

        count = store.revoke_user_sessions(user.id, before=cutoff)

        assert count == 1
        assert runtime.sessions.resolve(old.token) is None
        assert runtime.sessions.resolve(newer.token) is not None


class TestListing:
    def test_listing_hides_revoked_and_impersonation_sessions(self, runtime, make_user):
        user = make_user("alice@example.com")
        admin = make_user("root@example.com", role="admin")
        live = runtime.sessions.create_session(user.id)
        gone = runtime.sessions.create_session(user.id)
        runtime.sessions.revoke_session(gone.token)
        runtime.sessions.create_session(user.id, impersonated_by=admin.id)

        listed = runtime.sessions.list_sessions(user.id)

        assert [s.id for s in listed] == [live.id]
        assert len(runtime.sessions.list_sessions_for_audit(user.id)) == 3

