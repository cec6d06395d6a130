"""Integration tests for the HTTP surface.

Every request goes through the FastAPI app with a fresh in-memory runtime,
so these cover the gates, the error envelope and the end-to-end flows:
- sign-up, sign-in, sign-out and session revocation
- organizations and the invitation round trip
- two-factor enrollment, sign-in and step-up
- admin role changes and bans
- rate-limit headers and outgoing email delivery
"""

import re
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from tenantgate import app as app_module
from tenantgate.service.runtime import get_runtime
from tenantgate.service.two_factor import generate_totp
from tenantgate.storage.models import utcnow

PASSWORD = "CorrectHorse42!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _sign_up(client, email, name=""):
    response = client.post(
        "/v1/auth/sign-up", json={"email": email, "password": PASSWORD, "name": name}
    )
    assert response.status_code == 201, response.text
    data = response.json()["data"]
    return data["user"]["id"], data["session"]["token"]


def _sign_in(client, email, password=PASSWORD):
    return client.post("/v1/auth/sign-in", json={"email": email, "password": password})


def _totp(user_id):
    secret = get_runtime().store.get_two_factor(user_id).secret
    return generate_totp(secret, time.time())


def _wrong_totp(user_id):
    secret = get_runtime().store.get_two_factor(user_id).secret
    valid = {generate_totp(secret, time.time() + step * 30) for step in (-1, 0, 1)}
    return next(f"{n:06d}" for n in range(1000000) if f"{n:06d}" not in valid)


def _error(response):
    body = response.json()
    assert body["status"] == "error"
    return body["error"]


class TestAuthFlow:
    def test_sign_up_then_session(self, client):
        user_id, token = _sign_up(client, "alice@example.com", "Alice")

        response = client.get("/v1/auth/session", headers=_auth(token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["id"] == user_id
        assert data["user"]["name"] == "Alice"
        assert data["session"]["token"] == token
        assert response.headers["X-Request-ID"]

    def test_cookie_authenticates(self, client):
        _sign_up(client, "alice@example.com")

        response = client.get("/v1/auth/session")

        assert response.status_code == 200

    def test_anonymous_is_unauthorized(self, client):
        client.cookies.clear()

        response = client.get("/v1/sessions")

        assert response.status_code == 401
        assert _error(response)["code"] == "unauthorized"

    def test_wrong_password(self, client):
        _sign_up(client, "alice@example.com")

        response = _sign_in(client, "alice@example.com", "wrong-password")

        assert response.status_code == 401
        error = _error(response)
        assert error["code"] == "invalid_credential"
        assert error["details"]["reason"] == "invalid_password"

    def test_duplicate_sign_up(self, client):
        _sign_up(client, "alice@example.com")

        response = client.post(
            "/v1/auth/sign-up", json={"email": "ALICE@example.com", "password": PASSWORD}
        )

        assert response.status_code == 409
        error = _error(response)
        assert error["code"] == "already_exists"
        assert error["details"]["reason"] == "email_taken"

    def test_malformed_body_is_validation_error(self, client):
        response = client.post("/v1/auth/sign-up", json={"email": "not-an-email"})

        assert response.status_code == 400
        assert _error(response)["code"] == "validation_error"

    def test_sign_in_reports_rate_limit(self, client):
        _sign_up(client, "alice@example.com")

        response = _sign_in(client, "alice@example.com")

        assert response.status_code == 200
        limit = int(response.headers["X-RateLimit-Limit"])
        assert limit == get_runtime().settings.login_rate_limit_per_minute
        assert 0 <= int(response.headers["X-RateLimit-Remaining"]) < limit
        assert "X-RateLimit-Reset" in response.headers

    def test_change_password(self, client):
        _, token = _sign_up(client, "alice@example.com")
        other = _sign_in(client, "alice@example.com").json()["data"]["session"]["token"]

        wrong = client.post(
            "/v1/me/password",
            json={"current_password": "wrong-password", "new_password": "BrandNewPass99!"},
            headers=_auth(token),
        )
        assert wrong.status_code == 401

        changed = client.post(
            "/v1/me/password",
            json={
                "current_password": PASSWORD,
                "new_password": "BrandNewPass99!",
                "revoke_other_sessions": True,
            },
            headers=_auth(token),
        )
        assert changed.status_code == 200
        assert changed.json()["data"] == {"revoked": 1}
        assert client.get("/v1/auth/session", headers=_auth(token)).status_code == 200
        assert client.get("/v1/auth/session", headers=_auth(other)).status_code == 401
        assert _sign_in(client, "alice@example.com", "BrandNewPass99!").status_code == 200

    def test_sign_out_invalidates_token(self, client):
        _, token = _sign_up(client, "alice@example.com")

        assert client.post("/v1/auth/sign-out", headers=_auth(token)).status_code == 200
        assert client.get("/v1/auth/session", headers=_auth(token)).status_code == 401


class TestSessionRevocation:
    def test_revoked_session_gets_401(self, client):
        _, first = _sign_up(client, "alice@example.com")
        second = _sign_in(client, "alice@example.com").json()["data"]["session"]["token"]

        listed = client.get("/v1/sessions", headers=_auth(second)).json()["data"]["items"]
        assert {s["token"] for s in listed} == {first, second}

        response = client.post(
            "/v1/sessions/revoke", json={"token": first}, headers=_auth(second)
        )
        assert response.status_code == 200
        assert response.json()["data"]["own_session"] is False

        assert client.get("/v1/sessions", headers=_auth(first)).status_code == 401
        assert client.get("/v1/sessions", headers=_auth(second)).status_code == 200

    def test_revoke_others(self, client):
        _, first = _sign_up(client, "alice@example.com")
        second = _sign_in(client, "alice@example.com").json()["data"]["session"]["token"]

        response = client.post("/v1/sessions/revoke-others", headers=_auth(second))

        assert response.json()["data"]["revoked"] == 1
        assert client.get("/v1/sessions", headers=_auth(first)).status_code == 401

    def test_cannot_revoke_foreign_token(self, client):
        _, alice = _sign_up(client, "alice@example.com")
        _, bob = _sign_up(client, "bob@example.com")

        response = client.post("/v1/sessions/revoke", json={"token": bob}, headers=_auth(alice))

        assert response.status_code == 404
        assert client.get("/v1/auth/session", headers=_auth(bob)).status_code == 200


class TestOrganizationsAndInvitations:
    def test_acme_invitation_round_trip(self, client):
        _, alice = _sign_up(client, "alice@example.com")
        created = client.post(
            "/v1/organizations", json={"name": "Acme", "slug": "acme"}, headers=_auth(alice)
        )
        assert created.status_code == 201
        org_id = created.json()["data"]["organization"]["id"]
        assert created.json()["data"]["role"] == "owner"

        invited = client.post(
            f"/v1/organizations/{org_id}/invitations",
            json={"email": "bob@example.com", "role": "member"},
            headers=_auth(alice),
        )
        assert invited.status_code == 201
        invitation_id = invited.json()["data"]["id"]

        bob_id, bob = _sign_up(client, "bob@example.com")
        pending = client.get("/v1/invitations", headers=_auth(bob)).json()["data"]["items"]
        assert [inv["organization_slug"] for inv in pending] == ["acme"]

        accepted = client.post(f"/v1/invitations/{invitation_id}/accept", headers=_auth(bob))
        assert accepted.status_code == 200
        assert accepted.json()["data"]["member"]["role"] == "member"

        session = client.get("/v1/auth/session", headers=_auth(bob)).json()["data"]["session"]
        assert session["active_organization_id"] == org_id

        full = client.get(f"/v1/organizations/{org_id}", headers=_auth(bob)).json()["data"]
        assert {m["user_id"] for m in full["members"]} >= {bob_id}

        again = client.post(f"/v1/invitations/{invitation_id}/accept", headers=_auth(bob))
        assert again.status_code == 409
        assert _error(again)["code"] == "invalid_state"

        reinvite = client.post(
            f"/v1/organizations/{org_id}/invitations",
            json={"email": "bob@example.com"},
            headers=_auth(alice),
        )
        assert reinvite.status_code == 409
        assert _error(reinvite)["details"]["reason"] == "already_member"

    def test_last_owner_cannot_leave(self, client):
        _, alice = _sign_up(client, "alice@example.com")
        org_id = client.post(
            "/v1/organizations", json={"name": "Acme", "slug": "acme"}, headers=_auth(alice)
        ).json()["data"]["organization"]["id"]

        response = client.post(f"/v1/organizations/{org_id}/leave", headers=_auth(alice))

        assert response.status_code == 409
        assert _error(response)["code"] == "last_owner"

    def test_outsider_cannot_read_organization(self, client):
        _, alice = _sign_up(client, "alice@example.com")
        _, mallory = _sign_up(client, "mallory@example.com")
        org_id = client.post(
            "/v1/organizations", json={"name": "Acme", "slug": "acme"}, headers=_auth(alice)
        ).json()["data"]["organization"]["id"]

        response = client.get(f"/v1/organizations/{org_id}", headers=_auth(mallory))

        assert response.status_code == 403
        assert _error(response)["code"] == "forbidden"

    def test_slug_lookup(self, client):
        _, alice = _sign_up(client, "alice@example.com")
        _, mallory = _sign_up(client, "mallory@example.com")
        org_id = client.post(
            "/v1/organizations", json={"name": "Acme", "slug": "acme"}, headers=_auth(alice)
        ).json()["data"]["organization"]["id"]

        found = client.get("/v1/organizations/by-slug/acme", headers=_auth(alice))
        hidden = client.get("/v1/organizations/by-slug/acme", headers=_auth(mallory))
        missing = client.get("/v1/organizations/by-slug/nope", headers=_auth(alice))

        assert found.json()["data"]["id"] == org_id
        assert hidden.status_code == 403
        assert missing.status_code == 404

    def test_has_permission_endpoint(self, client):
        _, alice = _sign_up(client, "alice@example.com")
        org_id = client.post(
            "/v1/organizations", json={"name": "Acme", "slug": "acme"}, headers=_auth(alice)
        ).json()["data"]["organization"]["id"]

        response = client.post(
            "/v1/access/has-permission",
            json={"permissions": {"member": ["delete"]}, "organization_id": org_id},
            headers=_auth(alice),
        )

        assert response.json()["data"] == {"allowed": True, "reason": None}


class TestTwoFactorFlow:
    def test_enroll_sign_in_and_verify(self, client):
        user_id, token = _sign_up(client, "alice@example.com")

        begin = client.post(
            "/v1/two-factor/enable", json={"password": PASSWORD}, headers=_auth(token)
        )
        assert begin.status_code == 200
        assert begin.json()["data"]["totp_uri"].startswith("otpauth://totp/")

        wrong = client.post(
            "/v1/two-factor/enable/verify",
            json={"code": _wrong_totp(user_id)},
            headers=_auth(token),
        )
        assert wrong.status_code == 401
        assert _error(wrong)["details"]["reason"] == "invalid_code"
        status = client.get("/v1/two-factor", headers=_auth(token)).json()["data"]
        assert status["state"] == "pending_verification"

        verified = client.post(
            "/v1/two-factor/enable/verify", json={"code": _totp(user_id)}, headers=_auth(token)
        )
        assert verified.status_code == 200
        assert client.get("/v1/two-factor", headers=_auth(token)).json()["data"]["enabled"]

        signed_in = _sign_in(client, "alice@example.com").json()["data"]
        assert signed_in["two_factor_required"] is True
        pending = signed_in["session"]["token"]
        assert client.get("/v1/auth/session", headers=_auth(pending)).status_code == 401

        response = client.post(
            "/v1/auth/two-factor/verify", json={"code": _totp(user_id)}, headers=_auth(pending)
        )
        assert response.status_code == 200
        assert client.get("/v1/auth/session", headers=_auth(pending)).status_code == 200

    def test_emailed_code_completes_sign_in(self, client, sent_emails):
        user_id, token = _sign_up(client, "alice@example.com")
        client.post("/v1/two-factor/enable", json={"password": PASSWORD}, headers=_auth(token))
        client.post(
            "/v1/two-factor/enable/verify", json={"code": _totp(user_id)}, headers=_auth(token)
        )
        pending = _sign_in(client, "alice@example.com").json()["data"]["session"]["token"]

        sent = client.post("/v1/auth/two-factor/otp/send", headers=_auth(pending))
        assert sent.status_code == 200
        assert sent.json()["data"] == {"sent": True}
        assert "X-RateLimit-Remaining" in sent.headers
        code = re.search(r"code is (\d{6})", sent_emails[-1]["text"]).group(1)

        response = client.post(
            "/v1/auth/two-factor/otp/verify", json={"code": code}, headers=_auth(pending)
        )
        assert response.status_code == 200
        assert client.get("/v1/auth/session", headers=_auth(pending)).status_code == 200

        reused = client.post(
            "/v1/auth/two-factor/otp/verify", json={"code": code}, headers=_auth(pending)
        )
        assert reused.status_code == 410

    def test_totp_uri_for_enabled_user(self, client):
        user_id, token = _sign_up(client, "alice@example.com")

        disabled = client.post(
            "/v1/two-factor/totp-uri", json={"password": PASSWORD}, headers=_auth(token)
        )
        assert disabled.status_code == 403

        begin = client.post(
            "/v1/two-factor/enable", json={"password": PASSWORD}, headers=_auth(token)
        )
        client.post(
            "/v1/two-factor/enable/verify", json={"code": _totp(user_id)}, headers=_auth(token)
        )
        response = client.post(
            "/v1/two-factor/totp-uri", json={"password": PASSWORD}, headers=_auth(token)
        )

        assert response.status_code == 200
        assert response.json()["data"]["totp_uri"] == begin.json()["data"]["totp_uri"]

    def test_step_up_required_for_high_risk_actions(self, client):
        user_id, token = _sign_up(client, "alice@example.com")
        client.post("/v1/two-factor/enable", json={"password": PASSWORD}, headers=_auth(token))
        client.post(
            "/v1/two-factor/enable/verify", json={"code": _totp(user_id)}, headers=_auth(token)
        )
        store = get_runtime().store
        store.two_factor[user_id].last_verified_at = utcnow() - timedelta(hours=1)

        denied = client.post("/v1/sessions/revoke-others", headers=_auth(token))
        assert denied.status_code == 403
        assert _error(denied)["details"]["reason"] == "two_factor_required"

        allowed = client.post(
            "/v1/sessions/revoke-others",
            headers={**_auth(token), "X-Two-Factor-Code": _totp(user_id)},
        )
        assert allowed.status_code == 200


class TestEmailDelivery:
    """Outgoing mail goes out from a worker thread, never on the event loop."""

    def test_invitation_email(self, client, sent_emails):
        _, alice = _sign_up(client, "alice@example.com")
        org_id = client.post(
            "/v1/organizations", json={"name": "Acme", "slug": "acme"}, headers=_auth(alice)
        ).json()["data"]["organization"]["id"]

        invited = client.post(
            f"/v1/organizations/{org_id}/invitations",
            json={"email": "bob@example.com"},
            headers=_auth(alice),
        )

        assert invited.status_code == 201
        assert [(mail["to"], mail["on_loop"]) for mail in sent_emails] == [
            ("bob@example.com", False)
        ]
        assert invited.json()["data"]["id"] in sent_emails[0]["text"]

    def test_account_emails(self, client, sent_emails):
        user_id, token = _sign_up(client, "alice@example.com")

        client.post("/v1/auth/email-verification/request", headers=_auth(token))
        client.post("/v1/auth/password-reset/request", json={"email": "alice@example.com"})
        client.post("/v1/two-factor/enable", json={"password": PASSWORD}, headers=_auth(token))
        client.post(
            "/v1/two-factor/enable/verify", json={"code": _totp(user_id)}, headers=_auth(token)
        )

        assert len(sent_emails) == 3
        assert {mail["to"] for mail in sent_emails} == {"alice@example.com"}
        assert not any(mail["on_loop"] for mail in sent_emails)


class TestAdministration:
    @pytest.fixture
    def admin_token(self, client):
        get_runtime().identity.create_user("root@example.com", "Root", PASSWORD, role="admin")
        response = _sign_in(client, "root@example.com")
        assert response.status_code == 200, response.text
        return response.json()["data"]["session"]["token"]

    def test_admin_cannot_grant_superadmin(self, client, admin_token):
        user_id, _ = _sign_up(client, "bob@example.com")

        response = client.post(
            f"/v1/admin/users/{user_id}/role",
            json={"role": "superadmin"},
            headers=_auth(admin_token),
        )

        assert response.status_code == 403
        assert _error(response)["code"] == "forbidden"

    def test_regular_user_cannot_list_users(self, client):
        _, token = _sign_up(client, "bob@example.com")

        assert client.get("/v1/admin/users", headers=_auth(token)).status_code == 403

    def test_ban_revokes_sessions_and_blocks_sign_in(self, client, admin_token):
        user_id, bob = _sign_up(client, "bob@example.com")

        response = client.post(
            f"/v1/admin/users/{user_id}/ban",
            json={"reason": "spam"},
            headers=_auth(admin_token),
        )
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert response.json()["data"]["user"]["banned"] is True

        assert client.get("/v1/auth/session", headers=_auth(bob)).status_code == 401
        signed_in = _sign_in(client, "bob@example.com")
        assert signed_in.status_code == 403
        assert _error(signed_in)["details"]["ban_reason"] == "spam"

    def test_impersonation_round_trip(self, client, admin_token):
        user_id, _ = _sign_up(client, "bob@example.com")

        started = client.post(
            f"/v1/admin/users/{user_id}/impersonate", headers=_auth(admin_token)
        )
        assert started.status_code == 200
        session = started.json()["data"]["session"]
        assert session["impersonated_by"] is not None

        as_bob = client.get("/v1/auth/session", headers=_auth(session["token"]))
        assert as_bob.json()["data"]["user"]["id"] == user_id

        stopped = client.post("/v1/admin/impersonation/stop", headers=_auth(session["token"]))
        assert stopped.status_code == 200
        assert client.get("/v1/auth/session", headers=_auth(session["token"])).status_code == 401
        assert stopped.json()["data"]["session"]["token"] == admin_token
        # the cookie now carries the admin's own session again
        resumed = client.get("/v1/auth/session").json()["data"]
        assert resumed["user"]["email"] == "root@example.com"


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["redis"]["status"] == "not_configured"
