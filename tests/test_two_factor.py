"""Two-factor gate: TOTP primitives, enrollment, sign-in, emailed codes and step-up."""

import time
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from tenantgate.config import Settings
from tenantgate.service.errors import (
    ExpiredError,
    ForbiddenError,
    InvalidCodeError,
    InvalidPasswordError,
    InvalidStateError,
    RateLimitedError,
    TwoFactorRequiredError,
)
from tenantgate.service.two_factor import (
    OTP_MAX_ATTEMPTS,
    AttemptLockout,
    LockoutPolicy,
    build_lockout_policy,
    generate_secret,
    generate_totp,
    verify_totp,
)
from tenantgate.storage.models import utcnow

PASSWORD = "CorrectHorse42!"


def _current_code(store, user_id):
    return generate_totp(store.get_two_factor(user_id).secret, time.time())


def _wrong_code(store, user_id):
    # any code outside the accepted window of the current one
    secret = store.get_two_factor(user_id).secret
    valid = {generate_totp(secret, time.time() + step * 30) for step in (-1, 0, 1)}
    return next(f"{n:06d}" for n in range(1000000) if f"{n:06d}" not in valid)


def _enable(runtime, user_id, session_id=None):
    runtime.two_factor.begin_enable(user_id, PASSWORD)
    runtime.two_factor.verify_enable(
        user_id, _current_code(runtime.store, user_id), session_id=session_id
    )


class TestTotp:
    def test_rfc6238_reference_vector(self):
        # RFC 6238 appendix B, SHA1 secret "12345678901234567890", T=59
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert generate_totp(secret, 59, digits=8) == "94287082"
        assert generate_totp(secret, 59) == "287082"

    def test_adjacent_steps_are_accepted(self):
        secret = generate_secret()
        now = time.time()
        previous = generate_totp(secret, now - 30)

        assert verify_totp(secret, previous, at=now)
        assert not verify_totp(secret, previous, at=now + 90)

    def test_non_numeric_codes_are_rejected(self):
        secret = generate_secret()
        assert not verify_totp(secret, "")
        assert not verify_totp(secret, "abcdef")

    def test_invalid_secret_yields_no_code(self):
        assert generate_totp("not base32!", time.time()) == ""


class TestEnrollment:
    def test_begin_enable_moves_to_pending(self, runtime, make_user):
        user = make_user("alice@example.com")

        provisioning = runtime.two_factor.begin_enable(user.id, PASSWORD)

        uri = urlparse(provisioning["totp_uri"])
        assert uri.scheme == "otpauth"
        assert parse_qs(uri.query)["issuer"] == [runtime.settings.two_factor_issuer]
        status = runtime.two_factor.status(user.id)
        assert status.state == "pending_verification"
        assert status.enabled is False
        assert runtime.identity.get_user(user.id).two_factor_enabled is False

    def test_wrong_password_does_not_start(self, runtime, make_user):
        user = make_user("alice@example.com")

        with pytest.raises(InvalidPasswordError):
            runtime.two_factor.begin_enable(user.id, "not-my-password")
        assert runtime.two_factor.status(user.id).state == "disabled"

    def test_passwordless_user_cannot_enable(self, runtime):
        user = runtime.identity.create_user("oauth@example.com")

        with pytest.raises(ForbiddenError):
            runtime.two_factor.begin_enable(user.id, "anything")

    def test_wrong_code_stays_pending_then_correct_code_enables(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        runtime.two_factor.begin_enable(user.id, PASSWORD)

        with pytest.raises(InvalidCodeError) as excinfo:
            runtime.two_factor.verify_enable(user.id, _wrong_code(store, user.id))
        assert excinfo.value.detail["attempts"] == 1
        assert runtime.two_factor.status(user.id).state == "pending_verification"

        runtime.two_factor.verify_enable(user.id, _current_code(store, user.id))

        assert runtime.two_factor.status(user.id).state == "enabled"
        assert runtime.identity.get_user(user.id).two_factor_enabled is True

    def test_repeated_failures_discard_provisioning(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        runtime.two_factor.begin_enable(user.id, PASSWORD)
        wrong = _wrong_code(store, user.id)
        limit = runtime.settings.two_factor_max_provisioning_failures

        for _ in range(limit - 1):
            with pytest.raises(InvalidCodeError):
                runtime.two_factor.verify_enable(user.id, wrong)
        with pytest.raises(InvalidCodeError) as excinfo:
            runtime.two_factor.verify_enable(user.id, wrong)

        assert excinfo.value.detail["provisioning_invalidated"] is True
        assert runtime.two_factor.status(user.id).state == "disabled"
        with pytest.raises(InvalidStateError):
            runtime.two_factor.verify_enable(user.id, wrong)

    def test_provisioning_times_out(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        runtime.two_factor.begin_enable(user.id, PASSWORD)
        code = _current_code(store, user.id)
        timeout = runtime.settings.two_factor_provisioning_timeout_minutes
        store.two_factor[user.id].pending_since = utcnow() - timedelta(minutes=timeout + 1)

        with pytest.raises(InvalidStateError):
            runtime.two_factor.verify_enable(user.id, code)
        assert runtime.two_factor.status(user.id).state == "disabled"

    def test_verify_without_enrollment_is_invalid_state(self, runtime, make_user):
        user = make_user("alice@example.com")

        with pytest.raises(InvalidStateError):
            runtime.two_factor.verify_enable(user.id, "123456")

    def test_cannot_begin_when_enabled(self, runtime, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)

        with pytest.raises(ForbiddenError):
            runtime.two_factor.begin_enable(user.id, PASSWORD)

    def test_disable_needs_password(self, runtime, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)

        with pytest.raises(InvalidPasswordError):
            runtime.two_factor.disable(user.id, "wrong-password")
        runtime.two_factor.disable(user.id, PASSWORD)

        assert runtime.two_factor.status(user.id).state == "disabled"
        assert runtime.identity.get_user(user.id).two_factor_enabled is False

    def test_secret_is_encrypted_at_rest(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        runtime.two_factor.begin_enable(user.id, PASSWORD)

        plain = store.get_two_factor(user.id).secret

        assert store.two_factor[user.id].secret != plain


class TestSignIn:
    async def test_sign_in_session_waits_for_second_factor(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)

        _, session = await runtime.auth.sign_in("alice@example.com", PASSWORD)

        assert session.two_factor_pending is True
        assert runtime.sessions.resolve(session.token) is None

        with pytest.raises(InvalidCodeError):
            await runtime.two_factor.verify(
                user.id, _wrong_code(store, user.id), session_id=session.id
            )
        assert runtime.sessions.resolve(session.token) is None

        await runtime.two_factor.verify(
            user.id, _current_code(store, user.id), session_id=session.id
        )
        assert runtime.sessions.resolve(session.token) is not None

    async def test_verify_when_disabled_is_invalid_state(self, runtime, make_user):
        user = make_user("alice@example.com")

        with pytest.raises(InvalidStateError):
            await runtime.two_factor.verify(user.id, "123456")


class TestTotpUri:
    def test_enabled_user_gets_the_same_secret(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)

        uri = urlparse(runtime.two_factor.get_totp_uri(user.id, PASSWORD)["totp_uri"])

        assert uri.scheme == "otpauth"
        assert parse_qs(uri.query)["secret"] == [store.get_two_factor(user.id).secret]

    def test_needs_password(self, runtime, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)

        with pytest.raises(InvalidPasswordError):
            runtime.two_factor.get_totp_uri(user.id, "wrong-password")

    def test_not_available_while_pending(self, runtime, make_user):
        user = make_user("alice@example.com")
        runtime.two_factor.begin_enable(user.id, PASSWORD)

        with pytest.raises(ForbiddenError):
            runtime.two_factor.get_totp_uri(user.id, PASSWORD)


class TestEmailOtp:
    async def test_emailed_code_completes_sign_in(self, runtime, make_user, sent_emails):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)
        _, session = await runtime.auth.sign_in("alice@example.com", PASSWORD)

        code = await runtime.two_factor.send_otp(user.id)

        assert len(code) == 6 and code.isdigit()
        assert sent_emails[-1]["to"] == "alice@example.com"
        assert code in sent_emails[-1]["text"]
        assert sent_emails[-1]["on_loop"] is False
        assert runtime.sessions.resolve(session.token) is None

        await runtime.two_factor.verify_otp(user.id, code, session_id=session.id)

        assert runtime.sessions.resolve(session.token) is not None

    async def test_code_is_single_use(self, runtime, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)
        code = await runtime.two_factor.send_otp(user.id)
        await runtime.two_factor.verify_otp(user.id, code)

        with pytest.raises(ExpiredError):
            await runtime.two_factor.verify_otp(user.id, code)

    async def test_wrong_guesses_then_right_code(self, runtime, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)
        code = await runtime.two_factor.send_otp(user.id)
        wrong = "000000" if code != "000000" else "111111"

        with pytest.raises(InvalidCodeError) as excinfo:
            await runtime.two_factor.verify_otp(user.id, wrong)
        assert excinfo.value.detail["attempts"] == 1

        await runtime.two_factor.verify_otp(user.id, code)

    async def test_too_many_wrong_guesses_burn_the_code(self, runtime, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)
        code = await runtime.two_factor.send_otp(user.id)
        wrong = "000000" if code != "000000" else "111111"

        for _ in range(OTP_MAX_ATTEMPTS):
            with pytest.raises(InvalidCodeError):
                await runtime.two_factor.verify_otp(user.id, wrong)

        with pytest.raises(ExpiredError):
            await runtime.two_factor.verify_otp(user.id, code)

    async def test_new_code_replaces_the_old_one(self, runtime, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)
        first = await runtime.two_factor.send_otp(user.id)
        second = await runtime.two_factor.send_otp(user.id)

        if first != second:
            with pytest.raises(InvalidCodeError):
                await runtime.two_factor.verify_otp(user.id, first)
        await runtime.two_factor.verify_otp(user.id, second)

    async def test_expired_code(self, runtime, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)
        code = await runtime.two_factor.send_otp(user.id)
        for key, (payload, _) in list(runtime.auth._tokens.items()):
            runtime.auth._tokens[key] = (payload, utcnow() - timedelta(seconds=1))

        with pytest.raises(ExpiredError):
            await runtime.two_factor.verify_otp(user.id, code)

    async def test_requires_two_factor(self, runtime, make_user):
        user = make_user("alice@example.com")

        with pytest.raises(InvalidStateError):
            await runtime.two_factor.send_otp(user.id)
        with pytest.raises(InvalidStateError):
            await runtime.two_factor.verify_otp(user.id, "123456")


class TestStepUp:
    async def test_passes_when_two_factor_is_off(self, runtime, make_user):
        user = make_user("alice@example.com")

        await runtime.two_factor.require_step_up(user.id)

    async def test_recent_verification_is_enough(self, runtime, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)

        await runtime.two_factor.require_step_up(user.id)

    async def test_stale_verification_needs_a_code(self, runtime, store, make_user):
        user = make_user("alice@example.com")
        _enable(runtime, user.id)
        window = runtime.settings.two_factor_step_up_window_minutes
        store.two_factor[user.id].last_verified_at = utcnow() - timedelta(minutes=window + 1)

        with pytest.raises(TwoFactorRequiredError) as excinfo:
            await runtime.two_factor.require_step_up(user.id)
        assert excinfo.value.detail["reason"] == "two_factor_required"

        await runtime.two_factor.require_step_up(user.id, _current_code(store, user.id))


class TestLockout:
    def test_default_policy_never_locks(self):
        policy = build_lockout_policy(Settings(secret_key="x" * 32), None)

        assert type(policy) is LockoutPolicy

    def test_configured_policy(self):
        settings = Settings(secret_key="x" * 32, login_lockout_max_attempts=3)

        assert isinstance(build_lockout_policy(settings, None), AttemptLockout)

    async def test_in_memory_lockout_after_threshold(self):
        lockout = AttemptLockout(max_attempts=2, lockout_seconds=60)

        assert await lockout.register_failure("login", "abc") is False
        assert await lockout.register_failure("login", "abc") is True
        assert await lockout.is_locked("login", "abc") is True
        assert await lockout.is_locked("login", "other") is False

    async def test_locked_sign_in_is_rate_limited(self, runtime, make_user):
        make_user("alice@example.com")
        runtime.auth.lockout = AttemptLockout(max_attempts=2, lockout_seconds=60)

        for _ in range(2):
            with pytest.raises(InvalidPasswordError):
                await runtime.auth.sign_in("alice@example.com", "wrong-password")
        with pytest.raises(RateLimitedError):
            await runtime.auth.sign_in("alice@example.com", PASSWORD)
