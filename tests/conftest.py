import asyncio
import inspect
import os
import tempfile

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-memory rate limits and tokens; each test gets a fresh runtime so nothing leaks
os.environ["REDIS_URL"] = ""
os.environ.setdefault("SIGNUP_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("INVITATION_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")

import pytest  # noqa: E402

from tenantgate.service.email import EmailService  # noqa: E402
from tenantgate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

PASSWORD = "CorrectHorse42!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # a fresh state directory per test keeps the persisted memory store empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def make_user(runtime):
    """Factory creating a user with ``PASSWORD``; promote with ``role``."""

    def _make(email: str, role: str = "user", *, password: str = PASSWORD):
        return runtime.identity.create_user(email, email.split("@")[0], password, role=role)

    return _make


@pytest.fixture
def sent_emails(monkeypatch):
    """Record each outgoing email and whether it was sent on the event loop thread."""
    sent = []
    original = EmailService._send_email

    def _recording(self, to_email, subject, html_body, text_body=None):
        try:
            asyncio.get_running_loop()
            on_loop = True
        except RuntimeError:
            on_loop = False
        sent.append({"to": to_email, "subject": subject, "text": text_body, "on_loop": on_loop})
        return original(self, to_email, subject, html_body, text_body)

    monkeypatch.setattr(EmailService, "_send_email", _recording)
    return sent


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
