"""Error envelope rendering and message sanitization.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": ...
}
"""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from tenantgate.api.error_handling import (
    _error_code_for_status,
    register_exception_handlers,
)
from tenantgate.logging import sanitize_error_message
from tenantgate.service.errors import LastOwnerError, ServerError


@pytest.fixture
def client():
    """A bare app with the handlers and a few failing routes."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/server-error")
    async def server_error():
        raise ServerError("query failed: SELECT * FROM users WHERE email = 'a@b.c'")

    @app.get("/http-500")
    async def http_500():
        raise HTTPException(status_code=500, detail="config missing at /etc/tenantgate/secrets")

    @app.get("/last-owner")
    async def last_owner():
        raise LastOwnerError("organization must keep at least one owner")

    return TestClient(app)


class TestStatusCodes:
    @pytest.mark.parametrize(
        "status,code",
        [(401, "unauthorized"), (404, "not_found"), (410, "expired"), (418, "server_error")],
    )
    def test_code_for_status(self, status, code):
        assert _error_code_for_status(status) == code


class TestSanitize:
    def test_strips_queries(self):
        assert "users" not in sanitize_error_message("SELECT id FROM users WHERE x = 1")

    def test_strips_paths_and_secrets(self):
        cleaned = sanitize_error_message("password=hunter2 while reading /var/lib/app/db")

        assert "hunter2" not in cleaned
        assert "/var/lib" not in cleaned

    def test_empty_message(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_long_messages_are_truncated(self):
        assert len(sanitize_error_message("x" * 2000)) == 500


class TestHandlers:
    def test_server_error_message_is_sanitized(self, client):
        response = client.get("/server-error")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert "SELECT" not in error["message"]
        assert "a@b.c" not in error["message"]

    def test_http_500_message_is_sanitized(self, client):
        response = client.get("/http-500")

        assert response.status_code == 500
        assert "/etc/tenantgate" not in response.json()["error"]["message"]

    def test_client_errors_keep_their_message(self, client):
        response = client.get("/last-owner")

        body = response.json()
        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"]["code"] == "last_owner"
        assert body["error"]["message"] == "organization must keep at least one owner"
