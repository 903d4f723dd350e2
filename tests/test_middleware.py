"""Tests for response headers, the route boundary guard and auth helpers."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from taskhub import app as app_module
from taskhub.api.deps import ensure_owner, get_client_ip, requires_auth
from taskhub.api.error_handling import register_exception_handlers
from taskhub.api.middleware import classify_path
from taskhub.service.authenticator import Principal
from taskhub.service.errors import NotFoundError
from taskhub.service.security import SECURITY_HEADERS


@pytest.fixture
def client():
    return TestClient(app_module.app, follow_redirects=False)


@pytest.fixture
def legacy_token(runtime):
    account = runtime.credentials.create(
        "alice@example.com", first_name="Alice", last_name="Smith", password="Passw0rd!"
    )
    return runtime.tokens.issue(account.id, account.email)


class TestResponseHeaders:
    @pytest.mark.parametrize("path", ["/healthz", "/api/auth/me", "/api/missing", "/auth/login"])
    def test_security_headers_on_every_response(self, client, path):
        response = client.get(path)

        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value

    def test_headers_on_unhandled_error(self, runtime, legacy_token):
        client = TestClient(app_module.app, raise_server_exceptions=False)
        with patch.object(runtime.credentials, "find_by_id", side_effect=RuntimeError("boom")):
            response = client.get(
                "/api/auth/me",
                headers={"Authorization": f"Bearer {legacy_token}", "X-Request-ID": "req-500"},
            )

        assert response.status_code == 500
        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value
        assert response.headers["X-Request-ID"] == "req-500"
        assert response.json()["request_id"] == "req-500"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        first = client.get("/healthz").headers["X-Request-ID"]
        second = client.get("/healthz").headers["X-Request-ID"]

        assert first and second and first != second


class TestBoundaryGuard:
    @pytest.mark.parametrize(
        "path, kind",
        [
            ("/dashboard", "protected"),
            ("/dashboard/projects/1", "protected"),
            ("/dashboards", None),
            ("/auth/login", "auth"),
            ("/auth/register", "auth"),
            ("/auth/login-help", None),
            ("/api/auth/login", None),
            ("/", None),
        ],
    )
    def test_classify_path(self, path, kind):
        assert classify_path(path) == kind

    def test_protected_page_redirects_to_login(self, client):
        response = client.get("/dashboard")

        assert response.status_code == 307
        assert response.headers["location"] == "/auth/login?callbackUrl=%2Fdashboard"

    def test_protected_page_renders_when_signed_in(self, client, legacy_token):
        response = client.get("/dashboard", headers={"Authorization": f"Bearer {legacy_token}"})

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "alice@example.com"
        assert response.json()["data"]["first_name"] == ""

    def test_auth_page_redirects_home_when_signed_in(self, client, legacy_token):
        response = client.get("/auth/login", headers={"Cookie": f"token={legacy_token}"})

        assert response.status_code == 307
        assert response.headers["location"] == "/dashboard"

    def test_auth_page_renders_for_anonymous(self, client):
        response = client.get("/auth/login", params={"callbackUrl": "/dashboard"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["callback_url"] == "/dashboard"
        assert [provider["id"] for provider in data["providers"]] == ["google", "github"]

    def test_invalid_token_counts_as_anonymous(self, client):
        response = client.get("/dashboard", headers={"Authorization": "Bearer not-a-token"})

        assert response.status_code == 307

    def test_latin1_signature_counts_as_anonymous(self, client, legacy_token):
        header, payload, _ = legacy_token.split(".")
        authorization = f"Bearer {header}.{payload}.".encode() + b"\xe9\xe9"

        assert client.get("/dashboard", headers={"Authorization": authorization}).status_code == 307
        response = client.get("/api/auth/me", headers={"Authorization": authorization})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestRequiresAuthDecorator:
    @pytest.fixture
    def mini_client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/whoami")
        @requires_auth
        async def whoami(principal: Principal):
            return {"user_id": principal.user_id}

        @app.get("/items/{item_id}")
        @requires_auth
        async def item(item_id: int, request: Request, principal: Principal):
            return {"item_id": item_id, "path": request.url.path, "email": principal.email}

        return TestClient(app)

    def test_unauthenticated_call_is_rejected(self, mini_client):
        response = mini_client.get("/whoami")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authentication required"

    def test_principal_is_injected(self, mini_client, runtime):
        token = runtime.tokens.issue("user-1", "alice@example.com")

        response = mini_client.get("/whoami", headers={"Authorization": f"Bearer {token}"})

        assert response.json() == {"user_id": "user-1"}

    def test_handler_keeps_its_own_parameters(self, mini_client, runtime):
        token = runtime.tokens.issue("user-1", "alice@example.com")

        response = mini_client.get("/items/7", headers={"Authorization": f"Bearer {token}"})

        assert response.json() == {"item_id": 7, "path": "/items/7", "email": "alice@example.com"}


class TestHelpers:
    def test_ensure_owner(self):
        principal = Principal(user_id="user-1", email="alice@example.com")

        ensure_owner("user-1", principal)
        with pytest.raises(NotFoundError):
            ensure_owner("user-2", principal)

    def test_client_ip_prefers_first_forwarded_hop(self):
        request = SimpleNamespace(
            headers={"x-forwarded-for": "203.0.113.5, 10.0.0.1"},
            client=SimpleNamespace(host="10.0.0.1"),
        )
        assert get_client_ip(request) == "203.0.113.5"

    def test_client_ip_falls_back_to_peer(self):
        request = SimpleNamespace(headers={}, client=SimpleNamespace(host="10.0.0.9"))
        assert get_client_ip(request) == "10.0.0.9"

        assert get_client_ip(SimpleNamespace(headers={}, client=None)) == "unknown"
