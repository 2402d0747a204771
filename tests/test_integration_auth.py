"""Integration tests for the auth API.

Tests the complete flow through FastAPI including:
- Password login
- Token refresh and replay detection
- SSO start and callback
- Logout
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from examauth import app as app_module
from examauth.service.oidc import HttpOidcProvider
from examauth.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def student():
    runtime = get_runtime()
    user = runtime.store.create_user("student@example.com", "Sam Student", roles=["student"])
    runtime.credentials.save_password(user.id, PASSWORD)
    return user


@pytest.fixture
def idp():
    """Point the runtime's OIDC client at a mocked provider."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/token"):
            return httpx.Response(200, json={"access_token": "idp-access"})
        return httpx.Response(
            200,
            json={
                "sub": "campus-42",
                "email": "new.student@example.com",
                "email_verified": True,
                "given_name": "New",
                "family_name": "Student",
            },
        )

    runtime = get_runtime()
    runtime.oidc.provider = HttpOidcProvider(
        runtime.settings, transport=httpx.MockTransport(handler)
    )
    return runtime.oidc.provider


def _login(client, email="student@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _error_code(response):
    return response.json()["error"]["code"]


class TestLogin:
    def test_login_returns_token_pair(self, client, student):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["token_type"] == "Bearer"
        assert data["access_token"] and data["refresh_token"]
        assert data["expires_in"] == 15 * 60
        assert data["user"]["email"] == "student@example.com"
        assert data["user"]["roles"] == ["student"]

    def test_response_headers(self, client, student):
        response = client.post(
            "/v1/auth/login",
            json={"email": "student@example.com", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_wrong_password_and_unknown_email_look_the_same(self, client, student):
        wrong = _login(client, password="nope")
        unknown = _login(client, email="ghost@example.com")
        malformed = _login(client, email="not-an-email")

        for response in (wrong, unknown, malformed):
            assert response.status_code == 401
            assert _error_code(response) == "invalid_credentials"
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_inactive_account(self, client, student):
        get_runtime().store.set_user_active(student.id, False)

        response = _login(client)

        assert response.status_code == 403
        assert _error_code(response) == "account_inactive"

    def test_missing_fields(self, client):
        response = client.post("/v1/auth/login", json={"email": "student@example.com"})

        assert response.status_code == 400
        assert _error_code(response) == "validation_error"


class TestRefresh:
    def test_rotation_and_replay(self, client, student):
        first = _login(client).json()["data"]["refresh_token"]

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": first})
        assert rotated.status_code == 200
        second = rotated.json()["data"]["refresh_token"]
        assert second != first

        replay = client.post("/v1/auth/refresh", json={"refresh_token": first})
        assert replay.status_code == 401
        assert _error_code(replay) == "token_reuse_detected"

        after = client.post("/v1/auth/refresh", json={"refresh_token": second})
        assert after.status_code == 401
        assert _error_code(after) == "token_expired_or_revoked"

        events = get_runtime().store.list_audit_events(category="security")
        assert [e.action for e in events] == ["refresh_token_reuse_detected"]

    def test_unknown_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "made-up"})

        assert response.status_code == 401
        assert _error_code(response) == "token_not_found"

    @pytest.mark.parametrize("payload", [{}, {"refresh_token": ""}, {"refresh_token": "   "}])
    def test_blank_token_rejected(self, client, payload):
        response = client.post("/v1/auth/refresh", json=payload)

        assert response.status_code == 400
        assert _error_code(response) == "validation_error"


class TestSso:
    def _start(self, client):
        response = client.post("/v1/auth/sso/start", json={})
        assert response.status_code == 200
        return response.json()["data"]

    def test_start_returns_authorization_url(self, client):
        data = self._start(client)

        query = parse_qs(urlparse(data["authorization_url"]).query)
        assert query["state"] == [data["state"]]
        assert query["code_challenge_method"] == ["S256"]

    def test_start_without_body(self, client):
        response = client.post("/v1/auth/sso/start")
        assert response.status_code == 200

    def test_start_rejects_insecure_redirect(self, client):
        response = client.post(
            "/v1/auth/sso/start", json={"redirect_uri": "http://evil.example.com/cb"}
        )

        assert response.status_code == 400
        assert _error_code(response) == "bad_request"

    def test_callback_provisions_user(self, client, idp):
        state = self._start(client)["state"]

        response = client.get(
            "/v1/auth/sso/callback", params={"code": "auth-code", "state": state}
        )

        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["email"] == "new.student@example.com"
        assert user["display_name"] == "New Student"
        assert user["roles"] == ["student"]

    def test_callback_state_is_single_use(self, client, idp):
        state = self._start(client)["state"]
        params = {"code": "auth-code", "state": state}
        assert client.get("/v1/auth/sso/callback", params=params).status_code == 200

        replay = client.get("/v1/auth/sso/callback", params=params)

        assert replay.status_code == 400
        assert _error_code(replay) == "state_already_used"

    def test_callback_unknown_state(self, client, idp):
        response = client.get(
            "/v1/auth/sso/callback", params={"code": "auth-code", "state": "forged"}
        )

        assert response.status_code == 400
        assert _error_code(response) == "state_not_found"

    def test_callback_missing_code(self, client, idp):
        state = self._start(client)["state"]

        response = client.get("/v1/auth/sso/callback", params={"state": state})

        assert response.status_code == 400
        assert _error_code(response) == "bad_request"

    def test_callback_provider_error(self, client, idp):
        state = self._start(client)["state"]

        response = client.get(
            "/v1/auth/sso/callback",
            params={"state": state, "error": "access_denied", "error_description": "no"},
        )

        assert response.status_code == 400
        assert _error_code(response) == "provider_error"

    def test_failure_redirect(self, client, idp, monkeypatch):
        monkeypatch.setattr(
            get_runtime().settings,
            "sso_failure_redirect_url",
            "https://exams.example.com/login",
        )

        response = client.get(
            "/v1/auth/sso/callback",
            params={"code": "auth-code", "state": "forged"},
            follow_redirects=False,
        )

        assert response.status_code == 303
        assert response.headers["location"] == (
            "https://exams.example.com/login?error=state_not_found"
        )

    def test_oversized_state_rejected(self, client, idp):
        response = client.get(
            "/v1/auth/sso/callback", params={"code": "auth-code", "state": "s" * 300}
        )

        assert response.status_code == 400
        assert _error_code(response) == "bad_request"

    def test_oversized_state_follows_failure_redirect(self, client, idp, monkeypatch):
        monkeypatch.setattr(
            get_runtime().settings,
            "sso_failure_redirect_url",
            "https://exams.example.com/login",
        )

        response = client.get(
            "/v1/auth/sso/callback",
            params={"code": "auth-code", "state": "s" * 300},
            follow_redirects=False,
        )

        assert response.status_code == 303
        assert response.headers["location"] == (
            "https://exams.example.com/login?error=bad_request"
        )


class TestLogout:
    def test_logout_revokes_chain(self, client, student):
        refresh = _login(client).json()["data"]["refresh_token"]

        assert client.post("/v1/auth/logout", json={"refresh_token": refresh}).status_code == 204
        assert client.post("/v1/auth/logout", json={"refresh_token": refresh}).status_code == 204

        response = client.post("/v1/auth/refresh", json={"refresh_token": refresh})
        assert _error_code(response) == "token_expired_or_revoked"

    def test_logout_strips_whitespace(self, client, student):
        refresh = _login(client).json()["data"]["refresh_token"]
        padded = f"  {refresh} "

        assert client.post("/v1/auth/logout", json={"refresh_token": padded}).status_code == 204

        response = client.post("/v1/auth/refresh", json={"refresh_token": padded})
        assert response.status_code == 401
        assert _error_code(response) == "token_expired_or_revoked"

    def test_logout_blank_token_rejected(self, client):
        response = client.post("/v1/auth/logout", json={"refresh_token": "   "})

        assert response.status_code == 400

    def test_logout_all_non_ascii_bearer(self, client, student):
        access = _login(client).json()["data"]["access_token"]
        header, payload, _ = access.split(".")
        forged = f"Bearer {header}.{payload}.sig\xe9".encode("latin-1")

        response = client.post("/v1/auth/logout/all", headers={"Authorization": forged})

        assert response.status_code == 401
        assert _error_code(response) == "unauthorized"

    def test_logout_all_requires_bearer(self, client):
        response = client.post("/v1/auth/logout/all")

        assert response.status_code == 401
        assert _error_code(response) == "unauthorized"

    def test_logout_all(self, client, student):
        first = _login(client).json()["data"]
        second = _login(client).json()["data"]

        response = client.post(
            "/v1/auth/logout/all",
            headers={"Authorization": f"Bearer {first['access_token']}"},
        )

        assert response.status_code == 204
        for refresh in (first["refresh_token"], second["refresh_token"]):
            result = client.post("/v1/auth/refresh", json={"refresh_token": refresh})
            assert _error_code(result) == "token_expired_or_revoked"


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
