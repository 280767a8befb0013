"""Integration tests for the authentication flow.

Covers registration, login, token refresh and rotation, logout, session
listing and access to protected routes through the request filter.
"""

import pytest
from fastapi.testclient import TestClient

from tokengate import app as app_module
from tokengate.service.filter import UNAUTHENTICATED_MESSAGE
from tokengate.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def registered(client):
    response = client.post(
        "/api/auth/register",
        json={
            "username": "alice",
            "email": "alice@example.com",
            "password": "Wonderland1",
        },
    )
    assert response.status_code == 201
    return response.json()["data"]


def _login(client, username="alice", password="Wonderland1"):
    return client.post(
        "/api/auth/login", json={"username": username, "password": password}
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _assert_unauthenticated(response):
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "unauthorized"
    assert body["error"]["message"] == UNAUTHENTICATED_MESSAGE


class TestRegistration:
    def test_register_returns_public_profile(self, registered):
        assert registered["username"] == "alice"
        assert registered["email"] == "alice@example.com"
        assert registered["role"] == "user"
        assert "password" not in registered

    def test_duplicate_username_is_conflict(self, client, registered):
        response = client.post(
            "/api/auth/register",
            json={
                "username": "alice",
                "email": "another@example.com",
                "password": "Wonderland1",
            },
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"]["code"] == "conflict"
        assert body["error"]["details"] == {"field": "username"}

    def test_invalid_payload_is_rejected(self, client):
        response = client.post(
            "/api/auth/register",
            json={"username": "a", "email": "not-an-email", "password": "x"},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_signup_can_be_disabled(self, client):
        get_runtime().settings.allow_signup = False
        response = client.post(
            "/api/auth/register",
            json={
                "username": "bob",
                "email": "bob@example.com",
                "password": "Builder123",
            },
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestLogin:
    def test_login_issues_token_pair(self, client, registered):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        pair = body["data"]
        assert pair["token_type"] == "Bearer"
        assert pair["id"] == registered["id"]
        assert pair["username"] == "alice"
        assert pair["access_token"] != pair["refresh_token"]
        assert response.headers["Cache-Control"] == "no-store"

    @pytest.mark.parametrize(
        "username,password", [("alice", "wrong-password"), ("nobody", "Wonderland1")]
    )
    def test_bad_credentials_are_unauthorized(self, client, registered, username, password):
        response = _login(client, username, password)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_inactive_user_cannot_log_in(self, client, registered):
        get_runtime().store.users[registered["id"]].is_active = False
        assert _login(client).status_code == 401


class TestProtectedRoutes:
    def test_access_token_reaches_profile(self, client, registered):
        pair = _login(client).json()["data"]
        response = client.get("/api/users/me", headers=_bearer(pair["access_token"]))

        assert response.status_code == 200
        assert response.json()["data"]["username"] == "alice"

    def test_missing_header_is_unauthenticated(self, client):
        _assert_unauthenticated(client.get("/api/users/me"))

    def test_garbage_and_non_bearer_headers_are_unauthenticated(self, client, registered):
        pair = _login(client).json()["data"]
        _assert_unauthenticated(client.get("/api/users/me", headers=_bearer("garbage")))
        _assert_unauthenticated(
            client.get(
                "/api/users/me",
                headers={"Authorization": f"Token {pair['access_token']}"},
            )
        )

    def test_refresh_token_is_not_accepted_as_bearer(self, client, registered):
        pair = _login(client).json()["data"]
        _assert_unauthenticated(
            client.get("/api/users/me", headers=_bearer(pair["refresh_token"]))
        )

    def test_public_paths_need_no_token(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "healthy"


class TestRefresh:
    def test_refresh_rotates_the_pair(self, client, registered):
        pair = _login(client).json()["data"]

        response = client.post(
            "/api/auth/refresh", json={"refresh_token": pair["refresh_token"]}
        )

        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != pair["refresh_token"]
        assert rotated["access_token"] != pair["access_token"]
        me = client.get("/api/users/me", headers=_bearer(rotated["access_token"]))
        assert me.status_code == 200

    def test_rotated_refresh_token_cannot_be_replayed(self, client, registered):
        pair = _login(client).json()["data"]
        client.post("/api/auth/refresh", json={"refresh_token": pair["refresh_token"]})

        replay = client.post(
            "/api/auth/refresh", json={"refresh_token": pair["refresh_token"]}
        )

        assert replay.status_code == 401
        body = replay.json()
        assert body["error"]["code"] == "record_not_found"
        assert body["error"]["details"] == {"reason": "record_not_found"}

    def test_access_token_cannot_refresh(self, client, registered):
        pair = _login(client).json()["data"]
        response = client.post(
            "/api/auth/refresh", json={"refresh_token": pair["access_token"]}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credential"

    @pytest.mark.parametrize(
        "token",
        [
            "eyJhbGciOiJIUzI1NiJ9.eyJleHAiOjF9.sigé",
            "W1tbW1tbW1tb." + "W1tb" * 1000 + ".sig",
        ],
    )
    def test_malformed_refresh_token_is_invalid_credential(self, client, token):
        response = client.post("/api/auth/refresh", json={"refresh_token": token})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credential"

    def test_second_login_replaces_first_session(self, client, registered):
        first = _login(client).json()["data"]
        _login(client)

        response = client.post(
            "/api/auth/refresh", json={"refresh_token": first["refresh_token"]}
        )
        assert response.json()["error"]["code"] == "record_not_found"


class TestLogoutAndSessions:
    def test_sessions_list_hides_token_strings(self, client, registered):
        pair = _login(client).json()["data"]
        response = client.get("/api/auth/sessions", headers=_bearer(pair["access_token"]))

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 1
        assert set(items[0]) == {
            "id",
            "created_at",
            "access_token_expires_at",
            "refresh_token_expires_at",
        }

    def test_logout_revokes_refresh(self, client, registered):
        pair = _login(client).json()["data"]

        response = client.post("/api/auth/logout", headers=_bearer(pair["access_token"]))
        assert response.status_code == 200
        assert response.json()["success"] is True

        refresh = client.post(
            "/api/auth/refresh", json={"refresh_token": pair["refresh_token"]}
        )
        assert refresh.status_code == 401
        assert get_runtime().store.all_active_for(registered["id"]) == []

    def test_logout_requires_authentication(self, client):
        _assert_unauthenticated(client.post("/api/auth/logout"))
