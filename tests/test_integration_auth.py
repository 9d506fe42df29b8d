"""Integration tests for the authentication flow.

Covers registration, password login, identity lookup over cookie and bearer
token, token refresh, logout and the auth rate limits.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from watchlist import app as app_module
from watchlist.service.runtime import get_runtime, reset_runtime_for_tests
from watchlist.service.tokens import TokenService

COOKIE = "watchlist_sid"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def password():
    return "s3cret-pass"


def _register(client, username="alice", password="s3cret-pass", **extra):
    return client.post(
        "/api/auth/register", json={"username": username, "password": password, **extra}
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_register_returns_user_and_token(self, client, password):
        response = _register(client, password=password, displayName="Alice")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert user["username"] == "alice"
        assert user["display_name"] == "Alice"
        assert user["role"] == "user"
        assert "password" not in user
        assert "password_hash" not in user

        claims = get_runtime().tokens.verify(body["data"]["token"])
        assert claims.id == user["id"]
        assert claims.username == "alice"
        assert response.cookies.get(COOKIE)

    def test_register_sets_httponly_cookie(self, client):
        response = _register(client)
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

    def test_duplicate_username_is_conflict(self, client):
        _register(client)
        response = _register(TestClient(app_module.app), password="other-pass")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["message"] == "Username already exists"
        assert len(get_runtime().credentials.list_users()) == 1

    @pytest.mark.parametrize(
        "payload",
        [
            {"username": "al", "password": "s3cret-pass"},
            {"username": "alice", "password": "short"},
            {"username": "alice smith", "password": "s3cret-pass"},
            {"username": "alice"},
            {"password": "s3cret-pass"},
        ],
    )
    def test_invalid_input_is_400(self, client, payload):
        response = client.post("/api/auth/register", json=payload)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert get_runtime().credentials.list_users() == []


class TestLogin:
    def test_login_returns_verifiable_token(self, client, password):
        _register(client, password=password)
        fresh = TestClient(app_module.app)

        response = fresh.post(
            "/api/auth/login", json={"username": "alice", "password": password}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert get_runtime().tokens.verify(data["token"]).username == "alice"
        assert fresh.get("/api/auth/me").status_code == 200

    def test_wrong_password_and_unknown_user_look_the_same(self, client):
        _register(client)

        wrong = client.post("/api/auth/login", json={"username": "alice", "password": "nope-nope"})
        unknown = client.post("/api/auth/login", json={"username": "ghost", "password": "nope-nope"})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "Incorrect username or password"

    def test_username_prefix_gets_no_special_treatment(self, client):
        client.post("/api/auth/register", json={"username": "admin_test", "password": "right-pass"})
        response = TestClient(app_module.app).post(
            "/api/auth/login", json={"username": "admin_test", "password": "wrong-pass"}
        )
        assert response.status_code == 401

    def test_login_rate_limit(self, client, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "2")
        reset_runtime_for_tests()
        payload = {"username": "alice", "password": "whatever"}

        statuses = [client.post("/api/auth/login", json=payload).status_code for _ in range(3)]

        assert statuses == [401, 401, 429]
        response = client.post("/api/auth/login", json=payload)
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["retry_after_seconds"] >= 0


class TestMe:
    def test_no_credentials_is_401(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "Please sign in again."

    def test_cookie_only(self, client):
        _register(client)
        response = client.get("/api/auth/me")
        assert response.status_code == 200
        assert response.json()["data"]["user"]["username"] == "alice"

    def test_bearer_only_then_cookie_recovery(self, client):
        token = _register(client).json()["data"]["token"]
        other = TestClient(app_module.app)

        with_token = other.get("/api/auth/me", headers=_bearer(token))
        assert with_token.status_code == 200
        assert with_token.cookies.get(COOKIE)

        cookie_only = other.get("/api/auth/me")
        assert cookie_only.status_code == 200
        assert cookie_only.json()["data"]["user"]["username"] == "alice"

    def test_bearer_only_data_requests_store_no_sessions(self, client):
        token = _register(client).json()["data"]["token"]
        store = get_runtime().store
        before = set(store.session_kv)

        for _ in range(50):
            response = TestClient(app_module.app).get(
                "/api/watchlist/items", headers=_bearer(token)
            )
            assert response.status_code == 200
            assert response.cookies.get(COOKIE) is None

        assert set(store.session_kv) == before

    def test_identity_headers_alone_are_not_proof(self, client):
        user_id = _register(TestClient(app_module.app)).json()["data"]["user"]["id"]
        response = client.get(
            "/api/auth/me", headers={"X-User-Id": str(user_id), "X-Username": "alice"}
        )
        assert response.status_code == 401

    def test_tampered_cookie_is_ignored(self, client):
        _register(client)
        value = client.cookies.get(COOKIE)
        last = "1" if value.endswith("0") else "0"
        forged = TestClient(app_module.app, cookies={COOKIE: value[:-1] + last})
        assert forged.get("/api/auth/me").status_code == 401

    def test_deleted_user_is_401(self, client):
        user_id = _register(client).json()["data"]["user"]["id"]
        get_runtime().store.users.pop(user_id)
        assert client.get("/api/auth/me").status_code == 401


class TestRefresh:
    def test_refresh_issues_new_token(self, client):
        token = _register(client).json()["data"]["token"]
        response = TestClient(app_module.app).post("/api/auth/refresh", headers=_bearer(token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert get_runtime().tokens.verify(data["token"]).username == "alice"
        assert data["token_expires_at"]

    def test_refresh_picks_up_role_change(self, client):
        body = _register(client).json()["data"]
        get_runtime().store.update_user_role(body["user"]["id"], "admin")

        response = client.post("/api/auth/refresh", headers=_bearer(body["token"]))

        assert get_runtime().tokens.verify(response.json()["data"]["token"]).role == "admin"

    def test_invalid_token_reason(self, client):
        response = client.post("/api/auth/refresh", headers=_bearer("garbage"))
        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "token_invalid"}

    def test_missing_token_is_invalid(self, client):
        response = client.post("/api/auth/refresh")
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "token_invalid"

    def test_expired_token_reason(self, client):
        _register(client)
        runtime = get_runtime()
        past = TokenService(
            runtime.settings,
            runtime.credentials,
            clock=lambda: datetime.now(timezone.utc) - timedelta(days=8),
        )
        expired = past.issue(runtime.credentials.find_by_username("alice")).token

        response = client.post("/api/auth/refresh", headers=_bearer(expired))

        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "token_expired"}


class TestLogout:
    def test_logout_invalidates_server_session(self, client):
        _register(client)
        cookie_value = client.cookies.get(COOKIE)

        response = client.post("/api/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"] == {}
        replay = TestClient(app_module.app, cookies={COOKIE: cookie_value})
        assert replay.get("/api/auth/me").status_code == 401

    def test_logout_twice_succeeds(self, client):
        _register(client)
        first = client.post("/api/auth/logout")
        second = client.post("/api/auth/logout")
        assert first.status_code == second.status_code == 200
        assert first.json()["data"] == second.json()["data"] == {}

    def test_logout_without_session(self, client):
        assert client.post("/api/auth/logout").status_code == 200

    def test_token_still_works_after_logout(self, client):
        token = _register(client).json()["data"]["token"]
        client.post("/api/auth/logout")
        response = TestClient(app_module.app).get("/api/auth/me", headers=_bearer(token))
        assert response.status_code == 200


class TestAdmin:
    def _admin_client(self):
        runtime = get_runtime()
        runtime.credentials.create(
            "root", runtime.auth.hash_password("root-pass"), role="admin"
        )
        admin = TestClient(app_module.app)
        admin.post("/api/auth/login", json={"username": "root", "password": "root-pass"})
        return admin

    def test_admin_lists_users(self, client):
        _register(client)
        response = self._admin_client().get("/api/admin/users")

        assert response.status_code == 200
        names = [u["username"] for u in response.json()["data"]["items"]]
        assert names == ["alice", "root"]

    def test_regular_user_is_forbidden(self, client):
        _register(client)
        response = client.get("/api/admin/users")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, client):
        assert client.get("/api/admin/users").status_code == 401
