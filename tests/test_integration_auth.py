"""Integration tests for the authentication flow.

Tests the complete auth flow including:
- Registration and duplicate detection
- Login with generic failures
- Token refresh without rotation
- Logout
- Both change-password variants
- Bearer enforcement on protected routes
"""

import pytest
from fastapi.testclient import TestClient

from wayne import app as app_module
from wayne.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


def _register(client, email, password, remember_me=False):
    return client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": password, "remember_me": remember_me},
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegisterFlow:
    def test_register_creates_user(self, client, test_user_email, test_user_password):
        response = _register(client, test_user_email, test_user_password)

        assert response.status_code == 201
        data = response.json()
        assert data["user_id"]
        assert data["access_token"]
        assert data["refresh_token"] is None
        assert data["expires_in"] == 604800

    def test_register_with_remember_me_returns_refresh_token(
        self, client, test_user_email, test_user_password
    ):
        data = _register(client, test_user_email, test_user_password, True).json()
        assert isinstance(data["refresh_token"], str)
        assert len(data["refresh_token"]) == 128

    def test_register_rejects_duplicate_email(
        self, client, test_user_email, test_user_password
    ):
        _register(client, test_user_email, test_user_password)
        response = _register(client, test_user_email.upper(), test_user_password)

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"
        assert len(get_runtime().store.users) == 1

    def test_register_validates_email_format(self, client, test_user_password):
        response = _register(client, "invalid-email", test_user_password)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_register_validates_password_length(self, client, test_user_email):
        response = _register(client, test_user_email, "short")
        assert response.status_code == 400
        assert get_runtime().store.users == {}

    def test_register_provisions_bucket(self, client, test_user_email, test_user_password):
        data = _register(client, test_user_email, test_user_password).json()
        assert get_runtime().store.get_storj_bucket_for_user(data["user_id"]) is not None

    def test_register_survives_provisioning_failure(
        self, client, test_user_email, test_user_password
    ):
        get_runtime().provisioner.fail = True
        response = _register(client, test_user_email, test_user_password)

        assert response.status_code == 201
        user_id = response.json()["user_id"]
        assert get_runtime().store.get_storj_bucket_for_user(user_id) is None


class TestLoginFlow:
    def test_login_returns_token_for_registered_user(
        self, client, test_user_email, test_user_password
    ):
        user_id = _register(client, test_user_email, test_user_password).json()["user_id"]
        response = client.post(
            "/api/v1/auth/login",
            json={"email": test_user_email, "password": test_user_password},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == user_id
        assert data["refresh_token"] is None
        claims = get_runtime().tokens.verify_access_token(data["access_token"])
        assert claims.user_id == user_id

    def test_unknown_email_and_wrong_password_look_the_same(
        self, client, test_user_email, test_user_password
    ):
        _register(client, test_user_email, test_user_password)
        unknown = client.post(
            "/api/v1/auth/login",
            json={"email": "nobody@example.com", "password": test_user_password},
        )
        wrong = client.post(
            "/api/v1/auth/login",
            json={"email": test_user_email, "password": "WrongPassword123!"},
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.json()["error"] == "unauthorized"

    def test_login_rate_limited(self, client, test_user_email):
        limit = get_runtime().settings.login_rate_limit_per_minute
        responses = [
            client.post(
                "/api/v1/auth/login",
                json={"email": test_user_email, "password": "WrongPassword123!"},
            )
            for _ in range(limit + 1)
        ]

        assert [r.status_code for r in responses[:limit]] == [401] * limit
        assert responses[-1].status_code == 429
        assert responses[-1].json()["error"] == "rate_limited"
        assert int(responses[-1].headers["Retry-After"]) >= 1


class TestRefreshFlow:
    def test_refresh_twice_with_same_token(self, client, test_user_email, test_user_password):
        refresh_token = _register(
            client, test_user_email, test_user_password, True
        ).json()["refresh_token"]

        first = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        second = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})

        assert first.status_code == second.status_code == 200
        assert set(first.json()) == {"access_token", "expires_in"}

    def test_refresh_with_never_issued_token(self, client):
        response = client.post("/api/v1/auth/refresh", json={"refresh_token": "f" * 128})
        assert response.status_code == 401

    def test_no_refresh_possible_without_remember_me(
        self, client, test_user_email, test_user_password
    ):
        data = _register(client, test_user_email, test_user_password).json()
        assert data["refresh_token"] is None
        response = client.post(
            "/api/v1/auth/refresh", json={"refresh_token": data["access_token"]}
        )
        assert response.status_code == 401

    def test_refresh_requires_body(self, client):
        response = client.post("/api/v1/auth/refresh", json={})
        assert response.status_code == 400


class TestLogoutFlow:
    def test_logout_revokes_token(self, client, test_user_email, test_user_password):
        refresh_token = _register(
            client, test_user_email, test_user_password, True
        ).json()["refresh_token"]

        response = client.post("/api/v1/auth/logout", json={"refresh_token": refresh_token})
        assert response.status_code == 200
        assert response.json()["message"]

        response = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert response.status_code == 401

    def test_logout_unknown_token_still_succeeds(self, client):
        response = client.post("/api/v1/auth/logout", json={"refresh_token": "0" * 128})
        assert response.status_code == 200


class TestChangePassword:
    def test_wayne_password_change_revokes_every_session(
        self, client, test_user_email, test_user_password
    ):
        data = _register(client, test_user_email, test_user_password, True).json()
        second = client.post(
            "/api/v1/auth/login",
            json={
                "email": test_user_email,
                "password": test_user_password,
                "remember_me": True,
            },
        ).json()

        response = client.post(
            "/api/v1/auth/change-password",
            json={
                "password_type": "wayne",
                "old_password": test_user_password,
                "new_password": "NewPassword456!",
            },
            headers=_bearer(data["access_token"]),
        )
        assert response.status_code == 200

        for token in (data["refresh_token"], second["refresh_token"]):
            refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": token})
            assert refreshed.status_code == 401

        # access tokens are not revocable and stay valid until they expire
        me = client.get("/api/v1/storj-config/me", headers=_bearer(data["access_token"]))
        assert me.status_code == 200

        relogin = client.post(
            "/api/v1/auth/login",
            json={"email": test_user_email, "password": "NewPassword456!"},
        )
        assert relogin.status_code == 200

    def test_wrong_old_password_is_rejected(
        self, client, test_user_email, test_user_password
    ):
        token = _register(client, test_user_email, test_user_password).json()["access_token"]
        response = client.post(
            "/api/v1/auth/change-password",
            json={
                "password_type": "wayne",
                "old_password": "NotMyPassword1!",
                "new_password": "NewPassword456!",
            },
            headers=_bearer(token),
        )
        assert response.status_code == 401

    def test_master_rotation_replaces_envelope(
        self, client, test_user_email, test_user_password
    ):
        data = _register(client, test_user_email, test_user_password, True).json()
        headers = _bearer(data["access_token"])
        client.post(
            "/api/v1/key-envelopes",
            json={
                "envelope": {
                    "version": 1,
                    "password_salt": [1, 1, 1],
                    "mkek": {"nonce": [2, 2], "payload": [3, 3, 3, 3]},
                }
            },
            headers=headers,
        )

        response = client.post(
            "/api/v1/auth/change-password",
            json={
                "password_type": "master",
                "envelope": {
                    "version": 2,
                    "password_salt": [9, 9, 9],
                    "mkek": {"nonce": [8, 8], "payload": [7, 7, 7, 7]},
                },
            },
            headers=headers,
        )
        assert response.status_code == 200

        envelope = client.get("/api/v1/key-envelopes/me", headers=headers).json()["envelope"]
        assert envelope == {
            "version": 2,
            "password_salt": [9, 9, 9],
            "mkek": {"nonce": [8, 8], "payload": [7, 7, 7, 7]},
        }
        refreshed = client.post(
            "/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert refreshed.status_code == 200

    @pytest.mark.parametrize(
        "body",
        [
            {"password_type": "other", "old_password": "x", "new_password": "y" * 10},
            {"old_password": "TestPassword123!", "new_password": "NewPassword456!"},
            {"password_type": "wayne", "new_password": "NewPassword456!"},
            {
                "password_type": "master",
                "old_password": "TestPassword123!",
                "new_password": "NewPassword456!",
            },
            {
                "password_type": "wayne",
                "old_password": "TestPassword123!",
                "new_password": "NewPassword456!",
                "envelope": {
                    "version": 1,
                    "password_salt": [1],
                    "mkek": {"nonce": [1], "payload": [1]},
                },
            },
        ],
    )
    def test_body_must_match_exactly_one_variant(
        self, client, test_user_email, test_user_password, body
    ):
        token = _register(client, test_user_email, test_user_password).json()["access_token"]
        response = client.post(
            "/api/v1/auth/change-password", json=body, headers=_bearer(token)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


class TestBearerEnforcement:
    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": "Bearer"},
            {"Authorization": "Basic dXNlcjpwYXNz"},
            {"Authorization": "Bearer not.a.token"},
        ],
    )
    def test_protected_route_requires_valid_bearer(self, client, headers):
        response = client.get("/api/v1/key-envelopes/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_non_ascii_signature_is_unauthorized(
        self, client, test_user_email, test_user_password
    ):
        token = _register(client, test_user_email, test_user_password).json()["access_token"]
        header, payload, _ = token.split(".")
        forged = f"Bearer {header}.{payload}.".encode("ascii") + b"\xe9\xe9"

        response = client.get("/api/v1/key-envelopes/me", headers={"Authorization": forged})

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"
