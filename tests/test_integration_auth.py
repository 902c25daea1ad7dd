"""Integration tests for the HTTP auth surface.

Tests the complete flow including:
- Registration and login
- Token validation
- Refresh rotation and reuse
- Logout
- Per-address rate limits and trusted proxy handling
- Admin revocation and rate limit reset
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from authgate import app as app_module
from authgate.service.runtime import get_runtime, reset_runtime_for_tests
from authgate.storage.models import Role

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _with_peer(app, host):
    """Wrap ``app`` so every request appears to come from ``host``."""

    async def wrapped(scope, receive, send):
        if scope["type"] == "http":
            scope = dict(scope, client=(host, 50000))
        await app(scope, receive, send)

    return wrapped


def _register(client, email="alice@example.com", password=PASSWORD, **extra):
    return client.post("/v1/auth/register", json={"email": email, "password": password, **extra})


def _login(client, email="alice@example.com", password=PASSWORD, headers=None):
    return client.post(
        "/v1/auth/login", json={"email": email, "password": password}, headers=headers or {}
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _admin_token():
    result = asyncio.run(
        get_runtime().auth.register("root@example.com", PASSWORD, role=Role.ADMIN)
    )
    return result.tokens.access.token


class TestRegistration:
    def test_register_returns_token_pair(self, client):
        response = _register(client, first_name="Alice")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["access_token"].count(".") == 2
        assert data["refresh_token"] != data["access_token"]
        assert data["principal"]["email"] == "alice@example.com"
        assert data["principal"]["role"] == "user"
        assert data["principal"]["first_name"] == "Alice"
        assert "password_hash" not in data["principal"]

    def test_duplicate_email_conflicts(self, client):
        _register(client)

        response = _register(client, email="ALICE@example.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": PASSWORD},
            {"email": "alice@example.com", "password": "short"},
            {"email": "alice@example.com"},
        ],
    )
    def test_invalid_body_is_400(self, client, payload):
        response = client.post("/v1/auth/register", json=payload)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_signup_can_be_disabled(self, client, monkeypatch):
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        reset_runtime_for_tests()

        response = _register(client)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestLoginAndValidate:
    def test_alice_scenario(self, client):
        """Register, validate, refresh, reuse, logout."""
        registered = _register(client).json()["data"]

        validated = client.get("/v1/auth/validate", headers=_bearer(registered["access_token"]))
        assert validated.status_code == 200
        assert validated.json()["data"]["user_id"] == registered["principal"]["id"]
        assert validated.json()["data"]["role"] == "user"

        refreshed = client.post(
            "/v1/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert refreshed.status_code == 200
        new_pair = refreshed.json()["data"]

        reused = client.post(
            "/v1/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "unauthorized"

        logout = client.post(
            "/v1/auth/logout",
            headers=_bearer(new_pair["access_token"]),
            json={"refresh_token": new_pair["refresh_token"]},
        )
        assert logout.status_code == 200
        assert logout.json()["data"] == {"message": "logged out"}

        after = client.get("/v1/auth/validate", headers=_bearer(new_pair["access_token"]))
        assert after.status_code == 401
        rotated_again = client.post(
            "/v1/auth/refresh", json={"refresh_token": new_pair["refresh_token"]}
        )
        assert rotated_again.status_code == 401

    def test_login_returns_fresh_pair(self, client):
        _register(client)

        response = _login(client)

        assert response.status_code == 200
        assert response.json()["data"]["principal"]["email"] == "alice@example.com"

    def test_wrong_password_and_unknown_account_look_the_same(self, client):
        _register(client)

        wrong = _login(client, password="WrongPassword1!")
        unknown = _login(client, email="nobody@example.com")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer not.a.token"}],
    )
    def test_validate_rejects_missing_or_bad_token(self, client, headers):
        response = client.get("/v1/auth/validate", headers=headers)

        assert response.status_code == 401

    def test_refresh_token_rejected_as_access_token(self, client):
        registered = _register(client).json()["data"]

        response = client.get("/v1/auth/validate", headers=_bearer(registered["refresh_token"]))

        assert response.status_code == 401

    def test_access_token_rejected_for_refresh(self, client):
        registered = _register(client).json()["data"]

        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": registered["access_token"]}
        )

        assert response.status_code == 401


class TestLogout:
    @pytest.mark.parametrize(
        "headers,body",
        [
            ({}, None),
            ({"Authorization": "Bearer garbage"}, None),
            ({}, {"refresh_token": "garbage"}),
            ({}, {"unexpected": True}),
        ],
    )
    def test_logout_always_succeeds(self, client, headers, body):
        kwargs = {"headers": headers}
        if body is not None:
            kwargs["json"] = body

        response = client.post("/v1/auth/logout", **kwargs)

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_logout_of_one_session_keeps_other(self, client):
        first = _register(client).json()["data"]
        second = _login(client).json()["data"]

        client.post("/v1/auth/logout", headers=_bearer(first["access_token"]))

        assert client.get("/v1/auth/validate", headers=_bearer(first["access_token"])).status_code == 401
        assert client.get("/v1/auth/validate", headers=_bearer(second["access_token"])).status_code == 200


class TestRateLimits:
    def test_sixth_login_attempt_is_429(self, client):
        _register(client)

        statuses = [_login(client, password="WrongPassword1!").status_code for _ in range(6)]

        assert statuses == [401] * 5 + [429]

    def test_429_carries_retry_after(self, client):
        for _ in range(5):
            _login(client, password="WrongPassword1!")

        response = _login(client, password="WrongPassword1!")

        assert response.status_code == 429
        assert 1 <= int(response.headers["Retry-After"]) <= 60
        assert response.json()["error"]["code"] == "rate_limited"

    def test_correct_password_also_blocked_once_limited(self, client):
        _register(client)
        for _ in range(5):
            _login(client, password="WrongPassword1!")

        assert _login(client).status_code == 429

    def test_success_reports_budget_headers(self, client):
        _register(client)

        response = _login(client)

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_rate_limit_runs_before_body_validation(self, client):
        for _ in range(5):
            assert client.post("/v1/auth/login", json={}).status_code == 400

        assert client.post("/v1/auth/login", json={}).status_code == 429

    def test_register_budget(self, client):
        statuses = [
            _register(client, email=f"user{i}@example.com").status_code for i in range(4)
        ]

        assert statuses == [201, 201, 201, 429]

    def test_spoofed_forwarded_for_ignored_from_untrusted_peer(self, client):
        statuses = [
            _login(
                client,
                password="WrongPassword1!",
                headers={"X-Forwarded-For": f"198.51.100.{i}"},
            ).status_code
            for i in range(6)
        ]

        assert statuses[-1] == 429

    def test_trusted_proxy_forwarded_for_keys_budget(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.5")
        reset_runtime_for_tests()
        proxied = TestClient(_with_peer(app_module.app, "10.0.0.5"))

        distinct = [
            _login(
                proxied,
                password="WrongPassword1!",
                headers={"X-Forwarded-For": f"198.51.100.{i}, 10.0.0.5"},
            ).status_code
            for i in range(6)
        ]
        assert distinct == [401] * 6

        same = [
            _login(
                proxied,
                password="WrongPassword1!",
                headers={"X-Forwarded-For": "203.0.113.50"},
            ).status_code
            for _ in range(6)
        ]
        assert same == [401] * 5 + [429]

    def test_logout_is_not_rate_limited(self, client):
        for _ in range(70):
            assert client.post("/v1/auth/logout").status_code == 200


class TestAdminRoutes:
    def test_admin_revokes_principal_tokens(self, client):
        alice = _register(client).json()["data"]
        admin_token = _admin_token()

        response = client.post(
            f"/v1/admin/principals/{alice['principal']['id']}/revoke-tokens",
            headers=_bearer(admin_token),
        )

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] is True
        assert client.get("/v1/auth/validate", headers=_bearer(alice["access_token"])).status_code == 401
        assert client.get("/v1/auth/validate", headers=_bearer(admin_token)).status_code == 200

    def test_non_admin_forbidden(self, client):
        alice = _register(client).json()["data"]

        response = client.post(
            f"/v1/admin/principals/{alice['principal']['id']}/revoke-tokens",
            headers=_bearer(alice["access_token"]),
        )

        assert response.status_code == 403

    def test_admin_route_requires_token(self, client):
        response = client.delete("/v1/admin/rate-limits/testclient")

        assert response.status_code == 401

    def test_admin_resets_rate_limits(self, client):
        admin_token = _admin_token()
        for _ in range(6):
            _login(client, password="WrongPassword1!")
        assert _login(client, password="WrongPassword1!").status_code == 429

        response = client.delete("/v1/admin/rate-limits/testclient", headers=_bearer(admin_token))

        assert response.status_code == 200
        assert response.json()["data"]["client_address"] == "testclient"
        assert response.json()["data"]["removed"] >= 1
        assert _login(client, password="WrongPassword1!").status_code == 401


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["revocation_store"]["backend"] == "MemoryCache"
        assert response.headers["Cache-Control"] == "no-store"

    def test_request_id_echoed(self, client):
        response = client.post("/v1/auth/logout", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_request_id_generated_when_absent(self, client):
        response = client.post("/v1/auth/logout")

        assert response.headers["X-Request-ID"]
        assert response.json()["request_id"] == response.headers["X-Request-ID"]

    def test_token_responses_not_cacheable(self, client):
        response = _register(client)

        assert response.headers["Cache-Control"] == "no-store"

    def test_hsts_sent_over_https_only(self):
        secure = TestClient(app_module.app, base_url="https://testserver")
        plain = TestClient(app_module.app)

        assert secure.get("/healthz").headers["Strict-Transport-Security"].startswith("max-age=")
        assert "Strict-Transport-Security" not in plain.get("/healthz").headers

    def test_hsts_follows_startup_settings(self, monkeypatch):
        disabled = app_module._settings.model_copy(update={"enable_hsts": False})
        monkeypatch.setattr(app_module, "_settings", disabled)
        secure = TestClient(app_module.app, base_url="https://testserver")

        assert "Strict-Transport-Security" not in secure.get("/healthz").headers
