"""Integration tests for the HTTP surface.

Covers:
- Password login and its rejection statuses
- 2FA enrollment, sign-in and disable
- Session listing, validation and termination
- Health probe and envelope shape
"""

import time

import pytest
from fastapi.testclient import TestClient

from authgate import app as app_module
from authgate.service.runtime import reset_runtime_for_tests
from authgate.service.two_factor import generate_totp

PASSWORD = "Correct-Horse9"


@pytest.fixture(autouse=True)
def runtime():
    """Give every test a fresh store and gateway."""
    return reset_runtime_for_tests()


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def user(runtime):
    identity = runtime.store.create_identity("apiuser@example.com")
    runtime.gateway.set_password(identity.id, PASSWORD)
    return identity


def _login(client, email="apiuser@example.com", password=PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _bearer(response):
    return {"Authorization": f"Bearer {response.json()['data']['tokens']['access_token']}"}


def _enroll(client, headers):
    setup = client.post("/v1/auth/2fa/setup", headers=headers).json()["data"]
    code = generate_totp(setup["secret"], time.time())
    response = client.put("/v1/auth/2fa/setup", headers=headers, json={"token": code})
    assert response.status_code == 200
    return setup


class TestLogin:
    def test_login_returns_session_and_tokens(self, client, user):
        """A correct password opens a session straight away."""
        response = _login(client, device_info={"userAgent": "pytest", "timezone": "UTC"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user_id"] == user.id
        assert data["state"] == "session_established"
        assert data["session_id"]
        assert data["tokens"]["token_type"] == "bearer"
        assert data["pending_token"] is None
        assert response.headers["X-Request-ID"]

    def test_wrong_password_is_401(self, client, user):
        """Wrong passwords and unknown emails share one response."""
        wrong = _login(client, password="Wrong-Horse9")
        unknown = _login(client, email="nobody@example.com")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_locked_account_is_423(self, client, user):
        """The sixth attempt after five failures is refused as locked."""
        for _ in range(5):
            _login(client, password="Wrong-Horse9")

        response = _login(client)

        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"

    def test_malformed_email_is_422(self, client):
        """Request validation runs before the gateway."""
        response = _login(client, email="not-an-email")

        assert response.status_code == 422

    def test_request_id_is_echoed(self, client, user):
        response = client.post(
            "/v1/auth/login",
            json={"email": "apiuser@example.com", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"

    def test_forwarded_client_address_is_audited(self, client, user, runtime):
        _login(client, password="Wrong-Horse9")
        client.post(
            "/v1/auth/login",
            json={"email": "apiuser@example.com", "password": "Wrong-Horse9"},
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.2"},
        )
        client.post(
            "/v1/auth/login",
            json={"email": "apiuser@example.com", "password": "Wrong-Horse9"},
            headers={"X-Real-IP": "198.51.100.4"},
        )

        events = runtime.store.list_security_events(user_id=user.id, event_type="login_failed")

        assert {e.ip_address for e in events} == {"testclient", "203.0.113.7", "198.51.100.4"}


class TestTwoFactorFlow:
    def test_enroll_then_sign_in_with_totp(self, client, user):
        """Enrollment via setup/confirm, then a two-step sign-in."""
        headers = _bearer(_login(client))
        setup = _enroll(client, headers)
        assert len(setup["backup_codes"]) == 8

        first = _login(client)
        assert first.status_code == 200
        pending = first.json()["data"]
        assert pending["state"] == "two_factor_required"
        assert pending["requires_2fa"] is True
        assert pending["tokens"] is None

        response = client.post(
            "/v1/auth/2fa/verify",
            json={
                "user_id": user.id,
                "token": generate_totp(setup["secret"], time.time()),
                "pending_token": pending["pending_token"],
            },
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["success"] is True
        assert data["state"] == "session_established"
        assert data["tokens"]["access_token"]

    def test_wrong_code_is_401(self, client, user):
        headers = _bearer(_login(client))
        _enroll(client, headers)
        pending = _login(client).json()["data"]["pending_token"]

        response = client.post(
            "/v1/auth/2fa/verify",
            json={"user_id": user.id, "token": "abcdef", "pending_token": pending},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_2fa_token"

    def test_malformed_pending_token_is_401(self, client, user):
        headers = _bearer(_login(client))
        _enroll(client, headers)
        pending = _login(client).json()["data"]["pending_token"]

        response = client.post(
            "/v1/auth/2fa/verify",
            json={"user_id": user.id, "token": "123456", "pending_token": pending[:-2] + "éé"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_pending_session"

    def test_repeated_wrong_codes_are_423(self, client, user):
        headers = _bearer(_login(client))
        _enroll(client, headers)
        pending = _login(client).json()["data"]["pending_token"]
        body = {"user_id": user.id, "token": "abcdef", "pending_token": pending}

        statuses = [client.post("/v1/auth/2fa/verify", json=body).status_code for _ in range(5)]

        assert statuses == [401, 401, 401, 401, 423]
        locked = client.post("/v1/auth/2fa/verify", json=body)
        assert locked.json()["error"]["code"] == "invalid_pending_session"

    def test_pending_token_is_not_an_access_token(self, client, user):
        headers = _bearer(_login(client))
        _enroll(client, headers)
        pending = _login(client).json()["data"]["pending_token"]

        response = client.get("/v1/sessions", headers={"Authorization": f"Bearer {pending}"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_bad_confirmation_code_is_400(self, client, user):
        headers = _bearer(_login(client))
        client.post("/v1/auth/2fa/setup", headers=headers)

        response = client.put("/v1/auth/2fa/setup", headers=headers, json={"token": "abcdef"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "two_factor_invalid"

    def test_setup_twice_conflicts(self, client, user):
        headers = _bearer(_login(client))
        _enroll(client, headers)

        response = client.post("/v1/auth/2fa/setup", headers=headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_status_and_disable(self, client, user):
        """Disabling needs the current password; status follows."""
        headers = _bearer(_login(client))
        _enroll(client, headers)

        status = client.get("/v1/auth/2fa/status", headers=headers).json()["data"]
        assert status == {"enabled": True, "configured": True, "backup_codes_remaining": 8}

        refused = client.request(
            "DELETE", "/v1/auth/2fa", headers=headers, json={"current_password": "Wrong-Horse9"}
        )
        assert refused.status_code == 403
        assert refused.json()["error"]["code"] == "forbidden"

        accepted = client.request(
            "DELETE", "/v1/auth/2fa", headers=headers, json={"current_password": PASSWORD}
        )
        assert accepted.status_code == 200
        assert accepted.json()["data"] == {"enabled": False}
        assert client.get("/v1/auth/2fa/status", headers=headers).json()["data"]["enabled"] is False

    def test_disable_when_not_configured_is_404(self, client, user):
        headers = _bearer(_login(client))

        response = client.request(
            "DELETE", "/v1/auth/2fa", headers=headers, json={"current_password": PASSWORD}
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestSessions:
    def test_list_marks_current_session(self, client, user):
        first = _login(client)
        second = _login(client)

        response = client.get("/v1/sessions", headers=_bearer(second))

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 2
        current = [item["id"] for item in items if item["current"]]
        assert current == [second.json()["data"]["session_id"]]
        assert first.json()["data"]["session_id"] in {item["id"] for item in items}

    def test_terminate_revokes_access(self, client, user):
        login = _login(client)
        headers = _bearer(login)
        session_id = login.json()["data"]["session_id"]

        response = client.post(f"/v1/sessions/{session_id}/terminate", headers=headers)

        assert response.status_code == 200
        assert response.json()["data"] == {"session_id": session_id, "terminated": True}
        assert client.get("/v1/sessions", headers=headers).status_code == 401

    def test_cannot_terminate_other_users_session(self, client, user, runtime):
        other = runtime.store.create_identity("other@example.com")
        runtime.gateway.set_password(other.id, PASSWORD)
        victim = _login(client).json()["data"]["session_id"]
        attacker = _bearer(_login(client, email="other@example.com"))

        response = client.post(f"/v1/sessions/{victim}/terminate", headers=attacker)

        assert response.status_code == 404
        assert runtime.store.get_session(victim).termination_reason is None

    def test_validate_session(self, client, user):
        login = _login(client)
        headers = _bearer(login)

        response = client.post(
            "/v1/sessions/validate",
            headers=headers,
            json={"session_id": login.json()["data"]["session_id"]},
        )

        assert response.status_code == 200
        assert response.json()["data"]["valid"] is True

    def test_missing_bearer_is_401(self, client):
        response = client.get("/v1/sessions")

        assert response.status_code == 401
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == "unauthorized"


class TestHealth:
    def test_healthz_reports_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "ok"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
