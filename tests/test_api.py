"""HTTP surface tests: routing, envelopes and status codes."""

import pyotp
import pytest
from fastapi.testclient import TestClient

from tokenforge import app as app_module
from tokenforge.service.runtime import get_runtime
from tokenforge.storage.models import AuditAction

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="api@example.com", username="apiuser"):
    response = client.post(
        "/api/auth/register",
        json={"email": email, "username": username, "password": PASSWORD},
    )
    assert response.status_code == 201
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestDiscovery:
    @pytest.mark.parametrize("prefix", ["", "/api"])
    def test_openid_configuration(self, client, prefix):
        doc = client.get(f"{prefix}/.well-known/openid-configuration").json()
        assert doc["issuer"] == "http://testserver/api"
        assert doc["jwks_uri"] == "http://testserver/api/.well-known/jwks.json"
        assert doc["id_token_signing_alg_values_supported"] == ["RS256"]
        assert doc["code_challenge_methods_supported"] == ["S256"]

    @pytest.mark.parametrize("prefix", ["", "/api"])
    def test_jwks(self, client, prefix):
        keys = client.get(f"{prefix}/.well-known/jwks.json").json()["keys"]
        assert len(keys) == 1
        assert keys[0]["kty"] == "RSA"
        assert keys[0]["use"] == "sig"
        assert "d" not in keys[0]


class TestAuthRoutes:
    def test_register_login_and_me(self, client):
        registered = _register(client)
        assert registered["username"] == "apiuser"
        assert registered["token_type"] == "Bearer"

        login = client.post(
            "/api/auth/login",
            json={"username_or_email": "API@example.com", "password": PASSWORD},
        )
        assert login.status_code == 200
        token = login.json()["data"]["access_token"]

        me = client.get("/api/auth/me", headers=_bearer(token))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "api@example.com"
        assert me.json()["data"]["last_login_at"] is not None
        assert me.headers["Cache-Control"] == "no-store"

    def test_refresh_then_replay_rejected(self, client):
        tokens = _register(client)
        first = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert first.status_code == 200
        assert first.json()["data"]["refresh_token"] != tokens["refresh_token"]

        replay = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "session_invalid"

    def test_logout_blacklists_access_token(self, client):
        tokens = _register(client)
        headers = _bearer(tokens["access_token"])
        response = client.post(
            "/api/auth/logout", json={"refresh_token": tokens["refresh_token"]}, headers=headers
        )
        assert response.status_code == 200

        me = client.get("/api/auth/me", headers=headers)
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "invalid_token"

    def test_logout_all_reports_count(self, client):
        tokens = _register(client)
        client.post(
            "/api/auth/login",
            json={"username_or_email": "apiuser", "password": PASSWORD},
        )
        response = client.post("/api/auth/logout-all", headers=_bearer(tokens["access_token"]))
        assert response.json()["data"]["revoked_sessions"] == 2

    def test_me_requires_bearer(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_password_change(self, client):
        tokens = _register(client)
        response = client.post(
            "/api/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "AnotherPass456!"},
            headers=_bearer(tokens["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked_sessions"] == 1
        login = client.post(
            "/api/auth/login",
            json={"username_or_email": "apiuser", "password": "AnotherPass456!"},
        )
        assert login.status_code == 200

    def test_password_reset_request_never_leaks(self, client):
        _register(client)
        for email in ("api@example.com", "nobody@example.com"):
            response = client.post("/api/auth/password/reset/request", json={"email": email})
            assert response.status_code == 200
            assert response.json()["data"] == {"status": "sent"}

    def test_password_reset_confirm_rejects_unknown_token(self, client):
        response = client.post(
            "/api/auth/password/reset/confirm",
            json={"token": "made-up", "new_password": "AnotherPass456!"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestProfileRoutes:
    def test_patch_me_updates_username_and_audits(self, client):
        tokens = _register(client)
        response = client.patch(
            "/api/auth/me", json={"username": "renamed"}, headers=_bearer(tokens["access_token"])
        )
        assert response.status_code == 200
        assert response.json()["data"]["username"] == "renamed"

        user_id = response.json()["data"]["id"]
        events = get_runtime().store.list_audit_events(
            user_id=user_id, action=AuditAction.PROFILE_UPDATE
        )
        assert events[0].detail == {"fields": ["username"]}

    def test_patch_me_rejects_taken_email(self, client):
        _register(client, email="taken@example.com", username="taken")
        tokens = _register(client)
        response = client.patch(
            "/api/auth/me",
            json={"email": "taken@example.com"},
            headers=_bearer(tokens["access_token"]),
        )
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_patch_me_requires_a_field(self, client):
        tokens = _register(client)
        response = client.patch("/api/auth/me", json={}, headers=_bearer(tokens["access_token"]))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_email_verification_round(self, client, monkeypatch):
        tokens = _register(client)
        headers = _bearer(tokens["access_token"])
        auth = get_runtime().auth
        issued = []
        original = auth.request_email_verification

        async def capture(*args, **kwargs):
            token = await original(*args, **kwargs)
            issued.append(token)
            return token

        monkeypatch.setattr(auth, "request_email_verification", capture)

        response = client.post("/api/email/verify/request", headers=headers)
        assert response.json()["data"] == {"status": "sent"}

        verified = client.get("/api/email/verify", params={"token": issued[0]})
        assert verified.status_code == 200
        assert verified.json()["data"]["email_verified"] is True

        again = client.post("/api/email/verify/request", headers=headers)
        assert again.json()["data"] == {"status": "already_verified"}

    def test_email_verify_rejects_unknown_token(self, client):
        response = client.get("/api/email/verify", params={"token": "made-up"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestErrorEnvelope:
    def test_invalid_credentials(self, client):
        response = client.post(
            "/api/auth/login",
            json={"username_or_email": "ghost", "password": PASSWORD},
        )
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_credentials"

    def test_lockout_returns_423(self, client):
        _register(client)
        for _ in range(5):
            client.post(
                "/api/auth/login",
                json={"username_or_email": "apiuser", "password": "wrong-password"},
            )
        response = client.post(
            "/api/auth/login",
            json={"username_or_email": "apiuser", "password": PASSWORD},
        )
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = client.post(
            "/api/auth/register",
            json={"email": "api@example.com", "username": "other", "password": PASSWORD},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_validation_error(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "not-an-email", "username": "ok_name", "password": PASSWORD},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/api/auth/login",
            json={"username_or_email": "ghost", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestMfaRoutes:
    def test_enroll_and_login_with_code(self, client):
        tokens = _register(client)
        headers = _bearer(tokens["access_token"])

        setup = client.post("/api/mfa/setup", headers=headers).json()["data"]
        assert setup["qr_code"].startswith("data:image/png;base64,")
        secret = setup["secret"]

        enable = client.post(
            "/api/mfa/enable",
            json={"secret": secret, "code": pyotp.TOTP(secret).now()},
            headers=headers,
        )
        assert enable.status_code == 200
        assert client.get("/api/mfa/status", headers=headers).json()["data"]["enabled"] is True

        missing = client.post(
            "/api/auth/login",
            json={"username_or_email": "apiuser", "password": PASSWORD},
        )
        assert missing.status_code == 401
        assert missing.json()["error"]["code"] == "mfa_required"

        ok = client.post(
            "/api/auth/login",
            json={
                "username_or_email": "apiuser",
                "password": PASSWORD,
                "mfa_code": pyotp.TOTP(secret).now(),
            },
        )
        assert ok.status_code == 200

    def test_enable_with_wrong_secret_fails(self, client):
        tokens = _register(client)
        headers = _bearer(tokens["access_token"])
        client.post("/api/mfa/setup", headers=headers)
        other = pyotp.random_base32()
        response = client.post(
            "/api/mfa/enable",
            json={"secret": other, "code": pyotp.TOTP(other).now()},
            headers=headers,
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "mfa_invalid_code"

    def test_disable(self, client):
        tokens = _register(client)
        headers = _bearer(tokens["access_token"])
        response = client.post("/api/mfa/disable", headers=headers)
        assert response.json()["data"]["enabled"] is False


class TestHealth:
    def test_lifespan_starts_rotation_worker(self):
        with TestClient(app_module.app) as client:
            body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["cache"]["type"] == "MemoryCache"
        assert body["checks"]["key_rotation"]["status"] == "running"

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
