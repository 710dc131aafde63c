"""Integration tests for the phone/OTP login flow.

Covers:
- OTP request and login session issuance
- Code verification, single use and the try budget
- User token on the profile endpoints
- Rate limiting and disabled users
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from otpauth import app as app_module
from otpauth.service.runtime import get_runtime
from otpauth.service.tokens import Audience
from otpauth.storage.models import UserStatus

PHONE = "+15551234567"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _request_otp(client, phone=PHONE):
    response = client.post("/api/v1/auth/request-otp", json={"phone_number": phone})
    assert response.status_code == 200, response.text
    return response.json()["data"]["token"]


def _code_for(session_token):
    session = asyncio.run(get_runtime().login_sessions.get(session_token))
    assert session is not None
    return session.code


def _verify(client, session_token, code):
    return client.post(
        "/api/v1/auth/verify-otp",
        json={"code": code},
        headers={"Authorization": f"Bearer {session_token}"},
    )


def _login(client, phone=PHONE):
    session_token = _request_otp(client, phone)
    response = _verify(client, session_token, _code_for(session_token))
    assert response.status_code == 200, response.text
    return response.json()["data"]["token"]


def _set_status(phone, status):
    runtime = get_runtime()
    tx = runtime.store.begin()
    user = runtime.store.get_user_by_phone(tx, phone)
    runtime.store.update_user_status(tx, user.id, status)
    tx.commit()


class TestRequestOtp:
    def test_creates_user_and_session(self, client):
        session_token = _request_otp(client)

        runtime = get_runtime()
        tx = runtime.store.begin()
        user = runtime.store.get_user_by_phone(tx, PHONE)
        tx.rollback()
        assert user is not None
        assert user.status == UserStatus.ACTIVE
        code = _code_for(session_token)
        assert len(code) == 6 and code.isalnum() and code.upper() == code

    def test_invalid_phone_is_validation_error(self, client):
        response = client.post(
            "/api/v1/auth/request-otp", json={"phone_number": "5551234"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"

    def test_second_request_within_cooldown_is_throttled(self, client):
        _request_otp(client)

        response = client.post("/api/v1/auth/request-otp", json={"phone_number": PHONE})

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "otp_throttled"
        assert 0 < error["details"]["retry_after"] <= 120

    def test_disabled_user_cannot_request(self, client):
        _request_otp(client)
        _set_status(PHONE, UserStatus.DISABLED)

        response = client.post("/api/v1/auth/request-otp", json={"phone_number": PHONE})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "user_disabled"

    def test_rate_limit_headers(self, client):
        response = client.post("/api/v1/auth/request-otp", json={"phone_number": PHONE})

        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert response.headers["X-RateLimit-Reset"] == "60"

    def test_sixth_auth_call_is_rate_limited(self, client):
        for i in range(5):
            _request_otp(client, f"+1555000000{i}")

        response = client.post(
            "/api/v1/auth/request-otp", json={"phone_number": "+15550000009"}
        )

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.headers["X-RateLimit-Remaining"] == "0"


class TestVerifyOtp:
    def test_code_exchanges_for_token_once(self, client):
        session_token = _request_otp(client)
        code = _code_for(session_token)

        first = _verify(client, session_token, code.lower())
        second = _verify(client, session_token, code)

        assert first.status_code == 200
        assert first.json()["data"]["token"].count(".") == 2
        assert second.status_code == 401
        assert second.json()["error"]["code"] == "invalid_code"

    def test_try_budget_corrupts_session(self, client):
        session_token = _request_otp(client)
        code = _code_for(session_token)
        wrong = "000000" if code != "000000" else "111111"

        codes = [_verify(client, session_token, wrong).json()["error"]["code"] for _ in range(3)]
        final = _verify(client, session_token, code)

        assert codes == ["invalid_code"] * 3
        assert final.status_code == 401
        assert final.json()["error"]["code"] == "session_corrupted"
        assert "request a new code" in final.json()["error"]["message"]

    def test_unknown_session(self, client):
        response = _verify(client, "not-a-session", "ABC123")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "session_not_found"

    def test_missing_session_header(self, client):
        response = client.post("/api/v1/auth/verify-otp", json={"code": "ABC123"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_short_code_rejected(self, client):
        response = client.post(
            "/api/v1/auth/verify-otp",
            json={"code": "ABC"},
            headers={"Authorization": "Bearer whatever"},
        )

        assert response.status_code == 400


class TestUserProfile:
    def test_profile_roundtrip(self, client):
        headers = {"Authorization": f"Bearer {_login(client)}"}

        profile = client.get("/api/v1/user/profile", headers=headers)
        updated = client.put(
            "/api/v1/user/profile",
            json={"first_name": "Ada", "last_name": "Lovelace"},
            headers=headers,
        )

        assert profile.status_code == 200
        assert profile.json()["data"]["phone_number"] == PHONE
        assert profile.headers["X-RateLimit-Limit"] == "30"
        assert updated.status_code == 200
        assert updated.json()["data"]["first_name"] == "Ada"
        again = client.get("/api/v1/user/profile", headers=headers)
        assert again.json()["data"]["last_name"] == "Lovelace"

    def test_missing_token(self, client):
        response = client.get("/api/v1/user/profile")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_non_ascii_signature_is_unauthorized(self, client):
        header, payload, _ = _login(client).split(".")
        raw = f"Bearer {header}.{payload}.\xe9\xe9".encode("latin-1")

        response = client.get("/api/v1/user/profile", headers={"Authorization": raw})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_disabled_user_token_rejected(self, client):
        token = _login(client)
        _set_status(PHONE, UserStatus.DISABLED)

        response = client.get(
            "/api/v1/user/profile", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "user_disabled"

    def test_admin_token_is_not_a_user_token(self, client):
        _login(client)
        runtime = get_runtime()
        tx = runtime.store.begin()
        user = runtime.store.get_user_by_phone(tx, PHONE)
        tx.rollback()
        admin_token = runtime.auth.tokens.generate(user.id, Audience.ADMIN)

        response = client.get(
            "/api/v1/user/profile", headers={"Authorization": f"Bearer {admin_token}"}
        )

        assert response.status_code == 401


class TestAppSurface:
    def test_request_id_echoed_into_envelope(self, client):
        response = client.get("/api/v1/user/profile", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/api/v1/user/profile")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_health(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
