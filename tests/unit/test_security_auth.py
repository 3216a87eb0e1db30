"""Tests for caller identity and API key middleware."""

from fastapi import Depends, FastAPI, HTTPException
from fastapi.testclient import TestClient
import pytest

from app.config import Settings
from app.core.middleware import setup_middleware
from app.deps.security import (
    CurrentUser,
    get_current_user,
    get_user_id,
    verify_api_key,
)


class TestGetCurrentUser:
    """Tests for get_current_user dependency."""

    def test_header_value_is_used(self):
        user = get_current_user(x_user_id="user-1")

        assert user == CurrentUser(user_id="user-1")

    def test_whitespace_is_stripped(self):
        assert get_current_user(x_user_id="  user-1 ").user_id == "user-1"

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_missing_header_raises_401(self, value):
        with pytest.raises(HTTPException) as exc_info:
            get_current_user(x_user_id=value)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["error_code"] == "USER_ID_REQUIRED"

    def test_too_long_raises_400(self):
        with pytest.raises(HTTPException) as exc_info:
            get_current_user(x_user_id="u" * 129)

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["error_code"] == "INVALID_USER_ID"

    def test_get_user_id(self):
        assert get_user_id(CurrentUser(user_id="user-1")) == "user-1"


class TestVerifyApiKey:
    def test_matching_key(self):
        assert verify_api_key("secret", "secret") is True

    def test_wrong_key(self):
        assert verify_api_key("secret", "other") is False


def make_app(**overrides) -> TestClient:
    settings = Settings(_env_file=None, rate_limit_enabled=False, **overrides)
    app = FastAPI()
    setup_middleware(app, settings)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/provisioning/queue")
    async def queue(user_id: str = Depends(get_user_id)):
        return {"user_id": user_id}

    return TestClient(app)


class TestApiKeyMiddleware:
    def test_no_key_configured_allows_requests(self):
        client = make_app()

        response = client.get("/provisioning/queue", headers={"X-User-Id": "user-1"})

        assert response.status_code == 200
        assert response.json() == {"user_id": "user-1"}
        assert "X-Request-ID" in response.headers

    def test_missing_key_returns_401(self):
        client = make_app(api_key="secret")

        response = client.get("/provisioning/queue", headers={"X-User-Id": "user-1"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "API_KEY_REQUIRED"

    def test_wrong_key_returns_403(self):
        client = make_app(api_key="secret")

        response = client.get(
            "/provisioning/queue", headers={"X-User-Id": "user-1", "X-API-Key": "nope"}
        )

        assert response.status_code == 403
        assert response.json()["error_code"] == "INVALID_API_KEY"

    def test_valid_key(self):
        client = make_app(api_key="secret")

        response = client.get(
            "/provisioning/queue", headers={"X-User-Id": "user-1", "X-API-Key": "secret"}
        )

        assert response.status_code == 200

    def test_public_paths_skip_key(self):
        client = make_app(api_key="secret")

        response = client.get("/health")

        assert response.status_code == 200
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_oversized_body_returns_413(self):
        client = make_app(max_request_body_size=10)

        response = client.post(
            "/provisioning/queue",
            content=b"x" * 100,
            headers={"X-User-Id": "user-1"},
        )

        assert response.status_code == 413
