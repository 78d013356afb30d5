import asyncio
import json
from types import SimpleNamespace

from app.core.exceptions import (
    InvalidGrantError,
    InvalidTokenError,
    RateLimitExceededError,
    TokenReuseDetectedError,
)
from app.main import api_exception_handler, oauth_exception_handler


def _request(path="/api/v1/oauth/token"):
    return SimpleNamespace(url=SimpleNamespace(path=path), method="POST")


def test_oauth_errors_use_oauth_body():
    response = asyncio.run(oauth_exception_handler(_request(), InvalidGrantError("Refresh token is not valid")))

    assert response.status_code == 400
    assert json.loads(response.body) == {"error": "invalid_grant", "error_description": "Refresh token is not valid"}
    assert "www-authenticate" not in response.headers


def test_invalid_token_sets_www_authenticate():
    response = asyncio.run(oauth_exception_handler(_request("/api/v1/oauth/userinfo"), InvalidTokenError()))

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == 'Bearer error="invalid_token"'


def test_rate_limit_sets_retry_after():
    response = asyncio.run(api_exception_handler(_request("/api/v1/auth/login"), RateLimitExceededError(retry_after=42)))

    assert response.status_code == 429
    assert response.headers["retry-after"] == "42"
    body = json.loads(response.body)
    assert body["success"] is False
    assert body["details"] == {"retry_after": 42}


def test_api_errors_keep_status():
    response = asyncio.run(api_exception_handler(_request("/api/v1/auth/refresh"), TokenReuseDetectedError()))

    assert response.status_code == 401
    body = json.loads(response.body)
    assert body["path"] == "/api/v1/auth/refresh"
    assert "retry-after" not in response.headers
