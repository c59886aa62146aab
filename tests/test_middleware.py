"""
Tests for the admission middleware and rate limit headers.
"""

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from rategate import DecisionReason, RateLimitResult
from rategate.middleware import AdmissionMiddleware, decision_headers


def build_app(dispatcher, **middleware_kwargs) -> FastAPI:
    app = FastAPI()
    app.add_middleware(AdmissionMiddleware, dispatcher=dispatcher, **middleware_kwargs)

    @app.get("/tb/items")
    async def token_bucket_endpoint(request: Request):
        return {"message": "success", "remaining": request.state.rate_limit_result.remaining}

    @app.get("/sw/items")
    async def sliding_window_endpoint():
        return {"message": "success"}

    @app.get("/other")
    async def unpoliced_endpoint():
        return {"message": "never reached"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


@pytest.fixture
def client(dispatcher):
    """Client for an app gated by the default middleware configuration."""
    app = build_app(dispatcher, exempt_paths=["/health"])
    with TestClient(app) as test_client:
        yield test_client


API_HEADERS = {"X-API-Key": "key-001"}


class TestAdmissionMiddleware:
    """Test suite for the admission middleware."""

    def test_allowed_request_has_headers(self, client):
        response = client.get("/tb/items", headers=API_HEADERS)

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "9"
        assert "Retry-After" not in response.headers
        assert response.json() == {"message": "success", "remaining": 9}

    def test_limit_exceeded_returns_429(self, client):
        for i in range(10):
            response = client.get("/tb/items", headers=API_HEADERS)
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Remaining"] == str(9 - i)

        response = client.get("/tb/items", headers=API_HEADERS)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        body = response.json()
        assert body["allowed"] is False
        assert body["reason"] == "limit_exceeded"
        assert body["retry_after_ms"] == 1000

    def test_sliding_window_limit(self, client):
        for _ in range(10):
            assert client.get("/sw/items", headers=API_HEADERS).status_code == 200

        response = client.get("/sw/items", headers=API_HEADERS)
        assert response.status_code == 429
        # The clock has not moved: the oldest entry leaves in a full window
        assert response.headers["Retry-After"] == "10"

    def test_missing_header_returns_401(self, client):
        response = client.get("/tb/items")

        assert response.status_code == 401
        assert response.json()["reason"] == "api_key_invalid_or_inactive"
        assert response.json()["message"] == "Missing X-API-Key header."

    def test_inactive_key_returns_401(self, client):
        response = client.get("/tb/items", headers={"X-API-Key": "key-inactive"})
        assert response.status_code == 401

    def test_no_policy_returns_403(self, client):
        response = client.get("/other", headers=API_HEADERS)

        assert response.status_code == 403
        assert response.json()["reason"] == "no_matching_policy"
        assert "X-RateLimit-Remaining" not in response.headers

    def test_internal_error_returns_503(self, client, seeded_store, make_policy):
        seeded_store.add_policy(make_policy("/other", algorithm="leaky_bucket"))

        response = client.get("/other", headers=API_HEADERS)

        assert response.status_code == 503
        assert response.json()["reason"] == "internal_error"

    def test_exempt_path_skips_gate(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert "X-RateLimit-Remaining" not in response.headers

    def test_custom_cost_and_header(self, dispatcher):
        app = build_app(dispatcher, header_name="X-Token", cost_func=lambda request: 5)

        with TestClient(app) as client:
            first = client.get("/tb/items", headers={"X-Token": "key-001"})
            second = client.get("/tb/items", headers={"X-Token": "key-001"})
            third = client.get("/tb/items", headers={"X-Token": "key-001"})

        assert first.headers["X-RateLimit-Remaining"] == "5"
        assert second.headers["X-RateLimit-Remaining"] == "0"
        assert third.status_code == 429
        assert third.headers["Retry-After"] == "5"


class TestDecisionHeaders:
    def test_allowed(self):
        headers = decision_headers(RateLimitResult.allow(remaining=3))
        assert headers == {"X-RateLimit-Remaining": "3"}

    def test_retry_rounds_up(self):
        result = RateLimitResult.deny(
            DecisionReason.LIMIT_EXCEEDED, retry_after_ms=1001, remaining=0
        )
        assert decision_headers(result)["Retry-After"] == "2"

    def test_no_hint_no_header(self):
        result = RateLimitResult.deny(DecisionReason.NO_MATCHING_POLICY)
        assert decision_headers(result) == {}

    def test_zero_retry(self):
        result = RateLimitResult.deny(DecisionReason.LIMIT_EXCEEDED, retry_after_ms=0)
        assert decision_headers(result) == {"Retry-After": "0"}
