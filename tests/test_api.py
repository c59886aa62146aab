"""
Tests for the HTTP decision endpoint, health and metrics routes.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from rategate.api import create_app


@pytest.fixture
def client(dispatcher, metrics):
    app = create_app(dispatcher, metrics=metrics)
    with TestClient(app) as test_client:
        yield test_client


class TestCheckEndpoint:
    def test_allowed(self, client):
        response = client.post("/check", json={"api_key": "key-001", "endpoint": "/tb/items"})

        assert response.status_code == 200
        assert response.json() == {
            "allowed": True,
            "reason": "allowed",
            "retry_after_ms": None,
            "remaining": 9,
            "message": "Request allowed by token bucket.",
        }

    def test_cost(self, client):
        response = client.post(
            "/check", json={"api_key": "key-001", "endpoint": "/sw/items", "cost": 3}
        )
        assert response.json()["remaining"] == 7

    def test_denials_are_200(self, client):
        response = client.post("/check", json={"api_key": "bogus", "endpoint": "/tb/items"})

        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert response.json()["reason"] == "api_key_invalid_or_inactive"

    def test_limit_exceeded(self, client):
        body = {"api_key": "key-001", "endpoint": "/tb/items"}
        for _ in range(10):
            client.post("/check", json=body)

        response = client.post("/check", json=body)

        assert response.status_code == 200
        assert response.json()["reason"] == "limit_exceeded"
        assert response.json()["retry_after_ms"] == 1000

    def test_internal_error_is_500(self, client, seeded_store, make_policy):
        seeded_store.add_policy(make_policy("/lb/*", algorithm="leaky_bucket"))

        response = client.post("/check", json={"api_key": "key-001", "endpoint": "/lb/x"})

        assert response.status_code == 500
        assert response.json()["reason"] == "internal_error"

    @pytest.mark.parametrize(
        "body",
        [
            {"endpoint": "/tb/items"},
            {"api_key": "key-001"},
            {"api_key": "", "endpoint": "/tb/items"},
            {"api_key": "key-001", "endpoint": "/tb/items", "cost": 0},
        ],
    )
    def test_invalid_body(self, client, body):
        assert client.post("/check", json=body).status_code == 422


class TestHealthAndMetrics:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "rategate"}

    def test_metrics(self, client):
        client.post("/check", json={"api_key": "key-001", "endpoint": "/tb/items"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'test_decisions_total{algorithm="token_bucket",reason="allowed"} 1.0' in (
            response.text
        )

    def test_metrics_route_absent_without_collector(self, dispatcher):
        with TestClient(create_app(dispatcher)) as client:
            assert client.get("/metrics").status_code == 404


class TestStoreLifecycle:
    def test_store_connected_and_closed(self, dispatcher):
        store = AsyncMock()
        store.health_check.return_value = True

        with TestClient(create_app(dispatcher, store=store)) as client:
            store.connect.assert_awaited_once()
            assert client.get("/health").status_code == 200

        store.close.assert_awaited_once()

    def test_unhealthy_store(self, dispatcher):
        store = AsyncMock()
        store.health_check.return_value = False

        with TestClient(create_app(dispatcher, store=store)) as client:
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json() == {"status": "degraded", "service": "rategate"}
