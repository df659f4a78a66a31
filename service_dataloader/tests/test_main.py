"""
Tests for the DataLoader service API.
"""

import json

import pytest
from fastapi.testclient import TestClient

from shared.errors import BatchResolutionError
from service_dataloader.app.main import DataLoaderService, create_app


@pytest.fixture
def service(store, backing):
    return DataLoaderService(store=store, adapter=backing)


@pytest.fixture
def client(service):
    return TestClient(service.app)


def cached(value):
    return json.dumps({"__kv__": 1, "v": value, "exp": None})


class TestDataLoaderService:
    """Operator endpoints."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "dataloader"
        assert data["loaders"] == 10

    def test_list_loaders(self, client):
        response = client.get("/loaders")

        assert response.status_code == 200
        loaders = response.json()["loaders"]
        assert loaders["user"]["cache_ttl_seconds"] == 3600
        assert loaders["weather_data"]["grouped"] is True

    def test_stats(self, client):
        response = client.get("/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["store"]["total_requests"] == 0
        assert "user" in data["loaders"]
        assert data["circuit_breaker"]["state"] == "closed"

    def test_reset_stats(self, client, service):
        service.store._stats.hits = 7

        response = client.post("/stats/reset")

        assert response.status_code == 200
        assert service.store.stats().hits == 0

    def test_clear_loaders(self, client):
        response = client.post("/loaders/clear")

        assert response.status_code == 200
        assert response.json() == {"status": "cleared", "loaders": 10}

    def test_invalidate_key(self, client, fake_redis):
        fake_redis.data["test:user:u1"] = cached({"clerk_id": "u1"})

        response = client.delete("/loaders/user/u1")

        assert response.status_code == 200
        assert response.json() == {"entity_type": "user", "key": "u1", "removed": True}
        assert "test:user:u1" not in fake_redis.data

    def test_invalidate_unknown_entity(self, client):
        response = client.delete("/loaders/spaceship/x")

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_request_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


class TestServiceInfrastructure:
    """Health, metrics, error mapping and lifecycle."""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"]["redis"] == "ok"
        assert data["dependencies"]["postgres"] == "ok"

    def test_health_check_reports_redis_outage(self, client, fake_redis):
        fake_redis.fail = True

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["dependencies"]["redis"] == "error"

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "service_info" in response.text
        assert "loader_batch_size" in response.text

    def test_batch_failure_maps_to_503_with_retry_after(self, service):
        @service.app.get("/boom")
        async def boom():
            raise BatchResolutionError("user", ["u1"], RuntimeError("database unavailable"))

        response = TestClient(service.app).get("/boom")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        body = response.json()
        assert body["code"] == "BATCH_RESOLUTION_FAILED"
        assert body["retryable"] is True

    def test_lifecycle_opens_and_drains(self, service, fake_redis):
        with TestClient(service.app) as client:
            assert client.get("/").status_code == 200

        assert "PING" in fake_redis.commands
        assert fake_redis.closed is False

    def test_create_app(self):
        app = create_app()

        assert app.title == "Dataloader Service"
