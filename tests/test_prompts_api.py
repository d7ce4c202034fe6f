"""Tests for the bulk delete HTTP endpoint."""

from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from promptstore.app.core.config import settings
from promptstore.app.main import app
from promptstore.app.middleware.auth import require_owner
from promptstore.app.middleware.rate_limit import RateGovernor, get_rate_governor
from promptstore.app.services.blob_store import InMemoryBlobStore
from promptstore.app.services.bulk_delete import BulkDeletionEngine, get_deletion_engine
from promptstore.app.services.metadata_store import InMemoryMetadataStore, ResourceRecord

URL = "/api/prompts/bulk-delete"


@pytest.fixture
def stores():
    metadata = InMemoryMetadataStore(
        [
            ResourceRecord(id="A", owner_id="U1", blob_key="blobs/A"),
            ResourceRecord(id="B", owner_id="U1", blob_key="blobs/B"),
            ResourceRecord(id="C", owner_id="U2", blob_key="blobs/C"),
        ]
    )
    blobs = InMemoryBlobStore()
    return metadata, blobs


@pytest.fixture
def governor():
    return RateGovernor(use_redis=False, namespace="prod")


@pytest.fixture
def client(stores, governor):
    metadata, blobs = stores
    engine = BulkDeletionEngine(metadata, blobs, blob_concurrency=4, blob_timeout=1.0)

    app.dependency_overrides[require_owner] = lambda: "U1"
    app.dependency_overrides[get_deletion_engine] = lambda: engine
    app.dependency_overrides[get_rate_governor] = lambda: governor
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestBulkDeleteEndpoint:
    def test_success_response_shape(self, client, stores):
        metadata, blobs = stores
        blobs.failing_keys.add("blobs/B")

        resp = client.post(URL, json={"ids": ["A", "B", "A", "", "Z"]})

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is False
        assert data["deletedIds"] == ["A", "B"]
        assert data["missingIds"] == ["Z"]
        assert data["blobFailures"] == [{"id": "B", "error": "simulated storage failure"}]
        assert data["requestId"] == resp.headers["X-Request-ID"]
        assert metadata.count_for("U1") == 0

    def test_rate_limit_headers_on_success(self, client):
        resp = client.post(URL, json={"ids": ["Z"]})

        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "10"
        assert resp.headers["X-RateLimit-Remaining"] == "9"
        assert int(resp.headers["X-RateLimit-Reset"]) > 0

    def test_request_id_is_echoed(self, client):
        resp = client.post(URL, json={"ids": ["Z"]}, headers={"X-Request-ID": "trace-123"})

        assert resp.headers["X-Request-ID"] == "trace-123"
        assert resp.json()["requestId"] == "trace-123"

    def test_eleventh_call_is_rate_limited(self, client, stores):
        for _ in range(10):
            assert client.post(URL, json={"ids": ["Z"]}).status_code == 200

        resp = client.post(URL, json={"ids": ["A"]})

        assert resp.status_code == 429
        data = resp.json()
        assert data["success"] is False
        assert data["code"] == "RATE_LIMITED"
        assert data["retryAt"] > 0
        assert 1 <= int(resp.headers["Retry-After"]) <= 60
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        # Denied calls must not delete anything
        metadata, _ = stores
        assert "A" in metadata.records

    def test_rate_limit_is_per_owner(self, client):
        for _ in range(10):
            client.post(URL, json={"ids": ["Z"]})

        app.dependency_overrides[require_owner] = lambda: "U2"
        resp = client.post(URL, json={"ids": ["C"]})

        assert resp.status_code == 200
        assert resp.json()["deletedIds"] == ["C"]

    def test_too_many_ids(self, client, stores):
        ids = ["A"] + [f"id-{i}" for i in range(500)]

        resp = client.post(URL, json={"ids": ids})

        assert resp.status_code == 413
        data = resp.json()
        assert data["code"] == "PAYLOAD_TOO_LARGE"
        assert data["error"] == "Too many IDs"
        metadata, _ = stores
        assert "A" in metadata.records

    @pytest.mark.parametrize("body", [{}, {"ids": []}, {"ids": "A"}, {"ids": [1, 2]}])
    def test_invalid_body(self, client, body):
        resp = client.post(URL, json=body)

        assert resp.status_code == 400
        data = resp.json()
        assert data["code"] == "VALIDATION_ERROR"
        assert data["fields"]

    def test_store_unavailable(self, client, stores):
        metadata, _ = stores
        metadata.available = False

        resp = client.post(URL, json={"ids": ["A"]})

        assert resp.status_code == 503
        assert resp.json()["code"] == "SERVICE_UNAVAILABLE"

    def test_unhandled_error_returns_500(self, stores):
        broken = Mock()
        broken.execute = AsyncMock(side_effect=RuntimeError("boom"))
        app.dependency_overrides[require_owner] = lambda: "U1"
        app.dependency_overrides[get_deletion_engine] = lambda: broken
        try:
            client = TestClient(app, raise_server_exceptions=False)
            resp = client.post(URL, json={"ids": ["A"]}, headers={"X-Request-ID": "trace-500"})
        finally:
            app.dependency_overrides.clear()

        assert resp.status_code == 500
        data = resp.json()
        assert data["code"] == "INTERNAL_ERROR"
        assert "boom" not in data["error"]
        assert data["requestId"] == "trace-500"
        assert resp.headers["X-Request-ID"] == "trace-500"

    def test_missing_ids_only_is_success(self, client, stores):
        resp = client.post(URL, json={"ids": ["Z", "C"]})

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["deletedIds"] == []
        assert data["missingIds"] == ["Z", "C"]
        metadata, _ = stores
        assert "C" in metadata.records


class TestBulkDeleteAuth:
    def test_missing_api_key_returns_401(self):
        client = TestClient(app)
        resp = client.post(URL, json={"ids": ["A"]})

        assert resp.status_code == 401
        assert resp.json()["code"] == "UNAUTHORIZED"

    def test_unknown_api_key_returns_401(self):
        with patch(
            "promptstore.app.middleware.auth.lookup_user_by_hash",
            new=AsyncMock(return_value=None),
        ):
            client = TestClient(app)
            resp = client.post(
                URL, json={"ids": ["A"]}, headers={"Authorization": "Bearer unknown"}
            )

        assert resp.status_code == 401

    def test_known_api_key_resolves_owner(self, stores, governor):
        metadata, blobs = stores
        engine = BulkDeletionEngine(metadata, blobs)
        app.dependency_overrides[get_deletion_engine] = lambda: engine
        app.dependency_overrides[get_rate_governor] = lambda: governor
        try:
            with patch(
                "promptstore.app.middleware.auth.lookup_user_by_hash",
                new=AsyncMock(return_value=Mock(id="U2")),
            ):
                client = TestClient(app)
                resp = client.post(
                    URL, json={"ids": ["A", "C"]}, headers={"Authorization": "Bearer key-two"}
                )
        finally:
            app.dependency_overrides.clear()

        assert resp.status_code == 200
        assert resp.json()["deletedIds"] == ["C"]
        assert resp.json()["missingIds"] == ["A"]


class TestDemoMode:
    @pytest.fixture
    def demo_mode(self, monkeypatch):
        monkeypatch.setattr(settings, "deployment_mode", "demo")

    def test_bulk_delete_blocked_in_demo_mode(self, demo_mode, client, stores, governor):
        resp = client.post(URL, json={"ids": ["A"]})

        assert resp.status_code == 403
        data = resp.json()
        assert data["success"] is False
        assert data["code"] == "DEMO_MODE_BLOCKED"
        assert data["requestId"] == resp.headers["X-Request-ID"]
        metadata, blobs = stores
        assert "A" in metadata.records
        assert blobs.delete_calls == []
        # Blocked calls never reach the rate governor
        assert governor.backend._buckets == {}

    def test_demo_block_runs_before_authentication(self, demo_mode):
        with patch("promptstore.app.middleware.auth.lookup_user_by_hash", new=AsyncMock()) as lookup:
            resp = TestClient(app).post(
                URL, json={"ids": ["A"]}, headers={"Authorization": "Bearer some-key"}
            )

        assert resp.status_code == 403
        assert resp.json()["code"] == "DEMO_MODE_BLOCKED"
        lookup.assert_not_called()

    def test_demo_block_runs_before_validation(self, demo_mode, client):
        resp = client.post(URL, json={"ids": []})

        assert resp.status_code == 403


class TestHealth:
    def test_health_degraded_when_database_fails(self):
        with patch(
            "promptstore.app.main.get_async_engine", side_effect=RuntimeError("db down")
        ):
            client = TestClient(app)
            resp = client.get("/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "degraded"
        assert data["components"]["database"]["status"] == "error"
