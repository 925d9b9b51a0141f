"""Tests for health check endpoints."""

from __future__ import annotations

from fastapi.testclient import TestClient

from core.config import Settings, get_settings
from main import app


class TestHealthCheck:
    """Tests for basic health check endpoint."""

    def test_health_check_returns_success(self) -> None:
        """Test basic health check returns healthy status."""
        client = TestClient(app)
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["status"] == "healthy"
        assert "CopyStream" in data["data"]["message"]
        assert data["data"]["checkpoint_store"] == "memory"
        assert data["message"] == "Health check successful"

    def test_health_check_reports_upstash_store(self) -> None:
        """Test health check reports the Upstash store when it is configured."""
        settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            UPSTASH_REDIS_REST_URL="https://example.upstash.io",
            UPSTASH_REDIS_REST_TOKEN="placeholder",  # pragma: allowlist secret
        )
        app.dependency_overrides[get_settings] = lambda: settings
        try:
            response = TestClient(app).get("/api/v1/health")
        finally:
            app.dependency_overrides.pop(get_settings, None)

        assert response.json()["data"]["checkpoint_store"] == "upstash"
