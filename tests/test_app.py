"""
Unit tests for FastAPI application endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from app import app


@pytest.fixture
def client():
    return TestClient(app)


class TestRootEndpoint:
    """Test suite for the root endpoint."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Compliance Notice Tracking API"
        assert data["version"] == "1.0.0"
        assert data["health"] == "/api/v1/health"

    def test_root_method_not_allowed(self, client):
        response = client.post("/")
        assert response.status_code == 405


class TestApplicationMetadata:
    """Test suite for application metadata."""

    def test_openapi_schema_lists_routes(self, client):
        response = client.get("/openapi.json")

        assert response.status_code == 200
        paths = response.json()["paths"]
        assert "/api/v1/messages" in paths
        assert "/api/v1/tick" in paths
        assert "/api/v1/users/{user_id}/settings" in paths

    def test_docs_accessible(self, client):
        response = client.get("/docs")
        assert response.status_code == 200

    def test_cors_headers(self, client):
        response = client.options(
            "/api/v1/health",
            headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "GET"},
        )
        assert response.status_code == 200
        assert "access-control-allow-origin" in response.headers
