"""
Tests for the health check endpoint and request correlation.
"""

from httpx import AsyncClient


class TestHealthCheck:
    """GET /api/health"""

    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data

    async def test_request_id_is_generated(self, client: AsyncClient):
        response = await client.get("/api/health")
        assert response.headers["X-Request-ID"]

    async def test_request_id_is_echoed(self, client: AsyncClient):
        response = await client.get("/api/health", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"
