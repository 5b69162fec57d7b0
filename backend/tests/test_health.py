"""
Tests for the health endpoint with Redis stubbed out.
"""

from unittest.mock import AsyncMock, patch


class TestHealth:
    def test_all_connected(self, client):
        with patch("app.routers.health.check_redis_connection", AsyncMock(return_value=True)), \
             patch("app.routers.health.get_scheduler_heartbeat", AsyncMock(return_value="2026-01-15T12:00:00")):
            resp = client.get("/api/health")

        assert resp.status_code == 200
        assert resp.json() == {
            "status": "ok",
            "db": "connected",
            "redis": "connected",
            "scheduler_last_run": "2026-01-15T12:00:00",
        }

    def test_redis_down_is_degraded(self, client):
        heartbeat = AsyncMock()
        with patch("app.routers.health.check_redis_connection", AsyncMock(return_value=False)), \
             patch("app.routers.health.get_scheduler_heartbeat", heartbeat):
            body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["redis"] == "disconnected"
        assert body["scheduler_last_run"] is None
        heartbeat.assert_not_called()
