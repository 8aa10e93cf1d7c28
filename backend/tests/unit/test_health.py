"""Unit tests for health check endpoints.

Tests database and Redis readiness checks.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError


def _request(redis_client=None) -> MagicMock:
    request = MagicMock()
    request.app.state = MagicMock(spec=[])
    if redis_client is not None:
        request.app.state.redis_client = redis_client
    return request


class TestHealthEndpoint:
    """Test basic health endpoint."""

    @pytest.mark.asyncio
    async def test_health_returns_healthy(self):
        from countersign import __version__
        from countersign.api.routes.health import health_check

        response = await health_check()

        assert response.status == "healthy"
        assert response.version == __version__


class TestReadinessEndpoint:
    """Test readiness check endpoint."""

    @pytest.mark.asyncio
    async def test_ready_all_services_up(self):
        from countersign.api.routes.health import readiness_check

        mock_session = AsyncMock()
        mock_redis = AsyncMock()

        response = await readiness_check(request=_request(mock_redis), session=mock_session)

        assert response.ready is True
        assert response.checks == {"database": True, "redis": True}
        mock_redis.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ready_database_down(self):
        from countersign.api.routes.health import readiness_check

        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(
            side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))
        )

        response = await readiness_check(request=_request(AsyncMock()), session=mock_session)

        assert response.ready is False
        assert response.checks["database"] is False
        assert response.checks["redis"] is True

    @pytest.mark.asyncio
    async def test_ready_redis_down(self):
        from countersign.api.routes.health import readiness_check

        mock_redis = AsyncMock()
        mock_redis.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

        response = await readiness_check(request=_request(mock_redis), session=AsyncMock())

        assert response.ready is False
        assert response.checks["redis"] is False

    @pytest.mark.asyncio
    async def test_redis_client_is_created_once(self):
        from countersign.api.routes.health import readiness_check

        request = _request()
        with patch("redis.asyncio.from_url") as mock_from_url:
            mock_from_url.return_value = AsyncMock()

            await readiness_check(request=request, session=AsyncMock())

        mock_from_url.assert_called_once()
        assert request.app.state.redis_client is mock_from_url.return_value


class TestHealthRoutes:
    @pytest.mark.asyncio
    async def test_health_route(self, async_client):
        response = await async_client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, async_client):
        response = await async_client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
