"""Tests for connection setup: Redis is optional, the database gates readiness."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fakeredis import FakeAsyncRedis
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from app.db import close_redis, database_reachable, get_redis, init_redis, redis_reachable
from tests.api.conftest import build_test_app

pytestmark = pytest.mark.unit


@pytest.fixture
async def reset_redis():
    yield
    await close_redis()


async def test_init_redis_tolerates_unreachable_server(monkeypatch, reset_redis):
    broken = MagicMock()
    broken.ping = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    broken.aclose = AsyncMock()
    monkeypatch.setattr("app.db.redis.redis.from_url", lambda *args, **kwargs: broken)

    assert await init_redis("redis://nowhere:6379") is False
    assert get_redis() is broken
    assert await redis_reachable() is False


async def test_init_redis_reports_reachable_server(monkeypatch, reset_redis):
    fake_redis = FakeAsyncRedis(decode_responses=True)
    monkeypatch.setattr("app.db.redis.redis.from_url", lambda *args, **kwargs: fake_redis)

    assert await init_redis("redis://fake:6379") is True
    assert await redis_reachable() is True


async def test_nothing_is_reachable_before_init():
    assert get_redis() is None
    assert await redis_reachable() is False
    assert await database_reachable() is False


def _stub(value: bool):
    async def reachable() -> bool:
        return value

    return reachable


@pytest.mark.parametrize(
    ("database", "redis", "status_code", "status"),
    [
        (True, True, 200, "ready"),
        (True, False, 200, "degraded"),
        (False, True, 503, "unavailable"),
    ],
)
def test_readiness_is_gated_by_database_only(monkeypatch, database, redis, status_code, status):
    monkeypatch.setattr("app.api.routes.health.database_reachable", _stub(database))
    monkeypatch.setattr("app.api.routes.health.redis_reachable", _stub(redis))

    with TestClient(build_test_app()) as client:
        response = client.get("/api/ready")

    assert response.status_code == status_code
    assert response.json() == {"status": status, "checks": {"database": database, "redis": redis}}
