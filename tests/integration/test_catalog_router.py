"""Integration tests for the model catalog and rate-limit status endpoints."""

import fakeredis.aioredis
import pytest
from httpx import AsyncClient

from app.models.user import UserTier


@pytest.fixture(autouse=True)
def _catalog(catalog_db: dict[str, UserTier]) -> None:
    """Seeded tiers and models; user 1 is on the extended tier."""


class TestModels:
    async def test_anonymous_gets_free_tier(self, async_client: AsyncClient) -> None:
        resp = await async_client.get("/api/models")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["tier"] == "permissionless"
        ids = [m["model_id"] for m in data["models"]]
        assert ids == ["free-model", "AkashGen"]
        assert all("token_multiplier" not in m for m in data["models"])

    async def test_user_tier_models(self, authed_client: AsyncClient) -> None:
        data = (await authed_client.get("/api/models")).json()["data"]
        assert data["tier"] == "extended"
        ids = [m["model_id"] for m in data["models"]]
        assert "extended-model" in ids
        assert "pro-model" not in ids
        assert "offline-model" not in ids

    async def test_bad_token_treated_as_anonymous(self, async_client: AsyncClient) -> None:
        resp = await async_client.get(
            "/api/models", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert resp.json()["data"]["tier"] == "permissionless"


class TestRateLimitStatus:
    async def test_anonymous(self, async_client: AsyncClient) -> None:
        body = (await async_client.get("/api/rate-limit/status")).json()
        assert body["authenticated"] is False
        assert body["usagePercentage"] == 0
        assert body["remainingPercentage"] == 100
        assert body["blocked"] is False

    async def test_user_usage(
        self, authed_client: AsyncClient, fake_redis: fakeredis.aioredis.FakeRedis
    ) -> None:
        await fake_redis.set("token_limit:user:1", 50000)
        body = (await authed_client.get("/api/rate-limit/status")).json()
        assert body["authenticated"] is True
        assert body["usagePercentage"] == 25
        assert body["remainingPercentage"] == 75

    async def test_exhausted(
        self, async_client: AsyncClient, fake_redis: fakeredis.aioredis.FakeRedis
    ) -> None:
        await fake_redis.set("token_limit:anonymous:127.0.0.1", 25000)
        body = (await async_client.get("/api/rate-limit/status")).json()
        assert body["blocked"] is True
        assert body["remainingPercentage"] == 0
