"""Tests for UserRepository."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.repositories.model_repo import ModelRepository
from app.repositories.user_repo import UserRepository
from tests.conftest import seed_catalog


@pytest.fixture
def repo(db_session: AsyncSession) -> UserRepository:
    return UserRepository(db_session)


class TestAccounts:
    async def test_create_defaults(self, repo: UserRepository) -> None:
        user = await repo.create(email="new@test.com", hashed_password="h", username="new")
        assert user.id is not None
        assert user.role == "user"
        assert user.tier_id is None

    async def test_lookup(self, repo: UserRepository, db_session: AsyncSession) -> None:
        user = await repo.create(email="find@test.com", hashed_password="h", username="u")
        await db_session.commit()
        assert (await repo.find_by_email("find@test.com")).id == user.id  # type: ignore[union-attr]
        assert (await repo.find_by_id(user.id)).email == "find@test.com"  # type: ignore[union-attr]
        assert await repo.find_by_email("nobody@test.com") is None

    async def test_exists_by_email(self, repo: UserRepository, db_session: AsyncSession) -> None:
        await repo.create(email="exists@test.com", hashed_password="h", username="u")
        await db_session.commit()
        assert await repo.exists_by_email("exists@test.com") is True
        assert await repo.exists_by_email("nope@test.com") is False


class TestTiers:
    async def test_create_on_tier(self, repo: UserRepository, db_session: AsyncSession) -> None:
        tiers = await seed_catalog(db_session)
        user = await repo.create(
            email="pro@test.com", hashed_password="h", username="pro", tier_id=tiers["pro"].id
        )
        tier = await ModelRepository(db_session).find_user_tier(user.id)
        assert tier is not None
        assert tier.name == "pro"

    async def test_assign_and_clear_tier(
        self, repo: UserRepository, db_session: AsyncSession
    ) -> None:
        tiers = await seed_catalog(db_session)
        user = await repo.create(email="t@test.com", hashed_password="h", username="t")
        models = ModelRepository(db_session)

        await repo.assign_tier(user.id, tiers["extended"])
        assert (await models.find_user_tier(user.id)).name == "extended"  # type: ignore[union-attr]

        await repo.assign_tier(user.id, None)
        assert await models.find_user_tier(user.id) is None
