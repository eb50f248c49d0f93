"""Model catalog and tier repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.llm_model import LLMModel
from app.models.user import User, UserTier


class ModelRepository:
    """Encapsulates catalog and tier lookups."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_by_model_id(self, model_id: str) -> LLMModel | None:
        result = await self._session.execute(
            select(LLMModel).where(LLMModel.model_id == model_id)
        )
        return result.scalar_one_or_none()

    async def list_for_tiers(self, tier_names: list[str]) -> list[LLMModel]:
        """Available models whose tier requirement is in ``tier_names``."""
        result = await self._session.execute(
            select(LLMModel)
            .where(LLMModel.available.is_(True), LLMModel.tier_requirement.in_(tier_names))
            .order_by(LLMModel.display_order.asc(), LLMModel.name.asc())
        )
        return list(result.scalars().all())

    async def find_user_tier(self, user_id: int) -> UserTier | None:
        result = await self._session.execute(
            select(UserTier)
            .join(User, User.tier_id == UserTier.id)
            .where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def find_tier_by_name(self, name: str) -> UserTier | None:
        result = await self._session.execute(select(UserTier).where(UserTier.name == name))
        return result.scalar_one_or_none()
