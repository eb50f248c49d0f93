"""User preferences and saved prompt repository."""

from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user_preferences import SavedPrompt, UserPreferences


class PreferencesRepository:
    """Encapsulates preference and saved-prompt queries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # --- Preferences ---

    async def find(self, user_id: int) -> UserPreferences | None:
        result = await self._session.execute(
            select(UserPreferences).where(UserPreferences.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def upsert(self, user_id: int, **fields: Any) -> UserPreferences:
        """Create the singleton row or update only the supplied fields."""
        prefs = await self.find(user_id)
        if prefs is None:
            prefs = UserPreferences(user_id=user_id, **fields)
            self._session.add(prefs)
        else:
            for key, value in fields.items():
                setattr(prefs, key, value)
        await self._session.flush()
        await self._session.refresh(prefs)
        return prefs

    # --- Saved prompts ---

    async def list_prompts(self, user_id: int) -> list[SavedPrompt]:
        result = await self._session.execute(
            select(SavedPrompt)
            .where(SavedPrompt.user_id == user_id)
            .order_by(SavedPrompt.position.asc(), SavedPrompt.created_at.asc())
        )
        return list(result.scalars().all())

    async def count_prompts(self, user_id: int) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(SavedPrompt).where(SavedPrompt.user_id == user_id)
        )
        return int(result.scalar_one())

    async def create_prompt(self, user_id: int, position: int, **fields: Any) -> SavedPrompt:
        prompt = SavedPrompt(user_id=user_id, position=position, **fields)
        self._session.add(prompt)
        await self._session.flush()
        await self._session.refresh(prompt)
        return prompt

    async def update_prompt(
        self, user_id: int, prompt_id: str, **fields: Any
    ) -> SavedPrompt | None:
        result = await self._session.execute(
            update(SavedPrompt)
            .where(SavedPrompt.id == prompt_id, SavedPrompt.user_id == user_id)
            .values(**fields, updated_at=func.now())
        )
        if result.rowcount == 0:
            return None
        found = await self._session.execute(
            select(SavedPrompt).where(SavedPrompt.id == prompt_id)
        )
        prompt = found.scalar_one()
        await self._session.refresh(prompt)
        return prompt

    async def delete_prompt(self, user_id: int, prompt_id: str) -> bool:
        result = await self._session.execute(
            delete(SavedPrompt).where(
                SavedPrompt.id == prompt_id, SavedPrompt.user_id == user_id
            )
        )
        return result.rowcount > 0

    async def set_positions(self, user_id: int, ordered_ids: list[str]) -> None:
        """Assign positions 0..n-1 following ``ordered_ids``."""
        for position, prompt_id in enumerate(ordered_ids):
            await self._session.execute(
                update(SavedPrompt)
                .where(SavedPrompt.id == prompt_id, SavedPrompt.user_id == user_id)
                .values(position=position)
            )
