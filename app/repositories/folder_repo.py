"""Folder repository."""

from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.folder import Folder


class FolderRepository:
    """Encapsulates folder database queries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        user_id: int,
        name_encrypted: str,
        name_iv: str,
        name_tag: str,
        folder_id: str | None = None,
        position: int | None = None,
    ) -> Folder:
        """Insert a folder; the id is generated unless supplied."""
        if position is None:
            position = await self.next_position(user_id)
        folder = Folder(
            user_id=user_id,
            name_encrypted=name_encrypted,
            name_iv=name_iv,
            name_tag=name_tag,
            position=position,
        )
        if folder_id:
            folder.id = folder_id
        self._session.add(folder)
        await self._session.flush()
        await self._session.refresh(folder)
        return folder

    async def next_position(self, user_id: int) -> int:
        result = await self._session.execute(
            select(func.max(Folder.position)).where(Folder.user_id == user_id)
        )
        current = result.scalar_one_or_none()
        return 0 if current is None else current + 1

    async def find_by_id(self, folder_id: str) -> Folder | None:
        result = await self._session.execute(select(Folder).where(Folder.id == folder_id))
        return result.scalar_one_or_none()

    async def find_user_folder(self, user_id: int, folder_id: str) -> Folder | None:
        result = await self._session.execute(
            select(Folder).where(Folder.id == folder_id, Folder.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def list_by_user(self, user_id: int) -> list[Folder]:
        """User folders ordered by position, then creation time."""
        result = await self._session.execute(
            select(Folder)
            .where(Folder.user_id == user_id)
            .order_by(Folder.position.asc(), Folder.created_at.asc())
        )
        return list(result.scalars().all())

    async def count_by_user(self, user_id: int) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(Folder).where(Folder.user_id == user_id)
        )
        return int(result.scalar_one())

    async def update(self, user_id: int, folder_id: str, **fields: Any) -> Folder | None:
        """Apply partial updates and return the refreshed folder."""
        result = await self._session.execute(
            update(Folder)
            .where(Folder.id == folder_id, Folder.user_id == user_id)
            .values(**fields, updated_at=func.now())
        )
        if result.rowcount == 0:
            return None
        folder = await self.find_user_folder(user_id, folder_id)
        if folder is not None:
            await self._session.refresh(folder)
        return folder

    async def delete(self, user_id: int, folder_id: str) -> bool:
        result = await self._session.execute(
            delete(Folder).where(Folder.id == folder_id, Folder.user_id == user_id)
        )
        return result.rowcount > 0
