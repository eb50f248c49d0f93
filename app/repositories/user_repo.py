"""User repository for database operations."""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User, UserTier


class UserRepository:
    """Encapsulates account queries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_by_email(self, email: str) -> User | None:
        result = await self._session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def find_by_id(self, user_id: int) -> User | None:
        result = await self._session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def create(
        self,
        email: str,
        hashed_password: str,
        username: str,
        role: str = "user",
        tier_id: int | None = None,
    ) -> User:
        """Create an account; a missing tier means permissionless."""
        user = User(
            email=email,
            hashed_password=hashed_password,
            username=username,
            role=role,
            tier_id=tier_id,
        )
        self._session.add(user)
        await self._session.flush()
        await self._session.refresh(user)
        return user

    async def exists_by_email(self, email: str) -> bool:
        result = await self._session.execute(select(User.id).where(User.email == email))
        return result.scalar_one_or_none() is not None

    async def assign_tier(self, user_id: int, tier: UserTier | None) -> None:
        await self._session.execute(
            update(User)
            .where(User.id == user_id)
            .values(tier_id=tier.id if tier is not None else None)
        )
