"""Chat repository for session and message database operations."""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.chat_message import ChatMessage
from app.models.chat_session import ChatSession


@dataclass(frozen=True)
class MessageRow:
    """Encrypted message ready to be written at a position."""

    role: str
    position: int
    content_encrypted: str
    content_iv: str
    content_tag: str
    token_count: int | None = None


class ChatRepository:
    """Encapsulates chat session and message database queries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_session(self, chat_id: str) -> ChatSession | None:
        """Find a chat session by id regardless of owner."""
        result = await self._session.execute(
            select(ChatSession).where(ChatSession.id == chat_id)
        )
        return result.scalar_one_or_none()

    async def find_user_session(self, user_id: int, chat_id: str) -> ChatSession | None:
        result = await self._session.execute(
            select(ChatSession).where(
                ChatSession.id == chat_id, ChatSession.user_id == user_id
            )
        )
        return result.scalar_one_or_none()

    async def upsert_session(self, user_id: int, chat_id: str, **fields: Any) -> ChatSession:
        """Insert a session or overwrite the caller's existing one."""
        chat = await self.find_session(chat_id)
        if chat is None:
            chat = ChatSession(id=chat_id, user_id=user_id, **fields)
            self._session.add(chat)
        else:
            for key, value in fields.items():
                setattr(chat, key, value)
            chat.updated_at = func.now()
        await self._session.flush()
        await self._session.refresh(chat)
        return chat

    async def list_sessions(
        self, user_id: int, limit: int | None = None, offset: int = 0
    ) -> list[ChatSession]:
        """User sessions, most recently updated first."""
        stmt = (
            select(ChatSession)
            .where(ChatSession.user_id == user_id)
            .order_by(ChatSession.updated_at.desc(), ChatSession.id.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_sessions(self, user_id: int) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(ChatSession).where(ChatSession.user_id == user_id)
        )
        return int(result.scalar_one())

    async def latest_update(self, user_id: int) -> datetime | None:
        """Newest updated_at across the user's sessions."""
        result = await self._session.execute(
            select(func.max(ChatSession.updated_at)).where(ChatSession.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def update_session(self, user_id: int, chat_id: str, **fields: Any) -> bool:
        """Apply partial updates; returns False when the chat is not the user's."""
        result = await self._session.execute(
            update(ChatSession)
            .where(ChatSession.id == chat_id, ChatSession.user_id == user_id)
            .values(**fields, updated_at=func.now())
        )
        return result.rowcount > 0

    async def delete_session(self, user_id: int, chat_id: str) -> bool:
        """Delete a session and its messages."""
        owned = await self.find_user_session(user_id, chat_id)
        if owned is None:
            return False
        await self._session.execute(
            delete(ChatMessage).where(ChatMessage.chat_session_id == chat_id)
        )
        await self._session.execute(delete(ChatSession).where(ChatSession.id == chat_id))
        return True

    async def delete_sessions_in_folder(self, user_id: int, folder_id: str) -> int:
        """Delete every chat (and its messages) filed under a folder."""
        result = await self._session.execute(
            select(ChatSession.id).where(
                ChatSession.user_id == user_id, ChatSession.folder_id == folder_id
            )
        )
        chat_ids = list(result.scalars().all())
        if chat_ids:
            await self._session.execute(
                delete(ChatMessage).where(ChatMessage.chat_session_id.in_(chat_ids))
            )
            await self._session.execute(
                delete(ChatSession).where(ChatSession.id.in_(chat_ids))
            )
        return len(chat_ids)

    # --- Messages ---

    async def upsert_message(self, chat_id: str, row: MessageRow) -> ChatMessage:
        """Write a message at ``row.position``, replacing what was there."""
        result = await self._session.execute(
            select(ChatMessage).where(
                ChatMessage.chat_session_id == chat_id,
                ChatMessage.position == row.position,
            )
        )
        message = result.scalar_one_or_none()
        if message is None:
            message = ChatMessage(
                chat_session_id=chat_id,
                role=row.role,
                position=row.position,
                content_encrypted=row.content_encrypted,
                content_iv=row.content_iv,
                content_tag=row.content_tag,
                token_count=row.token_count,
            )
            self._session.add(message)
        else:
            message.role = row.role
            message.content_encrypted = row.content_encrypted
            message.content_iv = row.content_iv
            message.content_tag = row.content_tag
            message.token_count = row.token_count
        await self._session.flush()
        return message

    async def find_messages(self, chat_id: str) -> list[ChatMessage]:
        """Messages of one chat in position order."""
        result = await self._session.execute(
            select(ChatMessage)
            .where(ChatMessage.chat_session_id == chat_id)
            .order_by(ChatMessage.position.asc())
        )
        return list(result.scalars().all())

    async def find_messages_bulk(
        self, user_id: int, chat_ids: list[str]
    ) -> dict[str, list[ChatMessage]]:
        """Messages for many of a user's chats in a single query, grouped by chat id."""
        grouped: dict[str, list[ChatMessage]] = defaultdict(list)
        if not chat_ids:
            return grouped
        result = await self._session.execute(
            select(ChatMessage)
            .join(ChatSession, ChatSession.id == ChatMessage.chat_session_id)
            .where(ChatSession.user_id == user_id, ChatMessage.chat_session_id.in_(chat_ids))
            .order_by(ChatMessage.chat_session_id, ChatMessage.position.asc())
        )
        for message in result.scalars().all():
            grouped[message.chat_session_id].append(message)
        return grouped

    async def delete_messages_from(self, chat_id: str, position: int) -> None:
        """Remove the tail of a chat starting at ``position``."""
        await self._session.execute(
            delete(ChatMessage).where(
                ChatMessage.chat_session_id == chat_id,
                ChatMessage.position >= position,
            )
        )

    async def count_user_messages(self, user_id: int) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(ChatMessage)
            .join(ChatSession, ChatSession.id == ChatMessage.chat_session_id)
            .where(ChatSession.user_id == user_id)
        )
        return int(result.scalar_one())
