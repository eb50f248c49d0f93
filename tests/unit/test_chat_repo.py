"""Unit tests for ChatRepository."""

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.chat_session import ChatSession
from app.repositories.chat_repo import ChatRepository, MessageRow


@pytest.fixture
def chat_repo(db_session: AsyncSession) -> ChatRepository:
    """Create a ChatRepository backed by the test DB session."""
    return ChatRepository(db_session)


async def _create_user(
    db_session: AsyncSession, email: str = "chatuser@test.com"
) -> int:
    """Helper: insert a minimal user row and return its id."""
    from app.models.user import User

    user = User(
        email=email,
        hashed_password="hashed",
        username=email.split("@")[0],
    )
    db_session.add(user)
    await db_session.flush()
    await db_session.refresh(user)
    return user.id


async def _create_session_with_ts(
    db_session: AsyncSession,
    user_id: int,
    chat_id: str,
    updated_at: datetime,
    folder_id: str | None = None,
) -> ChatSession:
    """Helper: insert a session with explicit updated_at for ordering tests."""
    session = ChatSession(
        id=chat_id,
        user_id=user_id,
        model_id="free-model",
        folder_id=folder_id,
        updated_at=updated_at,
    )
    db_session.add(session)
    await db_session.flush()
    await db_session.refresh(session)
    return session


def _row(position: int, role: str = "user", token_count: int | None = None) -> MessageRow:
    return MessageRow(
        role=role,
        position=position,
        content_encrypted=f"cipher-{position}",
        content_iv="iv",
        content_tag="tag",
        token_count=token_count,
    )


class TestUpsertSession:
    """Tests for ChatRepository.upsert_session."""

    async def test_insert(self, chat_repo: ChatRepository, db_session: AsyncSession) -> None:
        user_id = await _create_user(db_session)
        chat = await chat_repo.upsert_session(user_id, "chat-1", model_id="free-model")
        assert chat.id == "chat-1"
        assert chat.user_id == user_id
        assert chat.created_at is not None

    async def test_overwrite_keeps_id(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        await chat_repo.upsert_session(user_id, "chat-1", model_id="free-model")
        chat = await chat_repo.upsert_session(
            user_id, "chat-1", model_id="pro-model", model_name="Pro"
        )
        assert chat.model_id == "pro-model"
        assert chat.model_name == "Pro"
        assert await chat_repo.count_sessions(user_id) == 1


class TestFindSession:
    async def test_find_user_session_checks_owner(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        owner = await _create_user(db_session, "owner@test.com")
        other = await _create_user(db_session, "other@test.com")
        await chat_repo.upsert_session(owner, "chat-1", model_id="m")
        assert await chat_repo.find_user_session(owner, "chat-1") is not None
        assert await chat_repo.find_user_session(other, "chat-1") is None
        assert await chat_repo.find_session("chat-1") is not None

    async def test_find_nonexistent(self, chat_repo: ChatRepository) -> None:
        assert await chat_repo.find_session("missing") is None


class TestListSessions:
    """Tests for ChatRepository.list_sessions."""

    async def test_empty_result(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        assert await chat_repo.list_sessions(user_id) == []

    async def test_filters_by_user_id(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_a = await _create_user(db_session, "a@test.com")
        user_b = await _create_user(db_session, "b@test.com")
        ts = datetime(2025, 1, 1, tzinfo=UTC)
        await _create_session_with_ts(db_session, user_a, "a-1", ts)
        await _create_session_with_ts(db_session, user_b, "b-1", ts)
        result = await chat_repo.list_sessions(user_a)
        assert [s.id for s in result] == ["a-1"]

    async def test_order_by_updated_at_desc(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        await _create_session_with_ts(
            db_session, user_id, "old", datetime(2025, 1, 1, tzinfo=UTC)
        )
        await _create_session_with_ts(
            db_session, user_id, "new", datetime(2025, 6, 1, tzinfo=UTC)
        )
        result = await chat_repo.list_sessions(user_id)
        assert [s.id for s in result] == ["new", "old"]

    async def test_same_updated_at_tiebreak_by_id_desc(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        ts = datetime(2025, 1, 1, tzinfo=UTC)
        for chat_id in ("a", "c", "b"):
            await _create_session_with_ts(db_session, user_id, chat_id, ts)
        result = await chat_repo.list_sessions(user_id)
        assert [s.id for s in result] == ["c", "b", "a"]

    async def test_limit_and_offset(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        for day in range(1, 6):
            await _create_session_with_ts(
                db_session, user_id, f"chat-{day}", datetime(2025, 1, day, tzinfo=UTC)
            )
        page = await chat_repo.list_sessions(user_id, limit=2, offset=1)
        assert [s.id for s in page] == ["chat-4", "chat-3"]

    async def test_latest_update(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        assert await chat_repo.latest_update(user_id) is None
        await _create_session_with_ts(
            db_session, user_id, "x", datetime(2025, 3, 1, tzinfo=UTC)
        )
        latest = await chat_repo.latest_update(user_id)
        assert latest is not None
        assert latest.replace(tzinfo=UTC) == datetime(2025, 3, 1, tzinfo=UTC)


class TestUpdateAndDelete:
    async def test_update_other_users_chat(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        owner = await _create_user(db_session, "owner@test.com")
        other = await _create_user(db_session, "other@test.com")
        await chat_repo.upsert_session(owner, "chat-1", model_id="m")
        assert await chat_repo.update_session(other, "chat-1", model_name="x") is False
        assert await chat_repo.update_session(owner, "chat-1", model_name="x") is True

    async def test_delete_removes_messages(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        await chat_repo.upsert_session(user_id, "chat-1", model_id="m")
        await chat_repo.upsert_message("chat-1", _row(0))
        assert await chat_repo.delete_session(user_id, "chat-1") is True
        assert await chat_repo.find_messages("chat-1") == []
        assert await chat_repo.delete_session(user_id, "chat-1") is False

    async def test_delete_sessions_in_folder(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        ts = datetime(2025, 1, 1, tzinfo=UTC)
        await _create_session_with_ts(db_session, user_id, "in-1", ts, folder_id="f1")
        await _create_session_with_ts(db_session, user_id, "in-2", ts, folder_id="f1")
        await _create_session_with_ts(db_session, user_id, "out", ts)
        assert await chat_repo.delete_sessions_in_folder(user_id, "f1") == 2
        assert [s.id for s in await chat_repo.list_sessions(user_id)] == ["out"]


class TestMessages:
    """Positioned message writes."""

    async def test_upsert_replaces_position(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        await chat_repo.upsert_session(user_id, "chat-1", model_id="m")
        await chat_repo.upsert_message("chat-1", _row(0))
        replaced = MessageRow(
            role="assistant",
            position=0,
            content_encrypted="new",
            content_iv="iv2",
            content_tag="tag2",
            token_count=3,
        )
        await chat_repo.upsert_message("chat-1", replaced)
        messages = await chat_repo.find_messages("chat-1")
        assert len(messages) == 1
        assert messages[0].role == "assistant"
        assert messages[0].content_encrypted == "new"
        assert messages[0].token_count == 3

    async def test_find_messages_in_position_order(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        await chat_repo.upsert_session(user_id, "chat-1", model_id="m")
        for position in (2, 0, 1):
            await chat_repo.upsert_message("chat-1", _row(position))
        messages = await chat_repo.find_messages("chat-1")
        assert [m.position for m in messages] == [0, 1, 2]

    async def test_delete_messages_from(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        await chat_repo.upsert_session(user_id, "chat-1", model_id="m")
        for position in range(4):
            await chat_repo.upsert_message("chat-1", _row(position))
        await chat_repo.delete_messages_from("chat-1", 2)
        assert [m.position for m in await chat_repo.find_messages("chat-1")] == [0, 1]

    async def test_bulk_groups_by_chat(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        for chat_id in ("a", "b"):
            await chat_repo.upsert_session(user_id, chat_id, model_id="m")
        await chat_repo.upsert_message("a", _row(0))
        await chat_repo.upsert_message("a", _row(1, role="assistant"))
        await chat_repo.upsert_message("b", _row(0))
        grouped = await chat_repo.find_messages_bulk(user_id, ["a", "b", "empty"])
        assert [m.position for m in grouped["a"]] == [0, 1]
        assert len(grouped["b"]) == 1
        assert grouped.get("empty", []) == []

    async def test_bulk_with_no_ids(self, chat_repo: ChatRepository) -> None:
        assert dict(await chat_repo.find_messages_bulk(1, [])) == {}

    async def test_bulk_ignores_other_users_chats(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        owner = await _create_user(db_session)
        other = await _create_user(db_session, "other@test.com")
        await chat_repo.upsert_session(owner, "mine", model_id="m")
        await chat_repo.upsert_session(other, "theirs", model_id="m")
        await chat_repo.upsert_message("mine", _row(0))
        await chat_repo.upsert_message("theirs", _row(0))

        grouped = await chat_repo.find_messages_bulk(owner, ["mine", "theirs"])
        assert list(grouped) == ["mine"]
        assert dict(await chat_repo.find_messages_bulk(other, ["mine"])) == {}

    async def test_count_user_messages(
        self, chat_repo: ChatRepository, db_session: AsyncSession
    ) -> None:
        user_id = await _create_user(db_session)
        await chat_repo.upsert_session(user_id, "chat-1", model_id="m")
        await chat_repo.upsert_message("chat-1", _row(0))
        await chat_repo.upsert_message("chat-1", _row(1))
        assert await chat_repo.count_user_messages(user_id) == 2
