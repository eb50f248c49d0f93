"""Tests for PersistenceService."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.chat_message import ChatMessage
from app.models.chat_session import ChatSession
from app.models.folder import Folder
from app.models.user_preferences import SavedPrompt
from app.schemas.chat_schema import ChatSessionIn, FolderInfo, MessageIn
from app.schemas.user_schema import PreferencesIn, PromptIn
from app.services.encryption_service import (
    DECRYPTION_FAILED_PLACEHOLDER,
    EncryptionService,
)
from app.services.persistence_service import (
    INCOMPLETE_MESSAGE,
    UNNAMED_FOLDER,
    PersistenceService,
)
from tests.conftest import seed_user


@pytest.fixture
async def gateway(db_session: AsyncSession, encryption: EncryptionService) -> PersistenceService:
    await seed_user(db_session)
    return PersistenceService(db_session, 1, encryption)


def chat_in(chat_id: str = "chat-1", **overrides: object) -> ChatSessionIn:
    body: dict[str, object] = {
        "id": chat_id,
        "name": "Trip planning",
        "model": {"id": "free-model", "name": "Free Model"},
    }
    body.update(overrides)
    return ChatSessionIn.model_validate(body)


class TestChats:
    """Chat metadata round trip."""

    async def test_save_and_load(self, gateway: PersistenceService) -> None:
        saved = await gateway.save_chat_session(chat_in(systemPrompt="Be brief."))
        assert saved.success is True
        assert saved.data is not None
        assert saved.data.chat.name == "Trip planning"

        loaded = await gateway.load_user_chats()
        assert loaded.success is True
        assert loaded.data is not None
        [chat] = loaded.data
        assert chat.id == "chat-1"
        assert chat.system_prompt == "Be brief."
        assert chat.model_name == "Free Model"

    async def test_plaintext_never_stored(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        await gateway.save_chat_session(chat_in(systemPrompt="Be brief."))
        row = (await db_session.execute(select(ChatSession))).scalar_one()
        assert row.name_encrypted and "Trip" not in row.name_encrypted
        assert row.system_prompt_encrypted and "brief" not in row.system_prompt_encrypted

    async def test_blank_system_prompt_stored_as_null(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        await gateway.save_chat_session(chat_in(systemPrompt="  "))
        row = (await db_session.execute(select(ChatSession))).scalar_one()
        assert row.system_prompt_encrypted is None

    async def test_chat_of_another_user(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        await gateway.save_chat_session(chat_in())
        intruder = PersistenceService(db_session, 2, EncryptionService("2"))
        result = await intruder.save_chat_session(chat_in())
        assert result.success is False
        assert result.code == "CONFLICT"

    async def test_undecryptable_name_falls_back(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        await gateway.save_chat_session(chat_in())
        other_key = PersistenceService(db_session, 1, EncryptionService("999"))
        loaded = await other_key.load_user_chats()
        assert loaded.data is not None
        assert loaded.data[0].name == DECRYPTION_FAILED_PLACEHOLDER

    async def test_update_chat(self, gateway: PersistenceService) -> None:
        await gateway.save_chat_session(chat_in())
        assert (await gateway.update_chat("chat-1", name="Renamed")).success is True
        loaded = await gateway.load_user_chats()
        assert loaded.data is not None
        assert loaded.data[0].name == "Renamed"

    async def test_update_missing_chat(self, gateway: PersistenceService) -> None:
        result = await gateway.update_chat("nope", name="x")
        assert result.success is False
        assert result.code == "CHAT_NOT_FOUND"

    async def test_refile_into_unknown_folder(self, gateway: PersistenceService) -> None:
        await gateway.save_chat_session(chat_in())
        result = await gateway.update_chat("chat-1", folder_id="missing")
        assert result.code == "FOLDER_NOT_FOUND"

    async def test_clear_folder(self, gateway: PersistenceService) -> None:
        folder = await gateway.create_user_folder("Work")
        assert folder.data is not None
        await gateway.save_chat_session(chat_in(folderId=folder.data.id))
        await gateway.update_chat("chat-1", clear_folder=True)
        loaded = await gateway.load_user_chats()
        assert loaded.data is not None
        assert loaded.data[0].folder_id is None

    async def test_delete_chat(self, gateway: PersistenceService) -> None:
        await gateway.save_chat_session(chat_in())
        assert (await gateway.delete_chat("chat-1")).success is True
        assert (await gateway.delete_chat("chat-1")).code == "CHAT_NOT_FOUND"


class TestFolderReconciliation:
    """Folder resolution while saving a chat."""

    async def test_creates_folder_with_client_id(self, gateway: PersistenceService) -> None:
        result = await gateway.save_chat_session(
            chat_in(folderId="local-f"), FolderInfo(name="Work")
        )
        assert result.data is not None
        assert result.data.needs_folder_update is False
        assert result.data.chat.folder_id == "local-f"
        folders = await gateway.load_user_folders()
        assert folders.data is not None
        assert [(f.id, f.name) for f in folders.data] == [("local-f", "Work")]

    async def test_reuses_folder_with_same_name(self, gateway: PersistenceService) -> None:
        existing = await gateway.create_user_folder("Work", folder_id="server-f")
        assert existing.success is True
        result = await gateway.save_chat_session(
            chat_in(folderId="local-f"), FolderInfo(name="Work")
        )
        assert result.data is not None
        assert result.data.needs_folder_update is True
        assert result.data.original_folder_id == "local-f"
        assert result.data.new_folder_id == "server-f"
        assert result.data.chat.folder_id == "server-f"

    async def test_unknown_folder_without_hint_is_unfiled(
        self, gateway: PersistenceService
    ) -> None:
        result = await gateway.save_chat_session(chat_in(folderId="ghost"))
        assert result.data is not None
        assert result.data.chat.folder_id is None
        assert result.data.needs_folder_update is False

    async def test_existing_folder_is_kept(self, gateway: PersistenceService) -> None:
        await gateway.create_user_folder("Work", folder_id="f1")
        result = await gateway.save_chat_session(chat_in(folderId="f1"))
        assert result.data is not None
        assert result.data.chat.folder_id == "f1"


class TestMessages:
    """Positioned, encrypted message writes."""

    async def test_dense_positions_skip_empty(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        await gateway.save_chat_session(chat_in())
        result = await gateway.save_chat_messages(
            "chat-1",
            [
                MessageIn(role="user", content="first"),
                MessageIn(role="assistant", content="   "),
                MessageIn(role="assistant", content="second"),
            ],
        )
        assert result.success is True
        assert result.data is not None
        assert result.data.saved == 2
        loaded = await gateway.load_chat_messages("chat-1")
        assert loaded.data is not None
        assert [(m.position, m.content) for m in loaded.data] == [(0, "first"), (1, "second")]

    async def test_shorter_save_trims_tail(self, gateway: PersistenceService) -> None:
        await gateway.save_chat_session(chat_in())
        await gateway.save_chat_messages(
            "chat-1", [MessageIn(role="user", content=f"m{i}") for i in range(4)]
        )
        await gateway.save_chat_messages(
            "chat-1", [MessageIn(role="user", content="edited")]
        )
        loaded = await gateway.load_chat_messages("chat-1")
        assert loaded.data is not None
        assert [m.content for m in loaded.data] == ["edited"]

    async def test_messages_for_unknown_chat(self, gateway: PersistenceService) -> None:
        result = await gateway.save_chat_messages(
            "missing", [MessageIn(role="user", content="x")]
        )
        assert result.success is False
        assert result.code == "CHAT_NOT_FOUND"

    async def test_single_message_rejects_empty(self, gateway: PersistenceService) -> None:
        await gateway.save_chat_session(chat_in())
        result = await gateway.save_chat_message("chat-1", MessageIn(role="user"), 0)
        assert result.success is False

    async def test_single_message_at_position(self, gateway: PersistenceService) -> None:
        await gateway.save_chat_session(chat_in())
        result = await gateway.save_chat_message(
            "chat-1", MessageIn(role="user", content="hello", token_count=1), 0
        )
        assert result.data is not None
        assert result.data.content == "hello"
        assert result.data.token_count == 1

    async def test_corrupt_message_does_not_fail_load(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        await gateway.save_chat_session(chat_in())
        await gateway.save_chat_messages(
            "chat-1",
            [MessageIn(role="user", content="ok"), MessageIn(role="assistant", content="bad")],
        )
        rows = (
            await db_session.execute(select(ChatMessage).order_by(ChatMessage.position))
        ).scalars().all()
        rows[1].content_tag = rows[0].content_tag
        rows[0].content_iv = ""
        await db_session.flush()

        loaded = await gateway.load_chat_messages("chat-1")
        assert loaded.success is True
        assert loaded.data is not None
        assert loaded.data[0].content == INCOMPLETE_MESSAGE
        assert loaded.data[1].content == DECRYPTION_FAILED_PLACEHOLDER
        assert [m.decrypted for m in loaded.data] == [False, False]

    async def test_bulk_load(self, gateway: PersistenceService) -> None:
        for chat_id in ("a", "b"):
            await gateway.save_chat_session(chat_in(chat_id))
            await gateway.save_chat_messages(
                chat_id, [MessageIn(role="user", content=f"{chat_id}-{i}") for i in range(2)]
            )
        bulk = await gateway.load_bulk_chat_messages(["a", "b", "none"])
        assert bulk.data is not None
        assert [m.content for m in bulk.data["a"]] == ["a-0", "a-1"]
        assert [m.content for m in bulk.data["b"]] == ["b-0", "b-1"]
        assert bulk.data["none"] == []


class TestFolders:
    async def test_concurrent_creation_shares_one_folder(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        first, second = await asyncio.gather(
            gateway.create_user_folder("Work"), gateway.create_user_folder("Work")
        )
        assert first.data is not None and second.data is not None
        assert first.data.id == second.data.id
        rows = (await db_session.execute(select(Folder))).scalars().all()
        assert len(rows) == 1

    async def test_create_is_idempotent_by_name(self, gateway: PersistenceService) -> None:
        a = await gateway.create_user_folder("Work")
        b = await gateway.create_user_folder("Work")
        assert a.data is not None and b.data is not None
        assert a.data.id == b.data.id

    async def test_foreign_folder_id(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        await gateway.create_user_folder("Mine", folder_id="shared-id")
        other = PersistenceService(db_session, 2, EncryptionService("2"))
        result = await other.create_folder("Theirs", folder_id="shared-id")
        assert result.code == "CONFLICT"

    async def test_positions_increment(self, gateway: PersistenceService) -> None:
        await gateway.create_user_folder("A")
        await gateway.create_user_folder("B")
        folders = await gateway.load_user_folders()
        assert folders.data is not None
        assert [(f.name, f.position) for f in folders.data] == [("A", 0), ("B", 1)]

    async def test_rename_and_move(self, gateway: PersistenceService) -> None:
        created = await gateway.create_user_folder("Old")
        assert created.data is not None
        updated = await gateway.update_folder(created.data.id, name="New", position=5)
        assert updated.data is not None
        assert updated.data.name == "New"
        assert updated.data.position == 5

    async def test_update_missing_folder(self, gateway: PersistenceService) -> None:
        assert (await gateway.update_folder("nope", name="x")).code == "FOLDER_NOT_FOUND"

    async def test_delete_removes_contained_chats(self, gateway: PersistenceService) -> None:
        created = await gateway.create_user_folder("Work")
        assert created.data is not None
        await gateway.save_chat_session(chat_in("in", folderId=created.data.id))
        await gateway.save_chat_session(chat_in("out"))
        deleted = await gateway.delete_folder(created.data.id)
        assert deleted.data == 1
        chats = await gateway.load_user_chats()
        assert chats.data is not None
        assert [c.id for c in chats.data] == ["out"]

    async def test_batch(self, gateway: PersistenceService) -> None:
        batch = await gateway.save_folders_batch([("f1", "One"), (None, "Two")])
        assert batch.success is True
        assert batch.total_processed == 2
        assert [f.name for f in batch.results] == ["One", "Two"]

    async def test_missing_name_columns(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        db_session.add(Folder(id="bare", user_id=1, position=0))
        await db_session.flush()
        folders = await gateway.load_user_folders()
        assert folders.data is not None
        assert folders.data[0].name == UNNAMED_FOLDER


class TestPreferencesAndPrompts:
    async def test_no_preferences_yet(self, gateway: PersistenceService) -> None:
        result = await gateway.load_preferences()
        assert result.success is True
        assert result.data is None

    async def test_partial_updates(self, gateway: PersistenceService) -> None:
        await gateway.save_preferences(
            PreferencesIn(selected_model="free-model", system_prompt="Be brief.")
        )
        saved = await gateway.save_preferences(PreferencesIn(temperature=0.3))
        assert saved.data is not None
        assert saved.data.selected_model == "free-model"
        assert saved.data.system_prompt == "Be brief."
        assert saved.data.temperature == 0.3

    async def test_clear_system_prompt(self, gateway: PersistenceService) -> None:
        await gateway.save_preferences(PreferencesIn(system_prompt="Be brief."))
        saved = await gateway.save_preferences(PreferencesIn(system_prompt=None))
        assert saved.data is not None
        assert saved.data.system_prompt is None

    async def test_save_prompt_replaces_same_name(
        self, gateway: PersistenceService, db_session: AsyncSession
    ) -> None:
        first = await gateway.save_prompt(PromptIn(name="Brief", content="v1"))
        second = await gateway.save_prompt(PromptIn(name=" brief ", content="v2"))
        assert first.data is not None and second.data is not None
        assert first.data.id == second.data.id
        prompts = await gateway.load_prompts()
        assert prompts.data is not None
        assert [(p.name, p.content) for p in prompts.data] == [(" brief ", "v2")]
        rows = (await db_session.execute(select(SavedPrompt))).scalars().all()
        assert len(rows) == 1

    async def test_update_and_delete_prompt(self, gateway: PersistenceService) -> None:
        created = await gateway.save_prompt(PromptIn(name="A", content="x"))
        assert created.data is not None
        updated = await gateway.update_prompt(created.data.id, PromptIn(name="B", content="y"))
        assert updated.data is not None
        assert (updated.data.name, updated.data.content) == ("B", "y")
        assert (await gateway.delete_prompt(created.data.id)).success is True
        assert (await gateway.delete_prompt(created.data.id)).code == "PROMPT_NOT_FOUND"

    async def test_rename_onto_existing_name_replaces_it(
        self, gateway: PersistenceService
    ) -> None:
        await gateway.save_prompt(PromptIn(name="Foo", content="old"))
        bar = await gateway.save_prompt(PromptIn(name="Bar", content="new"))
        assert bar.data is not None

        renamed = await gateway.update_prompt(bar.data.id, PromptIn(name="foo", content="new"))
        assert renamed.success is True

        prompts = await gateway.load_prompts()
        assert prompts.data is not None
        assert [(p.id, p.name, p.content) for p in prompts.data] == [(bar.data.id, "foo", "new")]

    async def test_update_keeps_own_name(self, gateway: PersistenceService) -> None:
        created = await gateway.save_prompt(PromptIn(name="Foo", content="v1"))
        assert created.data is not None
        await gateway.update_prompt(created.data.id, PromptIn(name="FOO", content="v2"))
        prompts = await gateway.load_prompts()
        assert prompts.data is not None
        assert [(p.name, p.content) for p in prompts.data] == [("FOO", "v2")]

    async def test_update_missing_prompt(self, gateway: PersistenceService) -> None:
        result = await gateway.update_prompt("nope", PromptIn(name="B"))
        assert result.code == "PROMPT_NOT_FOUND"

    async def test_reorder(self, gateway: PersistenceService) -> None:
        ids = []
        for name in ("A", "B", "C"):
            saved = await gateway.save_prompt(PromptIn(name=name, content=name))
            assert saved.data is not None
            ids.append(saved.data.id)
        await gateway.reorder_prompts(list(reversed(ids)))
        prompts = await gateway.load_prompts()
        assert prompts.data is not None
        assert [p.name for p in prompts.data] == ["C", "B", "A"]


class TestSummaries:
    async def test_counts(self, gateway: PersistenceService) -> None:
        await gateway.save_chat_session(chat_in())
        await gateway.save_chat_messages("chat-1", [MessageIn(role="user", content="hi")])
        await gateway.create_user_folder("Work")
        await gateway.save_prompt(PromptIn(name="A"))
        counts = await gateway.counts()
        assert counts.data == {"chats": 1, "folders": 1, "prompts": 1, "messages": 1}

    async def test_last_modified(self, gateway: PersistenceService) -> None:
        assert await gateway.last_modified() is None
        await gateway.save_chat_session(chat_in())
        assert await gateway.last_modified() is not None


class TestNeverRaises:
    """Database failures come back as failed results."""

    @pytest.fixture
    def broken(self, encryption: EncryptionService) -> PersistenceService:
        session = MagicMock(spec=AsyncSession)
        session.execute = AsyncMock(side_effect=RuntimeError("db down"))
        return PersistenceService(session, 1, encryption)

    async def test_load_chats(self, broken: PersistenceService) -> None:
        result = await broken.load_user_chats()
        assert result.success is False
        assert result.code == "DATABASE_ERROR"
        assert result.error == "db down"

    async def test_save_chat(self, broken: PersistenceService) -> None:
        result = await broken.save_chat_session(chat_in())
        assert result.success is False

    async def test_create_folder(self, broken: PersistenceService) -> None:
        result = await broken.create_user_folder("Work")
        assert result.success is False

    async def test_preferences(self, broken: PersistenceService) -> None:
        assert (await broken.save_preferences(PreferencesIn(temperature=1))).success is False
        assert (await broken.load_prompts()).success is False
