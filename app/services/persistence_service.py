"""Encrypted persistence gateway for chats, folders, preferences and prompts.

Every public coroutine returns an ``OperationResult`` or ``BatchResult`` and
never raises. Plaintext names, system prompts and message contents are
encrypted immediately before writing and decrypted immediately after
reading; bulk reads decrypt through one ``decrypt_batch`` call.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppException,
    ChatNotFoundError,
    ConflictError,
    FolderNotFoundError,
    NotFoundError,
)
from app.models.chat_message import ChatMessage
from app.models.chat_session import ChatSession
from app.models.folder import Folder
from app.models.user_preferences import SavedPrompt, UserPreferences
from app.repositories.chat_repo import ChatRepository, MessageRow
from app.repositories.folder_repo import FolderRepository
from app.repositories.preferences_repo import PreferencesRepository
from app.schemas.chat_schema import ChatSessionIn, FolderInfo, MessageIn
from app.schemas.user_schema import PreferencesIn, PromptIn
from app.services.encryption_service import (
    EncryptedField,
    EncryptionService,
    field_from_columns,
)

logger = structlog.get_logger()

T = TypeVar("T")

UNNAMED_CHAT = "Unnamed Chat"
UNNAMED_FOLDER = "Unnamed Folder"
INCOMPLETE_MESSAGE = "[Message data incomplete]"

# In-flight folder creations keyed "user_id:name"; concurrent callers share one.
_folder_creations: dict[str, asyncio.Future["OperationResult[FolderRecord]"]] = {}


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of one gateway call."""

    success: bool
    data: T | None = None
    error: str | None = None
    code: str | None = None


@dataclass(frozen=True)
class BatchResult(Generic[T]):
    """Per-item outcome of a batch call."""

    success: bool
    results: list[T] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    total_processed: int = 0
    total_failed: int = 0


@dataclass(frozen=True)
class MessageRecord:
    id: int | None
    role: str
    content: str
    position: int
    token_count: int | None
    created_at: datetime | None
    decrypted: bool = True


@dataclass(frozen=True)
class ChatRecord:
    id: str
    name: str
    model_id: str
    model_name: str | None
    system_prompt: str | None
    folder_id: str | None
    parent_chat_id: str | None
    branched_at_index: int | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(frozen=True)
class FolderRecord:
    id: str
    name: str
    position: int
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(frozen=True)
class PromptRecord:
    id: str
    name: str
    content: str
    position: int


@dataclass(frozen=True)
class PreferencesRecord:
    selected_model: str | None
    system_prompt: str | None
    temperature: float | None
    top_p: float | None
    last_selected_chat_id: str | None
    updated_at: datetime | None


@dataclass(frozen=True)
class ChatSaveOutcome:
    """Saved chat plus the folder reconciliation the client must apply."""

    chat: ChatRecord
    needs_folder_update: bool = False
    original_folder_id: str | None = None
    new_folder_id: str | None = None


@dataclass(frozen=True)
class MessageSaveCounts:
    saved: int
    failed: int
    errors: list[str] = field(default_factory=list)


def _error_text(exc: Exception) -> str:
    if isinstance(exc, AppException):
        return exc.message
    return str(exc) or exc.__class__.__name__


def _failure(exc: Exception) -> OperationResult[Any]:
    code = exc.code if isinstance(exc, AppException) else "DATABASE_ERROR"
    return OperationResult(success=False, error=_error_text(exc), code=code)


class PersistenceService:
    """Gateway between plaintext domain records and encrypted rows."""

    def __init__(
        self,
        session: AsyncSession,
        user_id: int,
        encryption: EncryptionService | None = None,
    ) -> None:
        self._session = session
        self._user_id = user_id
        self._encryption = encryption or EncryptionService(str(user_id))
        self._chats = ChatRepository(session)
        self._folders = FolderRepository(session)
        self._prefs = PreferencesRepository(session)

    @property
    def user_id(self) -> int:
        return self._user_id

    # --- Record builders ---

    def _decrypt_many(
        self, fields: list[EncryptedField | None], default: str | None
    ) -> list[str | None]:
        """Batch-decrypt optional triples; missing triples yield ``default``."""
        present = [(i, f) for i, f in enumerate(fields) if f is not None]
        out: list[str | None] = [default] * len(fields)
        for (index, _), result in zip(
            present, self._encryption.decrypt_batch([f for _, f in present]), strict=True
        ):
            out[index] = result.content if result.content or default is None else default
        return out

    def _chat_records(self, chats: list[ChatSession]) -> list[ChatRecord]:
        names = self._decrypt_many(
            [field_from_columns(c.name_encrypted, c.name_iv, c.name_tag) for c in chats],
            UNNAMED_CHAT,
        )
        prompts = self._decrypt_many(
            [
                field_from_columns(
                    c.system_prompt_encrypted, c.system_prompt_iv, c.system_prompt_tag
                )
                for c in chats
            ],
            None,
        )
        return [
            ChatRecord(
                id=c.id,
                name=name or UNNAMED_CHAT,
                model_id=c.model_id,
                model_name=c.model_name,
                system_prompt=prompt,
                folder_id=c.folder_id,
                parent_chat_id=c.parent_chat_id,
                branched_at_index=c.branched_at_index,
                created_at=c.created_at,
                updated_at=c.updated_at,
            )
            for c, name, prompt in zip(chats, names, prompts, strict=True)
        ]

    def _message_records(self, messages: list[ChatMessage]) -> list[MessageRecord]:
        fields = [
            field_from_columns(m.content_encrypted, m.content_iv, m.content_tag)
            for m in messages
        ]
        present = [f for f in fields if f is not None]
        decrypted = iter(self._encryption.decrypt_batch(present))
        records: list[MessageRecord] = []
        for message, triple in zip(messages, fields, strict=True):
            if triple is None:
                content, ok = INCOMPLETE_MESSAGE, False
            else:
                result = next(decrypted)
                content, ok = result.content, result.success
            records.append(
                MessageRecord(
                    id=message.id,
                    role=message.role,
                    content=content,
                    position=message.position,
                    token_count=message.token_count,
                    created_at=message.created_at,
                    decrypted=ok,
                )
            )
        return records

    def _folder_records(self, folders: list[Folder]) -> list[FolderRecord]:
        names = self._decrypt_many(
            [field_from_columns(f.name_encrypted, f.name_iv, f.name_tag) for f in folders],
            UNNAMED_FOLDER,
        )
        return [
            FolderRecord(
                id=f.id,
                name=name or UNNAMED_FOLDER,
                position=f.position,
                created_at=f.created_at,
                updated_at=f.updated_at,
            )
            for f, name in zip(folders, names, strict=True)
        ]

    def _prompt_records(self, prompts: list[SavedPrompt]) -> list[PromptRecord]:
        triples: list[EncryptedField | None] = []
        for p in prompts:
            triples.append(field_from_columns(p.name_encrypted, p.name_iv, p.name_tag))
            triples.append(field_from_columns(p.content_encrypted, p.content_iv, p.content_tag))
        plain = self._decrypt_many(triples, "")
        return [
            PromptRecord(
                id=p.id,
                name=plain[2 * i] or "",
                content=plain[2 * i + 1] or "",
                position=p.position,
            )
            for i, p in enumerate(prompts)
        ]

    def _preferences_record(self, prefs: UserPreferences) -> PreferencesRecord:
        system_prompt = self._encryption.decrypt_optional(
            field_from_columns(
                prefs.system_prompt_encrypted, prefs.system_prompt_iv, prefs.system_prompt_tag
            )
        )
        return PreferencesRecord(
            selected_model=prefs.selected_model,
            system_prompt=system_prompt,
            temperature=prefs.temperature,
            top_p=prefs.top_p,
            last_selected_chat_id=prefs.last_selected_chat_id,
            updated_at=prefs.updated_at,
        )

    @staticmethod
    def _columns(prefix: str, triple: EncryptedField | None) -> dict[str, str | None]:
        return {
            f"{prefix}_encrypted": triple.content_encrypted if triple else None,
            f"{prefix}_iv": triple.content_iv if triple else None,
            f"{prefix}_tag": triple.content_tag if triple else None,
        }

    # --- Chats ---

    async def save_chat_session(
        self, chat: ChatSessionIn, folder_info: FolderInfo | None = None
    ) -> OperationResult[ChatSaveOutcome]:
        """Upsert a chat's metadata, creating its folder on demand."""
        try:
            existing = await self._chats.find_session(chat.id)
            if existing is not None and existing.user_id != self._user_id:
                raise ConflictError("Chat id belongs to another user")

            folder_id, outcome = await self._resolve_folder(chat.folder_id, folder_info)
            fields: dict[str, Any] = {
                "folder_id": folder_id,
                "model_id": chat.model.id,
                "model_name": chat.model.name,
                "parent_chat_id": chat.parent_chat_id,
                "branched_at_index": chat.branched_at_index,
            }
            fields.update(self._columns("name", self._encryption.encrypt_optional(chat.name)))
            fields.update(
                self._columns(
                    "system_prompt", self._encryption.encrypt_optional(chat.system_prompt)
                )
            )
            saved = await self._chats.upsert_session(self._user_id, chat.id, **fields)
            record = self._chat_records([saved])[0]
            logger.info("Chat session saved", user_id=self._user_id, chat_id=chat.id)
            return OperationResult(
                success=True,
                data=ChatSaveOutcome(
                    chat=record,
                    needs_folder_update=outcome is not None,
                    original_folder_id=chat.folder_id if outcome is not None else None,
                    new_folder_id=outcome,
                ),
            )
        except Exception as e:
            logger.exception("Failed to save chat session", user_id=self._user_id, chat_id=chat.id)
            return _failure(e)

    async def _resolve_folder(
        self, folder_id: str | None, folder_info: FolderInfo | None
    ) -> tuple[str | None, str | None]:
        """Return (folder_id to store, new id if the client must rewrite)."""
        if not folder_id:
            return None, None
        try:
            if await self._folders.find_user_folder(self._user_id, folder_id) is not None:
                return folder_id, None
            if folder_info is None or not folder_info.name:
                return None, None
            found = await self._find_folder_by_name(folder_info.name)
            if found is not None:
                return found.id, (found.id if found.id != folder_id else None)
            created = await self.create_user_folder(folder_info.name, folder_id=folder_id)
            if not created.success or created.data is None:
                return None, None
            new_id = created.data.id
            return new_id, (new_id if new_id != folder_id else None)
        except Exception:
            logger.warning("Folder resolution failed, saving chat unfiled", folder_id=folder_id)
            return None, None

    async def _find_folder_by_name(self, name: str) -> FolderRecord | None:
        for record in self._folder_records(await self._folders.list_by_user(self._user_id)):
            if record.name == name:
                return record
        return None

    async def save_chat_messages(
        self, chat_id: str, messages: list[MessageIn]
    ) -> OperationResult[MessageSaveCounts]:
        """Write non-empty messages at dense positions; failures are per item."""
        try:
            if await self._chats.find_user_session(self._user_id, chat_id) is None:
                raise ChatNotFoundError
        except Exception as e:
            return _failure(e)

        valid = [m for m in messages if m.content and m.content.strip()]
        saved = 0
        errors: list[str] = []
        for position, message in enumerate(valid):
            try:
                async with self._session.begin_nested():
                    triple = self._encryption.encrypt(message.content)
                    await self._chats.upsert_message(
                        chat_id,
                        MessageRow(
                            role=message.role,
                            position=position,
                            content_encrypted=triple.content_encrypted,
                            content_iv=triple.content_iv,
                            content_tag=triple.content_tag,
                            token_count=message.token_count,
                        ),
                    )
                saved += 1
            except Exception as e:
                logger.warning(
                    "Failed to save chat message", chat_id=chat_id, position=position
                )
                errors.append(f"Message {position}: {_error_text(e)}")
        try:
            await self._chats.delete_messages_from(chat_id, len(valid))
        except Exception as e:
            errors.append(_error_text(e))
        return OperationResult(
            success=not errors,
            data=MessageSaveCounts(saved=saved, failed=len(valid) - saved, errors=errors),
            error=errors[0] if errors else None,
        )

    async def save_chat_message(
        self, chat_id: str, message: MessageIn, position: int
    ) -> OperationResult[MessageRecord]:
        """Write one message at an explicit position."""
        if not message.content or not message.content.strip():
            return OperationResult(success=False, error="Empty messages are not persisted")
        try:
            if await self._chats.find_user_session(self._user_id, chat_id) is None:
                raise ChatNotFoundError
            triple = self._encryption.encrypt(message.content)
            row = await self._chats.upsert_message(
                chat_id,
                MessageRow(
                    role=message.role,
                    position=position,
                    content_encrypted=triple.content_encrypted,
                    content_iv=triple.content_iv,
                    content_tag=triple.content_tag,
                    token_count=message.token_count,
                ),
            )
            return OperationResult(success=True, data=self._message_records([row])[0])
        except Exception as e:
            logger.exception("Failed to save chat message", chat_id=chat_id)
            return _failure(e)

    async def load_user_chats(
        self, limit: int | None = None, offset: int = 0
    ) -> OperationResult[list[ChatRecord]]:
        try:
            chats = await self._chats.list_sessions(self._user_id, limit=limit, offset=offset)
            return OperationResult(success=True, data=self._chat_records(chats))
        except Exception as e:
            logger.exception("Failed to load chats", user_id=self._user_id)
            return _failure(e)

    async def load_chat_messages(self, chat_id: str) -> OperationResult[list[MessageRecord]]:
        try:
            if await self._chats.find_user_session(self._user_id, chat_id) is None:
                raise ChatNotFoundError
            messages = await self._chats.find_messages(chat_id)
            return OperationResult(success=True, data=self._message_records(messages))
        except Exception as e:
            logger.exception("Failed to load chat messages", chat_id=chat_id)
            return _failure(e)

    async def load_bulk_chat_messages(
        self, chat_ids: list[str]
    ) -> OperationResult[dict[str, list[MessageRecord]]]:
        """Messages for many chats: one query and one batch decrypt."""
        try:
            grouped = await self._chats.find_messages_bulk(self._user_id, chat_ids)
            flat = [m for chat_id in chat_ids for m in grouped.get(chat_id, [])]
            records = iter(self._message_records(flat))
            out = {
                chat_id: [next(records) for _ in grouped.get(chat_id, [])]
                for chat_id in chat_ids
            }
            return OperationResult(success=True, data=out)
        except Exception as e:
            logger.exception("Failed to bulk load messages", user_id=self._user_id)
            return _failure(e)

    async def update_chat(
        self, chat_id: str, name: str | None = None, folder_id: str | None = None,
        clear_folder: bool = False,
    ) -> OperationResult[None]:
        """Rename or refile a chat."""
        try:
            fields: dict[str, Any] = {}
            if name is not None:
                fields.update(self._columns("name", self._encryption.encrypt(name)))
            if folder_id is not None:
                if await self._folders.find_user_folder(self._user_id, folder_id) is None:
                    raise FolderNotFoundError
                fields["folder_id"] = folder_id
            elif clear_folder:
                fields["folder_id"] = None
            if not fields:
                return OperationResult(success=True)
            if not await self._chats.update_session(self._user_id, chat_id, **fields):
                raise ChatNotFoundError
            return OperationResult(success=True)
        except Exception as e:
            logger.warning("Failed to update chat", chat_id=chat_id, error=_error_text(e))
            return _failure(e)

    async def delete_chat(self, chat_id: str) -> OperationResult[None]:
        try:
            if not await self._chats.delete_session(self._user_id, chat_id):
                raise ChatNotFoundError
            logger.info("Chat deleted", user_id=self._user_id, chat_id=chat_id)
            return OperationResult(success=True)
        except Exception as e:
            return _failure(e)

    # --- Folders ---

    async def create_user_folder(
        self, name: str, folder_id: str | None = None, position: int | None = None
    ) -> OperationResult[FolderRecord]:
        """Create a folder; concurrent calls for the same name share one result."""
        lock_key = f"{self._user_id}:{name}"
        pending = _folder_creations.get(lock_key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[OperationResult[FolderRecord]] = (
            asyncio.get_running_loop().create_future()
        )
        _folder_creations[lock_key] = future
        try:
            result = await self.create_folder(name, folder_id, position)
            future.set_result(result)
            return result
        finally:
            if not future.done():
                future.set_result(OperationResult(success=False, error="Folder creation aborted"))
            _folder_creations.pop(lock_key, None)

    async def create_folder(
        self, name: str, folder_id: str | None = None, position: int | None = None
    ) -> OperationResult[FolderRecord]:
        """Return the folder with this id or name, creating it when absent."""
        try:
            if folder_id:
                existing = await self._folders.find_by_id(folder_id)
                if existing is not None:
                    if existing.user_id != self._user_id:
                        raise ConflictError("Folder id belongs to another user")
                    return OperationResult(success=True, data=self._folder_records([existing])[0])
            found = await self._find_folder_by_name(name)
            if found is not None:
                return OperationResult(success=True, data=found)
            triple = self._encryption.encrypt(name)
            folder = await self._folders.create(
                self._user_id,
                triple.content_encrypted,
                triple.content_iv,
                triple.content_tag,
                folder_id=folder_id,
                position=position,
            )
            logger.info("Folder created", user_id=self._user_id, folder_id=folder.id)
            return OperationResult(success=True, data=self._folder_records([folder])[0])
        except Exception as e:
            logger.exception("Failed to create folder", user_id=self._user_id)
            return _failure(e)

    async def load_user_folders(self) -> OperationResult[list[FolderRecord]]:
        try:
            folders = await self._folders.list_by_user(self._user_id)
            return OperationResult(success=True, data=self._folder_records(folders))
        except Exception as e:
            logger.exception("Failed to load folders", user_id=self._user_id)
            return _failure(e)

    async def update_folder(
        self, folder_id: str, name: str | None = None, position: int | None = None
    ) -> OperationResult[FolderRecord]:
        try:
            fields: dict[str, Any] = {}
            if name is not None:
                fields.update(self._columns("name", self._encryption.encrypt(name)))
            if position is not None:
                fields["position"] = position
            folder = await self._folders.update(self._user_id, folder_id, **fields)
            if folder is None:
                raise FolderNotFoundError
            return OperationResult(success=True, data=self._folder_records([folder])[0])
        except Exception as e:
            logger.warning("Failed to update folder", folder_id=folder_id, error=_error_text(e))
            return _failure(e)

    async def delete_folder(self, folder_id: str) -> OperationResult[int]:
        """Delete a folder together with the chats filed in it."""
        try:
            if await self._folders.find_user_folder(self._user_id, folder_id) is None:
                raise FolderNotFoundError
            removed = await self._chats.delete_sessions_in_folder(self._user_id, folder_id)
            await self._folders.delete(self._user_id, folder_id)
            logger.info(
                "Folder deleted", user_id=self._user_id, folder_id=folder_id, chats=removed
            )
            return OperationResult(success=True, data=removed)
        except Exception as e:
            return _failure(e)

    async def save_folders_batch(
        self, folders: list[tuple[str | None, str]]
    ) -> BatchResult[FolderRecord]:
        """Create (id, name) pairs one by one, collecting failures."""
        results: list[FolderRecord] = []
        errors: list[str] = []
        for folder_id, name in folders:
            outcome = await self.create_user_folder(name, folder_id=folder_id)
            if outcome.success and outcome.data is not None:
                results.append(outcome.data)
            else:
                errors.append(outcome.error or "Unknown error")
        return BatchResult(
            success=not errors,
            results=results,
            errors=errors,
            total_processed=len(folders),
            total_failed=len(errors),
        )

    # --- Preferences ---

    async def load_preferences(self) -> OperationResult[PreferencesRecord | None]:
        try:
            prefs = await self._prefs.find(self._user_id)
            return OperationResult(
                success=True, data=self._preferences_record(prefs) if prefs else None
            )
        except Exception as e:
            logger.exception("Failed to load preferences", user_id=self._user_id)
            return _failure(e)

    async def save_preferences(self, prefs: PreferencesIn) -> OperationResult[PreferencesRecord]:
        """Upsert the singleton preference row with the supplied fields."""
        try:
            fields = prefs.model_dump(exclude_unset=True, exclude={"system_prompt"})
            if "system_prompt" in prefs.model_fields_set:
                fields.update(
                    self._columns(
                        "system_prompt", self._encryption.encrypt_optional(prefs.system_prompt)
                    )
                )
            row = await self._prefs.upsert(self._user_id, **fields)
            return OperationResult(success=True, data=self._preferences_record(row))
        except Exception as e:
            logger.exception("Failed to save preferences", user_id=self._user_id)
            return _failure(e)

    # --- Saved prompts ---

    async def load_prompts(self) -> OperationResult[list[PromptRecord]]:
        try:
            prompts = await self._prefs.list_prompts(self._user_id)
            return OperationResult(success=True, data=self._prompt_records(prompts))
        except Exception as e:
            logger.exception("Failed to load prompts", user_id=self._user_id)
            return _failure(e)

    async def save_prompt(self, prompt: PromptIn) -> OperationResult[PromptRecord]:
        """Save by name: an existing prompt with the same name is replaced."""
        try:
            existing = await self._prefs.list_prompts(self._user_id)
            records = self._prompt_records(existing)
            key = prompt.name.strip().lower()
            name = self._encryption.encrypt(prompt.name)
            content = self._encryption.encrypt(prompt.content)
            columns = {**self._columns("name", name), **self._columns("content", content)}
            for record in records:
                if record.name.strip().lower() == key:
                    row = await self._prefs.update_prompt(self._user_id, record.id, **columns)
                    if row is None:
                        raise NotFoundError("Prompt not found", "PROMPT_NOT_FOUND")
                    return OperationResult(success=True, data=self._prompt_records([row])[0])
            row = await self._prefs.create_prompt(self._user_id, position=len(records), **columns)
            return OperationResult(success=True, data=self._prompt_records([row])[0])
        except Exception as e:
            logger.exception("Failed to save prompt", user_id=self._user_id)
            return _failure(e)

    async def update_prompt(
        self, prompt_id: str, prompt: PromptIn
    ) -> OperationResult[PromptRecord]:
        """Rewrite one prompt; any other prompt with the new name is replaced by it."""
        try:
            existing = self._prompt_records(await self._prefs.list_prompts(self._user_id))
            if not any(record.id == prompt_id for record in existing):
                return _failure(NotFoundError("Prompt not found", "PROMPT_NOT_FOUND"))
            key = prompt.name.strip().lower()
            for record in existing:
                if record.id != prompt_id and record.name.strip().lower() == key:
                    await self._prefs.delete_prompt(self._user_id, record.id)
                    logger.info(
                        "Replaced prompt with the same name", user_id=self._user_id, prompt_id=record.id
                    )
            columns = {
                **self._columns("name", self._encryption.encrypt(prompt.name)),
                **self._columns("content", self._encryption.encrypt(prompt.content)),
            }
            row = await self._prefs.update_prompt(self._user_id, prompt_id, **columns)
            if row is None:
                return _failure(NotFoundError("Prompt not found", "PROMPT_NOT_FOUND"))
            return OperationResult(success=True, data=self._prompt_records([row])[0])
        except Exception as e:
            logger.exception("Failed to update prompt", prompt_id=prompt_id)
            return _failure(e)

    async def delete_prompt(self, prompt_id: str) -> OperationResult[None]:
        try:
            if not await self._prefs.delete_prompt(self._user_id, prompt_id):
                return _failure(NotFoundError("Prompt not found", "PROMPT_NOT_FOUND"))
            return OperationResult(success=True)
        except Exception as e:
            return _failure(e)

    async def reorder_prompts(self, prompt_ids: list[str]) -> OperationResult[None]:
        try:
            await self._prefs.set_positions(self._user_id, prompt_ids)
            return OperationResult(success=True)
        except Exception as e:
            return _failure(e)

    # --- Counts ---

    async def counts(self) -> OperationResult[dict[str, int]]:
        """Totals used by the user-data summary."""
        try:
            return OperationResult(
                success=True,
                data={
                    "chats": await self._chats.count_sessions(self._user_id),
                    "folders": await self._folders.count_by_user(self._user_id),
                    "prompts": await self._prefs.count_prompts(self._user_id),
                    "messages": await self._chats.count_user_messages(self._user_id),
                },
            )
        except Exception as e:
            return _failure(e)

    async def last_modified(self) -> datetime | None:
        """Newest chat or preference update, used for HTTP caching."""
        stamps = [await self._chats.latest_update(self._user_id)]
        prefs = await self._prefs.find(self._user_id)
        if prefs is not None:
            stamps.append(prefs.updated_at)
        present = [s for s in stamps if s is not None]
        return max(present) if present else None
