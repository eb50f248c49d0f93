"""User data snapshot and settings actions built on the persistence gateway."""

from datetime import UTC, datetime
from typing import Any

import structlog

from app.core.config import settings
from app.core.exceptions import AppException, ValidationError
from app.core.kv_store import MemoryKeyValueStore, SnapshotCache
from app.schemas.user_schema import (
    DeletePromptAction,
    ReorderPromptsAction,
    SavePreferencesAction,
    SavePromptAction,
    SettingsAction,
    SyncFromDatabaseAction,
    SyncToDatabaseAction,
    UpdatePromptAction,
)
from app.services.persistence_service import (
    ChatRecord,
    FolderRecord,
    MessageRecord,
    OperationResult,
    PersistenceService,
    PreferencesRecord,
    PromptRecord,
)

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

snapshot_cache = SnapshotCache(
    MemoryKeyValueStore(),
    ttl=settings.cache.snapshot_ttl_seconds,
    sweep_interval=settings.cache.snapshot_sweep_seconds,
)

_STATUS_BY_CODE = {
    "NOT_FOUND": 404,
    "CHAT_NOT_FOUND": 404,
    "FOLDER_NOT_FOUND": 404,
    "PROMPT_NOT_FOUND": 404,
    "CONFLICT": 409,
    "VALIDATION_ERROR": 400,
    "ENCRYPTION_ERROR": 500,
}


def unwrap(result: OperationResult[Any]) -> Any:
    """Return ``result.data`` or raise the failure as an AppException."""
    if result.success:
        return result.data
    code = result.code or "DATABASE_ERROR"
    raise AppException(
        message=result.error or "Database operation failed",
        code=code,
        status_code=_STATUS_BY_CODE.get(code, 500),
    )


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def format_message(message: MessageRecord) -> dict[str, Any]:
    return {
        "role": message.role,
        "content": message.content,
        "position": message.position,
        "tokenCount": message.token_count,
        "createdAt": _iso(message.created_at),
    }


def format_chat(
    chat: ChatRecord, messages: list[MessageRecord] | None = None
) -> dict[str, Any]:
    """Client chat shape, tagged as database-sourced."""
    return {
        "id": chat.id,
        "name": chat.name,
        "model": {"id": chat.model_id, "name": chat.model_name or chat.model_id},
        "messages": [format_message(m) for m in messages or []],
        "systemPrompt": chat.system_prompt,
        "folderId": chat.folder_id,
        "parentChatId": chat.parent_chat_id,
        "branchedAtIndex": chat.branched_at_index,
        "createdAt": _iso(chat.created_at),
        "updatedAt": _iso(chat.updated_at),
        "source": "database",
        "databaseId": chat.id,
    }


def format_folder(folder: FolderRecord) -> dict[str, Any]:
    return {
        "id": folder.id,
        "name": folder.name,
        "position": folder.position,
        "createdAt": _iso(folder.created_at),
        "updatedAt": _iso(folder.updated_at),
        "source": "database",
        "databaseId": folder.id,
    }


def format_prompt(prompt: PromptRecord) -> dict[str, Any]:
    return {
        "id": prompt.id,
        "name": prompt.name,
        "content": prompt.content,
        "position": prompt.position,
        "source": "database",
        "databaseId": prompt.id,
    }


def format_preferences(prefs: PreferencesRecord | None) -> dict[str, Any] | None:
    if prefs is None:
        return None
    return {
        "selectedModel": prefs.selected_model,
        "systemPrompt": prefs.system_prompt,
        "temperature": prefs.temperature,
        "topP": prefs.top_p,
        "lastSelectedChatId": prefs.last_selected_chat_id,
        "updatedAt": _iso(prefs.updated_at),
    }


def clamp_page(limit: int | None, offset: int | None) -> tuple[int, int]:
    size = DEFAULT_PAGE_SIZE if limit is None or limit <= 0 else min(limit, MAX_PAGE_SIZE)
    return size, max(0, offset or 0)


def build_etag(last_modified: datetime | None, chat_count: int, folder_count: int) -> str:
    millis = int(last_modified.timestamp() * 1000) if last_modified else 0
    return f'"{millis}-{chat_count}-{folder_count}"'


class UserDataService:
    """Assembles per-user snapshots and applies settings actions."""

    def __init__(
        self, persistence: PersistenceService, cache: SnapshotCache | None = None
    ) -> None:
        self._persistence = persistence
        self._cache = cache if cache is not None else snapshot_cache
        self._cache_key = str(persistence.user_id)

    async def invalidate(self) -> None:
        await self._cache.invalidate(self._cache_key)

    async def last_modified(self) -> datetime | None:
        stamp = await self._persistence.last_modified()
        if stamp is not None and stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=UTC)
        return stamp

    async def snapshot(
        self, limit: int | None = None, offset: int | None = None
    ) -> dict[str, Any]:
        """Preferences, one page of chats with messages, folders and prompts.

        The first default-sized page is served from the in-memory cache.
        """
        size, start = clamp_page(limit, offset)
        cacheable = size == DEFAULT_PAGE_SIZE and start == 0
        if cacheable:
            cached = await self._cache.get(self._cache_key)
            if cached is not None:
                return cached

        counts = unwrap(await self._persistence.counts())
        chats: list[ChatRecord] = unwrap(
            await self._persistence.load_user_chats(limit=size, offset=start)
        )
        messages = unwrap(
            await self._persistence.load_bulk_chat_messages([c.id for c in chats])
        )
        folders = unwrap(await self._persistence.load_user_folders())
        prompts = unwrap(await self._persistence.load_prompts())
        preferences = unwrap(await self._persistence.load_preferences())
        last_modified = await self.last_modified()

        snapshot = {
            "preferences": format_preferences(preferences),
            "chats": [format_chat(c, messages.get(c.id, [])) for c in chats],
            "folders": [format_folder(f) for f in folders],
            "prompts": [format_prompt(p) for p in prompts],
            "pagination": {
                "limit": size,
                "offset": start,
                "total": counts["chats"],
                "hasMore": start + len(chats) < counts["chats"],
            },
            "summary": {
                "hasPreferences": preferences is not None,
                "chatCount": counts["chats"],
                "folderCount": counts["folders"],
                "promptCount": counts["prompts"],
                "messageCount": counts["messages"],
                "hasDataInDatabase": (
                    preferences is not None or counts["chats"] > 0 or counts["folders"] > 0
                ),
            },
            "lastModified": _iso(last_modified),
            "etag": build_etag(last_modified, counts["chats"], counts["folders"]),
        }
        if cacheable:
            await self._cache.put(self._cache_key, snapshot)
        return snapshot

    async def load_settings(self) -> dict[str, Any]:
        preferences = unwrap(await self._persistence.load_preferences())
        prompts = unwrap(await self._persistence.load_prompts())
        return {
            "preferences": format_preferences(preferences),
            "prompts": [format_prompt(p) for p in prompts],
        }

    async def apply(self, action: SettingsAction) -> dict[str, Any]:
        """Dispatch one settings action; every write invalidates the snapshot."""
        match action:
            case SyncFromDatabaseAction():
                return await self.load_settings()
            case SyncToDatabaseAction():
                result = await self._sync_to_database(action)
            case SavePreferencesAction():
                prefs = unwrap(await self._persistence.save_preferences(action.preferences))
                result = {"preferences": format_preferences(prefs)}
            case SavePromptAction():
                prompt = unwrap(await self._persistence.save_prompt(action.prompt))
                result = {"prompt": format_prompt(prompt)}
            case UpdatePromptAction():
                prompt = unwrap(
                    await self._persistence.update_prompt(action.prompt_id, action.prompt)
                )
                result = {"prompt": format_prompt(prompt)}
            case DeletePromptAction():
                unwrap(await self._persistence.delete_prompt(action.prompt_id))
                result = {"deleted": action.prompt_id}
            case ReorderPromptsAction():
                unwrap(await self._persistence.reorder_prompts(action.prompt_ids))
                result = {"order": action.prompt_ids}
            case _:
                raise ValidationError(f"Invalid action: {action.action}")
        await self.invalidate()
        return result

    async def _sync_to_database(self, action: SyncToDatabaseAction) -> dict[str, Any]:
        """Push preferences and prompts; prompts upsert by name."""
        synced_prefs = None
        if action.preferences is not None:
            synced_prefs = unwrap(await self._persistence.save_preferences(action.preferences))
        saved: list[dict[str, Any]] = []
        errors: list[str] = []
        for prompt in action.prompts:
            outcome = await self._persistence.save_prompt(prompt)
            if outcome.success and outcome.data is not None:
                saved.append({**format_prompt(outcome.data), "clientId": prompt.id})
            else:
                errors.append(f"{prompt.name}: {outcome.error}")
        if errors:
            logger.warning(
                "Some prompts failed to sync",
                user_id=self._persistence.user_id,
                failed=len(errors),
            )
        return {
            "preferences": format_preferences(synced_prefs),
            "prompts": saved,
            "errors": errors,
        }

