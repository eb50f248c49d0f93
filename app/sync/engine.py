"""Client-side reconciliation of the local cache with the server.

The server snapshot is always treated as fresher for database-sourced
records; local records are never touched by a merge and are pushed one at
a time, the first time the user interacts with them.
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from app.sync.api_client import ApiClient, ApiError
from app.sync.entities import (
    Database,
    Local,
    PendingSync,
    is_local,
    settle,
    state_of,
    with_state,
)
from app.sync.local_store import (
    CHATS_KEY,
    FOLDERS_KEY,
    PREFERENCES_KEY,
    PRIVATE_CHATS_KEY,
    PROMPTS_KEY,
    SELECTED_CHAT_KEY,
    LocalStore,
)

logger = structlog.get_logger()

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.95

EXPORT_VERSION = 1
SNAPSHOT_PAGE_SIZE = 100

NEW_CHAT_NAME = "New Chat"
CHAT_NAME_MAX_LENGTH = 25
CHAT_NAME_BREAK_FROM = 20
CHAT_NAME_BREAK_CHARS = ".?!, "

# Keys holding per-user state that must not survive a logout
USER_KEY_PREFIXES = ("user-", "encrypted-", "sync-")
USER_KEY_MARKERS = ("userId", "database")


class SyncStatus(StrEnum):
    IDLE = "idle"
    CHECKING = "checking"
    LOADING = "loading"
    READY_NO_SYNC = "ready_no_sync"
    MERGING = "merging"
    COMPLETE = "complete"
    ERROR = "error"


_IN_PROGRESS = {
    SyncStatus.CHECKING,
    SyncStatus.LOADING,
    SyncStatus.READY_NO_SYNC,
    SyncStatus.MERGING,
}


def has_data_in_database(summary: dict[str, Any] | None) -> bool:
    if not summary:
        return False
    return bool(
        summary.get("hasPreferences")
        or (summary.get("chatCount") or 0) > 0
        or (summary.get("folderCount") or 0) > 0
    )


def generate_chat_name(messages: list[dict[str, Any]]) -> str:
    """Name a chat after its first user message, cut at a natural break."""
    first = next((m for m in messages if m.get("role") == "user"), None)
    if first is None:
        return NEW_CHAT_NAME
    content = first.get("content") or ""
    if len(content) <= CHAT_NAME_MAX_LENGTH:
        return content
    breaks = [
        i
        for i in (content.find(ch, CHAT_NAME_BREAK_FROM) for ch in CHAT_NAME_BREAK_CHARS)
        if i != -1
    ]
    cut = min(breaks) if breaks else CHAT_NAME_MAX_LENGTH
    return content[:cut] + ("..." if cut < len(content) else "")


def _prompt_key(name: str) -> str:
    return name.strip().lower()


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _snapshot_fingerprint(snapshot: dict[str, Any]) -> tuple[Any, ...]:
    return (
        snapshot.get("etag"),
        tuple(sorted(c["id"] for c in snapshot.get("chats", []))),
        tuple(sorted(f["id"] for f in snapshot.get("folders", []))),
        tuple(sorted(str(p["id"]) for p in snapshot.get("prompts", []))),
        repr(snapshot.get("preferences")),
    )


def _database_id(record: dict[str, Any]) -> str | None:
    state = state_of(settle(record))
    return state.id if isinstance(state, Database) else None


def local_chat_counts(chats: list[dict[str, Any]]) -> dict[str, int]:
    """Number of unsynced, non-private chats filed in each folder."""
    counts: dict[str, int] = {}
    for chat in chats:
        folder_id = chat.get("folderId")
        if folder_id and is_local(chat) and not chat.get("isPrivate"):
            counts[folder_id] = counts.get(folder_id, 0) + 1
    return counts


def merge_by_id(
    local: list[dict[str, Any]], server: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Replace database-sourced records with ``server``; keep local ones.

    A local record whose id the server already knows is dropped in favor of
    the server copy.
    """
    server_ids = {item["id"] for item in server}
    kept = [item for item in local if is_local(item) and item.get("id") not in server_ids]
    fresh = [with_state(item, Database(str(item["id"]))) for item in server]
    return fresh + kept


def merge_prompts(
    local: list[dict[str, Any]], server: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Same as ``merge_by_id`` but prompts collide on case-insensitive name."""
    server_names = {_prompt_key(p["name"]) for p in server}
    kept = [
        p for p in local if is_local(p) and _prompt_key(p.get("name", "")) not in server_names
    ]
    fresh = [
        {**with_state(p, Database(str(p["id"]))), "synced": True} for p in server
    ]
    return fresh + kept


class SyncEngine:
    """Drives the login merge, lazy pushes and logout cleanup for one device."""

    def __init__(
        self,
        store: LocalStore,
        api: ApiClient,
        default_system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self.store = store
        self.api = api
        self.default_system_prompt = default_system_prompt
        self.status = SyncStatus.IDLE
        self.user_id: str | None = None
        self.last_error: str | None = None
        self._last_merged: tuple[Any, ...] | None = None
        self._pending: set[str] = set()
        self._listeners: list[Callable[[SyncStatus], None]] = []
        self._lock = asyncio.Lock()

    # --- Status ---

    def subscribe(self, listener: Callable[[SyncStatus], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set_status(self, status: SyncStatus) -> None:
        self.status = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Sync status listener failed")

    def is_pending(self, entity_id: str) -> bool:
        return entity_id in self._pending

    # --- Login / logout ---

    async def on_auth_change(self, user_id: str | None) -> SyncStatus:
        """Entry point for every authentication transition."""
        if user_id is None:
            if self.user_id is not None:
                self.logout()
            return self.status
        return await self.start(user_id)

    async def start(self, user_id: str) -> SyncStatus:
        """Check for server data and merge it; repeated calls for one user are no-ops."""
        if self.user_id == user_id and (
            self.status in _IN_PROGRESS or self.status == SyncStatus.COMPLETE
        ):
            return self.status
        async with self._lock:
            if self.user_id == user_id and self.status == SyncStatus.COMPLETE:
                return self.status
            if self.user_id is not None and self.user_id != user_id:
                self.logout()
            self.user_id = user_id
            self.last_error = None
            try:
                self._set_status(SyncStatus.CHECKING)
                first_page = await self.api.get_user_data(limit=SNAPSHOT_PAGE_SIZE)
                snapshot = first_page or {}
                if has_data_in_database(snapshot.get("summary")):
                    self._set_status(SyncStatus.LOADING)
                    snapshot = await self._load_remaining(snapshot)
                else:
                    self._set_status(SyncStatus.READY_NO_SYNC)
                self._set_status(SyncStatus.MERGING)
                self.merge_snapshot(snapshot)
                self._set_status(SyncStatus.COMPLETE)
            except ApiError as e:
                self.last_error = e.message
                logger.warning("Initial sync failed", user_id=user_id, code=e.code)
                self._set_status(SyncStatus.ERROR)
            return self.status

    async def _load_remaining(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        chats = list(snapshot.get("chats", []))
        pagination = snapshot.get("pagination") or {}
        while pagination.get("hasMore"):
            offset = pagination["offset"] + pagination["limit"]
            page = await self.api.get_user_data(limit=SNAPSHOT_PAGE_SIZE, offset=offset)
            if not page:
                break
            chats.extend(page.get("chats", []))
            pagination = page.get("pagination") or {}
        return {**snapshot, "chats": chats}

    def merge_snapshot(self, snapshot: dict[str, Any]) -> bool:
        """Apply a server snapshot; False when the same one was already merged."""
        fingerprint = _snapshot_fingerprint(snapshot)
        if fingerprint == self._last_merged:
            logger.debug("Skipping identical snapshot merge", user_id=self.user_id)
            return False

        changes: dict[str, Any] = {
            CHATS_KEY: merge_by_id(self.store.get_list(CHATS_KEY), snapshot.get("chats", [])),
            FOLDERS_KEY: merge_by_id(
                self.store.get_list(FOLDERS_KEY), snapshot.get("folders", [])
            ),
            PROMPTS_KEY: merge_prompts(
                self.store.get_list(PROMPTS_KEY), snapshot.get("prompts", [])
            ),
        }
        server_prefs = snapshot.get("preferences")
        if server_prefs:
            prefs = self.store.get(PREFERENCES_KEY) or {}
            prefs.update(
                {k: v for k, v in server_prefs.items() if v is not None and k != "updatedAt"}
            )
            changes[PREFERENCES_KEY] = prefs
        self.store.write_many(changes)
        self._last_merged = fingerprint
        logger.info(
            "Merged server snapshot",
            user_id=self.user_id,
            chats=len(changes[CHATS_KEY]),
            folders=len(changes[FOLDERS_KEY]),
            prompts=len(changes[PROMPTS_KEY]),
        )
        return True

    def logout(self) -> None:
        """Drop server mirrors, keeping local data and folders that still hold it."""
        chats = [
            settle(c)
            for c in self.store.get_list(CHATS_KEY)
            if is_local(c) and not c.get("isPrivate")
        ]
        folders = [
            settle({k: v for k, v in f.items() if k != "hasLocalChats"})
            for f in self.folders_with_state()
            if is_local(f) or f["hasLocalChats"]
        ]
        prompts = [settle(p) for p in self.store.get_list(PROMPTS_KEY) if is_local(p)]

        changes: dict[str, Any] = {
            CHATS_KEY: chats or None,
            FOLDERS_KEY: folders or None,
            PROMPTS_KEY: prompts or None,
            PREFERENCES_KEY: {
                "systemPrompt": self.default_system_prompt,
                "temperature": DEFAULT_TEMPERATURE,
                "topP": DEFAULT_TOP_P,
            },
            PRIVATE_CHATS_KEY: None,
            SELECTED_CHAT_KEY: None,
        }
        for key in self.store.keys():
            if key.startswith(USER_KEY_PREFIXES) or any(m in key for m in USER_KEY_MARKERS):
                changes[key] = None
        self.store.write_many(changes)

        logger.info(
            "Local cache cleared on logout",
            user_id=self.user_id,
            kept_chats=len(chats),
            kept_folders=len(folders),
        )
        self.user_id = None
        self._last_merged = None
        self._pending.clear()
        self._set_status(SyncStatus.IDLE)

    # --- Folder state ---

    def folders_with_state(self) -> list[dict[str, Any]]:
        """Cached folders annotated with the derived ``hasLocalChats`` flag."""
        counts = local_chat_counts(self.store.get_list(CHATS_KEY))
        return [
            {**f, "hasLocalChats": counts.get(f.get("id"), 0) > 0}
            for f in self.store.get_list(FOLDERS_KEY)
        ]

    def hybrid_folders(self) -> list[dict[str, Any]]:
        """Server folders that currently hold only unsynced chats."""
        return [f for f in self.folders_with_state() if not is_local(f) and f["hasLocalChats"]]

    def cleanup_empty_database_folders(self) -> int:
        """Signed out: drop server folders that no longer hold a local chat.

        Signed-in users keep every folder since it may hold server chats.
        Returns how many folders were removed.
        """
        if self.user_id is not None:
            return 0
        folders = self.store.get_list(FOLDERS_KEY)
        counts = local_chat_counts(self.store.get_list(CHATS_KEY))
        kept = [f for f in folders if is_local(f) or counts.get(f.get("id"), 0) > 0]
        removed = len(folders) - len(kept)
        if removed:
            self.store.set(FOLDERS_KEY, kept or None)
            logger.info("Removed empty server folders", count=removed)
        return removed

    async def delete_chat(self, chat_id: str) -> bool:
        """Remove a chat locally, and on the server when it is mirrored there."""
        chat = self._find(CHATS_KEY, chat_id)
        if chat is None:
            return False
        self.store.set(
            CHATS_KEY, [c for c in self.store.get_list(CHATS_KEY) if c.get("id") != chat_id] or None
        )
        database_id = _database_id(chat)
        if self.user_id is not None and database_id is not None:
            try:
                await self.api.delete_chat(database_id)
            except ApiError as e:
                logger.warning("Server chat delete failed", chat_id=chat_id, code=e.code)
        if chat.get("folderId"):
            self.cleanup_empty_database_folders()
        return True

    async def move_chat(self, chat_id: str, folder_id: str | None) -> bool:
        """File a chat under ``folder_id`` (None unfiles it)."""
        chat = self._find(CHATS_KEY, chat_id)
        if chat is None:
            return False
        previous_folder = chat.get("folderId")
        self._mark(CHATS_KEY, chat_id, lambda c: {**c, "folderId": folder_id, "updatedAt": _now()})
        database_id = _database_id(chat)
        if self.user_id is not None and database_id is not None:
            try:
                await self.api.update_chat(database_id, folderId=folder_id)
            except ApiError as e:
                logger.warning("Server chat move failed", chat_id=chat_id, code=e.code)
        if previous_folder and previous_folder != folder_id:
            self.cleanup_empty_database_folders()
        return True

    # --- Lazy pushes ---

    def _mark(
        self, key: str, entity_id: str, make: Callable[[dict[str, Any]], dict[str, Any]]
    ) -> None:
        items = self.store.get_list(key)
        self.store.set(key, [make(i) if i.get("id") == entity_id else i for i in items])

    def _begin(self, key: str, record: dict[str, Any]) -> None:
        state = state_of(record)
        previous = state.previous if isinstance(state, PendingSync) else state
        self._pending.add(record["id"])
        self._mark(key, record["id"], lambda i: with_state(i, PendingSync(previous)))

    def _abort(self, key: str, record: dict[str, Any]) -> None:
        self._pending.discard(record["id"])
        state = state_of(record)
        previous = state.previous if isinstance(state, PendingSync) else state
        self._mark(key, record["id"], lambda i: with_state(i, previous))

    def _find(self, key: str, entity_id: str) -> dict[str, Any] | None:
        return next((i for i in self.store.get_list(key) if i.get("id") == entity_id), None)

    async def sync_chat(self, chat_id: str) -> bool:
        """Push one chat and its messages, creating its folder server-side if needed.

        Returns False without calling the server for private chats, logged-out
        sessions and chats that already have a push in flight.
        """
        if self.user_id is None or chat_id in self._pending:
            return False
        chat = self._find(CHATS_KEY, chat_id)
        if chat is None or chat.get("isPrivate"):
            return False

        payload = {k: v for k, v in chat.items() if k not in ("source", "databaseId", "syncing")}
        folder_id = chat.get("folderId")
        if folder_id:
            folder = self._find(FOLDERS_KEY, folder_id)
            if folder is not None:
                payload["folderInfo"] = {"name": folder.get("name")}

        self._begin(CHATS_KEY, chat)
        try:
            result = await self.api.save_chat(payload)
        except ApiError as e:
            logger.warning("Chat sync failed", chat_id=chat_id, code=e.code)
            self._abort(CHATS_KEY, chat)
            return False

        new_folder_id = result.get("newFolderId") if result.get("needsFolderUpdate") else None
        original_folder_id = result.get("originalFolderId") or folder_id
        stored_folder_id = result.get("updatedFolderId")
        synced_at = _now()

        chats = []
        for c in self.store.get_list(CHATS_KEY):
            if c.get("id") == chat_id:
                c = with_state(c, Database(result.get("chatId") or chat_id))
                c["lastSynced"] = synced_at
                c["folderId"] = new_folder_id or c.get("folderId")
            elif new_folder_id and c.get("folderId") == original_folder_id:
                c = {**c, "folderId": new_folder_id}
            chats.append(c)

        changes: dict[str, Any] = {CHATS_KEY: chats}
        confirmed_folder = new_folder_id or stored_folder_id
        if folder_id and confirmed_folder:
            changes[FOLDERS_KEY] = self._rekey_folder(folder_id, confirmed_folder)
        self.store.write_many(changes)
        self._pending.discard(chat_id)
        logger.info("Chat synced", chat_id=chat_id, folder_migrated=bool(new_folder_id))
        return True

    def _rekey_folder(self, old_id: str, new_id: str) -> list[dict[str, Any]]:
        """Folders list with ``old_id`` renamed to the confirmed ``new_id``."""
        folders: list[dict[str, Any]] = []
        seen = False
        for f in self.store.get_list(FOLDERS_KEY):
            if f.get("id") in (old_id, new_id):
                if seen:
                    continue
                f = with_state({**f, "id": new_id}, Database(new_id))
                seen = True
            folders.append(f)
        return folders

    async def sync_folder(self, folder_id: str) -> bool:
        """Create a local folder server-side and adopt the id the server assigns."""
        if self.user_id is None or folder_id in self._pending:
            return False
        folder = self._find(FOLDERS_KEY, folder_id)
        if folder is None or not is_local(folder):
            return False

        self._begin(FOLDERS_KEY, folder)
        try:
            created = await self.api.create_folder(
                folder["name"], folder_id=folder_id, position=folder.get("position")
            )
        except ApiError as e:
            logger.warning("Folder sync failed", folder_id=folder_id, code=e.code)
            self._abort(FOLDERS_KEY, folder)
            return False

        new_id = created["id"]
        chats = self.store.get_list(CHATS_KEY)
        if new_id != folder_id:
            chats = [
                {**c, "folderId": new_id} if c.get("folderId") == folder_id else c
                for c in chats
            ]
        self.store.write_many(
            {FOLDERS_KEY: self._rekey_folder(folder_id, new_id), CHATS_KEY: chats}
        )
        self._pending.discard(folder_id)
        logger.info("Folder synced", folder_id=folder_id, database_id=new_id)
        return True

    async def sync_prompt(self, prompt_id: str) -> bool:
        """Push a local prompt; a server prompt with the same name is replaced."""
        if self.user_id is None or prompt_id in self._pending:
            return False
        prompt = self._find(PROMPTS_KEY, prompt_id)
        if prompt is None or not is_local(prompt):
            return False

        self._begin(PROMPTS_KEY, prompt)
        try:
            data = await self.api.settings_action(
                "save_prompt",
                prompt={"id": prompt_id, "name": prompt["name"], "content": prompt.get("content", "")},
            )
        except ApiError as e:
            logger.warning("Prompt sync failed", prompt_id=prompt_id, code=e.code)
            self._abort(PROMPTS_KEY, prompt)
            return False

        saved = data["prompt"]
        name = _prompt_key(prompt["name"])
        prompts: list[dict[str, Any]] = []
        for p in self.store.get_list(PROMPTS_KEY):
            if p.get("id") == prompt_id:
                p = {**with_state(p, Database(str(saved["id"]))), "id": saved["id"], "synced": True}
            elif _prompt_key(p.get("name", "")) == name:
                continue
            prompts.append(p)
        self.store.set(PROMPTS_KEY, prompts)
        self._pending.discard(prompt_id)
        logger.info("Prompt synced", prompt_id=prompt_id, database_id=saved["id"])
        return True

    # --- Local edits ---

    def create_chat(
        self,
        messages: list[dict[str, Any]],
        model: dict[str, Any],
        system_prompt: str | None = None,
        is_private: bool = False,
    ) -> dict[str, Any]:
        now = _now()
        chat = with_state(
            {
                "id": str(uuid.uuid4()),
                "name": generate_chat_name(messages),
                "messages": messages,
                "model": model,
                "systemPrompt": system_prompt,
                "folderId": None,
                "isPrivate": is_private,
                "createdAt": now,
                "updatedAt": now,
            },
            Local(),
        )
        self.store.set(CHATS_KEY, [*self.store.get_list(CHATS_KEY), chat])
        self.store.ensure_capacity()
        return chat

    def branch_chat(self, chat_id: str, message_index: int) -> dict[str, Any] | None:
        """Copy a chat up to ``message_index`` into a new local chat."""
        source = self._find(CHATS_KEY, chat_id)
        if source is None:
            return None
        messages = (source.get("messages") or [])[: message_index + 1]
        if not messages:
            return None
        now = _now()
        branch = with_state(
            {
                "id": str(uuid.uuid4()),
                "name": f"Branch of {source.get('name', '')}",
                "messages": messages,
                "model": source.get("model"),
                "systemPrompt": source.get("systemPrompt"),
                "folderId": source.get("folderId"),
                "parentChatId": source["id"],
                "branchedAtIndex": message_index,
                "isPrivate": source.get("isPrivate", False),
                "createdAt": now,
                "updatedAt": now,
            },
            Local(),
        )
        self.store.set(CHATS_KEY, [*self.store.get_list(CHATS_KEY), branch])
        return branch

    # --- Export / import ---

    def export_data(self) -> dict[str, Any]:
        return {
            "version": EXPORT_VERSION,
            "exportedAt": _now(),
            "chats": [c for c in self.store.get_list(CHATS_KEY) if not c.get("isPrivate")],
            "folders": self.store.get_list(FOLDERS_KEY),
            "prompts": self.store.get_list(PROMPTS_KEY),
            "preferences": self.store.get(PREFERENCES_KEY) or {},
        }

    def import_data(self, data: dict[str, Any]) -> dict[str, int]:
        """Add exported records as local entities; existing ids and prompt names win."""
        if data.get("version") != EXPORT_VERSION:
            raise ValueError(f"Unsupported export version: {data.get('version')!r}")

        def _fresh(items: list[dict[str, Any]], existing: list[dict[str, Any]]) -> list[dict[str, Any]]:
            ids = {i.get("id") for i in existing}
            return [with_state(i, Local()) for i in items if i.get("id") not in ids]

        chats = self.store.get_list(CHATS_KEY)
        folders = self.store.get_list(FOLDERS_KEY)
        prompts = self.store.get_list(PROMPTS_KEY)
        new_chats = _fresh(data.get("chats", []), chats)
        new_folders = _fresh(data.get("folders", []), folders)
        names = {_prompt_key(p.get("name", "")) for p in prompts}
        new_prompts = [
            {**with_state(p, Local()), "synced": False}
            for p in data.get("prompts", [])
            if _prompt_key(p.get("name", "")) not in names
        ]
        self.store.write_many(
            {
                CHATS_KEY: chats + new_chats,
                FOLDERS_KEY: folders + new_folders,
                PROMPTS_KEY: prompts + new_prompts,
            }
        )
        self.store.ensure_capacity()
        return {"chats": len(new_chats), "folders": len(new_folders), "prompts": len(new_prompts)}
