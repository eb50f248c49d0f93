"""JSON-file document store standing in for browser local storage."""

import json
import os
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from app.sync.entities import SOURCE_DATABASE, SOURCE_LOCAL, settle

logger = structlog.get_logger()

CHATS_KEY = "chats"
FOLDERS_KEY = "folders"
PROMPTS_KEY = "savedSystemPrompts"
PREFERENCES_KEY = "preferences"
PRIVATE_CHATS_KEY = "privateChats"
SELECTED_CHAT_KEY = "selectedChat"
SCHEMA_VERSION_KEY = "schema_version"

STORAGE_THRESHOLD_BYTES = 4 * 1024 * 1024
CLEANUP_TARGET_RATIO = 0.8
NEAR_LIMIT_RATIO = 0.9
MIN_KEPT_MESSAGES = 2
KEPT_MESSAGE_RATIO = 0.3


@dataclass(frozen=True)
class StorageSize:
    total: int
    keys: dict[str, int] = field(default_factory=dict)


class StorageError(Exception):
    """The document could not be written."""


def _tag_legacy(items: Any, is_synced: Callable[[dict[str, Any]], bool]) -> Any:
    if not isinstance(items, list):
        return items
    tagged = []
    for item in items:
        if isinstance(item, dict) and "source" not in item:
            item = {**item, "source": SOURCE_DATABASE if is_synced(item) else SOURCE_LOCAL}
        tagged.append(item)
    return tagged


def _add_source_tags(data: dict[str, Any]) -> dict[str, Any]:
    """Records written before source tagging infer it from their sync markers."""
    data[CHATS_KEY] = _tag_legacy(data.get(CHATS_KEY), lambda c: bool(c.get("databaseId")))
    data[FOLDERS_KEY] = _tag_legacy(
        data.get(FOLDERS_KEY), lambda f: bool(f.get("databaseId"))
    )
    data[PROMPTS_KEY] = _tag_legacy(
        data.get(PROMPTS_KEY), lambda p: p.get("synced") is True and bool(p.get("id"))
    )
    return {k: v for k, v in data.items() if v is not None}


# version -> migration producing that version
MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _add_source_tags,
}
SCHEMA_VERSION = max(MIGRATIONS)


def entry_size(key: str, value: Any) -> int:
    """Bytes a key/value pair occupies, counting two bytes per character."""
    return (len(key) + len(json.dumps(value, separators=(",", ":")))) * 2


def _last_message_time(chat: dict[str, Any]) -> float:
    messages = chat.get("messages") or []
    if not messages:
        return 0.0
    stamp = messages[-1].get("createdAt")
    if not stamp:
        return 0.0
    try:
        return datetime.fromisoformat(str(stamp).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def trim_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep the first message plus the most recent ones, max(2, 30%) in total."""
    if len(messages) <= MIN_KEPT_MESSAGES:
        return messages
    keep = max(MIN_KEPT_MESSAGES, int(len(messages) * KEPT_MESSAGE_RATIO))
    return [messages[0], *messages[-(keep - 1):]]


class LocalStore:
    """Document of top-level keys persisted as one JSON file.

    Migrations run once when the file is loaded. Writes replace the file
    atomically, so a reader never sees a partially applied ``write_many``.
    """

    def __init__(self, path: str | Path, threshold_bytes: int = STORAGE_THRESHOLD_BYTES) -> None:
        self.path = Path(path)
        self.threshold_bytes = threshold_bytes
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {SCHEMA_VERSION_KEY: SCHEMA_VERSION}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Local store unreadable, starting empty", path=str(self.path))
            return {SCHEMA_VERSION_KEY: SCHEMA_VERSION}
        if not isinstance(data, dict):
            return {SCHEMA_VERSION_KEY: SCHEMA_VERSION}
        data = self._migrate(data)
        # Pushes interrupted by a crash resume from their previous state
        for key in (CHATS_KEY, FOLDERS_KEY, PROMPTS_KEY):
            if isinstance(data.get(key), list):
                data[key] = [settle(item) for item in data[key]]
        return data

    def _migrate(self, data: dict[str, Any]) -> dict[str, Any]:
        version = int(data.get(SCHEMA_VERSION_KEY, 0))
        if version >= SCHEMA_VERSION:
            return data
        for target in sorted(v for v in MIGRATIONS if v > version):
            data = MIGRATIONS[target](data)
            data[SCHEMA_VERSION_KEY] = target
            logger.info("Local store migrated", version=target)
        self._data = data
        self._flush()
        return data

    @property
    def schema_version(self) -> int:
        return int(self._data.get(SCHEMA_VERSION_KEY, 0))

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        # Callers mutate freely; hand out copies
        return json.loads(json.dumps(value)) if value is not None else default

    def get_list(self, key: str) -> list[dict[str, Any]]:
        value = self.get(key)
        return value if isinstance(value, list) else []

    def keys(self) -> list[str]:
        return list(self._data)

    def set(self, key: str, value: Any) -> None:
        self.write_many({key: value})

    def remove(self, *keys: str) -> None:
        self.write_many({key: None for key in keys})

    def write_many(self, changes: Mapping[str, Any]) -> None:
        """Apply several key updates in one file write; None removes a key."""
        previous = dict(self._data)
        for key, value in changes.items():
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
        try:
            self._flush()
        except OSError as e:
            self._data = previous
            logger.error("Local store write failed", path=str(self.path), error=str(e))
            raise StorageError("Unable to save data to local storage.") from e

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".store-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, separators=(",", ":"))
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    # --- Size accounting ---

    def size(self) -> StorageSize:
        sizes = {key: entry_size(key, value) for key, value in self._data.items()}
        return StorageSize(total=sum(sizes.values()), keys=sizes)

    def is_over_limit(self) -> bool:
        total = self.size().total
        if total > self.threshold_bytes:
            logger.warning(
                "Local store over threshold", size=total, threshold=self.threshold_bytes
            )
            return True
        return False

    def is_near_limit(self) -> bool:
        return self.size().total > self.threshold_bytes * NEAR_LIMIT_RATIO

    def cleanup_chat_messages(self) -> bool:
        """Trim the oldest chats' histories until usage is under 80% of the threshold."""
        chats = self.get_list(CHATS_KEY)
        if not chats:
            return False

        target = self.threshold_bytes * CLEANUP_TARGET_RATIO
        other = self.size().total - entry_size(CHATS_KEY, self._data.get(CHATS_KEY))
        ordered = sorted(chats, key=_last_message_time, reverse=True)
        cleaned = False
        for chat in reversed(ordered):
            if other + entry_size(CHATS_KEY, ordered) <= target:
                break
            messages = chat.get("messages") or []
            trimmed = trim_messages(messages)
            if len(trimmed) < len(messages):
                chat["messages"] = trimmed
                cleaned = True

        if cleaned:
            self.set(CHATS_KEY, ordered)
            logger.info("Local store cleanup completed", size=self.size().total)
        return cleaned

    def cleanup_private_chats(self) -> bool:
        if not self._data.get(PRIVATE_CHATS_KEY):
            return False
        self.remove(PRIVATE_CHATS_KEY)
        logger.info("Removed private chats to free storage")
        return True

    def ensure_capacity(self) -> bool:
        """Free space when over the threshold; True if anything was removed."""
        if not self.is_over_limit():
            return False
        freed = self.cleanup_chat_messages()
        if self.is_over_limit():
            freed = self.cleanup_private_chats() or freed
        return freed
