"""Tests for the client-side LocalStore and entity states."""

import json
from pathlib import Path

import pytest

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
    PRIVATE_CHATS_KEY,
    PROMPTS_KEY,
    SCHEMA_VERSION,
    SCHEMA_VERSION_KEY,
    LocalStore,
    StorageError,
    entry_size,
    trim_messages,
)


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "store.json"


def messages(n: int, size: int = 10) -> list[dict]:  # type: ignore[type-arg]
    return [
        {"role": "user", "content": "x" * size, "createdAt": f"2025-01-01T00:00:{i:02d}Z"}
        for i in range(n)
    ]


class TestEntityState:
    def test_untagged_record_is_local(self) -> None:
        assert state_of({"id": "c1"}) == Local()

    def test_database_record(self) -> None:
        assert state_of({"id": "c1", "source": "database", "databaseId": "d1"}) == Database("d1")

    def test_database_id_defaults_to_id(self) -> None:
        assert state_of({"id": "c1", "source": "database"}) == Database("c1")

    def test_pending(self) -> None:
        record = {"id": "c1", "source": "local", "syncing": True}
        assert state_of(record) == PendingSync(Local())
        assert is_local(record) is True

    def test_with_state_roundtrip(self) -> None:
        record = with_state({"id": "c1"}, PendingSync(Database("d1")))
        assert record["syncing"] is True
        assert record["databaseId"] == "d1"
        assert state_of(record) == PendingSync(Database("d1"))

    def test_local_drops_database_id(self) -> None:
        record = with_state({"id": "c1", "databaseId": "d1"}, Local())
        assert "databaseId" not in record
        assert record["source"] == "local"

    def test_settle(self) -> None:
        pending = with_state({"id": "c1"}, PendingSync(Local()))
        settled = settle(pending)
        assert "syncing" not in settled
        assert state_of(settled) == Local()

    def test_with_state_copies(self) -> None:
        original = {"id": "c1"}
        with_state(original, Database("d1"))
        assert original == {"id": "c1"}


class TestReadWrite:
    def test_new_store_has_schema_version(self, store_path: Path) -> None:
        store = LocalStore(store_path)
        assert store.schema_version == SCHEMA_VERSION
        assert not store_path.exists()

    def test_persists_across_instances(self, store_path: Path) -> None:
        LocalStore(store_path).set(CHATS_KEY, [{"id": "c1"}])
        assert LocalStore(store_path).get_list(CHATS_KEY) == [{"id": "c1"}]

    def test_get_returns_copy(self, store_path: Path) -> None:
        store = LocalStore(store_path)
        store.set(CHATS_KEY, [{"id": "c1"}])
        store.get_list(CHATS_KEY)[0]["id"] = "mutated"
        assert store.get_list(CHATS_KEY) == [{"id": "c1"}]

    def test_write_many_and_remove(self, store_path: Path) -> None:
        store = LocalStore(store_path)
        store.write_many({CHATS_KEY: [], FOLDERS_KEY: [{"id": "f"}]})
        store.write_many({CHATS_KEY: None})
        assert CHATS_KEY not in store.keys()
        assert store.get_list(FOLDERS_KEY) == [{"id": "f"}]
        store.remove(FOLDERS_KEY)
        assert store.get(FOLDERS_KEY) is None

    def test_corrupt_file_starts_empty(self, store_path: Path) -> None:
        store_path.write_text("{not json", encoding="utf-8")
        store = LocalStore(store_path)
        assert store.get_list(CHATS_KEY) == []

    def test_failed_write_rolls_back(self, store_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        store = LocalStore(store_path)
        store.set(CHATS_KEY, [{"id": "c1"}])

        def fail(*args: object, **kwargs: object) -> None:
            raise OSError("disk full")

        monkeypatch.setattr("app.sync.local_store.os.replace", fail)
        with pytest.raises(StorageError):
            store.set(CHATS_KEY, [{"id": "c2"}])
        assert store.get_list(CHATS_KEY) == [{"id": "c1"}]
        assert list(store_path.parent.glob(".store-*")) == []


class TestMigrations:
    """Legacy documents gain source tags on load."""

    def test_tags_legacy_records(self, store_path: Path) -> None:
        store_path.write_text(
            json.dumps(
                {
                    CHATS_KEY: [{"id": "c1", "databaseId": "c1"}, {"id": "c2"}],
                    FOLDERS_KEY: [{"id": "f1"}],
                    PROMPTS_KEY: [
                        {"id": "p1", "synced": True},
                        {"id": "p2", "synced": False},
                    ],
                }
            ),
            encoding="utf-8",
        )
        store = LocalStore(store_path)
        assert [c["source"] for c in store.get_list(CHATS_KEY)] == ["database", "local"]
        assert store.get_list(FOLDERS_KEY)[0]["source"] == "local"
        assert [p["source"] for p in store.get_list(PROMPTS_KEY)] == ["database", "local"]
        assert store.schema_version == SCHEMA_VERSION
        on_disk = json.loads(store_path.read_text(encoding="utf-8"))
        assert on_disk[SCHEMA_VERSION_KEY] == SCHEMA_VERSION

    def test_existing_tags_kept(self, store_path: Path) -> None:
        store_path.write_text(
            json.dumps({CHATS_KEY: [{"id": "c1", "source": "database"}]}), encoding="utf-8"
        )
        assert LocalStore(store_path).get_list(CHATS_KEY)[0]["source"] == "database"

    def test_interrupted_push_is_settled(self, store_path: Path) -> None:
        store_path.write_text(
            json.dumps(
                {
                    SCHEMA_VERSION_KEY: SCHEMA_VERSION,
                    CHATS_KEY: [{"id": "c1", "source": "local", "syncing": True}],
                }
            ),
            encoding="utf-8",
        )
        [chat] = LocalStore(store_path).get_list(CHATS_KEY)
        assert "syncing" not in chat
        assert chat["source"] == "local"


class TestSizeAndCleanup:
    def test_entry_size_counts_two_bytes_per_char(self) -> None:
        assert entry_size("ab", [1]) == (2 + 3) * 2

    def test_trim_keeps_first_and_recent(self) -> None:
        items = messages(10)
        trimmed = trim_messages(items)
        assert trimmed[0] == items[0]
        assert trimmed[1:] == items[-2:]

    def test_trim_short_history_untouched(self) -> None:
        items = messages(2)
        assert trim_messages(items) == items

    def test_near_and_over_limit(self, store_path: Path) -> None:
        store = LocalStore(store_path, threshold_bytes=1000)
        store.set(CHATS_KEY, [{"id": "c", "messages": messages(1, size=360)}])
        assert store.is_near_limit() is True
        assert store.is_over_limit() is False
        store.set(CHATS_KEY, [{"id": "c", "messages": messages(1, size=600)}])
        assert store.is_over_limit() is True

    def test_cleanup_trims_oldest_first(self, store_path: Path) -> None:
        store = LocalStore(store_path, threshold_bytes=15_000)
        old = {"id": "old", "messages": messages(20, size=300)}
        new = {
            "id": "new",
            "messages": [
                {**m, "createdAt": m["createdAt"].replace("2025", "2026")}
                for m in messages(4, size=300)
            ],
        }
        store.set(CHATS_KEY, [old, new])
        assert store.cleanup_chat_messages() is True
        chats = {c["id"]: c for c in store.get_list(CHATS_KEY)}
        assert len(chats["old"]["messages"]) == 6
        assert len(chats["new"]["messages"]) == 4
        assert store.size().total <= 15_000 * 0.8
        # Most recently active chat first
        assert [c["id"] for c in store.get_list(CHATS_KEY)] == ["new", "old"]

    def test_cleanup_noop_when_small(self, store_path: Path) -> None:
        store = LocalStore(store_path)
        store.set(CHATS_KEY, [{"id": "c", "messages": messages(10)}])
        assert store.cleanup_chat_messages() is False

    def test_ensure_capacity_drops_private_chats(self, store_path: Path) -> None:
        store = LocalStore(store_path, threshold_bytes=2000)
        store.set(PRIVATE_CHATS_KEY, [{"id": "p", "messages": messages(1, size=2000)}])
        assert store.ensure_capacity() is True
        assert store.get(PRIVATE_CHATS_KEY) is None
        assert store.is_over_limit() is False

    def test_ensure_capacity_under_limit(self, store_path: Path) -> None:
        assert LocalStore(store_path).ensure_capacity() is False
