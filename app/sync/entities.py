"""Sync state of a locally cached chat, folder or prompt.

Records are stored as plain dicts; the state lives in their ``source``,
``databaseId`` and ``syncing`` keys and is read and written only through
``state_of`` and ``with_state``.
"""

from dataclasses import dataclass
from typing import Any

SOURCE_LOCAL = "local"
SOURCE_DATABASE = "database"


@dataclass(frozen=True)
class Local:
    """Created on this device and never confirmed by the server."""


@dataclass(frozen=True)
class Database:
    """Mirror of a server row."""

    id: str


@dataclass(frozen=True)
class PendingSync:
    """Push in flight; ``previous`` is restored if it fails."""

    previous: Local | Database


EntityState = Local | Database | PendingSync


def _settled(record: dict[str, Any]) -> Local | Database:
    if record.get("source") == SOURCE_DATABASE:
        return Database(str(record.get("databaseId") or record["id"]))
    return Local()


def state_of(record: dict[str, Any]) -> EntityState:
    settled = _settled(record)
    if record.get("syncing"):
        return PendingSync(settled)
    return settled


def with_state(record: dict[str, Any], state: EntityState) -> dict[str, Any]:
    """Copy of ``record`` carrying ``state``."""
    updated = dict(record)
    updated.pop("syncing", None)
    match state:
        case PendingSync(previous=previous):
            updated = with_state(updated, previous)
            updated["syncing"] = True
        case Database(id=db_id):
            updated["source"] = SOURCE_DATABASE
            updated["databaseId"] = db_id
        case Local():
            updated["source"] = SOURCE_LOCAL
            updated.pop("databaseId", None)
    return updated


def is_local(record: dict[str, Any]) -> bool:
    """True for records the server has not confirmed, including in-flight ones."""
    state = state_of(record)
    if isinstance(state, PendingSync):
        state = state.previous
    return isinstance(state, Local)


def settle(record: dict[str, Any]) -> dict[str, Any]:
    """Drop an interrupted push marker, keeping the state it started from."""
    state = state_of(record)
    if isinstance(state, PendingSync):
        return with_state(record, state.previous)
    return record
