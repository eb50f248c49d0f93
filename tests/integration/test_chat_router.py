"""Integration tests for the chat persistence endpoints."""

from typing import Any

import pytest
from httpx import AsyncClient

from app.models.user import UserTier


def chat_body(chat_id: str = "c1", **extra: Any) -> dict[str, Any]:
    return {
        "id": chat_id,
        "name": "Trip planning",
        "model": {"id": "free-model", "name": "Free Model"},
        "messages": [
            {"role": "user", "content": "Plan a trip"},
            {"role": "assistant", "content": "Where to?"},
        ],
        **extra,
    }


@pytest.fixture(autouse=True)
def _catalog(catalog_db: dict[str, UserTier]) -> None:
    """Every test runs as user 1."""


class TestAuth:
    async def test_requires_token(self, async_client: AsyncClient) -> None:
        resp = await async_client.get("/api/chats")
        assert resp.status_code == 401
        assert resp.json()["success"] is False


class TestSaveChat:
    """POST /api/chats."""

    async def test_save_and_load(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.post("/api/chats", json=chat_body())
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["chatId"] == "c1"
        assert data["messagesSaved"] == 2
        assert data["needsFolderUpdate"] is False

        loaded = (await authed_client.get("/api/chats/load")).json()["data"]["chats"]
        assert len(loaded) == 1
        assert loaded[0]["name"] == "Trip planning"
        assert [m["content"] for m in loaded[0]["messages"]] == ["Plan a trip", "Where to?"]
        assert loaded[0]["source"] == "database"

    async def test_resave_replaces_history(self, authed_client: AsyncClient) -> None:
        await authed_client.post("/api/chats", json=chat_body())
        shorter = chat_body(messages=[{"role": "user", "content": "Only this"}])
        await authed_client.post("/api/chats", json=shorter)
        [chat] = (await authed_client.get("/api/chats/load")).json()["data"]["chats"]
        assert [m["content"] for m in chat["messages"]] == ["Only this"]

    async def test_creates_missing_folder(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.post(
            "/api/chats",
            json=chat_body(folderId="f-local", folderInfo={"name": "Work"}),
        )
        data = resp.json()["data"]
        assert data["updatedFolderId"] == "f-local"
        assert data["needsFolderUpdate"] is False
        folders = (await authed_client.get("/api/folders")).json()["data"]["folders"]
        assert [f["name"] for f in folders] == ["Work"]

    async def test_reuses_folder_with_same_name(self, authed_client: AsyncClient) -> None:
        created = await authed_client.post("/api/folders", json={"name": "Work", "id": "f-db"})
        assert created.status_code == 201

        resp = await authed_client.post(
            "/api/chats",
            json=chat_body(folderId="f-local", folderInfo={"name": "Work"}),
        )
        data = resp.json()["data"]
        assert data["needsFolderUpdate"] is True
        assert data["originalFolderId"] == "f-local"
        assert data["newFolderId"] == "f-db"

    async def test_unknown_folder_without_info_is_unfiled(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.post("/api/chats", json=chat_body(folderId="ghost"))
        assert resp.json()["data"]["updatedFolderId"] is None

    async def test_private_chat_rejected(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.post("/api/chats", json=chat_body(isPrivate=True))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_invalid_body(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.post("/api/chats", json={"id": "c1", "name": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"]["fields"][0]["field"] == "model"


class TestBatch:
    async def test_batch_reports_per_chat(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.post(
            "/api/chats/batch",
            json={"chats": [chat_body("a"), chat_body("b", isPrivate=True), chat_body("c")]},
        )
        data = resp.json()["data"]
        assert data["chatsSaved"] == 2
        assert data["totalChats"] == 3
        assert data["messagesSaved"] == 4
        assert len(data["errors"]) == 1
        assert data["errors"][0].startswith("b:")


class TestListUpdateDelete:
    async def test_list_is_paginated(self, authed_client: AsyncClient) -> None:
        for i in range(3):
            await authed_client.post("/api/chats", json=chat_body(f"c{i}"))
        resp = await authed_client.get("/api/chats", params={"limit": 2})
        chats = resp.json()["data"]["chats"]
        assert len(chats) == 2
        assert all(c["messages"] == [] for c in chats)

    async def test_rename(self, authed_client: AsyncClient) -> None:
        await authed_client.post("/api/chats", json=chat_body())
        resp = await authed_client.patch("/api/chats/c1", json={"name": "Renamed"})
        assert resp.status_code == 200
        [chat] = (await authed_client.get("/api/chats")).json()["data"]["chats"]
        assert chat["name"] == "Renamed"

    async def test_move_out_of_folder(self, authed_client: AsyncClient) -> None:
        await authed_client.post(
            "/api/chats", json=chat_body(folderId="f1", folderInfo={"name": "Work"})
        )
        await authed_client.patch("/api/chats/c1", json={"folderId": None})
        [chat] = (await authed_client.get("/api/chats")).json()["data"]["chats"]
        assert chat["folderId"] is None

    async def test_update_requires_a_field(self, authed_client: AsyncClient) -> None:
        await authed_client.post("/api/chats", json=chat_body())
        resp = await authed_client.patch("/api/chats/c1", json={})
        assert resp.status_code == 400

    async def test_update_missing_chat(self, authed_client: AsyncClient) -> None:
        resp = await authed_client.patch("/api/chats/nope", json={"name": "x"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "CHAT_NOT_FOUND"

    async def test_delete(self, authed_client: AsyncClient) -> None:
        await authed_client.post("/api/chats", json=chat_body())
        resp = await authed_client.delete("/api/chats/c1")
        assert resp.status_code == 200
        assert (await authed_client.get("/api/chats")).json()["data"]["chats"] == []
        again = await authed_client.delete("/api/chats/c1")
        assert again.status_code == 404
