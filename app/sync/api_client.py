"""Async HTTP client for the gateway's persistence and status routes."""

from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 30.0


class ApiError(Exception):
    """Non-success response from the gateway."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ApiClient:
    """Thin wrapper over ``httpx.AsyncClient`` that unwraps response envelopes."""

    def __init__(
        self,
        base_url: str,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url, transport=transport, timeout=timeout
        )
        self.access_token = access_token

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = dict(extra or {})
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=self._headers(headers)
            )
        except httpx.HTTPError as e:
            logger.warning("Gateway request failed", method=method, path=path, error=str(e))
            raise ApiError(0, "NETWORK_ERROR", str(e)) from e
        if response.status_code >= 400:
            raise self._error(response)
        return response

    @staticmethod
    def _error(response: httpx.Response) -> ApiError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return ApiError(
                response.status_code,
                error.get("code", "HTTP_ERROR"),
                error.get("message", response.reason_phrase),
            )
        message = body.get("message") if isinstance(body, dict) else None
        return ApiError(
            response.status_code,
            "RATE_LIMIT_EXCEEDED" if response.status_code == 429 else "HTTP_ERROR",
            message or response.reason_phrase,
        )

    async def _data(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        return response.json().get("data") or {}

    # --- User data and settings ---

    async def get_user_data(
        self,
        limit: int | None = None,
        offset: int = 0,
        if_modified_since: str | None = None,
    ) -> dict[str, Any] | None:
        """One snapshot page; None when the server answers 304."""
        params: dict[str, Any] = {"offset": offset}
        if limit is not None:
            params["limit"] = limit
        headers = {"If-Modified-Since": if_modified_since} if if_modified_since else None
        response = await self._request("GET", "/api/user/data", params=params, headers=headers)
        if response.status_code == 304:
            return None
        return response.json().get("data") or {}

    async def get_settings(self) -> dict[str, Any]:
        return await self._data("GET", "/api/user/settings")

    async def settings_action(self, action: str, **payload: Any) -> dict[str, Any]:
        return await self._data(
            "POST", "/api/user/settings", json={"action": action, **payload}
        )

    async def save_preferences(self, preferences: dict[str, Any]) -> dict[str, Any]:
        return await self._data("POST", "/api/user/preferences", json=preferences)

    # --- Chats ---

    async def save_chat(self, chat: dict[str, Any]) -> dict[str, Any]:
        return await self._data("POST", "/api/chats", json=chat)

    async def save_chats_batch(self, chats: list[dict[str, Any]]) -> dict[str, Any]:
        return await self._data("POST", "/api/chats/batch", json={"chats": chats})

    async def update_chat(self, chat_id: str, **changes: Any) -> dict[str, Any]:
        return await self._data("PATCH", f"/api/chats/{chat_id}", json=changes)

    async def delete_chat(self, chat_id: str) -> dict[str, Any]:
        return await self._data("DELETE", f"/api/chats/{chat_id}")

    # --- Folders ---

    async def create_folder(
        self, name: str, folder_id: str | None = None, position: int | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name}
        if folder_id is not None:
            body["id"] = folder_id
        if position is not None:
            body["position"] = position
        data = await self._data("POST", "/api/folders", json=body)
        return data["folder"]

    async def update_folder(self, folder_id: str, **changes: Any) -> dict[str, Any]:
        data = await self._data("PATCH", f"/api/folders/{folder_id}", json=changes)
        return data["folder"]

    async def delete_folder(self, folder_id: str) -> dict[str, Any]:
        return await self._data("DELETE", f"/api/folders/{folder_id}")

    # --- Status ---

    async def rate_limit_status(self) -> dict[str, Any]:
        response = await self._request("GET", "/api/rate-limit/status")
        return response.json()

    async def models(self) -> dict[str, Any]:
        return await self._data("GET", "/api/models")

    async def auth_status(self) -> dict[str, Any]:
        return await self._data("GET", "/api/auth/status")
