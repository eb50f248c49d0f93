"""ASGI authentication middleware."""

import json
from typing import Any

import jwt
import structlog
from starlette.types import ASGIApp, Receive, Scope, Send

from app.core import redis as redis_state
from app.core.config import settings
from app.core.kv_store import RedisKeyValueStore
from app.services.token_service import TokenService

logger = structlog.get_logger()

PUBLIC_PATHS: set[str] = {
    "",
    "/",
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/auth/register",
    "/api/auth/login",
    "/api/auth/refresh",
    "/api/auth/status",
}

# Served to anonymous callers too; a valid token still identifies the user.
OPTIONAL_AUTH_PATHS: set[str] = {
    "/api/chat",
    "/api/models",
    "/api/rate-limit/status",
}


class AuthFailure(Exception):
    """Token rejected; carries the HTTP error to send."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class AuthMiddleware:
    """Pure ASGI middleware for JWT validation (SSE-compatible)."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "")
        if method == "OPTIONS":
            await self.app(scope, receive, send)
            return

        path = scope["path"]
        normalized = path.rstrip("/") or "/"
        if normalized in PUBLIC_PATHS or path.startswith(("/docs", "/redoc")):
            await self.app(scope, receive, send)
            return

        optional = normalized in OPTIONAL_AUTH_PATHS
        headers = dict(scope.get("headers", []))
        auth_header = headers.get(b"authorization", b"").decode()

        if not auth_header.startswith("Bearer "):
            if settings.auth.dev_bypass:
                self._set_identity(
                    scope,
                    user_id=settings.auth.dev_user_id,
                    email=settings.auth.dev_user_email,
                    role="user",
                    jti="",
                    exp=0,
                )
            elif not optional:
                await self._send_error(
                    send, 401, "MISSING_TOKEN", "Authorization header required"
                )
                return
            await self.app(scope, receive, send)
            return

        try:
            payload = await self._verify(auth_header[7:])
        except AuthFailure as failure:
            if optional:
                logger.debug("Ignoring rejected token on public path", path=path, code=failure.code)
                await self.app(scope, receive, send)
                return
            await self._send_error(send, 401, failure.code, failure.message)
            return

        self._set_identity(
            scope,
            user_id=int(payload["sub"]),
            email=payload["email"],
            role=payload["role"],
            jti=payload.get("jti", ""),
            exp=payload["exp"],
        )
        await self.app(scope, receive, send)

    @staticmethod
    async def _verify(token: str) -> dict[str, Any]:
        """Decode an access token and check the revocation list."""
        secret = settings.auth.secret_key.get_secret_value()
        algorithm = settings.auth.algorithm

        try:
            payload: dict[str, Any] = jwt.decode(token, secret, algorithms=[algorithm])
        except jwt.ExpiredSignatureError as e:
            raise AuthFailure("TOKEN_EXPIRED", "Token has expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthFailure("INVALID_TOKEN", "Invalid token") from e

        if payload.get("type") != "access":
            raise AuthFailure("INVALID_TOKEN", "Invalid token type")

        client = redis_state.redis_client
        if client is not None:
            tokens = TokenService(RedisKeyValueStore(client))
            if await tokens.is_blacklisted(payload.get("jti", "")):
                raise AuthFailure("TOKEN_BLACKLISTED", "Token has been revoked")
        return payload

    @staticmethod
    def _set_identity(
        scope: Scope, user_id: int, email: str, role: str, jti: str, exp: int
    ) -> None:
        scope.setdefault("state", {})
        scope["state"]["user_id"] = user_id
        scope["state"]["email"] = email
        scope["state"]["role"] = role
        scope["state"]["jti"] = jti
        scope["state"]["exp"] = exp

    @staticmethod
    async def _send_error(send: Send, status: int, code: str, message: str) -> None:
        """Send a JSON error response directly."""
        body = json.dumps(
            {"success": False, "error": {"code": code, "message": message}}
        ).encode()

        await send(
            {
                "type": "http.response.start",
                "status": status,
                "headers": [
                    [b"content-type", b"application/json"],
                    [b"content-length", str(len(body)).encode()],
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})
