"""Application exception classes and handlers."""

from datetime import UTC, datetime
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


# --- Validation (400) ---


class ValidationError(AppException):
    """Malformed or missing input."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR", status_code=400)


class ContextTooLargeError(AppException):
    """Context files alone do not fit the model's window."""

    def __init__(self) -> None:
        super().__init__(
            message=(
                "Your files have too much content for this model. "
                "Please remove some files or try a different model."
            ),
            code="CONTEXT_TOO_LARGE",
            status_code=400,
        )


class MessageTooLargeError(AppException):
    """Even a truncated latest message does not fit."""

    def __init__(self) -> None:
        super().__init__(
            message=(
                "Your message is too long for this model. "
                "Please shorten it or try a different model."
            ),
            code="MESSAGE_TOO_LARGE",
            status_code=400,
        )


# --- Authentication (401) ---


class AuthenticationError(AppException):
    """Base authentication error."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message=message, code="AUTHENTICATION_ERROR", status_code=401)


class TokenExpiredError(AppException):
    """Token has expired."""

    def __init__(self) -> None:
        super().__init__(
            message="Token has expired",
            code="TOKEN_EXPIRED",
            status_code=401,
        )


class TokenBlacklistedError(AppException):
    """Token has been revoked."""

    def __init__(self) -> None:
        super().__init__(
            message="Token has been revoked",
            code="TOKEN_BLACKLISTED",
            status_code=401,
        )


class InvalidTokenError(AppException):
    """Token is invalid."""

    def __init__(self) -> None:
        super().__init__(
            message="Invalid token",
            code="INVALID_TOKEN",
            status_code=401,
        )


class InvalidCredentialsError(AppException):
    """Invalid email or password."""

    def __init__(self) -> None:
        super().__init__(
            message="Invalid email or password",
            code="INVALID_CREDENTIALS",
            status_code=401,
        )


# --- Authorization (403) ---


class AuthorizationError(AppException):
    """Insufficient permissions."""

    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(message=message, code="AUTHORIZATION_ERROR", status_code=403)


class ModelAccessError(AppException):
    """Requested model is not in the caller's tier."""

    def __init__(self, model_id: str, available_models: list[str]) -> None:
        super().__init__(
            message=f"Model '{model_id}' is not available for your account",
            code="MODEL_NOT_AVAILABLE",
            status_code=403,
            details={"availableModels": available_models},
        )


# --- Not Found (404) ---


class NotFoundError(AppException):
    """Generic missing resource."""

    def __init__(self, message: str = "Resource not found", code: str = "NOT_FOUND") -> None:
        super().__init__(message=message, code=code, status_code=404)


class UserNotFoundError(NotFoundError):
    """User not found."""

    def __init__(self) -> None:
        super().__init__(message="User not found", code="USER_NOT_FOUND")


class ChatNotFoundError(NotFoundError):
    """Chat session not found or not owned by the caller."""

    def __init__(self) -> None:
        super().__init__(message="Chat not found", code="CHAT_NOT_FOUND")


class FolderNotFoundError(NotFoundError):
    """Folder not found or not owned by the caller."""

    def __init__(self) -> None:
        super().__init__(message="Folder not found", code="FOLDER_NOT_FOUND")


# --- Conflict (409) ---


class ConflictError(AppException):
    """Write collides with existing state."""

    def __init__(self, message: str = "Resource already exists") -> None:
        super().__init__(message=message, code="CONFLICT", status_code=409)


class UserAlreadyExistsError(AppException):
    """User with this email already exists."""

    def __init__(self) -> None:
        super().__init__(
            message="User with this email already exists",
            code="USER_ALREADY_EXISTS",
            status_code=409,
        )


# --- Rate Limit (429) ---


class AccountLockedError(AppException):
    """Too many failed login attempts."""

    def __init__(self) -> None:
        super().__init__(
            message="Too many failed login attempts. Please try again later.",
            code="ACCOUNT_LOCKED",
            status_code=429,
        )


class TokenQuotaExceededError(AppException):
    """Token window for this identifier is used up."""

    def __init__(
        self,
        limit: int,
        used: int,
        reset_time_ms: int,
        requires_verification: bool,
        message: str,
    ) -> None:
        super().__init__(
            message=message,
            code="RATE_LIMIT_EXCEEDED",
            status_code=429,
        )
        self.limit = limit
        self.used = used
        self.reset_time_ms = reset_time_ms
        self.requires_verification = requires_verification


# --- Server side (500 / 502) ---


class DatabaseError(AppException):
    """Persistence layer failure."""

    def __init__(self, message: str = "Database operation failed") -> None:
        super().__init__(message=message, code="DATABASE_ERROR", status_code=500)


class EncryptionError(AppException):
    """Integrity-check failure or corrupt ciphertext."""

    def __init__(
        self,
        message: str = "Decryption failed - data may be corrupted or encryption key changed",
    ) -> None:
        super().__init__(message=message, code="ENCRYPTION_ERROR", status_code=500)


class UpstreamError(AppException):
    """Inference provider failure."""

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message=message, code="UPSTREAM_ERROR", status_code=status_code)


# --- Exception Handlers ---


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Central exception handler for AppException."""
    error: dict[str, Any] = {"code": exc.code, "message": exc.message}
    error.update(exc.details)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error},
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request schema errors in the AppException envelope."""
    fields = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {
                "code": "VALIDATION_ERROR",
                "message": fields[0]["message"] if fields else "Invalid request",
                "fields": fields,
            },
        },
    )


async def token_quota_exceeded_handler(
    request: Request, exc: TokenQuotaExceededError
) -> JSONResponse:
    """429 body and headers for an exhausted token window."""
    reset_seconds = -(-exc.reset_time_ms // 1000)
    remaining = max(0, exc.limit - exc.used)
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "message": exc.message,
            "limit": exc.limit,
            "used": exc.used,
            "remaining": remaining,
            "resetTime": datetime.fromtimestamp(exc.reset_time_ms / 1000, UTC).isoformat(),
            "requiresVerification": exc.requires_verification,
        },
        headers={
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(reset_seconds),
            "reset-time": str(reset_seconds),
        },
    )
