"""Account and token schemas for the /api/auth routes."""

import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

DEFAULT_TIER = "permissionless"

_PASSWORD_RULES = (
    (r"[A-Z]", "Password must contain at least one uppercase letter"),
    (r"[a-z]", "Password must contain at least one lowercase letter"),
    (r"\d", "Password must contain at least one digit"),
    (r"[!@#$%^&*(),.?\":{}|<>]", "Password must contain at least one special character"),
)


def _normalize_email(value: str) -> str:
    return value.lower().strip()


class RegisterRequest(BaseModel):
    """New account; it starts on the permissionless tier."""

    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    username: str = Field(min_length=2, max_length=100)

    normalize_email = field_validator("email")(_normalize_email)

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Username must be at least 2 characters")
        return v

    @field_validator("password")
    @classmethod
    def check_complexity(cls, v: str) -> str:
        for pattern, message in _PASSWORD_RULES:
            if not re.search(pattern, v):
                raise ValueError(message)
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str

    normalize_email = field_validator("email")(_normalize_email)


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    """Logout; the refresh token is revoked too when supplied."""

    refresh_token: str | None = None


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token TTL in seconds")


class UserResponse(BaseModel):
    """Public account view including the resolved access tier."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    email: str
    username: str
    role: str
    is_active: bool
    created_at: datetime
    tier: str = DEFAULT_TIER


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    tokens: TokenResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class TokenPayload(BaseModel):
    """Decoded JWT claims."""

    model_config = ConfigDict(frozen=True)

    sub: str
    email: str
    role: str
    type: str
    jti: str
    exp: int

    @property
    def user_id(self) -> int:
        """Numeric account id; ``str(user_id)`` keys encryption and quotas."""
        return int(self.sub)
