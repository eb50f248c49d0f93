"""Token rate-limit configuration."""

from typing import Literal

from pydantic import BaseModel, SecretStr


class RateLimitSettings(BaseModel, frozen=True):
    """Token quota settings for anonymous and authenticated callers."""

    anonymous_tokens: int
    authenticated_tokens: int
    window_ms: int
    access_token: SecretStr
    admission: Literal["optimistic", "reserve"]
    conversation_warning_percent: int

    @property
    def bypass(self) -> bool:
        """A static access token disables token rate limiting entirely."""
        return bool(self.access_token.get_secret_value())
