"""JWT authentication and identity configuration."""

from pydantic import BaseModel, SecretStr


class AuthConfig(BaseModel, frozen=True):
    """JWT authentication settings."""

    secret_key: SecretStr
    algorithm: str
    access_token_expire_minutes: int
    refresh_token_expire_days: int
    login_rate_limit: str
    register_rate_limit: str
    dev_bypass: bool = False
    dev_user_id: int = 1
    dev_user_email: str = "dev@localhost"

    @property
    def is_configured(self) -> bool:
        """Whether real credential checks are possible."""
        return bool(self.secret_key.get_secret_value())
