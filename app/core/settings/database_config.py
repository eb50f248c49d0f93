"""Database connection configuration."""

from pydantic import BaseModel, SecretStr


class DatabaseConfig(BaseModel, frozen=True):
    """Database connection and pool settings."""

    url: SecretStr
    pool_size: int = 10
    max_overflow: int = 20

    @property
    def is_sqlite(self) -> bool:
        return self.url.get_secret_value().startswith("sqlite")

    @property
    def async_url(self) -> str:
        """DB URL with charset for MySQL."""
        base = self.url.get_secret_value()
        if self.is_sqlite or "?" in base:
            return base
        return f"{base}?charset=utf8mb4"

    @property
    def engine_options(self) -> dict[str, int | bool]:
        """Pool options accepted by the configured driver."""
        if self.is_sqlite:
            return {}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_recycle": 3600,
            "pool_pre_ping": True,
        }
