"""Redis connection configuration."""

from pydantic import BaseModel


class RedisConfig(BaseModel, frozen=True):
    """Redis connection settings for counters and shared caches."""

    url: str
    socket_timeout_seconds: float = 2.0
