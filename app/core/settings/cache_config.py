"""Cache lifetime configuration."""

from pydantic import BaseModel


class CacheConfig(BaseModel, frozen=True):
    """TTL settings for in-process and shared caches."""

    snapshot_ttl_seconds: int
    snapshot_sweep_seconds: int
    model_ttl_seconds: int
