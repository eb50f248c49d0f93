"""Domain-specific configuration models."""

from app.core.settings.app_config import AppConfig
from app.core.settings.auth_config import AuthConfig
from app.core.settings.budget_config import BudgetConfig
from app.core.settings.cache_config import CacheConfig
from app.core.settings.database_config import DatabaseConfig
from app.core.settings.encryption_config import EncryptionConfig
from app.core.settings.llm_config import LLMConfig
from app.core.settings.rate_limit_config import RateLimitSettings
from app.core.settings.redis_config import RedisConfig
from app.core.settings.server_config import ServerConfig

__all__ = [
    "AppConfig",
    "AuthConfig",
    "BudgetConfig",
    "CacheConfig",
    "DatabaseConfig",
    "EncryptionConfig",
    "LLMConfig",
    "RateLimitSettings",
    "RedisConfig",
    "ServerConfig",
]
