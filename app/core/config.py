"""Application configuration using Pydantic Settings V2."""

from functools import cached_property
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.core.settings import (
    AppConfig,
    AuthConfig,
    BudgetConfig,
    CacheConfig,
    DatabaseConfig,
    EncryptionConfig,
    LLMConfig,
    RateLimitSettings,
    RedisConfig,
    ServerConfig,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Flat fields are loaded directly from environment variables.
    Domain properties provide grouped access (e.g. settings.rate_limit.bypass).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = Field(
        default="llm-chat-gateway",
        description="Application name",
    )
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    debug: bool = Field(
        default=True,
        description="Debug mode",
    )
    cors_origins: str = Field(
        default="",
        description="Comma-separated CORS origins (development allows all)",
    )

    # Server
    host: str = Field(
        default="0.0.0.0",
        description="Server host",
    )
    port: int = Field(
        default=8004,
        ge=1,
        le=65535,
        description="Server port",
    )

    # Inference API (OpenAI-compatible)
    api_endpoint: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of the OpenAI-compatible inference API",
    )
    api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Inference API key",
    )
    img_gen_fn_model: str = Field(
        default="Meta-Llama-3-3-70B-Instruct",
        description="Small model used to classify image-generation intent",
    )
    img_gen_fallback_model: str = Field(
        default="Meta-Llama-3-3-70B-Instruct",
        description="Model used when the auto-detect model finds no image intent",
    )
    default_system_prompt: str = Field(
        default="You are a helpful assistant.",
        description="System prompt used when the request carries none",
    )
    upstream_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Inference request timeout",
    )

    # JWT Auth
    jwt_secret_key: SecretStr = Field(
        description="JWT secret key for token signing",
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm",
    )
    jwt_access_token_expire_minutes: int = Field(
        default=30,
        ge=1,
        le=1440,
        description="Access token expiration in minutes",
    )
    jwt_refresh_token_expire_days: int = Field(
        default=7,
        ge=1,
        le=90,
        description="Refresh token expiration in days",
    )
    login_rate_limit: str = Field(
        default="5/minute",
        description="Login endpoint rate limit",
    )
    register_rate_limit: str = Field(
        default="3/minute",
        description="Register endpoint rate limit",
    )
    dev_bypass_auth: bool = Field(
        default=False,
        description="Inject a fixed identity in development when no token is sent",
    )
    dev_user_id: int = Field(
        default=1,
        description="User id injected by the development auth bypass",
    )

    # Token rate limiting
    rate_limit_anonymous_tokens: int = Field(
        default=25000,
        ge=0,
        description="Token quota per window for anonymous callers (by IP)",
    )
    rate_limit_authenticated_tokens: int = Field(
        default=100000,
        ge=0,
        description="Token quota per window for authenticated users",
    )
    rate_limit_window_ms: int = Field(
        default=4 * 60 * 60 * 1000,
        ge=1000,
        description="Rate-limit window length in milliseconds",
    )
    access_token: SecretStr = Field(
        default=SecretStr(""),
        description="Static deployment access token; disables token rate limiting",
    )
    rate_limit_admission: Literal["optimistic", "reserve"] = Field(
        default="optimistic",
        description="Check with the estimate and debit afterwards, or debit up front",
    )
    conversation_warning_percent: int = Field(
        default=30,
        ge=0,
        le=100,
        description="Conversation share of remaining budget that triggers a warning",
    )

    # Encryption
    encryption_secret: SecretStr = Field(
        description="Server secret used to derive per-user encryption keys",
    )
    encryption_pbkdf2_iterations: int = Field(
        default=100000,
        ge=1,
        description="PBKDF2 iterations for per-user key derivation",
    )

    # Token budget
    budget_reserve_tokens: int = Field(
        default=1000,
        ge=0,
        description="Headroom reserved for the model's response",
    )
    budget_chars_per_token: float = Field(
        default=3.5,
        gt=0,
        description="Approximate characters per token used for truncation",
    )
    default_model_token_limit: int = Field(
        default=128000,
        ge=1,
        description="Context window used when a model declares none",
    )
    tokenizer_encoding: str = Field(
        default="cl100k_base",
        description="tiktoken encoding used for token counts",
    )

    # Caches
    user_data_cache_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="TTL of cached user-data snapshots",
    )
    user_data_cache_sweep_seconds: int = Field(
        default=600,
        ge=1,
        description="Interval between expired snapshot sweeps",
    )
    model_cache_ttl_seconds: int = Field(
        default=600,
        ge=1,
        description="TTL of cached tier model lists",
    )

    # Database
    database_url: SecretStr = Field(
        description="Async database URL (mysql+aiomysql://...)",
    )

    # Redis
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )

    # --- Domain properties ---

    @cached_property
    def app(self) -> AppConfig:
        """Application environment configuration."""
        origins = tuple(o.strip() for o in self.cors_origins.split(",") if o.strip())
        return AppConfig(
            name=self.app_name,
            env=self.app_env,
            debug=self.debug,
            cors_origins=origins,
        )

    @cached_property
    def server(self) -> ServerConfig:
        """Server configuration."""
        return ServerConfig(
            host=self.host,
            port=self.port,
        )

    @cached_property
    def llm(self) -> LLMConfig:
        """Inference provider configuration."""
        return LLMConfig(
            base_url=self.api_endpoint,
            api_key=self.api_key,
            image_intent_model=self.img_gen_fn_model,
            image_fallback_model=self.img_gen_fallback_model,
            default_system_prompt=self.default_system_prompt,
            request_timeout_seconds=self.upstream_timeout_seconds,
        )

    @cached_property
    def auth(self) -> AuthConfig:
        """JWT authentication configuration."""
        return AuthConfig(
            secret_key=self.jwt_secret_key,
            algorithm=self.jwt_algorithm,
            access_token_expire_minutes=self.jwt_access_token_expire_minutes,
            refresh_token_expire_days=self.jwt_refresh_token_expire_days,
            login_rate_limit=self.login_rate_limit,
            register_rate_limit=self.register_rate_limit,
            dev_bypass=self.dev_bypass_auth and self.app_env == "development",
            dev_user_id=self.dev_user_id,
        )

    @cached_property
    def rate_limit(self) -> RateLimitSettings:
        """Token rate-limit configuration."""
        return RateLimitSettings(
            anonymous_tokens=self.rate_limit_anonymous_tokens,
            authenticated_tokens=self.rate_limit_authenticated_tokens,
            window_ms=self.rate_limit_window_ms,
            access_token=self.access_token,
            admission=self.rate_limit_admission,
            conversation_warning_percent=self.conversation_warning_percent,
        )

    @cached_property
    def encryption(self) -> EncryptionConfig:
        """At-rest encryption configuration."""
        return EncryptionConfig(
            secret=self.encryption_secret,
            pbkdf2_iterations=self.encryption_pbkdf2_iterations,
        )

    @cached_property
    def budget(self) -> BudgetConfig:
        """Context budget configuration."""
        return BudgetConfig(
            reserve_tokens=self.budget_reserve_tokens,
            chars_per_token=self.budget_chars_per_token,
            default_token_limit=self.default_model_token_limit,
            encoding_name=self.tokenizer_encoding,
        )

    @cached_property
    def cache(self) -> CacheConfig:
        """Cache lifetime configuration."""
        return CacheConfig(
            snapshot_ttl_seconds=self.user_data_cache_ttl_seconds,
            snapshot_sweep_seconds=self.user_data_cache_sweep_seconds,
            model_ttl_seconds=self.model_cache_ttl_seconds,
        )

    @cached_property
    def database(self) -> DatabaseConfig:
        """Database connection configuration."""
        return DatabaseConfig(url=self.database_url)

    @cached_property
    def redis(self) -> RedisConfig:
        """Redis connection configuration."""
        return RedisConfig(url=self.redis_url)

    # --- Convenience properties ---

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app.is_development


# Global settings instance
settings = Settings()
