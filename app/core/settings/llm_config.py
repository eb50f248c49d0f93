"""Inference provider configuration."""

from pydantic import BaseModel, SecretStr


class LLMConfig(BaseModel, frozen=True):
    """OpenAI-compatible inference settings."""

    base_url: str
    api_key: SecretStr
    image_intent_model: str
    image_fallback_model: str
    default_system_prompt: str
    request_timeout_seconds: float
