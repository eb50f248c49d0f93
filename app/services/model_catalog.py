"""Tier-filtered model catalog with a shared cache."""

import json
from typing import Any

import structlog

from app.core.config import settings
from app.core.exceptions import ModelAccessError
from app.core.kv_store import KeyValueStore
from app.models.llm_model import LLMModel
from app.models.user import UserTier
from app.repositories.model_repo import ModelRepository

logger = structlog.get_logger()

PERMISSIONLESS = "permissionless"
EXTENDED = "extended"
PRO = "pro"

TIER_COVERAGE: dict[str, list[str]] = {
    PRO: [PERMISSIONLESS, EXTENDED, PRO],
    EXTENDED: [PERMISSIONLESS, EXTENDED],
    PERMISSIONLESS: [PERMISSIONLESS],
}

ALWAYS_AVAILABLE_MODELS = ["AkashGen"]
IMAGE_MODEL_ID = "AkashGen"

TIER_CACHE_PREFIX = "cached_models:tier:"

# Serialized fields; token_multiplier is dropped from the public view.
_MODEL_FIELDS = (
    "model_id",
    "api_id",
    "name",
    "description",
    "tier_requirement",
    "available",
    "is_chat_available",
    "temperature",
    "top_p",
    "token_limit",
    "owned_by",
    "parameters",
    "architecture",
    "hf_repo",
    "display_order",
    "token_multiplier",
)


def covered_tiers(tier_name: str | None) -> list[str]:
    """Tier requirements a tier may use; unknown tiers are permissionless."""
    return TIER_COVERAGE.get(tier_name or PERMISSIONLESS, TIER_COVERAGE[PERMISSIONLESS])


def model_to_dict(model: LLMModel) -> dict[str, Any]:
    return {field: getattr(model, field) for field in _MODEL_FIELDS}


def public_model(model: dict[str, Any]) -> dict[str, Any]:
    """User-facing representation without internal pricing fields."""
    return {k: v for k, v in model.items() if k != "token_multiplier"}


class ModelCatalog:
    """Resolves which models a caller may use."""

    def __init__(self, repo: ModelRepository, cache: KeyValueStore | None = None) -> None:
        self._repo = repo
        self._cache = cache

    async def get_user_tier(self, user_id: int | None) -> UserTier | None:
        """Tier row for a user; None means permissionless."""
        if user_id is None:
            return None
        return await self._repo.find_user_tier(user_id)

    async def get_models_for_tier(self, tier_name: str | None) -> list[dict[str, Any]]:
        """Available models for a tier, using the shared cache when present."""
        name = tier_name or PERMISSIONLESS
        cache_key = f"{TIER_CACHE_PREFIX}{name}"
        if self._cache is not None:
            try:
                cached = await self._cache.get(cache_key)
                if cached is not None:
                    return json.loads(cached)
            except Exception:
                logger.warning("Model cache read failed", tier=name)

        models = [model_to_dict(m) for m in await self._repo.list_for_tiers(covered_tiers(name))]

        if self._cache is not None:
            try:
                await self._cache.set(
                    cache_key, json.dumps(models), ttl=settings.cache.model_ttl_seconds
                )
            except Exception:
                logger.warning("Model cache write failed", tier=name)
        return models

    async def get_models_for_user(self, user_id: int | None) -> list[dict[str, Any]]:
        tier = await self.get_user_tier(user_id)
        return await self.get_models_for_tier(tier.name if tier else None)

    async def resolve_model(self, user_id: int | None, model_id: str) -> dict[str, Any]:
        """Return the model if the caller may chat with it.

        Raises ModelAccessError listing the permitted alternatives otherwise.
        """
        models = await self.get_models_for_user(user_id)
        permitted = [m for m in models if m.get("is_chat_available") is not False]
        for model in permitted:
            if model["model_id"] == model_id:
                return model

        if model_id in ALWAYS_AVAILABLE_MODELS:
            found = await self._repo.find_by_model_id(model_id)
            if found is not None and found.is_chat_available is not False:
                return model_to_dict(found)
            return {
                "model_id": model_id,
                "api_id": None,
                "name": model_id,
                "token_limit": None,
                "temperature": 0.7,
                "top_p": 0.95,
                "token_multiplier": 1.0,
                "is_chat_available": True,
            }

        available = [m["model_id"] for m in permitted]
        for always in ALWAYS_AVAILABLE_MODELS:
            if always not in available:
                available.append(always)
        raise ModelAccessError(model_id, available)

    async def token_multiplier(self, model_id: str) -> float | None:
        model = await self._repo.find_by_model_id(model_id)
        return model.token_multiplier if model is not None else None

    async def invalidate(self, tier_name: str | None = None) -> None:
        if self._cache is None:
            return
        names = [tier_name] if tier_name else list(TIER_COVERAGE)
        await self._cache.delete(*(f"{TIER_CACHE_PREFIX}{n}" for n in names))
