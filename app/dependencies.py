"""Global dependencies for the application."""

from collections.abc import Callable
from functools import lru_cache

import openai
from fastapi import Depends, Request
from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_async_session
from app.core.exceptions import AuthenticationError, AuthorizationError
from app.core.kv_store import KeyValueStore, RedisKeyValueStore
from app.core.redis import get_redis
from app.repositories.model_repo import ModelRepository
from app.repositories.user_repo import UserRepository
from app.services.auth_service import AuthService
from app.services.completion_service import CompletionService
from app.services.encryption_service import EncryptionService
from app.services.model_catalog import ModelCatalog
from app.services.persistence_service import PersistenceService
from app.services.rate_limit_service import RateLimitService
from app.services.token_service import TokenService
from app.services.user_data_service import UserDataService, snapshot_cache

# --- Inference clients ---


@lru_cache
def get_openai_client() -> openai.AsyncOpenAI:
    """Shared client for the OpenAI-compatible inference API."""
    return openai.AsyncOpenAI(
        base_url=settings.llm.base_url,
        api_key=settings.llm.api_key.get_secret_value(),
        timeout=settings.llm.request_timeout_seconds,
    )


@lru_cache
def get_intent_llm() -> BaseChatModel:
    """Cheap model used to decide whether a turn asks for an image."""
    return ChatOpenAI(
        model=settings.llm.image_intent_model,
        base_url=settings.llm.base_url,
        api_key=settings.llm.api_key,
        temperature=0,
        timeout=settings.llm.request_timeout_seconds,
    )


# --- Auth dependencies ---


class CurrentUser(BaseModel):
    """Authenticated user extracted from request state."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str


def get_kv_store() -> KeyValueStore:
    """Shared counter/cache store backed by Redis."""
    return RedisKeyValueStore(get_redis())


def get_token_service(store: KeyValueStore = Depends(get_kv_store)) -> TokenService:
    """Get TokenService backed by the shared store."""
    return TokenService(store)


def get_user_repository(
    session: AsyncSession = Depends(get_async_session),
) -> UserRepository:
    """Get UserRepository bound to the current session."""
    return UserRepository(session)


def get_auth_service(
    user_repo: UserRepository = Depends(get_user_repository),
    token_service: TokenService = Depends(get_token_service),
    session: AsyncSession = Depends(get_async_session),
) -> AuthService:
    """Get AuthService with all dependencies."""
    return AuthService(
        user_repo=user_repo,
        token_service=token_service,
        session=session,
    )


def get_optional_user(request: Request) -> CurrentUser | None:
    """The signed-in user, or None for anonymous callers."""
    state = getattr(request, "state", None)
    user_id = getattr(state, "user_id", None) if state else None
    if user_id is None:
        return None
    return CurrentUser(
        id=state.user_id,
        email=state.email,
        role=state.role,
    )


def get_current_user(request: Request) -> CurrentUser:
    """Extract the authenticated user from middleware-populated state."""
    user = get_optional_user(request)
    if user is None:
        raise AuthenticationError(message="Not authenticated")
    return user


def require_role(*allowed_roles: str) -> Callable[..., CurrentUser]:
    """Dependency factory that enforces role-based access control."""

    def _check(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        if current_user.role not in allowed_roles:
            raise AuthorizationError(
                message=f"Role '{current_user.role}' is not permitted"
            )
        return current_user

    return _check


# --- Domain services ---


def get_model_catalog(
    session: AsyncSession = Depends(get_async_session),
    store: KeyValueStore = Depends(get_kv_store),
) -> ModelCatalog:
    return ModelCatalog(ModelRepository(session), cache=store)


def get_rate_limit_service(
    store: KeyValueStore = Depends(get_kv_store),
    catalog: ModelCatalog = Depends(get_model_catalog),
) -> RateLimitService:
    return RateLimitService(store, multiplier_lookup=catalog.token_multiplier)


def get_encryption_service(
    current_user: CurrentUser = Depends(get_current_user),
) -> EncryptionService:
    """Per-user field encryption keyed by the user id."""
    return EncryptionService(str(current_user.id))


def get_persistence_service(
    session: AsyncSession = Depends(get_async_session),
    current_user: CurrentUser = Depends(get_current_user),
    encryption: EncryptionService = Depends(get_encryption_service),
) -> PersistenceService:
    """Get the encrypted persistence gateway for the authenticated user."""
    return PersistenceService(session, current_user.id, encryption)


def get_user_data_service(
    persistence: PersistenceService = Depends(get_persistence_service),
) -> UserDataService:
    return UserDataService(persistence, snapshot_cache)


def get_completion_service(
    rate_limiter: RateLimitService = Depends(get_rate_limit_service),
    catalog: ModelCatalog = Depends(get_model_catalog),
) -> CompletionService:
    """Get the completion dispatcher with shared inference clients."""
    return CompletionService(
        rate_limiter=rate_limiter,
        catalog=catalog,
        client=get_openai_client(),
        intent_llm=get_intent_llm(),
    )
