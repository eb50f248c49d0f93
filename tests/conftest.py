"""Pytest configuration and fixtures."""

import json
import os

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-pytest-only-0123456789")
os.environ.setdefault("ENCRYPTION_SECRET", "test-encryption-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_PBKDF2_ITERATIONS", "1000")
os.environ.setdefault("API_KEY", "test-upstream-key")

from collections.abc import AsyncGenerator, Callable  # noqa: E402
from typing import Any  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import fakeredis.aioredis  # noqa: E402
import httpx  # noqa: E402
import openai  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from langchain_core.language_models import BaseChatModel  # noqa: E402
from langchain_core.messages import AIMessage  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.database import Base  # noqa: E402
from app.core.kv_store import (  # noqa: E402
    MemoryKeyValueStore,
    RedisKeyValueStore,
    SnapshotCache,
)
from app.models.chat_message import ChatMessage  # noqa: E402, F401
from app.models.chat_session import ChatSession  # noqa: E402, F401
from app.models.folder import Folder  # noqa: E402, F401
from app.models.llm_model import LLMModel  # noqa: E402
from app.models.user import User, UserTier  # noqa: E402
from app.models.user_preferences import SavedPrompt, UserPreferences  # noqa: E402, F401
from app.schemas.response_schema import success_response  # noqa: E402
from app.services.encryption_service import EncryptionService  # noqa: E402
from app.services.token_service import TokenService  # noqa: E402
from app.sync.api_client import ApiClient  # noqa: E402

# --- Test DB (SQLite in-memory) ---

test_engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
test_session_factory = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


@pytest.fixture(autouse=True)
async def setup_db() -> AsyncGenerator[None, None]:
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def override_get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a test database session."""
    async with test_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture(autouse=True)
def patch_session_factory(monkeypatch: pytest.MonkeyPatch) -> None:
    """Background usage recording opens its own session."""
    monkeypatch.setattr(
        "app.services.completion_service.async_session_factory", test_session_factory
    )


# --- Test Redis (fakeredis) ---


@pytest.fixture
def fake_redis() -> fakeredis.aioredis.FakeRedis:
    """Create a fresh fake Redis client."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest.fixture(autouse=True)
def patch_redis(
    fake_redis: fakeredis.aioredis.FakeRedis, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Patch the global redis_client read by the middleware and get_redis()."""
    monkeypatch.setattr("app.core.redis.redis_client", fake_redis)


@pytest.fixture
def kv_store(fake_redis: fakeredis.aioredis.FakeRedis) -> RedisKeyValueStore:
    return RedisKeyValueStore(fake_redis)


@pytest.fixture
def memory_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture(autouse=True)
def fresh_snapshot_cache(monkeypatch: pytest.MonkeyPatch) -> SnapshotCache:
    """Isolate the process-wide user snapshot cache per test."""
    cache = SnapshotCache(MemoryKeyValueStore(), ttl=300, sweep_interval=600)
    monkeypatch.setattr("app.dependencies.snapshot_cache", cache)
    monkeypatch.setattr("app.services.user_data_service.snapshot_cache", cache)
    return cache


# --- Tokenizer ---


class WhitespaceEncoding:
    """One token per whitespace-separated word."""

    def encode(self, text: str, disallowed_special: object = ()) -> list[str]:
        return text.split()


@pytest.fixture(autouse=True)
def word_tokenizer(monkeypatch: pytest.MonkeyPatch) -> None:
    """Count words instead of loading a tiktoken encoding over the network."""
    monkeypatch.setattr(
        "app.services.token_budget_service.get_encoding",
        lambda name: WhitespaceEncoding(),
    )


# --- Token helpers ---


@pytest.fixture
def token_service(kv_store: RedisKeyValueStore) -> TokenService:
    """Create a TokenService backed by fake Redis."""
    return TokenService(kv_store)


def make_auth_headers(
    fake_redis: fakeredis.aioredis.FakeRedis,
    user_id: int = 1,
    email: str = "test@test.com",
    role: str = "user",
) -> dict[str, str]:
    """Generate Authorization headers with a valid access token."""
    ts = TokenService(RedisKeyValueStore(fake_redis))
    token = ts.create_access_token(user_id=user_id, email=email, role=role)
    return {"Authorization": f"Bearer {token}"}


# --- App override & client fixtures ---


def _get_app():  # type: ignore[no-untyped-def]
    """Import app lazily and apply overrides."""
    from app.core.database import get_async_session as original_dep
    from app.main import app

    app.dependency_overrides[original_dep] = override_get_async_session
    return app


@pytest.fixture
async def async_client(
    fake_redis: fakeredis.aioredis.FakeRedis,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client for async tests."""
    application = _get_app()
    transport = ASGITransport(app=application)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def authed_client(
    fake_redis: fakeredis.aioredis.FakeRedis,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with auth headers."""
    application = _get_app()
    headers = make_auth_headers(fake_redis)
    transport = ASGITransport(app=application)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers=headers
    ) as ac:
        yield ac


@pytest.fixture
async def admin_client(
    fake_redis: fakeredis.aioredis.FakeRedis,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with admin auth headers."""
    application = _get_app()
    headers = make_auth_headers(fake_redis, role="admin")
    transport = ASGITransport(app=application)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers=headers
    ) as ac:
        yield ac


# --- DB session for tests ---


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a raw async session for repository tests."""
    async with test_session_factory() as session:
        yield session


async def seed_catalog(session: AsyncSession) -> dict[str, UserTier]:
    """Three tiers and one model per tier, plus the image model."""
    tiers = {
        "permissionless": UserTier(name="permissionless", display_name="Free"),
        "extended": UserTier(
            name="extended", display_name="Extended", token_limit=200000
        ),
        "pro": UserTier(
            name="pro",
            display_name="Pro",
            token_limit=1000000,
            rate_limit_window_ms=24 * 60 * 60 * 1000,
        ),
    }
    session.add_all(tiers.values())
    session.add_all(
        [
            LLMModel(
                model_id="free-model",
                api_id="provider/free-model",
                name="Free Model",
                tier_requirement="permissionless",
                token_limit=8000,
                display_order=1,
            ),
            LLMModel(
                model_id="extended-model",
                name="Extended Model",
                tier_requirement="extended",
                token_multiplier=2.0,
                display_order=2,
            ),
            LLMModel(
                model_id="pro-model",
                name="Pro Model",
                tier_requirement="pro",
                token_multiplier=4.0,
                display_order=3,
            ),
            LLMModel(
                model_id="offline-model",
                name="Offline Model",
                tier_requirement="permissionless",
                available=False,
                display_order=4,
            ),
            LLMModel(
                model_id="AkashGen",
                name="AkashGen",
                tier_requirement="permissionless",
                display_order=5,
            ),
        ]
    )
    await session.flush()
    return tiers


async def seed_user(
    session: AsyncSession,
    email: str = "test@test.com",
    tier: UserTier | None = None,
) -> User:
    user = User(
        email=email,
        hashed_password="not-a-real-hash",
        username=email.split("@")[0],
        role="user",
        tier_id=tier.id if tier else None,
    )
    session.add(user)
    await session.flush()
    return user


@pytest.fixture
async def catalog_db() -> AsyncGenerator[dict[str, UserTier], None]:
    """Committed catalog rows plus user 1 on the extended tier."""
    async with test_session_factory() as session:
        tiers = await seed_catalog(session)
        await seed_user(session, tier=tiers["extended"])
        await session.commit()
        yield tiers


@pytest.fixture
def encryption() -> EncryptionService:
    return EncryptionService("1")


# --- Mock LLM ---


@pytest.fixture
def mock_llm() -> MagicMock:
    """Create a mock LLM for testing."""
    mock = MagicMock(spec=BaseChatModel)
    mock.ainvoke = AsyncMock(return_value=AIMessage(content="NO"))
    mock.bind_tools = MagicMock(return_value=mock)
    return mock


# --- Fake gateway for the sync client ---

Handler = Callable[[httpx.Request], Any]


class FakeGateway:
    """Routes ``(method, path)`` to handlers and records every request.

    A handler returns either an ``httpx.Response`` or the ``data`` payload
    to wrap in a success envelope.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Handler] = {}
        self.requests: list[httpx.Request] = []

    def route(self, method: str, path: str, handler: Handler | Any) -> None:
        self.routes[(method, path)] = handler if callable(handler) else (lambda _: handler)

    def fail(self, method: str, path: str, status: int = 500, code: str = "DATABASE_ERROR") -> None:
        body = {"success": False, "error": {"code": code, "message": "boom"}}
        self.route(method, path, lambda _: httpx.Response(status, json=body))

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(
                404, json={"success": False, "error": {"code": "NOT_FOUND", "message": "no route"}}
            )
        result = handler(request)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=success_response(result))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def api(gateway: FakeGateway) -> AsyncGenerator[ApiClient, None]:
    client = ApiClient(
        "http://gateway.test", access_token="token", transport=httpx.MockTransport(gateway.handle)
    )
    yield client
    await client.aclose()


# --- Upstream inference stub ---


def chunk(**delta: Any) -> str:
    return "data: " + json.dumps({"choices": [{"index": 0, "delta": delta}]})


def upstream(
    lines: list[str] | None = None,
    status_code: int = 200,
    body: dict[str, Any] | None = None,
    seen: list[dict[str, Any]] | None = None,
) -> openai.AsyncOpenAI:
    """OpenAI client whose HTTP layer replays a canned SSE body."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(json.loads(request.content))
        if status_code != 200:
            return httpx.Response(status_code, json=body or {})
        payload = "\n\n".join(lines or []) + "\n\n"
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=payload.encode()
        )

    return openai.AsyncOpenAI(
        api_key="test",
        base_url="http://upstream.test/v1",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
