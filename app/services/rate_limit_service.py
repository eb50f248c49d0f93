"""Token-based rate limiting over a rolling window.

Each identifier (user id when authenticated, client IP otherwise) owns a
counter key and a window-start key that expire together. Counters are only
ever changed with atomic INCRBY, so concurrent debits never lose updates.

Admission is optimistic by default: a request is checked against the tokens
already debited and the real cost is recorded after the response. A burst of
concurrent requests can therefore all pass before their debits land; the
``reserve`` policy debits the caller's estimate at check time instead.
"""

import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

import structlog
from starlette.requests import Request

from app.core.config import settings
from app.core.kv_store import KeyValueStore
from app.models.user import UserTier

logger = structlog.get_logger()

ANONYMOUS_PREFIX = "token_limit:anonymous:"
USER_PREFIX = "token_limit:user:"
CONVERSATION_PREFIX = "conversation_tokens:"
START_SUFFIX = ":start"

FALLBACK_IP = "127.0.0.1"
IP_HEADERS = ("x-original-chat-forwarded-for", "x-forwarded-for", "x-real-ip")

MultiplierLookup = Callable[[str], Awaitable[float | None]]


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota applied to one identifier."""

    limit: int
    window_ms: int
    key_prefix: str
    authenticated: bool

    @property
    def ttl_seconds(self) -> int:
        return max(1, math.ceil(self.window_ms / 1000))


@dataclass(frozen=True)
class RateLimitStatus:
    """Snapshot of an identifier's window."""

    blocked: bool
    used: int
    limit: int
    reset_time_ms: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def reset_time(self) -> datetime:
        return datetime.fromtimestamp(self.reset_time_ms / 1000, UTC)


def get_client_ip(request: Request) -> str:
    """Resolve the caller IP from proxy headers, then the socket peer."""
    for header in IP_HEADERS:
        value = request.headers.get(header)
        if value:
            candidate = _strip_port(value.split(",")[0].strip())
            if candidate:
                return candidate
    if request.client and request.client.host:
        return request.client.host
    return FALLBACK_IP


def _strip_port(address: str) -> str:
    if address.startswith("["):
        return address[1:].split("]")[0]
    if address.count(":") == 1:
        return address.split(":")[0]
    return address


def format_time_until_reset(reset_time_ms: int, now_ms: int | None = None) -> str:
    """Human countdown such as ``1h 5m``, ``12m`` or ``now``."""
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    diff = reset_time_ms - now_ms
    if diff <= 0:
        return "now"
    hours, rem = divmod(diff, 3_600_000)
    minutes = rem // 60_000
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m"
    return "now"


class RateLimitService:
    """Checks and debits token usage per identifier."""

    def __init__(
        self,
        store: KeyValueStore,
        multiplier_lookup: MultiplierLookup | None = None,
        clock: Callable[[], float] = time.time,
        bypass: bool | None = None,
        admission: Literal["optimistic", "reserve"] | None = None,
    ) -> None:
        self._store = store
        self._multiplier_lookup = multiplier_lookup
        self._clock = clock
        self.bypass = settings.rate_limit.bypass if bypass is None else bypass
        self.admission = admission or settings.rate_limit.admission

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def config_for(authenticated: bool, tier: UserTier | None = None) -> RateLimitConfig:
        """Quota for a caller; a user's tier overrides limit and window."""
        window_ms = settings.rate_limit.window_ms
        if not authenticated:
            return RateLimitConfig(
                limit=settings.rate_limit.anonymous_tokens,
                window_ms=window_ms,
                key_prefix=ANONYMOUS_PREFIX,
                authenticated=False,
            )
        limit = settings.rate_limit.authenticated_tokens
        if tier is not None:
            limit = tier.token_limit if tier.token_limit is not None else limit
            window_ms = tier.rate_limit_window_ms or window_ms
        return RateLimitConfig(
            limit=limit,
            window_ms=window_ms,
            key_prefix=USER_PREFIX,
            authenticated=True,
        )

    async def get_status(self, identifier: str, config: RateLimitConfig) -> RateLimitStatus:
        """Read the window without changing it."""
        key = f"{config.key_prefix}{identifier}"
        used_raw = await self._store.get(key)
        start_raw = await self._store.get(f"{key}{START_SUFFIX}")
        used = int(used_raw) if used_raw else 0
        if start_raw:
            reset_ms = int(start_raw) + config.window_ms
        else:
            reset_ms = self._now_ms() + config.window_ms
        return RateLimitStatus(
            blocked=used >= config.limit,
            used=used,
            limit=config.limit,
            reset_time_ms=reset_ms,
        )

    async def check_and_consume(
        self, identifier: str, config: RateLimitConfig, estimated_tokens: int = 0
    ) -> RateLimitStatus:
        """Decide admission before dispatch; fails open on store errors."""
        if self.bypass:
            return RateLimitStatus(
                blocked=False,
                used=0,
                limit=config.limit,
                reset_time_ms=self._now_ms() + config.window_ms,
            )
        try:
            status = await self.get_status(identifier, config)
            if status.blocked or self.admission != "reserve" or estimated_tokens <= 0:
                return status
            used = await self._debit(identifier, estimated_tokens, config)
            return RateLimitStatus(
                blocked=False,
                used=used,
                limit=config.limit,
                reset_time_ms=status.reset_time_ms,
            )
        except Exception:
            logger.exception("Rate limit check failed, allowing request", identifier=identifier)
            return RateLimitStatus(
                blocked=False,
                used=0,
                limit=config.limit,
                reset_time_ms=self._now_ms() + config.window_ms,
            )

    async def record_usage(
        self,
        identifier: str,
        tokens: int,
        model_id: str | None,
        config: RateLimitConfig,
        reserved: int = 0,
    ) -> int:
        """Debit the actual cost scaled by the model's token multiplier.

        Returns the scaled cost. ``reserved`` is what check_and_consume
        already charged under ``reserve`` admission; only the difference
        is debited here.
        """
        if self.bypass:
            return 0
        if tokens <= 0:
            await self.release(identifier, reserved, config)
            return 0
        multiplier = 1.0
        if model_id and self._multiplier_lookup is not None:
            try:
                found = await self._multiplier_lookup(model_id)
                multiplier = found if found is not None else 1.0
            except Exception:
                logger.warning("Multiplier lookup failed, charging raw tokens", model_id=model_id)
        cost = math.ceil(tokens * multiplier)
        if cost != reserved:
            await self._debit(identifier, cost - reserved, config)
        logger.info(
            "Recorded token usage",
            identifier=identifier,
            tokens=tokens,
            multiplier=multiplier,
            cost=cost,
        )
        return cost

    async def _debit(self, identifier: str, tokens: int, config: RateLimitConfig) -> int:
        key = f"{config.key_prefix}{identifier}"
        ttl = config.ttl_seconds
        used = await self._store.incrby(key, tokens)
        started = await self._store.set(
            f"{key}{START_SUFFIX}", str(self._now_ms()), ttl=ttl, nx=True
        )
        if started or used == tokens:
            await self._store.expire(key, ttl)
        return used

    async def release(self, identifier: str, tokens: int, config: RateLimitConfig) -> None:
        """Give back a reservation for a request that never ran; never below zero."""
        if self.bypass or tokens <= 0:
            return
        key = f"{config.key_prefix}{identifier}"
        used = await self._store.incrby(key, -tokens)
        if used < 0:
            await self._store.set(key, "0", ttl=config.ttl_seconds)
        logger.info("Released reserved tokens", identifier=identifier, tokens=tokens)

    async def reset(self, identifier: str, config: RateLimitConfig) -> None:
        key = f"{config.key_prefix}{identifier}"
        await self._store.delete(key, f"{key}{START_SUFFIX}")

    # --- Conversation size (UI warning only) ---

    async def store_conversation_tokens(
        self, identifier: str, tokens: int, config: RateLimitConfig
    ) -> None:
        """Remember the size of the current conversation, not a running total."""
        await self._store.set(
            f"{CONVERSATION_PREFIX}{identifier}", str(max(0, tokens)), ttl=config.ttl_seconds
        )

    async def get_conversation_tokens(self, identifier: str) -> int:
        raw = await self._store.get(f"{CONVERSATION_PREFIX}{identifier}")
        return int(raw) if raw else 0

    async def usage_summary(
        self, identifier: str, config: RateLimitConfig
    ) -> dict[str, object]:
        """Percentages shown by the client's usage meter."""
        if self.bypass:
            return self.fallback_summary(config.authenticated)
        try:
            status = await self.get_status(identifier, config)
            conversation = await self.get_conversation_tokens(identifier)
        except Exception:
            logger.exception("Failed to read rate limit status", identifier=identifier)
            return self.fallback_summary(config.authenticated)

        usage = round(status.used / config.limit * 100) if config.limit > 0 else 100
        remaining = status.remaining
        conversation_pct = 0
        if conversation > 0:
            conversation_pct = round(conversation / remaining * 100) if remaining > 0 else 100
        return {
            "usagePercentage": usage,
            "remainingPercentage": max(0, 100 - usage),
            "resetTime": status.reset_time.isoformat(),
            "blocked": status.blocked,
            "authenticated": config.authenticated,
            "conversationTokenPercentage": conversation_pct,
            "showConversationWarning": (
                conversation_pct >= settings.rate_limit.conversation_warning_percent
            ),
        }

    def fallback_summary(self, authenticated: bool) -> dict[str, object]:
        reset = datetime.fromtimestamp(self._clock(), UTC) + timedelta(hours=24)
        return {
            "usagePercentage": 0,
            "remainingPercentage": 100,
            "resetTime": reset.isoformat(),
            "blocked": False,
            "authenticated": authenticated,
            "conversationTokenPercentage": 0,
            "showConversationWarning": False,
        }


def blocked_message(status: RateLimitStatus, authenticated: bool) -> str:
    """User-facing text for an exhausted window."""
    countdown = format_time_until_reset(status.reset_time_ms)
    if authenticated:
        return (
            f"You've used your {status.limit} token allowance. "
            f"It resets in {countdown}."
        )
    return (
        f"You've used the {status.limit} token allowance for guests. "
        f"It resets in {countdown}, or sign in for extended access."
    )
