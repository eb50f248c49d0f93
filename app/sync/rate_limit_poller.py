"""Shared rate-limit status fetcher with many subscribers."""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from app.sync.api_client import ApiClient, ApiError

logger = structlog.get_logger()

MIN_FETCH_INTERVAL_SECONDS = 1.0
FALLBACK_RESET = timedelta(hours=24)


@dataclass(frozen=True)
class RateLimitState:
    usage_percentage: int = 0
    remaining_percentage: int = 100
    reset_time: datetime | None = None
    blocked: bool = False
    authenticated: bool = False
    conversation_token_percentage: int = 0
    show_conversation_warning: bool = False
    is_loading: bool = False
    error: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "RateLimitState":
        reset = data.get("resetTime")
        return cls(
            usage_percentage=data.get("usagePercentage") or 0,
            remaining_percentage=data.get("remainingPercentage", 100),
            reset_time=datetime.fromisoformat(reset) if reset else None,
            blocked=bool(data.get("blocked")),
            authenticated=bool(data.get("authenticated")),
            conversation_token_percentage=data.get("conversationTokenPercentage") or 0,
            show_conversation_warning=bool(data.get("showConversationWarning")),
        )

    @classmethod
    def fallback(cls, error: str) -> "RateLimitState":
        return cls(reset_time=datetime.now(UTC) + FALLBACK_RESET, error=error)


Subscriber = Callable[[RateLimitState], None]


class RateLimitPoller:
    """One in-flight request at a time, published to every subscriber.

    Calls to ``fetch`` within the minimum interval are no-ops; calls made
    while a request is in flight wait for that request.
    """

    def __init__(
        self,
        api: ApiClient,
        clock: Callable[[], float] = time.monotonic,
        min_interval: float = MIN_FETCH_INTERVAL_SECONDS,
    ) -> None:
        self.api = api
        self._clock = clock
        self.min_interval = min_interval
        self.state: RateLimitState = RateLimitState(is_loading=True)
        self._subscribers: list[Subscriber] = []
        self._last_fetch: float | None = None
        self._inflight: asyncio.Task[None] | None = None

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns the matching unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _publish(self, state: RateLimitState) -> None:
        self.state = state
        for callback in list(self._subscribers):
            try:
                callback(state)
            except Exception:
                logger.exception("Rate limit subscriber failed")

    async def fetch(self) -> RateLimitState:
        if self._inflight is not None and not self._inflight.done():
            await asyncio.shield(self._inflight)
            return self.state
        now = self._clock()
        if self._last_fetch is not None and now - self._last_fetch < self.min_interval:
            return self.state
        self._last_fetch = now
        self._inflight = asyncio.create_task(self._fetch_once())
        await asyncio.shield(self._inflight)
        return self.state

    async def _fetch_once(self) -> None:
        try:
            data = await self.api.rate_limit_status()
            state = RateLimitState.from_response(data)
        except (ApiError, ValueError, TypeError) as e:
            logger.warning("Rate limit fetch failed", error=str(e))
            state = RateLimitState.fallback(str(e))
        self._publish(state)

    async def force_refresh(self) -> RateLimitState:
        self._last_fetch = None
        return await self.fetch()

    async def check_before_submit(self) -> bool:
        """Refresh, then report whether the caller may send another message."""
        state = await self.fetch()
        return not state.blocked
