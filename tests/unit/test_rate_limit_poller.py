"""Tests for the shared rate-limit status poller."""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from app.sync.api_client import ApiClient
from app.sync.rate_limit_poller import RateLimitPoller, RateLimitState
from tests.conftest import FakeGateway

STATUS_PATH = "/api/rate-limit/status"


class FakeClock:
    def __init__(self) -> None:
        self.now = 50.0

    def __call__(self) -> float:
        return self.now


def status_body(usage: int = 40, blocked: bool = False) -> dict[str, object]:
    return {
        "usagePercentage": usage,
        "remainingPercentage": 100 - usage,
        "resetTime": "2025-01-01T12:00:00+00:00",
        "blocked": blocked,
        "authenticated": True,
        "conversationTokenPercentage": 85,
        "showConversationWarning": True,
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def poller(api: ApiClient, clock: FakeClock, gateway: FakeGateway) -> RateLimitPoller:
    gateway.route("GET", STATUS_PATH, lambda _: httpx.Response(200, json=status_body()))
    return RateLimitPoller(api, clock=clock)


class TestFetch:
    async def test_initial_state_is_loading(self, poller: RateLimitPoller) -> None:
        assert poller.state.is_loading is True

    async def test_publishes_to_subscribers(self, poller: RateLimitPoller) -> None:
        first: list[RateLimitState] = []
        second: list[RateLimitState] = []
        poller.subscribe(first.append)
        poller.subscribe(second.append)

        state = await poller.fetch()
        assert state.usage_percentage == 40
        assert state.remaining_percentage == 60
        assert state.reset_time == datetime(2025, 1, 1, 12, tzinfo=UTC)
        assert state.show_conversation_warning is True
        assert state.is_loading is False
        assert first == second == [state]

    async def test_min_interval(
        self, poller: RateLimitPoller, gateway: FakeGateway, clock: FakeClock
    ) -> None:
        await poller.fetch()
        clock.now += 0.5
        await poller.fetch()
        assert len(gateway.calls("GET", STATUS_PATH)) == 1
        clock.now += 1
        await poller.fetch()
        assert len(gateway.calls("GET", STATUS_PATH)) == 2

    async def test_force_refresh(self, poller: RateLimitPoller, gateway: FakeGateway) -> None:
        await poller.fetch()
        await poller.force_refresh()
        assert len(gateway.calls("GET", STATUS_PATH)) == 2

    async def test_concurrent_fetches_share_request(
        self, poller: RateLimitPoller, gateway: FakeGateway
    ) -> None:
        states = await asyncio.gather(*(poller.fetch() for _ in range(5)))
        assert len(gateway.calls("GET", STATUS_PATH)) == 1
        assert len({s.usage_percentage for s in states}) == 1

    async def test_error_falls_back(self, poller: RateLimitPoller, gateway: FakeGateway) -> None:
        gateway.fail("GET", STATUS_PATH)
        state = await poller.fetch()
        assert state.error == "boom"
        assert state.blocked is False
        assert state.reset_time is not None
        assert state.reset_time - datetime.now(UTC) > timedelta(hours=23)

    async def test_unsubscribe(self, poller: RateLimitPoller) -> None:
        seen: list[RateLimitState] = []
        unsubscribe = poller.subscribe(seen.append)
        assert poller.subscriber_count == 1
        unsubscribe()
        unsubscribe()
        assert poller.subscriber_count == 0
        await poller.fetch()
        assert seen == []

    async def test_failing_subscriber_does_not_block_others(self, poller: RateLimitPoller) -> None:
        seen: list[RateLimitState] = []

        def broken(state: RateLimitState) -> None:
            raise RuntimeError("render failed")

        poller.subscribe(broken)
        poller.subscribe(seen.append)
        await poller.fetch()
        assert len(seen) == 1


class TestBeforeSubmit:
    async def test_allowed(self, poller: RateLimitPoller) -> None:
        assert await poller.check_before_submit() is True

    async def test_blocked(self, api: ApiClient, gateway: FakeGateway) -> None:
        gateway.route(
            "GET", STATUS_PATH, lambda _: httpx.Response(200, json=status_body(100, blocked=True))
        )
        assert await RateLimitPoller(api).check_before_submit() is False
