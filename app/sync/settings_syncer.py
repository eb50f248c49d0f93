"""Debounced push of preference and saved-prompt edits."""

import asyncio
import time
from collections.abc import Callable
from typing import Any

import structlog

from app.sync.api_client import ApiClient, ApiError
from app.sync.engine import merge_prompts
from app.sync.entities import is_local
from app.sync.local_store import PREFERENCES_KEY, PROMPTS_KEY, LocalStore

logger = structlog.get_logger()

MIN_SYNC_INTERVAL_SECONDS = 10.0
SCHEDULE_DELAY_SECONDS = 15.0
SCHEDULE_THROTTLE_SECONDS = 5.0
PERIODIC_SYNC_SECONDS = 15 * 60.0


def _prompt_payload(prompt: dict[str, Any]) -> dict[str, Any]:
    return {"id": prompt.get("id"), "name": prompt["name"], "content": prompt.get("content", "")}


class SettingsSyncer:
    """Coalesces rapid edits into at most one outbound sync per interval.

    A ``sync`` call made while another is in flight waits for that one
    instead of issuing a second request.
    """

    def __init__(
        self,
        store: LocalStore,
        api: ApiClient,
        clock: Callable[[], float] = time.monotonic,
        min_interval: float = MIN_SYNC_INTERVAL_SECONDS,
        schedule_delay: float = SCHEDULE_DELAY_SECONDS,
        schedule_throttle: float = SCHEDULE_THROTTLE_SECONDS,
        periodic_interval: float = PERIODIC_SYNC_SECONDS,
    ) -> None:
        self.store = store
        self.api = api
        self._clock = clock
        self.min_interval = min_interval
        self.schedule_delay = schedule_delay
        self.schedule_throttle = schedule_throttle
        self.periodic_interval = periodic_interval

        self._pending_preferences: dict[str, Any] | None = None
        self._pending_prompts: list[dict[str, Any]] | None = None
        self._last_sync: float | None = None
        self._last_schedule: float | None = None
        self._inflight: asyncio.Task[bool] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._periodic: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def has_unsaved_changes(self) -> bool:
        return self._pending_preferences is not None or self._pending_prompts is not None

    # --- Local edits ---

    def update_preferences(self, **changes: Any) -> None:
        prefs = self.store.get(PREFERENCES_KEY) or {}
        prefs.update(changes)
        self.store.set(PREFERENCES_KEY, prefs)
        self._pending_preferences = {**(self._pending_preferences or {}), **changes}
        self.schedule()

    def update_prompts(self, prompts: list[dict[str, Any]]) -> None:
        self.store.set(PROMPTS_KEY, prompts)
        self._pending_prompts = prompts
        self.schedule()

    # --- Scheduling ---

    def schedule(self, delay: float | None = None) -> bool:
        """Arm the debounce timer; ignored if armed within the throttle window."""
        now = self._clock()
        if self._last_schedule is not None and now - self._last_schedule < self.schedule_throttle:
            return False
        if self._timer is not None and not self._timer.done():
            if self._timer is not asyncio.current_task():
                self._timer.cancel()
        self._last_schedule = now
        self._timer = asyncio.create_task(
            self._fire_after(self.schedule_delay if delay is None else delay)
        )
        return True

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.sync()

    def start_periodic(self) -> None:
        if self._periodic is None or self._periodic.done():
            self._periodic = asyncio.create_task(self._periodic_loop())

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.periodic_interval)
            if self.has_unsaved_changes:
                await self.sync()

    async def stop(self) -> None:
        for task in (self._timer, self._periodic):
            if task is not None and not task.done():
                task.cancel()
        self._timer = None
        self._periodic = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # --- Sync ---

    async def sync(self) -> bool:
        """Push pending edits; True only when this call (or the one joined) pushed."""
        if self._inflight is not None and not self._inflight.done():
            return await asyncio.shield(self._inflight)
        if not self.has_unsaved_changes:
            return False
        now = self._clock()
        if self._last_sync is not None and now - self._last_sync < self.min_interval:
            # Retry once the interval has passed so the edits are not stranded
            self.schedule(self.min_interval - (now - self._last_sync))
            return False
        self._last_sync = now
        self._inflight = asyncio.create_task(self._push())
        try:
            return await asyncio.shield(self._inflight)
        finally:
            if self._inflight is not None and self._inflight.done():
                self._inflight = None

    async def _push(self) -> bool:
        preferences = self._pending_preferences
        prompts = self._pending_prompts
        synced = False
        try:
            if preferences is not None:
                await self.api.settings_action("save_preferences", preferences=preferences)
                synced = True
            if prompts is not None:
                await self._push_prompts(prompts)
                synced = True
        except ApiError as e:
            logger.warning("Settings sync failed", code=e.code, message=e.message)
            return False

        # Edits made while the push was in flight stay pending
        if self._pending_preferences is preferences:
            self._pending_preferences = None
        if self._pending_prompts is prompts:
            self._pending_prompts = None
        await self._reload_prompts()
        logger.info("Settings synced", preferences=preferences is not None, prompts=prompts is not None)
        return synced

    async def _push_prompts(self, prompts: list[dict[str, Any]]) -> None:
        current = (await self.api.get_settings()).get("prompts", [])
        kept_ids = {p.get("id") for p in prompts if p.get("id")}
        for stale in current:
            if stale["id"] not in kept_ids:
                await self.api.settings_action("delete_prompt", prompt_id=stale["id"])
        changed = [_prompt_payload(p) for p in prompts if is_local(p) or not p.get("synced")]
        if changed:
            await self.api.settings_action("sync_to_database", prompts=changed)

    async def _reload_prompts(self) -> None:
        try:
            server = (await self.api.get_settings()).get("prompts", [])
        except ApiError as e:
            logger.warning("Settings reload failed", code=e.code)
            return
        local = [p for p in self.store.get_list(PROMPTS_KEY) if is_local(p)]
        self.store.set(PROMPTS_KEY, merge_prompts(local, server))

    def flush_on_unload(self) -> None:
        """Fire-and-forget final push of whatever is still pending."""
        if not self.has_unsaved_changes:
            return
        payload: dict[str, Any] = {
            "prompts": [
                _prompt_payload(p)
                for p in self._pending_prompts or []
                if is_local(p) or not p.get("synced")
            ],
        }
        if self._pending_preferences is not None:
            payload["preferences"] = self._pending_preferences
        task = asyncio.create_task(self._send_final(payload))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_final(self, payload: dict[str, Any]) -> None:
        try:
            await self.api.settings_action("sync_to_database", **payload)
        except ApiError as e:
            logger.warning("Final settings sync failed", code=e.code)
