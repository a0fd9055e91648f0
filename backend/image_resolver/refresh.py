"""
Refresh Scheduler

Periodically re-resolves the images currently shown by a view.

State machine:
    STOPPED --start--> RUNNING --stop--> STOPPED
    RUNNING --max_failures consecutive failed ticks--> CIRCUIT_OPEN
    CIRCUIT_OPEN --reset--> STOPPED

Only one scheduler runs per process; starting another stops the active one.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import ClassVar, List, Optional, Protocol

from .environment import Environment
from .url_resolver import add_cache_bust, is_data_url

logger = logging.getLogger(__name__)


class ImageSurface(Protocol):
    """
    What the scheduler needs from the hosting view.

    `image_sources` returns the references the view displays, not the data
    URLs it was last given, so every pass refreshes the same set.
    """

    def is_visible(self) -> bool: ...

    def image_sources(self) -> List[str]: ...

    def replace_source(self, old: str, new: str) -> None: ...


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    CIRCUIT_OPEN = "circuit_open"


class RefreshScheduler:

    _active: ClassVar[Optional["RefreshScheduler"]] = None

    def __init__(
        self,
        loader,
        surface: ImageSurface,
        environment: Environment,
        interval: Optional[float] = None,
        max_failures: Optional[int] = None,
    ):
        self.loader = loader
        self.surface = surface
        self.interval = interval if interval is not None else environment.refresh_interval
        self.max_failures = max_failures or environment.refresh_max_failures

        self.state = SchedulerState.STOPPED
        self.consecutive_failures = 0
        self.tick_count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    def start(self) -> bool:
        """
        Begin periodic refreshing.

        Returns False when the scheduler is already running or its circuit
        is open.
        """
        if self.state == SchedulerState.RUNNING:
            return False
        if self.state == SchedulerState.CIRCUIT_OPEN:
            logger.warning("[RefreshScheduler] Circuit open, call reset() before start()")
            return False

        active = RefreshScheduler._active
        if active is not None and active is not self:
            logger.info("[RefreshScheduler] Stopping previous session before starting a new one")
            active.stop()

        self.state = SchedulerState.RUNNING
        self.consecutive_failures = 0
        self._task = asyncio.get_running_loop().create_task(self._run())
        RefreshScheduler._active = self
        logger.info(f"[RefreshScheduler] Started (every {self.interval}s)")
        return True

    def stop(self) -> None:
        """Tear down the timer immediately."""
        self._cancel_timer()
        if self.state == SchedulerState.RUNNING:
            self.state = SchedulerState.STOPPED
            logger.info("[RefreshScheduler] Stopped")

    def reset(self) -> None:
        """Close the circuit so the scheduler can be started again."""
        if self.state == SchedulerState.CIRCUIT_OPEN:
            self.state = SchedulerState.STOPPED
            self.consecutive_failures = 0

    def _cancel_timer(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if RefreshScheduler._active is self:
            RefreshScheduler._active = None

    async def _run(self) -> None:
        while self.state == SchedulerState.RUNNING:
            await asyncio.sleep(self.interval)
            if self.state != SchedulerState.RUNNING:
                break
            await self.tick()

    async def tick(self) -> bool:
        """
        One scheduled refresh.

        Returns True on success or when skipped because the view is hidden,
        False on failure or when the scheduler is not running.
        """
        if self.state != SchedulerState.RUNNING:
            return False
        if not self.surface.is_visible():
            logger.debug("[RefreshScheduler] View hidden, skipping tick")
            return True

        self.tick_count += 1
        try:
            sources = self._fetchable_sources()
            refreshed = await self._refresh_pass(sources)
            failed = bool(sources) and refreshed == 0
        except Exception as e:
            logger.error(f"[RefreshScheduler] Refresh pass raised: {e}")
            failed = True

        if not failed:
            self.consecutive_failures = 0
            return True

        self.consecutive_failures += 1
        logger.warning(
            f"[RefreshScheduler] Tick failed ({self.consecutive_failures}/{self.max_failures})"
        )
        if self.consecutive_failures >= self.max_failures:
            self.state = SchedulerState.CIRCUIT_OPEN
            self._cancel_timer()
            logger.error("[RefreshScheduler] Too many failures, circuit opened")
        return False

    async def refresh_now(self) -> int:
        """Manual refresh pass; returns how many images were refreshed."""
        count = await self._refresh_pass(self._fetchable_sources())
        logger.info(f"[RefreshScheduler] {count} images refreshed")
        return count

    def _fetchable_sources(self) -> List[str]:
        return [src for src in self.surface.image_sources() if src and not is_data_url(src)]

    async def _refresh_pass(self, sources: List[str]) -> int:
        token = str(int(time.time() * 1000))
        refreshed = 0
        for src in sources:
            payload = await self.loader.load_or_none(
                add_cache_bust(src, "_refresh", token),
                bypass_cache=True,
                bust=token,
            )
            if payload is None:
                continue
            self.surface.replace_source(src, payload.to_data_url())
            refreshed += 1
        return refreshed


def watch_data_ready(ready: bool, scheduler: RefreshScheduler) -> None:
    """Start refreshing once the view has complete data, stop otherwise."""
    if ready:
        scheduler.start()
    else:
        scheduler.stop()
