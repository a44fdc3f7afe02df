"""
Adaptive polling loop around the collector.
Polls fast while runs are active, slowly otherwise, and backs off when the API quota runs hot.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from collector import Collector, CollectResult
from log_utils import setup_logging
from state_manager import StateManager

logger = setup_logging(__name__)

Notify = Callable[[List[str], List[str]], Awaitable[Any]]


def compute_next_delay(has_active_runs: bool, active_ms: int, idle_ms: int, throttled: bool = False) -> int:
    """Delay before the next pass in ms"""
    delay = active_ms if has_active_runs else idle_ms
    if throttled:
        delay = min(delay * 2, max(idle_ms, active_ms))
    return delay


class AdaptivePoller:
    """Runs collector passes one at a time and feeds the results into the live state"""

    def __init__(
        self,
        collector: Collector,
        state: StateManager,
        active_ms: int,
        idle_ms: int,
        notify: Optional[Notify] = None,
    ):
        self.collector = collector
        self.state = state
        self.active_ms = active_ms
        self.idle_ms = idle_ms
        self.notify = notify
        self._lock = asyncio.Lock()
        self._running = False
        self._stopped = asyncio.Event()

    def next_delay(self) -> int:
        return compute_next_delay(
            self.state.has_active_runs(), self.active_ms, self.idle_ms, self.state.should_throttle()
        )

    async def _apply(self, result: CollectResult) -> None:
        for completion in result.completions:
            self.state.on_run_complete(completion["team_name"], completion)
        self.state.refresh_teams()
        # Each completion already refreshed the leaderboard
        if not result.completions:
            self.state.refresh_leaderboard()
        if self.notify and (result.notices or result.announcements):
            try:
                await self.notify(result.notices, result.announcements)
            except Exception:
                logger.exception("Failed to publish poll notices")

    @asynccontextmanager
    async def between_passes(self) -> AsyncIterator[None]:
        """Hold off passes while the caller changes the roster; waits for a running pass to finish"""
        async with self._lock:
            yield

    async def run_once(self) -> Optional[CollectResult]:
        """
        One full pass. Returns None when the tournament is paused.
        Passes never overlap; a second caller waits for the first to finish.
        """
        async with self._lock:
            if self.state.is_paused():
                logger.info("Tournament paused, skipping poll")
                delay = self.next_delay()
                self.state.on_poll_complete(delay)
                return None

            result = await self.collector.collect_and_sync()
            await self._apply(result)
            delay = self.next_delay()
            self.state.on_poll_complete(delay)
            logger.info(f"Poll complete: {result.new_count} new run(s), next poll in {delay // 1000}s")
            return result

    async def force_refresh(self, team_name: Optional[str] = None) -> CollectResult:
        """Immediate pass, optionally limited to one team; runs even while paused"""
        async with self._lock:
            result = await self.collector.collect_and_sync(team_name)
            await self._apply(result)
            self.state.on_poll_complete(self.next_delay())
            return result

    async def run_forever(self) -> None:
        """Poll until stop(); the next pass is scheduled only after the previous one completes"""
        self._running = True
        self._stopped.clear()
        logger.info("Poller started")
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Poll pass failed")
            if not self._running:
                break
            delay = self.next_delay()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=delay / 1000)
            except asyncio.TimeoutError:
                pass
        logger.info("Poller stopped")

    def stop(self) -> None:
        self._running = False
        self._stopped.set()

    @property
    def running(self) -> bool:
        return self._running
