"""
Expiry scheduler for unaccepted trip requests.

Two layers:
  1. One in-process asyncio timer per REQUESTED trip (arm / disarm by trip id).
  2. A periodic sweeper that cancels REQUESTED trips whose persisted
     ``expires_at`` has passed, so a restart or a lost timer never leaves a
     request open forever.

The scheduler never decides anything itself: the callback re-checks the trip
status with a compare-and-set, so a timer that fires after acceptance is a
no-op.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

ExpiryCallback = Callable[[str], Awaitable[object]]
SweepCallback = Callable[[], Awaitable[int]]


class ExpiryScheduler:
    def __init__(self, default_delay: float = 60.0):
        self.default_delay = default_delay
        self._timers: dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def arm(self, trip_id: str, callback: ExpiryCallback, delay: Optional[float] = None) -> None:
        """Schedule ``callback(trip_id)``; re-arming replaces the previous timer."""
        self.disarm(trip_id)
        delay = self.default_delay if delay is None else max(delay, 0.0)
        task = asyncio.create_task(self._fire_after(trip_id, callback, delay), name=f"expiry-{trip_id}")
        self._timers[trip_id] = task
        logger.debug("Armed expiry timer trip=%s delay=%.1fs", trip_id, delay)

    def disarm(self, trip_id: str) -> bool:
        """Cancel a pending timer. Idempotent; returns True if one was pending."""
        task = self._timers.pop(trip_id, None)
        if task is None:
            return False
        task.cancel()
        logger.debug("Disarmed expiry timer trip=%s", trip_id)
        return True

    def armed(self, trip_id: str) -> bool:
        return trip_id in self._timers

    def __len__(self) -> int:
        return len(self._timers)

    async def _fire_after(self, trip_id: str, callback: ExpiryCallback, delay: float) -> None:
        await asyncio.sleep(delay)
        # Leave the map before running so a concurrent disarm cannot cancel us mid-write
        if self._timers.get(trip_id) is asyncio.current_task():
            del self._timers[trip_id]
        try:
            await callback(trip_id)
        except Exception:
            logger.error("Expiry callback failed for trip=%s", trip_id, exc_info=True)

    # ------------------------------------------------------------------
    # Durable sweep
    # ------------------------------------------------------------------

    def start_sweeper(self, sweep: SweepCallback, interval: float) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(sweep, interval), name="expiry-sweeper")

    async def _sweep_loop(self, sweep: SweepCallback, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                expired = await sweep()
                if expired:
                    logger.info("Expiry sweep cancelled %d overdue trip(s)", expired)
            except Exception:
                logger.error("Expiry sweep failed", exc_info=True)

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
