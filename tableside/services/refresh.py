"""
Refresh Scheduler

Turns realtime hints and timers into order fetches without ever letting a
burst become a request storm.

    debounce      notify() calls within debounce_seconds of the first one
                  collapse into a single fetch (the window is fixed, later
                  events do not push it back)
    rate limit    a non-forced fetch (manual or debounced) is refused while
                  the previous fetch completed less than
                  min_interval_seconds ago; the auto-poll picks up what
                  was missed
    single flight never two fetches in flight; a concurrent caller shares
                  the running one
    auto-poll     every poll_interval_seconds while has_pending_work()
    pause/resume  while paused nothing runs; anything seen meanwhile
                  produces one refresh on resume
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from tableside.core.exceptions import OrderingError

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[None]]


class RefreshScheduler:
    """
    Debounced, rate limited, single-flight fetch trigger.

    Args:
        fetch: Coroutine function performing the order fetch
        debounce_seconds: Burst collapse window
        min_interval_seconds: Minimum spacing of non-forced fetches
        poll_interval_seconds: Fallback poll while work is pending
        has_pending_work: True while any known order is non-terminal
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        fetch: FetchFn,
        debounce_seconds: float = 0.5,
        min_interval_seconds: float = 2.0,
        poll_interval_seconds: float = 15.0,
        has_pending_work: Optional[Callable[[], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self.debounce_seconds = debounce_seconds
        self.min_interval_seconds = min_interval_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._has_pending_work = has_pending_work or (lambda: False)
        self._clock = clock

        self.fetch_count = 0
        self.refused_count = 0
        self.last_error: Optional[OrderingError] = None

        self._last_completed_at: Optional[float] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._debounce_force = False
        self._poll_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None
        self._background: set[asyncio.Task] = set()
        self._paused = False
        self._dirty = False
        self._closed = False

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def has_scheduled_fetch(self) -> bool:
        return self._debounce_task is not None and not self._debounce_task.done()

    def _rate_limit_remaining(self) -> float:
        if self._last_completed_at is None:
            return 0.0
        elapsed = self._clock() - self._last_completed_at
        return max(0.0, self.min_interval_seconds - elapsed)

    # =========================================================================
    # FETCH EXECUTION
    # =========================================================================

    async def _do_fetch(self) -> bool:
        self.fetch_count += 1
        try:
            await self._fetch()
            self.last_error = None
            ok = True
        except OrderingError as e:
            self.last_error = e
            logger.warning(f"Refresh: fetch failed - {e.message}")
            ok = False
        finally:
            self._last_completed_at = self._clock()

        if not self._closed and self._has_pending_work():
            self.ensure_polling()
        return ok

    async def _execute(self) -> bool:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._do_fetch())
        else:
            logger.debug("Refresh: joining in-flight fetch")
        return await asyncio.shield(self._inflight)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def refresh(self, force: bool = False) -> bool:
        """
        Fetch now.

        Returns:
            bool: False when the fetch was refused or failed
        """
        if self._closed:
            return False
        if not force:
            remaining = self._rate_limit_remaining()
            if remaining > 0 and not (self._inflight and not self._inflight.done()):
                self.refused_count += 1
                logger.debug(f"Refresh: refused, {remaining:.2f}s left in interval")
                return False
        return await self._execute()

    def notify(self, force: bool = False) -> None:
        """Record a change hint; schedules at most one debounced fetch."""
        if self._closed:
            return
        if self._paused:
            self._dirty = True
            return
        if force:
            self._debounce_force = True
        if self.has_scheduled_fetch:
            return
        self._debounce_task = asyncio.ensure_future(self._debounced())

    async def _debounced(self) -> None:
        await asyncio.sleep(self.debounce_seconds)

        # Hints arriving from here on open a new window
        force = self._debounce_force
        self._debounce_task = None
        self._debounce_force = False
        if self._paused:
            self._dirty = True
            return
        if not force:
            remaining = self._rate_limit_remaining()
            if remaining > 0 and not (self._inflight and not self._inflight.done()):
                self.refused_count += 1
                logger.debug(f"Refresh: debounced fetch refused, {remaining:.2f}s left in interval")
                return
        await self._execute()

    def ensure_polling(self) -> None:
        """Start the fallback poll if it is not running."""
        if self._closed or self.is_polling or self.poll_interval_seconds <= 0:
            return
        self._poll_task = asyncio.ensure_future(self._poll_loop())
        logger.debug(f"Refresh: polling every {self.poll_interval_seconds}s")

    async def _poll_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.poll_interval_seconds)
            if self._paused:
                self._dirty = True
                continue
            if not self._has_pending_work():
                logger.debug("Refresh: all orders settled, polling stopped")
                break
            if self._rate_limit_remaining() > 0:
                continue
            await self._execute()

    def pause(self) -> None:
        """Suspend debounced fetches and polls (payment modal open)."""
        if self._paused:
            return
        self._paused = True
        if self.has_scheduled_fetch:
            self._debounce_task.cancel()
            self._debounce_task = None
            self._debounce_force = False
            self._dirty = True
        logger.debug("Refresh: paused")

    def resume(self) -> None:
        """Lift the pause; one refresh runs if anything was missed."""
        if not self._paused:
            return
        self._paused = False
        logger.debug("Refresh: resumed")
        if self._dirty and not self._closed:
            self._dirty = False
            self._spawn(self._execute())

    async def close(self) -> None:
        """Cancel every timer and any in-flight fetch."""
        self._closed = True
        tasks = [self._debounce_task, self._poll_task, self._inflight, *self._background]
        self._debounce_task = None
        self._poll_task = None
        self._inflight = None
        pending = [t for t in tasks if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
