"""
Refresh scheduler: debounce collapsing, rate limiting, single flight,
pause/resume and the fallback poll.
"""
import asyncio

import pytest

from tableside.core.exceptions import TransientNetworkError
from tableside.services.refresh import RefreshScheduler

from conftest import FakeClock, settle


class Fetcher:
    """Counts fetches; optionally blocks or fails."""

    def __init__(self):
        self.calls = 0
        self.gate = None
        self.fail = False

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise TransientNetworkError("offline")


@pytest.fixture
def fetcher():
    return Fetcher()


@pytest.fixture
def make_scheduler(fetcher):
    created = []

    def build(**kwargs):
        kwargs.setdefault("debounce_seconds", 0.05)
        kwargs.setdefault("min_interval_seconds", 0.2)
        kwargs.setdefault("poll_interval_seconds", 0)
        scheduler = RefreshScheduler(fetcher, **kwargs)
        created.append(scheduler)
        return scheduler

    yield build
    for scheduler in created:
        scheduler._closed = True
        for task in (scheduler._debounce_task, scheduler._poll_task):
            if task is not None:
                task.cancel()


# ─── Debounce ──────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_burst_of_events_collapses_into_one_fetch(make_scheduler, fetcher):
    """Ten events inside the debounce window produce exactly one fetch."""
    scheduler = make_scheduler()
    for _ in range(10):
        scheduler.notify()
        await asyncio.sleep(0.003)

    await asyncio.sleep(0.15)
    assert fetcher.calls == 1
    assert scheduler.fetch_count == 1


@pytest.mark.asyncio
async def test_window_reopens_after_the_fetch(make_scheduler, fetcher):
    scheduler = make_scheduler(min_interval_seconds=0)
    scheduler.notify()
    await asyncio.sleep(0.1)
    scheduler.notify()
    await asyncio.sleep(0.1)
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_debounced_fetch_inside_interval_is_refused(make_scheduler, fetcher):
    scheduler = make_scheduler(min_interval_seconds=0.5)
    await scheduler.refresh()
    scheduler.notify()

    await asyncio.sleep(0.8)
    assert fetcher.calls == 1
    assert scheduler.refused_count == 1
    assert not scheduler.has_scheduled_fetch


@pytest.mark.asyncio
async def test_forced_hint_inside_interval_still_fetches(make_scheduler, fetcher):
    scheduler = make_scheduler(min_interval_seconds=0.5)
    await scheduler.refresh()
    scheduler.notify(force=True)

    await asyncio.sleep(0.15)
    assert fetcher.calls == 2
    assert scheduler.refused_count == 0


# ─── Rate limit ────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_second_non_forced_fetch_inside_interval_is_refused(make_scheduler, fetcher):
    clock = FakeClock()
    scheduler = make_scheduler(min_interval_seconds=2.0, clock=clock)

    assert await scheduler.refresh() is True
    clock.advance(1.0)
    assert await scheduler.refresh() is False
    assert fetcher.calls == 1
    assert scheduler.refused_count == 1

    clock.advance(1.5)
    assert await scheduler.refresh() is True
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_force_bypasses_rate_limit(make_scheduler, fetcher):
    clock = FakeClock()
    scheduler = make_scheduler(min_interval_seconds=2.0, clock=clock)

    await scheduler.refresh()
    assert await scheduler.refresh(force=True) is True
    assert fetcher.calls == 2


# ─── Single flight ─────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_fetch(make_scheduler, fetcher):
    scheduler = make_scheduler()
    fetcher.gate = asyncio.Event()

    first = asyncio.ensure_future(scheduler.refresh(force=True))
    second = asyncio.ensure_future(scheduler.refresh(force=True))
    await settle()
    assert fetcher.calls == 1

    fetcher.gate.set()
    assert await asyncio.gather(first, second) == [True, True]
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_failed_fetch_is_recorded(make_scheduler, fetcher):
    scheduler = make_scheduler()
    fetcher.fail = True

    assert await scheduler.refresh(force=True) is False
    assert isinstance(scheduler.last_error, TransientNetworkError)

    fetcher.fail = False
    assert await scheduler.refresh(force=True) is True
    assert scheduler.last_error is None


# ─── Pause / resume ────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_events_while_paused_produce_one_refresh_on_resume(make_scheduler, fetcher):
    scheduler = make_scheduler()
    scheduler.pause()
    for _ in range(5):
        scheduler.notify()
    await asyncio.sleep(0.1)
    assert fetcher.calls == 0

    scheduler.resume()
    await asyncio.sleep(0.05)
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_pause_cancels_pending_debounce(make_scheduler, fetcher):
    scheduler = make_scheduler()
    scheduler.notify()
    scheduler.pause()
    await asyncio.sleep(0.1)
    assert fetcher.calls == 0

    scheduler.resume()
    await asyncio.sleep(0.05)
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_resume_without_events_does_not_fetch(make_scheduler, fetcher):
    scheduler = make_scheduler()
    scheduler.pause()
    scheduler.resume()
    await asyncio.sleep(0.05)
    assert fetcher.calls == 0


# ─── Polling ───────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_polls_while_work_is_pending_and_stops_after(make_scheduler, fetcher):
    pending = {"value": True}
    scheduler = make_scheduler(
        min_interval_seconds=0,
        poll_interval_seconds=0.05,
        has_pending_work=lambda: pending["value"],
    )

    await scheduler.refresh(force=True)
    assert scheduler.is_polling
    await asyncio.sleep(0.18)
    assert fetcher.calls >= 3

    pending["value"] = False
    await asyncio.sleep(0.12)
    assert not scheduler.is_polling
    calls = fetcher.calls
    await asyncio.sleep(0.1)
    assert fetcher.calls == calls

    pending["value"] = True
    scheduler.ensure_polling()
    assert scheduler.is_polling


@pytest.mark.asyncio
async def test_no_polling_when_nothing_is_pending(make_scheduler, fetcher):
    scheduler = make_scheduler(poll_interval_seconds=0.05, has_pending_work=lambda: False)
    await scheduler.refresh(force=True)
    assert not scheduler.is_polling


@pytest.mark.asyncio
async def test_close_cancels_scheduled_work(make_scheduler, fetcher):
    scheduler = make_scheduler()
    scheduler.notify()
    await scheduler.close()
    await asyncio.sleep(0.1)

    assert fetcher.calls == 0
    assert await scheduler.refresh(force=True) is False
    scheduler.notify()
    assert not scheduler.has_scheduled_fetch
