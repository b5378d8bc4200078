import asyncio
from datetime import date, timedelta

import pytest

from attendance_streaks.services.calendar import epoch_ms
from attendance_streaks.services.errors import LeaseContentionError
from attendance_streaks.services.store import Lease, Watermark
from attendance_streaks.services.watermark import (
    RunWindow,
    WatermarkService,
    compute_backfill_window,
    compute_streak_window,
)

from conftest import MANILA

YESTERDAY = date(2024, 1, 8)


def test_window_continues_after_last_streak_run():
    window = compute_streak_window(Watermark(last_streak_run_date=date(2024, 1, 3)), YESTERDAY)
    assert window == RunWindow(date(2024, 1, 4), YESTERDAY)
    assert window.days == 5


def test_window_falls_back_to_backfill_watermark():
    window = compute_streak_window(Watermark(last_absence_backfill_date=date(2024, 1, 5)), YESTERDAY)
    assert window.start_day == date(2024, 1, 6)


def test_window_ignores_backfill_watermark_not_before_end():
    window = compute_streak_window(Watermark(last_absence_backfill_date=YESTERDAY), YESTERDAY)
    assert window == RunWindow(YESTERDAY, YESTERDAY)


def test_window_defaults_to_yesterday_only():
    assert compute_streak_window(Watermark(), YESTERDAY) == RunWindow(YESTERDAY, YESTERDAY)


def test_backfill_window():
    assert compute_backfill_window(Watermark(), YESTERDAY) == RunWindow(YESTERDAY, YESTERDAY)
    assert compute_backfill_window(
        Watermark(last_absence_backfill_date=date(2024, 1, 6)), YESTERDAY
    ) == RunWindow(date(2024, 1, 7), YESTERDAY)
    assert compute_backfill_window(Watermark(last_absence_backfill_date=YESTERDAY), YESTERDAY) is None


@pytest.mark.asyncio
async def test_begin_run_acquires_lease(store, watermarks, clock):
    store.watermark = Watermark(last_streak_run_date=date(2024, 1, 5), revision=3)

    window = await watermarks.begin_run("instructor-1")

    assert window == RunWindow(date(2024, 1, 6), YESTERDAY)
    assert store.watermark.lease == Lease(holder="instructor-1", expires_at_ms=epoch_ms(clock()) + 5 * 60 * 1000)
    assert store.watermark.last_streak_run_date == date(2024, 1, 5)
    assert store.watermark.revision == 4


@pytest.mark.asyncio
async def test_begin_run_creates_missing_record(store, watermarks):
    window = await watermarks.begin_run("instructor-1")
    assert window == RunWindow(YESTERDAY, YESTERDAY)
    assert store.watermark.revision == 1


@pytest.mark.asyncio
async def test_valid_lease_blocks_without_mutation(store, watermarks, clock):
    held = Watermark(lease=Lease("someone-else", epoch_ms(clock()) + 1000), revision=2)
    store.watermark = held

    assert await watermarks.begin_run("instructor-1") is None
    assert store.watermark == held


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over(store, watermarks, clock):
    store.watermark = Watermark(lease=Lease("crashed", epoch_ms(clock()) - 1), revision=2)

    assert await watermarks.begin_run("instructor-1") is not None
    assert store.watermark.lease.holder == "instructor-1"


@pytest.mark.asyncio
async def test_nothing_to_do_returns_none_without_mutation(store, watermarks):
    up_to_date = Watermark(last_streak_run_date=YESTERDAY, revision=7)
    store.watermark = up_to_date

    assert await watermarks.begin_run("instructor-1") is None
    assert store.watermark == up_to_date


@pytest.mark.asyncio
async def test_concurrent_begin_run_grants_exactly_one(store, watermarks):
    results = await asyncio.gather(*(watermarks.begin_run(f"session-{i}") for i in range(5)))

    granted = [r for r in results if r is not None]
    assert len(granted) == 1
    assert store.watermark.lease is not None


@pytest.mark.asyncio
async def test_begin_run_gives_up_after_retries(store, clock):
    class AlwaysLosing(type(store)):
        async def swap_watermark(self, current, updated):
            return False

    losing = AlwaysLosing()
    service = WatermarkService(losing, tz=MANILA, max_retries=3, clock=clock)
    with pytest.raises(LeaseContentionError):
        await service.begin_run("instructor-1")


@pytest.mark.asyncio
async def test_complete_run_is_monotonic_and_clears_lease(store, watermarks):
    await watermarks.begin_run("instructor-1")
    await watermarks.complete_run(YESTERDAY, "instructor-1")
    assert store.watermark.last_streak_run_date == YESTERDAY
    assert store.watermark.lease is None

    await watermarks.complete_run(date(2024, 1, 2), "instructor-1")
    assert store.watermark.last_streak_run_date == YESTERDAY


@pytest.mark.asyncio
async def test_abort_run_only_clears_lease(store, watermarks):
    store.watermark = Watermark(last_streak_run_date=date(2024, 1, 5), revision=1)
    await watermarks.begin_run("instructor-1")

    await watermarks.abort_run("instructor-1")

    assert store.watermark.lease is None
    assert store.watermark.last_streak_run_date == date(2024, 1, 5)


@pytest.mark.asyncio
async def test_overrunning_run_does_not_release_a_taken_over_lease(store, watermarks, clock):
    store.watermark = Watermark(last_streak_run_date=date(2024, 1, 5), revision=1)
    assert await watermarks.begin_run("slow-run") is not None

    # The first lease expires and a second run takes over
    clock.now = clock.now + timedelta(minutes=6)
    assert await watermarks.begin_run("second-run") is not None

    await watermarks.abort_run("slow-run")
    assert store.watermark.lease.holder == "second-run"

    await watermarks.complete_run(YESTERDAY, "slow-run")
    assert store.watermark.last_streak_run_date == YESTERDAY
    assert store.watermark.lease.holder == "second-run"

    await watermarks.complete_run(YESTERDAY, "second-run")
    assert store.watermark.lease is None


@pytest.mark.asyncio
async def test_lease_active(store, watermarks, clock):
    assert not watermarks.lease_active(store.watermark)
    await watermarks.begin_run("instructor-1")
    assert watermarks.lease_active(store.watermark)
    clock.today(date(2024, 1, 10))
    assert not watermarks.lease_active(store.watermark)
