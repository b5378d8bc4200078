"""Watermark and lease protocol on the singleton attendance record.

``begin_run`` is a read-check-write done as compare-and-swap on the record's
revision, so concurrent callers (separate processes included) cannot both
obtain a range. ``complete_run`` and ``abort_run`` are merges that release
the lease only for the actor that still holds it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Optional

from attendance_streaks.services.calendar import epoch_ms, local_yesterday, utc_now
from attendance_streaks.services.errors import LeaseContentionError
from attendance_streaks.services.store import Lease, StreakStore, Watermark

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunWindow:
    start_day: date
    end_day: date

    @property
    def days(self) -> int:
        return (self.end_day - self.start_day).days + 1


def compute_streak_window(watermark: Watermark, end_day: date) -> RunWindow:
    if watermark.last_streak_run_date:
        start = watermark.last_streak_run_date + timedelta(days=1)
    elif watermark.last_absence_backfill_date and watermark.last_absence_backfill_date < end_day:
        start = watermark.last_absence_backfill_date + timedelta(days=1)
    else:
        start = end_day
    return RunWindow(start_day=start, end_day=end_day)


def compute_backfill_window(watermark: Watermark, end_day: date) -> Optional[RunWindow]:
    last = watermark.last_absence_backfill_date
    if last is None:
        return RunWindow(start_day=end_day, end_day=end_day)
    if last < end_day:
        return RunWindow(start_day=last + timedelta(days=1), end_day=end_day)
    return None


class WatermarkService:
    def __init__(
        self,
        store: StreakStore,
        *,
        tz: tzinfo,
        lease_minutes: int = 5,
        max_retries: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.tz = tz
        self.lease_minutes = lease_minutes
        self.max_retries = max_retries
        self.clock = clock

    async def begin_run(self, actor_id: str) -> Optional[RunWindow]:
        """Acquire the processing lease and return the days to process, or None."""
        for attempt in range(1, self.max_retries + 1):
            now = self.clock()
            now_ms = epoch_ms(now)
            current = await self.store.load_watermark()
            window = compute_streak_window(current, local_yesterday(now, self.tz))

            if current.lease and current.lease.is_valid(now_ms):
                logger.info(
                    "Streak run skipped: lease held by %s",
                    current.lease.holder,
                    extra={
                        "event": "streak_lease_contention",
                        "actor_id": actor_id,
                        "holder": current.lease.holder,
                        "attempts": attempt,
                    },
                )
                return None

            if window.start_day > window.end_day:
                logger.info(
                    "Streak run skipped: nothing to process after %s",
                    current.last_streak_run_date,
                    extra={"event": "streak_nothing_to_do", "actor_id": actor_id},
                )
                return None

            lease = Lease(holder=actor_id, expires_at_ms=now_ms + self.lease_minutes * 60 * 1000)
            if await self.store.swap_watermark(current, replace(current, lease=lease)):
                return window

            logger.debug(
                "Attendance record changed during lease acquisition (attempt %d)",
                attempt,
                extra={"event": "streak_lease_retry", "actor_id": actor_id, "attempt": attempt},
            )

        raise LeaseContentionError(f"Could not acquire streak lease after {self.max_retries} attempts")

    async def complete_run(self, end_day: date, actor_id: str) -> None:
        await self.store.finish_streak_run(end_day, actor_id)

    async def abort_run(self, actor_id: str) -> None:
        await self.store.clear_lease(actor_id)

    async def backfill_window(self) -> Optional[RunWindow]:
        watermark = await self.store.load_watermark()
        return compute_backfill_window(watermark, local_yesterday(self.clock(), self.tz))

    async def complete_backfill(self, end_day: date) -> None:
        await self.store.finish_backfill(end_day)

    async def snapshot(self) -> Watermark:
        return await self.store.load_watermark()

    def lease_active(self, watermark: Watermark) -> bool:
        return bool(watermark.lease and watermark.lease.is_valid(epoch_ms(self.clock())))
