"""Daily maintenance: absence backfill, then streak processing.

Best-effort background work: failures are logged and reported, never raised
to the caller.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from attendance_streaks.config import Settings, settings
from attendance_streaks.services.backfill import BackfillReport, backfill_absences
from attendance_streaks.services.calendar import utc_now
from attendance_streaks.services.store import StreakStore
from attendance_streaks.services.streaks import AlertNotifier, StreakEngine, StreakRunReport
from attendance_streaks.services.watermark import WatermarkService

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceResult:
    backfill: Optional[BackfillReport] = None
    streaks: Optional[StreakRunReport] = None
    backfill_error: Optional[str] = None
    streak_error: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "backfill": self.backfill.as_dict() if self.backfill else None,
            "streaks": self.streaks.as_dict() if self.streaks else None,
            "streaks_skipped": self.streaks is None and self.streak_error is None and self.backfill_error is None,
            "backfill_error": self.backfill_error,
            "streak_error": self.streak_error,
        }


def build_watermarks(
    store: StreakStore,
    config: Settings = settings,
    clock: Callable[[], datetime] = utc_now,
) -> WatermarkService:
    return WatermarkService(
        store,
        tz=config.tzinfo,
        lease_minutes=config.streak_lease_minutes,
        max_retries=config.begin_run_max_retries,
        clock=clock,
    )


def build_engine(
    store: StreakStore,
    config: Settings = settings,
    notifier: Optional[AlertNotifier] = None,
    clock: Callable[[], datetime] = utc_now,
) -> StreakEngine:
    return StreakEngine(
        store,
        build_watermarks(store, config, clock),
        batch_size=config.streak_batch_size,
        notifier=notifier,
        clock=clock,
    )


async def run_daily_maintenance(
    store: StreakStore,
    actor_id: str,
    *,
    config: Settings = settings,
    notifier: Optional[AlertNotifier] = None,
    clock: Callable[[], datetime] = utc_now,
) -> MaintenanceResult:
    result = MaintenanceResult()
    engine = build_engine(store, config, notifier, clock)

    try:
        window = await engine.watermarks.backfill_window()
        if window:
            result.backfill = await backfill_absences(
                store, window.start_day, window.end_day, dry_run=config.backfill_dry_run
            )
            if not config.backfill_dry_run:
                await engine.watermarks.complete_backfill(window.end_day)
    except Exception as e:
        logger.exception("Absence backfill failed; streak processing not started", extra={"event": "backfill_failed"})
        result.backfill_error = str(e) or e.__class__.__name__
        return result

    try:
        result.streaks = await engine.process_from_last_run(actor_id)
    except Exception as e:
        logger.warning("Streak processing failed: %r", e, extra={"event": "streak_run_failed", "actor_id": actor_id})
        result.streak_error = str(e) or e.__class__.__name__
    return result
