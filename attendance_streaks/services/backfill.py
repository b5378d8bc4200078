"""Absence backfill: materialise "Absent" facts for enrolled students with no record on a school day.

The streak engine only looks at facts that exist, so this sweep has to run
first for every day the engine will process.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from attendance_streaks.services.calendar import iter_days, weekday_abbr
from attendance_streaks.services.store import AbsenceDraft, StreakStore

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    start_day: date
    end_day: date
    dry_run: bool = False
    days_processed: int = 0
    subjects_processed: int = 0
    absences_written: int = 0

    def as_dict(self) -> dict:
        return {
            "start_day": self.start_day.isoformat(),
            "end_day": self.end_day.isoformat(),
            "dry_run": self.dry_run,
            "days_processed": self.days_processed,
            "subjects_processed": self.subjects_processed,
            "absences_written": self.absences_written,
        }


async def backfill_absences(store: StreakStore, start: date, end: date, *, dry_run: bool = False) -> BackfillReport:
    """Write default absences for [start, end]. Existing facts are never touched."""
    report = BackfillReport(start_day=start, end_day=end, dry_run=dry_run)
    subjects = await store.list_subjects()

    for day in iter_days(start, end):
        weekday = weekday_abbr(day)
        scheduled = [s for s in subjects if s.days and s.meets_on(weekday)]

        for subject in scheduled:
            roster = await store.load_roster(subject.id)
            recorded = {f.student_id for f in await store.load_facts(day, subject.id)}
            missing = [
                AbsenceDraft(
                    subject_id=subject.id,
                    student_id=entry.student_id,
                    student_name=entry.student_name,
                    subject_name=subject.name or subject.id,
                )
                for entry in roster
                if entry.student_id not in recorded
            ]
            report.subjects_processed += 1
            if not missing:
                continue

            if dry_run:
                logger.info(
                    "Dry run: would write %d absences for %s on %s",
                    len(missing),
                    subject.id,
                    day,
                    extra={"event": "backfill_dry_run", "subject_id": subject.id, "day": day.isoformat()},
                )
                report.absences_written += len(missing)
                continue

            report.absences_written += await store.insert_absences(day, missing)

        report.days_processed += 1

    logger.info(
        "Absence backfill %s..%s wrote %d absences",
        start,
        end,
        report.absences_written,
        extra={"event": "backfill_completed", **report.as_dict()},
    )
    return report
