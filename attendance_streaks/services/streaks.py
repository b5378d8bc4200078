"""Absence streak engine: turns attendance facts into streak counters and alerts.

Days are processed strictly in ascending order. For each day every active
subject meeting on that weekday contributes its attendance facts; each fact
of an enrolled student advances that student's subject streak and feeds the
student's global roll-up for the day. A student misses the day globally only
when they were scheduled for at least one subject and attended none.

All reads of a day happen before any write of that day. Writes are committed
in batches (alerts first, then subject streaks, then global streaks) and
every streak write is guarded by the ``last_date`` that was read, so a
re-run over an already committed day skips the entity instead of counting
it twice.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Optional, Protocol, Sequence

from attendance_streaks.models.notification import NotificationType
from attendance_streaks.services.calendar import iter_days, utc_now, weekday_abbr
from attendance_streaks.services.store import (
    FactInfo,
    GlobalStreakWrite,
    NotificationDraft,
    RosterEntry,
    StreakStore,
    SubjectInfo,
    SubjectStreakWrite,
    WriteOp,
)
from attendance_streaks.services.streak_rules import StreakState, advance, is_miss, normalize_status
from attendance_streaks.services.watermark import WatermarkService

logger = logging.getLogger(__name__)


class AlertNotifier(Protocol):
    async def deliver(self, notifications: Sequence[NotificationDraft]) -> None:
        raise NotImplementedError


@dataclass
class GlobalAggregate:
    scheduled: int = 0
    attended: int = 0

    @property
    def attended_any(self) -> bool:
        return self.attended > 0


@dataclass
class DayReport:
    day: date
    weekday: str
    subjects_processed: int = 0
    subjects_without_facts: int = 0
    subject_updates: int = 0
    global_updates: int = 0
    skipped_already_applied: int = 0
    ignored_facts: int = 0
    batches: int = 0
    notifications: list[NotificationDraft] = field(default_factory=list)


@dataclass
class StreakRunReport:
    start_day: date
    end_day: date
    days_processed: int = 0
    subjects_processed: int = 0
    subjects_without_facts: int = 0
    subject_updates: int = 0
    global_updates: int = 0
    notifications_emitted: int = 0
    skipped_already_applied: int = 0
    ignored_facts: int = 0
    batches: int = 0

    def add(self, day: DayReport) -> None:
        self.days_processed += 1
        self.subjects_processed += day.subjects_processed
        self.subjects_without_facts += day.subjects_without_facts
        self.subject_updates += day.subject_updates
        self.global_updates += day.global_updates
        self.notifications_emitted += len(day.notifications)
        self.skipped_already_applied += day.skipped_already_applied
        self.ignored_facts += day.ignored_facts
        self.batches += day.batches

    def as_dict(self) -> dict:
        return {
            "start_day": self.start_day.isoformat(),
            "end_day": self.end_day.isoformat(),
            "days_processed": self.days_processed,
            "subjects_processed": self.subjects_processed,
            "subjects_without_facts": self.subjects_without_facts,
            "subject_updates": self.subject_updates,
            "global_updates": self.global_updates,
            "notifications_emitted": self.notifications_emitted,
            "skipped_already_applied": self.skipped_already_applied,
            "ignored_facts": self.ignored_facts,
            "batches": self.batches,
        }


def chunked(ops: Sequence[WriteOp], size: int) -> list[list[WriteOp]]:
    return [list(ops[i:i + size]) for i in range(0, len(ops), size)]


class StreakEngine:
    def __init__(
        self,
        store: StreakStore,
        watermarks: WatermarkService,
        *,
        batch_size: int = 450,
        notifier: Optional[AlertNotifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.watermarks = watermarks
        self.batch_size = batch_size
        self.notifier = notifier
        self.clock = clock

    async def process_from_last_run(self, actor_id: str) -> Optional[StreakRunReport]:
        """Process every day from the watermark through yesterday. None when another run holds the lease or nothing is due."""
        window = await self.watermarks.begin_run(actor_id)
        if window is None:
            return None

        report = StreakRunReport(start_day=window.start_day, end_day=window.end_day)
        logger.info(
            "Streak run started for %s..%s",
            window.start_day,
            window.end_day,
            extra={"event": "streak_run_started", "actor_id": actor_id, "days": window.days},
        )
        try:
            for day in iter_days(window.start_day, window.end_day):
                day_report = await self.process_day(day)
                report.add(day_report)
                await self._deliver(day_report.notifications)
            await self.watermarks.complete_run(window.end_day, actor_id)
        except Exception:
            logger.exception(
                "Streak run aborted; lease released, watermark left at previous value",
                extra={"event": "streak_run_aborted", "actor_id": actor_id, **report.as_dict()},
            )
            await self.watermarks.abort_run(actor_id)
            raise

        logger.info(
            "Streak run completed: %d days, %d alerts",
            report.days_processed,
            report.notifications_emitted,
            extra={"event": "streak_run_completed", "actor_id": actor_id, **report.as_dict()},
        )
        return report

    async def process_day(self, day: date) -> DayReport:
        weekday = weekday_abbr(day)
        now = self.clock()
        report = DayReport(day=day, weekday=weekday)

        subjects = [s for s in await self.store.list_subjects() if s.meets_on(weekday)]
        loaded = await asyncio.gather(*(self._load_subject(day, s) for s in subjects))

        aggregates: dict[str, GlobalAggregate] = {}
        subject_writes: list[SubjectStreakWrite] = []

        for subject, roster, facts in loaded:
            if not facts:
                report.subjects_without_facts += 1
                continue
            report.subjects_processed += 1
            members = {entry.student_id: entry for entry in roster}

            for fact in facts:
                entry = members.get(fact.student_id)
                if entry is None:
                    report.ignored_facts += 1
                    continue

                status = normalize_status(fact.remark, fact.status, fact.remarks)
                missed = is_miss(status)

                agg = aggregates.setdefault(fact.student_id, GlobalAggregate())
                agg.scheduled += 1
                if not missed:
                    agg.attended += 1

                if entry.state.already_applied(day):
                    report.skipped_already_applied += 1
                    continue

                transition = advance(entry.state, missed, day, now, status.value)
                subject_writes.append(
                    SubjectStreakWrite(
                        subject_id=subject.id,
                        student_id=fact.student_id,
                        expected_last_date=entry.state.last_date,
                        state=transition.state,
                        trigger=transition.trigger,
                        updated_at=now,
                    )
                )
                if transition.notify:
                    report.notifications.append(
                        NotificationDraft(
                            kind=NotificationType.ABSENT3_SUBJECT,
                            student_id=fact.student_id,
                            subject_id=subject.id,
                            day=day,
                            streak=transition.state.streak,
                            created_at=now,
                        )
                    )

        global_writes = await self._global_writes(day, now, aggregates, report)

        ops: list[WriteOp] = [*report.notifications, *subject_writes, *global_writes]
        for batch in chunked(ops, self.batch_size):
            await self.store.commit_batch(batch)
            report.batches += 1

        report.subject_updates = len(subject_writes)
        report.global_updates = len(global_writes)
        for note in report.notifications:
            logger.info(
                "Absence alert %s for student %s",
                note.kind.value,
                note.student_id,
                extra={
                    "event": "streak_alert_emitted",
                    "type": note.kind.value,
                    "student_id": note.student_id,
                    "subject_id": note.subject_id,
                    "day": day.isoformat(),
                },
            )
        logger.info(
            "Processed %s (%s): %d subjects, %d subject updates, %d global updates",
            day,
            weekday,
            report.subjects_processed,
            report.subject_updates,
            report.global_updates,
            extra={
                "event": "streak_day_processed",
                "day": day.isoformat(),
                "skipped_already_applied": report.skipped_already_applied,
                "ignored_facts": report.ignored_facts,
                "batches": report.batches,
            },
        )
        return report

    async def _load_subject(
        self, day: date, subject: SubjectInfo
    ) -> tuple[SubjectInfo, Sequence[RosterEntry], Sequence[FactInfo]]:
        roster, facts = await asyncio.gather(
            self.store.load_roster(subject.id),
            self.store.load_facts(day, subject.id),
        )
        return subject, roster, facts

    async def _global_writes(
        self,
        day: date,
        now: datetime,
        aggregates: dict[str, GlobalAggregate],
        report: DayReport,
    ) -> list[GlobalStreakWrite]:
        scheduled = [sid for sid, agg in aggregates.items() if agg.scheduled >= 1]
        states = await self.store.load_global_states(scheduled)

        writes: list[GlobalStreakWrite] = []
        for student_id in scheduled:
            agg = aggregates[student_id]
            previous = states.get(student_id, StreakState())
            if previous.already_applied(day):
                report.skipped_already_applied += 1
                continue

            missed = not agg.attended_any
            transition = advance(previous, missed, day, now, "Absent" if missed else "NonAbsent")
            writes.append(
                GlobalStreakWrite(
                    student_id=student_id,
                    expected_last_date=previous.last_date,
                    state=transition.state,
                    trigger=transition.trigger,
                    updated_at=now,
                )
            )
            if transition.notify:
                report.notifications.append(
                    NotificationDraft(
                        kind=NotificationType.ABSENT3_GLOBAL,
                        student_id=student_id,
                        day=day,
                        streak=transition.state.streak,
                        created_at=now,
                    )
                )
        return writes

    async def _deliver(self, notifications: Sequence[NotificationDraft]) -> None:
        if not notifications or self.notifier is None:
            return
        try:
            await self.notifier.deliver(notifications)
        except Exception:
            logger.exception("Absence alert delivery failed", extra={"event": "streak_alert_delivery_failed"})
