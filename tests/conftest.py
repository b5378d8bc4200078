import asyncio
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

import pytest

from attendance_streaks.models.notification import NotificationOut, NotificationType
from attendance_streaks.services.errors import StreakWriteConflict
from attendance_streaks.services.store import (
    AbsenceDraft,
    FactInfo,
    GlobalStreakWrite,
    NotificationDraft,
    RosterEntry,
    SubjectInfo,
    SubjectStreakWrite,
    Watermark,
    WriteOp,
)
from attendance_streaks.services.streak_rules import StreakState
from attendance_streaks.services.streaks import StreakEngine
from attendance_streaks.services.watermark import WatermarkService

MANILA = ZoneInfo("Asia/Manila")


def local_noon(day: date) -> datetime:
    """UTC instant at noon in Manila on ``day``; 'yesterday' is then day - 1."""
    return datetime(day.year, day.month, day.day, 12, tzinfo=MANILA).astimezone(timezone.utc)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def today(self, day: date) -> None:
        self.now = local_noon(day)


class InMemoryStreakStore:
    """Dict-backed store with the same guard semantics as MongoStreakStore."""

    def __init__(self):
        self.subjects: dict[str, SubjectInfo] = {}
        self.rosters: dict[str, dict[str, RosterEntry]] = {}
        self.facts: dict[tuple[date, str], dict[str, FactInfo]] = {}
        self.global_states: dict[str, StreakState] = {}
        self.notifications: dict[str, NotificationOut] = {}
        self.watermark = Watermark()
        self.batches: list[list[WriteOp]] = []
        self.fail_on_batch: Optional[int] = None

    # Seeding helpers
    def add_subject(self, subject_id: str, days: Sequence[str], students: Sequence[str] = (), active: bool = True):
        self.subjects[subject_id] = SubjectInfo(id=subject_id, name=subject_id.upper(), active=active, days=tuple(days))
        roster = self.rosters.setdefault(subject_id, {})
        for student_id in students:
            roster[student_id] = RosterEntry(student_id=student_id, student_name=f"Student {student_id}")

    def record(self, day: date, subject_id: str, student_id: str, status: Optional[str], field: str = "remark"):
        self.facts.setdefault((day, subject_id), {})[student_id] = FactInfo(student_id=student_id, **{field: status})

    def subject_state(self, subject_id: str, student_id: str) -> StreakState:
        return self.rosters[subject_id][student_id].state

    def global_state(self, student_id: str) -> StreakState:
        return self.global_states.get(student_id, StreakState())

    def notifications_of(self, kind: NotificationType) -> list[NotificationOut]:
        return [n for n in self.notifications.values() if n.type == kind]

    # Watermark / lease
    async def load_watermark(self) -> Watermark:
        snapshot = self.watermark
        await asyncio.sleep(0)  # let concurrent callers read the same snapshot
        return snapshot

    async def swap_watermark(self, current: Watermark, updated: Watermark) -> bool:
        if self.watermark.revision != current.revision:
            return False
        self.watermark = replace(updated, revision=(current.revision or 0) + 1)
        return True

    def _bump(self, **changes) -> None:
        self.watermark = replace(self.watermark, revision=(self.watermark.revision or 0) + 1, **changes)

    async def finish_streak_run(self, end_day: date, holder: str) -> None:
        last = self.watermark.last_streak_run_date
        self._bump(last_streak_run_date=max(last, end_day) if last else end_day)
        await self.clear_lease(holder)

    async def clear_lease(self, holder: str) -> None:
        if self.watermark.lease and self.watermark.lease.holder == holder:
            self._bump(lease=None)

    async def finish_backfill(self, end_day: date) -> None:
        last = self.watermark.last_absence_backfill_date
        self._bump(last_absence_backfill_date=max(last, end_day) if last else end_day)

    # Reads
    async def list_subjects(self) -> list[SubjectInfo]:
        return list(self.subjects.values())

    async def load_roster(self, subject_id: str) -> list[RosterEntry]:
        return list(self.rosters.get(subject_id, {}).values())

    async def load_facts(self, day: date, subject_id: str) -> list[FactInfo]:
        return list(self.facts.get((day, subject_id), {}).values())

    async def load_global_states(self, student_ids: Sequence[str]) -> dict[str, StreakState]:
        return {sid: self.global_states[sid] for sid in student_ids if sid in self.global_states}

    # Writes
    async def commit_batch(self, ops: Sequence[WriteOp]) -> None:
        if self.fail_on_batch is not None and len(self.batches) == self.fail_on_batch:
            raise ConnectionError("backend unavailable")

        self.batches.append(list(ops))

        # Same order and partial-apply behaviour as ordered bulk_writes per collection
        for op in ops:
            if isinstance(op, NotificationDraft):
                self.notifications.setdefault(
                    op.id,
                    NotificationOut(
                        id=op.id,
                        type=op.kind,
                        student_id=op.student_id,
                        subject_id=op.subject_id,
                        date=op.day.isoformat(),
                        streak=op.streak,
                        created_at=op.created_at,
                        resolved=False,
                    ),
                )

        subject_writes = [op for op in ops if isinstance(op, SubjectStreakWrite)]
        matched = 0
        for op in subject_writes:
            entry = self.rosters[op.subject_id][op.student_id]
            if entry.state.last_date == op.expected_last_date:
                self.rosters[op.subject_id][op.student_id] = replace(entry, state=op.state)
                matched += 1
        if matched != len(subject_writes):
            raise StreakWriteConflict("subject", len(subject_writes), matched)

        global_writes = [op for op in ops if isinstance(op, GlobalStreakWrite)]
        matched = 0
        for op in global_writes:
            if self.global_state(op.student_id).last_date == op.expected_last_date:
                self.global_states[op.student_id] = op.state
                matched += 1
        if matched != len(global_writes):
            raise StreakWriteConflict("global", len(global_writes), matched)

    async def insert_absences(self, day: date, drafts: Sequence[AbsenceDraft]) -> int:
        written = 0
        for d in drafts:
            existing = self.facts.setdefault((day, d.subject_id), {})
            if d.student_id in existing:
                continue
            existing[d.student_id] = FactInfo(student_id=d.student_id, status="Absent", remark="Absent", remarks="Absent")
            written += 1
        return written

    # Read surfaces
    async def list_notifications(self, *, resolved=None, kind=None, student_id=None) -> list[NotificationOut]:
        items = [
            n
            for n in self.notifications.values()
            if (resolved is None or n.resolved == resolved)
            and (kind is None or n.type == kind)
            and (not student_id or n.student_id == student_id)
        ]
        return sorted(items, key=lambda n: n.created_at, reverse=True)

    async def resolve_notification(self, notification_id: str, resolved_by: Optional[str]) -> Optional[NotificationOut]:
        note = self.notifications.get(notification_id)
        if not note:
            return None
        if not note.resolved:
            note = note.model_copy(update={"resolved": True, "resolved_at": datetime.utcnow(), "resolved_by": resolved_by})
            self.notifications[notification_id] = note
        return note

    async def resolve_all_notifications(self, resolved_by: Optional[str]) -> int:
        open_ids = [n.id for n in self.notifications.values() if not n.resolved]
        for notification_id in open_ids:
            await self.resolve_notification(notification_id, resolved_by)
        return len(open_ids)

    async def load_student_streaks(self, student_id: str):
        subjects = {
            subject_id: roster[student_id].state
            for subject_id, roster in self.rosters.items()
            if student_id in roster
        }
        return self.global_states.get(student_id), subjects


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.delivered: list[NotificationDraft] = []
        self.fail = fail

    async def deliver(self, notifications):
        if self.fail:
            raise RuntimeError("push service down")
        self.delivered.extend(notifications)


@pytest.fixture
def store():
    return InMemoryStreakStore()


@pytest.fixture
def clock():
    return FixedClock(local_noon(date(2024, 1, 9)))


@pytest.fixture
def watermarks(store, clock):
    return WatermarkService(store, tz=MANILA, lease_minutes=5, max_retries=5, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, watermarks, notifier, clock):
    return StreakEngine(store, watermarks, batch_size=450, notifier=notifier, clock=clock)
