"""Persistence port for the streak engine, backfill and alert surfaces.

The engine only talks to a ``StreakStore``. ``MongoStreakStore`` is the
production implementation; tests use an in-memory one with the same
compare-and-swap and conditional-write behaviour.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Protocol, Sequence, Union

from attendance_streaks.models.notification import NotificationOut, NotificationType, notification_id
from attendance_streaks.services.errors import InvalidStoredDay
from attendance_streaks.services.streak_rules import StreakState, TriggerChange


def parse_day(value: Optional[str]) -> Optional[date]:
    if value is None or value == "":
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise InvalidStoredDay(value) from e


def format_day(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Lease:
    holder: str
    expires_at_ms: int

    def is_valid(self, now_ms: int) -> bool:
        return now_ms < self.expires_at_ms


@dataclass(frozen=True)
class Watermark:
    last_absence_backfill_date: Optional[date] = None
    last_streak_run_date: Optional[date] = None
    lease: Optional[Lease] = None
    revision: Optional[int] = None  # None: record does not exist yet


@dataclass(frozen=True)
class SubjectInfo:
    id: str
    name: str = ""
    active: bool = True
    days: tuple[str, ...] = ()

    def meets_on(self, weekday: str) -> bool:
        return self.active is not False and weekday in self.days


@dataclass(frozen=True)
class RosterEntry:
    student_id: str
    student_name: Optional[str] = None
    state: StreakState = field(default_factory=StreakState)


@dataclass(frozen=True)
class FactInfo:
    student_id: str
    remark: Optional[str] = None
    status: Optional[str] = None
    remarks: Optional[str] = None


@dataclass(frozen=True)
class AbsenceDraft:
    subject_id: str
    student_id: str
    student_name: Optional[str] = None
    subject_name: Optional[str] = None


@dataclass(frozen=True)
class NotificationDraft:
    kind: NotificationType
    student_id: str
    day: date
    streak: int
    created_at: datetime
    subject_id: Optional[str] = None

    @property
    def id(self) -> str:
        return notification_id(self.kind, self.student_id, self.day.isoformat(), self.subject_id)


@dataclass(frozen=True)
class SubjectStreakWrite:
    """Write guarded by the last_date that was read."""

    subject_id: str
    student_id: str
    expected_last_date: Optional[date]
    state: StreakState
    trigger: TriggerChange
    updated_at: datetime


@dataclass(frozen=True)
class GlobalStreakWrite:
    student_id: str
    expected_last_date: Optional[date]
    state: StreakState
    trigger: TriggerChange
    updated_at: datetime

    @property
    def last_status_day(self) -> str:
        return "Absent" if self.state.streak > 0 else "NonAbsent"


WriteOp = Union[NotificationDraft, SubjectStreakWrite, GlobalStreakWrite]


class StreakStore(Protocol):
    # Watermark / lease
    async def load_watermark(self) -> Watermark:
        raise NotImplementedError

    async def swap_watermark(self, current: Watermark, updated: Watermark) -> bool:
        """Replace the record only if its revision still equals ``current.revision``."""
        raise NotImplementedError

    async def finish_streak_run(self, end_day: date, holder: str) -> None:
        """Merge: last_streak_run_date = max(existing, end_day); release the lease if ``holder`` still has it."""
        raise NotImplementedError

    async def clear_lease(self, holder: str) -> None:
        """Release the lease only if ``holder`` still has it; a lease taken over after expiry is left alone."""
        raise NotImplementedError

    async def finish_backfill(self, end_day: date) -> None:
        raise NotImplementedError

    # Roster / facts (snapshot reads)
    async def list_subjects(self) -> Sequence[SubjectInfo]:
        raise NotImplementedError

    async def load_roster(self, subject_id: str) -> Sequence[RosterEntry]:
        raise NotImplementedError

    async def load_facts(self, day: date, subject_id: str) -> Sequence[FactInfo]:
        raise NotImplementedError

    async def load_global_states(self, student_ids: Sequence[str]) -> dict[str, StreakState]:
        raise NotImplementedError

    # Writes
    async def commit_batch(self, ops: Sequence[WriteOp]) -> None:
        """Apply the batch in order. Guarded writes that miss are not applied and raise StreakWriteConflict;
        the writes that matched stay applied."""
        raise NotImplementedError

    async def insert_absences(self, day: date, drafts: Sequence[AbsenceDraft]) -> int:
        """Insert-if-absent; returns how many facts were created."""
        raise NotImplementedError

    # Read surfaces
    async def list_notifications(
        self,
        *,
        resolved: Optional[bool] = None,
        kind: Optional[NotificationType] = None,
        student_id: Optional[str] = None,
    ) -> list[NotificationOut]:
        raise NotImplementedError

    async def resolve_notification(self, notification_id: str, resolved_by: Optional[str]) -> Optional[NotificationOut]:
        raise NotImplementedError

    async def resolve_all_notifications(self, resolved_by: Optional[str]) -> int:
        raise NotImplementedError

    async def load_student_streaks(self, student_id: str) -> tuple[Optional[StreakState], dict[str, StreakState]]:
        raise NotImplementedError
