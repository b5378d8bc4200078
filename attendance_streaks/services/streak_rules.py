"""Absence streak state machine and status normalisation.

Pure functions only; persistence lives in services.store.

A streak counts consecutive misses. It climbs 1, 2, 3; a miss after three
starts a fresh run at 1, and any non-miss resets it to 0. An alert is raised
the first time a run reaches three. ``triggered_at3`` remembers that the alert
was raised and is cleared only by a reset to 0.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Optional

ABSENCE_THRESHOLD = 3


class AttendanceStatus(str, Enum):
    PRESENT = "Present"
    LATE = "Late"
    ABSENT = "Absent"


class TriggerChange(str, Enum):
    SET = "set"
    CLEAR = "clear"
    KEEP = "keep"


def normalize_status(
    remark: Optional[str] = None,
    status: Optional[str] = None,
    remarks: Optional[str] = None,
) -> AttendanceStatus:
    """Classify free text: contains 'absent' -> Absent, 'late' -> Late, else Present.

    The first field that is not missing wins (remark, then status, then remarks).
    Anything unrecognised, including "Excused", counts as Present.
    """
    raw = next((v for v in (remark, status, remarks) if v is not None), "")
    text = str(raw).lower()
    if "absent" in text:
        return AttendanceStatus.ABSENT
    if "late" in text:
        return AttendanceStatus.LATE
    return AttendanceStatus.PRESENT


def is_miss(status: AttendanceStatus) -> bool:
    """One rule for both scopes: only a normalised Absent is a miss."""
    return status == AttendanceStatus.ABSENT


def next_streak(previous: int, missed: bool) -> int:
    if not missed:
        return 0
    if previous >= ABSENCE_THRESHOLD:
        return 1
    return previous + 1


@dataclass(frozen=True)
class StreakState:
    streak: int = 0
    triggered_at3: Optional[datetime] = None
    last_date: Optional[date] = None
    last_status: Optional[str] = None

    @property
    def notified(self) -> bool:
        return self.triggered_at3 is not None

    def already_applied(self, day: date) -> bool:
        """True when this state already reflects ``day`` (or a later day)."""
        return self.last_date is not None and self.last_date >= day


@dataclass(frozen=True)
class StreakTransition:
    previous: StreakState
    state: StreakState
    trigger: TriggerChange
    notify: bool


def advance(
    previous: StreakState,
    missed: bool,
    day: date,
    now: datetime,
    status_label: Optional[str] = None,
) -> StreakTransition:
    """Apply one day to a streak. Deterministic for a given (previous, missed, day, now)."""
    streak = next_streak(max(previous.streak, 0), missed)
    notify = streak == ABSENCE_THRESHOLD and not previous.notified

    if notify:
        trigger = TriggerChange.SET
        triggered_at3 = now
    elif streak == 0:
        trigger = TriggerChange.CLEAR
        triggered_at3 = None
    else:
        trigger = TriggerChange.KEEP
        triggered_at3 = previous.triggered_at3

    state = replace(
        previous,
        streak=streak,
        triggered_at3=triggered_at3,
        last_date=day,
        last_status=status_label,
    )
    return StreakTransition(previous=previous, state=state, trigger=trigger, notify=notify)
