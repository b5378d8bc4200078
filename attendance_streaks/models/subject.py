"""Subjects and their enrolment roster (per-subject streak state lives on the roster entry)."""
from datetime import datetime
from typing import Optional

from beanie import Document, Indexed
from pydantic import Field, field_validator
from pymongo import ASCENDING, IndexModel

WEEKDAY_ABBREVIATIONS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def normalize_days(days) -> list[str]:
    """'monday', 'MON', 'Mon' -> 'Mon'; blanks and non-strings are dropped."""
    if not isinstance(days, (list, tuple, set)):
        return []
    result: list[str] = []
    for raw in days:
        if not isinstance(raw, str) or not raw.strip():
            continue
        abbr = raw.strip()[:3].title()
        if abbr not in result:
            result.append(abbr)
    return result


class Subject(Document):
    """Subject definition: meeting weekdays and active flag."""

    name: str
    code: Optional[str] = None
    active: bool = True
    days: list[str] = Field(default_factory=list)  # e.g. ["Mon", "Wed", "Fri"]
    schedule: Optional[str] = None  # free text, e.g. "08:00-09:30"
    instructor_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("days", mode="before")
    @classmethod
    def _normalize_days(cls, value):
        return normalize_days(value)

    class Settings:
        name = "subjects"
        use_state_management = True


class SubjectEnrollment(Document):
    """Roster entry for (subject, student) carrying the subject-level absence streak."""

    subject_id: Indexed(str)
    student_id: str
    student_name: Optional[str] = None

    streak: int = 0
    last_status: Optional[str] = None
    last_date: Optional[str] = None  # YYYY-MM-DD
    triggered_at3: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Settings:
        name = "subject_students"
        indexes = [
            IndexModel([("subject_id", ASCENDING), ("student_id", ASCENDING)], unique=True),
        ]
