"""Global (cross-subject) absence streak per student."""
from datetime import datetime
from typing import Optional

from beanie import Document


class StudentStreak(Document):
    """id is the student id."""

    id: str
    streak: int = 0
    last_status_day: Optional[str] = None  # Absent, NonAbsent
    last_date: Optional[str] = None  # YYYY-MM-DD
    triggered_at3: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Settings:
        name = "student_streaks"
