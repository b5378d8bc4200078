from datetime import datetime
from typing import Optional

from beanie import Document, Indexed
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class AttendanceFact(Document):
    """One attendance outcome for a student in a subject on a day."""

    day: Indexed(str)  # YYYY-MM-DD
    day_of_week: Optional[str] = None  # Mon, Tue, ...
    subject_id: str
    student_id: str

    # Free text as written by the scanner or an instructor; see services.streak_rules
    status: Optional[str] = None
    remark: Optional[str] = None
    remarks: Optional[str] = None

    student_name: Optional[str] = None
    subject_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    time_in: Optional[datetime] = None
    time_out: Optional[datetime] = None

    source: str = "scan"  # scan, face, manual, absence-backfill
    is_auto_generated: bool = False
    created_by: Optional[str] = None

    class Settings:
        name = "attendance"
        indexes = [
            IndexModel(
                [("day", ASCENDING), ("subject_id", ASCENDING), ("student_id", ASCENDING)],
                unique=True,
            ),
        ]
