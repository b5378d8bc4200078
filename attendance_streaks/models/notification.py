from datetime import datetime
from enum import Enum
from typing import Optional

from beanie import Document, Indexed
from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    ABSENT3_SUBJECT = "absent3_subject"
    ABSENT3_GLOBAL = "absent3_global"


def notification_id(kind: NotificationType, student_id: str, day: str, subject_id: Optional[str] = None) -> str:
    """Deterministic id: one alert per (type, subject, student, day)."""
    scope = subject_id or "global"
    return f"{kind.value}:{scope}:{student_id}:{day}"


class Notification(Document):
    """Absence alert raised when a streak first reaches three."""

    id: str
    type: NotificationType
    student_id: Indexed(str)
    subject_id: Optional[str] = None  # subject-scoped alerts only
    date: str  # YYYY-MM-DD of the third consecutive miss
    streak: int = 3
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    class Settings:
        name = "notifications"


class NotificationOut(BaseModel):
    id: str
    type: NotificationType
    student_id: str
    subject_id: Optional[str] = None
    date: str
    streak: int
    created_at: datetime
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None


class ResolveRequest(BaseModel):
    resolved_by: Optional[str] = None
