"""Beanie document models and Pydantic schemas."""
from attendance_streaks.models.subject import Subject, SubjectEnrollment, normalize_days
from attendance_streaks.models.attendance import AttendanceFact
from attendance_streaks.models.streak import StudentStreak
from attendance_streaks.models.settings import AttendanceConfig, ProcessingLease, WatermarkOut
from attendance_streaks.models.notification import (
    Notification,
    NotificationOut,
    NotificationType,
    ResolveRequest,
    notification_id,
)

__all__ = [
    "Subject",
    "SubjectEnrollment",
    "normalize_days",
    "AttendanceFact",
    "StudentStreak",
    "AttendanceConfig",
    "ProcessingLease",
    "WatermarkOut",
    "Notification",
    "NotificationOut",
    "NotificationType",
    "ResolveRequest",
    "notification_id",
]
