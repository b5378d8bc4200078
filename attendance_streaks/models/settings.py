"""System attendance record: job watermarks and the streak processing lease."""
from typing import Optional

from beanie import Document
from pydantic import BaseModel

ATTENDANCE_CONFIG_ID = "attendance"


class ProcessingLease(BaseModel):
    holder: str  # actor id that started the run
    expires_at_ms: int  # epoch milliseconds


class AttendanceConfig(Document):
    """Single-doc config (id='attendance'). Written only through compare-and-swap on revision."""

    id: str = ATTENDANCE_CONFIG_ID
    last_absence_backfill_date: Optional[str] = None  # YYYY-MM-DD
    last_streak_run_date: Optional[str] = None  # YYYY-MM-DD
    processing_lease: Optional[ProcessingLease] = None
    revision: int = 0

    class Settings:
        name = "system"


class WatermarkOut(BaseModel):
    last_absence_backfill_date: Optional[str] = None
    last_streak_run_date: Optional[str] = None
    lease_holder: Optional[str] = None
    lease_expires_at_ms: Optional[int] = None
    lease_active: bool = False
