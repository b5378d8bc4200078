"""Shared dependencies: persistence port, alert delivery and clock."""
from datetime import datetime
from typing import Annotated, Callable

from fastapi import Depends

from attendance_streaks.services.calendar import utc_now
from attendance_streaks.services.fcm import FcmAlertNotifier
from attendance_streaks.services.mongo_store import MongoStreakStore
from attendance_streaks.services.store import StreakStore
from attendance_streaks.services.streaks import AlertNotifier

_store = MongoStreakStore()
_notifier = FcmAlertNotifier()


def get_store() -> StreakStore:
    return _store


def get_notifier() -> AlertNotifier:
    return _notifier


def get_clock() -> Callable[[], datetime]:
    return utc_now


# Type aliases for route injection
Store = Annotated[StreakStore, Depends(get_store)]
Notifier = Annotated[AlertNotifier, Depends(get_notifier)]
Clock = Annotated[Callable[[], datetime], Depends(get_clock)]
