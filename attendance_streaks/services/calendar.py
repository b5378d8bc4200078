"""Date helpers for the school calendar (dates only, in the configured zone)."""
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterator

from attendance_streaks.models.subject import WEEKDAY_ABBREVIATIONS


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def local_today(moment: datetime, tz: tzinfo) -> date:
    return moment.astimezone(tz).date()


def local_yesterday(moment: datetime, tz: tzinfo) -> date:
    return local_today(moment, tz) - timedelta(days=1)


def weekday_abbr(day: date) -> str:
    return WEEKDAY_ABBREVIATIONS[day.weekday()]


def iter_days(start: date, end: date) -> Iterator[date]:
    """Inclusive, ascending."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
