"""Streak processing errors. Lease contention is not an error: begin_run returns None."""


class StreakProcessingError(Exception):
    pass


class StreakWriteConflict(StreakProcessingError):
    """A guarded streak write found a different last_date than the one read."""

    def __init__(self, scope: str, expected: int, matched: int):
        self.scope = scope
        self.expected = expected
        self.matched = matched
        super().__init__(f"{scope}: {matched} of {expected} guarded writes matched")


class LeaseContentionError(StreakProcessingError):
    """Compare-and-swap on the attendance record kept losing to other writers."""


class InvalidStoredDay(StreakProcessingError):
    """A persisted day is not a YYYY-MM-DD string."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"stored day {value!r} is not YYYY-MM-DD")
