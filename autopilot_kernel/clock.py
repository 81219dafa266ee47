"""
Clock — the single time source for the kernel.

Every component asks the injected clock for "now" instead of reading the
system time directly, so decision and scheduling tests can pin time.
All timestamps are naive UTC.
"""

from datetime import datetime, timedelta, timezone


class Clock:
    """Time source interface."""

    def now(self) -> datetime:
        raise NotImplementedError

    def hour(self) -> int:
        return self.now().hour


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.utcnow()


class FixedClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, current: datetime):
        self._current = current

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current

    def advance(self, **delta) -> datetime:
        """Move forward by a timedelta expressed as keyword args (minutes=5, ...)."""
        self._current = self._current + timedelta(**delta)
        return self._current


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to the kernel's naive UTC frame."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
