"""
Clock abstractions.

Everything that compares against "now" (broadcast windows, start time
clamping, log file names) asks an injected clock so tests can pin time.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Protocol implemented by clock providers."""

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Deterministic clock; time only moves when :meth:`advance` is called."""

    def __init__(self, current: datetime):
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float) -> datetime:
        self._current = self._current + timedelta(seconds=seconds)
        return self._current


system_clock = SystemClock()
