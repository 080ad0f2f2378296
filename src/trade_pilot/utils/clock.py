"""Injectable time source."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current instant and calendar day."""

    def now(self) -> datetime:
        """Current timezone-aware instant."""

    def today(self) -> date:
        """Current calendar day."""


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


def next_midnight(clock: Clock) -> datetime:
    """Start of the calendar day after ``clock.today()``."""
    tomorrow = clock.today() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=clock.now().tzinfo or timezone.utc)
