"""Injectable time source for billing decisions."""

from datetime import UTC, date, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def today(self) -> date:
        return self.now().date()


class FrozenClock:
    """A clock that only moves when told to (tests and backfills)."""

    def __init__(self, current: datetime | date) -> None:
        self.set(current)

    def set(self, current: datetime | date) -> None:
        if not isinstance(current, datetime):
            current = datetime(current.year, current.month, current.day, 9, 0, tzinfo=UTC)
        elif current.tzinfo is None:
            current = current.replace(tzinfo=UTC)
        self._current = current

    def advance(self, days: int = 0, seconds: float = 0) -> None:
        self._current += timedelta(days=days, seconds=seconds)

    def now(self) -> datetime:
        return self._current

    def today(self) -> date:
        return self._current.date()


__all__ = ["Clock", "FrozenClock", "SystemClock"]
