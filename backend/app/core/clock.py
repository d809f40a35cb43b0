from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    """Process-wide time source. Always returns timezone-aware UTC instants."""

    def now(self) -> datetime:
        return utcnow()


class ManualClock(Clock):
    """Clock that only moves when told to. Used for simulations and dry runs."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else utcnow()

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now

    def set(self, value: datetime) -> datetime:
        self._now = ensure_utc(value)
        return self._now
