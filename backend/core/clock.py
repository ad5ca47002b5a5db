"""
Clock abstraction.

All "now" reads in the ledger routers and in the bar client go through a
Clock so tests can pin time (session expiry is `now >= expected_end_at`).
Datetimes are naive UTC, matching the DateTime columns.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self._now = self._now + timedelta(seconds=seconds, **kwargs)
        return self._now


system_clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency. Tests override it with a FixedClock."""
    return system_clock


def session_expected_end(opened_at: Optional[datetime], time_limit_minutes: Optional[int]) -> Optional[datetime]:
    """opened_at + minutes x 60000 ms."""
    if opened_at is None or time_limit_minutes is None:
        return None
    return opened_at + timedelta(milliseconds=int(time_limit_minutes) * 60000)


def is_session_expired(expected_end_at: Optional[datetime], now: datetime) -> bool:
    if expected_end_at is None:
        return False
    return now >= expected_end_at


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
