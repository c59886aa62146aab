"""
Time sources for the decision engine.

Every algorithm reads "now" through a ``TimeSource`` so that tests can
drive time explicitly instead of sleeping.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class TimeSource(ABC):
    """Supplies the current instant as a timezone-aware UTC datetime."""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(TimeSource):
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(TimeSource):
    """
    Clock that only moves when told to.

    Examples:
        >>> clock = ManualClock()
        >>> start = clock.now()
        >>> clock.advance(seconds=1.5)
        >>> (clock.now() - start).total_seconds()
        1.5
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        # Fixed starting point keeps test output stable
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> None:
        delta = timedelta(seconds=seconds, milliseconds=milliseconds)
        if delta < timedelta(0):
            raise ValueError("Clock cannot move backwards")
        with self._lock:
            self._now += delta

    def set(self, when: datetime) -> None:
        with self._lock:
            if when < self._now:
                raise ValueError("Clock cannot move backwards")
            self._now = when
