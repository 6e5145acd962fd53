"""Time source for the circulation engine.

Fine accrual, due dates and reservation expiry all read the current time
through a Clock so tests can move time forward instead of sleeping.
"""
import threading
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app


class Clock:
    """Supplies the current time."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock, truncated to whole seconds to match stored timestamps."""

    def now(self) -> datetime:
        return datetime.now().replace(microsecond=0)


class FrozenClock(Clock):
    """Manually driven clock.

    Example:
        >>> clock = FrozenClock(datetime(2024, 1, 1, 9, 0))
        >>> clock.advance(hours=5)
        >>> clock.now()
        datetime.datetime(2024, 1, 1, 14, 0)
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = (start or datetime.now()).replace(microsecond=0)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value.replace(microsecond=0)

    def advance(self, **delta) -> None:
        with self._lock:
            self._now = self._now + timedelta(**delta)


def get_clock() -> Clock:
    """Return the clock installed on the current application."""
    return current_app.extensions['clock']
