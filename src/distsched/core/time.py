from __future__ import annotations

"""
distsched.core.time
===================

Two readings of time are used by the scheduler:
- wall time (`now_dt`, aware UTC) decides when triggers are due;
- monotonic milliseconds (`mono_ms`) measure response deadlines, which must not
  jump when the wall clock is adjusted.

Components take a `Clock` so tests can drive triggers with `ManualClock`.
"""

import time
from datetime import UTC, datetime, timedelta
from typing import Protocol

from .types import Millis


class Clock(Protocol):
    def now_dt(self) -> datetime: ...
    def mono_ms(self) -> Millis: ...


class SystemClock:
    def now_dt(self) -> datetime:
        return datetime.now(UTC)

    def mono_ms(self) -> Millis:
        return time.monotonic_ns() // 1_000_000


class ManualClock:
    """
    Wall time that moves only when told to. Monotonic time follows it, so a test
    that advances the clock past a deadline sees both readings move together.
    """

    def __init__(self, start: datetime | None = None) -> None:
        start = start or datetime(2030, 1, 1, tzinfo=UTC)
        if start.tzinfo is None:
            raise ValueError("ManualClock needs an aware start time")
        self._wall = start.astimezone(UTC)
        self._origin = self._wall

    def now_dt(self) -> datetime:
        return self._wall

    def mono_ms(self) -> Millis:
        return int((self._wall - self._origin) / timedelta(milliseconds=1))

    def advance(self, ms: Millis) -> datetime:
        if ms < 0:
            raise ValueError("time only moves forward")
        self._wall += timedelta(milliseconds=ms)
        return self._wall

    def set(self, when: datetime) -> None:
        """Jump to `when` (never backwards)."""
        self.advance(int((when - self._wall) / timedelta(milliseconds=1)))
