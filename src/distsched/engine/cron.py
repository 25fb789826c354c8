from __future__ import annotations

"""
Quartz-style cron expressions.

Dialect
-------
Six or seven whitespace-separated fields::

    seconds  minutes  hours  day-of-month  month  day-of-week  [year]
    0-59     0-59     0-23   1-31          1-12   1-7          1970-2199
                                           JAN-DEC SUN-SAT

Each field accepts ``*``, single values, ranges ``a-b``, lists ``a,b,c`` and steps
``*/n``, ``a/n``, ``a-b/n``. Day-of-week counts from Sunday = 1. Ranges whose
start is greater than their end wrap around the field (``FRI-MON``, ``22-2``),
except in the year field.

``?`` ("no specific value") is allowed in day-of-month and day-of-week only. When
one of the two day fields is restricted the other should be ``?``; a ``*`` there is
treated the same way. Restricting both, or setting both to ``?``, is rejected.

Quartz extensions ``L``, ``W`` and ``#`` are not supported and fail to parse.
Expressions are evaluated on the wall clock of a caller-supplied time zone.
"""

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import ClassVar

from ..api.errors import InvalidScheduleSpec

MIN_YEAR = 1970
MAX_YEAR = 2199

_MONTH_NAMES = {
    name: i + 1
    for i, name in enumerate(("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"))
}
_DOW_NAMES = {name: i + 1 for i, name in enumerate(("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"))}

_TOKEN_RE = re.compile(r"^(\*|[0-9A-Z]+(?:-[0-9A-Z]+)?)(?:/([0-9]+))?$")


@dataclass(frozen=True)
class _Field:
    name: str
    lo: int
    hi: int
    names: dict[str, int] | None = None
    wraps: bool = True

    def value(self, raw: str) -> int:
        if self.names and raw in self.names:
            return self.names[raw]
        if not raw.isdigit():
            raise InvalidScheduleSpec(f"{self.name}: invalid value {raw!r}")
        v = int(raw)
        if not (self.lo <= v <= self.hi):
            raise InvalidScheduleSpec(f"{self.name}: {v} out of range {self.lo}-{self.hi}")
        return v

    def expand(self, start: int, end: int, step: int) -> set[int]:
        if start <= end:
            return set(range(start, end + 1, step))
        if not self.wraps:
            raise InvalidScheduleSpec(f"{self.name}: range {start}-{end} is reversed")
        seq = list(range(start, self.hi + 1)) + list(range(self.lo, end + 1))
        return set(seq[::step])

    def parse(self, text: str) -> frozenset[int]:
        out: set[int] = set()
        for part in text.split(","):
            m = _TOKEN_RE.match(part)
            if not m:
                raise InvalidScheduleSpec(f"{self.name}: cannot parse {part!r}")
            base, step_raw = m.group(1), m.group(2)
            step = 1
            if step_raw is not None:
                step = int(step_raw)
                if step <= 0:
                    raise InvalidScheduleSpec(f"{self.name}: step must be positive")
            if base == "*":
                start, end = self.lo, self.hi
            elif "-" in base:
                a, b = base.split("-", 1)
                start, end = self.value(a), self.value(b)
            else:
                start = self.value(base)
                # "a/n" runs from a to the end of the field
                end = self.hi if step_raw is not None else start
            out |= self.expand(start, end, step)
        if not out:
            raise InvalidScheduleSpec(f"{self.name}: empty value set")
        return frozenset(out)


_SECONDS = _Field("seconds", 0, 59)
_MINUTES = _Field("minutes", 0, 59)
_HOURS = _Field("hours", 0, 23)
_DOM = _Field("day-of-month", 1, 31)
_MONTHS = _Field("month", 1, 12, _MONTH_NAMES)
_DOW = _Field("day-of-week", 1, 7, _DOW_NAMES)
_YEARS = _Field("year", MIN_YEAR, MAX_YEAR, wraps=False)


def _quartz_dow(d: datetime) -> int:
    # python: Mon=0..Sun=6 -> quartz: Sun=1..Sat=7
    return (d.weekday() + 1) % 7 + 1


def _next_in(values: frozenset[int], current: int) -> int | None:
    candidates = [v for v in values if v > current]
    return min(candidates) if candidates else None


@dataclass(frozen=True)
class CronExpression:
    """A parsed cron expression. Build with `CronExpression.parse(text)`."""

    expression: str
    seconds: frozenset[int]
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int] | None  # None: unconstrained
    months: frozenset[int]
    days_of_week: frozenset[int] | None  # None: unconstrained
    years: frozenset[int] | None  # None: any year

    _FIELD_COUNTS: ClassVar[tuple[int, ...]] = (6, 7)

    @classmethod
    def parse(cls, text: str) -> CronExpression:
        if not isinstance(text, str) or not text.strip():
            raise InvalidScheduleSpec("cron expression must be a non-empty string")
        parts = text.strip().upper().split()
        if len(parts) not in cls._FIELD_COUNTS:
            raise InvalidScheduleSpec(f"cron expression must have 6 or 7 fields, got {len(parts)}")

        sec, minute, hour, dom, month, dow = parts[:6]
        year = parts[6] if len(parts) == 7 else None

        for name, raw in (("seconds", sec), ("minutes", minute), ("hours", hour), ("month", month)):
            if "?" in raw:
                raise InvalidScheduleSpec(f"{name}: '?' is only allowed in day fields")
        if year is not None and "?" in year:
            raise InvalidScheduleSpec("year: '?' is only allowed in day fields")

        if dom == "?" and dow == "?":
            raise InvalidScheduleSpec("day-of-month and day-of-week cannot both be '?'")
        dom_free = dom in ("?", "*")
        dow_free = dow in ("?", "*")
        if not dom_free and not dow_free:
            raise InvalidScheduleSpec("restrict either day-of-month or day-of-week, and set the other to '?'")

        return cls(
            expression=" ".join(parts),
            seconds=_SECONDS.parse(sec),
            minutes=_MINUTES.parse(minute),
            hours=_HOURS.parse(hour),
            days_of_month=None if dom_free else _DOM.parse(dom),
            months=_MONTHS.parse(month),
            days_of_week=None if dow_free else _DOW.parse(dow),
            years=None if year is None or year == "*" else _YEARS.parse(year),
        )

    # ---- matching

    def _day_matches(self, d: datetime) -> bool:
        if self.days_of_month is not None and d.day not in self.days_of_month:
            return False
        if self.days_of_week is not None and _quartz_dow(d) not in self.days_of_week:
            return False
        return True

    def _next_local(self, t: datetime) -> datetime | None:
        """
        First naive wall-clock instant >= `t` matching every field,
        or None when there is none before MAX_YEAR ends.
        """
        while t.year <= MAX_YEAR:
            if self.years is not None and t.year not in self.years:
                ny = _next_in(self.years, t.year)
                if ny is None:
                    return None
                t = datetime(ny, 1, 1)
                continue
            if t.month not in self.months:
                nm = _next_in(self.months, t.month)
                t = datetime(t.year, nm, 1) if nm is not None else datetime(t.year + 1, 1, 1)
                continue
            if not self._day_matches(t):
                t = datetime(t.year, t.month, t.day) + timedelta(days=1)
                continue
            if t.hour not in self.hours:
                nh = _next_in(self.hours, t.hour)
                if nh is None:
                    t = datetime(t.year, t.month, t.day) + timedelta(days=1)
                else:
                    t = t.replace(hour=nh, minute=0, second=0)
                continue
            if t.minute not in self.minutes:
                nmin = _next_in(self.minutes, t.minute)
                if nmin is None:
                    t = t.replace(minute=0, second=0) + timedelta(hours=1)
                else:
                    t = t.replace(minute=nmin, second=0)
                continue
            if t.second not in self.seconds:
                ns = _next_in(self.seconds, t.second)
                if ns is None:
                    t = t.replace(second=0) + timedelta(minutes=1)
                else:
                    t = t.replace(second=ns)
                continue
            return t
        return None

    def next_after(self, now: datetime, tz: tzinfo) -> datetime | None:
        """
        Next instant strictly after `now` (timezone-aware) that matches the
        expression on the wall clock of `tz`. Returns None if it never fires again.
        """
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")
        local = now.astimezone(tz).replace(tzinfo=None, microsecond=0) + timedelta(seconds=1)
        while True:
            t = self._next_local(local)
            if t is None:
                return None
            # DST folds/gaps can map a later wall time onto an earlier instant;
            # inside a fold the second pass (fold=1) is the later one
            after = now.astimezone(UTC)
            for fold in (0, 1):
                candidate = t.replace(tzinfo=tz, fold=fold)
                if candidate.astimezone(UTC) > after:
                    return candidate
            local = t + timedelta(seconds=1)

    def __str__(self) -> str:
        return self.expression


def validate_cron(text: str) -> CronExpression:
    """Parse or raise `InvalidScheduleSpec`."""
    return CronExpression.parse(text)
