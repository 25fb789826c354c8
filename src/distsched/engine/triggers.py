from __future__ import annotations

"""
Trigger specs and fire-time computation.

A job carries exactly one trigger spec: a single absolute instant (`OneShot`) or a
recurring cron schedule (`Cron`). `compute_next_fire_time` is deterministic: it
depends only on the trigger, `now` and the time zone.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from typing import Union

from ..api.errors import InvalidScheduleSpec
from .cron import CronExpression


def ensure_aware(dt: datetime, tz: tzinfo) -> datetime:
    """Naive datetimes are wall-clock times in `tz`; aware ones are kept."""
    return dt.replace(tzinfo=tz) if dt.tzinfo is None else dt


@dataclass(frozen=True)
class OneShot:
    fire_at: datetime

    recurring = False

    def describe(self) -> str:
        return self.fire_at.isoformat()


@dataclass(frozen=True)
class Cron:
    expression: CronExpression = field(compare=False)
    text: str = ""

    recurring = True

    @classmethod
    def parse(cls, text: str) -> Cron:
        expr = CronExpression.parse(text)
        return cls(expression=expr, text=expr.expression)

    def describe(self) -> str:
        return self.text


TriggerSpec = Union[OneShot, Cron]


def build_trigger_spec(
    *,
    fire_at: datetime | None = None,
    cron: str | None = None,
    tz: tzinfo = UTC,
) -> TriggerSpec:
    """
    Pick the trigger spec from optional inputs. A non-blank cron expression wins
    over a fire time; at least one of the two is required.
    """
    if cron is not None and cron.strip():
        return Cron.parse(cron)
    if fire_at is not None:
        return OneShot(ensure_aware(fire_at, tz))
    raise InvalidScheduleSpec("either a schedule time or a cron expression must be provided")


def compute_next_fire_time(spec: TriggerSpec, now: datetime, tz: tzinfo = UTC) -> datetime:
    """
    One-shot: the stored instant, even if already elapsed (it fires immediately).
    Cron: the next matching instant strictly after `now`.

    Raises InvalidScheduleSpec when a cron expression has no future occurrence.
    """
    if isinstance(spec, OneShot):
        return spec.fire_at
    nxt = spec.expression.next_after(now, tz)
    if nxt is None:
        raise InvalidScheduleSpec(f"cron expression {spec.text!r} has no future fire time")
    return nxt
