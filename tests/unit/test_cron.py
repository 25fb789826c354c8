from __future__ import annotations

from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest

from distsched.api.errors import InvalidScheduleSpec
from distsched.engine.cron import CronExpression

pytestmark = pytest.mark.unit


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_top_of_every_hour():
    expr = CronExpression.parse("0 0 * * * ?")
    assert expr.next_after(_utc(2030, 1, 1, 10, 15, 30), UTC) == _utc(2030, 1, 1, 11, 0, 0)


def test_next_is_strictly_after_now():
    expr = CronExpression.parse("0 0 * * * ?")
    assert expr.next_after(_utc(2030, 1, 1, 11, 0, 0), UTC) == _utc(2030, 1, 1, 12, 0, 0)


def test_every_fifteen_seconds_step():
    expr = CronExpression.parse("*/15 * * * * ?")
    assert expr.seconds == frozenset({0, 15, 30, 45})
    assert expr.next_after(_utc(2030, 1, 1, 0, 0, 16), UTC) == _utc(2030, 1, 1, 0, 0, 30)


def test_start_slash_step_runs_to_end_of_field():
    expr = CronExpression.parse("0 5/20 * * * ?")
    assert expr.minutes == frozenset({5, 25, 45})


def test_day_of_week_names_count_from_sunday():
    expr = CronExpression.parse("0 30 9 ? * MON-FRI")
    assert expr.days_of_week == frozenset({2, 3, 4, 5, 6})
    assert expr.days_of_month is None
    # 2030-01-05 is a Saturday -> next is Monday 2030-01-07 09:30
    assert expr.next_after(_utc(2030, 1, 5, 12, 0, 0), UTC) == _utc(2030, 1, 7, 9, 30, 0)


def test_sunday_is_one():
    expr = CronExpression.parse("0 0 12 ? * 1")
    # 2030-01-06 is a Sunday
    assert expr.next_after(_utc(2030, 1, 1), UTC) == _utc(2030, 1, 6, 12, 0, 0)


def test_wrapping_range_in_day_of_week():
    expr = CronExpression.parse("0 0 0 ? * FRI-MON")
    assert expr.days_of_week == frozenset({6, 7, 1, 2})


def test_wrapping_range_in_hours():
    expr = CronExpression.parse("0 0 22-2 * * ?")
    assert expr.hours == frozenset({22, 23, 0, 1, 2})


def test_month_names_and_lists():
    expr = CronExpression.parse("0 0 0 1 JAN,JUL ?")
    assert expr.months == frozenset({1, 7})
    assert expr.next_after(_utc(2030, 2, 1), UTC) == _utc(2030, 7, 1)


def test_day_of_month_skips_short_months():
    expr = CronExpression.parse("0 0 0 31 * ?")
    assert expr.next_after(_utc(2030, 4, 1), UTC) == _utc(2030, 5, 31)


def test_leap_day():
    expr = CronExpression.parse("0 0 0 29 2 ?")
    assert expr.next_after(_utc(2030, 3, 1), UTC) == _utc(2032, 2, 29)


def test_year_field_limits_future():
    expr = CronExpression.parse("0 0 0 1 1 ? 2031")
    assert expr.next_after(_utc(2030, 6, 1), UTC) == _utc(2031, 1, 1)
    assert expr.next_after(_utc(2031, 6, 1), UTC) is None


def test_lowercase_is_accepted():
    expr = CronExpression.parse("0 0 12 ? * mon")
    assert expr.days_of_week == frozenset({2})
    assert str(expr) == "0 0 12 ? * MON"


def test_evaluated_on_the_wall_clock_of_the_zone():
    tz = ZoneInfo("Europe/Berlin")
    expr = CronExpression.parse("0 0 9 * * ?")
    # 2030-01-01 07:30Z is 08:30 in Berlin (UTC+1)
    nxt = expr.next_after(_utc(2030, 1, 1, 7, 30), tz)
    assert nxt.astimezone(UTC) == _utc(2030, 1, 1, 8, 0)


@pytest.mark.parametrize(
    "text",
    [
        "",
        "* * * *",
        "0 0 * * * ? 2030 extra",
        "60 * * * * ?",
        "0 60 * * * ?",
        "0 0 24 * * ?",
        "0 0 0 32 * ?",
        "0 0 0 ? 13 *",
        "0 0 0 ? * 8",
        "0 0 0 L * ?",
        "0 0 0 15W * ?",
        "0 0 0 ? * 6#3",
        "0 0 0 ? * ?",
        "0 0 0 1 * MON",
        "? 0 0 * * *",
        "0 */0 * * * ?",
        "0 0 0 1 1 ? 2040-2035",
        "0 0 0 1 1 ? 1969",
        "abc 0 0 * * ?",
    ],
)
def test_malformed_expressions_are_rejected(text):
    with pytest.raises(InvalidScheduleSpec):
        CronExpression.parse(text)


def test_both_day_fields_star_is_accepted():
    expr = CronExpression.parse("0 0 0 * * *")
    assert expr.days_of_month is None and expr.days_of_week is None


def test_naive_now_is_rejected():
    expr = CronExpression.parse("0 0 * * * ?")
    with pytest.raises(ValueError):
        expr.next_after(datetime(2030, 1, 1), UTC)


def test_second_pass_through_a_fold_moves_forward_in_time():
    tz = ZoneInfo("America/New_York")
    expr = CronExpression.parse("0 * * * * ?")
    # 2030-11-03 01:30 happens twice in New York; fold=1 is the EST pass at 06:30Z
    now = datetime(2030, 11, 3, 1, 30, tzinfo=tz, fold=1)
    assert now.astimezone(UTC) == _utc(2030, 11, 3, 6, 30)

    nxt = expr.next_after(now, tz)
    assert nxt.astimezone(UTC) == _utc(2030, 11, 3, 6, 31)


def test_first_pass_through_a_fold_keeps_the_earlier_instant():
    tz = ZoneInfo("America/New_York")
    expr = CronExpression.parse("0 * * * * ?")
    now = datetime(2030, 11, 3, 1, 30, tzinfo=tz)

    nxt = expr.next_after(now, tz)
    assert nxt.astimezone(UTC) == _utc(2030, 11, 3, 5, 31)
