from __future__ import annotations

from datetime import datetime, timedelta, timezone

from chronojob.jobs.backoff import ExponentialBackoff, FixedBackoff, LinearBackoff
from chronojob.jobs.recurrence import (
    CronRule,
    IntervalRule,
    InvalidRecurrenceRuleError,
    next_run_after,
    parse_recurrence_rule,
)

ANCHOR = datetime(2026, 1, 5, 7, 0, tzinfo=timezone.utc)


def test_interval_rules_parse_every_spelling() -> None:
    assert parse_recurrence_rule("every 5m") == IntervalRule(text="every 5m", seconds=300)
    assert parse_recurrence_rule("@every 90s").seconds == 90
    assert parse_recurrence_rule("every 2h").seconds == 7200
    assert parse_recurrence_rule("Every 1D").seconds == 86400
    assert parse_recurrence_rule("interval:45").seconds == 45
    assert next_run_after("every 5m", ANCHOR) == ANCHOR + timedelta(minutes=5)


def test_cron_and_alias_rules_fire_strictly_after_anchor() -> None:
    weekly = parse_recurrence_rule("0 7 * * 1")
    assert isinstance(weekly, CronRule)
    # ANCHOR is itself a Monday 07:00, so the next fire is one week later
    assert weekly.next_after(ANCHOR) == ANCHOR + timedelta(days=7)

    assert next_run_after("0 7 * * 0", ANCHOR) == datetime(2026, 1, 11, 7, 0, tzinfo=timezone.utc)
    assert next_run_after("0 7 * * 7", ANCHOR) == datetime(2026, 1, 11, 7, 0, tzinfo=timezone.utc)
    assert next_run_after("30 6 * * 1-5", ANCHOR) == datetime(2026, 1, 6, 6, 30, tzinfo=timezone.utc)
    assert next_run_after("weekly", ANCHOR) == datetime(2026, 1, 11, 0, 0, tzinfo=timezone.utc)
    assert next_run_after("daily", ANCHOR) == datetime(2026, 1, 6, 0, 0, tzinfo=timezone.utc)
    assert next_run_after("@hourly", ANCHOR) == datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)
    assert next_run_after("monthly", ANCHOR) == datetime(2026, 2, 1, 0, 0, tzinfo=timezone.utc)


def test_restricted_day_of_month_and_weekday_fire_on_either() -> None:
    # the 1st of each month or any Monday
    rule = "0 0 1 * 1"
    assert next_run_after(rule, datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)) == datetime(
        2026, 1, 5, 0, 0, tzinfo=timezone.utc
    )
    assert next_run_after(rule, datetime(2026, 1, 26, 0, 0, tzinfo=timezone.utc)) == datetime(
        2026, 2, 1, 0, 0, tzinfo=timezone.utc
    )
    # a wildcard day-of-month keeps plain weekday matching
    assert next_run_after("0 0 */1 * 1", datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)) == datetime(
        2026, 1, 5, 0, 0, tzinfo=timezone.utc
    )


def test_naive_moments_are_treated_as_utc() -> None:
    naive = datetime(2026, 1, 5, 7, 0)
    assert next_run_after("every 1h", naive) == datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)


def test_invalid_rules_are_rejected() -> None:
    for raw in ("", "   ", "every 0m", "interval:0", "interval:abc", "every fortnight", "61 * * * *", "0 0 * * 9"):
        try:
            parse_recurrence_rule(raw)
        except InvalidRecurrenceRuleError:
            continue
        raise AssertionError(f"expected InvalidRecurrenceRuleError for {raw!r}")


def test_exponential_backoff_doubles_until_cap() -> None:
    backoff = ExponentialBackoff(base_seconds=30, max_seconds=300)
    assert [backoff.delay(attempt).total_seconds() for attempt in range(1, 6)] == [30, 60, 120, 240, 300]
    assert backoff.delay(500) == timedelta(seconds=300)


def test_fixed_and_linear_backoff() -> None:
    assert FixedBackoff(seconds=15).delay(7) == timedelta(seconds=15)
    linear = LinearBackoff(base_seconds=10, max_seconds=25)
    assert [linear.delay(attempt).total_seconds() for attempt in (1, 2, 3)] == [10, 20, 25]
