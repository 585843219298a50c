"""Recurrence rules for scheduled jobs.

Three spellings are accepted:

* intervals: ``every 5m``, ``@every 90s``, ``every 2h``, ``every 1d`` or
  ``interval:300`` (seconds);
* aliases: ``hourly``, ``daily``, ``weekly``, ``monthly`` and their ``@`` forms;
* five-field crontab expressions such as ``0 7 * * 1``, evaluated in UTC.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

_INTERVAL_PATTERN = re.compile(r"^@?every\s+(\d+)\s*([smhd])$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_ALIASES = {
    "hourly": "0 * * * *",
    "daily": "0 0 * * *",
    "weekly": "0 0 * * 0",
    "monthly": "0 0 1 * *",
}
_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


class InvalidRecurrenceRuleError(ValueError):
    pass


class RecurrenceRule(Protocol):
    text: str

    def next_after(self, moment: datetime) -> datetime: ...


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class IntervalRule:
    text: str
    seconds: int

    def next_after(self, moment: datetime) -> datetime:
        return _as_utc(moment) + timedelta(seconds=self.seconds)


@dataclass(frozen=True)
class CronRule:
    text: str
    expression: str
    trigger: BaseTrigger

    def next_after(self, moment: datetime) -> datetime:
        anchor = _as_utc(moment)
        # previous_fire_time == now makes the trigger search strictly after the anchor
        fire_time = self.trigger.get_next_fire_time(anchor, anchor)
        if fire_time is None:
            raise InvalidRecurrenceRuleError(f"Recurrence rule never fires again: {self.text}")
        return _as_utc(fire_time)


def _translate_day_of_week(field: str) -> str:
    """Rewrite a numeric crontab day-of-week field (Sunday is 0 or 7) as day names.

    CronTrigger numbers days from Monday, so numbers are never passed through.
    """
    if field == "*" or any(ch.isalpha() for ch in field):
        return field

    days: set[int] = set()
    for part in field.split(","):
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            first, last = base.split("-", 1)
            start, end = int(first), int(last)
        else:
            start = int(base)
            end = 7 if step_text else start
        if step <= 0 or not 0 <= start <= end <= 7:
            raise ValueError(f"day-of-week field out of range: {field}")
        days.update(day % 7 for day in range(start, end + 1, step))
    return ",".join(_DAY_NAMES[day] for day in sorted(days))


def _build_cron_trigger(expression: str) -> BaseTrigger:
    fields = expression.split()
    if len(fields) != 5:
        return CronTrigger.from_crontab(expression, timezone="UTC")

    minute, hour, day, month, day_of_week = fields
    weekdays = _translate_day_of_week(day_of_week)
    if day.startswith("*") or day_of_week.startswith("*"):
        return CronTrigger.from_crontab(f"{minute} {hour} {day} {month} {weekdays}", timezone="UTC")

    # both day fields restricted: crontab fires when either one matches
    return OrTrigger(
        [
            CronTrigger.from_crontab(f"{minute} {hour} {day} {month} *", timezone="UTC"),
            CronTrigger.from_crontab(f"{minute} {hour} * {month} {weekdays}", timezone="UTC"),
        ]
    )


def parse_recurrence_rule(raw: str) -> RecurrenceRule:
    text = raw.strip()
    if not text:
        raise InvalidRecurrenceRuleError("Recurrence rule cannot be blank")
    lowered = text.lower()

    if lowered.startswith("interval:"):
        value = lowered.split(":", 1)[1].strip()
        if not value.isdigit() or int(value) <= 0:
            raise InvalidRecurrenceRuleError(f"Interval must be a positive number of seconds: {raw}")
        return IntervalRule(text=text, seconds=int(value))

    match = _INTERVAL_PATTERN.match(lowered)
    if match is not None:
        amount = int(match.group(1))
        if amount <= 0:
            raise InvalidRecurrenceRuleError(f"Interval must be positive: {raw}")
        return IntervalRule(text=text, seconds=amount * _UNIT_SECONDS[match.group(2).lower()])

    expression = _ALIASES.get(lowered.lstrip("@"), text)
    try:
        trigger = _build_cron_trigger(expression)
    except ValueError as exc:
        raise InvalidRecurrenceRuleError(f"Invalid recurrence rule: {raw} ({exc})") from exc
    return CronRule(text=text, expression=expression, trigger=trigger)


def next_run_after(rule_text: str, moment: datetime) -> datetime:
    rule = parse_recurrence_rule(rule_text)
    next_run = rule.next_after(moment)
    if next_run <= _as_utc(moment):
        raise InvalidRecurrenceRuleError(f"Recurrence rule did not advance past {moment.isoformat()}: {rule_text}")
    return next_run
