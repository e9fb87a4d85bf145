"""
Schedule evaluation.

A job's schedule text is either a cron expression (evaluated with croniter)
or an ISO-8601 timestamp for a one-time job. Everything here is pure; the
state machine only ever asks "when is the next fire time after T".
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from croniter import croniter

from ..exceptions import InvalidScheduleError


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CronSchedule:
    expression: str

    @property
    def recurring(self) -> bool:
        return True


@dataclass(frozen=True)
class OneTimeSchedule:
    run_at: datetime

    @property
    def recurring(self) -> bool:
        return False


Schedule = Union[CronSchedule, OneTimeSchedule]


def parse_schedule(text: str) -> Schedule:
    text = (text or "").strip()
    if not text:
        raise InvalidScheduleError(text, "empty schedule")
    if croniter.is_valid(text):
        return CronSchedule(text)
    try:
        run_at = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidScheduleError(text, "neither a cron expression nor an ISO-8601 timestamp") from None
    return OneTimeSchedule(as_utc(run_at))


def next_fire_time(schedule: Schedule, after: datetime) -> Optional[datetime]:
    """First fire time strictly after ``after``; None when the schedule is exhausted."""
    after = as_utc(after)
    if isinstance(schedule, CronSchedule):
        return as_utc(croniter(schedule.expression, after).get_next(datetime))
    if schedule.run_at > after:
        return schedule.run_at
    return None


def first_run_at(schedule: Schedule, now: datetime) -> datetime:
    """
    Initial ``next_run_at`` for a new job. A one-time job whose timestamp is
    already in the past is due immediately rather than never.
    """
    if isinstance(schedule, OneTimeSchedule):
        return schedule.run_at
    fire = next_fire_time(schedule, now)
    if fire is None:
        raise InvalidScheduleError(schedule.expression, "expression never fires")
    return fire
