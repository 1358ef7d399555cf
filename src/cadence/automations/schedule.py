"""Schedule maths for time-based rules — pure Python, no timers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cadence.automations.models import Schedule, ScheduleType
from cadence.errors import ScheduleError

DAY_SECONDS = 24 * 60 * 60

# Monthly recurrence is approximate: every 30 days after the first fire
_RECURRENCE_SECONDS: dict[ScheduleType, float] = {
    ScheduleType.DAILY: DAY_SECONDS,
    ScheduleType.WEEKLY: 7 * DAY_SECONDS,
    ScheduleType.MONTHLY: 30 * DAY_SECONDS,
}

DEFAULT_POLL_SECONDS = 60.0

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass
class SchedulePlan:
    """When a schedule first fires and how it recurs."""

    next_fire: datetime
    delay_seconds: float
    interval_seconds: float
    polling: bool = False


class ScheduleParser:
    """Turns a rule schedule into an initial delay and a recurrence interval."""

    @staticmethod
    def parse_time(spec: str) -> tuple[int, int]:
        """Parse ``HH:mm`` into ``(hour, minute)``.

        Raises:
            ScheduleError: If the spec is not a valid 24h clock time.
        """
        match = _TIME_RE.match((spec or "").strip())
        if not match:
            msg = f"Invalid schedule time: {spec!r}. Expected 'HH:mm'."
            raise ScheduleError(msg)
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            msg = f"Schedule time out of range: {spec!r}"
            raise ScheduleError(msg)
        return hour, minute

    @staticmethod
    def next_fire(schedule: Schedule, now: datetime) -> datetime:
        """Wall-clock time of the first fire as seen from *now*.

        Daily, weekly and monthly schedules all fire first at the next
        occurrence of ``time`` today or tomorrow. Custom schedules start
        polling immediately.
        """
        if schedule.type is ScheduleType.CUSTOM:
            return now

        hour, minute = ScheduleParser.parse_time(schedule.time or "")
        target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if target <= now:
            target += timedelta(days=1)
        return target

    @staticmethod
    def initial_delay(schedule: Schedule, now: datetime) -> float:
        """Real seconds from *now* until the first fire.

        Naive datetimes are local time. The delay spans any DST change in
        between, so 09:00 after a spring-forward night is one hour nearer.
        """
        return _elapsed(now, ScheduleParser.next_fire(schedule, now))

    @staticmethod
    def interval(schedule: Schedule, poll_seconds: float = DEFAULT_POLL_SECONDS) -> float:
        """Seconds between fires after the first one."""
        if schedule.type is ScheduleType.CUSTOM:
            return poll_seconds
        return _RECURRENCE_SECONDS[schedule.type]

    @staticmethod
    def plan(
        schedule: Schedule,
        now: datetime,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ) -> SchedulePlan:
        """Compute the full plan for *schedule* as seen from *now*."""
        next_fire = ScheduleParser.next_fire(schedule, now)
        return SchedulePlan(
            next_fire=next_fire,
            delay_seconds=_elapsed(now, next_fire),
            interval_seconds=ScheduleParser.interval(schedule, poll_seconds),
            polling=schedule.type is ScheduleType.CUSTOM,
        )


def _elapsed(start: datetime, end: datetime) -> float:
    # Through UTC: same-zone aware subtraction ignores offset changes
    return (end.astimezone(timezone.utc) - start.astimezone(timezone.utc)).total_seconds()
