"""Scheduler — one cancellable timer per time-based rule."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum

from cadence.automations.models import AutomationRule
from cadence.automations.schedule import DEFAULT_POLL_SECONDS, SchedulePlan, ScheduleParser
from cadence.errors import ScheduleError

logger = logging.getLogger(__name__)

FireCallback = Callable[[AutomationRule], Awaitable[None]]


class TimerState(str, Enum):
    UNSCHEDULED = "unscheduled"
    ARMED = "armed"  # single shot to the first occurrence
    RECURRING = "recurring"
    POLLING = "polling"  # custom schedules


class RuleTimer:
    """A cancellable timer that fires a rule, then re-arms on its interval.

    The timer is driven by the event loop's ``call_at``; each fire runs the
    callback in its own task so a slow evaluation never delays re-arming.
    """

    def __init__(
        self,
        rule: AutomationRule,
        plan: SchedulePlan,
        callback: FireCallback,
        loop: asyncio.AbstractEventLoop,
        tasks: set[asyncio.Task[None]],
    ) -> None:
        self.rule_id = rule.id
        self.plan = plan
        self.fire_count = 0
        self._rule = rule
        self._callback = callback
        self._loop = loop
        self._tasks = tasks
        self._handle: asyncio.TimerHandle | None = None
        self._next_when: float | None = None
        self._state = TimerState.UNSCHEDULED

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state is not TimerState.UNSCHEDULED

    def seconds_until_fire(self) -> float | None:
        """Seconds until the next fire, or None if cancelled."""
        if not self.active or self._next_when is None:
            return None
        return max(0.0, self._next_when - self._loop.time())

    def arm(self) -> None:
        """Start the timer towards the first occurrence."""
        self._next_when = self._loop.time() + self.plan.delay_seconds
        self._handle = self._loop.call_at(self._next_when, self._on_timer)
        self._state = TimerState.POLLING if self.plan.polling else TimerState.ARMED

    def cancel(self) -> None:
        """Release the timer handle. Takes effect immediately."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._state = TimerState.UNSCHEDULED

    def _on_timer(self) -> None:
        if not self.active or self._next_when is None:
            return

        # Re-arm before firing so a failing fire cannot stop the recurrence
        now = self._loop.time()
        interval = self.plan.interval_seconds
        self._next_when += interval
        if self._next_when <= now:
            # Loop fell behind (suspend, long block): skip missed occurrences
            missed = int((now - self._next_when) // interval) + 1
            self._next_when += missed * interval
        self._handle = self._loop.call_at(self._next_when, self._on_timer)
        if self._state is TimerState.ARMED:
            self._state = TimerState.RECURRING

        self.fire_count += 1
        task = self._loop.create_task(self._fire())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fire(self) -> None:
        try:
            await self._callback(self._rule)
        except Exception:
            logger.exception("Scheduled fire failed for rule %s", self.rule_id)


class Scheduler:
    """Owns the timers of every scheduled rule.

    ``schedule`` always tears down any existing timer for the rule and
    computes a new one from the current time; live timers are never
    mutated in place.

    Args:
        on_fire: Coroutine called with the rule each time its timer fires.
        clock: Local wall-clock source, injectable for tests.
        poll_interval_seconds: Polling period for custom schedules.
        loop: Event loop to arm timers on (default: the running loop).
    """

    def __init__(
        self,
        on_fire: FireCallback,
        clock: Callable[[], datetime] | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_SECONDS,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if poll_interval_seconds <= 0:
            msg = f"poll_interval_seconds must be positive, got {poll_interval_seconds}"
            raise ValueError(msg)
        self._on_fire = on_fire
        self._clock = clock or datetime.now
        self._poll_interval = poll_interval_seconds
        self._loop = loop
        self._timers: dict[str, RuleTimer] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def preview(self, rule: AutomationRule, now: datetime | None = None) -> SchedulePlan | None:
        """Compute the plan *rule* would be armed with, without arming it."""
        if not rule.enabled or not rule.trigger.type.is_scheduled:
            return None
        schedule = rule.trigger.schedule
        if schedule is None:
            return None
        return ScheduleParser.plan(schedule, now or self._clock(), self._poll_interval)

    def schedule(self, rule: AutomationRule) -> RuleTimer | None:
        """(Re)arm the timer for *rule*. Returns None if nothing was armed."""
        self.unschedule(rule.id)

        try:
            plan = self.preview(rule)
        except ScheduleError:
            logger.exception("Cannot schedule rule %s", rule.id)
            return None
        if plan is None:
            if rule.enabled and rule.trigger.type.is_scheduled:
                logger.warning("Time-based rule %s has no usable schedule", rule.id)
            return None

        loop = self._loop or asyncio.get_running_loop()
        timer = RuleTimer(rule, plan, self._on_fire, loop, self._tasks)
        timer.arm()
        self._timers[rule.id] = timer
        logger.info(
            "Scheduled rule %s: first fire in %.0fs, every %.0fs",
            rule.id,
            plan.delay_seconds,
            plan.interval_seconds,
        )
        return timer

    def unschedule(self, rule_id: str) -> bool:
        """Cancel the timer for *rule_id*. Returns True if one existed."""
        timer = self._timers.pop(rule_id, None)
        if timer is None:
            return False
        timer.cancel()
        logger.debug("Unscheduled rule %s", rule_id)
        return True

    def get_timer(self, rule_id: str) -> RuleTimer | None:
        return self._timers.get(rule_id)

    def has_timer(self, rule_id: str) -> bool:
        return rule_id in self._timers

    def state(self, rule_id: str) -> TimerState:
        timer = self._timers.get(rule_id)
        return timer.state if timer else TimerState.UNSCHEDULED

    def list_timers(self) -> list[RuleTimer]:
        return list(self._timers.values())

    def cancel_all(self) -> None:
        """Cancel every timer."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    async def shutdown(self) -> None:
        """Cancel every timer and any fire still in flight."""
        self.cancel_all()
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.debug("Scheduler shut down (%d in-flight fires cancelled)", len(pending))

    def __len__(self) -> int:
        return len(self._timers)
