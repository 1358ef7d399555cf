"""Lifecycle hooks — the host's entry points for turning domain changes into bus events."""

from __future__ import annotations

import logging
from typing import Any

from cadence.automations.events import EventBus
from cadence.automations.models import LIFECYCLE_EVENTS, TriggerType

logger = logging.getLogger(__name__)

EXERCISE_LOG_CREATED = "exercise.log.created"
EXERCISE_GOAL_ACHIEVED = "exercise.goal.achieved"
JOURNAL_ENTRY_CREATED = "journal.entry.created"
JOURNAL_ENTRY_UPDATED = "journal.entry.updated"


class LifecycleHooks:
    """Emits lifecycle events on the bus for the engine to evaluate.

    The host calls these after persisting a change. Each call awaits every
    subscriber, so when it returns the matching rules have been evaluated
    and their actions dispatched.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def on_task_created(self, task: dict[str, Any]) -> None:
        await self._emit_task(TriggerType.TASK_CREATED, {"task": task})

    async def on_task_completed(self, task: dict[str, Any]) -> None:
        await self._emit_task(TriggerType.TASK_COMPLETED, {"task": task})

    async def on_task_updated(
        self, task: dict[str, Any], previous_task: dict[str, Any] | None = None
    ) -> None:
        await self._emit_task(
            TriggerType.TASK_UPDATED, {"task": task, "previousTask": previous_task}
        )

    async def _emit_task(self, trigger: TriggerType, payload: dict[str, Any]) -> None:
        payload["triggerType"] = trigger.value
        await self._bus.emit(LIFECYCLE_EVENTS[trigger], payload)

    # ------------------------------------------------------------------
    # Exercise and journal
    # ------------------------------------------------------------------

    async def on_exercise_log_created(self, exercise_log: dict[str, Any]) -> None:
        await self.emit_custom_event(EXERCISE_LOG_CREATED, {"exerciseLog": exercise_log})

    async def on_exercise_goal_achieved(self, goal: dict[str, Any], progress: float) -> None:
        await self.emit_custom_event(EXERCISE_GOAL_ACHIEVED, {"goal": goal, "progress": progress})

    async def on_journal_entry_created(self, entry: dict[str, Any]) -> None:
        await self.emit_custom_event(JOURNAL_ENTRY_CREATED, {"journalEntry": entry})

    async def on_journal_entry_updated(self, entry: dict[str, Any]) -> None:
        await self.emit_custom_event(JOURNAL_ENTRY_UPDATED, {"journalEntry": entry})

    # ------------------------------------------------------------------
    # Generic entities
    # ------------------------------------------------------------------

    async def on_entity_created(self, kind: str, entity: dict[str, Any]) -> None:
        """Emit ``<kind>.created`` for entities without a dedicated hook."""
        await self._emit_entity(kind, "created", entity)

    async def on_entity_completed(self, kind: str, entity: dict[str, Any]) -> None:
        await self._emit_entity(kind, "completed", entity)

    async def on_entity_updated(self, kind: str, entity: dict[str, Any]) -> None:
        await self._emit_entity(kind, "updated", entity)

    async def _emit_entity(self, kind: str, change: str, entity: dict[str, Any]) -> None:
        if kind == "task":
            trigger = TriggerType(f"task-{change}")
            await self._emit_task(trigger, {"task": entity})
            return
        await self.emit_custom_event(f"{kind}.{change}", {kind: entity})

    async def emit_custom_event(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Emit an arbitrary event for ``event-based`` rules listening on *event_type*."""
        payload = {**(data or {}), "triggerType": TriggerType.EVENT_BASED.value}
        logger.debug("Emitting %s", event_type)
        await self._bus.emit(event_type, payload)
