"""Tests for the lifecycle hooks."""

from __future__ import annotations

from typing import Any

import pytest

from cadence.automations.events import EventBus
from cadence.automations.hooks import LifecycleHooks


def _capture(bus: EventBus) -> list[tuple[str, Any]]:
    events: list[tuple[str, Any]] = []
    bus.subscribe_all(lambda event_type, payload: events.append((event_type, payload)))
    return events


class TestTaskHooks:
    @pytest.mark.asyncio()
    async def test_task_created(self) -> None:
        bus = EventBus()
        events = _capture(bus)
        await LifecycleHooks(bus).on_task_created({"id": "t1"})
        assert events == [("task.created", {"task": {"id": "t1"}, "triggerType": "task-created"})]

    @pytest.mark.asyncio()
    async def test_task_completed(self) -> None:
        bus = EventBus()
        events = _capture(bus)
        await LifecycleHooks(bus).on_task_completed({"id": "t1"})
        assert events[0][0] == "task.completed"
        assert events[0][1]["triggerType"] == "task-completed"

    @pytest.mark.asyncio()
    async def test_task_updated_carries_previous_state(self) -> None:
        bus = EventBus()
        events = _capture(bus)
        await LifecycleHooks(bus).on_task_updated(
            {"id": "t1", "status": "in-progress"}, {"id": "t1", "status": "pending"}
        )
        event_type, payload = events[0]
        assert event_type == "task.updated"
        assert payload["previousTask"]["status"] == "pending"
        assert payload["triggerType"] == "task-updated"


class TestDomainHooks:
    @pytest.mark.asyncio()
    async def test_exercise_log_created(self) -> None:
        bus = EventBus()
        events = _capture(bus)
        await LifecycleHooks(bus).on_exercise_log_created({"id": "l1"})
        assert events == [
            ("exercise.log.created", {"exerciseLog": {"id": "l1"}, "triggerType": "event-based"})
        ]

    @pytest.mark.asyncio()
    async def test_exercise_goal_achieved(self) -> None:
        bus = EventBus()
        events = _capture(bus)
        await LifecycleHooks(bus).on_exercise_goal_achieved({"id": "g1"}, 1.0)
        event_type, payload = events[0]
        assert event_type == "exercise.goal.achieved"
        assert payload["progress"] == 1.0
        assert payload["goal"] == {"id": "g1"}

    @pytest.mark.asyncio()
    async def test_journal_hooks(self) -> None:
        bus = EventBus()
        events = _capture(bus)
        hooks = LifecycleHooks(bus)
        await hooks.on_journal_entry_created({"id": "j1"})
        await hooks.on_journal_entry_updated({"id": "j1"})
        assert [e[0] for e in events] == ["journal.entry.created", "journal.entry.updated"]
        assert events[1][1]["journalEntry"] == {"id": "j1"}


class TestGenericHooks:
    @pytest.mark.asyncio()
    async def test_entity_task_maps_to_task_events(self) -> None:
        bus = EventBus()
        events = _capture(bus)
        hooks = LifecycleHooks(bus)
        await hooks.on_entity_created("task", {"id": "t1"})
        await hooks.on_entity_completed("task", {"id": "t1"})
        await hooks.on_entity_updated("task", {"id": "t1"})
        assert [e[0] for e in events] == ["task.created", "task.completed", "task.updated"]

    @pytest.mark.asyncio()
    async def test_other_entity_kinds(self) -> None:
        bus = EventBus()
        events = _capture(bus)
        await LifecycleHooks(bus).on_entity_created("project", {"id": "p1"})
        assert events == [("project.created", {"project": {"id": "p1"}, "triggerType": "event-based"})]

    @pytest.mark.asyncio()
    async def test_custom_event_does_not_mutate_input(self) -> None:
        bus = EventBus()
        events = _capture(bus)
        data = {"habit": "reading"}
        await LifecycleHooks(bus).emit_custom_event("habit.logged", data)
        assert data == {"habit": "reading"}
        assert events[0][1] == {"habit": "reading", "triggerType": "event-based"}
