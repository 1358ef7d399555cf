"""Tests for fact resolution, the fact cache and the built-in resolvers."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from cadence.automations.facts import (
    UNDEFINED,
    DomainDataSource,
    EvaluationContext,
    FactCache,
    FactRegistry,
    build_facts_from_context,
    journal_facts,
    make_fact_lookup,
    register_domain_facts,
    register_time_facts,
    task_facts,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Saturday
SATURDAY_NOON = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class FakeSource:
    """In-memory domain data source."""

    def __init__(self) -> None:
        self.tasks: list[dict[str, Any]] = []
        self.goals: list[dict[str, Any]] = []
        self.logs: list[dict[str, Any]] = []
        self.entries: list[dict[str, Any]] = []

    async def get_tasks(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        return [t for t in self.tasks if all(t.get(k) == v for k, v in filters.items())]

    async def get_exercise_goals(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        return [g for g in self.goals if all(g.get(k) == v for k, v in filters.items())]

    async def get_exercise_logs(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        return [entry for entry in self.logs if all(entry.get(k) == v for k, v in filters.items())]

    async def get_journal_entries(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        return [e for e in self.entries if all(e.get(k) == v for k, v in filters.items())]


def _ctx(**context: Any) -> EvaluationContext:
    return EvaluationContext(context=context)


# ===========================================================================
# TestFactRegistry
# ===========================================================================


class TestFactRegistry:
    def test_register_and_get(self) -> None:
        registry = FactRegistry()
        resolver = AsyncMock(return_value=1)
        registry.register("task.count", resolver)
        assert "task.count" in registry
        assert registry.get("task.count") is resolver
        assert registry.names() == ["task.count"]
        assert len(registry) == 1

    def test_unregister(self) -> None:
        registry = FactRegistry()
        registry.register("a", AsyncMock())
        assert registry.unregister("a") is True
        assert registry.unregister("a") is False
        assert registry.get("a") is None


# ===========================================================================
# TestFactCache
# ===========================================================================


class TestFactCache:
    """Memoization, TTL and failure handling."""

    @pytest.mark.asyncio()
    async def test_same_key_resolved_once(self) -> None:
        cache = FactCache()
        resolver = AsyncMock(return_value="completed")
        first = await cache.resolve("task.status", {"taskId": "t1"}, resolver, _ctx())
        second = await cache.resolve("task.status", {"taskId": "t1"}, resolver, _ctx())
        assert first == second == "completed"
        assert resolver.await_count == 1
        assert cache.stats.hits == 1
        assert cache.stats.misses == 1
        assert cache.stats.hit_rate == 50.0

    @pytest.mark.asyncio()
    async def test_param_order_does_not_matter(self) -> None:
        cache = FactCache()
        resolver = AsyncMock(return_value=3)
        await cache.resolve("f", {"a": 1, "b": 2}, resolver, _ctx())
        await cache.resolve("f", {"b": 2, "a": 1}, resolver, _ctx())
        assert resolver.await_count == 1

    @pytest.mark.asyncio()
    async def test_different_params_are_separate_entries(self) -> None:
        cache = FactCache()
        resolver = AsyncMock(side_effect=[1, 2])
        assert await cache.resolve("f", {"a": 1}, resolver, _ctx()) == 1
        assert await cache.resolve("f", {"a": 2}, resolver, _ctx()) == 2
        assert cache.size == 2

    @pytest.mark.asyncio()
    async def test_entry_expires_after_ttl(self) -> None:
        clock = FakeClock()
        cache = FactCache(ttl_ms=5000, clock=clock)
        resolver = AsyncMock(side_effect=["old", "new"])
        assert await cache.resolve("f", None, resolver, _ctx()) == "old"

        clock.now += 4.9
        assert await cache.resolve("f", None, resolver, _ctx()) == "old"

        clock.now += 0.2
        assert cache.get("f") is None
        assert await cache.resolve("f", None, resolver, _ctx()) == "new"

    @pytest.mark.asyncio()
    async def test_clear_forces_reresolution(self) -> None:
        cache = FactCache()
        resolver = AsyncMock(return_value=1)
        await cache.resolve("f", None, resolver, _ctx())
        cache.clear()
        assert cache.size == 0
        await cache.resolve("f", None, resolver, _ctx())
        assert resolver.await_count == 2

    @pytest.mark.asyncio()
    async def test_failing_resolver_yields_none(self) -> None:
        cache = FactCache()
        resolver = AsyncMock(side_effect=RuntimeError("db down"))
        assert await cache.resolve("f", None, resolver, _ctx()) is None
        assert cache.stats.errors == 1
        # The None is cached like any other value
        assert await cache.resolve("f", None, resolver, _ctx()) is None
        assert resolver.await_count == 1

    @pytest.mark.asyncio()
    async def test_sync_resolver_supported(self) -> None:
        cache = FactCache()
        assert await cache.resolve("f", None, lambda params, ctx: 42, _ctx()) == 42

    @pytest.mark.asyncio()
    async def test_concurrent_reads_share_one_call(self) -> None:
        cache = FactCache()
        release = asyncio.Event()
        calls = 0

        async def slow(params: dict[str, Any], context: EvaluationContext) -> str:
            nonlocal calls
            calls += 1
            await release.wait()
            return "done"

        first = asyncio.create_task(cache.resolve("f", None, slow, _ctx()))
        second = asyncio.create_task(cache.resolve("f", None, slow, _ctx()))
        await asyncio.sleep(0)
        release.set()
        assert await asyncio.gather(first, second) == ["done", "done"]
        assert calls == 1

    @pytest.mark.asyncio()
    async def test_cancelled_resolving_task_does_not_cancel_waiters(self) -> None:
        cache = FactCache()
        release = asyncio.Event()
        calls = 0

        async def slow(params: dict[str, Any], context: EvaluationContext) -> str:
            nonlocal calls
            calls += 1
            await release.wait()
            return "done"

        owner = asyncio.create_task(cache.resolve("f", None, slow, _ctx()))
        await asyncio.sleep(0)
        waiter = asyncio.create_task(cache.resolve("f", None, slow, _ctx()))
        await asyncio.sleep(0)

        owner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await owner
        release.set()

        assert await waiter == "done"
        assert calls == 2
        assert cache.get("f").value == "done"

    @pytest.mark.asyncio()
    async def test_cancelled_waiter_leaves_shared_call_running(self) -> None:
        cache = FactCache()
        release = asyncio.Event()

        async def slow(params: dict[str, Any], context: EvaluationContext) -> str:
            await release.wait()
            return "done"

        owner = asyncio.create_task(cache.resolve("f", None, slow, _ctx()))
        await asyncio.sleep(0)
        waiter = asyncio.create_task(cache.resolve("f", None, slow, _ctx()))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        release.set()

        assert await owner == "done"

    @pytest.mark.asyncio()
    async def test_clear_during_resolution_discards_value(self) -> None:
        cache = FactCache()
        release = asyncio.Event()

        async def slow(params: dict[str, Any], context: EvaluationContext) -> str:
            await release.wait()
            return "stale"

        task = asyncio.create_task(cache.resolve("f", None, slow, _ctx()))
        await asyncio.sleep(0)
        cache.clear()
        release.set()
        assert await task == "stale"
        assert cache.get("f") is None

    def test_set_and_get(self) -> None:
        cache = FactCache()
        cache.set("f", {"a": 1}, "v")
        entry = cache.get("f", {"a": 1})
        assert entry is not None
        assert entry.value == "v"


# ===========================================================================
# TestFactLookup
# ===========================================================================


class TestFactLookup:
    @pytest.mark.asyncio()
    async def test_supplied_fact_wins_over_resolver(self) -> None:
        registry = FactRegistry()
        resolver = AsyncMock(return_value="from-resolver")
        registry.register("task.status", resolver)
        context = EvaluationContext(facts={"task.status": "supplied"})
        lookup = make_fact_lookup(registry, FactCache(), context)
        assert await lookup("task.status", None) == "supplied"
        resolver.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_resolver_receives_params_and_context(self) -> None:
        registry = FactRegistry()
        resolver = AsyncMock(return_value=5)
        registry.register("task.count", resolver)
        context = EvaluationContext(context={"taskId": "t1"}, rule_id="r1")
        lookup = make_fact_lookup(registry, FactCache(), context)
        assert await lookup("task.count", {"filters": {}}) == 5
        resolver.assert_awaited_once_with({"filters": {}}, context)

    @pytest.mark.asyncio()
    async def test_unknown_fact_is_undefined(self) -> None:
        lookup = make_fact_lookup(FactRegistry(), FactCache(), EvaluationContext())
        assert await lookup("nobody.knows", None) is UNDEFINED
        assert not UNDEFINED
        assert repr(UNDEFINED) == "UNDEFINED"

    def test_context_get_prefers_facts(self) -> None:
        context = EvaluationContext(facts={"a": 1}, context={"a": 2, "b": 3})
        assert context.get("a") == 1
        assert context.get("b") == 3
        assert context.get("c", "x") == "x"


# ===========================================================================
# TestTimeFacts
# ===========================================================================


class TestTimeFacts:
    @pytest.mark.asyncio()
    async def test_time_facts_from_clock(self) -> None:
        registry = FactRegistry()
        register_time_facts(registry, lambda: SATURDAY_NOON)
        ctx = EvaluationContext()
        assert await registry.get("time.hour")({}, ctx) == 12
        assert await registry.get("time.dayOfWeek")({}, ctx) == 6
        assert await registry.get("time.isWeekend")({}, ctx) is True

    @pytest.mark.asyncio()
    async def test_weekday_is_not_weekend(self) -> None:
        registry = FactRegistry()
        register_time_facts(registry, lambda: datetime(2024, 6, 3, 9, 0))  # Monday
        ctx = EvaluationContext()
        assert await registry.get("time.dayOfWeek")({}, ctx) == 1
        assert await registry.get("time.isWeekend")({}, ctx) is False


# ===========================================================================
# TestDomainFacts
# ===========================================================================


class TestDomainFacts:
    """Resolvers backed by the host's data source."""

    def _registry(self, source: FakeSource) -> FactRegistry:
        registry = FactRegistry()
        register_domain_facts(registry, source, lambda: SATURDAY_NOON)
        return registry

    def test_fake_source_satisfies_protocol(self) -> None:
        assert isinstance(FakeSource(), DomainDataSource)

    @pytest.mark.asyncio()
    async def test_task_fields_by_context_task_id(self) -> None:
        source = FakeSource()
        source.tasks = [{"id": "t1", "status": "completed", "priority": "high", "context": "work"}]
        registry = self._registry(source)
        ctx = _ctx(taskId="t1")
        assert await registry.get("task.status")({}, ctx) == "completed"
        assert await registry.get("task.priority")({}, ctx) == "high"
        assert await registry.get("task.context")({}, ctx) == "work"

    @pytest.mark.asyncio()
    async def test_task_field_without_task_id_is_none(self) -> None:
        registry = self._registry(FakeSource())
        assert await registry.get("task.status")({}, _ctx()) is None

    @pytest.mark.asyncio()
    async def test_task_counts(self) -> None:
        source = FakeSource()
        source.tasks = [
            {"id": "t1", "status": "completed", "completedAt": "2024-06-01T08:30:00"},
            {"id": "t2", "status": "completed", "completedAt": "2024-05-31T22:00:00"},
            {"id": "t3", "status": "pending"},
        ]
        registry = self._registry(source)
        ctx = _ctx()
        assert await registry.get("task.count")({}, ctx) == 3
        assert await registry.get("task.count")({"filters": {"status": "pending"}}, ctx) == 1
        assert await registry.get("task.completedToday")({}, ctx) == 1

    @pytest.mark.asyncio()
    async def test_exercise_facts(self) -> None:
        source = FakeSource()
        source.goals = [{"id": "g1", "exerciseId": "e1", "target": 50, "completed": 25}]
        source.logs = [{"exerciseId": "e1"}, {"exerciseId": "e1"}, {"exerciseId": "e2"}]
        registry = self._registry(source)
        ctx = _ctx(exerciseId="e1")
        assert await registry.get("exercise.logCount")({}, ctx) == 2
        assert await registry.get("exercise.goalProgress")({}, ctx) == 0.5
        assert await registry.get("exercise.goalProgress")({"goalId": "g1"}, _ctx()) == 0.5
        assert await registry.get("exercise.goalProgress")({}, _ctx()) is None

    @pytest.mark.asyncio()
    async def test_journal_facts(self) -> None:
        source = FakeSource()
        source.entries = [{"id": "j1", "date": "2024-06-01"}, {"id": "j2", "date": "2024-05-30"}]
        registry = self._registry(source)
        assert await registry.get("journal.entryCount")({}, _ctx()) == 2
        assert await registry.get("journal.hasEntryToday")({}, _ctx()) is True

    @pytest.mark.asyncio()
    async def test_source_failure_degrades_to_default(self) -> None:
        source = FakeSource()
        offline = AsyncMock(side_effect=RuntimeError("offline"))
        source.get_tasks = offline  # type: ignore[method-assign]
        source.get_journal_entries = offline  # type: ignore[method-assign]
        registry = self._registry(source)
        assert await registry.get("task.count")({}, _ctx()) == 0
        assert await registry.get("task.status")({}, _ctx(taskId="t1")) is None
        assert await registry.get("journal.hasEntryToday")({}, _ctx()) is False


# ===========================================================================
# TestFlatteners
# ===========================================================================


class TestFlatteners:
    def test_task_facts_defaults_and_overdue(self) -> None:
        facts = task_facts(
            {"id": "t1", "dueDate": "2024-05-31T09:00:00", "dependencies": ["t0"]},
            now=SATURDAY_NOON,
        )
        assert facts["task.status"] == "pending"
        assert facts["task.priority"] == "medium"
        assert facts["task.context"] == "personal"
        assert facts["task.isOverdue"] is True
        assert facts["task.hasDependencies"] is True

    def test_completed_task_never_overdue(self) -> None:
        facts = task_facts(
            {"id": "t1", "status": "completed", "dueDate": "2024-05-31T09:00:00"},
            now=SATURDAY_NOON,
        )
        assert facts["task.isOverdue"] is False

    def test_empty_entity_gives_no_facts(self) -> None:
        assert task_facts(None) == {}
        assert journal_facts({}) == {}

    def test_journal_text_extracted_from_nodes(self) -> None:
        entry = {
            "id": "j1",
            "content": [
                {"type": "paragraph", "children": [{"text": "Good"}, {"text": "day"}]},
                {"type": "paragraph", "children": [{"text": "today"}]},
            ],
            "media": {"images": ["a.png"]},
        }
        facts = journal_facts(entry)
        assert facts["journal.textContent"] == "Good day today"
        assert facts["journal.textLength"] == len("Good day today")
        assert facts["journal.hasImages"] is True
        assert facts["journal.hasAudio"] is False

    def test_build_facts_from_task_context(self) -> None:
        context = {"task": {"id": "t1", "status": "completed"}, "triggerType": "task-completed"}
        facts = build_facts_from_context(context, SATURDAY_NOON)
        assert facts["taskId"] == "t1"
        assert facts["taskStatus"] == "completed"
        assert facts["task.status"] == "completed"
        assert facts["triggerType"] == "task-completed"
        assert facts["timestamp"] == SATURDAY_NOON.isoformat()

    def test_build_facts_from_exercise_log(self) -> None:
        context = {"exerciseLog": {"id": "l1", "exerciseId": "e1", "amount": 20}}
        facts = build_facts_from_context(context, SATURDAY_NOON)
        assert facts["exerciseId"] == "e1"
        assert facts["exerciseLog.amount"] == 20
