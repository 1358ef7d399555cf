"""Fact resolution — resolver registry, pass-scoped cache, and built-in facts.

A fact resolver is ``async (params, context) -> value``. Resolvers are looked
up in an explicit :class:`FactRegistry` and always called through a
:class:`FactCache`, which memoizes results per ``(fact, params)`` for a short
TTL and turns resolver exceptions into ``None``.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Resolver = Callable[[dict[str, Any], "EvaluationContext"], Awaitable[Any] | Any]

DEFAULT_TTL_MS = 5000


@dataclass
class EvaluationContext:
    """What a resolver can see: the supplied facts and the trigger context."""

    facts: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    rule_id: str | None = None

    def get(self, name: str, default: Any = None) -> Any:
        """Return a supplied fact, falling back to the trigger context."""
        if name in self.facts:
            return self.facts[name]
        return self.context.get(name, default)


class FactRegistry:
    """Named fact resolvers supplied by the host application."""

    def __init__(self) -> None:
        self._resolvers: dict[str, Resolver] = {}

    def register(self, name: str, resolver: Resolver) -> None:
        """Register a resolver. Overwrites if the same name exists."""
        self._resolvers[name] = resolver
        logger.debug("Registered fact resolver: %s", name)

    def unregister(self, name: str) -> bool:
        """Remove a resolver. Returns True if it was registered."""
        return self._resolvers.pop(name, None) is not None

    def get(self, name: str) -> Resolver | None:
        return self._resolvers.get(name)

    def names(self) -> list[str]:
        return sorted(self._resolvers)

    def __contains__(self, name: object) -> bool:
        return name in self._resolvers

    def __len__(self) -> int:
        return len(self._resolvers)


# ------------------------------------------------------------------
# Cache
# ------------------------------------------------------------------


@dataclass
class CacheEntry:
    """A resolved fact value and when it was resolved."""

    value: Any
    timestamp: float


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate percentage."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0


class FactCache:
    """Short-TTL memoization in front of fact resolvers.

    Entries are keyed by ``(fact, serialized params)``; a read is a hit iff
    the entry is younger than ``ttl_ms``. Concurrent reads of the same key
    share a single in-flight resolver call. The engine clears the cache at
    the start of each evaluation pass unless told otherwise.

    Args:
        ttl_ms: Entry lifetime in milliseconds (default 5000).
        clock: Monotonic seconds source, injectable for tests.
    """

    def __init__(self, ttl_ms: int = DEFAULT_TTL_MS, clock: Callable[[], float] | None = None):
        self._ttl_ms = ttl_ms
        self._clock = clock or time.monotonic
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._pending: dict[tuple[str, str], asyncio.Future[Any]] = {}
        self._generation = 0
        self._stats = CacheStats()

    @staticmethod
    def make_key(fact: str, params: dict[str, Any] | None) -> tuple[str, str]:
        return fact, json.dumps(params or {}, sort_keys=True, default=str)

    def get(self, fact: str, params: dict[str, Any] | None = None) -> CacheEntry | None:
        """Return the live entry for ``(fact, params)``, or None."""
        entry = self._entries.get(self.make_key(fact, params))
        if entry is None or not self._is_fresh(entry):
            return None
        return entry

    def set(self, fact: str, params: dict[str, Any] | None, value: Any) -> None:
        key = self.make_key(fact, params)
        self._entries[key] = CacheEntry(value=value, timestamp=self._clock())

    async def resolve(
        self,
        fact: str,
        params: dict[str, Any] | None,
        resolver: Resolver,
        context: EvaluationContext,
    ) -> Any:
        """Return the cached value or call *resolver* once to produce it."""
        key = self.make_key(fact, params)
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            self._stats.hits += 1
            return entry.value

        pending = self._pending.get(key)
        if pending is not None:
            self._stats.hits += 1
            try:
                # Shielded so a cancelled waiter leaves the shared call alone
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if not pending.cancelled() or (task is not None and task.cancelling()):
                    raise
            # The resolving task was cancelled, not us: resolve afresh
            logger.debug("Shared resolution of %r was cancelled, retrying", fact)
            return await self.resolve(fact, params, resolver, context)

        self._stats.misses += 1
        generation = self._generation
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            value = await self._call(fact, params or {}, resolver, context)
        except asyncio.CancelledError:
            if self._pending.get(key) is future:
                del self._pending[key]
            future.cancel()
            raise

        if self._pending.get(key) is future:
            del self._pending[key]
        # A clear() while resolving means this value belongs to an older pass
        if generation == self._generation:
            self._entries[key] = CacheEntry(value=value, timestamp=self._clock())
        if not future.done():
            future.set_result(value)
        return value

    async def _call(
        self,
        fact: str,
        params: dict[str, Any],
        resolver: Resolver,
        context: EvaluationContext,
    ) -> Any:
        try:
            result = resolver(params, context)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception:
            self._stats.errors += 1
            logger.exception("Fact resolver %r failed (params=%s)", fact, params)
            return None

    def clear(self) -> None:
        """Drop every entry so the next reads go to the resolvers."""
        self._entries.clear()
        self._pending.clear()
        self._generation += 1

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return (self._clock() - entry.timestamp) * 1000 < self._ttl_ms

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    @property
    def stats(self) -> CacheStats:
        """Get cache statistics."""
        return self._stats

    @property
    def size(self) -> int:
        """Current number of entries."""
        return len(self._entries)


class _Undefined:
    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED: Any = _Undefined()

FactLookup = Callable[[str, "dict[str, Any] | None"], Awaitable[Any]]


def make_fact_lookup(
    registry: FactRegistry, cache: FactCache, context: EvaluationContext
) -> FactLookup:
    """Build the lookup a condition tree is evaluated with.

    Supplied facts win over resolvers. Resolver reads go through *cache*.
    Returns :data:`UNDEFINED` for facts nobody can provide.
    """

    async def lookup(fact: str, params: dict[str, Any] | None = None) -> Any:
        if fact in context.facts:
            return context.facts[fact]
        resolver = registry.get(fact)
        if resolver is None:
            return UNDEFINED
        return await cache.resolve(fact, params, resolver, context)

    return lookup


# ------------------------------------------------------------------
# Built-in resolvers
# ------------------------------------------------------------------


def register_time_facts(
    registry: FactRegistry, clock: Callable[[], datetime] | None = None
) -> None:
    """Register ``time.hour``, ``time.dayOfWeek`` (0 = Sunday) and ``time.isWeekend``."""
    now = clock or datetime.now

    async def hour(params: dict[str, Any], context: EvaluationContext) -> int:
        return now().hour

    async def day_of_week(params: dict[str, Any], context: EvaluationContext) -> int:
        return _sunday_first_weekday(now())

    async def is_weekend(params: dict[str, Any], context: EvaluationContext) -> bool:
        return _sunday_first_weekday(now()) in (0, 6)

    registry.register("time.hour", hour)
    registry.register("time.dayOfWeek", day_of_week)
    registry.register("time.isWeekend", is_weekend)


def _sunday_first_weekday(moment: datetime) -> int:
    return (moment.weekday() + 1) % 7


@runtime_checkable
class DomainDataSource(Protocol):
    """Read access to the host's task, exercise and journal stores."""

    async def get_tasks(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Return tasks matching *filters*."""

    async def get_exercise_goals(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Return exercise goals matching *filters*."""

    async def get_exercise_logs(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Return exercise logs matching *filters*."""

    async def get_journal_entries(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Return journal entries matching *filters*."""


def _safe(default: Any) -> Callable[[Callable[..., Awaitable[Any]]], Resolver]:
    """Wrap a resolver so data-source failures degrade to *default*."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Resolver:
        @functools.wraps(func)
        async def wrapper(params: dict[str, Any], context: EvaluationContext) -> Any:
            try:
                return await func(params, context)
            except Exception:
                logger.exception("Fact %s failed, using %r", func.__name__, default)
                return default

        return wrapper

    return decorator


def register_domain_facts(
    registry: FactRegistry,
    source: DomainDataSource,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """Register resolvers that read task, exercise and journal state from *source*."""
    now = clock or datetime.now

    async def find_task(params: dict[str, Any], context: EvaluationContext) -> dict | None:
        task_id = params.get("taskId") or context.get("taskId")
        if not task_id:
            return None
        tasks = await source.get_tasks({})
        return next((t for t in tasks if t.get("id") == task_id), None)

    def task_field(name: str) -> Resolver:
        async def resolver(params: dict[str, Any], context: EvaluationContext) -> Any:
            task = await find_task(params, context)
            return (task or {}).get(name)

        resolver.__name__ = f"task.{name}"
        return _safe(None)(resolver)

    @_safe(0)
    async def task_count(params: dict[str, Any], context: EvaluationContext) -> int:
        return len(await source.get_tasks(params.get("filters") or {}))

    @_safe(0)
    async def task_completed_today(params: dict[str, Any], context: EvaluationContext) -> int:
        today = now().date()
        tasks = await source.get_tasks({"status": "completed"})
        return sum(1 for t in tasks if _date_of(t.get("completedAt")) == today)

    @_safe(0)
    async def exercise_log_count(params: dict[str, Any], context: EvaluationContext) -> int:
        exercise_id = params.get("exerciseId") or context.get("exerciseId")
        if not exercise_id:
            return 0
        return len(await source.get_exercise_logs({"exerciseId": exercise_id}))

    @_safe(None)
    async def exercise_goal_progress(
        params: dict[str, Any], context: EvaluationContext
    ) -> float | None:
        exercise_id = params.get("exerciseId") or context.get("exerciseId")
        goal_id = params.get("goalId") or context.get("goalId")
        if goal_id:
            goals = await source.get_exercise_goals({})
            goal = next((g for g in goals if g.get("id") == goal_id), None)
        elif exercise_id:
            goals = await source.get_exercise_goals({"exerciseId": exercise_id})
            goal = goals[0] if goals else None
        else:
            return None
        if not goal or not goal.get("target"):
            return None
        return goal.get("completed", 0) / goal["target"]

    @_safe(0)
    async def journal_entry_count(params: dict[str, Any], context: EvaluationContext) -> int:
        return len(await source.get_journal_entries(params.get("filters") or {}))

    @_safe(False)
    async def journal_has_entry_today(params: dict[str, Any], context: EvaluationContext) -> bool:
        entries = await source.get_journal_entries({"date": now().date().isoformat()})
        return len(entries) > 0

    registry.register("task.status", task_field("status"))
    registry.register("task.priority", task_field("priority"))
    registry.register("task.context", task_field("context"))
    registry.register("task.count", task_count)
    registry.register("task.completedToday", task_completed_today)
    registry.register("exercise.logCount", exercise_log_count)
    registry.register("exercise.goalProgress", exercise_goal_progress)
    registry.register("journal.entryCount", journal_entry_count)
    registry.register("journal.hasEntryToday", journal_has_entry_today)


def _date_of(value: Any) -> date | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        return None


# ------------------------------------------------------------------
# Entity flatteners
# ------------------------------------------------------------------


def task_facts(task: dict[str, Any] | None, now: datetime | None = None) -> dict[str, Any]:
    """Flatten a task entity into ``task.*`` facts."""
    if not task:
        return {}
    now = now or datetime.now()
    dependencies = task.get("dependencies") or []
    due = _parse_moment(task.get("dueDate"), now)
    status = task.get("status") or "pending"
    return {
        "task.id": task.get("id"),
        "task.title": task.get("title") or "",
        "task.description": task.get("description") or "",
        "task.status": status,
        "task.priority": task.get("priority") or "medium",
        "task.context": task.get("context") or "personal",
        "task.dueDate": task.get("dueDate"),
        "task.timeEstimate": task.get("timeEstimate"),
        "task.timeSpent": task.get("timeSpent") or 0,
        "task.parentId": task.get("parentId"),
        "task.tags": task.get("tags") or [],
        "task.dependencies": dependencies,
        "task.hasDependencies": len(dependencies) > 0,
        "task.hasSubtasks": bool(task.get("parentId")),
        "task.isOverdue": due is not None and due < now and status != "completed",
        "task.completedAt": task.get("completedAt"),
        "task.createdAt": task.get("createdAt"),
        "task.updatedAt": task.get("updatedAt"),
    }


def exercise_facts(exercise: dict[str, Any] | None) -> dict[str, Any]:
    if not exercise:
        return {}
    return {
        "exercise.id": exercise.get("id"),
        "exercise.name": exercise.get("name") or "",
        "exercise.type": exercise.get("type") or "reps",
        "exercise.unit": exercise.get("unit") or "",
        "exercise.category": exercise.get("category"),
        "exercise.createdAt": exercise.get("createdAt"),
    }


def exercise_goal_facts(goal: dict[str, Any] | None) -> dict[str, Any]:
    if not goal:
        return {}
    target = goal.get("target") or 0
    completed = goal.get("completed") or 0
    return {
        "exerciseGoal.id": goal.get("id"),
        "exerciseGoal.exerciseId": goal.get("exerciseId") or "",
        "exerciseGoal.target": target,
        "exerciseGoal.completed": completed,
        "exerciseGoal.date": goal.get("date"),
        "exerciseGoal.progress": (completed / target) * 100 if target > 0 else 0,
        "exerciseGoal.isComplete": completed >= target,
        "exerciseGoal.createdAt": goal.get("createdAt"),
    }


def exercise_log_facts(log: dict[str, Any] | None) -> dict[str, Any]:
    if not log:
        return {}
    return {
        "exerciseLog.id": log.get("id"),
        "exerciseLog.exerciseId": log.get("exerciseId") or "",
        "exerciseLog.amount": log.get("amount") or 0,
        "exerciseLog.timestamp": log.get("timestamp"),
        "exerciseLog.goalId": log.get("goalId"),
    }


def journal_facts(entry: dict[str, Any] | None) -> dict[str, Any]:
    """Flatten a journal entry, extracting plain text from its rich-text nodes."""
    if not entry:
        return {}
    text = _extract_text(entry.get("content") or [])
    media = entry.get("media") or {}
    linked_tasks = entry.get("linkedTasks") or []
    linked_events = entry.get("linkedEvents") or []
    return {
        "journal.id": entry.get("id"),
        "journal.date": entry.get("date"),
        "journal.mood": entry.get("mood"),
        "journal.tags": entry.get("tags") or [],
        "journal.template": entry.get("template"),
        "journal.textContent": text,
        "journal.textLength": len(text),
        "journal.hasImages": len(media.get("images") or []) > 0,
        "journal.hasAudio": len(media.get("audio") or []) > 0,
        "journal.linkedTasks": linked_tasks,
        "journal.linkedEvents": linked_events,
        "journal.hasLinkedTasks": len(linked_tasks) > 0,
        "journal.hasLinkedEvents": len(linked_events) > 0,
        "journal.createdAt": entry.get("createdAt"),
        "journal.updatedAt": entry.get("updatedAt"),
    }


def _extract_text(nodes: Any) -> str:
    if not isinstance(nodes, list):
        return ""
    parts: list[str] = []
    for node in nodes:
        if not isinstance(node, dict):
            continue
        if node.get("text"):
            parts.append(node["text"])
        elif node.get("children"):
            parts.append(_extract_text(node["children"]))
    return " ".join(parts)


def combine_facts(*fact_sets: dict[str, Any]) -> dict[str, Any]:
    """Merge fact dicts; later sets win."""
    combined: dict[str, Any] = {}
    for facts in fact_sets:
        combined.update(facts)
    return combined


def build_facts_from_context(
    context: dict[str, Any], now: datetime | None = None
) -> dict[str, Any]:
    """Build the fact set for an evaluation triggered by an event or timer."""
    now = now or datetime.now()
    facts: dict[str, Any] = {**context, "timestamp": now.isoformat()}

    task = context.get("task")
    if isinstance(task, dict):
        facts["taskId"] = task.get("id")
        facts["taskStatus"] = task.get("status")
        facts["taskPriority"] = task.get("priority")
        facts.update(task_facts(task, now))

    exercise = context.get("exercise")
    if isinstance(exercise, dict):
        facts["exerciseId"] = exercise.get("id")
        facts.update(exercise_facts(exercise))

    goal = context.get("goal")
    if isinstance(goal, dict):
        facts["goalId"] = goal.get("id")
        facts.setdefault("exerciseId", goal.get("exerciseId"))
        facts.update(exercise_goal_facts(goal))

    log = context.get("exerciseLog")
    if isinstance(log, dict):
        facts.setdefault("exerciseId", log.get("exerciseId"))
        facts.update(exercise_log_facts(log))

    entry = context.get("journalEntry")
    if isinstance(entry, dict):
        facts.update(journal_facts(entry))

    return facts


def _parse_moment(value: Any, now: datetime) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    # Compare aware values in the caller's frame, naive values as local time
    if moment.tzinfo is not None and now.tzinfo is None:
        moment = moment.astimezone().replace(tzinfo=None)
    elif moment.tzinfo is None and now.tzinfo is not None:
        moment = moment.replace(tzinfo=now.tzinfo)
    return moment
