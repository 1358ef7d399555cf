"""Automation engine — evaluates rules against facts and dispatches their actions."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cadence.automations.actions import ACTION_EVENT_PREFIX, ActionDispatcher
from cadence.automations.conditions import evaluate_tree
from cadence.automations.events import EventBus
from cadence.automations.facts import (
    DEFAULT_TTL_MS,
    EvaluationContext,
    FactCache,
    FactLookup,
    FactRegistry,
    build_facts_from_context,
    make_fact_lookup,
)
from cadence.automations.models import (
    AutomationRule,
    FiredAction,
    RuleEvaluation,
    rule_from_dict,
)
from cadence.automations.schedule import DEFAULT_POLL_SECONDS
from cadence.automations.scheduler import Scheduler
from cadence.automations.validation import ensure_valid
from cadence.errors import RuleEvaluationError, RuleValidationError, UndefinedFactError

logger = logging.getLogger(__name__)

RULE_EXECUTED_EVENT = "rule.executed"


@dataclass
class EvaluateOptions:
    """Knobs for a single evaluation pass."""

    clear_cache: bool | None = None  # None: use the engine default
    rule_ids: Collection[str] | None = None
    event: str | None = None  # only rules triggered by this bus event
    context: dict[str, Any] | None = None
    dispatch: bool = True  # False: report what would fire, touch nothing


@dataclass
class LoadResult:
    """Outcome of :meth:`AutomationEngine.load_rules`."""

    loaded: list[str] = field(default_factory=list)
    skipped: list[tuple[str | None, str]] = field(default_factory=list)


class AutomationEngine:
    """Evaluates automation rules against facts, events and schedules.

    The engine owns the in-memory rule store, the fact cache and the
    scheduler. It is constructed by the host and shares an :class:`EventBus`
    with the lifecycle hooks and the external action handlers.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        registry: FactRegistry | None = None,
        *,
        cache_ttl_ms: int = DEFAULT_TTL_MS,
        allow_undefined_facts: bool = False,
        clear_cache_default: bool = True,
        poll_interval_seconds: float = DEFAULT_POLL_SECONDS,
        scheduler_enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._bus = bus or EventBus()
        self._registry = registry or FactRegistry()
        self._cache = FactCache(ttl_ms=cache_ttl_ms)
        self._dispatcher = ActionDispatcher(self._bus)
        self._clock = clock or datetime.now
        self._scheduler = Scheduler(
            self._run_scheduled,
            clock=self._clock,
            poll_interval_seconds=poll_interval_seconds,
        )
        self._scheduler_enabled = scheduler_enabled
        self._allow_undefined = allow_undefined_facts
        self._clear_cache_default = clear_cache_default
        self._rules: dict[str, AutomationRule] = {}
        self._order: dict[str, int] = {}
        self._sequence = itertools.count()
        self._unsubscribe: Callable[[], None] | None = None
        self._started = False

    # ------------------------------------------------------------------
    # Rule store
    # ------------------------------------------------------------------

    def add_rule(self, rule: AutomationRule) -> None:
        """Validate and register a rule, (re)arming its timer if scheduled.

        A disabled rule is not stored; any earlier version is removed.

        Raises:
            RuleValidationError: If the rule is malformed.
        """
        ensure_valid(rule)

        if not rule.enabled:
            if self.remove_rule(rule.id):
                logger.info("Rule %s disabled and removed", rule.id)
            return

        self._rules[rule.id] = rule
        self._order[rule.id] = next(self._sequence)
        if self._started and self._scheduler_enabled:
            self._scheduler.schedule(rule)
        else:
            self._scheduler.unschedule(rule.id)
        logger.info("Added automation rule %s (%s)", rule.id, rule.name or "unnamed")

    def update_rule(self, rule: AutomationRule) -> None:
        """Replace a rule. The old version stays if the new one is invalid.

        Raises:
            RuleValidationError: If the rule is malformed.
        """
        ensure_valid(rule)
        self.remove_rule(rule.id)
        self.add_rule(rule)

    def remove_rule(self, rule_id: str) -> bool:
        """Remove a rule by ID and cancel its timer. Returns True if found."""
        self._scheduler.unschedule(rule_id)
        self._order.pop(rule_id, None)
        removed = self._rules.pop(rule_id, None)
        if removed is None:
            return False
        logger.info("Removed automation rule %s", rule_id)
        return True

    def disable_rule(self, rule_id: str) -> AutomationRule | None:
        """Take a rule out of service.

        Returns the rule with ``enabled=False`` (for the host to persist),
        or None if it was not loaded.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            return None
        self.remove_rule(rule_id)
        rule.enabled = False
        rule.updated_at = self._clock()
        return rule

    def load_rules(self, rules: Iterable[AutomationRule | dict[str, Any]]) -> LoadResult:
        """Replace the whole rule store. Invalid rules are skipped and reported."""
        self._scheduler.cancel_all()
        self._rules.clear()
        self._order.clear()

        result = LoadResult()
        for item in rules:
            try:
                rule = rule_from_dict(item) if isinstance(item, dict) else item
                self.add_rule(rule)
            except RuleValidationError as exc:
                logger.warning("Failed to load rule %s: %s", exc.rule_id, exc.message)
                result.skipped.append((exc.rule_id, exc.message))
                continue
            if rule.enabled:
                result.loaded.append(rule.id)
        return result

    def get_rule(self, rule_id: str) -> AutomationRule | None:
        """Get a rule by ID."""
        return self._rules.get(rule_id)

    def list_rules(self) -> list[AutomationRule]:
        """Return all rules in registration order."""
        return sorted(self._rules.values(), key=lambda r: self._order[r.id])

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        facts: dict[str, Any] | None = None,
        options: EvaluateOptions | None = None,
    ) -> list[FiredAction]:
        """Evaluate enabled rules against *facts* and dispatch the ones that fire.

        Fired rules run in priority order (highest first, ties by
        registration order). A rule whose evaluation fails is logged and
        skipped; this method does not raise for rule-level failures.

        Returns:
            One FiredAction per dispatched action, in dispatch order.
        """
        options = options or EvaluateOptions()
        clear = self._clear_cache_default if options.clear_cache is None else options.clear_cache
        if clear:
            self._cache.clear()

        facts = dict(facts or {})
        context = dict(options.context or {})
        candidates = self._candidates(options)
        if not candidates:
            return []

        evaluations = await asyncio.gather(
            *(self._evaluate_rule(rule, facts, context) for rule in candidates)
        )
        fired = [
            (rule, evaluation)
            for rule, evaluation in zip(candidates, evaluations, strict=True)
            if evaluation.matched
        ]
        # Candidates are in registration order and sort() is stable
        fired.sort(key=lambda pair: pair[0].priority, reverse=True)

        results: list[FiredAction] = []
        for rule, evaluation in fired:
            if self._rules.get(rule.id) is not rule:
                logger.debug("Rule %s removed during evaluation, not firing", rule.id)
                continue
            if not options.dispatch:
                results.extend(
                    FiredAction(rule.id, rule.name, rule.priority, action, dispatched=False)
                    for action in rule.actions
                )
                continue
            results.extend(await self._dispatcher.dispatch(rule, context, evaluation))
            await self._record_execution(rule)

        return results

    def _candidates(self, options: EvaluateOptions) -> list[AutomationRule]:
        rules = [rule for rule in self.list_rules() if rule.enabled]
        if options.rule_ids is not None:
            wanted = set(options.rule_ids)
            rules = [rule for rule in rules if rule.id in wanted]
        if options.event is not None:
            rules = [rule for rule in rules if rule.trigger.event_name == options.event]
        return rules

    async def _evaluate_rule(
        self,
        rule: AutomationRule,
        facts: dict[str, Any],
        context: dict[str, Any],
    ) -> RuleEvaluation:
        evaluation_context = EvaluationContext(facts=facts, context=context, rule_id=rule.id)
        lookup = make_fact_lookup(self._registry, self._cache, evaluation_context)
        try:
            matched = await self._match(rule, lookup)
        except UndefinedFactError as exc:
            logger.warning("Rule %s not evaluated: %s", rule.id, exc.message)
            return RuleEvaluation(rule.id, matched=False, priority=rule.priority, error=exc.message)
        except RuleEvaluationError as exc:
            logger.exception("%s", exc.message)
            return RuleEvaluation(rule.id, matched=False, priority=rule.priority, error=exc.message)
        return RuleEvaluation(rule.id, matched=matched, priority=rule.priority)

    async def _match(self, rule: AutomationRule, lookup: FactLookup) -> bool:
        """Evaluate *rule*'s condition tree.

        Raises:
            RuleEvaluationError: On any failure, tagged with the rule ID.
        """
        try:
            return await evaluate_tree(rule.conditions, lookup, self._allow_undefined)
        except RuleEvaluationError as exc:
            exc.rule_id = rule.id
            exc.details["rule_id"] = rule.id
            raise
        except Exception as exc:
            msg = f"Rule {rule.id} evaluation failed: {exc}"
            raise RuleEvaluationError(msg, rule_id=rule.id) from exc

    async def _record_execution(self, rule: AutomationRule) -> None:
        """Bump execution metadata and announce it for the persistence layer."""
        rule.execution_count += 1
        rule.last_executed_at = self._clock()
        await self._bus.emit(
            RULE_EXECUTED_EVENT,
            {
                "rule": rule,
                "ruleId": rule.id,
                "executionCount": rule.execution_count,
                "executedAt": rule.last_executed_at,
            },
        )

    # ------------------------------------------------------------------
    # Event and timer entry points
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Listen on the bus and arm timers for every scheduled rule."""
        if self._started:
            return
        self._unsubscribe = self._bus.subscribe_all(self._on_event)
        self._started = True
        if self._scheduler_enabled:
            for rule in self.list_rules():
                if rule.trigger.type.is_scheduled:
                    self._scheduler.schedule(rule)
        logger.info("Automation engine started with %d rules", len(self._rules))

    async def stop(self) -> None:
        """Stop listening and cancel every timer."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._started = False
        await self._scheduler.shutdown()
        logger.info("Automation engine stopped")

    async def _on_event(self, event_type: str, payload: Any) -> None:
        if event_type.startswith(ACTION_EVENT_PREFIX) or event_type == RULE_EXECUTED_EVENT:
            return
        if not any(rule.trigger.event_name == event_type for rule in self._rules.values()):
            return

        context = payload if isinstance(payload, dict) else {"payload": payload}
        facts = build_facts_from_context(context, self._clock())
        fired = await self.evaluate(facts, EvaluateOptions(event=event_type, context=context))
        logger.debug("Event %s fired %d actions", event_type, len(fired))

    async def _run_scheduled(self, rule: AutomationRule) -> None:
        current = self._rules.get(rule.id)
        if current is None or not current.enabled:
            return
        now = self._clock()
        context = {
            "triggerType": current.trigger.type.value,
            "ruleId": current.id,
            "scheduledAt": now.isoformat(),
        }
        facts = build_facts_from_context(context, now)
        await self.evaluate(facts, EvaluateOptions(rule_ids=[current.id], context=context))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Drop all memoized fact values."""
        self._cache.clear()

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def registry(self) -> FactRegistry:
        return self._registry

    @property
    def cache(self) -> FactCache:
        return self._cache

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def started(self) -> bool:
        """Whether the engine is listening on the bus."""
        return self._started
