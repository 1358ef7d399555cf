"""Action dispatch — hand fired actions to external handlers via the event bus."""

from __future__ import annotations

import logging
from typing import Any

from cadence.automations.events import EventBus
from cadence.automations.models import (
    ActionConfig,
    AutomationRule,
    FiredAction,
    RuleEvaluation,
)

logger = logging.getLogger(__name__)

ACTION_EVENT_PREFIX = "action."


class ActionDispatcher:
    """Emits one ``action.<type>`` event per action of a fired rule.

    The dispatcher performs no business logic; notification delivery,
    report generation and task mutation live in handlers subscribed to
    those events.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    async def dispatch(
        self,
        rule: AutomationRule,
        context: dict[str, Any],
        evaluation: RuleEvaluation,
    ) -> list[FiredAction]:
        """Dispatch every action of *rule* in order. Never raises."""
        return [
            await self.dispatch_action(rule, action, context, evaluation) for action in rule.actions
        ]

    async def dispatch_action(
        self,
        rule: AutomationRule,
        action: ActionConfig,
        context: dict[str, Any],
        evaluation: RuleEvaluation,
    ) -> FiredAction:
        """Dispatch a single action. Failures are logged and recorded, not raised."""
        payload = {
            "action": action,
            "context": context,
            "evaluationResult": evaluation,
            "ruleId": rule.id,
        }
        fired = FiredAction(
            rule_id=rule.id,
            rule_name=rule.name,
            priority=rule.priority,
            action=action,
        )
        try:
            await self._bus.emit(action.type.event_name, payload)
        except Exception as exc:
            logger.exception("Automation %s action %s dispatch failed", rule.id, action.type.value)
            fired.dispatched = False
            fired.error = f"Action {action.type.value} failed: {exc}"
            return fired

        logger.info("Dispatched %s for rule %s", action.type.event_name, rule.id)
        return fired
