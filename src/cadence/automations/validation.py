"""Rule validation — reject malformed rules before they reach the rule store."""

from __future__ import annotations

import re

from cadence.automations.models import (
    ActionConfig,
    ActionType,
    AutomationRule,
    Condition,
    ConditionGroup,
    Operator,
    ScheduleType,
    TriggerType,
)
from cadence.errors import RuleValidationError

_TIME_RE = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")

MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000


def validate_rule(rule: AutomationRule) -> list[str]:
    """Return every problem found with *rule*. Empty list means valid."""
    errors: list[str] = []

    if not isinstance(rule.id, str) or not rule.id.strip():
        errors.append("Rule ID is required and must be a string")

    if not isinstance(rule.name, str):
        errors.append("Name must be a string")
    elif len(rule.name) > MAX_NAME_LENGTH:
        errors.append(f"Name must be {MAX_NAME_LENGTH} characters or less")
    if rule.description is not None:
        if not isinstance(rule.description, str):
            errors.append("Description must be a string")
        elif len(rule.description) > MAX_DESCRIPTION_LENGTH:
            errors.append(f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less")

    if not isinstance(rule.enabled, bool):
        errors.append("Enabled must be a boolean")

    trigger_error = validate_trigger(rule)
    if trigger_error:
        errors.append(f"Trigger: {trigger_error}")

    conditions_error = validate_conditions(rule.conditions)
    if conditions_error:
        errors.append(f"Conditions: {conditions_error}")

    actions_error = validate_actions(rule.actions)
    if actions_error:
        errors.append(f"Actions: {actions_error}")

    if isinstance(rule.priority, bool) or not isinstance(rule.priority, int):
        errors.append("Priority must be an integer")
    if (
        isinstance(rule.execution_count, bool)
        or not isinstance(rule.execution_count, int)
        or rule.execution_count < 0
    ):
        errors.append("Execution count must be a non-negative integer")

    return errors


def ensure_valid(rule: AutomationRule) -> None:
    """Raise RuleValidationError if *rule* is malformed."""
    errors = validate_rule(rule)
    if errors:
        rule_id = rule.id if isinstance(rule.id, str) else None
        msg = f"Invalid rule {rule_id!r}: {'; '.join(errors)}"
        raise RuleValidationError(msg, errors=errors, rule_id=rule_id)


def validate_trigger(rule: AutomationRule) -> str | None:
    trigger = rule.trigger
    if not isinstance(trigger.type, TriggerType):
        return f"Trigger type must be one of: {', '.join(t.value for t in TriggerType)}"
    if not isinstance(trigger.config, dict):
        return "Trigger config must be an object"

    if trigger.type is TriggerType.EVENT_BASED:
        event = trigger.config.get("event")
        if not isinstance(event, str) or not event:
            return "Event-based trigger requires an event name"
        return None

    if not trigger.type.is_scheduled:
        return None

    raw = trigger.config.get("schedule")
    if not isinstance(raw, dict):
        return "Time-based trigger requires schedule configuration"
    schedule = trigger.schedule
    if schedule is None:
        return f"Schedule type must be one of: {', '.join(s.value for s in ScheduleType)}"

    if schedule.type is ScheduleType.CUSTOM:
        if not isinstance(schedule.expression, str) or not schedule.expression:
            return "Custom schedule requires cron expression"
        return None

    if not isinstance(schedule.time, str) or not schedule.time:
        return "Schedule time is required for non-custom schedules"
    if not _TIME_RE.match(schedule.time):
        return "Schedule time must be in HH:mm format"
    return None


def validate_conditions(group: ConditionGroup, path: str = "") -> str | None:
    """Validate a condition tree recursively."""
    if not isinstance(group, ConditionGroup):
        return 'Conditions must have "all" or "any" property'
    for index, item in enumerate(group.items):
        where = f"{path}{group.kind.value}[{index}]"
        if isinstance(item, ConditionGroup):
            nested = validate_conditions(item, path=f"{where}.")
            if nested:
                return nested
            continue
        if not isinstance(item, Condition):
            return f"Condition {where} must be an object"
        if not isinstance(item.fact, str) or not item.fact:
            return f'Condition {where} must have a "fact" string property'
        if not isinstance(item.operator, Operator):
            return f'Condition {where} must have a known "operator"'
        if item.params is not None and not isinstance(item.params, dict):
            return f"Condition {where} params must be an object"
    return None


def validate_actions(actions: list[ActionConfig]) -> str | None:
    if not isinstance(actions, list):
        return "Actions must be an array"
    if not actions:
        return "At least one action is required"
    for index, action in enumerate(actions):
        if not isinstance(action.type, ActionType):
            return (
                f"Action {index}: type must be one of: {', '.join(a.value for a in ActionType)}"
            )
        if not isinstance(action.params, dict):
            return f"Action {index}: params must be an object"
    return None
