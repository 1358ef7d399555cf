"""Automation rule data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from cadence.errors import RuleValidationError


class TriggerType(str, Enum):
    """What starts an automation rule."""

    TASK_CREATED = "task-created"
    TASK_COMPLETED = "task-completed"
    TASK_UPDATED = "task-updated"
    TIME_BASED = "time-based"
    EVENT_BASED = "event-based"
    SCHEDULE_BASED = "schedule-based"

    @property
    def is_scheduled(self) -> bool:
        return self in (TriggerType.TIME_BASED, TriggerType.SCHEDULE_BASED)


# Bus event names emitted by the task lifecycle hooks
LIFECYCLE_EVENTS: dict[TriggerType, str] = {
    TriggerType.TASK_CREATED: "task.created",
    TriggerType.TASK_COMPLETED: "task.completed",
    TriggerType.TASK_UPDATED: "task.updated",
}


class ScheduleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"  # polled, correctness delegated to conditions


class ActionType(str, Enum):
    """Actions handed off to external handlers as ``action.<type>`` events."""

    SCHEDULE_TASK = "schedule-task"
    CATEGORIZE_TASK = "categorize-task"
    SEND_NOTIFICATION = "send-notification"
    GENERATE_REPORT = "generate-report"
    UPDATE_TASK = "update-task"
    CREATE_TASK = "create-task"

    @property
    def event_name(self) -> str:
        return f"action.{self.value}"


class Operator(str, Enum):
    EQUAL = "equal"
    NOT_EQUAL = "notEqual"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_INCLUSIVE = "greaterThanInclusive"
    LESS_THAN = "lessThan"
    LESS_THAN_INCLUSIVE = "lessThanInclusive"
    CONTAINS = "contains"
    DOES_NOT_CONTAIN = "doesNotContain"
    IN = "in"
    NOT_IN = "notIn"
    EXISTS = "exists"


class GroupKind(str, Enum):
    ALL = "all"
    ANY = "any"


@dataclass
class Schedule:
    """When a time-based rule fires."""

    type: ScheduleType
    time: str | None = None  # "HH:mm", local time
    expression: str | None = None  # custom schedules only


@dataclass
class TriggerConfig:
    """What starts an automation rule."""

    type: TriggerType = TriggerType.TASK_CREATED
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def schedule(self) -> Schedule | None:
        """Parsed ``config["schedule"]``, or None if absent or unknown."""
        raw = self.config.get("schedule")
        if not isinstance(raw, dict):
            return None
        try:
            schedule_type = ScheduleType(raw.get("type"))
        except ValueError:
            return None
        return Schedule(type=schedule_type, time=raw.get("time"), expression=raw.get("expression"))

    @property
    def event_name(self) -> str | None:
        """Bus event this trigger listens to (None for scheduled triggers)."""
        if self.type in LIFECYCLE_EVENTS:
            return LIFECYCLE_EVENTS[self.type]
        if self.type is TriggerType.EVENT_BASED:
            return self.config.get("event")
        return None


@dataclass
class Condition:
    """A single fact comparison."""

    fact: str
    operator: Operator
    value: Any
    params: dict[str, Any] | None = None


@dataclass
class ConditionGroup:
    """A condition tree node: ``all`` or ``any`` over conditions and sub-groups."""

    kind: GroupKind = GroupKind.ALL
    items: list[Condition | ConditionGroup] = field(default_factory=list)


@dataclass
class ActionConfig:
    """An action to dispatch when the rule fires."""

    type: ActionType
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class AutomationRule:
    """A trigger -> conditions -> actions pipeline."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    description: str | None = None
    enabled: bool = True
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    conditions: ConditionGroup = field(default_factory=ConditionGroup)
    actions: list[ActionConfig] = field(default_factory=list)
    priority: int = 0  # higher fires first
    execution_count: int = 0
    last_executed_at: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class RuleEvaluation:
    """Outcome of evaluating one rule in an evaluation pass."""

    rule_id: str
    matched: bool
    priority: int = 0
    error: str | None = None


@dataclass
class FiredAction:
    """One action handed to the dispatcher for a fired rule."""

    rule_id: str
    rule_name: str
    priority: int
    action: ActionConfig
    dispatched: bool = True
    error: str | None = None


# ------------------------------------------------------------------
# Persisted schema conversion
# ------------------------------------------------------------------


def rule_from_dict(data: dict[str, Any]) -> AutomationRule:
    """Build an AutomationRule from its persisted camelCase dict form.

    Raises:
        RuleValidationError: If the structure cannot be converted.
    """
    if not isinstance(data, dict):
        raise RuleValidationError("AutomationRule must be an object")
    rule_id = data.get("id")

    try:
        trigger_data = _object(data.get("trigger"), "Trigger")
        trigger = TriggerConfig(
            type=TriggerType(trigger_data.get("type", TriggerType.TASK_CREATED.value)),
            config=dict(_object(trigger_data.get("config"), "Trigger config")),
        )
        conditions = conditions_from_dict(data.get("conditions"))
        raw_actions = data.get("actions") or []
        if not isinstance(raw_actions, list):
            raise RuleValidationError("Actions must be an array")
        actions = []
        for index, raw in enumerate(raw_actions):
            action_data = _object(raw, f"Action {index}")
            actions.append(
                ActionConfig(
                    type=ActionType(action_data["type"]),
                    params=dict(_object(action_data.get("params"), f"Action {index} params")),
                )
            )
        return AutomationRule(
            id=rule_id or "",
            name=data.get("name") or "",
            description=data.get("description"),
            enabled=bool(data.get("enabled", True)),
            trigger=trigger,
            conditions=conditions,
            actions=actions,
            priority=data.get("priority") or 0,
            execution_count=data.get("executionCount") or 0,
            last_executed_at=_parse_datetime(data.get("lastExecutedAt")),
            created_at=_parse_datetime(data.get("createdAt")) or datetime.now(),
            updated_at=_parse_datetime(data.get("updatedAt")) or datetime.now(),
        )
    except RuleValidationError as exc:
        exc.rule_id = rule_id
        exc.details["rule_id"] = rule_id
        raise
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise RuleValidationError(f"Malformed rule: {exc}", rule_id=rule_id) from exc


def conditions_from_dict(data: Any) -> ConditionGroup:
    """Parse ``{"all": [...]}`` / ``{"any": [...]}`` into a ConditionGroup."""
    if not isinstance(data, dict):
        raise RuleValidationError("Conditions must be an object")
    if "all" in data and data["all"] is not None:
        kind, raw_items = GroupKind.ALL, data["all"]
    elif "any" in data and data["any"] is not None:
        kind, raw_items = GroupKind.ANY, data["any"]
    else:
        raise RuleValidationError('Conditions must have "all" or "any" property')
    if not isinstance(raw_items, list):
        raise RuleValidationError(f"Conditions.{kind.value} must be an array")

    items: list[Condition | ConditionGroup] = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise RuleValidationError(f'Condition {index} in "{kind.value}" must be an object')
        if "all" in raw or "any" in raw:
            items.append(conditions_from_dict(raw))
            continue
        if "value" not in raw:
            raise RuleValidationError(f'Condition {index} must have a "value" property')
        try:
            operator = Operator(raw.get("operator"))
        except ValueError as exc:
            raise RuleValidationError(
                f"Condition {index} has unknown operator {raw.get('operator')!r}"
            ) from exc
        items.append(
            Condition(
                fact=raw.get("fact") or "",
                operator=operator,
                value=raw["value"],
                params=raw.get("params"),
            )
        )
    return ConditionGroup(kind=kind, items=items)


def conditions_to_dict(group: ConditionGroup) -> dict[str, Any]:
    items: list[dict[str, Any]] = []
    for item in group.items:
        if isinstance(item, ConditionGroup):
            items.append(conditions_to_dict(item))
            continue
        entry: dict[str, Any] = {
            "fact": item.fact,
            "operator": item.operator.value,
            "value": item.value,
        }
        if item.params is not None:
            entry["params"] = item.params
        items.append(entry)
    return {group.kind.value: items}


def rule_to_dict(rule: AutomationRule) -> dict[str, Any]:
    """Convert an AutomationRule to its persisted camelCase dict form."""
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "enabled": rule.enabled,
        "trigger": {"type": rule.trigger.type.value, "config": rule.trigger.config},
        "conditions": conditions_to_dict(rule.conditions),
        "actions": [{"type": a.type.value, "params": a.params} for a in rule.actions],
        "priority": rule.priority,
        "executionCount": rule.execution_count,
        "lastExecutedAt": rule.last_executed_at.isoformat() if rule.last_executed_at else None,
        "createdAt": rule.created_at.isoformat(),
        "updatedAt": rule.updated_at.isoformat(),
    }


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    # fromisoformat handles the trailing "Z" from 3.11 on
    return datetime.fromisoformat(str(value))


def _object(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise RuleValidationError(f"{what} must be an object")
    return value
