"""Automation pipeline — trigger -> conditions -> actions engine."""

from __future__ import annotations

from cadence.automations.actions import ActionDispatcher
from cadence.automations.engine import AutomationEngine, EvaluateOptions, LoadResult
from cadence.automations.events import EventBus
from cadence.automations.facts import (
    DomainDataSource,
    EvaluationContext,
    FactCache,
    FactRegistry,
    build_facts_from_context,
    register_domain_facts,
    register_time_facts,
)
from cadence.automations.hooks import LifecycleHooks
from cadence.automations.models import (
    ActionConfig,
    ActionType,
    AutomationRule,
    Condition,
    ConditionGroup,
    FiredAction,
    GroupKind,
    Operator,
    Schedule,
    ScheduleType,
    TriggerConfig,
    TriggerType,
    rule_from_dict,
    rule_to_dict,
)
from cadence.automations.scheduler import Scheduler, TimerState
from cadence.automations.validation import validate_rule

__all__ = [
    "ActionConfig",
    "ActionDispatcher",
    "ActionType",
    "AutomationEngine",
    "AutomationRule",
    "Condition",
    "ConditionGroup",
    "DomainDataSource",
    "EvaluateOptions",
    "EvaluationContext",
    "EventBus",
    "FactCache",
    "FactRegistry",
    "FiredAction",
    "GroupKind",
    "LifecycleHooks",
    "LoadResult",
    "Operator",
    "Schedule",
    "ScheduleType",
    "Scheduler",
    "TimerState",
    "TriggerConfig",
    "TriggerType",
    "build_facts_from_context",
    "register_domain_facts",
    "register_time_facts",
    "rule_from_dict",
    "rule_to_dict",
    "validate_rule",
]
