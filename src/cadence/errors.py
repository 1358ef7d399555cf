"""Cadence error hierarchy.

Structured exception types for the automation core.
"""

from __future__ import annotations


class AutomationError(Exception):
    """Base error for all automation exceptions."""

    code = "AUTOMATION_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class RuleValidationError(AutomationError):
    """A rule definition is malformed and was rejected."""

    code = "RULE_VALIDATION"

    def __init__(self, message: str, errors: list[str] | None = None, rule_id: str | None = None):
        errors = list(errors or [message])
        super().__init__(message, {"errors": errors, "rule_id": rule_id})
        self.errors = errors
        self.rule_id = rule_id


class RuleEvaluationError(AutomationError):
    """Evaluating a rule's condition tree failed."""

    code = "RULE_EVALUATION"

    def __init__(self, message: str, rule_id: str | None = None):
        super().__init__(message, {"rule_id": rule_id})
        self.rule_id = rule_id


class UndefinedFactError(RuleEvaluationError):
    """A condition referenced a fact nobody can resolve."""

    code = "UNDEFINED_FACT"

    def __init__(self, fact: str, rule_id: str | None = None):
        super().__init__(f"Undefined fact: {fact!r}", rule_id=rule_id)
        self.details["fact"] = fact
        self.fact = fact


class ScheduleError(AutomationError):
    """A schedule definition cannot be turned into a timer."""

    code = "SCHEDULE_ERROR"


class ConfigError(AutomationError):
    """A config key or value was rejected."""

    code = "CONFIG_ERROR"
