"""Condition evaluation — walk an ``all``/``any`` tree against resolved facts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from cadence.automations.facts import UNDEFINED, FactLookup
from cadence.automations.models import Condition, ConditionGroup, GroupKind, Operator
from cadence.errors import UndefinedFactError

logger = logging.getLogger(__name__)


async def evaluate_tree(
    group: ConditionGroup,
    lookup: FactLookup,
    allow_undefined: bool = False,
) -> bool:
    """Evaluate a condition tree, short-circuiting left to right.

    An empty ``all`` is True; an empty ``any`` is False.

    Raises:
        UndefinedFactError: A condition names a fact nobody provides and
            *allow_undefined* is False.
    """
    if group.kind is GroupKind.ALL:
        for item in group.items:
            if not await _evaluate_item(item, lookup, allow_undefined):
                return False
        return True

    for item in group.items:
        if await _evaluate_item(item, lookup, allow_undefined):
            return True
    return False


async def _evaluate_item(
    item: Condition | ConditionGroup, lookup: FactLookup, allow_undefined: bool
) -> bool:
    if isinstance(item, ConditionGroup):
        return await evaluate_tree(item, lookup, allow_undefined)
    return await evaluate_condition(item, lookup, allow_undefined)


async def evaluate_condition(
    condition: Condition,
    lookup: FactLookup,
    allow_undefined: bool = False,
) -> bool:
    """Resolve the condition's fact and apply its operator."""
    actual = await lookup(condition.fact, condition.params)
    if actual is UNDEFINED:
        if allow_undefined:
            return False
        raise UndefinedFactError(condition.fact)
    result = apply_operator(condition.operator, actual, condition.value)
    logger.debug(
        "Condition %s %s %r -> %s (actual=%r)",
        condition.fact,
        condition.operator.value,
        condition.value,
        result,
        actual,
    )
    return result


def apply_operator(operator: Operator, actual: Any, expected: Any) -> bool:
    """Compare *actual* (the fact value) against *expected* (the rule operand).

    Incomparable operands evaluate to False rather than raising.
    """
    check = _OPERATORS[operator]
    try:
        return bool(check(actual, expected))
    except TypeError:
        return False


def _greater_than(actual: Any, expected: Any) -> bool:
    return actual is not None and actual > expected


def _greater_than_inclusive(actual: Any, expected: Any) -> bool:
    return actual is not None and actual >= expected


def _less_than(actual: Any, expected: Any) -> bool:
    return actual is not None and actual < expected


def _less_than_inclusive(actual: Any, expected: Any) -> bool:
    return actual is not None and actual <= expected


def _contains(actual: Any, expected: Any) -> bool:
    """Membership test on array-valued (or text) facts."""
    if isinstance(actual, list | tuple | set | frozenset | str):
        return expected in actual
    return False


def _does_not_contain(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list | tuple | set | frozenset | str):
        return expected not in actual
    return False


def _in(actual: Any, expected: Any) -> bool:
    if isinstance(expected, list | tuple | set | frozenset):
        return actual in expected
    return False


def _not_in(actual: Any, expected: Any) -> bool:
    if isinstance(expected, list | tuple | set | frozenset):
        return actual not in expected
    return False


def _exists(actual: Any, expected: Any) -> bool:
    return (actual is not None) == bool(expected)


_OPERATORS: dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQUAL: lambda actual, expected: actual == expected,
    Operator.NOT_EQUAL: lambda actual, expected: actual != expected,
    Operator.GREATER_THAN: _greater_than,
    Operator.GREATER_THAN_INCLUSIVE: _greater_than_inclusive,
    Operator.LESS_THAN: _less_than,
    Operator.LESS_THAN_INCLUSIVE: _less_than_inclusive,
    Operator.CONTAINS: _contains,
    Operator.DOES_NOT_CONTAIN: _does_not_contain,
    Operator.IN: _in,
    Operator.NOT_IN: _not_in,
    Operator.EXISTS: _exists,
}
