"""Tests for condition tree evaluation."""

from __future__ import annotations

from typing import Any

import pytest

from cadence.automations.conditions import apply_operator, evaluate_condition, evaluate_tree
from cadence.automations.facts import UNDEFINED
from cadence.automations.models import Condition, ConditionGroup, GroupKind, Operator
from cadence.errors import UndefinedFactError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingLookup:
    """Fact lookup over a dict that records which facts were read."""

    def __init__(self, facts: dict[str, Any]) -> None:
        self.facts = facts
        self.reads: list[str] = []

    async def __call__(self, fact: str, params: dict[str, Any] | None = None) -> Any:
        self.reads.append(fact)
        return self.facts.get(fact, UNDEFINED)


def _eq(fact: str, value: Any) -> Condition:
    return Condition(fact=fact, operator=Operator.EQUAL, value=value)


# ===========================================================================
# TestOperators
# ===========================================================================


class TestOperators:
    """Operator semantics."""

    @pytest.mark.parametrize(
        ("operator", "actual", "expected", "result"),
        [
            (Operator.EQUAL, "completed", "completed", True),
            (Operator.EQUAL, 1, "1", False),
            (Operator.NOT_EQUAL, "pending", "completed", True),
            (Operator.GREATER_THAN, 5, 3, True),
            (Operator.GREATER_THAN, 3, 3, False),
            (Operator.GREATER_THAN_INCLUSIVE, 3, 3, True),
            (Operator.LESS_THAN, 2, 3, True),
            (Operator.LESS_THAN_INCLUSIVE, 3, 3, True),
            (Operator.CONTAINS, ["work", "urgent"], "urgent", True),
            (Operator.CONTAINS, "meeting notes", "notes", True),
            (Operator.DOES_NOT_CONTAIN, ["work"], "urgent", True),
            (Operator.IN, "high", ["high", "urgent"], True),
            (Operator.NOT_IN, "low", ["high", "urgent"], True),
            (Operator.EXISTS, "x", True, True),
            (Operator.EXISTS, None, True, False),
            (Operator.EXISTS, None, False, True),
        ],
    )
    def test_operator(self, operator: Operator, actual: Any, expected: Any, result: bool) -> None:
        assert apply_operator(operator, actual, expected) is result

    def test_comparison_with_none_is_false(self) -> None:
        assert apply_operator(Operator.GREATER_THAN, None, 0) is False
        assert apply_operator(Operator.LESS_THAN_INCLUSIVE, None, 0) is False

    def test_incomparable_types_are_false(self) -> None:
        assert apply_operator(Operator.GREATER_THAN, "high", 3) is False

    def test_contains_on_scalar_is_false(self) -> None:
        assert apply_operator(Operator.CONTAINS, 42, 4) is False
        assert apply_operator(Operator.IN, "a", "abc") is False


# ===========================================================================
# TestEvaluateTree
# ===========================================================================


class TestEvaluateTree:
    @pytest.mark.asyncio()
    async def test_empty_all_is_true(self) -> None:
        assert await evaluate_tree(ConditionGroup(GroupKind.ALL, []), RecordingLookup({})) is True

    @pytest.mark.asyncio()
    async def test_empty_any_is_false(self) -> None:
        assert await evaluate_tree(ConditionGroup(GroupKind.ANY, []), RecordingLookup({})) is False

    @pytest.mark.asyncio()
    async def test_all_requires_every_condition(self) -> None:
        lookup = RecordingLookup({"a": 1, "b": 2})
        assert await evaluate_tree(ConditionGroup(GroupKind.ALL, [_eq("a", 1), _eq("b", 2)]), lookup)
        assert not await evaluate_tree(
            ConditionGroup(GroupKind.ALL, [_eq("a", 1), _eq("b", 3)]), lookup
        )

    @pytest.mark.asyncio()
    async def test_all_short_circuits(self) -> None:
        lookup = RecordingLookup({"a": 1, "b": 2})
        group = ConditionGroup(GroupKind.ALL, [_eq("a", 0), _eq("b", 2)])
        assert await evaluate_tree(group, lookup) is False
        assert lookup.reads == ["a"]

    @pytest.mark.asyncio()
    async def test_any_short_circuits(self) -> None:
        lookup = RecordingLookup({"a": 1, "b": 2})
        group = ConditionGroup(GroupKind.ANY, [_eq("a", 1), _eq("b", 0)])
        assert await evaluate_tree(group, lookup) is True
        assert lookup.reads == ["a"]

    @pytest.mark.asyncio()
    async def test_nested_groups(self) -> None:
        lookup = RecordingLookup({"task.priority": "high", "time.hour": 8, "time.isWeekend": False})
        group = ConditionGroup(
            GroupKind.ALL,
            [
                _eq("task.priority", "high"),
                ConditionGroup(
                    GroupKind.ANY,
                    [
                        _eq("time.isWeekend", True),
                        Condition("time.hour", Operator.LESS_THAN, 9),
                    ],
                ),
            ],
        )
        assert await evaluate_tree(group, lookup) is True

    @pytest.mark.asyncio()
    async def test_undefined_fact_raises(self) -> None:
        with pytest.raises(UndefinedFactError) as excinfo:
            group = ConditionGroup(GroupKind.ALL, [_eq("missing", 1)])
            await evaluate_tree(group, RecordingLookup({}))
        assert excinfo.value.fact == "missing"
        assert excinfo.value.code == "UNDEFINED_FACT"

    @pytest.mark.asyncio()
    async def test_undefined_fact_allowed_is_false(self) -> None:
        group = ConditionGroup(GroupKind.ANY, [_eq("missing", 1), _eq("a", 1)])
        assert await evaluate_tree(group, RecordingLookup({"a": 1}), allow_undefined=True) is True

    @pytest.mark.asyncio()
    async def test_none_value_is_defined(self) -> None:
        cond = Condition("task.dueDate", Operator.EXISTS, False)
        assert await evaluate_condition(cond, RecordingLookup({"task.dueDate": None})) is True
