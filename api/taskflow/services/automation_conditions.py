"""Condition evaluation for automation rules.

Invariants:
- Evaluation is pure and never raises; incomparable operands evaluate False.
- Conditions within a rule are AND-combined.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime
from numbers import Number
from typing import Any, Callable

from taskflow.schema.automation import AutomationContext, Condition, ConditionOperator

logger = logging.getLogger("taskflow.services.automation_conditions")

Predicate = Callable[[Any, Any, Condition, AutomationContext], bool]


def _strict_equals(left: Any, right: Any) -> bool:
    # True == 1 in Python; rules compare booleans and numbers as distinct values.
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, Number):
        return float(value)  # type: ignore[arg-type]
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _ordering(left: Any, right: Any) -> tuple[Any, Any] | None:
    """Coerce operands into a comparable pair, or None when they are not comparable."""
    if left is None or right is None:
        return None
    if isinstance(left, Number) or isinstance(right, Number):
        left_num, right_num = _as_number(left), _as_number(right)
        if left_num is None or right_num is None:
            return None
        return left_num, right_num
    if isinstance(left, (datetime, date)) or isinstance(right, (datetime, date)):
        return _as_text(left), _as_text(right)
    return left, right


def _compare(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
    pair = _ordering(left, right)
    if pair is None:
        return False
    try:
        return bool(op(*pair))
    except TypeError:
        return False


def _is_empty(value: Any) -> bool:
    if not value:
        return True
    try:
        return len(value) == 0
    except TypeError:
        return False


def _change_side(context: AutomationContext, field: str, side: str) -> tuple[bool, Any]:
    change = context.changes.get(field)
    if change is None:
        return False, None
    return True, getattr(change, side)


def _changed_to(value: Any, expected: Any, condition: Condition, context: AutomationContext) -> bool:
    present, new = _change_side(context, condition.field, "new")
    return present and _strict_equals(new, expected)


def _changed_from(value: Any, expected: Any, condition: Condition, context: AutomationContext) -> bool:
    present, old = _change_side(context, condition.field, "old")
    return present and _strict_equals(old, expected)


OPERATORS: dict[ConditionOperator, Predicate] = {
    ConditionOperator.EQUALS: lambda value, expected, *_: _strict_equals(value, expected),
    ConditionOperator.NOT_EQUALS: lambda value, expected, *_: not _strict_equals(value, expected),
    ConditionOperator.CONTAINS: lambda value, expected, *_: _as_text(expected) in _as_text(value),
    ConditionOperator.NOT_CONTAINS: lambda value, expected, *_: _as_text(expected) not in _as_text(value),
    ConditionOperator.GREATER_THAN: lambda value, expected, *_: _compare(value, expected, lambda a, b: a > b),
    ConditionOperator.LESS_THAN: lambda value, expected, *_: _compare(value, expected, lambda a, b: a < b),
    ConditionOperator.IS_EMPTY: lambda value, *_: _is_empty(value),
    ConditionOperator.IS_NOT_EMPTY: lambda value, *_: not _is_empty(value),
    ConditionOperator.CHANGED_TO: _changed_to,
    ConditionOperator.CHANGED_FROM: _changed_from,
    ConditionOperator.WAS_CHANGED: lambda _v, _e, condition, context: condition.field in context.changes,
    ConditionOperator.WAS_NOT_CHANGED: lambda _v, _e, condition, context: condition.field not in context.changes,
}


def evaluate_condition(condition: Condition, context: AutomationContext) -> bool:
    """Evaluate a single condition against the runtime context."""
    predicate = OPERATORS.get(condition.operator)
    if predicate is None:
        logger.warning("No evaluator for condition operator %r; treating as false", condition.operator)
        return False
    value = context.value_of(condition.field)
    return predicate(value, condition.value, condition, context)


def conditions_met(conditions: Iterable[Condition], context: AutomationContext) -> bool:
    """Return True when every condition holds (an empty list always holds)."""
    return all(evaluate_condition(condition, context) for condition in conditions)
