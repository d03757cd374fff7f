"""
Condition matching for pricing rules.

Conditions are AND-combined predicates over the calculation context. A
condition on a parameter the context does not carry never holds.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from shared.logging import get_logger

from .models import ConditionOperator, RuleCondition

logger = get_logger("pricing.conditions")

_ORDERING = {
    ConditionOperator.GREATER_THAN: lambda a, b: a > b,
    ConditionOperator.GREATER_THAN_OR_EQUAL: lambda a, b: a >= b,
    ConditionOperator.LESS_THAN: lambda a, b: a < b,
    ConditionOperator.LESS_THAN_OR_EQUAL: lambda a, b: a <= b,
}

_COLLECTION_TYPES = (list, tuple, set, frozenset)


def to_comparable(value: Any) -> Any:
    """Normalise a value so numbers compare as Decimal and dates as dates."""
    if value is None or isinstance(value, (bool, Decimal, date)):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        # str-valued enums compare by their value
        value = value.value
    text = str(value).strip()
    try:
        number = Decimal(text)
        if number.is_finite():
            return number
    except InvalidOperation:
        pass
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return date.fromisoformat(text)
    except ValueError:
        return text


def _as_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    return value


def _equal(left: Any, right: Any) -> bool:
    left, right = _as_date(left), _as_date(right)
    if isinstance(left, str) and isinstance(right, str):
        return left.casefold() == right.casefold()
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if type(left) is not type(right):
        return str(left).casefold() == str(right).casefold()
    return left == right


def _ordered(operator: ConditionOperator, left: Any, right: Any) -> bool:
    left, right = _as_date(left), _as_date(right)
    if isinstance(left, bool) or isinstance(right, bool):
        return False
    if isinstance(left, Decimal) and isinstance(right, Decimal):
        return _ORDERING[operator](left, right)
    if isinstance(left, date) and isinstance(right, date):
        return _ORDERING[operator](left, right)
    return False


def evaluate_condition(condition: RuleCondition, actual: Any) -> bool:
    """Evaluate one condition against the context value it names."""
    operator = condition.operator
    expected = condition.value

    if operator is ConditionOperator.CONTAINS:
        if not isinstance(actual, _COLLECTION_TYPES):
            return False
        wanted = to_comparable(expected)
        return any(_equal(to_comparable(item), wanted) for item in actual)

    if isinstance(actual, _COLLECTION_TYPES):
        # Only membership tests make sense against a collection
        return False

    left = to_comparable(actual)
    right = to_comparable(expected)

    if operator is ConditionOperator.EQUALS:
        return _equal(left, right)
    if operator is ConditionOperator.NOT_EQUALS:
        return not _equal(left, right)
    if operator in _ORDERING:
        return _ordered(operator, left, right)
    if operator is ConditionOperator.STARTS_WITH:
        return str(actual).casefold().startswith(str(expected).casefold())
    if operator is ConditionOperator.ENDS_WITH:
        return str(actual).casefold().endswith(str(expected).casefold())

    logger.warning("Unknown condition operator", operator=str(operator))
    return False


def matches(conditions: Iterable[RuleCondition], context: Mapping[str, Any]) -> bool:
    """Whether every condition holds against the context; empty means true."""
    for condition in conditions:
        if condition.parameter not in context:
            return False
        actual = context[condition.parameter]
        if actual is None:
            return False
        if not evaluate_condition(condition, actual):
            return False
    return True
