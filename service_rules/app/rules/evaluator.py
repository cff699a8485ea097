"""
Condition evaluation for the Rules Service.

Evaluation is a pure recursive function over a ``ConditionGroup`` and a fact.
It never raises for data-shape problems: a missing path reads as null and a
value that cannot be coerced to the compared type makes the condition false.
"""

import re
from functools import lru_cache
from typing import Any, Dict, Optional

from .coercion import CoercionError, infer_type, parse_temporal, to_bool, to_number, to_text
from .facts import MISSING, Projection, get_value, strip_type_prefix
from .models import (
    Condition, ConditionGroup, ConditionOperator, FieldType, GroupOperator,
    PropertyType, NUMERIC_TYPES
)


# Negated operator -> the positive operator it inverts
NEGATIONS = {
    ConditionOperator.NOT_EQUALS: ConditionOperator.EQUALS,
    ConditionOperator.NOT_CONTAINS: ConditionOperator.CONTAINS,
    ConditionOperator.NOT_MEMBER_OF: ConditionOperator.MEMBER_OF,
}

_ORDERED = {
    ConditionOperator.GREATER_THAN: lambda a, b: a > b,
    ConditionOperator.GREATER_THAN_OR_EQUALS: lambda a, b: a >= b,
    ConditionOperator.LESS_THAN: lambda a, b: a < b,
    ConditionOperator.LESS_THAN_OR_EQUALS: lambda a, b: a <= b,
}

_TEMPORAL = {
    ConditionOperator.BEFORE: lambda a, b: a < b,
    ConditionOperator.AFTER: lambda a, b: a > b,
}

FieldTypes = Dict[str, FieldType]


def evaluate(group: Optional[ConditionGroup], fact: Any,
             field_types: Optional[FieldTypes] = None, fact_type: Optional[str] = None) -> bool:
    """Evaluate a condition group against one fact.

    An empty ``all`` group is true and an empty ``any`` group is false.
    """
    if group is None:
        return True
    results = (evaluate_condition(condition, fact, field_types, fact_type) for condition in group.conditions)
    if group.operator == GroupOperator.ANY:
        return any(results)
    return all(results)


def evaluate_condition(condition: Condition, fact: Any,
                       field_types: Optional[FieldTypes] = None, fact_type: Optional[str] = None) -> bool:
    """The condition's own test ANDed with its nested group."""
    if condition.fact:
        if not _test(condition, fact, field_types or {}, fact_type):
            return False
    if condition.nested is not None:
        return evaluate(condition.nested, fact, field_types, fact_type)
    return True


def _test(condition: Condition, fact: Any, field_types: FieldTypes, fact_type: Optional[str]) -> bool:
    path = strip_type_prefix(condition.fact, fact_type)
    actual = get_value(fact, path)
    operand = condition.value

    if condition.value_is_field and condition.operator not in (ConditionOperator.IS_NULL, ConditionOperator.IS_NOT_NULL):
        operand = get_value(fact, strip_type_prefix(str(condition.value), fact_type))
        if operand is MISSING or isinstance(operand, Projection):
            operand = None

    field_type = field_types.get(path)
    if isinstance(actual, Projection):
        return _test_projection(condition.operator, actual, operand, field_type)
    return compare(condition.operator, None if actual is MISSING else actual, operand, field_type)


def _test_projection(operator: ConditionOperator, values: Projection, operand: Any,
                     field_type: Optional[FieldType]) -> bool:
    # Existential over the projected values; negated operators invert the positive test
    if operator == ConditionOperator.IS_NULL:
        return all(value is None for value in values)
    if operator == ConditionOperator.IS_NOT_NULL:
        return any(value is not None for value in values)
    if operator in NEGATIONS:
        positive = NEGATIONS[operator]
        return not any(compare(positive, value, operand, field_type) for value in values)
    return any(compare(operator, value, operand, field_type) for value in values)


def compare(operator: ConditionOperator, actual: Any, operand: Any,
            field_type: Optional[FieldType] = None) -> bool:
    """Apply one operator to a resolved value; total over all inputs."""
    if operator == ConditionOperator.IS_NULL:
        return actual is None
    if operator == ConditionOperator.IS_NOT_NULL:
        return actual is not None

    # Null against non-null: only the negated operators hold
    if actual is None or operand is None:
        return operator in NEGATIONS and not (actual is None and operand is None)

    try:
        if operator in NEGATIONS:
            return not _apply(NEGATIONS[operator], actual, operand, field_type)
        return _apply(operator, actual, operand, field_type)
    except (CoercionError, TypeError, ValueError, re.error):
        return False


def _apply(operator: ConditionOperator, actual: Any, operand: Any, field_type: Optional[FieldType]) -> bool:
    property_type = field_type.type if field_type else infer_type(actual)
    fmt = field_type.format if field_type else None

    if operator == ConditionOperator.EQUALS:
        return values_equal(actual, operand, property_type)

    if operator in _ORDERED:
        return _ORDERED[operator](to_number(actual), to_number(operand))

    if operator in _TEMPORAL:
        return _TEMPORAL[operator](parse_temporal(actual, fmt), parse_temporal(operand, fmt))

    if operator == ConditionOperator.CONTAINS:
        if isinstance(actual, list):
            item_type = field_type.item_type if field_type else None
            return any(_loose_equal(item, operand, item_type) for item in actual)
        return to_text(operand) in to_text(actual)

    if operator == ConditionOperator.STARTS_WITH:
        return to_text(actual).startswith(to_text(operand))

    if operator == ConditionOperator.ENDS_WITH:
        return to_text(actual).endswith(to_text(operand))

    if operator == ConditionOperator.MATCHES:
        return compile_pattern(to_text(operand)).fullmatch(to_text(actual)) is not None

    if operator == ConditionOperator.MEMBER_OF:
        members = member_list(operand)
        if isinstance(actual, list):
            return any(_loose_equal(item, member, None) for item in actual for member in members)
        return any(_loose_equal(actual, member, property_type) for member in members)

    raise ValueError(f"Unsupported operator: {operator}")


def values_equal(actual: Any, operand: Any, property_type: Optional[PropertyType]) -> bool:
    """Equality after coercing both sides to the declared type."""
    if property_type in NUMERIC_TYPES:
        return to_number(actual) == to_number(operand)
    if property_type == PropertyType.BOOLEAN:
        return to_bool(actual) == to_bool(operand)
    if property_type == PropertyType.STRING:
        return to_text(actual) == to_text(operand)
    return actual == operand


def _loose_equal(actual: Any, operand: Any, property_type: Optional[PropertyType]) -> bool:
    if actual is None or operand is None:
        return actual is None and operand is None
    try:
        return values_equal(actual, operand, property_type or infer_type(actual))
    except CoercionError:
        return False


def member_list(operand: Any) -> list:
    """Members of a memberOf operand: a list, or a comma-separated string."""
    if isinstance(operand, (list, tuple, set)):
        return list(operand)
    if isinstance(operand, str):
        return [part.strip() for part in operand.split(",") if part.strip()]
    return [operand]


@lru_cache(maxsize=512)
def compile_pattern(pattern: str):
    return re.compile(pattern)
