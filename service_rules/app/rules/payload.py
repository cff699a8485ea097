"""
Sample fact generation for compiled rules.

The generator expands a rule's predicate into alternative conjunctions,
proposes candidate values for every constrained path, keeps the first
candidate that passes every condition on that path, and checks the assembled
fact against the whole predicate. A rule with no satisfiable alternative is
reported as unsatisfiable instead of producing a fact that would not match.
"""

import copy
import itertools
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shared.errors import PathNotFoundError, UnsatisfiableConstraintError
from shared.logging import get_logger

from ..schema.registry import SchemaRegistry
from .coercion import CoercionError, format_temporal, parse_temporal, to_number
from .evaluator import compare, evaluate, member_list
from .facts import build_nested
from .models import (
    CompiledRule, Condition, ConditionGroup, ConditionOperator, FieldType,
    GroupOperator, PropertyType, Schema, SchemaProperty
)


MAX_BRANCHES = 256

Branch = List[Condition]

_TYPE_DEFAULTS = {
    PropertyType.STRING: "sample_value",
    PropertyType.NUMBER: 100,
    PropertyType.INTEGER: 100,
    PropertyType.BOOLEAN: True,
    PropertyType.ARRAY: [],
    PropertyType.OBJECT: {},
}

_TEMPORAL_DEFAULTS = {
    "date": "2024-01-01",
    "time": "12:00:00",
    "date-time": "2024-01-01T00:00:00Z",
}


def expand_group(group: Optional[ConditionGroup]) -> List[Branch]:
    """Alternative conjunctions of atomic conditions equivalent to a group."""
    if group is None:
        return [[]]
    if group.operator == GroupOperator.ANY:
        branches: List[Branch] = []
        for condition in group.conditions:
            branches.extend(expand_condition(condition))
            if len(branches) >= MAX_BRANCHES:
                return branches[:MAX_BRANCHES]
        return branches

    branches = [[]]
    for condition in group.conditions:
        branches = _product(branches, expand_condition(condition))
    return branches


def expand_condition(condition: Condition) -> List[Branch]:
    base: List[Branch] = [[condition.model_copy(update={"nested": None})]] if condition.fact else [[]]
    if condition.nested is None:
        return base
    return _product(base, expand_group(condition.nested))


def _product(left: List[Branch], right: List[Branch]) -> List[Branch]:
    return [a + b for a, b in itertools.islice(itertools.product(left, right), MAX_BRANCHES)]


class MatchPayloadGenerator:
    """Synthesizes a minimal fact that satisfies a compiled rule's predicate."""

    def __init__(self):
        self.logger = get_logger("rules.payload")

    def generate(self, compiled: CompiledRule, schema: Schema) -> Dict[str, Any]:
        branches = expand_group(compiled.predicate)
        if not branches:
            raise UnsatisfiableConstraintError(
                "Rule conditions can never match: an 'any' group has no conditions",
                details={"rule_id": compiled.rule_id}
            )

        registry = SchemaRegistry([schema])
        reasons: List[str] = []
        for branch in branches:
            payload, reason = self._solve(branch, compiled, schema, registry)
            if payload is not None:
                self.logger.debug("Match payload generated", rule_id=compiled.rule_id, paths=len(branch))
                return payload
            reasons.append(reason)

        self.logger.info("Rule conditions unsatisfiable", rule_id=compiled.rule_id, reasons=reasons[:5])
        raise UnsatisfiableConstraintError(
            f"Rule '{compiled.rule_name}' conditions cannot be satisfied: {reasons[0]}",
            details={"rule_id": compiled.rule_id, "reasons": reasons[:10]}
        )

    def _solve(self, branch: Branch, compiled: CompiledRule, schema: Schema,
               registry: SchemaRegistry) -> Tuple[Optional[Dict[str, Any]], str]:
        by_path: Dict[str, List[Condition]] = {}
        for atom in branch:
            if atom.value_is_field:
                return None, f"'{atom.fact}' is compared against another field"
            by_path.setdefault(atom.fact, []).append(atom)

        payload: Dict[str, Any] = {}
        for path, atoms in by_path.items():
            field_type = compiled.field_types.get(path) or FieldType(PropertyType.STRING)
            prop = _property(registry, schema, path)
            value = _choose(atoms, field_type, prop)
            if value is _UNSOLVED:
                return None, _describe(path, atoms)
            build_nested(payload, path, value)

        if not evaluate(compiled.predicate, payload, compiled.field_types, compiled.fact_type):
            return None, "constraints on different paths conflict"
        return payload, ""


_UNSOLVED = object()


def _property(registry: SchemaRegistry, schema: Schema, path: str) -> Optional[SchemaProperty]:
    try:
        return registry.resolve_in(schema, path)
    except PathNotFoundError:
        return None


def _describe(path: str, atoms: List[Condition]) -> str:
    tests = ", ".join(
        f"{atom.operator.value} {atom.value!r}" if atom.value is not None else atom.operator.value
        for atom in atoms
    )
    return f"no value of '{path}' satisfies {tests}"


def _choose(atoms: List[Condition], field_type: FieldType, prop: Optional[SchemaProperty]) -> Any:
    for candidate in _candidates(atoms, field_type, prop):
        if all(compare(atom.operator, candidate, atom.value, field_type) for atom in atoms):
            return candidate
    return _UNSOLVED


def _candidates(atoms: List[Condition], field_type: FieldType, prop: Optional[SchemaProperty]) -> Iterable[Any]:
    operators = {atom.operator for atom in atoms}
    if ConditionOperator.IS_NULL in operators:
        yield None
        return

    for atom in atoms:
        if atom.operator == ConditionOperator.EQUALS:
            yield atom.value
    for atom in atoms:
        if atom.operator == ConditionOperator.MEMBER_OF:
            for member in member_list(atom.value):
                yield [member] if field_type.type == PropertyType.ARRAY else member

    if field_type.is_numeric:
        yield from _numeric_candidates(atoms, field_type.type == PropertyType.INTEGER)
    elif field_type.type == PropertyType.BOOLEAN:
        yield from (True, False)
    elif field_type.type == PropertyType.STRING:
        if field_type.format in _TEMPORAL_DEFAULTS or operators & {ConditionOperator.BEFORE, ConditionOperator.AFTER}:
            yield from _temporal_candidates(atoms, field_type.format or "date-time")
        else:
            yield from _string_candidates(atoms)
    elif field_type.type == PropertyType.ARRAY:
        yield from _array_candidates(atoms, field_type)

    if prop is not None:
        if prop.default_value is not None:
            yield copy.deepcopy(prop.default_value)
        for value in prop.enum_values or []:
            yield value
    yield copy.deepcopy(_TYPE_DEFAULTS.get(field_type.type, "sample_value"))


def _numeric_candidates(atoms: List[Condition], integral: bool) -> Iterable[Any]:
    lows, highs = [], []
    for atom in atoms:
        try:
            bound = to_number(atom.value)
        except CoercionError:
            continue
        if atom.operator in (ConditionOperator.GREATER_THAN, ConditionOperator.GREATER_THAN_OR_EQUALS):
            lows.append(bound)
        elif atom.operator in (ConditionOperator.LESS_THAN, ConditionOperator.LESS_THAN_OR_EQUALS):
            highs.append(bound)

    low = max(lows) if lows else None
    high = min(highs) if highs else None
    raw: List[float] = []
    if low is not None and high is not None:
        middle = (low + high) / 2
        raw += [middle, math.floor(middle), math.ceil(middle), low + 1, high - 1, low, high]
    elif low is not None:
        raw += [low + 1, low, low + 0.5]
    elif high is not None:
        raw += [high - 1, high, high - 0.5]
    else:
        raw += [100, 0, 1]

    # Values excluded by notEquals are avoided by stepping past them
    raw += [to_number(atom.value) + 1 for atom in atoms
            if atom.operator == ConditionOperator.NOT_EQUALS and isinstance(atom.value, (int, float))]

    for value in raw:
        if integral and not float(value).is_integer():
            continue
        yield _tidy_number(value)


def _tidy_number(value: float) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _string_candidates(atoms: List[Condition]) -> Iterable[str]:
    prefixes = [atom.value for atom in atoms if atom.operator == ConditionOperator.STARTS_WITH]
    suffixes = [atom.value for atom in atoms if atom.operator == ConditionOperator.ENDS_WITH]
    pieces = [atom.value for atom in atoms if atom.operator == ConditionOperator.CONTAINS]
    prefix = max(prefixes, key=len) if prefixes else ""
    suffix = max(suffixes, key=len) if suffixes else ""
    middle = "".join(piece for piece in pieces if piece not in prefix + suffix)

    composed = prefix + middle + suffix
    if composed:
        yield composed
        yield prefix + middle + "_" + suffix if suffix else composed + "_alt"
        yield prefix + "x" + middle + suffix
    for atom in atoms:
        if atom.operator == ConditionOperator.MATCHES:
            yield "".join(ch for ch in str(atom.value) if ch not in ".*+?^${}()|[]\\")
    yield "sample_value"
    yield "sample_value_alt"


def _temporal_candidates(atoms: List[Condition], fmt: str) -> Iterable[str]:
    lows, highs = [], []
    for atom in atoms:
        if atom.operator not in (ConditionOperator.AFTER, ConditionOperator.BEFORE):
            continue
        try:
            moment = _as_datetime(parse_temporal(atom.value, fmt))
        except CoercionError:
            continue
        (lows if atom.operator == ConditionOperator.AFTER else highs).append(moment)

    low = max(lows) if lows else None
    high = min(highs) if highs else None
    step = timedelta(days=1) if fmt == "date" else timedelta(minutes=1)
    moments = []
    if low is not None and high is not None:
        moments += [low + (high - low) / 2, low + step, high - step]
    elif low is not None:
        moments.append(low + step)
    elif high is not None:
        moments.append(high - step)

    for moment in moments:
        yield _render_temporal(moment, fmt)
    yield _TEMPORAL_DEFAULTS.get(fmt, _TEMPORAL_DEFAULTS["date-time"])


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return datetime.combine(date(2000, 1, 1), value)


def _render_temporal(moment: datetime, fmt: str) -> str:
    if fmt == "date":
        return moment.date().isoformat()
    if fmt == "time":
        return moment.timetz().isoformat() if moment.tzinfo else moment.time().isoformat()
    return format_temporal(moment)


def _array_candidates(atoms: List[Condition], field_type: FieldType) -> Iterable[list]:
    required = [atom.value for atom in atoms if atom.operator == ConditionOperator.CONTAINS]
    if required:
        yield list(required)
    element = _TYPE_DEFAULTS.get(field_type.item_type) if field_type.item_type else "sample_value"
    if element is not None and not isinstance(element, (list, dict)):
        yield list(required) + [element]
        yield [element]
    yield []
