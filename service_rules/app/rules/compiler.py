"""
Rule compilation for the Rules Service.

The compiler validates a rule's conditions and actions against its schemas,
normalizes literal values to the declared property types, and produces a
``CompiledRule`` together with a deterministic textual rendering of it.
Compiling an unchanged rule against unchanged schemas yields an equal result.
"""

import dataclasses
import hashlib
import json
import re
from typing import Any, Dict, List, Optional, Sequence

from shared.errors import CompilationError, PathNotFoundError, ValidationError
from shared.logging import get_logger

from ..schema.registry import SchemaRegistry
from .coercion import CoercionError, coerce, format_temporal, parse_temporal, to_number, to_text
from .evaluator import compile_pattern, member_list
from .facts import strip_type_prefix
from .models import (
    ActionType, CompiledRule, Condition, ConditionGroup, ConditionOperator,
    EffectiveWindow, FieldType, GroupOperator, PropertyType, Rule, RuleAction,
    Schema, WebhookMethod, NULL_OPERATORS, operator_applies
)


_SCALAR_TYPES = (PropertyType.STRING, PropertyType.NUMBER, PropertyType.INTEGER, PropertyType.BOOLEAN)
_URL_RE = re.compile(r"^https?://", re.IGNORECASE)


def _accepts_empty(operator: ConditionOperator, field_type: FieldType) -> bool:
    """An empty string is a real operand only for text comparisons on string fields."""
    return field_type.type == PropertyType.STRING and operator not in (
        ConditionOperator.MEMBER_OF, ConditionOperator.NOT_MEMBER_OF
    )


def model_hash(rule: Rule, input_schema: Schema, output_schemas: Sequence[Schema] = ()) -> str:
    """Hash of the authoring model plus the versions of the schemas it compiles against."""
    payload = {
        "rule": rule.authoring_dump(),
        "input": [input_schema.name, input_schema.version],
        "outputs": sorted([schema.name, schema.version] for schema in output_schemas),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class RuleCompiler:
    """Turns authoring rules into executable compiled rules."""

    def __init__(self):
        self.logger = get_logger("rules.compiler")

    def compile(self, rule: Rule, input_schema: Schema, output_schemas: Sequence[Schema] = (),
                allowed_action_types: Sequence[ActionType] = ()) -> CompiledRule:
        """Validate and compile one rule.

        Raises ValidationError (or PathNotFoundError) when the rule does not
        fit its schemas, and CompilationError when it is well-typed but still
        cannot be turned into an executable rule.
        """
        registry = SchemaRegistry([input_schema, *output_schemas])
        field_types: Dict[str, FieldType] = {}

        predicate = self._compile_group(rule.conditions, input_schema, registry, field_types)
        effects = tuple(
            self._compile_action(index, action, input_schema, output_schemas, registry, allowed_action_types)
            for index, action in enumerate(rule.actions)
        )
        window = self._compile_window(rule)

        compiled = CompiledRule(
            rule_id=rule.id,
            rule_name=rule.name,
            fact_type=input_schema.name,
            predicate=predicate,
            effects=effects,
            priority=rule.priority,
            activation_group=rule.activation_group or None,
            lock_on_active=rule.lock_on_active,
            effective_window=window,
            field_types=field_types,
            model_hash=model_hash(rule, input_schema, output_schemas),
            artifact="",
        )
        compiled = dataclasses.replace(compiled, artifact=render(compiled))

        self.logger.debug(
            "Rule compiled",
            rule_id=rule.id,
            rule_name=rule.name,
            model_hash=compiled.model_hash
        )
        return compiled

    # Conditions

    def _compile_group(self, group: ConditionGroup, schema: Schema, registry: SchemaRegistry,
                       field_types: Dict[str, FieldType]) -> ConditionGroup:
        return ConditionGroup(
            operator=group.operator,
            conditions=[self._compile_condition(c, schema, registry, field_types) for c in group.conditions]
        )

    def _compile_condition(self, condition: Condition, schema: Schema, registry: SchemaRegistry,
                           field_types: Dict[str, FieldType]) -> Condition:
        nested = None
        if condition.nested is not None:
            nested = self._compile_group(condition.nested, schema, registry, field_types)

        if not condition.fact:
            return Condition(nested=nested)

        path = strip_type_prefix(condition.fact, schema.name)
        field_type = registry.field_type(registry.resolve_in(schema, path))
        operator = condition.operator

        if not operator_applies(operator, field_type.type):
            raise ValidationError(
                f"Operator '{operator.value}' cannot be applied to {field_type.type.value} field '{path}'",
                details={"path": path, "operator": operator.value, "type": field_type.type.value}
            )
        field_types[path] = field_type

        if operator in NULL_OPERATORS:
            return Condition(fact=path, operator=operator, nested=nested)

        if condition.value_is_field:
            other = strip_type_prefix(str(condition.value or ""), schema.name)
            if not other:
                raise ValidationError(
                    f"Condition on '{path}' compares against a field but names none",
                    details={"path": path}
                )
            field_types[other] = registry.field_type(registry.resolve_in(schema, other))
            return Condition(fact=path, operator=operator, value=other, value_is_field=True, nested=nested)

        if condition.value is None or (condition.value == "" and not _accepts_empty(operator, field_type)):
            raise ValidationError(
                f"Operator '{operator.value}' on '{path}' requires a value",
                details={"path": path, "operator": operator.value}
            )

        value = self._normalize_operand(path, operator, condition.value, field_type)
        return Condition(fact=path, operator=operator, value=value, nested=nested)

    def _normalize_operand(self, path: str, operator: ConditionOperator, value: Any, field_type: FieldType) -> Any:
        try:
            if operator in (ConditionOperator.MEMBER_OF, ConditionOperator.NOT_MEMBER_OF):
                member_type = field_type.item_type if field_type.type == PropertyType.ARRAY else field_type.type
                members = member_list(value)
                if member_type in _SCALAR_TYPES:
                    members = [coerce(member, member_type) for member in members]
                return members

            if operator in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
                if field_type.type == PropertyType.ARRAY and field_type.item_type in _SCALAR_TYPES:
                    return coerce(value, field_type.item_type)
                return to_text(value) if field_type.type == PropertyType.STRING else value

            if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.GREATER_THAN_OR_EQUALS,
                            ConditionOperator.LESS_THAN, ConditionOperator.LESS_THAN_OR_EQUALS):
                return to_number(value)

            if operator in (ConditionOperator.BEFORE, ConditionOperator.AFTER):
                text = to_text(value)
                parse_temporal(text, field_type.format)
                return text

            if operator in (ConditionOperator.STARTS_WITH, ConditionOperator.ENDS_WITH):
                return to_text(value)

            if operator == ConditionOperator.MATCHES:
                pattern = to_text(value)
                try:
                    compile_pattern(pattern)
                except re.error as e:
                    raise CompilationError(
                        f"Invalid regular expression for '{path}': {e}",
                        details={"path": path, "pattern": pattern}
                    )
                return pattern

            if field_type.type in _SCALAR_TYPES or field_type.type == PropertyType.ARRAY:
                return coerce(value, field_type.type, field_type.format, field_type.item_type)
            return value

        except CoercionError as e:
            raise ValidationError(
                f"Value for '{path}' does not match its type: {e}",
                details={"path": path, "operator": operator.value, "type": field_type.type.value}
            )

    # Actions

    def _compile_action(self, index: int, action: RuleAction, input_schema: Schema,
                        output_schemas: Sequence[Schema], registry: SchemaRegistry,
                        allowed_action_types: Sequence[ActionType]) -> RuleAction:
        if allowed_action_types and action.type not in allowed_action_types:
            raise ValidationError(
                f"Action type {action.type.value} is not allowed in this rule-set",
                details={"action_index": index, "allowed": [t.value for t in allowed_action_types]}
            )

        if action.type == ActionType.MODIFY:
            return self._compile_modify(index, action, input_schema, output_schemas, registry)
        if action.type == ActionType.INSERT:
            return self._compile_insert(index, action, output_schemas, registry)
        if action.type == ActionType.LOG:
            if not action.log_message:
                raise ValidationError("LOG action requires a logMessage", details={"action_index": index})
            return RuleAction(type=ActionType.LOG, log_message=action.log_message)
        if action.type == ActionType.WEBHOOK:
            if not action.webhook_url or not _URL_RE.match(action.webhook_url):
                raise ValidationError(
                    "WEBHOOK action requires an http(s) webhookUrl",
                    details={"action_index": index, "url": action.webhook_url}
                )
            return RuleAction(
                type=ActionType.WEBHOOK,
                webhook_url=action.webhook_url,
                webhook_method=action.webhook_method,
                webhook_headers=dict(action.webhook_headers) if action.webhook_headers else None,
                webhook_body_template=action.webhook_body_template if action.webhook_method == WebhookMethod.POST else None,
            )
        return RuleAction(type=ActionType.RETRACT)

    def _compile_modify(self, index: int, action: RuleAction, input_schema: Schema,
                        output_schemas: Sequence[Schema], registry: SchemaRegistry) -> RuleAction:
        if not action.target_field:
            raise ValidationError("MODIFY action requires a targetField", details={"action_index": index})

        # The triggering fact's own schema first, then the declared output schemas
        for schema in (input_schema, *output_schemas):
            target = strip_type_prefix(action.target_field, schema.name)
            try:
                field_type = registry.field_type(registry.resolve_in(schema, target))
                break
            except PathNotFoundError:
                continue
        else:
            raise PathNotFoundError(input_schema.name, action.target_field, {"action_index": index})
        if "[]" in target:
            raise ValidationError(
                f"MODIFY target '{target}' cannot address every array element",
                details={"action_index": index}
            )

        try:
            value = coerce(action.value, field_type.type, field_type.format, field_type.item_type)
        except CoercionError as e:
            raise ValidationError(
                f"Value for '{target}' does not match its type: {e}",
                details={"action_index": index, "type": field_type.type.value}
            )
        return RuleAction(type=ActionType.MODIFY, target_field=target, value=value)

    def _compile_insert(self, index: int, action: RuleAction, output_schemas: Sequence[Schema],
                        registry: SchemaRegistry) -> RuleAction:
        schema = next(
            (s for s in output_schemas if action.fact_type and s.name.lower() == action.fact_type.lower()),
            None
        )
        if schema is None:
            raise ValidationError(
                f"INSERT factType '{action.fact_type}' is not an output schema of this rule-set",
                details={"action_index": index, "output_schemas": [s.name for s in output_schemas]}
            )

        fact_data: Dict[str, Any] = {}
        for key, value in (action.fact_data or {}).items():
            path = strip_type_prefix(key, schema.name)
            field_type = registry.field_type(registry.resolve_in(schema, path))
            try:
                fact_data[path] = coerce(value, field_type.type, field_type.format, field_type.item_type)
            except CoercionError as e:
                raise ValidationError(
                    f"INSERT value for '{schema.name}.{path}' does not match its type: {e}",
                    details={"action_index": index, "path": path}
                )
        return RuleAction(type=ActionType.INSERT, fact_type=schema.name, fact_data=fact_data)

    # Activity window

    def _compile_window(self, rule: Rule) -> EffectiveWindow:
        effective = _parse_window_date(rule.date_effective, "dateEffective")
        expires = _parse_window_date(rule.date_expires, "dateExpires")
        if effective is not None and expires is not None and effective >= expires:
            raise CompilationError(
                "dateEffective must be earlier than dateExpires",
                details={"dateEffective": rule.date_effective, "dateExpires": rule.date_expires}
            )
        return EffectiveWindow(effective=effective, expires=expires)


def _parse_window_date(value: Optional[str], name: str):
    if not value:
        return None
    try:
        return parse_temporal(value)
    except CoercionError:
        raise CompilationError(f"Invalid {name}: {value!r}", details={name: value})


# Rendering

_SYMBOLS = {
    ConditionOperator.EQUALS: "==",
    ConditionOperator.NOT_EQUALS: "!=",
    ConditionOperator.GREATER_THAN: ">",
    ConditionOperator.GREATER_THAN_OR_EQUALS: ">=",
    ConditionOperator.LESS_THAN: "<",
    ConditionOperator.LESS_THAN_OR_EQUALS: "<=",
    ConditionOperator.CONTAINS: "contains",
    ConditionOperator.NOT_CONTAINS: "not contains",
    ConditionOperator.STARTS_WITH: "str[startsWith]",
    ConditionOperator.ENDS_WITH: "str[endsWith]",
    ConditionOperator.MATCHES: "matches",
    ConditionOperator.MEMBER_OF: "in",
    ConditionOperator.NOT_MEMBER_OF: "not in",
    ConditionOperator.BEFORE: "before",
    ConditionOperator.AFTER: "after",
}


def _literal(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _render_condition(condition: Condition) -> str:
    parts: List[str] = []
    if condition.fact:
        if condition.operator == ConditionOperator.IS_NULL:
            parts.append(f"{condition.fact} == null")
        elif condition.operator == ConditionOperator.IS_NOT_NULL:
            parts.append(f"{condition.fact} != null")
        else:
            if condition.value_is_field:
                operand = condition.value
            elif condition.operator in (ConditionOperator.MEMBER_OF, ConditionOperator.NOT_MEMBER_OF):
                operand = "(" + ", ".join(_literal(v) for v in condition.value) + ")"
            else:
                operand = _literal(condition.value)
            parts.append(f"{condition.fact} {_SYMBOLS[condition.operator]} {operand}")
    if condition.nested is not None:
        parts.append(_render_group(condition.nested))
    if len(parts) > 1:
        return "(" + " && ".join(parts) + ")"
    return parts[0]


def _render_group(group: ConditionGroup) -> str:
    if not group.conditions:
        return "true" if group.operator == GroupOperator.ALL else "false"
    joiner = " && " if group.operator == GroupOperator.ALL else " || "
    rendered = [_render_condition(c) for c in group.conditions]
    if len(rendered) == 1:
        return rendered[0]
    return "(" + joiner.join(rendered) + ")"


def _render_action(action: RuleAction) -> str:
    if action.type == ActionType.MODIFY:
        return f"modify($fact) {{ {action.target_field} = {_literal(action.value)} }}"
    if action.type == ActionType.INSERT:
        fields = ", ".join(f"{key}: {_literal(value)}" for key, value in sorted((action.fact_data or {}).items()))
        return f"insert(new {action.fact_type}({{ {fields} }}))"
    if action.type == ActionType.RETRACT:
        return "retract($fact)"
    if action.type == ActionType.LOG:
        return f"log({_literal(action.log_message)})"
    return f"webhook({action.webhook_method.value} {_literal(action.webhook_url)})"


def render(compiled: CompiledRule) -> str:
    """Deterministic textual form of a compiled rule."""
    lines = [f"rule {_literal(compiled.rule_name)}"]
    if compiled.priority:
        lines.append(f"    salience {compiled.priority}")
    if any(effect.type == ActionType.MODIFY for effect in compiled.effects):
        lines.append("    no-loop true")
    if compiled.activation_group:
        lines.append(f"    activation-group {_literal(compiled.activation_group)}")
    if compiled.lock_on_active:
        lines.append("    lock-on-active true")
    if compiled.effective_window.effective is not None:
        lines.append(f"    date-effective {_literal(format_temporal(compiled.effective_window.effective))}")
    if compiled.effective_window.expires is not None:
        lines.append(f"    date-expires {_literal(format_temporal(compiled.effective_window.expires))}")
    lines.append("    when")
    lines.append(f"        $fact : {compiled.fact_type}( {_render_group(compiled.predicate)} )")
    lines.append("    then")
    for effect in compiled.effects:
        lines.append(f"        {_render_action(effect)};")
    lines.append("end")
    return "\n".join(lines) + "\n"
