"""
Rule data models for the Rules Service.

Wire models (schemas, rules, execution requests and reports) are pydantic
models serialized with camelCase aliases; engine-internal structures are
dataclasses.
"""

from typing import Dict, Any, Optional, List, Union
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


EntityId = Union[int, str]


class WireModel(BaseModel):
    """Base for JSON payloads exchanged with the UI and the rule store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PropertyType(str, Enum):
    """Schema property types."""
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


class ConditionOperator(str, Enum):
    """Condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUALS = "greaterThanOrEquals"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUALS = "lessThanOrEquals"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    MATCHES = "matches"
    MEMBER_OF = "memberOf"
    NOT_MEMBER_OF = "notMemberOf"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"
    BEFORE = "before"
    AFTER = "after"


class GroupOperator(str, Enum):
    """Boolean combinator of a condition group."""
    ALL = "all"
    ANY = "any"


class ActionType(str, Enum):
    """Rule action types."""
    MODIFY = "MODIFY"
    INSERT = "INSERT"
    RETRACT = "RETRACT"
    LOG = "LOG"
    WEBHOOK = "WEBHOOK"


class WebhookMethod(str, Enum):
    """HTTP methods allowed for webhook actions."""
    GET = "GET"
    POST = "POST"


NUMERIC_TYPES = (PropertyType.NUMBER, PropertyType.INTEGER)

# Operator -> property types it may be applied to; None means any type
OPERATOR_TYPES: Dict[ConditionOperator, Optional[tuple]] = {
    ConditionOperator.EQUALS: None,
    ConditionOperator.NOT_EQUALS: None,
    ConditionOperator.GREATER_THAN: NUMERIC_TYPES,
    ConditionOperator.GREATER_THAN_OR_EQUALS: NUMERIC_TYPES,
    ConditionOperator.LESS_THAN: NUMERIC_TYPES,
    ConditionOperator.LESS_THAN_OR_EQUALS: NUMERIC_TYPES,
    ConditionOperator.CONTAINS: (PropertyType.STRING, PropertyType.ARRAY),
    ConditionOperator.NOT_CONTAINS: (PropertyType.STRING, PropertyType.ARRAY),
    ConditionOperator.STARTS_WITH: (PropertyType.STRING,),
    ConditionOperator.ENDS_WITH: (PropertyType.STRING,),
    ConditionOperator.MATCHES: (PropertyType.STRING,),
    ConditionOperator.MEMBER_OF: None,
    ConditionOperator.NOT_MEMBER_OF: None,
    ConditionOperator.IS_NULL: None,
    ConditionOperator.IS_NOT_NULL: None,
    ConditionOperator.BEFORE: (PropertyType.STRING,),
    ConditionOperator.AFTER: (PropertyType.STRING,),
}

NULL_OPERATORS = (ConditionOperator.IS_NULL, ConditionOperator.IS_NOT_NULL)


def operator_applies(operator: ConditionOperator, property_type: PropertyType) -> bool:
    """Whether an operator may be used against a property of the given type."""
    allowed = OPERATOR_TYPES[operator]
    return allowed is None or property_type in allowed


class SchemaProperty(WireModel):
    """A node in a schema's property tree."""
    name: str
    path: Optional[str] = None
    type: PropertyType = PropertyType.STRING
    format: Optional[str] = None
    description: Optional[str] = None
    required: bool = False
    properties: List["SchemaProperty"] = Field(default_factory=list)
    items: Optional["SchemaProperty"] = None
    enum_values: Optional[List[Any]] = None
    default_value: Any = None

    @model_validator(mode="after")
    def _check_shape(self) -> "SchemaProperty":
        if self.properties and self.items is not None:
            raise ValueError(f"Property '{self.name}' cannot have both properties and items")
        if self.properties and self.type != PropertyType.OBJECT:
            raise ValueError(f"Property '{self.name}' declares child properties but is of type {self.type.value}")
        if self.items is not None and self.type != PropertyType.ARRAY:
            raise ValueError(f"Property '{self.name}' declares items but is of type {self.type.value}")
        return self


class Schema(WireModel):
    """A named fact schema."""
    id: EntityId
    name: str
    version: str = "1"
    description: Optional[str] = None
    properties: List[SchemaProperty] = Field(default_factory=list)


class RuleSet(WireModel):
    """A project/template grouping the schemas and rules that run together."""
    id: EntityId
    name: str
    description: Optional[str] = None
    input_schema_ids: List[EntityId] = Field(default_factory=list)
    output_schema_ids: List[EntityId] = Field(default_factory=list)
    allowed_output_types: List[ActionType] = Field(default_factory=list)


class Condition(WireModel):
    """One atomic test, optionally narrowed by a nested group."""
    fact: Optional[str] = None
    operator: Optional[ConditionOperator] = None
    value: Any = None
    value_is_field: bool = False
    nested: Optional["ConditionGroup"] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "Condition":
        if self.fact:
            if self.operator is None:
                raise ValueError(f"Condition on '{self.fact}' has no operator")
        elif self.nested is None:
            raise ValueError("Condition needs a fact path or a nested group")
        return self


class ConditionGroup(WireModel):
    """AND/OR combination of conditions."""
    operator: GroupOperator = GroupOperator.ALL
    conditions: List[Condition] = Field(default_factory=list)


Condition.model_rebuild()


class RuleAction(WireModel):
    """One effect applied when a rule fires."""
    type: ActionType
    target_field: Optional[str] = None
    value: Any = None
    fact_type: Optional[str] = None
    fact_data: Optional[Dict[str, Any]] = None
    log_message: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_method: WebhookMethod = WebhookMethod.POST
    webhook_headers: Optional[Dict[str, str]] = None
    webhook_body_template: Optional[str] = None


class Rule(WireModel):
    """Authoring model of a rule."""
    id: Optional[EntityId] = None
    name: str
    description: Optional[str] = None
    schema_id: EntityId
    project_id: Optional[EntityId] = None
    priority: int = 0
    enabled: bool = True
    category: Optional[str] = None
    conditions: ConditionGroup = Field(default_factory=ConditionGroup)
    actions: List[RuleAction] = Field(default_factory=list)
    activation_group: Optional[str] = None
    lock_on_active: bool = False
    date_effective: Optional[str] = None
    date_expires: Optional[str] = None
    compiled_artifact: Optional[str] = None
    compiled_hash: Optional[str] = None

    def authoring_dump(self) -> Dict[str, Any]:
        """The fields a compiled artifact is derived from."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"compiled_artifact", "compiled_hash", "description", "category"}
        )


class ExecutionRequest(WireModel):
    """Request body of an execution."""
    facts: Any = Field(default_factory=list, description="Input facts (JSON objects)")
    dry_run: bool = Field(False, description="Do not persist side effects")
    schema_id: Optional[EntityId] = Field(None, description="Input schema of the facts")


class FiredRule(WireModel):
    """Per-rule fire count, with an error note when the rule faulted."""
    rule_id: Optional[EntityId] = None
    rule_name: str
    fire_count: int = 0
    error: Optional[str] = None


class WebhookResult(WireModel):
    """Outcome of one webhook call."""
    url: str
    method: WebhookMethod = WebhookMethod.POST
    status_code: int = 0
    response: Optional[str] = None
    success: bool = False


class ExecutionReport(WireModel):
    """Immutable result of one execution."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    success: bool
    result_facts: List[Dict[str, Any]] = Field(default_factory=list)
    fired_rules: List[FiredRule] = Field(default_factory=list)
    execution_time_ms: int = 0
    error_message: Optional[str] = None
    webhook_results: List[WebhookResult] = Field(default_factory=list)
    logs: List[str] = Field(default_factory=list)
    dry_run: bool = False


@dataclass(frozen=True)
class FieldType:
    """Declared type of a resolved property path."""
    type: PropertyType
    format: Optional[str] = None
    item_type: Optional[PropertyType] = None

    @property
    def is_numeric(self) -> bool:
        return self.type in NUMERIC_TYPES


@dataclass(frozen=True)
class EffectiveWindow:
    """Activity window of a rule; open ends are None."""
    effective: Optional[datetime] = None
    expires: Optional[datetime] = None

    def contains(self, moment: datetime) -> bool:
        if self.effective is not None and moment < self.effective:
            return False
        if self.expires is not None and moment >= self.expires:
            return False
        return True


@dataclass(frozen=True)
class CompiledRule:
    """Validated, executable form of a rule."""
    rule_id: Optional[EntityId]
    rule_name: str
    fact_type: str
    predicate: ConditionGroup
    effects: tuple
    priority: int = 0
    activation_group: Optional[str] = None
    lock_on_active: bool = False
    effective_window: EffectiveWindow = field(default_factory=EffectiveWindow)
    field_types: Dict[str, FieldType] = field(default_factory=dict)
    model_hash: str = ""
    artifact: str = ""
