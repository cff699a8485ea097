"""
Action execution for the Rules Service.

Actions of one firing run in declared order against the live working set;
later actions observe the effects of earlier ones.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from shared.errors import EvaluationFault
from shared.logging import get_logger

from ..adapters.webhook_client import WebhookDispatcher, WebhookRequest
from ..schema.registry import SchemaRegistry
from .coercion import to_text
from .facts import MISSING, FactSlot, PathError, WorkingSet, get_value, set_value, strip_type_prefix
from .models import ActionType, EntityId, RuleAction, WebhookMethod


_PLACEHOLDER_RE = re.compile(r"\{([^{}\s]+)\}")


@dataclass
class ActionContext:
    """What one rule firing acts upon."""
    triggering_fact: FactSlot
    working_set: WorkingSet
    rule_id: Optional[EntityId] = None
    rule_name: str = ""


@dataclass
class ActionOutcome:
    """Effects produced by the actions of one firing."""
    mutated_facts: List[int] = field(default_factory=list)
    new_facts: List[int] = field(default_factory=list)
    retracted: List[int] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    webhook_requests: List[WebhookRequest] = field(default_factory=list)


class ActionFailure(EvaluationFault):
    """An action raised; effects applied before it are kept in ``outcome``."""

    def __init__(self, index: int, action: RuleAction, message: str, outcome: ActionOutcome):
        super().__init__(
            f"{action.type.value} action #{index + 1} failed: {message}",
            details={"action_index": index, "action_type": action.type.value}
        )
        self.outcome = outcome


def interpolate(template: str, fact: Dict[str, Any], fact_type: Optional[str] = None) -> str:
    """Replace ``{path}`` placeholders with values read from a fact.

    Placeholders whose path is absent are left untouched.
    """
    def _substitute(match: "re.Match") -> str:
        value = get_value(fact, strip_type_prefix(match.group(1), fact_type))
        if value is MISSING:
            return match.group(0)
        return render_value(value)

    return _PLACEHOLDER_RE.sub(_substitute, template)


def render_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return to_text(value)


class ActionExecutor:
    """Applies compiled rule effects to the working set of one execution."""

    def __init__(self, registry: SchemaRegistry, dispatcher: Optional[WebhookDispatcher] = None):
        self.registry = registry
        self.dispatcher = dispatcher
        self.logger = get_logger("rules.actions")

    def apply(self, actions: Sequence[RuleAction], context: ActionContext) -> ActionOutcome:
        outcome = ActionOutcome()
        for index, action in enumerate(actions):
            if not context.triggering_fact.live and action.type != ActionType.LOG:
                raise ActionFailure(index, action, "triggering fact was retracted", outcome)
            try:
                self._apply_one(action, context, outcome)
            except (PathError, KeyError, TypeError, ValueError, EvaluationFault) as e:
                self.logger.warning(
                    "Rule action failed",
                    rule_id=context.rule_id,
                    action_type=action.type.value,
                    action_index=index,
                    error=str(e)
                )
                raise ActionFailure(index, action, str(e), outcome) from e
        return outcome

    def _apply_one(self, action: RuleAction, context: ActionContext, outcome: ActionOutcome) -> None:
        if action.type == ActionType.MODIFY:
            self._modify(action, context, outcome)
        elif action.type == ActionType.INSERT:
            self._insert(action, context, outcome)
        elif action.type == ActionType.RETRACT:
            self._retract(context, outcome)
        elif action.type == ActionType.LOG:
            self._log(action, context, outcome)
        elif action.type == ActionType.WEBHOOK:
            self._webhook(action, context, outcome)
        else:
            raise ValueError(f"Unsupported action type: {action.type}")

    def _modify(self, action: RuleAction, context: ActionContext, outcome: ActionOutcome) -> None:
        slot = context.triggering_fact
        target = strip_type_prefix(action.target_field, slot.fact_type)
        set_value(slot.data, target, _fresh(action.value))
        slot.touch()
        if slot.index not in outcome.mutated_facts:
            outcome.mutated_facts.append(slot.index)

        self.logger.debug(
            "Fact modified",
            rule_id=context.rule_id,
            fact_index=slot.index,
            target_field=target
        )

    def _insert(self, action: RuleAction, context: ActionContext, outcome: ActionOutcome) -> None:
        schema = self.registry.find_by_name(action.fact_type)
        if schema is None:
            raise EvaluationFault(f"Unknown fact type '{action.fact_type}'")

        data = self.registry.build_fact(schema, action.fact_data)
        slot = context.working_set.add(schema.name, data, origin="inserted", inserted_by=context.rule_id)
        outcome.new_facts.append(slot.index)

        self.logger.debug(
            "Fact inserted",
            rule_id=context.rule_id,
            fact_index=slot.index,
            fact_type=schema.name
        )

    def _retract(self, context: ActionContext, outcome: ActionOutcome) -> None:
        slot = context.triggering_fact
        if context.working_set.retract(slot.index):
            outcome.retracted.append(slot.index)
            self.logger.debug("Fact retracted", rule_id=context.rule_id, fact_index=slot.index)

    def _log(self, action: RuleAction, context: ActionContext, outcome: ActionOutcome) -> None:
        slot = context.triggering_fact
        message = interpolate(action.log_message or "", slot.data, slot.fact_type)
        entry = f"[RULE LOG] {message} | Fact: {slot.fact_type}"
        outcome.logs.append(entry)

        self.logger.info(
            "Rule log",
            rule_id=context.rule_id,
            rule_name=context.rule_name,
            message=message,
            fact_type=slot.fact_type
        )

    def _webhook(self, action: RuleAction, context: ActionContext, outcome: ActionOutcome) -> None:
        slot = context.triggering_fact
        headers = {"Content-Type": "application/json"}
        headers.update(action.webhook_headers or {})

        body = None
        if action.webhook_method == WebhookMethod.POST:
            if action.webhook_body_template:
                body = interpolate(action.webhook_body_template, slot.data, slot.fact_type)
            else:
                body = json.dumps(slot.data, default=str)

        request = WebhookRequest(
            url=interpolate(action.webhook_url, slot.data, slot.fact_type),
            method=action.webhook_method,
            headers=headers,
            body=body
        )
        outcome.webhook_requests.append(request)
        if self.dispatcher is not None:
            self.dispatcher.dispatch(request)


def _fresh(value: Any) -> Any:
    # Each firing gets its own copy of container literals
    if isinstance(value, list):
        return [_fresh(item) for item in value]
    if isinstance(value, dict):
        return {key: _fresh(item) for key, item in value.items()}
    return value
