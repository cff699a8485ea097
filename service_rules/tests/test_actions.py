"""
Unit tests for rule action execution.
"""

import json
from unittest.mock import MagicMock

import pytest

from service_rules.app.rules.actions import (
    ActionContext, ActionExecutor, ActionFailure, interpolate, render_value
)
from service_rules.app.rules.facts import WorkingSet
from service_rules.app.rules.models import RuleAction, Schema
from service_rules.app.schema.registry import SchemaRegistry


ORDER = Schema.model_validate({
    "id": 1,
    "name": "Order",
    "properties": [
        {"name": "id", "type": "integer"},
        {"name": "amount", "type": "number"},
        {"name": "status", "type": "string"},
        {"name": "customer", "type": "object", "properties": [{"name": "tier", "type": "string"}]}
    ]
})

RISK_SCORE = Schema.model_validate({
    "id": 2,
    "name": "RiskScore",
    "properties": [
        {"name": "riskLevel", "type": "string"},
        {"name": "riskScore", "type": "integer", "defaultValue": 0}
    ]
})


def action(**kwargs) -> RuleAction:
    return RuleAction.model_validate(kwargs)


class TestInterpolation:
    """Test cases for template interpolation."""

    def test_placeholders_read_fact_paths(self):
        """Test {path} placeholders are replaced."""
        fact = {"id": 7, "customer": {"tier": "GOLD"}, "paid": True}
        text = interpolate("Order {id} for {customer.tier} paid={paid}", fact)
        assert text == "Order 7 for GOLD paid=true"

    def test_type_prefixed_placeholder(self):
        """Test schema-prefixed placeholders."""
        assert interpolate("{Order.id}", {"id": 3}, "Order") == "3"

    def test_missing_placeholder_is_left_untouched(self):
        """Test absent paths keep their placeholder."""
        assert interpolate("Hello {name}", {}) == "Hello {name}"

    def test_json_braces_are_not_placeholders(self):
        """Test JSON object templates keep their structure."""
        text = interpolate('{"orderId": {id}, "status": "{status}"}', {"id": 5, "status": "NEW"})
        assert json.loads(text) == {"orderId": 5, "status": "NEW"}

    def test_render_value(self):
        """Test rendering of nulls and containers."""
        assert render_value(None) == "null"
        assert render_value({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
        assert render_value(1.5) == "1.5"


class TestActionExecutor:
    """Test cases for ActionExecutor."""

    @pytest.fixture
    def executor(self):
        """Create executor over the order and risk schemas."""
        return ActionExecutor(SchemaRegistry([ORDER, RISK_SCORE]))

    @pytest.fixture
    def working_set(self):
        """Create working set holding one order."""
        return WorkingSet.from_facts([{"id": 1, "amount": 15000, "status": "NEW"}], "Order")

    def context(self, working_set, index=0):
        return ActionContext(working_set.slots[index], working_set, rule_id=10, rule_name="High value")

    def test_modify_changes_only_target_field(self, executor, working_set):
        """Test MODIFY writes one field and bumps the fact version."""
        outcome = executor.apply([action(type="MODIFY", targetField="status", value="FLAGGED")],
                                 self.context(working_set))

        slot = working_set.slots[0]
        assert slot.data == {"id": 1, "amount": 15000, "status": "FLAGGED"}
        assert slot.version == 1
        assert outcome.mutated_facts == [0]

    def test_modify_nested_target(self, executor):
        """Test MODIFY of a nested field on an existing object."""
        working_set = WorkingSet.from_facts([{"customer": {"tier": "SILVER"}}], "Order")
        executor.apply([action(type="MODIFY", targetField="Order.customer.tier", value="GOLD")],
                       self.context(working_set))

        assert working_set.slots[0].data == {"customer": {"tier": "GOLD"}}

    def test_modify_missing_parent_fails(self, executor, working_set):
        """Test MODIFY never creates intermediate objects."""
        with pytest.raises(ActionFailure) as exc_info:
            executor.apply([action(type="MODIFY", targetField="customer.tier", value="GOLD")],
                           self.context(working_set))

        assert "MODIFY action #1 failed" in exc_info.value.message
        assert "customer" not in working_set.slots[0].data

    def test_insert_applies_schema_defaults(self, executor, working_set):
        """Test INSERT builds the new fact from defaults and fact data."""
        outcome = executor.apply([action(type="INSERT", factType="RiskScore", factData={"riskLevel": "HIGH"})],
                                 self.context(working_set))

        assert outcome.new_facts == [1]
        inserted = working_set.slots[1]
        assert inserted.fact_type == "RiskScore"
        assert inserted.origin == "inserted"
        assert inserted.inserted_by == 10
        assert inserted.data == {"riskLevel": "HIGH", "riskScore": 0}

    def test_insert_unknown_type_fails(self, executor, working_set):
        """Test INSERT of a type the registry does not know."""
        with pytest.raises(ActionFailure):
            executor.apply([action(type="INSERT", factType="Invoice", factData={})], self.context(working_set))
        assert len(working_set) == 1

    def test_retract_removes_triggering_fact(self, executor, working_set):
        """Test RETRACT."""
        outcome = executor.apply([action(type="RETRACT")], self.context(working_set))

        assert outcome.retracted == [0]
        assert working_set.snapshot() == []

    def test_actions_after_retract_fail(self, executor, working_set):
        """Test a retracted fact cannot be modified by later actions."""
        actions = [
            action(type="RETRACT"),
            action(type="LOG", logMessage="gone {id}"),
            action(type="MODIFY", targetField="status", value="X")
        ]
        with pytest.raises(ActionFailure) as exc_info:
            executor.apply(actions, self.context(working_set))

        assert exc_info.value.outcome.retracted == [0]
        assert exc_info.value.outcome.logs == ["[RULE LOG] gone 1 | Fact: Order"]

    def test_log_entry_format(self, executor, working_set):
        """Test LOG entries carry the interpolated message and fact type."""
        outcome = executor.apply([action(type="LOG", logMessage="Order {id} over {amount}")],
                                 self.context(working_set))

        assert outcome.logs == ["[RULE LOG] Order 1 over 15000 | Fact: Order"]

    def test_failure_keeps_earlier_effects(self, executor, working_set):
        """Test effects applied before a failing action remain."""
        actions = [
            action(type="MODIFY", targetField="status", value="FLAGGED"),
            action(type="LOG", logMessage="flagged"),
            action(type="MODIFY", targetField="missing.field", value=1),
            action(type="LOG", logMessage="never")
        ]
        with pytest.raises(ActionFailure) as exc_info:
            executor.apply(actions, self.context(working_set))

        failure = exc_info.value
        assert failure.details["action_index"] == 2
        assert failure.outcome.mutated_facts == [0]
        assert failure.outcome.logs == ["[RULE LOG] flagged | Fact: Order"]
        assert working_set.slots[0].data["status"] == "FLAGGED"

    def test_later_actions_see_earlier_effects(self, executor, working_set):
        """Test actions run in order against the live fact."""
        outcome = executor.apply([
            action(type="MODIFY", targetField="status", value="FLAGGED"),
            action(type="LOG", logMessage="status={status}")
        ], self.context(working_set))

        assert outcome.logs == ["[RULE LOG] status=FLAGGED | Fact: Order"]

    def test_modify_value_is_copied_per_firing(self, executor):
        """Test container values are not shared between facts."""
        working_set = WorkingSet.from_facts([{"tags": []}, {"tags": []}], "Order")
        modify = action(type="MODIFY", targetField="tags", value=["hot"])

        executor.apply([modify], self.context(working_set, 0))
        executor.apply([modify], self.context(working_set, 1))
        working_set.slots[0].data["tags"].append("x")

        assert working_set.slots[1].data["tags"] == ["hot"]
        assert modify.value == ["hot"]

    def test_webhook_request_post_body(self, executor, working_set):
        """Test WEBHOOK builds a POST with the fact as body."""
        outcome = executor.apply([action(
            type="WEBHOOK",
            webhookUrl="https://hooks.example.com/orders/{id}",
            webhookHeaders={"X-Token": "abc"}
        )], self.context(working_set))

        request = outcome.webhook_requests[0]
        assert request.url == "https://hooks.example.com/orders/1"
        assert request.method.value == "POST"
        assert request.headers == {"Content-Type": "application/json", "X-Token": "abc"}
        assert json.loads(request.body) == {"id": 1, "amount": 15000, "status": "NEW"}

    def test_webhook_body_template_and_get(self, executor, working_set):
        """Test body templates and bodiless GET requests."""
        outcome = executor.apply([
            action(type="WEBHOOK", webhookUrl="https://h.example.com", webhookBodyTemplate='{"id": {id}}'),
            action(type="WEBHOOK", webhookUrl="https://h.example.com", webhookMethod="GET")
        ], self.context(working_set))

        post, get = outcome.webhook_requests
        assert post.body == '{"id": 1}'
        assert get.body is None

    def test_webhook_is_dispatched(self, working_set):
        """Test WEBHOOK requests go to the dispatcher without blocking."""
        dispatcher = MagicMock()
        executor = ActionExecutor(SchemaRegistry([ORDER]), dispatcher=dispatcher)

        outcome = executor.apply([action(type="WEBHOOK", webhookUrl="https://h.example.com")],
                                 self.context(working_set))

        dispatcher.dispatch.assert_called_once_with(outcome.webhook_requests[0])
