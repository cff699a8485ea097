"""
Unit tests for condition evaluation.
"""

import pytest

from service_rules.app.rules.evaluator import compare, evaluate, evaluate_condition
from service_rules.app.rules.models import (
    Condition, ConditionGroup, ConditionOperator, FieldType, GroupOperator, PropertyType
)


def cond(fact, operator, value=None, **kwargs) -> Condition:
    return Condition(fact=fact, operator=ConditionOperator(operator), value=value, **kwargs)


def group(operator, *conditions) -> ConditionGroup:
    return ConditionGroup(operator=GroupOperator(operator), conditions=list(conditions))


class TestGroupEvaluation:
    """Test cases for group semantics."""

    def test_empty_all_group_is_true(self):
        """Test vacuous AND."""
        assert evaluate(group("all"), {}) is True
        assert evaluate(group("all"), {"anything": 1}) is True

    def test_empty_any_group_is_false(self):
        """Test vacuous OR."""
        assert evaluate(group("any"), {}) is False
        assert evaluate(group("any"), {"anything": 1}) is False

    def test_all_and_any(self):
        """Test AND/OR across members."""
        fact = {"a": 1, "b": 2}
        assert evaluate(group("all", cond("a", "equals", 1), cond("b", "equals", 2)), fact) is True
        assert evaluate(group("all", cond("a", "equals", 1), cond("b", "equals", 3)), fact) is False
        assert evaluate(group("any", cond("a", "equals", 9), cond("b", "equals", 2)), fact) is True
        assert evaluate(group("any", cond("a", "equals", 9), cond("b", "equals", 9)), fact) is False

    def test_nested_group_narrows_parent(self):
        """Test the parent test is ANDed with its nested group."""
        condition = Condition.model_validate({
            "fact": "a",
            "operator": "equals",
            "value": 1,
            "nested": {"operator": "any", "conditions": [{"fact": "b", "operator": "equals", "value": 2}]}
        })
        root = ConditionGroup(conditions=[condition])

        assert evaluate(root, {"a": 1, "b": 2}) is True
        assert evaluate(root, {"a": 1, "b": 3}) is False
        assert evaluate(root, {"a": 2, "b": 2}) is False

    def test_group_only_condition(self):
        """Test a condition without a fact takes its nested group's value."""
        condition = Condition(nested=group("any", cond("a", "equals", 1), cond("a", "equals", 2)))

        assert evaluate_condition(condition, {"a": 2}) is True
        assert evaluate_condition(condition, {"a": 3}) is False

    def test_deep_nesting(self):
        """Test several levels of nesting."""
        inner = group("all", cond("c", "greaterThan", 5))
        middle = group("any", cond("b", "equals", "x", nested=inner), cond("b", "equals", "y"))
        root = group("all", cond("a", "isNotNull", nested=middle))

        assert evaluate(root, {"a": 0, "b": "x", "c": 6}) is True
        assert evaluate(root, {"a": 0, "b": "x", "c": 4}) is False
        assert evaluate(root, {"a": 0, "b": "y"}) is True
        assert evaluate(root, {"b": "y"}) is False


class TestNullSemantics:
    """Test cases for null and missing values."""

    @pytest.mark.parametrize("value", [None, 0, "x", True, [1, 2]])
    def test_null_operators_ignore_value(self, value):
        """Test isNull/isNotNull do not depend on the value."""
        assert evaluate_condition(cond("a", "isNull", value), {}) is True
        assert evaluate_condition(cond("a", "isNull", value), {"a": None}) is True
        assert evaluate_condition(cond("a", "isNull", value), {"a": 1}) is False
        assert evaluate_condition(cond("a", "isNotNull", value), {"a": 1}) is True
        assert evaluate_condition(cond("a", "isNotNull", value), {}) is False

    @pytest.mark.parametrize("operator,value", [
        ("equals", 1),
        ("greaterThan", 1),
        ("lessThan", 1),
        ("contains", "x"),
        ("startsWith", "x"),
        ("endsWith", "x"),
        ("matches", ".*"),
        ("memberOf", ["x"]),
        ("before", "2024-01-01"),
        ("after", "2024-01-01"),
    ])
    def test_missing_value_fails_positive_operators(self, operator, value):
        """Test missing paths are false for non-negated operators."""
        assert evaluate_condition(cond("missing", operator, value), {}) is False

    @pytest.mark.parametrize("operator,value", [
        ("notEquals", 1),
        ("notContains", "x"),
        ("notMemberOf", ["x"]),
    ])
    def test_missing_value_satisfies_negated_operators(self, operator, value):
        """Test null against a non-null operand holds for negated operators."""
        assert evaluate_condition(cond("missing", operator, value), {}) is True

    def test_null_against_null_operand(self):
        """Test equals null is false and notEquals null vs null is false."""
        assert compare(ConditionOperator.EQUALS, None, None) is False
        assert compare(ConditionOperator.NOT_EQUALS, None, None) is False
        assert compare(ConditionOperator.NOT_EQUALS, "a", None) is True


class TestOperators:
    """Test cases for individual operators."""

    def test_equals_coerces_numeric_strings(self):
        """Test numeric string vs number."""
        number = FieldType(PropertyType.NUMBER)
        assert compare(ConditionOperator.EQUALS, "15000", 15000, number) is True
        assert compare(ConditionOperator.EQUALS, 15000.0, 15000) is True
        assert compare(ConditionOperator.NOT_EQUALS, "15000", 15000, number) is False

    def test_equals_coerces_boolean_strings(self):
        """Test boolean string vs boolean."""
        boolean = FieldType(PropertyType.BOOLEAN)
        assert compare(ConditionOperator.EQUALS, "true", True, boolean) is True
        assert compare(ConditionOperator.EQUALS, False, "false", boolean) is True

    def test_string_compare_is_case_sensitive(self):
        """Test case-sensitive string comparisons."""
        assert compare(ConditionOperator.EQUALS, "Gold", "gold") is False
        assert compare(ConditionOperator.STARTS_WITH, "Gold", "go") is False
        assert compare(ConditionOperator.ENDS_WITH, "Gold", "ld") is True

    def test_numeric_comparisons(self):
        """Test ordered comparisons."""
        assert compare(ConditionOperator.GREATER_THAN, 15000, 10000) is True
        assert compare(ConditionOperator.GREATER_THAN, 10000, 10000) is False
        assert compare(ConditionOperator.GREATER_THAN_OR_EQUALS, 10000, 10000) is True
        assert compare(ConditionOperator.LESS_THAN, "9.5", 10) is True
        assert compare(ConditionOperator.LESS_THAN_OR_EQUALS, 10, "10") is True

    def test_coercion_failure_is_false(self):
        """Test uncoercible values make the condition false, negated ones included."""
        number = FieldType(PropertyType.NUMBER)
        assert compare(ConditionOperator.GREATER_THAN, "abc", 10, number) is False
        assert compare(ConditionOperator.EQUALS, "abc", 10, number) is False
        assert compare(ConditionOperator.NOT_EQUALS, "abc", 10, number) is False
        assert compare(ConditionOperator.GREATER_THAN, True, 0) is False

    def test_contains_string_and_array(self):
        """Test substring vs element membership."""
        assert compare(ConditionOperator.CONTAINS, "priority-order", "order") is True
        assert compare(ConditionOperator.CONTAINS, ["a", "b"], "b") is True
        assert compare(ConditionOperator.CONTAINS, ["ab"], "a") is False
        assert compare(ConditionOperator.NOT_CONTAINS, ["a", "b"], "c") is True
        assert compare(ConditionOperator.CONTAINS, [1, 2], "2", FieldType(PropertyType.ARRAY, item_type=PropertyType.INTEGER)) is True

    def test_matches_whole_value(self):
        """Test regex must match the whole value."""
        assert compare(ConditionOperator.MATCHES, "ORD-123", r"ORD-\d+") is True
        assert compare(ConditionOperator.MATCHES, "xORD-123", r"ORD-\d+") is False
        assert compare(ConditionOperator.MATCHES, "ORD-123", "[") is False

    def test_member_of(self):
        """Test list and comma-separated operands."""
        assert compare(ConditionOperator.MEMBER_OF, "GOLD", ["GOLD", "SILVER"]) is True
        assert compare(ConditionOperator.MEMBER_OF, "GOLD", "GOLD, SILVER") is True
        assert compare(ConditionOperator.MEMBER_OF, "BRONZE", ["GOLD", "SILVER"]) is False
        assert compare(ConditionOperator.NOT_MEMBER_OF, "BRONZE", ["GOLD", "SILVER"]) is True
        assert compare(ConditionOperator.MEMBER_OF, 2, [1, 2, 3]) is True

    def test_before_and_after(self):
        """Test temporal comparisons."""
        date_type = FieldType(PropertyType.STRING, format="date")
        assert compare(ConditionOperator.BEFORE, "2024-01-01", "2024-06-30", date_type) is True
        assert compare(ConditionOperator.AFTER, "2024-01-01", "2024-06-30", date_type) is False

        moment = FieldType(PropertyType.STRING, format="date-time")
        assert compare(ConditionOperator.AFTER, "2024-01-01T10:00:00Z", "2024-01-01T09:00:00+00:00", moment) is True
        assert compare(ConditionOperator.BEFORE, "not a date", "2024-01-01", moment) is False

    def test_legacy_date_format(self):
        """Test dd-MMM-yyyy dates are understood."""
        date_type = FieldType(PropertyType.STRING, format="date")
        assert compare(ConditionOperator.BEFORE, "01-Jan-2024", "2024-02-01", date_type) is True


class TestFactAccess:
    """Test cases for path-based evaluation features."""

    def test_type_prefixed_path(self):
        """Test schema-name prefixes are stripped."""
        condition = cond("Order.amount", "greaterThan", 100)
        assert evaluate_condition(condition, {"amount": 150}, fact_type="Order") is True

    def test_value_is_field(self):
        """Test comparing two fields of the same fact."""
        condition = cond("amount", "greaterThan", "limit", value_is_field=True)
        assert evaluate_condition(condition, {"amount": 150, "limit": 100}) is True
        assert evaluate_condition(condition, {"amount": 50, "limit": 100}) is False
        assert evaluate_condition(condition, {"amount": 50}) is False

    def test_projection_is_existential(self):
        """Test [] paths match when any element matches."""
        fact = {"items": [{"sku": "A"}, {"sku": "B"}]}
        assert evaluate_condition(cond("items[].sku", "equals", "B"), fact) is True
        assert evaluate_condition(cond("items[].sku", "equals", "C"), fact) is False

    def test_projection_negation(self):
        """Test negated operators hold when no element matches."""
        fact = {"items": [{"sku": "A"}, {"sku": "B"}]}
        assert evaluate_condition(cond("items[].sku", "notEquals", "C"), fact) is True
        assert evaluate_condition(cond("items[].sku", "notEquals", "A"), fact) is False

    def test_nested_object_path(self):
        """Test nested object paths."""
        fact = {"customer": {"address": {"city": "Oslo"}}}
        assert evaluate_condition(cond("customer.address.city", "equals", "Oslo"), fact) is True
        assert evaluate_condition(cond("customer.address.zip", "isNull"), fact) is True

    def test_evaluation_does_not_mutate_fact(self):
        """Test evaluation is side-effect free."""
        fact = {"a": "1", "items": [{"sku": "A"}]}
        evaluate(group("all", cond("a", "equals", 1), cond("items[].sku", "contains", "A")), fact)
        assert fact == {"a": "1", "items": [{"sku": "A"}]}
