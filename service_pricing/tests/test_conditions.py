"""
Unit tests for rule condition matching.
"""

import pytest
from datetime import date
from decimal import Decimal

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import RuleDefinitionError
from service_pricing.app.rules.conditions import evaluate_condition, matches, to_comparable
from service_pricing.app.rules.models import ConditionOperator, RuleCondition


class TestConditionMatcher:
    """Test cases for condition matching."""

    @pytest.fixture
    def context(self):
        """Create a calculation context."""
        return {
            "transactionVolume": Decimal("500"),
            "countryCount": Decimal("3"),
            "serviceType": "ComplexFiling",
            "filingFrequency": "Quarterly",
            "countryCode": "DE",
            "countryCodes": ("GB", "DE", "FR"),
            "additionalServices": ("TaxConsultancy",),
        }

    def test_empty_conditions_match(self, context):
        assert matches([], context) is True

    def test_missing_parameter_fails_closed(self, context):
        condition = RuleCondition("unknownParameter", ConditionOperator.EQUALS, "x")
        assert matches([condition], context) is False

    def test_all_conditions_must_hold(self, context):
        conditions = [
            RuleCondition("transactionVolume", ConditionOperator.GREATER_THAN, 100),
            RuleCondition("serviceType", ConditionOperator.EQUALS, "StandardFiling"),
        ]
        assert matches(conditions, context) is False
        assert matches(conditions[:1], context) is True

    @pytest.mark.parametrize("operator,value,expected", [
        (ConditionOperator.GREATER_THAN, 499, True),
        (ConditionOperator.GREATER_THAN, 500, False),
        (ConditionOperator.GREATER_THAN_OR_EQUAL, "500", True),
        (ConditionOperator.LESS_THAN, 500.5, True),
        (ConditionOperator.LESS_THAN_OR_EQUAL, 499, False),
        (ConditionOperator.EQUALS, "500.00", True),
        (ConditionOperator.NOT_EQUALS, 500, False),
    ])
    def test_numeric_comparisons(self, context, operator, value, expected):
        condition = RuleCondition("transactionVolume", operator, value)
        assert evaluate_condition(condition, context["transactionVolume"]) is expected

    def test_string_equality_ignores_case(self, context):
        condition = RuleCondition("serviceType", ConditionOperator.EQUALS, "complexfiling")
        assert matches([condition], context) is True

    def test_string_ordering_never_holds(self, context):
        condition = RuleCondition("serviceType", ConditionOperator.GREATER_THAN, "A")
        assert matches([condition], context) is False

    def test_starts_and_ends_with(self, context):
        assert matches([RuleCondition("serviceType", ConditionOperator.STARTS_WITH, "complex")], context)
        assert matches([RuleCondition("serviceType", ConditionOperator.ENDS_WITH, "Filing")], context)
        assert not matches([RuleCondition("serviceType", ConditionOperator.ENDS_WITH, "Service")], context)

    def test_contains_on_collection(self, context):
        condition = RuleCondition("countryCodes", ConditionOperator.CONTAINS, "fr")
        assert matches([condition], context) is True

        condition = RuleCondition("countryCodes", ConditionOperator.CONTAINS, "IT")
        assert matches([condition], context) is False

    def test_contains_on_scalar_is_false(self, context):
        condition = RuleCondition("serviceType", ConditionOperator.CONTAINS, "Complex")
        assert matches([condition], context) is False

    def test_equals_on_collection_is_false(self, context):
        condition = RuleCondition("countryCodes", ConditionOperator.EQUALS, "GB")
        assert matches([condition], context) is False

    def test_boolean_values(self):
        condition = RuleCondition("isPriority", ConditionOperator.EQUALS, "true")
        assert matches([condition], {"isPriority": True}) is True
        assert matches([condition], {"isPriority": False}) is False
        condition = RuleCondition("isPriority", ConditionOperator.GREATER_THAN, "false")
        assert matches([condition], {"isPriority": True}) is False

    def test_date_values(self):
        condition = RuleCondition("registeredOn", ConditionOperator.LESS_THAN, "2024-01-01")
        assert matches([condition], {"registeredOn": date(2023, 6, 30)}) is True
        assert matches([condition], {"registeredOn": date(2024, 1, 1)}) is False

    def test_none_context_value_fails_closed(self):
        condition = RuleCondition("x", ConditionOperator.NOT_EQUALS, "1")
        assert matches([condition], {"x": None}) is False


class TestConditionOperators:
    """Operator parsing and value coercion."""

    @pytest.mark.parametrize("text,operator", [
        ("equals", ConditionOperator.EQUALS),
        ("NotEquals", ConditionOperator.NOT_EQUALS),
        ("GREATERTHANOREQUAL", ConditionOperator.GREATER_THAN_OR_EQUAL),
        ("contains", ConditionOperator.CONTAINS),
    ])
    def test_operator_parse_is_case_insensitive(self, text, operator):
        assert ConditionOperator.parse(text) is operator

    def test_unknown_operator_rejected(self):
        with pytest.raises(RuleDefinitionError):
            RuleCondition("x", "between", 1)

    def test_condition_accepts_operator_text(self):
        condition = RuleCondition("x", "greaterThan", 1)
        assert condition.operator is ConditionOperator.GREATER_THAN

    def test_to_comparable(self):
        assert to_comparable(5) == Decimal("5")
        assert to_comparable("2.50") == Decimal("2.50")
        assert to_comparable("TRUE") is True
        assert to_comparable("2024-03-01") == date(2024, 3, 1)
        assert to_comparable("GB") == "GB"
