"""
Unit tests for the Country Pricing Calculator.
"""

import pytest
from datetime import date
from decimal import Decimal

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import PricingConfig
from shared.errors import (
    DivisionByZeroError,
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    MissingBaseRuleError,
    UnknownVariableError,
)
from service_pricing.app.calculation.country import (
    CountryPricingCalculator, FoldState, RuleApplicationPolicy
)
from service_pricing.app.calculation.models import CalculationRequest, FilingFrequency, ServiceType
from service_pricing.app.calculation.money import RateTable
from service_pricing.app.rules.models import (
    ConditionOperator, ParameterType, Rule, RuleCondition, RuleParameter, RuleType
)

AS_OF = date(2024, 6, 1)


def rule(rule_id, rule_type, expression, priority=100, country_code="GB", **kwargs):
    return Rule(
        rule_id=rule_id,
        country_code=country_code,
        rule_type=rule_type,
        name=kwargs.pop("name", rule_id),
        expression=expression,
        effective_from=date(2024, 1, 1),
        priority=priority,
        **kwargs
    )


class TestCountryPricingCalculator:
    """Test cases for CountryPricingCalculator."""

    @pytest.fixture
    def config(self):
        """Create pricing configuration."""
        return PricingConfig(
            exchange_rates={"EUR": Decimal("1"), "GBP": Decimal("0.85")}
        )

    @pytest.fixture
    def calculator(self, config):
        """Create CountryPricingCalculator instance."""
        rates = RateTable(config.base_currency, config.exchange_rates, config.currency_minor_units)
        return CountryPricingCalculator(config, rates)

    @pytest.fixture
    def request_model(self):
        """Create a calculation request."""
        return CalculationRequest(
            service_type=ServiceType.STANDARD_FILING,
            transaction_volume=500,
            frequency=FilingFrequency.QUARTERLY,
            country_codes=["GB", "DE"],
        )

    def test_vat_rate_binding(self, calculator, request_model):
        rules = [rule("gb-vat", RuleType.VAT_RATE, "baseCost = transactionVolume * 2.4")]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)

        assert breakdown.base_cost == Decimal("1200.00")
        assert breakdown.additional_cost == Decimal("0.00")
        assert breakdown.total_cost == Decimal("1200.00")
        assert breakdown.applied_rules == ("gb-vat",)
        assert str(breakdown.total_cost) == "1200.00"

    def test_complexity_reads_prior_base_cost(self, calculator, request_model):
        rules = [
            rule("de-vat", RuleType.VAT_RATE, "baseCost = transactionVolume * 2.0", priority=200, country_code="DE"),
            rule("de-cx", RuleType.COMPLEXITY, "additionalCost = baseCost * 0.1", priority=100, country_code="DE"),
        ]

        breakdown = calculator.calculate("DE", request_model, rules, AS_OF)

        assert breakdown.base_cost == Decimal("1000.00")
        assert breakdown.additional_cost == Decimal("100.00")
        assert breakdown.total_cost == Decimal("1100.00")
        assert breakdown.applied_rules == ("de-vat", "de-cx")

    def test_zero_rule_baseline(self, calculator, request_model):
        breakdown = calculator.calculate("GB", request_model, [], AS_OF)

        assert breakdown.base_cost == Decimal("0.00")
        assert breakdown.additional_cost == Decimal("0.00")
        assert breakdown.total_cost == Decimal("0.00")
        assert breakdown.applied_rules == ()

    def test_missing_base_rule_when_required(self, config, request_model):
        config = config.model_copy(update={"require_base_rule": True})
        rates = RateTable(config.base_currency, config.exchange_rates)
        calculator = CountryPricingCalculator(config, rates)

        with pytest.raises(MissingBaseRuleError) as exc_info:
            calculator.calculate("GB", request_model, [rule("t", RuleType.THRESHOLD, "10")], AS_OF)
        assert exc_info.value.country_code == "GB"

    def test_default_type_policies(self, calculator, request_model):
        rules = [
            rule("vat", RuleType.VAT_RATE, "transactionVolume * 2", priority=500),
            rule("thr", RuleType.THRESHOLD, "50", priority=400),
            rule("cx", RuleType.COMPLEXITY, "serviceTypeWeight * 2", priority=300),
            rule("sr", RuleType.SPECIAL_REQUIREMENT, "25", priority=200, name="Fiscal representative"),
            rule("disc", RuleType.DISCOUNT, "runningTotal * 0.1", priority=100),
        ]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)

        # base 1000, additional (50 * 2.0) + 25 = 125, discount 112.5
        assert breakdown.base_cost == Decimal("1000.00")
        assert breakdown.additional_cost == Decimal("125.00")
        assert breakdown.discount == Decimal("112.50")
        assert breakdown.total_cost == Decimal("1012.50")
        assert breakdown.requirements == ("Fiscal representative",)
        assert breakdown.applied_rules == ("vat", "thr", "cx", "sr", "disc")

    def test_priority_changes_totals(self, calculator, request_model):
        threshold_first = [
            rule("thr", RuleType.THRESHOLD, "100", priority=200),
            rule("cx", RuleType.COMPLEXITY, "2", priority=100),
        ]
        complexity_first = [
            rule("thr", RuleType.THRESHOLD, "100", priority=100),
            rule("cx", RuleType.COMPLEXITY, "2", priority=200),
        ]

        assert calculator.calculate("GB", request_model, threshold_first, AS_OF).additional_cost == Decimal("200.00")
        assert calculator.calculate("GB", request_model, complexity_first, AS_OF).additional_cost == Decimal("100.00")

    def test_threshold_step_cost(self, calculator, request_model):
        step = RuleParameter("stepCost", ParameterType.NUMBER, "250")
        rules = [rule("thr", RuleType.THRESHOLD, "transactionVolume > 400", parameters=(step,))]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)
        assert breakdown.additional_cost == Decimal("250.00")

        rules = [rule("thr", RuleType.THRESHOLD, "transactionVolume > 1000", parameters=(step,))]
        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)
        assert breakdown.additional_cost == Decimal("0.00")
        assert breakdown.applied_rules == ("thr",)

    def test_threshold_step_cost_name_is_case_insensitive(self, calculator, request_model):
        step = RuleParameter("StepCost", ParameterType.NUMBER, "50")
        rules = [rule("thr", RuleType.THRESHOLD, "transactionVolume > 100", parameters=(step,))]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)
        assert breakdown.additional_cost == Decimal("50.00")

    def test_threshold_step_cost_without_value_fails(self, calculator, request_model):
        step = RuleParameter("stepCost", ParameterType.NUMBER)
        rules = [rule("thr", RuleType.THRESHOLD, "transactionVolume > 100", parameters=(step,))]

        with pytest.raises(ExpressionEvaluationError) as exc_info:
            calculator.calculate("GB", request_model, rules, AS_OF)
        assert exc_info.value.details["rule_id"] == "thr"
        assert exc_info.value.details["parameter"] == "stepCost"

    def test_amount_too_large_to_round(self, calculator, request_model):
        rules = [rule("vat", RuleType.VAT_RATE, "baseCost = transactionVolume ^ 10")]

        with pytest.raises(ExpressionEvaluationError) as exc_info:
            calculator.calculate("GB", request_model, rules, AS_OF)
        assert exc_info.value.code == "EVALUATION_ERROR"
        assert Decimal(exc_info.value.details["amount"]) == Decimal(500) ** 10

    def test_parameter_defaults_do_not_override_context(self, calculator, request_model):
        parameters = (
            RuleParameter("rate", ParameterType.NUMBER, "0.20"),
            RuleParameter("transactionVolume", ParameterType.NUMBER, "1"),
        )
        rules = [rule("vat", RuleType.VAT_RATE, "basePrice * rate + transactionVolume", parameters=parameters)]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)

        # basePrice for StandardFiling is 100
        assert breakdown.base_cost == Decimal("520.00")

    def test_running_total_visible_to_later_rules(self, calculator, request_model):
        rules = [
            rule("vat", RuleType.VAT_RATE, "1000", priority=300),
            rule("sr", RuleType.SPECIAL_REQUIREMENT, "200", priority=200),
            rule("probe", RuleType.THRESHOLD, "runningTotal / 100", priority=100),
        ]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)

        assert breakdown.additional_cost == Decimal("212.00")

    def test_scratch_binding_feeds_later_rules(self, calculator, request_model):
        rules = [
            rule("calc", RuleType.THRESHOLD, "perFiling = transactionVolume * 0.5", priority=200),
            rule("vat", RuleType.VAT_RATE, "perFiling * frequencyMultiplier", priority=100),
        ]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)

        assert breakdown.base_cost == Decimal("1000.00")
        assert breakdown.additional_cost == Decimal("0.00")

    def test_binding_to_input_is_rejected(self, calculator, request_model):
        rules = [rule("bad", RuleType.VAT_RATE, "transactionVolume = 1")]

        with pytest.raises(ExpressionEvaluationError) as exc_info:
            calculator.calculate("GB", request_model, rules, AS_OF)
        assert exc_info.value.details["rule_id"] == "bad"

    def test_division_by_zero_aborts_country(self, calculator, request_model):
        rules = [
            rule("vat", RuleType.VAT_RATE, "1000", priority=200),
            rule("bad", RuleType.THRESHOLD, "transactionVolume / 0", priority=100),
        ]

        with pytest.raises(DivisionByZeroError) as exc_info:
            calculator.calculate("GB", request_model, rules, AS_OF)
        assert exc_info.value.details["rule_id"] == "bad"

    def test_unknown_variable_aborts_country(self, calculator, request_model):
        with pytest.raises(UnknownVariableError):
            calculator.calculate("GB", request_model, [rule("bad", RuleType.VAT_RATE, "mystery * 2")], AS_OF)

    def test_malformed_expression_fails_at_evaluation(self, calculator, request_model):
        with pytest.raises(ExpressionSyntaxError):
            calculator.calculate("GB", request_model, [rule("bad", RuleType.VAT_RATE, "2 + * 3")], AS_OF)

    def test_conditions_use_request_attributes(self, calculator, request_model):
        conditions = (RuleCondition("serviceType", ConditionOperator.EQUALS, "ComplexFiling"),)
        rules = [
            rule("vat", RuleType.VAT_RATE, "100"),
            rule("cx", RuleType.SPECIAL_REQUIREMENT, "75", conditions=conditions),
        ]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)

        assert breakdown.applied_rules == ("vat",)
        assert breakdown.total_cost == Decimal("100.00")

    def test_contains_condition_on_country_list(self, calculator, request_model):
        conditions = (RuleCondition("countryCodes", ConditionOperator.CONTAINS, "DE"),)
        rules = [rule("combo", RuleType.SPECIAL_REQUIREMENT, "40", conditions=conditions)]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)

        assert breakdown.additional_cost == Decimal("40.00")

    def test_negative_total_clamped(self, calculator, request_model):
        rules = [
            rule("vat", RuleType.VAT_RATE, "100", priority=200),
            rule("disc", RuleType.DISCOUNT, "250", priority=100),
        ]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)

        assert breakdown.discount == Decimal("250.00")
        assert breakdown.total_cost == Decimal("0.00")

    @pytest.mark.parametrize("expression,expected", [
        ("0.125", "0.12"),
        ("0.135", "0.14"),
        ("2.675", "2.68"),
    ])
    def test_rounding_half_even_once(self, calculator, request_model, expression, expected):
        breakdown = calculator.calculate("GB", request_model, [rule("vat", RuleType.VAT_RATE, expression)], AS_OF)
        assert breakdown.base_cost == Decimal(expected)

    def test_rounding_applied_to_sum_not_parts(self, calculator, request_model):
        rules = [
            rule("vat", RuleType.VAT_RATE, "0.005", priority=200),
            rule("sr", RuleType.SPECIAL_REQUIREMENT, "0.005", priority=100),
        ]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF)

        assert breakdown.base_cost == Decimal("0.00")
        assert breakdown.additional_cost == Decimal("0.00")
        assert breakdown.total_cost == Decimal("0.01")

    def test_currency_conversion(self, calculator, request_model):
        rules = [rule("vat", RuleType.VAT_RATE, "1000")]

        breakdown = calculator.calculate("GB", request_model, rules, AS_OF, currency_code="GBP")

        assert breakdown.currency_code == "GBP"
        assert breakdown.base_cost == Decimal("850.00")

    def test_custom_policy(self, config, request_model):
        def multiply_base(rule, result, state, scope):
            state.variables["baseCost"] = (state.get("baseCost") or Decimal("1")) * result

        rates = RateTable(config.base_currency, config.exchange_rates)
        calculator = CountryPricingCalculator(
            config, rates, policy=RuleApplicationPolicy({RuleType.VAT_RATE: multiply_base})
        )
        rules = [
            rule("a", RuleType.VAT_RATE, "10", priority=200),
            rule("b", RuleType.VAT_RATE, "3", priority=100),
        ]

        assert calculator.calculate("GB", request_model, rules, AS_OF).base_cost == Decimal("30.00")

    def test_seed_variables(self, calculator):
        request_model = CalculationRequest(
            service_type=ServiceType.PRIORITY_SERVICE,
            transaction_volume=250,
            frequency=FilingFrequency.MONTHLY,
            country_codes=["FR"],
            additional_services=["TaxConsultancy"],
        )

        seeds = calculator.seed_variables(request_model)

        assert seeds["transactionVolume"] == Decimal("250")
        assert seeds["serviceTypeWeight"] == Decimal("2.0")
        assert seeds["frequencyMultiplier"] == Decimal("12")
        assert seeds["basePrice"] == Decimal("300")
        assert seeds["countryCount"] == Decimal("1")
        assert seeds["additionalServicesCount"] == Decimal("1")
        assert seeds["baseCost"] == seeds["additionalCost"] == Decimal("0")

    def test_fold_state_running_total(self):
        state = FoldState(variables={"baseCost": Decimal("10"), "additionalCost": Decimal("5"), "countryDiscount": Decimal("3")})
        assert state.running_total() == Decimal("12")
