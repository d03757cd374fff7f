"""
Per-country pricing: folds the ordered applicable rules into a breakdown.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from shared.config import PricingConfig
from shared.errors import ExpressionError, ExpressionEvaluationError, MissingBaseRuleError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..rules.expressions import compile_expression
from ..rules.models import ParameterType, Rule, RuleType
from ..rules.selector import select_rules
from .models import CalculationRequest, CountryBreakdown
from .money import ZERO, RateTable

logger = get_logger("pricing.country_calculator")

BASE_COST = "baseCost"
ADDITIONAL_COST = "additionalCost"
COUNTRY_DISCOUNT = "countryDiscount"
RUNNING_TOTAL = "runningTotal"
STEP_COST = "stepCost"

# Seeded from the request; rules may read these but never bind results to them
INPUT_VARIABLES = frozenset((
    "transactionVolume",
    "serviceTypeWeight",
    "frequencyMultiplier",
    "basePrice",
    "countryCount",
    "additionalServicesCount",
    RUNNING_TOTAL,
))


@dataclass
class FoldState:
    """Mutable state of one country's rule fold."""
    variables: Dict[str, Decimal]
    applied_rules: List[str] = field(default_factory=list)
    requirements: List[str] = field(default_factory=list)

    def get(self, name: str) -> Decimal:
        return self.variables.get(name, ZERO)

    def running_total(self) -> Decimal:
        return self.get(BASE_COST) + self.get(ADDITIONAL_COST) - self.get(COUNTRY_DISCOUNT)


RuleHandler = Callable[[Rule, Decimal, FoldState, Mapping[str, Decimal]], None]


def apply_vat_rate(rule: Rule, result: Decimal, state: FoldState, scope: Mapping[str, Decimal]) -> None:
    state.variables[BASE_COST] = result


def apply_threshold(rule: Rule, result: Decimal, state: FoldState, scope: Mapping[str, Decimal]) -> None:
    step_cost = rule.get_parameter(STEP_COST)
    if step_cost is not None:
        # The expression is a test; a true result adds the declared step cost
        if result != 0:
            amount = scope.get(step_cost.name)
            if amount is None:
                raise ExpressionEvaluationError(
                    f"Step cost parameter '{step_cost.name}' has no value",
                    {"rule_id": rule.rule_id, "parameter": step_cost.name}
                )
            state.variables[ADDITIONAL_COST] = state.get(ADDITIONAL_COST) + amount
    else:
        state.variables[ADDITIONAL_COST] = state.get(ADDITIONAL_COST) + result


def apply_complexity(rule: Rule, result: Decimal, state: FoldState, scope: Mapping[str, Decimal]) -> None:
    state.variables[ADDITIONAL_COST] = state.get(ADDITIONAL_COST) * result


def apply_special_requirement(rule: Rule, result: Decimal, state: FoldState, scope: Mapping[str, Decimal]) -> None:
    state.variables[ADDITIONAL_COST] = state.get(ADDITIONAL_COST) + result


def apply_discount(rule: Rule, result: Decimal, state: FoldState, scope: Mapping[str, Decimal]) -> None:
    state.variables[COUNTRY_DISCOUNT] = state.get(COUNTRY_DISCOUNT) + result


DEFAULT_HANDLERS: Dict[RuleType, RuleHandler] = {
    RuleType.VAT_RATE: apply_vat_rate,
    RuleType.THRESHOLD: apply_threshold,
    RuleType.COMPLEXITY: apply_complexity,
    RuleType.SPECIAL_REQUIREMENT: apply_special_requirement,
    RuleType.DISCOUNT: apply_discount,
}


class RuleApplicationPolicy:
    """How each rule type combines its result with the running context.

    A result binding (``target = ...``) overrides the type's handler and stores
    the result under the named variable. Special requirements are tagged with
    the rule name either way.
    """

    def __init__(self, handlers: Optional[Mapping[RuleType, RuleHandler]] = None):
        self.handlers: Dict[RuleType, RuleHandler] = dict(DEFAULT_HANDLERS)
        if handlers:
            self.handlers.update(handlers)

    def apply(
        self,
        rule: Rule,
        target: Optional[str],
        result: Decimal,
        state: FoldState,
        scope: Mapping[str, Decimal]
    ) -> None:
        if target is not None:
            if target in INPUT_VARIABLES:
                raise ExpressionEvaluationError(
                    f"Cannot bind a result to input variable '{target}'",
                    {"rule_id": rule.rule_id, "target": target}
                )
            state.variables[target] = result
        else:
            self.handlers[rule.rule_type](rule, result, state, scope)

        if rule.rule_type is RuleType.SPECIAL_REQUIREMENT and rule.name not in state.requirements:
            state.requirements.append(rule.name)


def parameter_defaults(rule: Rule) -> Dict[str, Decimal]:
    """Numeric view of a rule's declared parameter defaults."""
    defaults: Dict[str, Decimal] = {}
    for parameter in rule.parameters:
        value = parameter.typed_default()
        if value is None:
            continue
        if parameter.data_type is ParameterType.NUMBER:
            defaults[parameter.name] = value
        elif parameter.data_type is ParameterType.BOOLEAN:
            defaults[parameter.name] = Decimal(1) if value else Decimal(0)
    return defaults


class CountryPricingCalculator:
    """Evaluates one country's rules against a request."""

    def __init__(
        self,
        config: PricingConfig,
        rate_table: RateTable,
        policy: Optional[RuleApplicationPolicy] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config
        self.rate_table = rate_table
        self.policy = policy or RuleApplicationPolicy()
        self.metrics = metrics

    def seed_variables(self, request: CalculationRequest) -> Dict[str, Decimal]:
        """Numeric inputs every country fold starts from."""
        service_type = request.service_type.value
        frequency = request.frequency.value
        return {
            "transactionVolume": Decimal(request.transaction_volume),
            "serviceTypeWeight": self.config.service_type_weights.get(service_type, Decimal("1")),
            "frequencyMultiplier": self.config.frequency_multipliers.get(frequency, Decimal("1")),
            "basePrice": self.config.base_prices.get(service_type, ZERO),
            "countryCount": Decimal(len(request.country_codes)),
            "additionalServicesCount": Decimal(len(request.additional_services)),
            BASE_COST: ZERO,
            ADDITIONAL_COST: ZERO,
            COUNTRY_DISCOUNT: ZERO,
            RUNNING_TOTAL: ZERO,
        }

    def condition_context(
        self,
        request: CalculationRequest,
        country_code: str,
        variables: Mapping[str, Decimal],
        currency_code: Optional[str] = None
    ) -> Dict[str, Any]:
        """Attributes rule conditions may test, numeric and otherwise."""
        context: Dict[str, Any] = dict(variables)
        context.update({
            "serviceType": request.service_type.value,
            "filingFrequency": request.frequency.value,
            "countryCode": country_code,
            "countryCodes": tuple(request.country_codes),
            "additionalServices": tuple(request.additional_services),
            "currencyCode": currency_code or self.config.default_currency,
        })
        return context

    def calculate(
        self,
        country_code: str,
        request: CalculationRequest,
        rules: Sequence[Rule],
        as_of: date,
        currency_code: Optional[str] = None
    ) -> CountryBreakdown:
        """Price one country.

        Raises an ExpressionError when any rule fails to evaluate and
        MissingBaseRuleError when a VAT rate rule is required but none
        applied. No partial breakdown is ever returned.
        """
        country_code = country_code.upper()
        currency_code = (currency_code or self.config.default_currency).upper()

        state = FoldState(variables=self.seed_variables(request))
        context = self.condition_context(request, country_code, state.variables, currency_code)
        selected = select_rules(rules, as_of, context, country_code)

        for rule in selected:
            self._apply_rule(rule, state)

        applied_types = {rule.rule_type for rule in selected}
        if self.config.require_base_rule and RuleType.VAT_RATE not in applied_types:
            raise MissingBaseRuleError(country_code)

        breakdown = self._breakdown(country_code, currency_code, state)
        logger.info(
            "Country priced",
            country_code=country_code,
            rules_applied=len(state.applied_rules),
            total_cost=str(breakdown.total_cost),
            currency_code=currency_code
        )
        return breakdown

    def _apply_rule(self, rule: Rule, state: FoldState) -> None:
        try:
            compiled = compile_expression(rule.expression)
            scope = dict(state.variables)
            for name, value in parameter_defaults(rule).items():
                scope.setdefault(name, value)
            result = compiled.evaluate(scope)
            self.policy.apply(rule, compiled.target, result, state, scope)
        except ExpressionError as e:
            e.details.setdefault("rule_id", rule.rule_id)
            raise

        state.variables[RUNNING_TOTAL] = state.running_total()
        state.applied_rules.append(rule.rule_id)

        if self.metrics:
            self.metrics.record_rule_applied(rule.rule_type.value)
        logger.debug(
            "Rule applied",
            rule_id=rule.rule_id,
            rule_type=rule.rule_type.value,
            result=str(result),
            running_total=str(state.variables[RUNNING_TOTAL])
        )

    def _breakdown(self, country_code: str, currency_code: str, state: FoldState) -> CountryBreakdown:
        rates = self.rate_table
        base = rates.convert(state.get(BASE_COST), currency_code)
        additional = rates.convert(state.get(ADDITIONAL_COST), currency_code)
        discount = rates.convert(state.get(COUNTRY_DISCOUNT), currency_code)
        total = max(ZERO, base + additional - discount)

        return CountryBreakdown(
            country_code=country_code,
            currency_code=currency_code,
            base_cost=rates.round(base, currency_code),
            additional_cost=rates.round(additional, currency_code),
            discount=rates.round(discount, currency_code),
            total_cost=rates.round(total, currency_code),
            applied_rules=tuple(state.applied_rules),
            requirements=tuple(state.requirements),
        )
