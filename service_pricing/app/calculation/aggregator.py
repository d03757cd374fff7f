"""
Calculation aggregator: prices every requested country and totals the result.
"""

import asyncio
import contextvars
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from shared.config import PricingConfig
from shared.errors import (
    CalculationFailedError,
    ExpressionEvaluationError,
    InvalidRequestError,
    PricingEngineException,
)
from shared.logging import get_logger, set_country_context
from shared.metrics import MetricsCollector

from ..rules.expressions import compile_expression
from ..rules.models import Rule, RuleType
from ..rules.selector import select_rules
from ..rules.source import AsyncRuleSource, RuleSource
from .country import CountryPricingCalculator, RuleApplicationPolicy, parameter_defaults
from .models import CalculationRequest, CalculationResult, CountryBreakdown, ServiceCost
from .money import ZERO, RateTable

logger = get_logger("pricing.aggregator")

Clock = Callable[[], datetime]

# Failures after the country totals are known are reported against this scope
REQUEST_SCOPE = "REQUEST"

GRAND_TOTAL = "grandTotal"
TOTAL_DISCOUNT = "totalDiscount"

# Request-level rules may read these but never bind results to them
REQUEST_INPUT_VARIABLES = frozenset((
    GRAND_TOTAL,
    TOTAL_DISCOUNT,
    "runningTotal",
    "countryCount",
    "transactionVolume",
    "serviceTypeWeight",
    "frequencyMultiplier",
    "basePrice",
    "additionalServicesCount",
))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _highest_first(tiers):
    return sorted(tiers, key=lambda tier: tier[0], reverse=True)


class RuleSnapshot:
    """Point-in-time copy of every rule one calculation needs."""

    def __init__(self, country_rules: Mapping[str, Tuple[Rule, ...]], request_rules: Tuple[Rule, ...]):
        self.country_rules = dict(country_rules)
        self.request_rules = tuple(request_rules)

    def for_country(self, country_code: str) -> Tuple[Rule, ...]:
        return self.country_rules.get(country_code, ())

    @property
    def rule_count(self) -> int:
        return sum(len(rules) for rules in self.country_rules.values()) + len(self.request_rules)


class CalculationAggregator:
    """Prices multi-country requests against a rule source."""

    def __init__(
        self,
        config: PricingConfig,
        rule_source: Optional[RuleSource] = None,
        policy: Optional[RuleApplicationPolicy] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Clock = utc_now
    ):
        self.config = config
        self.rule_source = rule_source
        self.metrics = metrics
        self.clock = clock
        self.rate_table = RateTable(
            config.base_currency, config.exchange_rates, config.currency_minor_units
        )
        self.country_calculator = CountryPricingCalculator(
            config, self.rate_table, policy=policy, metrics=metrics
        )

    # Validation

    def validate(self, request: CalculationRequest) -> str:
        """Checks the request model cannot; returns the result currency."""
        if request.transaction_volume > self.config.max_transaction_volume:
            raise InvalidRequestError(
                f"Transaction volume must not exceed {self.config.max_transaction_volume}",
                {"transaction_volume": request.transaction_volume}
            )

        unknown = [
            service for service in request.additional_services
            if service not in self.config.additional_services
        ]
        if unknown:
            raise InvalidRequestError(
                "Unknown additional services",
                {"additional_services": unknown, "supported": sorted(self.config.additional_services)}
            )

        currency_code = (request.currency_code or self.config.default_currency).upper()
        if not self.rate_table.supports(currency_code):
            raise InvalidRequestError(
                f"No exchange rate for currency {currency_code}",
                {"currency_code": currency_code}
            )
        return currency_code

    def resolve_as_of(self, request: CalculationRequest) -> date:
        return request.as_of or self.clock().date()

    # Snapshot

    def take_snapshot(self, request: CalculationRequest, as_of: date) -> RuleSnapshot:
        source = self._require_source()
        country_rules = {
            code: tuple(source.get_applicable_rules(code, as_of))
            for code in request.country_codes
        }
        return RuleSnapshot(country_rules, tuple(source.get_request_rules(as_of)))

    async def take_snapshot_async(
        self,
        request: CalculationRequest,
        as_of: date,
        source: AsyncRuleSource
    ) -> RuleSnapshot:
        country_rules = {}
        for code in request.country_codes:
            country_rules[code] = tuple(await source.get_applicable_rules(code, as_of))
        return RuleSnapshot(country_rules, tuple(await source.get_request_rules(as_of)))

    def _require_source(self) -> RuleSource:
        if self.rule_source is None:
            raise InvalidRequestError("No rule source configured")
        return self.rule_source

    # Calculation

    def calculate(
        self,
        request: CalculationRequest,
        snapshot: Optional[RuleSnapshot] = None
    ) -> CalculationResult:
        """Price a request; all countries succeed or the call fails."""
        currency_code = self.validate(request)
        as_of = self.resolve_as_of(request)
        if snapshot is None:
            snapshot = self.take_snapshot(request, as_of)

        logger.info(
            "Calculation started",
            countries=list(request.country_codes),
            service_type=request.service_type.value,
            as_of=as_of.isoformat(),
            rules=snapshot.rule_count
        )

        if self.config.max_workers > 1 and len(request.country_codes) > 1:
            breakdowns = self._price_countries_parallel(request, snapshot, as_of, currency_code)
        else:
            breakdowns = [
                self._price_country(code, request, snapshot, as_of, currency_code)
                for code in request.country_codes
            ]

        return self._finish(request, snapshot, as_of, currency_code, breakdowns)

    async def calculate_async(
        self,
        request: CalculationRequest,
        source: Optional[AsyncRuleSource] = None
    ) -> CalculationResult:
        """Price a request, awaiting the rule fetch.

        Cancellation takes effect between countries; a country in progress
        always runs to completion.
        """
        currency_code = self.validate(request)
        as_of = self.resolve_as_of(request)
        if source is not None:
            snapshot = await self.take_snapshot_async(request, as_of, source)
        else:
            snapshot = self.take_snapshot(request, as_of)

        breakdowns = []
        for code in request.country_codes:
            await asyncio.sleep(0)
            breakdowns.append(self._price_country(code, request, snapshot, as_of, currency_code))

        return self._finish(request, snapshot, as_of, currency_code, breakdowns)

    def _price_country(
        self,
        country_code: str,
        request: CalculationRequest,
        snapshot: RuleSnapshot,
        as_of: date,
        currency_code: str
    ) -> CountryBreakdown:
        set_country_context(country_code)
        try:
            return self.country_calculator.calculate(
                country_code, request, snapshot.for_country(country_code), as_of, currency_code
            )
        except PricingEngineException as e:
            if self.metrics:
                self.metrics.record_country_failure(e.code)
            logger.error("Country calculation failed", error_code=e.code, error=e.message)
            raise CalculationFailedError(country_code, e) from e
        finally:
            set_country_context(None)

    def _price_countries_parallel(
        self,
        request: CalculationRequest,
        snapshot: RuleSnapshot,
        as_of: date,
        currency_code: str
    ) -> List[CountryBreakdown]:
        workers = min(self.config.max_workers, len(request.country_codes))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pricing") as executor:
            futures = [
                executor.submit(
                    contextvars.copy_context().run,
                    self._price_country, code, request, snapshot, as_of, currency_code
                )
                for code in request.country_codes
            ]
            # Results in request order; the first failure in that order wins
            return [future.result() for future in futures]

    def _finish(
        self,
        request: CalculationRequest,
        snapshot: RuleSnapshot,
        as_of: date,
        currency_code: str,
        breakdowns: List[CountryBreakdown]
    ) -> CalculationResult:
        subtotal = sum((breakdown.total_cost for breakdown in breakdowns), ZERO)

        try:
            discounts = self._request_discounts(request, snapshot.request_rules, as_of, subtotal, currency_code)
            if self.config.enable_standard_discounts:
                for name, amount in self._standard_discounts(request, subtotal, currency_code).items():
                    discounts[name] = discounts.get(name, ZERO) + amount

            services = self._additional_services(request, currency_code)
            total_discount = sum(discounts.values(), ZERO)
            services_total = sum((service.cost for service in services), ZERO)
            total = max(ZERO, subtotal - total_discount) + services_total
            total_cost = self.rate_table.round(total, currency_code)
        except CalculationFailedError:
            raise
        except PricingEngineException as e:
            if self.metrics:
                self.metrics.record_country_failure(e.code)
            raise CalculationFailedError(REQUEST_SCOPE, e) from e

        result = CalculationResult(
            total_cost=total_cost,
            subtotal=subtotal,
            currency_code=currency_code,
            service_type=request.service_type,
            transaction_volume=request.transaction_volume,
            frequency=request.frequency,
            as_of=as_of,
            generated_at=self.clock(),
            countries=tuple(breakdowns),
            additional_services=tuple(services),
            discounts=discounts,
        )

        logger.info(
            "Calculation finished",
            total_cost=str(result.total_cost),
            currency_code=currency_code,
            discounts=len(discounts)
        )
        return result

    def _request_discounts(
        self,
        request: CalculationRequest,
        rules: Tuple[Rule, ...],
        as_of: date,
        subtotal: Decimal,
        currency_code: str
    ) -> Dict[str, Decimal]:
        """Fold request-level discount rules over the provisional grand total."""
        discounts: Dict[str, Decimal] = {}
        if not rules:
            return discounts

        variables = self.country_calculator.seed_variables(request)
        for name in ("baseCost", "additionalCost", "countryDiscount"):
            variables.pop(name, None)
        variables.update({
            GRAND_TOTAL: subtotal,
            TOTAL_DISCOUNT: ZERO,
            "runningTotal": subtotal,
        })

        context = self.country_calculator.condition_context(request, "", variables, currency_code)
        context.pop("countryCode")
        selected = select_rules(rules, as_of, context, None)

        for rule in selected:
            if rule.rule_type is not RuleType.DISCOUNT:
                continue
            try:
                compiled = compile_expression(rule.expression)
                scope = dict(variables)
                for name, value in parameter_defaults(rule).items():
                    scope.setdefault(name, value)
                amount = compiled.evaluate(scope)
                if compiled.target is not None:
                    if compiled.target in REQUEST_INPUT_VARIABLES:
                        raise ExpressionEvaluationError(
                            f"Cannot bind a result to input variable '{compiled.target}'",
                            {"rule_id": rule.rule_id, "target": compiled.target}
                        )
                    variables[compiled.target] = amount
                amount = self.rate_table.round(amount, currency_code)
            except PricingEngineException as e:
                e.details.setdefault("rule_id", rule.rule_id)
                if self.metrics:
                    self.metrics.record_country_failure(e.code)
                raise CalculationFailedError(REQUEST_SCOPE, e) from e

            discounts[rule.name] = discounts.get(rule.name, ZERO) + amount
            variables[TOTAL_DISCOUNT] = variables[TOTAL_DISCOUNT] + amount
            variables["runningTotal"] = subtotal - variables[TOTAL_DISCOUNT]

            if self.metrics:
                self.metrics.record_rule_applied(rule.rule_type.value)
            logger.debug("Request discount applied", rule_id=rule.rule_id, amount=str(amount))

        return discounts

    def _standard_discounts(
        self,
        request: CalculationRequest,
        subtotal: Decimal,
        currency_code: str
    ) -> Dict[str, Decimal]:
        discounts: Dict[str, Decimal] = {}

        for threshold, percent in _highest_first(self.config.volume_discount_tiers):
            if request.transaction_volume > threshold:
                name = f"Volume Discount (>{threshold} transactions)"
                discounts[name] = self.rate_table.round(subtotal * percent / 100, currency_code)
                break

        country_count = len(request.country_codes)
        for threshold, percent in _highest_first(self.config.multi_country_discount_tiers):
            if country_count >= threshold:
                name = f"Multi-Country Discount ({threshold}+ countries)"
                discounts[name] = self.rate_table.round(subtotal * percent / 100, currency_code)
                break

        return discounts

    def _additional_services(self, request: CalculationRequest, currency_code: str) -> List[ServiceCost]:
        services = []
        for code in request.additional_services:
            cost = self.rate_table.convert(self.config.additional_services[code], currency_code)
            services.append(ServiceCost(
                code=code,
                name=self.config.additional_service_names.get(code, code),
                cost=self.rate_table.round(cost, currency_code),
            ))
        return services
