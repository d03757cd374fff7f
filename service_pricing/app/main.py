"""
Pricing service for the VAT filing pricing engine.
"""

import time
from typing import Any, Dict, Mapping, Optional, Union

from prometheus_client import CollectorRegistry

from shared.config import PricingConfig, get_config
from shared.errors import PricingEngineException
from shared.logging import clear_context, configure_logging, get_logger, set_calculation_id
from shared.metrics import get_metrics_collector

from .calculation.aggregator import CalculationAggregator, Clock, utc_now
from .calculation.comparison import compare_scenarios
from .calculation.country import RuleApplicationPolicy
from .calculation.models import CalculationRequest, CalculationResult, ScenarioComparison, parse_request
from .rules.models import RuleType
from .rules.source import AsyncRuleSource, InMemoryRuleSource, RuleSource, load_rule_source

RequestLike = Union[CalculationRequest, Mapping[str, Any]]


class PricingService:
    """Pricing service implementation."""

    def __init__(
        self,
        config: Optional[PricingConfig] = None,
        rule_source: Optional[RuleSource] = None,
        policy: Optional[RuleApplicationPolicy] = None,
        registry: Optional[CollectorRegistry] = None,
        clock: Clock = utc_now,
        configure_logs: bool = False
    ):
        self.config = config or get_config()
        self.logger = get_logger(f"{self.config.service_name}.service")
        self.metrics = get_metrics_collector(self.config.service_name, registry)

        if configure_logs:
            configure_logging(self.config.service_name, self.config.log_level)

        if rule_source is None:
            if self.config.rules_file:
                rule_source = load_rule_source(self.config.rules_file)
            else:
                rule_source = InMemoryRuleSource()
        self.rule_source = rule_source

        self.aggregator = CalculationAggregator(
            self.config,
            rule_source=self.rule_source,
            policy=policy,
            metrics=self.metrics,
            clock=clock
        )
        self.calculations = 0
        self.failures = 0

    def _to_request(self, request: RequestLike) -> CalculationRequest:
        if isinstance(request, CalculationRequest):
            return request
        return parse_request(request)

    def calculate(self, request: RequestLike) -> CalculationResult:
        """Price a calculation request."""
        set_calculation_id()
        start_time = time.time()
        try:
            with self.metrics.time_calculation():
                result = self.aggregator.calculate(self._to_request(request))
            self.calculations += 1
            return result
        except PricingEngineException as e:
            self.failures += 1
            self.logger.error(
                "Calculation failed",
                error_code=e.code,
                error=e.message,
                details=e.details
            )
            raise
        finally:
            self.logger.debug("Calculation timing", duration_ms=(time.time() - start_time) * 1000)
            clear_context()

    async def calculate_async(
        self,
        request: RequestLike,
        rule_source: Optional[AsyncRuleSource] = None
    ) -> CalculationResult:
        """Price a request, awaiting the rule fetch from an async source."""
        set_calculation_id()
        try:
            with self.metrics.time_calculation():
                result = await self.aggregator.calculate_async(self._to_request(request), rule_source)
            self.calculations += 1
            return result
        except PricingEngineException as e:
            self.failures += 1
            self.logger.error(
                "Calculation failed",
                error_code=e.code,
                error=e.message
            )
            raise
        finally:
            clear_context()

    def compare(self, scenarios: Mapping[str, RequestLike]) -> ScenarioComparison:
        """Price and compare named scenarios."""
        set_calculation_id()
        try:
            requests = {name: self._to_request(request) for name, request in scenarios.items()}
            return compare_scenarios(self.aggregator, requests)
        finally:
            clear_context()

    def get_stats(self) -> Dict[str, Any]:
        """Get service statistics."""
        rule_count = len(self.rule_source) if isinstance(self.rule_source, InMemoryRuleSource) else None
        return {
            "service": self.config.service_name,
            "calculations": self.calculations,
            "failures": self.failures,
            "rules": rule_count,
            "base_currency": self.config.base_currency,
            "max_workers": self.config.max_workers,
            "rules_applied": {
                rule_type: self.metrics.sample("pricing_rules_applied_total", rule_type=rule_type)
                for rule_type in (t.value for t in RuleType)
            },
        }
