"""
Cost calculation: per-country rule folds, aggregation and comparison.
"""

from .aggregator import CalculationAggregator, RuleSnapshot
from .comparison import compare_scenarios
from .country import CountryPricingCalculator, RuleApplicationPolicy
from .models import (
    CalculationRequest,
    CalculationResult,
    CountryBreakdown,
    FilingFrequency,
    ScenarioComparison,
    ServiceCost,
    ServiceType,
    parse_request,
)

__all__ = [
    "CalculationAggregator",
    "RuleSnapshot",
    "compare_scenarios",
    "CountryPricingCalculator",
    "RuleApplicationPolicy",
    "CalculationRequest",
    "CalculationResult",
    "CountryBreakdown",
    "FilingFrequency",
    "ScenarioComparison",
    "ServiceCost",
    "ServiceType",
    "parse_request",
]
