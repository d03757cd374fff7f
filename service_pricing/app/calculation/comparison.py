"""
Scenario comparison across several calculation requests.
"""

from typing import Dict, Mapping

from shared.errors import CalculationFailedError, InvalidRequestError, PricingEngineException
from shared.logging import get_logger

from .aggregator import CalculationAggregator
from .models import CalculationRequest, CalculationResult, ScenarioComparison

logger = get_logger("pricing.comparison")

MIN_SCENARIOS = 2


def compare_scenarios(
    aggregator: CalculationAggregator,
    scenarios: Mapping[str, CalculationRequest]
) -> ScenarioComparison:
    """Price each named scenario and rank them against the cheapest."""
    if len(scenarios) < MIN_SCENARIOS:
        raise InvalidRequestError(
            f"At least {MIN_SCENARIOS} scenarios are required for comparison",
            {"scenarios": list(scenarios)}
        )

    results: Dict[str, CalculationResult] = {}
    for name, request in scenarios.items():
        try:
            results[name] = aggregator.calculate(request)
        except CalculationFailedError as e:
            e.details["scenario"] = name
            raise
        except PricingEngineException as e:
            error = CalculationFailedError(name, e)
            error.details["scenario"] = name
            raise error from e

    currencies = {result.currency_code for result in results.values()}
    if len(currencies) > 1:
        raise InvalidRequestError(
            "Scenarios must be priced in the same currency",
            {"currencies": sorted(currencies)}
        )

    # Ties go to the first scenario given
    cheapest = min(results, key=lambda name: results[name].total_cost)
    floor = results[cheapest].total_cost
    differences = {name: result.total_cost - floor for name, result in results.items()}

    logger.info("Scenarios compared", scenarios=len(results), cheapest=cheapest)
    return ScenarioComparison(results=results, cheapest=cheapest, differences=differences)
