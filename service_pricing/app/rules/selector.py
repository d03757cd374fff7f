"""
Rule selection: scope, date window, conditions and evaluation order.
"""

from datetime import date
from typing import Any, Iterable, Mapping, Optional, Tuple

from shared.logging import get_logger

from .conditions import matches
from .models import Rule

logger = get_logger("pricing.selector")


def evaluation_order(rule: Rule) -> Tuple[int, str, str]:
    """Sort key: priority descending, then name, then rule ID."""
    return (-rule.priority, rule.name, rule.rule_id)


def is_applicable(
    rule: Rule,
    as_of: date,
    context: Mapping[str, Any],
    country_code: Optional[str] = None
) -> bool:
    """Check whether a single rule applies to the context at a date.

    ``country_code`` of ``None`` selects request-level rules only.
    """
    if not rule.is_active:
        return False
    if rule.country_code != country_code:
        return False
    if not rule.is_effective_at(as_of):
        return False
    return matches(rule.conditions, context)


def select_rules(
    rules: Iterable[Rule],
    as_of: date,
    context: Mapping[str, Any],
    country_code: Optional[str] = None
) -> Tuple[Rule, ...]:
    """Filter rules down to the applicable ones, in evaluation order.

    Rules from the source are expected to be scoped already; the scope check
    is repeated so a mis-scoped source cannot leak another country's rules.
    """
    if country_code is not None:
        country_code = country_code.upper()

    selected = [
        rule for rule in rules
        if is_applicable(rule, as_of, context, country_code)
    ]
    selected.sort(key=evaluation_order)

    logger.debug(
        "Rules selected",
        country_code=country_code,
        as_of=as_of.isoformat(),
        rule_ids=[rule.rule_id for rule in selected]
    )
    return tuple(selected)
