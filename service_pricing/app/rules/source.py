"""
Rule sources: where the engine gets its rule snapshot from.
"""

import json
import threading
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from shared.errors import PricingEngineException, RuleDefinitionError
from shared.logging import get_logger

from .models import (
    DEFAULT_PRIORITY, ParameterType, Rule, RuleCondition, RuleParameter, RuleType
)

logger = get_logger("pricing.rule_source")


class RuleSource(Protocol):
    """Synchronous rule source."""

    def get_applicable_rules(self, country_code: str, as_of: date) -> Tuple[Rule, ...]:
        """Rules for a country that are active and effective at ``as_of``."""
        ...

    def get_request_rules(self, as_of: date) -> Tuple[Rule, ...]:
        """Request-level discount rules effective at ``as_of``."""
        ...


class AsyncRuleSource(Protocol):
    """Rule source whose lookups are coroutines."""

    async def get_applicable_rules(self, country_code: str, as_of: date) -> Tuple[Rule, ...]:
        ...

    async def get_request_rules(self, as_of: date) -> Tuple[Rule, ...]:
        ...


class InMemoryRuleSource:
    """Thread-safe in-memory rule store.

    Rules are immutable, so lookups hand out tuples of the stored objects
    without copying. Updates replace rules by ID and never mutate a snapshot
    that was already returned.
    """

    def __init__(self, rules: Optional[Iterable[Rule]] = None):
        self._rules: Dict[str, Rule] = {}
        self._lock = threading.Lock()
        for rule in rules or ():
            self._rules[rule.rule_id] = rule

    def __len__(self) -> int:
        return len(self._rules)

    def add_rule(self, rule: Rule) -> None:
        """Add a rule, replacing any rule with the same ID."""
        with self._lock:
            self._rules[rule.rule_id] = rule
        logger.info("Rule added", rule_id=rule.rule_id, name=rule.name, country_code=rule.country_code)

    def update_rule(self, rule: Rule) -> bool:
        """Replace an existing rule; returns False when the ID is unknown."""
        with self._lock:
            if rule.rule_id not in self._rules:
                return False
            self._rules[rule.rule_id] = rule
        logger.info("Rule updated", rule_id=rule.rule_id, name=rule.name)
        return True

    def deactivate_rule(self, rule_id: str) -> bool:
        """Switch a rule off; returns False when the ID is unknown."""
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            self._rules[rule_id] = rule.deactivate()
        logger.info("Rule deactivated", rule_id=rule_id, name=rule.name)
        return True

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self._rules.get(rule_id)

    def all_rules(self) -> Tuple[Rule, ...]:
        with self._lock:
            return tuple(self._rules.values())

    def get_applicable_rules(self, country_code: str, as_of: date) -> Tuple[Rule, ...]:
        code = country_code.upper()
        return tuple(
            rule for rule in self.all_rules()
            if rule.country_code == code and rule.is_active and rule.is_effective_at(as_of)
        )

    def get_request_rules(self, as_of: date) -> Tuple[Rule, ...]:
        return tuple(
            rule for rule in self.all_rules()
            if rule.is_request_level and rule.is_active and rule.is_effective_at(as_of)
        )


class AsyncRuleSourceAdapter:
    """Expose a synchronous rule source through the async interface."""

    def __init__(self, source: RuleSource):
        self.source = source

    async def get_applicable_rules(self, country_code: str, as_of: date) -> Tuple[Rule, ...]:
        return self.source.get_applicable_rules(country_code, as_of)

    async def get_request_rules(self, as_of: date) -> Tuple[Rule, ...]:
        return self.source.get_request_rules(as_of)


# Rule file models

def _default_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ParameterDefinition(BaseModel):
    """Rule parameter as written in a rule file."""
    name: str = Field(..., description="Parameter name")
    data_type: ParameterType = Field(ParameterType.NUMBER, description="Declared data type")
    default_value: Optional[Union[bool, int, float, str]] = Field(None, description="Default value")


class ConditionDefinition(BaseModel):
    """Rule condition as written in a rule file."""
    parameter: str = Field(..., description="Context parameter to test")
    operator: str = Field(..., description="Comparison operator")
    value: Any = Field(..., description="Value to compare against")
    description: Optional[str] = Field(None, description="Condition description")


class RuleDefinition(BaseModel):
    """Rule as written in a rule file."""
    rule_id: str = Field(..., description="Rule ID")
    country_code: Optional[str] = Field(None, description="Country code; omit for request-level rules")
    rule_type: RuleType = Field(..., description="Rule type")
    name: str = Field(..., description="Rule name")
    description: Optional[str] = Field(None, description="Rule description")
    expression: str = Field(..., description="Rule expression")
    effective_from: date = Field(..., description="First day the rule applies")
    effective_to: Optional[date] = Field(None, description="First day the rule no longer applies")
    priority: int = Field(DEFAULT_PRIORITY, description="Rule priority")
    parameters: List[ParameterDefinition] = Field(default_factory=list)
    conditions: List[ConditionDefinition] = Field(default_factory=list)
    is_active: bool = Field(True, description="Whether the rule is enabled")

    def to_rule(self) -> Rule:
        return Rule(
            rule_id=self.rule_id,
            country_code=self.country_code,
            rule_type=self.rule_type,
            name=self.name,
            description=self.description,
            expression=self.expression,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            priority=self.priority,
            parameters=tuple(
                RuleParameter(p.name, p.data_type, _default_text(p.default_value)) for p in self.parameters
            ),
            conditions=tuple(
                RuleCondition(c.parameter, c.operator, c.value, c.description) for c in self.conditions
            ),
            is_active=self.is_active,
        )


class RuleFile(BaseModel):
    """Top-level rule file layout."""
    rules: List[RuleDefinition] = Field(default_factory=list)


def parse_rules(data: Any) -> List[Rule]:
    """Build rules from already-decoded rule file content."""
    if isinstance(data, list):
        data = {"rules": data}
    try:
        rule_file = RuleFile.model_validate(data or {})
    except PydanticValidationError as e:
        raise RuleDefinitionError(
            "Rule file failed validation",
            {"errors": json.loads(e.json(include_url=False))}
        ) from e

    rules = []
    seen = set()
    for definition in rule_file.rules:
        if definition.rule_id in seen:
            raise RuleDefinitionError(
                f"Duplicate rule ID '{definition.rule_id}'", {"rule_id": definition.rule_id}
            )
        seen.add(definition.rule_id)
        rules.append(definition.to_rule())
    return rules


def load_rules(path: Union[str, Path]) -> List[Rule]:
    """Load rules from a YAML or JSON file."""
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise RuleDefinitionError(f"Could not parse rule file {path}", {"error": str(e)}) from e
    except OSError as e:
        raise RuleDefinitionError(f"Could not read rule file {path}", {"error": str(e)}) from e

    try:
        rules = parse_rules(data)
    except PricingEngineException as e:
        e.details.setdefault("path", str(path))
        raise

    logger.info("Rules loaded", path=str(path), count=len(rules))
    return rules


def load_rule_source(path: Union[str, Path]) -> InMemoryRuleSource:
    """Load a rule file into an in-memory source."""
    return InMemoryRuleSource(load_rules(path))
