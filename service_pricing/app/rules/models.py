"""
Rule data models for the pricing engine.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Tuple

from shared.errors import RuleDefinitionError

COUNTRY_CODE_PATTERN = re.compile(r"^[A-Z]{2}$")
PARAMETER_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

MIN_PRIORITY = 1
MAX_PRIORITY = 1000
DEFAULT_PRIORITY = 100
MAX_EXPRESSION_LENGTH = 2000


class RuleType(str, Enum):
    """Rule types; each has its own way of folding a result into the context."""
    VAT_RATE = "VatRate"
    THRESHOLD = "Threshold"
    COMPLEXITY = "Complexity"
    SPECIAL_REQUIREMENT = "SpecialRequirement"
    DISCOUNT = "Discount"


class ConditionOperator(str, Enum):
    """Rule condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"

    @classmethod
    def parse(cls, value: Any) -> "ConditionOperator":
        """Parse an operator name case-insensitively."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for operator in cls:
            if operator.value.lower() == text:
                return operator
        raise RuleDefinitionError(
            f"Operator '{value}' is not supported",
            {"operator": str(value), "supported": [op.value for op in cls]}
        )


class ParameterType(str, Enum):
    """Declared data types of rule parameters."""
    NUMBER = "number"
    BOOLEAN = "boolean"
    STRING = "string"
    DATE = "date"


@dataclass(frozen=True)
class RuleParameter:
    """Named input a rule expression may reference, with an optional default."""
    name: str
    data_type: ParameterType = ParameterType.NUMBER
    default_value: Optional[str] = None

    def __post_init__(self):
        if not self.name or not PARAMETER_NAME_PATTERN.match(self.name):
            raise RuleDefinitionError(
                f"Invalid parameter name '{self.name}'", {"parameter": self.name}
            )
        if not isinstance(self.data_type, ParameterType):
            try:
                object.__setattr__(self, "data_type", ParameterType(str(self.data_type).lower()))
            except ValueError:
                raise RuleDefinitionError(
                    f"Unsupported data type '{self.data_type}'",
                    {"parameter": self.name, "data_type": str(self.data_type)}
                ) from None
        if self.default_value is not None and self.typed_default() is None:
            raise RuleDefinitionError(
                f"Default value '{self.default_value}' is not a valid {self.data_type.value}",
                {"parameter": self.name}
            )

    def typed_default(self) -> Any:
        """The default value converted to its declared type, or None."""
        if self.default_value is None:
            return None
        text = str(self.default_value).strip()
        if self.data_type is ParameterType.NUMBER:
            try:
                number = Decimal(text)
            except InvalidOperation:
                return None
            return number if number.is_finite() else None
        if self.data_type is ParameterType.BOOLEAN:
            lowered = text.lower()
            if lowered in ("true", "1"):
                return True
            if lowered in ("false", "0"):
                return False
            return None
        if self.data_type is ParameterType.DATE:
            try:
                return date.fromisoformat(text)
            except ValueError:
                return None
        return text


@dataclass(frozen=True)
class RuleCondition:
    """A single predicate over a calculation context value."""
    parameter: str
    operator: ConditionOperator
    value: Any
    description: Optional[str] = None

    def __post_init__(self):
        if not self.parameter:
            raise RuleDefinitionError("Condition parameter is required")
        object.__setattr__(self, "operator", ConditionOperator.parse(self.operator))


@dataclass(frozen=True)
class Rule:
    """Pricing rule.

    Instances are immutable and safe to share between concurrent
    calculations. Expression syntax is not checked here; malformed
    expressions fail when the rule is evaluated.
    """
    rule_id: str
    country_code: Optional[str]
    rule_type: RuleType
    name: str
    expression: str
    effective_from: date
    effective_to: Optional[date] = None
    priority: int = DEFAULT_PRIORITY
    description: Optional[str] = None
    parameters: Tuple[RuleParameter, ...] = field(default_factory=tuple)
    conditions: Tuple[RuleCondition, ...] = field(default_factory=tuple)
    is_active: bool = True

    def __post_init__(self):
        if not self.rule_id:
            raise RuleDefinitionError("Rule ID is required")
        if not self.name:
            raise RuleDefinitionError("Rule name is required", {"rule_id": self.rule_id})

        if not isinstance(self.rule_type, RuleType):
            try:
                object.__setattr__(self, "rule_type", RuleType(self.rule_type))
            except ValueError:
                raise RuleDefinitionError(
                    f"Unknown rule type '{self.rule_type}'", {"rule_id": self.rule_id}
                ) from None

        if self.country_code is not None:
            code = self.country_code.strip().upper()
            if not COUNTRY_CODE_PATTERN.match(code):
                raise RuleDefinitionError(
                    f"Invalid country code '{self.country_code}'", {"rule_id": self.rule_id}
                )
            object.__setattr__(self, "country_code", code)
        elif self.rule_type is not RuleType.DISCOUNT:
            raise RuleDefinitionError(
                "Only discount rules may apply to a whole request",
                {"rule_id": self.rule_id, "rule_type": self.rule_type.value}
            )

        if not isinstance(self.expression, str) or not self.expression.strip():
            raise RuleDefinitionError("Rule expression is required", {"rule_id": self.rule_id})
        if len(self.expression) > MAX_EXPRESSION_LENGTH:
            raise RuleDefinitionError(
                f"Rule expression exceeds {MAX_EXPRESSION_LENGTH} characters",
                {"rule_id": self.rule_id}
            )

        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise RuleDefinitionError(
                "Effective-to date must not precede effective-from date",
                {"rule_id": self.rule_id}
            )

        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise RuleDefinitionError("Rule priority must be an integer", {"rule_id": self.rule_id})
        if not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise RuleDefinitionError(
                f"Rule priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}",
                {"rule_id": self.rule_id, "priority": self.priority}
            )

        object.__setattr__(self, "parameters", tuple(self.parameters))
        object.__setattr__(self, "conditions", tuple(self.conditions))

        seen = set()
        for parameter in self.parameters:
            key = parameter.name.lower()
            if key in seen:
                raise RuleDefinitionError(
                    f"Duplicate parameter '{parameter.name}'", {"rule_id": self.rule_id}
                )
            seen.add(key)

    @property
    def is_request_level(self) -> bool:
        """True for discount rules that apply to the whole request."""
        return self.country_code is None

    def is_effective_at(self, as_of: date) -> bool:
        """Whether the rule's date window covers the given date."""
        if as_of < self.effective_from:
            return False
        return self.effective_to is None or as_of < self.effective_to

    def get_parameter(self, name: str) -> Optional[RuleParameter]:
        for parameter in self.parameters:
            if parameter.name.lower() == name.lower():
                return parameter
        return None

    def with_name(self, name: str, description: Optional[str] = None) -> "Rule":
        return replace(self, name=name, description=description if description is not None else self.description)

    def with_expression(self, expression: str) -> "Rule":
        return replace(self, expression=expression)

    def with_priority(self, priority: int) -> "Rule":
        return replace(self, priority=priority)

    def with_effective_dates(self, effective_from: date, effective_to: Optional[date] = None) -> "Rule":
        return replace(self, effective_from=effective_from, effective_to=effective_to)

    def deactivate(self) -> "Rule":
        """Rules are never removed, only switched off."""
        return replace(self, is_active=False)

    def activate(self) -> "Rule":
        return replace(self, is_active=True)
