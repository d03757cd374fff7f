"""
Shared error handling for the VAT filing pricing engine.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from .logging import calculation_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    calculation_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class PricingEngineException(Exception):
    """Base exception for the pricing engine."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            calculation_id=calculation_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class InvalidRequestError(PricingEngineException):
    """The calculation request failed validation."""

    def __init__(self, message: str = "Invalid calculation request", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_REQUEST", message, details)


class RuleDefinitionError(PricingEngineException):
    """A rule definition is malformed."""

    def __init__(self, message: str = "Invalid rule definition", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_RULE", message, details)


class ExpressionError(PricingEngineException):
    """Base class for expression parse and evaluation failures."""


class ExpressionSyntaxError(ExpressionError):
    """Malformed expression text."""

    def __init__(self, position: int, message: str, expression: Optional[str] = None):
        self.position = position
        details: Dict[str, Any] = {"position": position}
        if expression is not None:
            details["expression"] = expression
        super().__init__("SYNTAX_ERROR", f"{message} at position {position}", details)


class UnknownVariableError(ExpressionError):
    """An identifier could not be resolved from the context."""

    def __init__(self, name: str):
        self.name = name
        super().__init__("UNKNOWN_VARIABLE", f"Unknown variable '{name}'", {"name": name})


class DivisionByZeroError(ExpressionError):
    """Division by zero during evaluation."""

    def __init__(self, message: str = "Division by zero"):
        super().__init__("DIVISION_BY_ZERO", message)


class ExpressionEvaluationError(ExpressionError):
    """Any other arithmetic failure while evaluating an expression."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("EVALUATION_ERROR", message, details)


class MissingBaseRuleError(PricingEngineException):
    """No VAT rate rule applied to a country while one is required."""

    def __init__(self, country_code: str):
        self.country_code = country_code
        super().__init__(
            "MISSING_BASE_RULE",
            f"No base VAT rate rule applied for country {country_code}",
            {"country_code": country_code}
        )


class CalculationFailedError(PricingEngineException):
    """A country (or scenario) evaluation failed; wraps the underlying error."""

    def __init__(self, country_code: str, cause: PricingEngineException):
        self.country_code = country_code
        self.cause = cause
        super().__init__(
            "CALCULATION_FAILED",
            f"Calculation failed for {country_code}: {cause.message}",
            {
                "country_code": country_code,
                "cause_code": cause.code,
                "cause_details": cause.details,
            }
        )
