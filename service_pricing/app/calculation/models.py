"""
Calculation request and result models.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from shared.errors import InvalidRequestError


class ServiceType(str, Enum):
    """Filing service levels."""
    STANDARD_FILING = "StandardFiling"
    COMPLEX_FILING = "ComplexFiling"
    PRIORITY_SERVICE = "PriorityService"


class FilingFrequency(str, Enum):
    """How often returns are filed."""
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    ANNUALLY = "Annually"


class CalculationRequest(BaseModel):
    """Request model for a pricing calculation."""

    model_config = ConfigDict(frozen=True)

    service_type: ServiceType = Field(..., description="Service type")
    transaction_volume: int = Field(..., gt=0, description="Transactions per filing period")
    frequency: FilingFrequency = Field(..., description="Filing frequency")
    country_codes: Tuple[str, ...] = Field(..., min_length=1, description="ISO 3166-1 alpha-2 country codes")
    additional_services: Tuple[str, ...] = Field(default=(), description="Additional service codes")
    as_of: Optional[date] = Field(None, description="Rule reference date; defaults to today")
    currency_code: Optional[str] = Field(None, description="Result currency; defaults to configuration")

    @field_validator("country_codes", mode="before")
    @classmethod
    def normalise_country_codes(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        codes = []
        for code in value:
            code = str(code).strip().upper()
            if len(code) != 2 or not code.isalpha() or not code.isascii():
                raise ValueError(f"invalid country code '{code}'")
            if code in codes:
                raise ValueError(f"duplicate country code '{code}'")
            codes.append(code)
        return tuple(codes)

    @field_validator("additional_services", mode="before")
    @classmethod
    def normalise_services(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        services = []
        for service in value:
            service = str(service).strip()
            if service and service not in services:
                services.append(service)
        return tuple(services)

    @field_validator("currency_code")
    @classmethod
    def normalise_currency(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise ValueError(f"invalid currency code '{value}'")
        return value


def parse_request(data: Mapping[str, Any]) -> CalculationRequest:
    """Validate raw request data, raising InvalidRequestError on failure."""
    try:
        return CalculationRequest.model_validate(dict(data))
    except PydanticValidationError as e:
        raise InvalidRequestError(
            "Calculation request failed validation",
            {"errors": json.loads(e.json(include_url=False))}
        ) from e


def _money(value: Decimal) -> str:
    return str(value)


@dataclass(frozen=True)
class CountryBreakdown:
    """Priced result for one country."""
    country_code: str
    currency_code: str
    base_cost: Decimal
    additional_cost: Decimal
    discount: Decimal
    total_cost: Decimal
    applied_rules: Tuple[str, ...] = ()
    requirements: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country_code": self.country_code,
            "currency_code": self.currency_code,
            "base_cost": _money(self.base_cost),
            "additional_cost": _money(self.additional_cost),
            "discount": _money(self.discount),
            "total_cost": _money(self.total_cost),
            "applied_rules": list(self.applied_rules),
            "requirements": list(self.requirements),
        }


@dataclass(frozen=True)
class ServiceCost:
    """An additional service line."""
    code: str
    name: str
    cost: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "name": self.name, "cost": _money(self.cost)}


@dataclass(frozen=True)
class CalculationResult:
    """Immutable outcome of a pricing calculation."""
    total_cost: Decimal
    currency_code: str
    service_type: ServiceType
    transaction_volume: int
    frequency: FilingFrequency
    as_of: date
    generated_at: datetime
    countries: Tuple[CountryBreakdown, ...] = ()
    additional_services: Tuple[ServiceCost, ...] = ()
    discounts: Mapping[str, Decimal] = field(default_factory=dict)
    subtotal: Decimal = Decimal("0")

    def __post_init__(self):
        object.__setattr__(self, "countries", tuple(self.countries))
        object.__setattr__(self, "additional_services", tuple(self.additional_services))
        object.__setattr__(self, "discounts", MappingProxyType(dict(self.discounts)))

    @property
    def additional_service_names(self) -> List[str]:
        return [service.name for service in self.additional_services]

    @property
    def total_discount(self) -> Decimal:
        return sum(self.discounts.values(), Decimal("0"))

    def get_country(self, country_code: str) -> Optional[CountryBreakdown]:
        for breakdown in self.countries:
            if breakdown.country_code == country_code.upper():
                return breakdown
        return None

    def to_dict(self, include_timestamp: bool = True) -> Dict[str, Any]:
        data = {
            "total_cost": _money(self.total_cost),
            "subtotal": _money(self.subtotal),
            "currency_code": self.currency_code,
            "service_type": self.service_type.value,
            "transaction_volume": self.transaction_volume,
            "frequency": self.frequency.value,
            "as_of": self.as_of.isoformat(),
            "countries": [country.to_dict() for country in self.countries],
            "additional_services": [service.to_dict() for service in self.additional_services],
            "discounts": {name: _money(amount) for name, amount in self.discounts.items()},
        }
        if include_timestamp:
            data["generated_at"] = self.generated_at.isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def fingerprint(self) -> str:
        """SHA-256 of the canonical result, ignoring the generation timestamp."""
        canonical = json.dumps(self.to_dict(include_timestamp=False), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ScenarioComparison:
    """Side-by-side results of several named requests."""
    results: Mapping[str, CalculationResult]
    cheapest: str
    differences: Mapping[str, Decimal]

    def __post_init__(self):
        object.__setattr__(self, "results", MappingProxyType(dict(self.results)))
        object.__setattr__(self, "differences", MappingProxyType(dict(self.differences)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cheapest": self.cheapest,
            "scenarios": {
                name: {
                    "total_cost": _money(result.total_cost),
                    "currency_code": result.currency_code,
                    "difference": _money(self.differences[name]),
                }
                for name, result in self.results.items()
            },
        }
