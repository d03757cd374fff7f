"""
Shared configuration management for the VAT filing pricing engine.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PRICING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    service_name: str = Field(default="pricing")


class PricingConfig(BaseConfig):
    """Pricing engine configuration."""

    # Currency
    base_currency: str = Field(default="EUR")
    default_currency: str = Field(default="EUR")
    exchange_rates: Dict[str, Decimal] = Field(
        default_factory=lambda: {"EUR": Decimal("1")}
    )
    currency_minor_units: Dict[str, int] = Field(
        default_factory=lambda: {"JPY": 0, "KRW": 0, "HUF": 2}
    )

    # Evaluation
    require_base_rule: bool = Field(default=False)
    max_workers: int = Field(default=1, ge=1)
    max_transaction_volume: int = Field(default=100000, gt=0)
    rules_file: Optional[str] = Field(default=None)

    # Seed values
    service_type_weights: Dict[str, Decimal] = Field(
        default_factory=lambda: {
            "StandardFiling": Decimal("1.0"),
            "ComplexFiling": Decimal("1.5"),
            "PriorityService": Decimal("2.0"),
        }
    )
    base_prices: Dict[str, Decimal] = Field(
        default_factory=lambda: {
            "StandardFiling": Decimal("100"),
            "ComplexFiling": Decimal("200"),
            "PriorityService": Decimal("300"),
        }
    )
    # Filings per year
    frequency_multipliers: Dict[str, Decimal] = Field(
        default_factory=lambda: {
            "Monthly": Decimal("12"),
            "Quarterly": Decimal("4"),
            "Annually": Decimal("1"),
        }
    )

    # Additional services, priced in the base currency
    additional_services: Dict[str, Decimal] = Field(
        default_factory=lambda: {
            "TaxConsultancy": Decimal("500"),
            "HistoricalDataProcessing": Decimal("1000"),
            "ReconciliationServices": Decimal("750"),
        }
    )
    additional_service_names: Dict[str, str] = Field(
        default_factory=lambda: {
            "TaxConsultancy": "Tax Consultancy",
            "HistoricalDataProcessing": "Historical Data Processing",
            "ReconciliationServices": "Reconciliation Services",
        }
    )

    # Standard discount tiers: (threshold, percent), highest threshold first
    enable_standard_discounts: bool = Field(default=False)
    volume_discount_tiers: List[Tuple[int, Decimal]] = Field(
        default_factory=lambda: [
            (1000, Decimal("15")),
            (500, Decimal("10")),
            (100, Decimal("5")),
        ]
    )
    multi_country_discount_tiers: List[Tuple[int, Decimal]] = Field(
        default_factory=lambda: [
            (10, Decimal("20")),
            (5, Decimal("15")),
            (3, Decimal("10")),
        ]
    )


@lru_cache(maxsize=1)
def get_config() -> PricingConfig:
    """Get the process-wide pricing configuration."""
    return PricingConfig()
