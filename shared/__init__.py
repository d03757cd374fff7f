"""
Shared utilities for the VAT filing pricing engine.

This package aggregates common building blocks consumed by the pricing
service:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with calculation correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses

Do not import from service packages into shared/.
"""
