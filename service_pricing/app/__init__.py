"""
Pricing Service package for the VAT filing pricing engine.

This package computes the cost of VAT filing services for a set of
countries. It provides:

- app.main: Service facade wiring configuration, logging, metrics and rules.
- app.cli: Command-line entry point for one-off calculations.
- app.rules: Rule model, expression evaluation, conditions, selection, sources.
- app.calculation: Per-country folds, aggregation and scenario comparison.

Guidelines:
- Calculations are stateless; rules are read from an immutable snapshot.
- Keep evaluation deterministic and observable (metrics + logs).
"""
