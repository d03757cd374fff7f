"""
Pricing rules: data model, expressions, conditions, selection and sources.
"""
