"""
Registrar - Property-Based Testing Suite

Property-based testing using Hypothesis to discover edge cases and invariants
in enrollment rules, GPA calculation and pagination.
"""
