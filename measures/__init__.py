"""Calculated-measure formula engine.

This package contains the formula language (parser, dependency graph,
evaluator), the recalculation orchestrator and the definition service,
isolated from storage so it is easy to test and reason about.
"""
