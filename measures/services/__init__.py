"""
Formula engine services.

This package contains the parser, dependency tracking, evaluation,
background recalculation and definition management.
"""

from .cache import DefinitionCache
from .definitions import MetricDefinitionService
from .dependencies import detect_circular_dependencies, extract_dependencies
from .evaluator import evaluate, get_available_operators
from .formula_parser import parse_formula, validate_formula
from .recalculation import RecalculationOrchestrator
from .stores import DefinitionStore, MeasureValueStore, Result

__all__ = [
    "DefinitionCache",
    "DefinitionStore",
    "MeasureValueStore",
    "MetricDefinitionService",
    "RecalculationOrchestrator",
    "Result",
    "detect_circular_dependencies",
    "evaluate",
    "extract_dependencies",
    "get_available_operators",
    "parse_formula",
    "validate_formula",
]
