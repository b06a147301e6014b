"""
Error taxonomy for the formula engine.

Validation-stage errors (syntax, missing dependency, circular dependency) are
raised synchronously to the definition author and block the save.
Evaluation-stage errors are raised by the evaluator and are caught, logged and
counted by the recalculation orchestrator.
"""

from enum import Enum


class SyntaxErrorCategory(str, Enum):
    """Stable categories reported for malformed formula text."""

    EMPTY_FORMULA = "empty_formula"
    FORMULA_TOO_LONG = "formula_too_long"
    INVALID_CHARACTER = "invalid_character"
    UNBALANCED_PARENTHESES = "unbalanced_parentheses"
    UNBALANCED_BRACES = "unbalanced_braces"
    MALFORMED_VARIABLE = "malformed_variable"
    INVALID_SELECTOR = "invalid_selector"
    UNKNOWN_FUNCTION = "unknown_function"
    WRONG_ARITY = "wrong_arity"
    UNEXPECTED_TOKEN = "unexpected_token"
    UNEXPECTED_END = "unexpected_end"
    NESTING_TOO_DEEP = "nesting_too_deep"


class FormulaError(Exception):
    """Base class for every error raised by the formula engine."""


class FormulaSyntaxError(FormulaError):
    """Formula text could not be parsed."""

    def __init__(
        self, message: str, category: SyntaxErrorCategory, position: int | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.position = position


class MissingDependencyError(FormulaError):
    """Formula references metrics that do not exist (or are deleted)."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Dependency not found: {', '.join(self.missing)}")


class CircularDependencyError(FormulaError):
    """Formula would introduce a cycle in the dependency graph."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' → '.join(self.cycle)}")


class EvaluationError(FormulaError):
    """Formula could not be evaluated against the supplied bindings."""

    def __init__(self, message: str, variable: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.variable = variable


class DivisionByZeroError(EvaluationError):
    """A division denominator resolved to exactly zero."""

    def __init__(self, message: str = "Division by zero") -> None:
        super().__init__(message)


class MetricDefinitionError(Exception):
    """Base class for definition management failures."""


class DefinitionNotFoundError(MetricDefinitionError):
    def __init__(self, definition_id: str) -> None:
        self.definition_id = definition_id
        super().__init__(f"Measure definition not found: {definition_id}")


class DuplicateDefinitionError(MetricDefinitionError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Measure with name '{name}' already exists")


class DependentDefinitionsError(MetricDefinitionError):
    """Operation rejected because calculated definitions still depend on the metric."""

    def __init__(self, name: str, dependents: list[str], action: str = "delete") -> None:
        self.name = name
        self.dependents = list(dependents)
        self.action = action
        super().__init__(
            f"Cannot {action} measure '{name}': used by {', '.join(self.dependents)}"
        )


class InvalidDefinitionError(MetricDefinitionError):
    """Definition data is inconsistent (e.g. calculated measure without formula)."""
