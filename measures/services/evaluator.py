"""
Expression evaluator for parsed measure formulas.

Numeric semantics:
- intermediate arithmetic runs at full float precision
- only the final result is rounded, half-up (away from zero), on the shortest
  decimal representation of the float: 22.857142... -> 22.86, 2.675 -> 2.68
- a zero denominator is a hard DivisionByZeroError, never inf/nan
- non-finite intermediate or final values are EvaluationErrors

Dates:
- binding values may be date/datetime objects or ISO date strings
- a date used in arithmetic is converted to days since 1970-01-01
- today() and age_years() use the evaluation reference date, never wall-clock
  time read elsewhere, so recomputation over history is reproducible
"""

import math
import re
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation
from typing import Any

from measures.domain.errors import DivisionByZeroError, EvaluationError
from measures.services.formula_parser import (
    DEFAULT_MAX_FORMULA_LENGTH,
    FUNCTION_SPECS,
    OPERATORS,
    BinaryOp,
    Expression,
    FunctionCall,
    Number,
    UnaryOp,
    Variable,
    parse_formula,
)

EPOCH = date(1970, 1, 1)
_ROUNDING_CONTEXT = Context(prec=400)  # wide enough for any finite float
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")

Scalar = float | date


def round_half_up(value: float, decimal_places: int) -> float:
    """Round half away from zero to `decimal_places` digits."""
    if decimal_places < 0:
        raise ValueError("decimal_places must be non-negative")
    try:
        quantum = Decimal(1).scaleb(-decimal_places)
        rounded = Decimal(repr(value)).quantize(
            quantum, rounding=ROUND_HALF_UP, context=_ROUNDING_CONTEXT
        )
    except InvalidOperation as e:
        raise EvaluationError(f"Cannot round value {value!r}") from e
    result = float(rounded)
    return 0.0 if result == 0 else result  # normalise -0.0


def days_since_epoch(value: date) -> int:
    if isinstance(value, datetime):
        value = value.date()
    return (value - EPOCH).days


def _coerce_binding(key: str, raw: Any) -> Scalar:
    if raw is None:
        raise EvaluationError(f"Missing value for variable: {key}", variable=key)
    if isinstance(raw, bool):
        raise EvaluationError(f"Invalid value for variable {key}: {raw!r}", variable=key)
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, int | float | Decimal):
        number = float(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if _ISO_DATE_RE.match(text):
            try:
                return date.fromisoformat(text[:10])
            except ValueError as e:
                raise EvaluationError(
                    f"Invalid date for variable {key}: {raw!r}", variable=key
                ) from e
        try:
            number = float(text)
        except ValueError as e:
            raise EvaluationError(
                f"Invalid value for variable {key}: {raw!r}", variable=key
            ) from e
    else:
        raise EvaluationError(f"Invalid value for variable {key}: {raw!r}", variable=key)

    if not math.isfinite(number):
        raise EvaluationError(f"Invalid value for variable {key}: {raw!r}", variable=key)
    return number


def _as_number(value: Scalar) -> float:
    if isinstance(value, date):
        return float(days_since_epoch(value))
    return value


def _as_date(value: Scalar, function: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return EPOCH + timedelta(days=math.floor(value))
    except OverflowError as e:
        raise EvaluationError(f"Invalid date input for {function}()") from e


def _checked(value: float, operation: str) -> float:
    if not math.isfinite(value):
        raise EvaluationError(f"Result of {operation} is not a finite number")
    return value


def _divide(a: float, b: float) -> float:
    if b == 0:
        raise DivisionByZeroError()
    return _checked(a / b, "division")


def _power(a: float, b: float) -> float:
    if a == 0 and b < 0:
        raise DivisionByZeroError("Division by zero: zero raised to a negative power")
    try:
        return _checked(math.pow(a, b), "exponentiation")
    except OverflowError as e:
        raise EvaluationError("Result of exponentiation is too large") from e
    except ValueError as e:
        raise EvaluationError(f"Cannot raise {a} to the power {b}") from e


_BINARY: dict[str, Callable[[float, float], float]] = {
    "+": lambda a, b: _checked(a + b, "addition"),
    "-": lambda a, b: _checked(a - b, "subtraction"),
    "*": lambda a, b: _checked(a * b, "multiplication"),
    "/": _divide,
    "^": _power,
}


def _sqrt(x: float) -> float:
    if x < 0:
        raise EvaluationError("Cannot take square root of negative number")
    return math.sqrt(x)


def _round(x: float, decimals: float = 0) -> float:
    if decimals != int(decimals) or decimals < 0:
        raise EvaluationError("round() decimals must be a non-negative integer")
    return round_half_up(x, int(decimals))


def _age_years(birth: date, reference: date) -> int:
    age = reference.year - birth.year
    if (reference.month, reference.day) < (birth.month, birth.day):
        age -= 1
    return age


class Evaluator:
    """
    Walks an expression tree against a binding table.

    One instance is bound to a reference date; it holds no other state and is
    safe to reuse across evaluations.
    """

    def __init__(self, reference_date: date | None = None) -> None:
        if isinstance(reference_date, datetime):
            reference_date = reference_date.date()
        self.reference_date = reference_date or datetime.now(UTC).date()

    def evaluate(self, tree: Expression, bindings: Mapping[str, Any]) -> float:
        result = _as_number(self._eval(tree, bindings))
        return _checked(result, "formula")

    def _eval(self, node: Expression, bindings: Mapping[str, Any]) -> Scalar:
        if isinstance(node, Number):
            return node.value
        if isinstance(node, Variable):
            return self._lookup(node, bindings)
        if isinstance(node, UnaryOp):
            return -_as_number(self._eval(node.operand, bindings))
        if isinstance(node, BinaryOp):
            left = _as_number(self._eval(node.left, bindings))
            right = _as_number(self._eval(node.right, bindings))
            return _BINARY[node.operator](left, right)
        if isinstance(node, FunctionCall):
            args = [self._eval(arg, bindings) for arg in node.args]
            return self._call(node.name, args)
        raise EvaluationError(f"Unsupported expression node: {type(node).__name__}")

    @staticmethod
    def _lookup(variable: Variable, bindings: Mapping[str, Any]) -> Scalar:
        key = variable.key
        if bindings.get(key) is not None:
            return _coerce_binding(key, bindings[key])
        # {current:x} is the value being computed for, which is what a plain {x} binds
        if variable.selector == "current" and bindings.get(variable.name) is not None:
            return _coerce_binding(key, bindings[variable.name])
        raise EvaluationError(f"Missing value for variable: {key}", variable=key)

    def _call(self, name: str, args: list[Scalar]) -> Scalar:
        if name == "today":
            return float(days_since_epoch(self.reference_date))
        if name in ("year", "month", "day"):
            value = _as_date(args[0], name)
            return float(getattr(value, name))
        if name == "age_years":
            return float(_age_years(_as_date(args[0], name), self.reference_date))

        numbers = [_as_number(arg) for arg in args]
        if name == "sqrt":
            return _sqrt(numbers[0])
        if name == "abs":
            return abs(numbers[0])
        if name == "round":
            return _round(*numbers)
        if name == "floor":
            return float(math.floor(numbers[0]))
        if name == "ceil":
            return float(math.ceil(numbers[0]))
        if name == "min":
            return min(numbers)
        if name == "max":
            return max(numbers)
        raise EvaluationError(f"Unknown function: {name}")


def evaluate(
    formula: str | Expression,
    bindings: Mapping[str, Any],
    decimal_places: int = 2,
    reference_date: date | None = None,
    max_length: int = DEFAULT_MAX_FORMULA_LENGTH,
) -> float:
    """
    Evaluate a formula (text or parsed tree) and round the final result.

    Raises:
        FormulaSyntaxError: formula text does not parse.
        EvaluationError: a binding is absent or invalid, or the result is not finite.
        DivisionByZeroError: a denominator resolved to exactly zero.
    """
    tree = parse_formula(formula, max_length=max_length) if isinstance(formula, str) else formula
    result = Evaluator(reference_date).evaluate(tree, bindings)
    return round_half_up(result, decimal_places)


def get_available_operators() -> dict[str, Any]:
    """Operators and library functions, for formula-builder UIs."""
    return {
        "operators": list(OPERATORS),
        "selectors": ["current", "previous", "delta", "avgN"],
        "functions": [
            {
                "name": spec.name,
                "description": spec.description,
                "example": spec.example,
                "category": spec.category,
                "arity": spec.describe_arity(),
            }
            for spec in FUNCTION_SPECS.values()
        ],
    }
