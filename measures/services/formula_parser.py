"""
Tokenizer and recursive-descent parser for measure formulas.

Formula syntax:
- numeric literals: 12, 1.75, .5
- variable references: {weight} or {selector:weight}
  selectors: current, previous, delta, avgN (N-day rolling average, N up to 3650)
- binary operators: + - * / ^
- unary minus, parentheses
- function calls from a fixed library (see FUNCTION_SPECS)

Precedence, lowest to highest:
    1. binary + -      (left associative)
    2. * /             (left associative)
    3. unary -         (prefix)
    4. ^               (left associative; the exponent may carry its own unary minus)

So -2^2 == -4, 2^-1 == 0.5 and 2^3^2 == (2^3)^2 == 64.

Parsing is pure. Trees are immutable and cached per formula text; formula text
stays the durable source of truth.
"""

import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from measures.domain.errors import FormulaSyntaxError, SyntaxErrorCategory
from measures.domain.models import ValidationResult

DEFAULT_MAX_FORMULA_LENGTH = 1000
MAX_NESTING_DEPTH = 100
MAX_AVERAGE_WINDOW_DAYS = 3650

IDENTIFIER_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
SELECTOR_RE = re.compile(r"current|previous|delta|avg[1-9][0-9]*")
_NUMBER_RE = re.compile(r"[0-9]+(?:\.[0-9]*)?|\.[0-9]+")

OPERATORS = ("+", "-", "*", "/", "^")


@dataclass(frozen=True)
class FunctionSpec:
    """Name, arity range and documentation for a library function."""

    name: str
    min_args: int
    max_args: int | None  # None means variadic
    category: str
    description: str
    example: str

    def accepts(self, count: int) -> bool:
        if count < self.min_args:
            return False
        return self.max_args is None or count <= self.max_args

    def describe_arity(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args} to {self.max_args}"


FUNCTION_SPECS: dict[str, FunctionSpec] = {
    spec.name: spec
    for spec in (
        FunctionSpec("sqrt", 1, 1, "math", "Square root", "sqrt({value})"),
        FunctionSpec("abs", 1, 1, "math", "Absolute value", "abs({value})"),
        FunctionSpec("round", 1, 2, "math", "Round to N decimals", "round({value}, 2)"),
        FunctionSpec("floor", 1, 1, "math", "Round down", "floor({value})"),
        FunctionSpec("ceil", 1, 1, "math", "Round up", "ceil({value})"),
        FunctionSpec("min", 2, None, "math", "Minimum value", "min({value1}, {value2})"),
        FunctionSpec("max", 2, None, "math", "Maximum value", "max({value1}, {value2})"),
        FunctionSpec("today", 0, 0, "date", "Reference date (days since epoch)", "today()"),
        FunctionSpec("year", 1, 1, "date", "Extract year from date", "year({birth_date})"),
        FunctionSpec(
            "month", 1, 1, "date", "Extract month (1-12) from date", "month({birth_date})"
        ),
        FunctionSpec("day", 1, 1, "date", "Extract day from date", "day({birth_date})"),
        FunctionSpec(
            "age_years",
            1,
            1,
            "date",
            "Calculate age in years from birth date",
            "age_years({date_of_birth})",
        ),
    )
}


# Expression tree


@dataclass(frozen=True)
class Expression:
    """Base class for parsed formula nodes."""


@dataclass(frozen=True)
class Number(Expression):
    value: float


@dataclass(frozen=True)
class Variable(Expression):
    name: str
    selector: str | None = None

    @property
    def key(self) -> str:
        """Binding key used to look the value up at evaluation time."""
        return f"{self.selector}:{self.name}" if self.selector else self.name


@dataclass(frozen=True)
class UnaryOp(Expression):
    operator: str
    operand: Expression


@dataclass(frozen=True)
class BinaryOp(Expression):
    operator: str
    left: Expression
    right: Expression


@dataclass(frozen=True)
class FunctionCall(Expression):
    name: str
    args: tuple[Expression, ...]


def walk(node: Expression) -> Iterator[Expression]:
    """Depth-first, left-to-right traversal of an expression tree."""
    # long operator chains build left-deep trees, so no recursion here
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        if isinstance(current, UnaryOp):
            stack.append(current.operand)
        elif isinstance(current, BinaryOp):
            stack.extend((current.right, current.left))
        elif isinstance(current, FunctionCall):
            stack.extend(reversed(current.args))


def iter_variables(node: Expression) -> Iterator[Variable]:
    for child in walk(node):
        if isinstance(child, Variable):
            yield child


# Tokenizer


class TokenType(str, Enum):
    NUMBER = "number"
    VARIABLE = "variable"
    IDENTIFIER = "identifier"
    OPERATOR = "operator"
    LPAREN = "lparen"
    RPAREN = "rparen"
    COMMA = "comma"
    END = "end"


@dataclass(frozen=True)
class Token:
    type: TokenType
    text: str
    position: int


_SINGLE_CHAR_TOKENS = {
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    ",": TokenType.COMMA,
}


def tokenize(text: str) -> list[Token]:
    """Split formula text into tokens. Raises FormulaSyntaxError."""
    tokens: list[Token] = []
    i = 0
    length = len(text)

    while i < length:
        char = text[i]

        if char.isspace():
            i += 1
            continue

        if char == "{":
            close = text.find("}", i + 1)
            nested = text.find("{", i + 1)
            if close == -1 or (nested != -1 and nested < close):
                raise FormulaSyntaxError(
                    "Unbalanced braces in formula", SyntaxErrorCategory.UNBALANCED_BRACES, i
                )
            tokens.append(Token(TokenType.VARIABLE, text[i + 1 : close], i))
            i = close + 1
            continue

        if char == "}":
            raise FormulaSyntaxError(
                "Unbalanced braces in formula", SyntaxErrorCategory.UNBALANCED_BRACES, i
            )

        if char in OPERATORS:
            tokens.append(Token(TokenType.OPERATOR, char, i))
            i += 1
            continue

        if char in _SINGLE_CHAR_TOKENS:
            tokens.append(Token(_SINGLE_CHAR_TOKENS[char], char, i))
            i += 1
            continue

        number = _NUMBER_RE.match(text, i)
        if number:
            tokens.append(Token(TokenType.NUMBER, number.group(), i))
            i = number.end()
            continue

        identifier = IDENTIFIER_RE.match(text, i)
        if identifier:
            tokens.append(Token(TokenType.IDENTIFIER, identifier.group(), i))
            i = identifier.end()
            continue

        raise FormulaSyntaxError(
            f"Invalid character {char!r} at position {i}",
            SyntaxErrorCategory.INVALID_CHARACTER,
            i,
        )

    tokens.append(Token(TokenType.END, "", length))
    return tokens


def _check_parentheses(tokens: list[Token]) -> None:
    depth = 0
    opened: list[int] = []
    for token in tokens:
        if token.type == TokenType.LPAREN:
            depth += 1
            opened.append(token.position)
        elif token.type == TokenType.RPAREN:
            depth -= 1
            if depth < 0:
                raise FormulaSyntaxError(
                    f"Mismatched parentheses: unexpected ')' at position {token.position}",
                    SyntaxErrorCategory.UNBALANCED_PARENTHESES,
                    token.position,
                )
            opened.pop()
    if depth:
        raise FormulaSyntaxError(
            f"Mismatched parentheses: '(' at position {opened[-1]} is never closed",
            SyntaxErrorCategory.UNBALANCED_PARENTHESES,
            opened[-1],
        )


# Parser


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self.tokens = tokens
        self.index = 0
        self.depth = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != TokenType.END:
            self.index += 1
        return token

    @contextmanager
    def _nested(self, token: Token) -> Iterator[None]:
        # parentheses, call arguments and prefix minus each add a level
        if self.depth >= MAX_NESTING_DEPTH:
            raise FormulaSyntaxError(
                f"Formula nesting exceeds {MAX_NESTING_DEPTH} levels "
                f"at position {token.position}",
                SyntaxErrorCategory.NESTING_TOO_DEEP,
                token.position,
            )
        self.depth += 1
        try:
            yield
        finally:
            self.depth -= 1

    def _at_operator(self, *operators: str) -> bool:
        token = self.peek()
        return token.type == TokenType.OPERATOR and token.text in operators

    def parse(self) -> Expression:
        expression = self.additive()
        token = self.peek()
        if token.type != TokenType.END:
            raise self._unexpected(token)
        return expression

    def additive(self) -> Expression:
        node = self.multiplicative()
        while self._at_operator("+", "-"):
            operator = self.advance().text
            node = BinaryOp(operator, node, self.multiplicative())
        return node

    def multiplicative(self) -> Expression:
        node = self.unary()
        while self._at_operator("*", "/"):
            operator = self.advance().text
            node = BinaryOp(operator, node, self.unary())
        return node

    def unary(self) -> Expression:
        if self._at_operator("-"):
            token = self.advance()
            with self._nested(token):
                return UnaryOp("-", self.unary())
        return self.power()

    def power(self) -> Expression:
        node = self.primary()
        while self._at_operator("^"):
            self.advance()
            node = BinaryOp("^", node, self.exponent())
        return node

    def exponent(self) -> Expression:
        if self._at_operator("-"):
            token = self.advance()
            with self._nested(token):
                return UnaryOp("-", self.exponent())
        return self.primary()

    def primary(self) -> Expression:
        token = self.advance()

        if token.type == TokenType.NUMBER:
            return Number(float(token.text))
        if token.type == TokenType.VARIABLE:
            return parse_variable(token.text, token.position)
        if token.type == TokenType.IDENTIFIER:
            return self.function_call(token)
        if token.type == TokenType.LPAREN:
            with self._nested(token):
                expression = self.additive()
            self.expect(TokenType.RPAREN, "')'")
            return expression
        raise self._unexpected(token)

    def function_call(self, name_token: Token) -> FunctionCall:
        spec = FUNCTION_SPECS.get(name_token.text)
        if spec is None:
            raise FormulaSyntaxError(
                f"Unknown function: {name_token.text}",
                SyntaxErrorCategory.UNKNOWN_FUNCTION,
                name_token.position,
            )
        self.expect(TokenType.LPAREN, f"'(' after {spec.name}")

        args: list[Expression] = []
        with self._nested(name_token):
            if self.peek().type != TokenType.RPAREN:
                args.append(self.additive())
                while self.peek().type == TokenType.COMMA:
                    self.advance()
                    args.append(self.additive())
        self.expect(TokenType.RPAREN, "')'")

        if not spec.accepts(len(args)):
            raise FormulaSyntaxError(
                f"Function {spec.name}() expects {spec.describe_arity()} argument(s), "
                f"got {len(args)}",
                SyntaxErrorCategory.WRONG_ARITY,
                name_token.position,
            )
        return FunctionCall(spec.name, tuple(args))

    def expect(self, token_type: TokenType, description: str) -> Token:
        token = self.peek()
        if token.type != token_type:
            if token.type == TokenType.END:
                raise FormulaSyntaxError(
                    f"Unexpected end of formula, expected {description}",
                    SyntaxErrorCategory.UNEXPECTED_END,
                    token.position,
                )
            raise FormulaSyntaxError(
                f"Expected {description} at position {token.position}, got '{token.text}'",
                SyntaxErrorCategory.UNEXPECTED_TOKEN,
                token.position,
            )
        return self.advance()

    @staticmethod
    def _unexpected(token: Token) -> FormulaSyntaxError:
        if token.type == TokenType.END:
            return FormulaSyntaxError(
                "Unexpected end of formula",
                SyntaxErrorCategory.UNEXPECTED_END,
                token.position,
            )
        return FormulaSyntaxError(
            f"Unexpected '{token.text}' at position {token.position}",
            SyntaxErrorCategory.UNEXPECTED_TOKEN,
            token.position,
        )


def parse_variable(body: str, position: int | None = None) -> Variable:
    """Parse the inside of a {...} reference into a Variable."""
    text = body.strip()
    if not text:
        raise FormulaSyntaxError(
            "Empty variable reference", SyntaxErrorCategory.MALFORMED_VARIABLE, position
        )

    selector: str | None = None
    name = text
    if ":" in text:
        selector, _, name = (part.strip() for part in text.partition(":"))
        if not SELECTOR_RE.fullmatch(selector):
            raise FormulaSyntaxError(
                f"Invalid time-series selector '{selector}' in {{{text}}}. "
                "Use current, previous, delta or avgN",
                SyntaxErrorCategory.INVALID_SELECTOR,
                position,
            )
        if selector.startswith("avg") and int(selector[3:]) > MAX_AVERAGE_WINDOW_DAYS:
            raise FormulaSyntaxError(
                f"Average window '{selector}' in {{{text}}} exceeds "
                f"{MAX_AVERAGE_WINDOW_DAYS} days",
                SyntaxErrorCategory.INVALID_SELECTOR,
                position,
            )

    if not IDENTIFIER_RE.fullmatch(name):
        raise FormulaSyntaxError(
            f"Invalid variable name: {text}. Use {{field_name}} or {{selector:field_name}}",
            SyntaxErrorCategory.MALFORMED_VARIABLE,
            position,
        )
    return Variable(name=name, selector=selector)


@lru_cache(maxsize=512)
def _parse_cached(text: str) -> Expression:
    tokens = tokenize(text)
    _check_parentheses(tokens)
    return _Parser(tokens).parse()


def parse_formula(text: str, max_length: int = DEFAULT_MAX_FORMULA_LENGTH) -> Expression:
    """
    Parse formula text into an expression tree.

    Raises:
        FormulaSyntaxError: the text is empty, too long or malformed.
    """
    if not isinstance(text, str) or not text.strip():
        raise FormulaSyntaxError("Formula is required", SyntaxErrorCategory.EMPTY_FORMULA)
    if len(text) > max_length:
        raise FormulaSyntaxError(
            f"Formula exceeds maximum length of {max_length} characters",
            SyntaxErrorCategory.FORMULA_TOO_LONG,
        )
    return _parse_cached(text)


def validate_formula(
    text: str, max_length: int = DEFAULT_MAX_FORMULA_LENGTH
) -> ValidationResult:
    """Check formula syntax without evaluating it."""
    try:
        tree = parse_formula(text, max_length=max_length)
    except FormulaSyntaxError as e:
        return ValidationResult(
            valid=False, error=e.message, category=e.category, position=e.position
        )

    dependencies = list(dict.fromkeys(v.name for v in iter_variables(tree)))
    return ValidationResult(valid=True, dependencies=dependencies)


def clear_parse_cache() -> None:
    _parse_cached.cache_clear()
