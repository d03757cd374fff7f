"""
Arithmetic expression evaluator for pricing rules.

Rule expressions are parsed once into a small typed syntax tree and then
evaluated against many calculation contexts. Supported syntax:

- numeric literals (``12``, ``0.20``, ``.5``) and identifiers
  (``transactionVolume``) resolved from the context
- ``+ - * /`` with the usual precedence, unary ``+``/``-`` and
  right-associative ``^``
- comparisons ``> >= < <= == !=`` yielding ``1`` or ``0``
- functions ``min``, ``max``, ``abs``, ``round``, ``floor``, ``ceiling``,
  ``sqrt`` and ``if(condition, whenPositive, otherwise)``
- an optional leading result binding ``target = <expression>`` naming the
  context variable that receives the rule's result

All arithmetic is done with :class:`decimal.Decimal` under a fixed local
context; nothing is rounded until the caller decides to.
"""

import decimal
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from shared.errors import (
    DivisionByZeroError,
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    UnknownVariableError,
)

PRECISION = 28

# Parenthesis and function-call nesting, and overall syntax tree depth
MAX_NESTING = 64
MAX_TREE_DEPTH = 200

NUMBER = "number"
IDENT = "ident"
OPERATOR = "operator"
ASSIGN = "assign"
LPAREN = "lparen"
RPAREN = "rparen"
COMMA = "comma"
END = "end"

COMPARISON_OPERATORS = (">", ">=", "<", "<=", "==", "!=")
_TWO_CHAR_OPERATORS = (">=", "<=", "==", "!=")
_ONE_CHAR_OPERATORS = "+-*/^<>"


def _decimal_context() -> decimal.Context:
    return decimal.Context(
        prec=PRECISION,
        rounding=decimal.ROUND_HALF_EVEN,
        traps=[decimal.InvalidOperation, decimal.Overflow, decimal.DivisionByZero],
    )


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    position: int


def tokenize(text: str) -> List[Token]:
    """Split expression text into tokens, ending with an END token."""
    tokens: List[Token] = []
    i = 0
    length = len(text)

    while i < length:
        char = text[i]

        if char.isspace():
            i += 1
            continue

        if char.isdigit() or (char == "." and i + 1 < length and text[i + 1].isdigit()):
            start = i
            seen_dot = False
            while i < length and (text[i].isdigit() or text[i] == "."):
                if text[i] == ".":
                    if seen_dot:
                        raise ExpressionSyntaxError(i, "Malformed number", text)
                    seen_dot = True
                i += 1
            if text[i - 1] == ".":
                raise ExpressionSyntaxError(i - 1, "Malformed number", text)
            tokens.append(Token(NUMBER, text[start:i], start))
            continue

        if char.isalpha() or char == "_":
            start = i
            while i < length and (text[i].isalnum() or text[i] == "_"):
                i += 1
            tokens.append(Token(IDENT, text[start:i], start))
            continue

        pair = text[i:i + 2]
        if pair in _TWO_CHAR_OPERATORS:
            tokens.append(Token(OPERATOR, pair, i))
            i += 2
            continue

        if char in _ONE_CHAR_OPERATORS:
            tokens.append(Token(OPERATOR, char, i))
        elif char == "=":
            tokens.append(Token(ASSIGN, char, i))
        elif char == "(":
            tokens.append(Token(LPAREN, char, i))
        elif char == ")":
            tokens.append(Token(RPAREN, char, i))
        elif char == ",":
            tokens.append(Token(COMMA, char, i))
        else:
            raise ExpressionSyntaxError(i, f"Unexpected character '{char}'", text)
        i += 1

    tokens.append(Token(END, "", length))
    return tokens


# Syntax tree

class Node:
    """Base class for expression tree nodes."""

    depth = 1

    def evaluate(self, context: Mapping[str, Decimal]) -> Decimal:
        raise NotImplementedError

    def variables(self) -> FrozenSet[str]:
        return frozenset()


@dataclass(frozen=True)
class NumberNode(Node):
    value: Decimal

    def evaluate(self, context: Mapping[str, Decimal]) -> Decimal:
        return self.value


@dataclass(frozen=True)
class VariableNode(Node):
    name: str

    def evaluate(self, context: Mapping[str, Decimal]) -> Decimal:
        try:
            return context[self.name]
        except KeyError:
            raise UnknownVariableError(self.name) from None

    def variables(self) -> FrozenSet[str]:
        return frozenset((self.name,))


@dataclass(frozen=True)
class UnaryNode(Node):
    operator: str
    operand: Node

    def __post_init__(self):
        object.__setattr__(self, "depth", self.operand.depth + 1)

    def evaluate(self, context: Mapping[str, Decimal]) -> Decimal:
        value = self.operand.evaluate(context)
        return -value if self.operator == "-" else +value

    def variables(self) -> FrozenSet[str]:
        return self.operand.variables()


@dataclass(frozen=True)
class BinaryNode(Node):
    operator: str
    left: Node
    right: Node

    def __post_init__(self):
        object.__setattr__(self, "depth", max(self.left.depth, self.right.depth) + 1)

    def evaluate(self, context: Mapping[str, Decimal]) -> Decimal:
        left = self.left.evaluate(context)
        right = self.right.evaluate(context)
        op = self.operator

        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op == "/":
            if right == 0:
                raise DivisionByZeroError()
            return left / right
        if op == "^":
            if left == 0 and right < 0:
                raise DivisionByZeroError("Zero raised to a negative power")
            return left ** right
        if op == ">":
            return _truth(left > right)
        if op == ">=":
            return _truth(left >= right)
        if op == "<":
            return _truth(left < right)
        if op == "<=":
            return _truth(left <= right)
        if op == "==":
            return _truth(left == right)
        if op == "!=":
            return _truth(left != right)
        raise ExpressionEvaluationError(f"Unsupported operator '{op}'")

    def variables(self) -> FrozenSet[str]:
        return self.left.variables() | self.right.variables()


@dataclass(frozen=True)
class CallNode(Node):
    function: str
    arguments: Tuple[Node, ...]

    def __post_init__(self):
        object.__setattr__(self, "depth", max(argument.depth for argument in self.arguments) + 1)

    def evaluate(self, context: Mapping[str, Decimal]) -> Decimal:
        if self.function == "if":
            # Only the selected branch is evaluated
            condition = self.arguments[0].evaluate(context)
            branch = self.arguments[1] if condition > 0 else self.arguments[2]
            return branch.evaluate(context)

        values = [argument.evaluate(context) for argument in self.arguments]
        return FUNCTIONS[self.function][2](values)

    def variables(self) -> FrozenSet[str]:
        names: FrozenSet[str] = frozenset()
        for argument in self.arguments:
            names = names | argument.variables()
        return names


def _truth(flag: bool) -> Decimal:
    return Decimal(1) if flag else Decimal(0)


def _round(values: List[Decimal]) -> Decimal:
    places = 0
    if len(values) == 2:
        if values[1] != values[1].to_integral_value():
            raise ExpressionEvaluationError("round() places must be a whole number")
        places = int(values[1])
    return values[0].quantize(Decimal(1).scaleb(-places), rounding=decimal.ROUND_HALF_EVEN)


def _sqrt(values: List[Decimal]) -> Decimal:
    if values[0] < 0:
        raise ExpressionEvaluationError("Cannot calculate square root of a negative number")
    return values[0].sqrt()


# name -> (min args, max args or None for variadic, implementation)
FUNCTIONS: Dict[str, Tuple[int, Optional[int], Callable[[List[Decimal]], Decimal]]] = {
    "min": (1, None, min),
    "max": (1, None, max),
    "abs": (1, 1, lambda values: abs(values[0])),
    "round": (1, 2, _round),
    "floor": (1, 1, lambda values: values[0].to_integral_value(rounding=decimal.ROUND_FLOOR)),
    "ceiling": (1, 1, lambda values: values[0].to_integral_value(rounding=decimal.ROUND_CEILING)),
    "sqrt": (1, 1, _sqrt),
    "if": (3, 3, lambda values: values[1] if values[0] > 0 else values[2]),
}


class Parser:
    """Recursive-descent parser producing a :class:`Node` tree."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0
        self.nesting = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _error(self, message: str, token: Optional[Token] = None) -> ExpressionSyntaxError:
        token = token or self.current
        return ExpressionSyntaxError(token.position, message, self.text)

    def _expect(self, kind: str, description: str) -> Token:
        if self.current.kind != kind:
            raise self._error(f"Expected {description}")
        return self._advance()

    def _checked(self, node: Node, token: Token) -> Node:
        if node.depth > MAX_TREE_DEPTH:
            raise self._error("Expression nested too deeply", token)
        return node

    def _open(self, token: Token) -> None:
        self.nesting += 1
        if self.nesting > MAX_NESTING:
            raise self._error("Expression nested too deeply", token)

    def parse(self) -> Tuple[Optional[str], Node]:
        """Parse the whole text into (result binding target, tree)."""
        if self.current.kind == END:
            raise self._error("Empty expression")

        target = None
        if self.current.kind == IDENT and self.tokens[self.index + 1].kind == ASSIGN:
            target = self._advance().value
            self._advance()

        node = self._comparison()
        if self.current.kind != END:
            if self.current.kind == ASSIGN:
                raise self._error("Result binding is only allowed at the start of an expression")
            raise self._error(f"Unexpected token '{self.current.value}'")
        return target, node

    def _comparison(self) -> Node:
        node = self._additive()
        if self.current.kind == OPERATOR and self.current.value in COMPARISON_OPERATORS:
            token = self._advance()
            node = self._checked(BinaryNode(token.value, node, self._additive()), token)
            if self.current.kind == OPERATOR and self.current.value in COMPARISON_OPERATORS:
                raise self._error("Comparisons cannot be chained")
        return node

    def _additive(self) -> Node:
        node = self._term()
        while self.current.kind == OPERATOR and self.current.value in ("+", "-"):
            token = self._advance()
            node = self._checked(BinaryNode(token.value, node, self._term()), token)
        return node

    def _term(self) -> Node:
        node = self._unary()
        while self.current.kind == OPERATOR and self.current.value in ("*", "/"):
            token = self._advance()
            node = self._checked(BinaryNode(token.value, node, self._unary()), token)
        return node

    def _signs(self) -> Optional[Token]:
        """Consume a run of unary signs; returns a token carrying the net sign."""
        first = None
        negative = False
        while self.current.kind == OPERATOR and self.current.value in ("+", "-"):
            token = self._advance()
            first = first or token
            if token.value == "-":
                negative = not negative
        if first is None:
            return None
        return Token(OPERATOR, "-" if negative else "+", first.position)

    def _signed(self, sign: Optional[Token], node: Node) -> Node:
        if sign is None:
            return node
        return self._checked(UnaryNode(sign.value, node), sign)

    def _unary(self) -> Node:
        sign = self._signs()
        return self._signed(sign, self._power())

    def _power(self) -> Node:
        base = self._primary()
        # Right-associative; each exponent may carry its own sign
        exponents = []
        while self.current.kind == OPERATOR and self.current.value == "^":
            token = self._advance()
            sign = self._signs()
            exponents.append((token, sign, self._primary()))
        if not exponents:
            return base

        _, sign, node = exponents[-1]
        node = self._signed(sign, node)
        for index in range(len(exponents) - 2, -1, -1):
            _, operand_sign, operand = exponents[index]
            node = self._checked(BinaryNode("^", operand, node), exponents[index + 1][0])
            node = self._signed(operand_sign, node)
        return self._checked(BinaryNode("^", base, node), exponents[0][0])

    def _primary(self) -> Node:
        token = self.current

        if token.kind == NUMBER:
            self._advance()
            return NumberNode(Decimal(token.value))

        if token.kind == IDENT:
            self._advance()
            if self.current.kind == LPAREN:
                return self._call(token)
            return VariableNode(token.value)

        if token.kind == LPAREN:
            self._open(token)
            self._advance()
            node = self._comparison()
            self._expect(RPAREN, "')'")
            self.nesting -= 1
            return node

        if token.kind == END:
            raise self._error("Unexpected end of expression")
        raise self._error(f"Unexpected token '{token.value}'")

    def _call(self, name_token: Token) -> Node:
        name = name_token.value.lower()
        if name not in FUNCTIONS:
            raise self._error(f"Unknown function '{name_token.value}'", name_token)

        self._open(name_token)
        self._expect(LPAREN, "'('")
        arguments: List[Node] = []
        if self.current.kind != RPAREN:
            arguments.append(self._comparison())
            while self.current.kind == COMMA:
                self._advance()
                arguments.append(self._comparison())
        self._expect(RPAREN, "')'")
        self.nesting -= 1

        minimum, maximum, _ = FUNCTIONS[name]
        if len(arguments) < minimum or (maximum is not None and len(arguments) > maximum):
            raise self._error(
                f"Function '{name}' does not accept {len(arguments)} argument(s)", name_token
            )
        return self._checked(CallNode(name, tuple(arguments)), name_token)


@dataclass(frozen=True)
class CompiledExpression:
    """A parsed expression ready to be evaluated repeatedly."""

    text: str
    target: Optional[str]
    root: Node

    @property
    def variables(self) -> FrozenSet[str]:
        """Identifiers the expression reads from its context."""
        return self.root.variables()

    def evaluate(self, context: Mapping[str, Any]) -> Decimal:
        """Evaluate against a context, returning an unrounded Decimal."""
        values = {
            name: to_decimal(name, context[name]) for name in self.variables if name in context
        }
        with decimal.localcontext(_decimal_context()):
            try:
                return +self.root.evaluate(values)
            except decimal.DivisionByZero:
                raise DivisionByZeroError() from None
            except (decimal.InvalidOperation, decimal.Overflow) as e:
                raise ExpressionEvaluationError(
                    "Arithmetic error", {"expression": self.text, "error": type(e).__name__}
                ) from e


def to_decimal(name: str, value: Any) -> Decimal:
    """Coerce a context value to Decimal."""
    if isinstance(value, bool):
        return Decimal(1) if value else Decimal(0)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        value = str(value)
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except decimal.InvalidOperation:
            parsed = None
        if parsed is not None and parsed.is_finite():
            return parsed
    raise ExpressionEvaluationError(
        f"Variable '{name}' is not numeric", {"name": name, "value": repr(value)}
    )


@lru_cache(maxsize=1024)
def compile_expression(text: str) -> CompiledExpression:
    """Parse expression text, caching the result per distinct text."""
    if text is None or not text.strip():
        raise ExpressionSyntaxError(0, "Empty expression", text)
    target, root = Parser(text).parse()
    return CompiledExpression(text=text, target=target, root=root)


def evaluate(expression: str, context: Optional[Mapping[str, Any]] = None) -> Decimal:
    """Evaluate expression text against a context."""
    return compile_expression(expression).evaluate(context or {})


def validate_expression(expression: str) -> bool:
    """Check that expression text parses; raises ExpressionSyntaxError otherwise."""
    compile_expression(expression)
    return True
