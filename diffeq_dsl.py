"""
DiffEqDSL: A Plain-Text Language for Ordinary Differential Equations

Parses equations written the way they appear on paper (``dy/dt = -k*y``,
``d^2θ/dt^2 + (g/L)*sin(θ) = 0``, or one equation per line for coupled
systems), classifies their structure, recommends an integration rule and
integrates them with explicit fixed-step Runge-Kutta methods.

Version: 0.1.0
"""

import re
import math
import time
import json
import warnings
from typing import List, Dict, Optional, Tuple, Any, Union, Callable, Literal, FrozenSet, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum

import numpy as np
import sympy as sp
from scipy.integrate import solve_ivp

__version__ = "0.1.0"

DEFAULT_STEP_SIZE = 0.01
DEFAULT_TIME_SPAN = (0.0, 10.0)

# ============================================================================
# ERRORS AND DIAGNOSTICS
# ============================================================================

class DiffEqError(Exception):
    """Base class for all engine errors"""


class MissingEqualsSignError(DiffEqError):
    """An equation line without exactly one '=' separator"""


class InvalidDifferentialNotationError(DiffEqError):
    """Left side looks like a derivative but matches no supported notation"""


class UnsupportedExpressionError(DiffEqError):
    """Matrix, piecewise, absolute-value bars, big operators or PDE solving"""


class EvaluationError(DiffEqError):
    """An expression could not be evaluated to a finite number"""


class UnknownSymbolError(EvaluationError):
    """A symbol (or parameter) has no value in the evaluation scope"""

    def __init__(self, message: str, name: Optional[str] = None):
        super().__init__(message)
        self.name = name


class ExpressionSyntaxError(EvaluationError):
    """Malformed arithmetic expression"""


class UnsupportedOrderError(DiffEqError):
    """Order reduction of an algebraic equation or beyond second order"""


class MissingInitialConditionError(DiffEqError):
    """A state component has no initial value"""

    def __init__(self, message: str, missing: Sequence[Tuple[str, int]] = ()):
        super().__init__(message)
        self.missing = tuple(missing)


class SolverFailedError(DiffEqError):
    """An integration run was aborted"""

    def __init__(self, at_time: float, cause: Exception):
        super().__init__(f"Integration failed at t={at_time:g}: {cause}")
        self.at_time = at_time
        self.cause = cause


class DiffEqWarning(UserWarning):
    """Diagnostics a caller can act on without the run failing"""


# ============================================================================
# TOKEN SYSTEM
# ============================================================================

NAME_PATTERN = r"[A-Za-z_Ͱ-Ͽ][A-Za-z0-9_Ͱ-Ͽ]*"
ORDER_MARK = r"(?:\^\d+|[²³])"

TOKEN_TYPES = [
    # Derivative references (order matters: before IDENT and DIVIDE)
    ("DERIVATIVE", rf"d{ORDER_MARK}?{NAME_PATTERN}/d[tx]{ORDER_MARK}?(?![A-Za-z0-9_Ͱ-Ͽ])"),
    ("PARTIAL", rf"∂{ORDER_MARK}?{NAME_PATTERN}/∂{NAME_PATTERN}{ORDER_MARK}?"),

    # Brackets and grouping
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),

    # Mathematical operators (POWER before MULTIPLY so '**' wins)
    ("POWER", r"\*\*|\^"),
    ("SUPERSCRIPT", r"[²³]"),
    ("PLUS", r"\+"),
    ("MINUS", r"-|−"),
    ("MULTIPLY", r"\*|·|×"),
    ("DIVIDE", r"/"),
    ("COMMA", r","),
    ("PRIME", r"'+"),

    # Basic tokens
    ("NUMBER", r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?"),
    ("IDENT", NAME_PATTERN),
    ("WHITESPACE", r"\s+"),
    ("MISMATCH", r"."),
]

# Compile regex
token_regex = "|".join(f"(?P<{name}>{pattern})" for name, pattern in TOKEN_TYPES)
token_pattern = re.compile(token_regex)

SUPERSCRIPT_ORDERS = {"²": 2, "³": 3}


@dataclass
class Token:
    """Token with position tracking for error messages"""
    type: str
    value: str
    position: int = 0

    def __repr__(self):
        return f"{self.type}:{self.value}@{self.position}"


def tokenize(source: str) -> List[Token]:
    """
    Tokenizer with position tracking

    Derivative notation is matched before identifiers, so a name that starts
    with 'd' and is followed by '/dt' or '/dx' reads as a derivative:
    'dist/dt' is d(ist)/dt. Parenthesize to divide instead: '(dist)/dt'.

    Args:
        source: expression text, e.g. "-k*y - c*dy/dt"

    Returns:
        List of tokens (excluding whitespace)

    Raises:
        ExpressionSyntaxError: on a character no token type accepts
    """
    tokens = []
    for match in token_pattern.finditer(source):
        kind = match.lastgroup
        value = match.group()
        if kind == "WHITESPACE":
            continue
        if kind == "MISMATCH":
            raise ExpressionSyntaxError(f"Unexpected character '{value}' at column {match.start() + 1}")
        tokens.append(Token(kind, value, match.start()))
    return tokens


# ============================================================================
# DERIVATIVE NOTATION
# ============================================================================

@dataclass(frozen=True)
class DerivativeNotation:
    """A recognised derivative marker and where it ends in the matched text"""
    var: str
    order: int
    wrt: Optional[str]
    partial: bool = False
    end: int = 0


# Tried in order of preference: dy/dt, then d^2y/dt^2 (or d²y/dt²), then d^ny/dt^n
ORDINARY_DERIVATIVE_PATTERNS = [
    (1, re.compile(rf"d(?P<var>{NAME_PATTERN})/d(?P<wrt>[tx])")),
    (2, re.compile(rf"d(?:\^2|²)(?P<var>{NAME_PATTERN})/d(?P<wrt>[tx])(?:\^2|²)")),
    (None, re.compile(rf"d(?:\^(?P<order>\d+)|(?P<sup>[²³]))(?P<var>{NAME_PATTERN})/d(?P<wrt>[tx])"
                      rf"(?:\^(?P=order)|(?P=sup))")),
]
PARTIAL_DERIVATIVE_PATTERN = re.compile(
    rf"∂(?:\^(?P<order>\d+)|(?P<sup>[²³]))?(?P<var>{NAME_PATTERN})/∂(?P<wrt>{NAME_PATTERN})(?:\^\d+|[²³])?")
PRIME_PATTERN = re.compile(rf"(?P<var>{NAME_PATTERN})(?P<primes>'+)")
STATE_NAME_PATTERN = re.compile(r"(?P<var>.+?)_(?:(?P<ddot>ddot)|(?P<dot>dot)|d(?P<order>\d+))")


def _order_from_match(m: re.Match) -> int:
    if m.group("order"):
        return int(m.group("order"))
    if m.group("sup"):
        return SUPERSCRIPT_ORDERS[m.group("sup")]
    return 1


def match_derivative(text: str, pos: int = 0) -> Optional[DerivativeNotation]:
    """Match ordinary or partial derivative notation starting at text[pos]"""
    for fixed_order, pattern in ORDINARY_DERIVATIVE_PATTERNS:
        m = pattern.match(text, pos)
        if m:
            order = fixed_order or _order_from_match(m)
            return DerivativeNotation(m.group("var"), order, m.group("wrt"), False, m.end())

    m = PARTIAL_DERIVATIVE_PATTERN.match(text, pos)
    if m:
        return DerivativeNotation(m.group("var"), _order_from_match(m), m.group("wrt"), True, m.end())
    return None


def derivative_name(var: str, order: int) -> str:
    """State component name for the order-th derivative of var: y, y_dot, y_ddot, y_d3, ..."""
    if order == 0:
        return var
    if order == 1:
        return f"{var}_dot"
    if order == 2:
        return f"{var}_ddot"
    return f"{var}_d{order}"


def partial_name(var: str, wrt: str, order: int) -> str:
    """Subscript name for a partial derivative: u_x, u_xx, ..."""
    return f"{var}_{wrt * order}"


# ============================================================================
# AST SYSTEM
# ============================================================================

class ASTNode:
    """Base class for all AST nodes"""
    def __repr__(self):
        return f"{self.__class__.__name__}()"

class Expression(ASTNode):
    """Base class for all expressions"""
    pass

@dataclass
class NumberExpr(Expression):
    value: float
    text: str = ""
    def __repr__(self):
        return f"Num({self.value})"

@dataclass
class IdentExpr(Expression):
    name: str
    def __repr__(self):
        return f"Id({self.name})"

@dataclass
class DerivativeRefExpr(Expression):
    """Represents dy/dt, d^2y/dt^2, y' or ∂u/∂x inside an expression"""
    var: str
    order: int = 1
    wrt: str = "t"
    partial: bool = False
    def __repr__(self):
        type_str = "Partial" if self.partial else "Total"
        return f"{type_str}Deriv({self.var}, {self.wrt}, order={self.order})"

@dataclass
class BinaryOpExpr(Expression):
    left: Expression
    operator: Literal["+", "-", "*", "/", "^"]
    right: Expression
    def __repr__(self):
        return f"BinOp({self.left} {self.operator} {self.right})"

@dataclass
class UnaryOpExpr(Expression):
    operator: Literal["+", "-"]
    operand: Expression
    def __repr__(self):
        return f"UnaryOp({self.operator}{self.operand})"

@dataclass
class FunctionCallExpr(Expression):
    name: str
    args: List[Expression]
    def __repr__(self):
        return f"Call({self.name}, {self.args})"


def walk(node: Expression):
    """Yield every node of an expression tree, parents first"""
    yield node
    if isinstance(node, BinaryOpExpr):
        yield from walk(node.left)
        yield from walk(node.right)
    elif isinstance(node, UnaryOpExpr):
        yield from walk(node.operand)
    elif isinstance(node, FunctionCallExpr):
        for arg in node.args:
            yield from walk(arg)


# ============================================================================
# EXPRESSION EVALUATOR
# ============================================================================

FUNCTIONS: Dict[str, Callable[..., sp.Expr]] = {
    "sin": sp.sin,
    "cos": sp.cos,
    "tan": sp.tan,
    "exp": sp.exp,
    "log": sp.log,
    "ln": sp.log,
    "sqrt": sp.sqrt,
    "abs": sp.Abs,
    "asin": sp.asin,
    "acos": sp.acos,
    "atan": sp.atan,
    "sinh": sp.sinh,
    "cosh": sp.cosh,
    "tanh": sp.tanh,
}

CONSTANTS = {"pi": math.pi, "e": math.e}


class ExpressionParser:
    """Recursive-descent parser for right-hand-side arithmetic"""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    def peek(self, offset: int = 0) -> Optional[Token]:
        pos = self.pos + offset
        if pos < len(self.tokens):
            return self.tokens[pos]
        return None

    def match(self, *expected_types: str) -> Optional[Token]:
        token = self.peek()
        if token and token.type in expected_types:
            self.pos += 1
            return token
        return None

    def expect(self, expected_type: str) -> Token:
        token = self.match(expected_type)
        if not token:
            current = self.peek()
            if current:
                raise ExpressionSyntaxError(
                    f"Expected {expected_type} but got {current.type} '{current.value}' at column {current.position + 1}")
            raise ExpressionSyntaxError(f"Expected {expected_type} but reached end of input")
        return token

    def parse(self) -> Expression:
        """Parse the complete token stream as one expression"""
        if not self.tokens:
            raise ExpressionSyntaxError("Empty expression")
        expr = self.parse_expression()
        current = self.peek()
        if current:
            raise ExpressionSyntaxError(
                f"Unexpected token {current.type} '{current.value}' at column {current.position + 1}")
        return expr

    def parse_expression(self) -> Expression:
        """Parse expressions with full operator precedence"""
        return self.parse_additive()

    def parse_additive(self) -> Expression:
        """Addition and subtraction"""
        left = self.parse_multiplicative()

        while True:
            if self.match("PLUS"):
                right = self.parse_multiplicative()
                left = BinaryOpExpr(left, "+", right)
            elif self.match("MINUS"):
                right = self.parse_multiplicative()
                left = BinaryOpExpr(left, "-", right)
            else:
                break

        return left

    def parse_multiplicative(self) -> Expression:
        """Multiplication, division and implicit products before parentheses"""
        left = self.parse_unary()

        while True:
            if self.match("MULTIPLY"):
                right = self.parse_unary()
                left = BinaryOpExpr(left, "*", right)
            elif self.match("DIVIDE"):
                right = self.parse_unary()
                left = BinaryOpExpr(left, "/", right)
            else:
                next_token = self.peek()
                if next_token and next_token.type == "LPAREN":
                    # Only allow implicit mult before parentheses: 2(y + 1)
                    right = self.parse_power()
                    left = BinaryOpExpr(left, "*", right)
                else:
                    break

        return left

    def parse_unary(self) -> Expression:
        """Unary operators bind looser than '^': -y^2 is -(y^2)"""
        if self.match("MINUS"):
            operand = self.parse_unary()
            return UnaryOpExpr("-", operand)
        elif self.match("PLUS"):
            return self.parse_unary()

        return self.parse_power()

    def parse_power(self) -> Expression:
        """Exponentiation (right associative)"""
        base = self.parse_postfix()

        if self.match("POWER"):
            exponent = self.parse_unary()
            return BinaryOpExpr(base, "^", exponent)

        sup = self.match("SUPERSCRIPT")
        if sup:
            exponent = SUPERSCRIPT_ORDERS[sup.value]
            return BinaryOpExpr(base, "^", NumberExpr(float(exponent), str(exponent)))

        return base

    def parse_postfix(self) -> Expression:
        """Function calls and prime derivatives"""
        expr = self.parse_primary()

        if isinstance(expr, IdentExpr):
            if expr.name in FUNCTIONS:
                if not self.match("LPAREN"):
                    raise ExpressionSyntaxError(f"Function '{expr.name}' requires an argument list")
                args = [self.parse_expression()]
                while self.match("COMMA"):
                    args.append(self.parse_expression())
                self.expect("RPAREN")
                if len(args) != 1:
                    raise ExpressionSyntaxError(f"Function '{expr.name}' takes exactly one argument")
                return FunctionCallExpr(expr.name, args)

            prime = self.match("PRIME")
            if prime:
                return DerivativeRefExpr(expr.name, len(prime.value), "t")

        return expr

    def parse_primary(self) -> Expression:
        """Primary expressions: literals, identifiers, derivatives, parentheses"""

        # Numbers
        if self.match("NUMBER"):
            text = self.tokens[self.pos - 1].value
            return NumberExpr(float(text), text)

        # Derivative references: dy/dt, d^2y/dt^2, ∂u/∂x
        token = self.peek()
        if token and token.type in ("DERIVATIVE", "PARTIAL"):
            self.pos += 1
            notation = match_derivative(token.value)
            if notation is None or notation.end != len(token.value) or notation.order < 1:
                raise InvalidDifferentialNotationError(f"Unrecognised derivative notation '{token.value}'")
            return DerivativeRefExpr(notation.var, notation.order, notation.wrt, notation.partial)

        # Identifiers and mathematical constants
        if self.match("IDENT"):
            name = self.tokens[self.pos - 1].value
            if name in CONSTANTS:
                return NumberExpr(CONSTANTS[name], name)
            return IdentExpr(name)

        # Parentheses
        if self.match("LPAREN"):
            expr = self.parse_expression()
            self.expect("RPAREN")
            return expr

        current = self.peek()
        if current:
            raise ExpressionSyntaxError(
                f"Unexpected token {current.type} '{current.value}' at column {current.position + 1}")
        raise ExpressionSyntaxError("Unexpected end of input")


class CompiledExpression:
    """
    Parsed arithmetic expression, converted to SymPy and lambdified once

    Evaluation is a pure function of the scope, so one instance can be
    evaluated repeatedly with perturbed scopes (Runge-Kutta stages) or from
    several threads at once.
    """

    def __init__(self, source: str):
        self.source = source
        self.tree = ExpressionParser(tokenize(source)).parse()
        self.sympy_expr = SymbolicEngine().ast_to_sympy(self.tree)

        # Arguments follow name order; every referenced name is still required
        ordered_symbols = sorted(self.sympy_expr.free_symbols, key=lambda sym: sym.name)
        self._arg_names = tuple(sym.name for sym in ordered_symbols)
        self._required = tuple(sorted(self.symbols | {derivative_name(var, order)
                                                      for var, order in self.derivative_refs}))
        self._func = sp.lambdify(ordered_symbols, self.sympy_expr, modules=['math'])

    def __repr__(self):
        return f"CompiledExpression({self.source!r})"

    @property
    def symbols(self) -> FrozenSet[str]:
        """Every named symbol reachable from the tree (function names excluded)"""
        return frozenset(node.name for node in walk(self.tree) if isinstance(node, IdentExpr))

    @property
    def derivative_refs(self) -> FrozenSet[Tuple[str, int]]:
        """(variable, order) pairs of the ordinary derivatives referenced"""
        return frozenset((node.var, node.order) for node in walk(self.tree)
                         if isinstance(node, DerivativeRefExpr) and not node.partial)

    @property
    def partial_refs(self) -> FrozenSet[Tuple[str, int, str]]:
        """(variable, order, wrt) triples of the partial derivatives referenced"""
        return frozenset((node.var, node.order, node.wrt) for node in walk(self.tree)
                         if isinstance(node, DerivativeRefExpr) and node.partial)

    @property
    def functions(self) -> FrozenSet[str]:
        return frozenset(node.name for node in walk(self.tree) if isinstance(node, FunctionCallExpr))

    def evaluate(self, scope: Mapping[str, float]) -> float:
        """
        Evaluate against a scope of symbol values

        Raises:
            UnknownSymbolError: a referenced symbol is missing from the scope
            EvaluationError: division by zero, domain error, overflow or a
                non-finite result
        """
        if self.partial_refs:
            var, _, wrt = min(self.partial_refs)
            raise EvaluationError(f"Partial derivative of '{var}' with respect to '{wrt}' cannot be evaluated")
        for name in self._required:
            if name not in scope:
                raise UnknownSymbolError(f"Unknown symbol '{name}'", name=name)

        args = [float(scope[name]) for name in self._arg_names]
        try:
            value = self._func(*args)
        except ZeroDivisionError:
            raise EvaluationError(f"Division by zero in '{self.source}'") from None
        except (ValueError, OverflowError) as e:
            raise EvaluationError(f"Math error in '{self.source}': {e}") from e
        if isinstance(value, complex):
            raise EvaluationError(f"Complex result in '{self.source}'")
        value = float(value)
        if not math.isfinite(value):
            raise EvaluationError(f"Non-finite result in '{self.source}'")
        return value


def parse_expression(source: str) -> CompiledExpression:
    """Parse an arithmetic expression into an evaluable form"""
    return CompiledExpression(source)


def evaluate_expression(source: str, scope: Mapping[str, float]) -> float:
    """One-shot parse and evaluate"""
    return CompiledExpression(source).evaluate(scope)


# ============================================================================
# SYMBOLIC MATH ENGINE
# ============================================================================

class SymbolicEngine:
    """
    Converts parsed expressions to SymPy and answers structural questions
    about them: linearity in the state, additive forcing terms, and the
    coefficients attached to each state monomial.
    """

    def __init__(self):
        self.symbol_map = {}

    def get_symbol(self, name: str) -> sp.Symbol:
        """Get or create a real-valued SymPy symbol (cached)"""
        if name not in self.symbol_map:
            self.symbol_map[name] = sp.Symbol(name, real=True)
        return self.symbol_map[name]

    def ast_to_sympy(self, expr: Expression) -> sp.Expr:
        """
        Convert AST expression to SymPy

        Numeric literals become exact rationals so that coefficients compare
        exactly; derivative references become the matching state symbols.
        """

        if isinstance(expr, NumberExpr):
            if expr.text == "pi":
                return sp.pi
            if expr.text == "e":
                return sp.E
            try:
                return sp.Rational(expr.text)
            except (TypeError, ValueError):
                return sp.Float(expr.value)

        elif isinstance(expr, IdentExpr):
            return self.get_symbol(expr.name)

        elif isinstance(expr, DerivativeRefExpr):
            if expr.partial:
                return self.get_symbol(partial_name(expr.var, expr.wrt, expr.order))
            return self.get_symbol(derivative_name(expr.var, expr.order))

        elif isinstance(expr, BinaryOpExpr):
            left = self.ast_to_sympy(expr.left)
            right = self.ast_to_sympy(expr.right)

            ops = {
                "+": lambda l, r: l + r,
                "-": lambda l, r: l - r,
                "*": lambda l, r: l * r,
                "/": lambda l, r: l / r,
                "^": lambda l, r: l ** r,
            }

            if expr.operator in ops:
                return ops[expr.operator](left, right)
            else:
                raise ValueError(f"Unknown operator: {expr.operator}")

        elif isinstance(expr, UnaryOpExpr):
            operand = self.ast_to_sympy(expr.operand)
            if expr.operator == "-":
                return -operand
            return operand

        elif isinstance(expr, FunctionCallExpr):
            args = [self.ast_to_sympy(arg) for arg in expr.args]
            return FUNCTIONS[expr.name](*args)

        raise ValueError(f"Cannot convert {type(expr).__name__} to SymPy")

    def state_monomials(self, expr: sp.Expr, state: Sequence[sp.Symbol]) -> Dict[sp.Expr, sp.Expr]:
        """
        Group the additive terms of expr by their state-dependent factor

        Args:
            expr: right-hand side
            state: state symbols (dependent variables and their derivatives)

        Returns:
            Mapping from the state-dependent factor (1 for terms free of the
            state) to its summed coefficient; zero coefficients are dropped
        """
        monomials = {}
        for term in sp.Add.make_args(sp.expand(expr)):
            if state:
                coeff, part = term.as_independent(*state, as_Add=False)
            else:
                coeff, part = term, sp.S.One
            monomials[part] = monomials.get(part, sp.S.Zero) + coeff
        return {part: coeff for part, coeff in monomials.items() if coeff != 0}

    def is_linear(self, expr: sp.Expr, state: Sequence[sp.Symbol]) -> bool:
        """Linear when every partial derivative w.r.t. the state is state-free"""
        state_set = set(state)
        for sym in state:
            if sp.diff(expr, sym).free_symbols & state_set:
                return False
        return True

    def has_forcing_term(self, expr: sp.Expr, state: Sequence[sp.Symbol]) -> bool:
        """True when some additive term does not involve the state at all"""
        return sp.S.One in self.state_monomials(expr, state)


# ============================================================================
# EQUATION PARSER
# ============================================================================

INDEPENDENT_VARIABLES = ("x", "t")

# Conventional parameter names never taken as the independent variable
PHYSICAL_PARAMETERS = frozenset({
    "g", "L", "r", "K", "k", "c",
    "α", "β", "δ", "γ", "ω",
    "alpha", "beta", "delta", "gamma", "omega",
})

UNSUPPORTED_NOTATION = [
    (re.compile(r"[\[\]]"), "matrix notation"),
    (re.compile(r"[{}]"), "piecewise/brace notation"),
    (re.compile(r"\|"), "absolute-value bars (use abs(...))"),
    (re.compile(r"[∑∏∫]|\b(?:sum|prod|integral|piecewise)\b", re.IGNORECASE), "big-operator notation"),
]


class EquationKind(Enum):
    ORDINARY = "ODE"
    PARTIAL = "PDE"
    SYSTEM = "System"
    ALGEBRAIC = "Algebraic"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ParsedEquation:
    """One normalised equation line: derivative(dependent_var, order) = rhs"""
    source: str
    dependent_var: str
    order: int
    independent_var: Optional[str]
    kind: EquationKind
    rhs_text: str
    rhs: CompiledExpression = field(compare=False, repr=False)

    @property
    def state_layout(self) -> Tuple[Tuple[str, int], ...]:
        return tuple((self.dependent_var, k) for k in range(self.order))


@dataclass(frozen=True)
class ParseResult:
    """Outcome of parsing; never raised, check ``valid`` or call raise_for_error()"""
    valid: bool
    independent_vars: FrozenSet[str] = frozenset()
    dependent_vars: FrozenSet[str] = frozenset()
    parameters: FrozenSet[str] = frozenset()
    is_system: bool = False
    error: Optional[str] = None
    error_kind: Optional[type] = None
    equations: Tuple[ParsedEquation, ...] = ()

    @property
    def variables(self) -> FrozenSet[str]:
        return self.independent_vars | self.dependent_vars

    def raise_for_error(self):
        """Raise the typed error behind an invalid result"""
        if not self.valid:
            raise (self.error_kind or DiffEqError)(self.error)

    @classmethod
    def failure(cls, error: DiffEqError, is_system: bool = False) -> "ParseResult":
        return cls(valid=False, is_system=is_system, error=str(error), error_kind=type(error))


def check_supported(text: str):
    """Reject notation the expression grammar does not cover"""
    for pattern, description in UNSUPPORTED_NOTATION:
        if pattern.search(text):
            raise UnsupportedExpressionError(f"Unsupported {description} in '{text}'")


def _parse_left_side(left: str) -> Tuple[DerivativeNotation, EquationKind, str]:
    """Split the left side into its derivative head and any trailing '+ ...' / '- ...' terms"""
    compact = re.sub(r"\s+", "", left)
    if not compact:
        raise InvalidDifferentialNotationError("Left side of the equation is empty")

    if "∂" in compact:
        notation = match_derivative(compact)
        if notation is not None and not notation.partial:
            notation = None
        kind = EquationKind.PARTIAL
    elif "'" in compact:
        m = PRIME_PATTERN.match(compact)
        notation = DerivativeNotation(m.group("var"), len(m.group("primes")), "t", False, m.end()) if m else None
        kind = EquationKind.ORDINARY
    elif "d" in compact and "/" in compact:
        notation = match_derivative(compact)
        kind = EquationKind.ORDINARY
    elif re.fullmatch(NAME_PATTERN, compact):
        return DerivativeNotation(compact, 0, None, False, len(compact)), EquationKind.ALGEBRAIC, ""
    else:
        raise InvalidDifferentialNotationError(
            f"Left side '{left}' is neither a derivative nor a single variable")

    if notation is None or notation.order < 1:
        raise InvalidDifferentialNotationError(f"Unrecognised derivative notation '{left}'")

    rest = compact[notation.end:]
    if rest and rest[0] not in "+-":
        raise InvalidDifferentialNotationError(f"Unrecognised derivative notation '{left}'")
    return notation, kind, rest


def parse_equation_line(line: str) -> ParsedEquation:
    """
    Parse a single equation line

    Accepted left sides are dy/dt, d^2y/dt^2 (or d²y/dt²), d^ny/dt^n, y', y'',
    ∂u/∂t, or a bare variable for algebraic equations. Terms after the head
    ("d^2x/dt^2 + ω^2*x = 0") are moved to the right side.

    Raises:
        MissingEqualsSignError, InvalidDifferentialNotationError,
        UnsupportedExpressionError, ExpressionSyntaxError
    """
    line = line.strip()
    if line.count("=") != 1:
        if "=" in line:
            raise MissingEqualsSignError(f"Equation must contain exactly one equals sign (=): '{line}'")
        raise MissingEqualsSignError(f"Equation must contain an equals sign (=): '{line}'")

    left, right = (side.strip() for side in line.split("="))
    check_supported(line)
    if not right:
        raise ExpressionSyntaxError(f"Right side of '{line}' is empty")

    notation, kind, rest = _parse_left_side(left)
    rhs_text = right
    if rest:
        moved = rest[1:]
        if rest[0] == "+":
            rhs_text = f"{right} - ({moved})"
        else:
            rhs_text = f"{right} + ({moved})"

    rhs = CompiledExpression(rhs_text)

    independent = notation.wrt
    if kind is EquationKind.ALGEBRAIC:
        independent = next((name for name in INDEPENDENT_VARIABLES
                            if name in rhs.symbols and name != notation.var), None)

    return ParsedEquation(
        source=line,
        dependent_var=notation.var,
        order=notation.order,
        independent_var=independent,
        kind=kind,
        rhs_text=rhs_text,
        rhs=rhs,
    )


def _combine(equations: Sequence[ParsedEquation], is_system: bool) -> ParseResult:
    """Merge per-line results into one ParseResult and classify the symbols"""
    orders: Dict[str, int] = {}
    for eq in equations:
        if eq.dependent_var in orders:
            raise InvalidDifferentialNotationError(f"More than one equation for '{eq.dependent_var}'")
        orders[eq.dependent_var] = eq.order

    state_names = {derivative_name(var, k) for var, order in orders.items() for k in range(1, order)}
    referenced, independent = set(), set()
    for eq in equations:
        symbols = eq.rhs.symbols
        referenced |= symbols
        independent |= {name for name in symbols if name in INDEPENDENT_VARIABLES}
        if eq.kind is EquationKind.PARTIAL:
            independent.add(eq.independent_var)
            independent |= {wrt for _, _, wrt in eq.rhs.partial_refs}
        for var, order in eq.rhs.derivative_refs:
            if var not in orders or order >= orders[var]:
                raise InvalidDifferentialNotationError(
                    f"'{eq.source}' references {derivative_name(var, order)}, "
                    f"which is not a lower-order state of the equation")

    dependent = frozenset(orders)
    independent_vars = frozenset(independent - dependent - PHYSICAL_PARAMETERS)
    parameters = frozenset(referenced - dependent - independent_vars - state_names - set(FUNCTIONS))

    return ParseResult(
        valid=True,
        independent_vars=independent_vars,
        dependent_vars=dependent,
        parameters=parameters,
        is_system=is_system,
        equations=tuple(equations),
    )


def _parse_system(lines: List[str]) -> ParseResult:
    equations, errors, first_error = [], [], None
    for line in lines:
        try:
            equations.append(parse_equation_line(line))
        except DiffEqError as e:
            errors.append(str(e))
            first_error = first_error or e

    if errors:
        return ParseResult(valid=False, is_system=True,
                           error=f"Invalid system of equations: {'; '.join(errors)}",
                           error_kind=type(first_error))
    try:
        return _combine(equations, is_system=True)
    except DiffEqError as e:
        return ParseResult.failure(e, is_system=True)


def parse(text: str) -> ParseResult:
    """
    Parse one equation, or a newline-separated system of equations

    Args:
        text: e.g. "dy/dt = -k*y" or "dx/dt = α*x - β*x*y\\ndy/dt = δ*x*y - γ*y"

    Returns:
        ParseResult; malformed input gives valid=False with a message and the
        error class in ``error_kind``
    """
    text = re.sub(r"\\partial\s*", "∂", text)
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]

    if len(lines) > 1:
        return _parse_system(lines)

    try:
        equation = parse_equation_line(lines[0] if lines else "")
        return _combine([equation], is_system=False)
    except DiffEqError as e:
        return ParseResult.failure(e)


# ============================================================================
# EQUATION ANALYZER
# ============================================================================

class Stiffness(Enum):
    NON_STIFF = "Non-stiff"
    MODERATELY_STIFF = "Moderately Stiff"
    STIFF = "Stiff"
    UNKNOWN = "Unknown"

    @property
    def rank(self) -> int:
        return ("Unknown", "Non-stiff", "Moderately Stiff", "Stiff").index(self.value)


class Archetype(Enum):
    LOGISTIC = "Logistic"
    EXPONENTIAL = "Exponential"
    HARMONIC_OSCILLATOR = "Harmonic Oscillator"
    DAMPED_OSCILLATOR = "Damped Oscillator"
    PENDULUM = "Pendulum"
    LOTKA_VOLTERRA = "Lotka-Volterra"


class Method(Enum):
    EULER = "euler"
    MIDPOINT = "midpoint"
    HEUN = "heun"
    RK4 = "rk4"
    ANALYTICAL = "analytical"
    FINITE_DIFFERENCE = "finite_difference"

    @classmethod
    def from_value(cls, value: Union[str, "Method"]) -> "Method":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown method: {value}. Choose from {[m.value for m in cls]}") from None

    @property
    def integrable(self) -> bool:
        """Whether a fixed-step stepping rule exists for this method"""
        return self in (Method.EULER, Method.MIDPOINT, Method.HEUN, Method.RK4)


# Damping coefficients at or above this magnitude mark a damped oscillator as stiff
LARGE_DAMPING = 10


@dataclass(frozen=True)
class ArchetypeMatch:
    """A recognised archetype with its canonical parameters bound to user expressions"""
    archetype: Archetype
    bindings: Dict[str, sp.Expr]

    def evaluate(self, parameters: Mapping[str, float]) -> Dict[str, float]:
        """
        Resolve the canonical parameters against the user's parameter values

        Raises:
            UnknownSymbolError: a binding still references an unset parameter
        """
        subs = {sp.Symbol(name, real=True): float(value) for name, value in parameters.items()}
        values = {}
        for name, expr in self.bindings.items():
            value = sp.sympify(expr).subs(subs)
            if value.free_symbols:
                missing = sorted(str(s) for s in value.free_symbols)
                raise UnknownSymbolError(f"Missing parameter values: {', '.join(missing)}", name=missing[0])
            try:
                values[name] = float(value)
            except TypeError as e:
                raise EvaluationError(f"Parameter '{name}' is not real: {value}") from e
        return values


@dataclass(frozen=True)
class Analysis:
    """Structural classification of an equation or system"""
    kind: EquationKind
    order: int
    linear: bool
    homogeneous: bool
    autonomous: bool
    stiffness: Stiffness
    recommended_method: Method
    required_initial_conditions: int
    archetype_match: Optional[ArchetypeMatch] = None
    explanation: str = ""
    valid: bool = True
    error: Optional[str] = None
    parse_result: Optional[ParseResult] = field(default=None, repr=False, compare=False)

    @property
    def archetype(self) -> Optional[Archetype]:
        return self.archetype_match.archetype if self.archetype_match else None


@dataclass(frozen=True)
class EquationTraits:
    """Per-equation facts that combine into a system analysis"""
    order: int
    linear: bool
    homogeneous: bool
    autonomous: bool
    stiffness: Stiffness


def _state_symbols(engine: SymbolicEngine, equations: Sequence[ParsedEquation]) -> List[sp.Symbol]:
    """Dependent variables and their derivatives below each equation's order"""
    state = []
    for eq in equations:
        for k in range(max(eq.order, 1)):
            state.append(engine.get_symbol(derivative_name(eq.dependent_var, k)))
    return state


def _single_ordinary(equations: Sequence[ParsedEquation], order: int) -> Optional[ParsedEquation]:
    if len(equations) == 1 and equations[0].kind is EquationKind.ORDINARY and equations[0].order == order:
        return equations[0]
    return None


def _coefficients_ok(engine: SymbolicEngine, eq: ParsedEquation, *coefficients: sp.Expr) -> bool:
    if eq.independent_var is None:
        return True
    indep = engine.get_symbol(eq.independent_var)
    return all(indep not in sp.sympify(c).free_symbols for c in coefficients)


def _terms(engine: SymbolicEngine, eq: ParsedEquation, state: Sequence[sp.Symbol]) -> Dict[sp.Expr, sp.Expr]:
    return engine.state_monomials(engine.ast_to_sympy(eq.rhs.tree), state)


def _match_logistic(engine, equations):
    eq = _single_ordinary(equations, 1)
    if eq is None:
        return None
    y = engine.get_symbol(eq.dependent_var)
    terms = _terms(engine, eq, [y])
    if set(terms) != {y, y ** 2} or not _coefficients_ok(engine, eq, *terms.values()):
        return None
    return {"r": terms[y], "K": sp.simplify(-terms[y] / terms[y ** 2])}


def _match_exponential(engine, equations):
    eq = _single_ordinary(equations, 1)
    if eq is None:
        return None
    y = engine.get_symbol(eq.dependent_var)
    terms = _terms(engine, eq, [y])
    if set(terms) != {y} or not _coefficients_ok(engine, eq, terms[y]):
        return None
    return {"r": terms[y]}


def _match_harmonic(engine, equations):
    eq = _single_ordinary(equations, 2)
    if eq is None:
        return None
    y = engine.get_symbol(eq.dependent_var)
    v = engine.get_symbol(derivative_name(eq.dependent_var, 1))
    terms = _terms(engine, eq, [y, v])
    if set(terms) != {y} or not _coefficients_ok(engine, eq, terms[y]):
        return None
    return {"k": -terms[y]}


def _match_damped(engine, equations):
    eq = _single_ordinary(equations, 2)
    if eq is None:
        return None
    y = engine.get_symbol(eq.dependent_var)
    v = engine.get_symbol(derivative_name(eq.dependent_var, 1))
    terms = _terms(engine, eq, [y, v])
    if set(terms) != {y, v} or not _coefficients_ok(engine, eq, *terms.values()):
        return None
    return {"k": -terms[y], "c": -terms[v]}


def _match_pendulum(engine, equations):
    eq = _single_ordinary(equations, 2)
    if eq is None:
        return None
    y = engine.get_symbol(eq.dependent_var)
    v = engine.get_symbol(derivative_name(eq.dependent_var, 1))
    terms = _terms(engine, eq, [y, v])
    if set(terms) != {sp.sin(y)} or not _coefficients_ok(engine, eq, terms[sp.sin(y)]):
        return None
    g, length = sp.fraction(sp.together(-terms[sp.sin(y)]))
    return {"g": g, "L": length}


def _match_lotka_volterra(engine, equations):
    if len(equations) != 2 or any(eq.kind is not EquationKind.ORDINARY or eq.order != 1 for eq in equations):
        return None
    prey, predator = equations
    u = engine.get_symbol(prey.dependent_var)
    w = engine.get_symbol(predator.dependent_var)
    first = _terms(engine, prey, [u, w])
    second = _terms(engine, predator, [u, w])
    if set(first) != {u, u * w} or set(second) != {u * w, w}:
        return None
    if not (_coefficients_ok(engine, prey, *first.values()) and _coefficients_ok(engine, predator, *second.values())):
        return None
    return {"α": first[u], "β": -first[u * w], "δ": second[u * w], "γ": -second[w]}


# Priority order: the first rule that matches wins
ARCHETYPE_RULES: List[Tuple[Archetype, Callable]] = [
    (Archetype.LOGISTIC, _match_logistic),
    (Archetype.EXPONENTIAL, _match_exponential),
    (Archetype.HARMONIC_OSCILLATOR, _match_harmonic),
    (Archetype.DAMPED_OSCILLATOR, _match_damped),
    (Archetype.PENDULUM, _match_pendulum),
    (Archetype.LOTKA_VOLTERRA, _match_lotka_volterra),
]


def detect_archetype(equations: Union[ParseResult, Sequence[ParsedEquation]],
                     engine: Optional[SymbolicEngine] = None) -> Optional[ArchetypeMatch]:
    """
    Recognise a well-known model by the structure of its right-hand side

    Matching is structural: "dP/dt = r*P*(1 - P/K)" and "dy/dt = 2*y - 0.2*y^2"
    are both logistic, whatever the variables are called.
    """
    if isinstance(equations, ParseResult):
        equations = equations.equations
    engine = engine or SymbolicEngine()
    for archetype, rule in ARCHETYPE_RULES:
        bindings = rule(engine, equations)
        if bindings is not None:
            return ArchetypeMatch(archetype, bindings)
    return None


def estimate_stiffness(engine: SymbolicEngine, eq: ParsedEquation, match: Optional[ArchetypeMatch],
                       parameters: Optional[Mapping[str, float]] = None) -> Stiffness:
    """
    Heuristic stiffness estimate for a single equation

    A damped oscillator is Stiff when its damping coefficient carries a
    numeric factor of at least LARGE_DAMPING (10*c*dy/dt, or c=100 supplied
    through parameters), otherwise ModeratelyStiff. Any exp() call in the
    written right-hand side is ModeratelyStiff.
    """
    if match is not None and match.archetype is Archetype.DAMPED_OSCILLATOR:
        damping = sp.sympify(match.bindings["c"])
        if parameters:
            damping = damping.subs({engine.get_symbol(name): float(value) for name, value in parameters.items()})
        factor, _ = damping.as_coeff_Mul()
        if factor.is_number and factor.is_real and abs(float(factor)) >= LARGE_DAMPING:
            return Stiffness.STIFF
        return Stiffness.MODERATELY_STIFF
    if "exp" in eq.rhs.functions:
        return Stiffness.MODERATELY_STIFF
    return Stiffness.NON_STIFF


def _equation_traits(engine: SymbolicEngine, eq: ParsedEquation, state: List[sp.Symbol],
                     parameters: Optional[Mapping[str, float]]) -> EquationTraits:
    rhs = engine.ast_to_sympy(eq.rhs.tree)
    order = eq.order
    local_state = list(state)
    if eq.kind is EquationKind.PARTIAL:
        for var, k, wrt in eq.rhs.partial_refs:
            order = max(order, k)
            local_state.append(engine.get_symbol(partial_name(var, wrt, k)))

    differential = eq.kind in (EquationKind.ORDINARY, EquationKind.PARTIAL)
    linear = differential and engine.is_linear(rhs, local_state)
    homogeneous = differential and not engine.has_forcing_term(rhs, local_state)
    autonomous = eq.independent_var is None or engine.get_symbol(eq.independent_var) not in rhs.free_symbols
    stiffness = estimate_stiffness(engine, eq, detect_archetype([eq], engine), parameters)
    return EquationTraits(order, linear, homogeneous, autonomous, stiffness)


# Ordered (predicate, method) table; the first matching rule wins
RECOMMENDATION_RULES: List[Tuple[Callable[[Dict[str, Any]], bool], Method]] = [
    (lambda a: a["kind"] is EquationKind.PARTIAL, Method.FINITE_DIFFERENCE),
    (lambda a: a["kind"] is EquationKind.ALGEBRAIC, Method.ANALYTICAL),
    (lambda a: a["archetype"] in (Archetype.PENDULUM, Archetype.LOTKA_VOLTERRA), Method.RK4),
    (lambda a: a["stiffness"] is Stiffness.STIFF, Method.RK4),
    (lambda a: not a["linear"], Method.RK4),
    (lambda a: a["order"] > 1, Method.RK4),
    (lambda a: (a["kind"] is EquationKind.ORDINARY and a["order"] == 1
                and a["stiffness"] is Stiffness.NON_STIFF), Method.MIDPOINT),
]


def recommend_method(kind: EquationKind, order: int, linear: bool, stiffness: Stiffness,
                     archetype: Optional[Archetype] = None) -> Method:
    """Pick an integration method from the classification"""
    facts = {"kind": kind, "order": order, "linear": linear, "stiffness": stiffness, "archetype": archetype}
    for predicate, method in RECOMMENDATION_RULES:
        if predicate(facts):
            return method
    return Method.RK4


METHOD_DESCRIPTIONS = {
    Method.EULER: "Euler's method is the simplest first-order rule; use small steps.",
    Method.MIDPOINT: "The midpoint method is second order and cheap, a good fit for smooth first-order problems.",
    Method.HEUN: "Heun's method is a second-order predictor-corrector rule.",
    Method.RK4: "The classical fourth-order Runge-Kutta method balances accuracy and cost for most problems.",
    Method.ANALYTICAL: "The equation is algebraic and can be evaluated directly; no time stepping is needed.",
    Method.FINITE_DIFFERENCE: "Partial differential equations need a spatial discretisation such as finite differences.",
}


def explain_analysis(analysis: Analysis, num_equations: int = 1) -> str:
    """Human-readable summary of an analysis"""
    if not analysis.valid:
        return f"The equation could not be analysed: {analysis.error}"

    if analysis.kind is EquationKind.SYSTEM:
        parts = [f"This is a system of {num_equations} coupled equations of maximum order {analysis.order}."]
        parts.append("The system is linear." if analysis.linear
                     else "The system is non-linear, so solutions can behave in complex ways.")
        if not analysis.autonomous:
            parts.append("At least one equation depends explicitly on the independent variable.")
    elif analysis.kind is EquationKind.ALGEBRAIC:
        parts = ["This is an algebraic equation: the right side gives the value directly."]
    else:
        kind_name = "partial" if analysis.kind is EquationKind.PARTIAL else "ordinary"
        parts = [f"This is a {'linear' if analysis.linear else 'non-linear'} {kind_name} "
                 f"differential equation of order {analysis.order}."]
        parts.append("It is homogeneous (no forcing term)." if analysis.homogeneous
                     else "It is non-homogeneous: a forcing term does not involve the unknown.")
        parts.append("It is autonomous." if analysis.autonomous
                     else "It depends explicitly on the independent variable.")

    if analysis.archetype is not None:
        parts.append(f"It has the form of the {analysis.archetype.value} model.")
    if analysis.stiffness is Stiffness.STIFF:
        parts.append("The problem looks stiff: explicit methods need a small step size.")
    elif analysis.stiffness is Stiffness.MODERATELY_STIFF:
        parts.append("The problem may be moderately stiff.")
    if analysis.required_initial_conditions:
        parts.append(f"{analysis.required_initial_conditions} initial condition(s) are required.")
    parts.append(METHOD_DESCRIPTIONS[analysis.recommended_method])
    return " ".join(parts)


class AnalysisBuilder:
    """Collects analysis facts and assembles one fully populated Analysis"""

    REQUIRED = ("kind", "order", "linear", "homogeneous", "autonomous", "stiffness",
                "recommended_method", "required_initial_conditions")

    def __init__(self, parse_result: ParseResult):
        self.parse_result = parse_result
        self.fields: Dict[str, Any] = {}

    def set(self, **values) -> "AnalysisBuilder":
        self.fields.update(values)
        return self

    def build(self) -> Analysis:
        missing = [name for name in self.REQUIRED if name not in self.fields]
        if missing:
            raise ValueError(f"Analysis is missing fields: {', '.join(missing)}")
        analysis = Analysis(valid=self.parse_result.valid, error=self.parse_result.error,
                            parse_result=self.parse_result, **self.fields)
        explanation = explain_analysis(analysis, max(len(self.parse_result.equations), 1))
        return replace(analysis, explanation=explanation)


def analyze(text: str, parameters: Optional[Mapping[str, float]] = None) -> Analysis:
    """
    Classify an equation (or system) and recommend an integration method

    Args:
        text: raw equation text
        parameters: optional parameter values; only used to decide whether a
            symbolic damping coefficient is large enough to make the problem stiff

    Returns:
        Analysis; unparseable input gives valid=False, kind UNKNOWN, no
        required initial conditions and RK4 as the fallback recommendation
    """
    result = parse(text)
    builder = AnalysisBuilder(result)

    if not result.valid:
        return builder.set(
            kind=EquationKind.UNKNOWN, order=0, linear=False, homogeneous=False, autonomous=False,
            stiffness=Stiffness.UNKNOWN, recommended_method=Method.RK4, required_initial_conditions=0,
        ).build()

    engine = SymbolicEngine()
    state = _state_symbols(engine, result.equations)
    traits = [_equation_traits(engine, eq, state, parameters) for eq in result.equations]
    match = detect_archetype(result.equations, engine)

    kind = EquationKind.SYSTEM if result.is_system else result.equations[0].kind
    order = max(t.order for t in traits)
    linear = all(t.linear for t in traits)
    stiffness = max((t.stiffness for t in traits), key=lambda s: s.rank)
    required = len(traits) * order if result.is_system else order

    return builder.set(
        kind=kind,
        order=order,
        linear=linear,
        homogeneous=all(t.homogeneous for t in traits),
        autonomous=all(t.autonomous for t in traits),
        stiffness=stiffness,
        archetype_match=match,
        recommended_method=recommend_method(kind, order, linear, stiffness, match.archetype if match else None),
        required_initial_conditions=required,
    ).build()


# ============================================================================
# ORDER REDUCTION
# ============================================================================

MAX_REDUCIBLE_ORDER = 2


@dataclass(frozen=True)
class FirstOrderSystem:
    """
    First-order vector form of a parsed equation or system

    The state is laid out equation by equation: an order-n equation in y
    contributes y, y_dot, ... up to its (n-1)-th derivative. Each component of
    the derivative vector is either the name of another state component (the
    derivative of y is y_dot) or a compiled right-hand side.
    """
    state_layout: Tuple[Tuple[str, int], ...]
    state_names: Tuple[str, ...]
    independent_var: str
    parameters: FrozenSet[str]
    components: Tuple[Union[str, CompiledExpression], ...] = field(repr=False)

    def __call__(self, t: float, y: Sequence[float], params: Optional[Mapping[str, float]] = None) -> np.ndarray:
        scope = dict(params or {})
        scope[self.independent_var] = float(t)
        for name, value in zip(self.state_names, y):
            scope[name] = float(value)
        return np.array([scope[c] if isinstance(c, str) else c.evaluate(scope) for c in self.components],
                        dtype=float)

    def missing_parameters(self, params: Optional[Mapping[str, float]]) -> List[str]:
        return sorted(self.parameters - set(params or {}))


def reduce_order(equation: Union[str, ParseResult], dependent_var: Optional[str] = None) -> FirstOrderSystem:
    """
    Rewrite an equation (or system) as a first-order vector system

    A second-order equation d^2y/dt^2 = f becomes the pair
    d(y)/dt = y_dot, d(y_dot)/dt = f with y and y_dot in scope.

    Args:
        equation: raw text or an already valid ParseResult
        dependent_var: optional name to check against the parsed unknowns

    Raises:
        UnsupportedOrderError: algebraic equations and orders above two
        UnsupportedExpressionError: partial differential equations
    """
    result = parse(equation) if isinstance(equation, str) else equation
    result.raise_for_error()
    if dependent_var is not None and dependent_var not in result.dependent_vars:
        raise ValueError(f"'{dependent_var}' is not one of the unknowns {sorted(result.dependent_vars)}")

    layout, components, independent = [], [], set()
    for eq in result.equations:
        if eq.kind is EquationKind.PARTIAL:
            raise UnsupportedExpressionError(f"'{eq.source}' is a partial differential equation; "
                                             f"only ordinary equations can be integrated")
        if eq.order == 0:
            raise UnsupportedOrderError(f"'{eq.source}' is algebraic and has no state to integrate")
        if eq.order > MAX_REDUCIBLE_ORDER:
            raise UnsupportedOrderError(
                f"Order {eq.order} equations are not supported (maximum is {MAX_REDUCIBLE_ORDER})")

        layout.extend(eq.state_layout)
        components.extend(derivative_name(eq.dependent_var, k) for k in range(1, eq.order))
        components.append(eq.rhs)
        independent.add(eq.independent_var)

    if len(independent) > 1:
        raise InvalidDifferentialNotationError(f"Equations mix independent variables {sorted(independent)}")

    return FirstOrderSystem(
        state_layout=tuple(layout),
        state_names=tuple(derivative_name(var, k) for var, k in layout),
        independent_var=independent.pop(),
        parameters=result.parameters,
        components=tuple(components),
    )


# ============================================================================
# INITIAL CONDITIONS
# ============================================================================

class InitialConditions:
    """
    Initial values keyed by (variable, derivative order)

    Keys may be given as tuples ("y", 1), state names ("y", "y_dot",
    "y_ddot", "y_d3") or primes ("y'").
    """

    def __init__(self, values: Optional[Union["InitialConditions", Mapping[Any, float]]] = None):
        if isinstance(values, InitialConditions):
            values = values._values
        self._values: Dict[Tuple[str, int], float] = {
            self.parse_key(key): float(value) for key, value in dict(values or {}).items()
        }

    @staticmethod
    def parse_key(key: Union[str, Tuple[str, int]]) -> Tuple[str, int]:
        if isinstance(key, tuple):
            var, order = key
            return str(var), int(order)
        key = str(key).strip()
        m = PRIME_PATTERN.fullmatch(key)
        if m:
            return m.group("var"), len(m.group("primes"))
        m = STATE_NAME_PATTERN.fullmatch(key)
        if m:
            if m.group("dot"):
                return m.group("var"), 1
            if m.group("ddot"):
                return m.group("var"), 2
            return m.group("var"), int(m.group("order"))
        return key, 0

    @classmethod
    def from_any(cls, values) -> "InitialConditions":
        return values if isinstance(values, cls) else cls(values)

    def with_value(self, variable: str, order: int, value: float) -> "InitialConditions":
        updated = InitialConditions(self)
        updated._values[(variable, int(order))] = float(value)
        return updated

    def restricted_to(self, entries) -> "InitialConditions":
        """Keep whole variables (given by name) or single (variable, order) entries"""
        entries = set(entries)
        return InitialConditions({key: value for key, value in self._values.items()
                                  if key in entries or key[0] in entries})

    def vector(self, layout: Sequence[Tuple[str, int]]) -> np.ndarray:
        """
        Initial state vector in the given layout order

        Raises:
            MissingInitialConditionError: listing every absent entry
        """
        missing = [entry for entry in layout if entry not in self._values]
        if missing:
            names = ", ".join(derivative_name(var, order) for var, order in missing)
            raise MissingInitialConditionError(f"Missing initial conditions: {names}", missing=missing)
        return np.array([self._values[entry] for entry in layout], dtype=float)

    def as_dict(self) -> Dict[str, float]:
        return {derivative_name(var, order): value for (var, order), value in self._values.items()}

    def __getitem__(self, key) -> float:
        return self._values[self.parse_key(key)]

    def __contains__(self, key) -> bool:
        return self.parse_key(key) in self._values

    def __len__(self):
        return len(self._values)

    def __iter__(self):
        return iter(self._values)

    def __eq__(self, other):
        if not isinstance(other, InitialConditions):
            return NotImplemented
        return self._values == other._values

    def __repr__(self):
        return f"InitialConditions({self.as_dict()})"


# ============================================================================
# SPECIALIZED EQUATION LIBRARY
# ============================================================================

def exponential_growth(t, y, params):
    """dy/dt = r*y"""
    return np.array([params["r"] * y[0]])


def logistic_growth(t, y, params):
    """dy/dt = r*y*(1 - y/K)"""
    r, K = params["r"], params["K"]
    return np.array([r * y[0] * (1 - y[0] / K)])


def harmonic_oscillator(t, y, params):
    """d^2y/dt^2 = -k*y, state [y, y_dot]"""
    return np.array([y[1], -params["k"] * y[0]])


def damped_oscillator(t, y, params):
    """d^2y/dt^2 = -k*y - c*dy/dt, state [y, y_dot]"""
    k, c = params["k"], params["c"]
    return np.array([y[1], -k * y[0] - c * y[1]])


def pendulum(t, y, params):
    """d^2θ/dt^2 = -(g/L)*sin(θ), state [θ, θ_dot]"""
    g, L = params["g"], params["L"]
    return np.array([y[1], -(g / L) * math.sin(y[0])])


def pendulum_small_angle(t, y, params):
    """d^2θ/dt^2 = -(g/L)*θ, the linearised pendulum"""
    g, L = params["g"], params["L"]
    return np.array([y[1], -(g / L) * y[0]])


def lotka_volterra(t, y, params):
    """dx/dt = α*x - β*x*y, dy/dt = δ*x*y - γ*y, state [x, y]"""
    alpha, beta, delta, gamma = params["α"], params["β"], params["δ"], params["γ"]
    prey, predator = y[0], y[1]
    return np.array([alpha * prey - beta * prey * predator,
                     delta * prey * predator - gamma * predator])


@dataclass(frozen=True)
class SpecializedEquation:
    """Hand-written right-hand side equivalent to a canonical equation text"""
    name: str
    rhs: Callable[[float, np.ndarray, Mapping[str, float]], np.ndarray]
    canonical: str
    parameters: Tuple[str, ...]


SPECIALIZED_EQUATIONS: Dict[Archetype, SpecializedEquation] = {
    Archetype.EXPONENTIAL: SpecializedEquation(
        "exponential_growth", exponential_growth, "dy/dt = r*y", ("r",)),
    Archetype.LOGISTIC: SpecializedEquation(
        "logistic_growth", logistic_growth, "dy/dt = r*y*(1 - y/K)", ("r", "K")),
    Archetype.HARMONIC_OSCILLATOR: SpecializedEquation(
        "harmonic_oscillator", harmonic_oscillator, "d^2y/dt^2 = -k*y", ("k",)),
    Archetype.DAMPED_OSCILLATOR: SpecializedEquation(
        "damped_oscillator", damped_oscillator, "d^2y/dt^2 = -k*y - c*dy/dt", ("k", "c")),
    Archetype.PENDULUM: SpecializedEquation(
        "pendulum", pendulum, "d^2θ/dt^2 = -(g/L)*sin(θ)", ("g", "L")),
    Archetype.LOTKA_VOLTERRA: SpecializedEquation(
        "lotka_volterra", lotka_volterra, "dx/dt = α*x - β*x*y\ndy/dt = δ*x*y - γ*y", ("α", "β", "δ", "γ")),
}

# Variants without an archetype of their own, looked up by name
SPECIALIZED_VARIANTS: Dict[str, SpecializedEquation] = {
    "pendulum_small_angle": SpecializedEquation(
        "pendulum_small_angle", pendulum_small_angle, "d^2θ/dt^2 = -(g/L)*θ", ("g", "L")),
}


def get_specialized(key: Union[Archetype, str]) -> SpecializedEquation:
    """Look up a specialized right-hand side by archetype or function name"""
    if isinstance(key, Archetype):
        return SPECIALIZED_EQUATIONS[key]
    for entry in list(SPECIALIZED_EQUATIONS.values()) + list(SPECIALIZED_VARIANTS.values()):
        if entry.name == key:
            return entry
    raise KeyError(f"No specialized equation named '{key}'")


# ============================================================================
# FIXED-STEP INTEGRATOR
# ============================================================================

class FailurePolicy(Enum):
    ABORT = "abort"
    SKIP = "skip"


def euler_step(f, t, y, h, params):
    return y + h * f(t, y, params)


def midpoint_step(f, t, y, h, params):
    k1 = f(t, y, params)
    k2 = f(t + h / 2, y + h * k1 / 2, params)
    return y + h * k2


def heun_step(f, t, y, h, params):
    k1 = f(t, y, params)
    y_predict = y + h * k1
    k2 = f(t + h, y_predict, params)
    return y + h * (k1 + k2) / 2


def rk4_step(f, t, y, h, params):
    k1 = f(t, y, params)
    k2 = f(t + h / 2, y + h * k1 / 2, params)
    k3 = f(t + h / 2, y + h * k2 / 2, params)
    k4 = f(t + h, y + h * k3, params)
    return y + h * (k1 + 2 * k2 + 2 * k3 + k4) / 6


STEPPERS: Dict[Method, Callable] = {
    Method.EULER: euler_step,
    Method.MIDPOINT: midpoint_step,
    Method.HEUN: heun_step,
    Method.RK4: rk4_step,
}


@dataclass(frozen=True)
class SolverConfig:
    """Validated integration settings"""
    method: Method = Method.RK4
    step_size: float = DEFAULT_STEP_SIZE
    time_start: float = DEFAULT_TIME_SPAN[0]
    time_end: float = DEFAULT_TIME_SPAN[1]
    on_failure: FailurePolicy = FailurePolicy.ABORT
    max_steps: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "method", Method.from_value(self.method))
        object.__setattr__(self, "on_failure", FailurePolicy(self.on_failure))
        if not self.step_size > 0:
            raise ValueError(f"Step size must be positive, got {self.step_size}")
        if self.time_end < self.time_start:
            raise ValueError(f"End time {self.time_end} precedes start time {self.time_start}")
        if self.max_steps is not None and self.max_steps <= 0:
            raise ValueError(f"max_steps must be positive, got {self.max_steps}")

    @property
    def num_steps(self) -> int:
        return max(0, math.ceil((self.time_end - self.time_start) / self.step_size))


@dataclass(frozen=True, eq=False)
class Trajectory:
    """Read-only integration output: times t (n,) and states y (n, d)"""
    t: np.ndarray
    y: np.ndarray
    state_names: Tuple[str, ...] = ()
    method: Optional[Method] = None
    skipped_steps: int = 0

    def __post_init__(self):
        self.t.flags.writeable = False
        self.y.flags.writeable = False

    def __len__(self):
        return len(self.t)

    @property
    def final_state(self) -> np.ndarray:
        return self.y[-1]

    def component(self, name: str) -> np.ndarray:
        if name not in self.state_names:
            raise KeyError(f"No state component '{name}'; available: {list(self.state_names)}")
        return self.y[:, self.state_names.index(name)]

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation"""
        return {
            "t": self.t.tolist(),
            "y": self.y.tolist(),
            "state_names": list(self.state_names),
            "method": self.method.value if self.method else None,
            "skipped_steps": self.skipped_steps,
        }


def _vector_field(rhs: Callable, size: int) -> Callable:
    def vector_field(t, y, params):
        dy = np.asarray(rhs(t, y, params), dtype=float)
        if dy.shape != (size,):
            raise ValueError(f"Right-hand side returned shape {dy.shape}, expected ({size},)")
        return dy
    return vector_field


def integrate(rhs: Callable, y0: Union[float, Sequence[float]], t0: float, t1: float, h: float,
              method: Union[str, Method] = Method.RK4,
              params: Optional[Mapping[str, float]] = None,
              on_failure: Union[str, FailurePolicy] = FailurePolicy.ABORT,
              max_steps: Optional[int] = None,
              state_names: Sequence[str] = ()) -> Trajectory:
    """
    Advance dy/dt = rhs(t, y, params) from t0 with a fixed step h

    The n-th sample is taken at t0 + n*h and stepping continues while t < t1,
    so the last sample can overshoot t1 by less than one step.

    Args:
        rhs: callable (t, y, params) -> derivative vector
        y0: initial state
        on_failure: ABORT raises on the first failed step; SKIP advances the
            clock without recording a sample and warns once at the end

    Raises:
        ValueError: h <= 0, t1 < t0, or a method without a stepping rule
        SolverFailedError: a step could not be evaluated (ABORT) or the step
            budget ran out
    """
    method = Method.from_value(method)
    if not method.integrable:
        raise ValueError(f"Method '{method.value}' has no fixed-step solver; choose one of "
                         f"{[m.value for m in STEPPERS]}")
    config = SolverConfig(method, h, t0, t1, on_failure, max_steps)
    step = STEPPERS[config.method]

    y = np.atleast_1d(np.array(y0, dtype=float))
    if y.ndim != 1:
        raise ValueError(f"Initial state must be a vector, got shape {y.shape}")
    vector_field = _vector_field(rhs, y.size)
    params = dict(params or {})

    times = [float(t0)]
    states = [y.copy()]
    t = float(t0)
    n = 0
    skipped = []

    while t < t1:
        if config.max_steps is not None and n >= config.max_steps:
            raise SolverFailedError(t, RuntimeError(f"step budget of {config.max_steps} exhausted"))
        try:
            next_y = step(vector_field, t, y, h, params)
            if not np.all(np.isfinite(next_y)):
                raise EvaluationError("state became non-finite")
        except (EvaluationError, ArithmeticError) as e:
            if config.on_failure is FailurePolicy.ABORT:
                raise SolverFailedError(t, e) from e
            skipped.append(t)
            next_y = None

        n += 1
        t = t0 + n * h
        if next_y is not None:
            y = next_y
            times.append(t)
            states.append(y)

    if skipped:
        warnings.warn(f"Skipped {len(skipped)} failed step(s), first at t={skipped[0]:g}", DiffEqWarning)

    return Trajectory(
        t=np.array(times, dtype=float),
        y=np.array(states, dtype=float).reshape(len(states), y.size),
        state_names=tuple(state_names),
        method=config.method,
        skipped_steps=len(skipped),
    )


# ============================================================================
# COMPILER
# ============================================================================

class DiffEqCompiler:
    """
    Main compiler class: parse -> analyze -> reduce -> integrate
    """

    def __init__(self):
        self.source: Optional[str] = None
        self.analysis: Optional[Analysis] = None
        self.system: Optional[FirstOrderSystem] = None
        self.specialized: Optional[SpecializedEquation] = None
        self.compilation_time: Optional[float] = None

    def compile(self, source: str) -> dict:
        """
        Compile equation text into an integrable first-order system

        Returns:
            Dictionary with compilation results; on failure 'success' is
            False and 'error' / 'error_type' describe the problem
        """
        start_time = time.time()
        self.source = source
        self.system = None
        self.specialized = None
        self.analysis = analyze(source)

        if not self.analysis.valid:
            return {
                'success': False,
                'error': self.analysis.error,
                'error_type': self.analysis.parse_result.error_kind,
                'analysis': self.analysis,
                'compilation_time': time.time() - start_time,
            }

        try:
            self.system = reduce_order(self.analysis.parse_result)
        except DiffEqError as e:
            return {
                'success': False,
                'error': str(e),
                'error_type': type(e),
                'analysis': self.analysis,
                'compilation_time': time.time() - start_time,
            }

        if self.analysis.archetype is not None:
            self.specialized = SPECIALIZED_EQUATIONS[self.analysis.archetype]

        self.compilation_time = time.time() - start_time
        return {
            'success': True,
            'kind': self.analysis.kind.value,
            'archetype': self.analysis.archetype.value if self.analysis.archetype else None,
            'recommended_method': self.analysis.recommended_method.value,
            'state_names': list(self.system.state_names),
            'parameters': sorted(self.system.parameters),
            'analysis': self.analysis,
            'compilation_time': self.compilation_time,
        }

    def select_method(self, method: Optional[Union[str, Method]] = None) -> Method:
        """Explicit method, else the recommendation (rk4 when it has no stepping rule)"""
        if method is not None:
            return Method.from_value(method)
        chosen = self.analysis.recommended_method
        if not chosen.integrable:
            warnings.warn(f"No fixed-step solver for recommended method '{chosen.value}'; using rk4",
                          DiffEqWarning)
            return Method.RK4
        return chosen

    def simulate(self, initial_conditions, parameters: Optional[Mapping[str, float]] = None,
                 t_span: Tuple[float, float] = DEFAULT_TIME_SPAN, step_size: float = DEFAULT_STEP_SIZE,
                 method: Optional[Union[str, Method]] = None, use_specialized: bool = True,
                 on_failure: Union[str, FailurePolicy] = FailurePolicy.ABORT,
                 max_steps: Optional[int] = None) -> Trajectory:
        """
        Integrate the compiled system

        Args:
            initial_conditions: InitialConditions or mapping such as {"y": 1, "y_dot": 0}
            parameters: values for every parameter the equation references
            use_specialized: dispatch to the hand-written right-hand side when
                the equation matched an archetype

        Raises:
            RuntimeError: nothing compiled
            UnknownSymbolError: a parameter has no value
            MissingInitialConditionError, SolverFailedError
        """
        if self.system is None:
            raise RuntimeError("No equation compiled")

        parameters = dict(parameters or {})
        missing = self.system.missing_parameters(parameters)
        if missing:
            raise UnknownSymbolError(f"Missing parameter values: {', '.join(missing)}", name=missing[0])

        config = SolverConfig(
            method=self.select_method(method),
            step_size=step_size,
            time_start=t_span[0],
            time_end=t_span[1],
            on_failure=on_failure,
            max_steps=max_steps,
        )
        y0 = InitialConditions.from_any(initial_conditions).vector(self.system.state_layout)

        rhs, rhs_params = self.system, parameters
        if use_specialized and self.specialized is not None:
            rhs = self.specialized.rhs
            rhs_params = self.analysis.archetype_match.evaluate(parameters)

        if analyze(self.source, parameters).stiffness is Stiffness.STIFF:
            warnings.warn(f"'{self.source}' looks stiff; explicit {config.method.value} needs a small step",
                          DiffEqWarning)

        return integrate(rhs, y0, config.time_start, config.time_end, config.step_size, config.method,
                         rhs_params, on_failure=config.on_failure, max_steps=config.max_steps,
                         state_names=self.system.state_names)

    def print_equations(self):
        """Print the analysis and the first-order form"""
        if self.analysis is None:
            print("No equation compiled")
            return

        print(f"\n{'='*70}")
        print(f"Equation: {self.source}")
        print(f"{'='*70}\n")
        print(self.analysis.explanation)

        if self.system is not None:
            print(f"\nFirst-order form ({len(self.system.state_names)} states):")
            for name, component in zip(self.system.state_names, self.system.components):
                rhs = component if isinstance(component, str) else component.source
                print(f"  d({name})/d{self.system.independent_var} = {rhs}")
        print()

    def get_info(self) -> Dict[str, Any]:
        if self.analysis is None:
            return {'compiled': False}
        return {
            'compiled': self.system is not None,
            'source': self.source,
            'kind': self.analysis.kind.value,
            'order': self.analysis.order,
            'linear': self.analysis.linear,
            'homogeneous': self.analysis.homogeneous,
            'autonomous': self.analysis.autonomous,
            'stiffness': self.analysis.stiffness.value,
            'archetype': self.analysis.archetype.value if self.analysis.archetype else None,
            'recommended_method': self.analysis.recommended_method.value,
            'required_initial_conditions': self.analysis.required_initial_conditions,
            'state_names': list(self.system.state_names) if self.system else [],
            'parameters': sorted(self.system.parameters) if self.system else [],
            'specialized': self.specialized.name if self.specialized else None,
            'compilation_time': self.compilation_time,
        }


def solve(equation: Union[str, Callable], initial_conditions, t0: float = DEFAULT_TIME_SPAN[0],
          t1: float = DEFAULT_TIME_SPAN[1], step_size: float = DEFAULT_STEP_SIZE,
          method: Optional[Union[str, Method]] = None, parameters: Optional[Mapping[str, float]] = None,
          use_specialized: bool = True, on_failure: Union[str, FailurePolicy] = FailurePolicy.ABORT,
          max_steps: Optional[int] = None) -> Trajectory:
    """
    Solve an equation given as text, or a right-hand side callable

    Examples:
        >>> traj = solve("dy/dt = -k*y", {"y": 1.0}, 0, 5, 0.01, parameters={"k": 1.0})
        >>> traj = solve(lambda t, y, p: -y, [1.0], 0, 5, 0.01)
    """
    if callable(equation):
        return integrate(equation, initial_conditions, t0, t1, step_size, method or Method.RK4, parameters,
                         on_failure=on_failure, max_steps=max_steps)

    compiler = DiffEqCompiler()
    result = compiler.compile(equation)
    if not result['success']:
        raise result['error_type'](result['error'])
    return compiler.simulate(initial_conditions, parameters, (t0, t1), step_size, method,
                             use_specialized=use_specialized, on_failure=on_failure, max_steps=max_steps)


# ============================================================================
# SESSION STATE
# ============================================================================

DEFAULT_EQUATION = "dy/dt = y"


@dataclass(frozen=True)
class SimulationState:
    """Immutable editing session: equation, parameters, initial values, solver settings"""
    equation: str = DEFAULT_EQUATION
    parameters: Mapping[str, float] = field(default_factory=dict)
    initial_conditions: InitialConditions = field(default_factory=lambda: InitialConditions({"y": 1.0}))
    time_start: float = DEFAULT_TIME_SPAN[0]
    time_end: float = DEFAULT_TIME_SPAN[1]
    method: Method = Method.RK4
    step_size: float = 0.1

    def solve(self, use_specialized: bool = True,
              on_failure: Union[str, FailurePolicy] = FailurePolicy.ABORT) -> Trajectory:
        return solve(self.equation, self.initial_conditions, self.time_start, self.time_end, self.step_size,
                     self.method, dict(self.parameters), use_specialized=use_specialized, on_failure=on_failure)


@dataclass(frozen=True)
class SetEquation:
    equation: str

@dataclass(frozen=True)
class SetParameter:
    name: str
    value: float

@dataclass(frozen=True)
class RemoveParameter:
    name: str

@dataclass(frozen=True)
class SetInitialCondition:
    variable: str
    order: int
    value: float

@dataclass(frozen=True)
class SetTimeRange:
    start: float
    end: float

@dataclass(frozen=True)
class SetMethod:
    method: Union[str, Method]

@dataclass(frozen=True)
class SetStepSize:
    step_size: float

@dataclass(frozen=True)
class Reset:
    pass


Action = Union[SetEquation, SetParameter, RemoveParameter, SetInitialCondition,
               SetTimeRange, SetMethod, SetStepSize, Reset]


def reduce_state(state: SimulationState, action: Action) -> SimulationState:
    """
    Apply one action and return the new state

    SetEquation keeps only the parameters and initial values the new equation
    still references; it never invents defaults for new ones.

    Raises:
        DiffEqError: SetEquation with an invalid equation
        ValueError: invalid time range, step size or method
        TypeError: not an Action
    """
    if isinstance(action, SetEquation):
        result = parse(action.equation)
        result.raise_for_error()
        parameters = {name: value for name, value in state.parameters.items() if name in result.parameters}
        layout = {(eq.dependent_var, k) for eq in result.equations for k in range(max(eq.order, 1))}
        return replace(state, equation=action.equation, parameters=parameters,
                       initial_conditions=state.initial_conditions.restricted_to(layout))

    elif isinstance(action, SetParameter):
        return replace(state, parameters={**state.parameters, action.name: float(action.value)})

    elif isinstance(action, RemoveParameter):
        return replace(state, parameters={k: v for k, v in state.parameters.items() if k != action.name})

    elif isinstance(action, SetInitialCondition):
        return replace(state, initial_conditions=state.initial_conditions.with_value(
            action.variable, action.order, action.value))

    elif isinstance(action, SetTimeRange):
        if action.end < action.start:
            raise ValueError(f"End time {action.end} precedes start time {action.start}")
        return replace(state, time_start=float(action.start), time_end=float(action.end))

    elif isinstance(action, SetMethod):
        return replace(state, method=Method.from_value(action.method))

    elif isinstance(action, SetStepSize):
        if not action.step_size > 0:
            raise ValueError(f"Step size must be positive, got {action.step_size}")
        return replace(state, step_size=float(action.step_size))

    elif isinstance(action, Reset):
        return SimulationState()

    raise TypeError(f"Unknown action: {type(action).__name__}")


# ============================================================================
# VALIDATION
# ============================================================================

class SystemValidator:
    """Validate fixed-step results against analytical and reference solutions"""

    @staticmethod
    def validate_against_analytical(trajectory: Trajectory, exact: Callable[[np.ndarray], np.ndarray],
                                    component: int = 0, tolerance: float = 1e-4,
                                    label: str = "Analytical comparison") -> bool:
        """Maximum absolute error of one component against a closed-form solution"""
        error = float(np.max(np.abs(trajectory.y[:, component] - exact(trajectory.t))))
        passed = error < tolerance

        print(f"\n{label}:")
        print(f"  Max error: {error:.3e} (tolerance {tolerance:.1e})")
        print(f"  {'✓' if passed else '✗'} {'PASSED' if passed else 'FAILED'}")
        return passed

    @staticmethod
    def oscillator_energy(trajectory: Trajectory, k: float = 1.0, mass: float = 1.0) -> np.ndarray:
        position, velocity = trajectory.y[:, 0], trajectory.y[:, 1]
        return 0.5 * mass * velocity ** 2 + 0.5 * k * position ** 2

    @staticmethod
    def validate_energy_conservation(trajectory: Trajectory, k: float = 1.0, mass: float = 1.0,
                                     tolerance: float = 1e-2) -> bool:
        """Relative energy drift of an undamped oscillator trajectory"""
        energy = SystemValidator.oscillator_energy(trajectory, k, mass)
        scale = abs(energy[0]) if energy[0] != 0 else 1.0
        drift = float(np.max(np.abs(energy - energy[0])) / scale)
        passed = drift < tolerance

        print("\nEnergy Conservation:")
        print(f"  Initial energy: {energy[0]:.6f}")
        print(f"  Final energy:   {energy[-1]:.6f}")
        print(f"  Max relative drift: {drift:.3e} (tolerance {tolerance:.1e})")
        print(f"  {'✓' if passed else '✗'} {'PASSED' if passed else 'FAILED'}")
        return passed

    @staticmethod
    def reference_solution(rhs: Callable, trajectory: Trajectory, params: Optional[Mapping[str, float]] = None,
                           rtol: float = 1e-10, atol: float = 1e-12) -> np.ndarray:
        """High-accuracy adaptive solution sampled at the trajectory's times"""
        t = trajectory.t
        if len(t) < 2:
            return np.array(trajectory.y)
        params = dict(params or {})
        sol = solve_ivp(lambda tt, yy: rhs(tt, yy, params), (t[0], t[-1]), trajectory.y[0],
                        method="DOP853", t_eval=t, rtol=rtol, atol=atol)
        if not sol.success:
            raise SolverFailedError(float(t[0]), RuntimeError(sol.message))
        return sol.y.T

    @staticmethod
    def compare_with_reference(rhs: Callable, trajectory: Trajectory, params: Optional[Mapping[str, float]] = None,
                               tolerance: float = 1e-3, label: str = "Reference comparison") -> bool:
        reference = SystemValidator.reference_solution(rhs, trajectory, params)
        error = float(np.max(np.abs(trajectory.y - reference)))
        passed = error < tolerance

        print(f"\n{label}:")
        print(f"  Max deviation from adaptive reference: {error:.3e} (tolerance {tolerance:.1e})")
        print(f"  {'✓' if passed else '✗'} {'PASSED' if passed else 'FAILED'}")
        return passed

    @staticmethod
    def run_all_tests() -> bool:
        """Run the validation suite and print a summary"""
        print("\n" + "="*70)
        print("DIFFEQ DSL VALIDATION SUITE")
        print("="*70)

        results = {}

        print("\n" + "-"*70)
        print("Test 1: Exponential decay dy/dt = -y")
        print("-"*70)
        decay = solve("dy/dt = -y", {"y": 1.0}, 0.0, 5.0, 0.01, method=Method.RK4)
        results["exponential_decay"] = SystemValidator.validate_against_analytical(
            decay, lambda t: np.exp(-t), tolerance=1e-6, label="Exponential decay vs exp(-t)")

        print("\n" + "-"*70)
        print("Test 2: Harmonic oscillator energy")
        print("-"*70)
        oscillator = solve("d^2y/dt^2 = -k*y", {"y": 1.0, "y_dot": 0.0}, 0.0, 20.0, 0.01,
                           method=Method.RK4, parameters={"k": 1.0})
        results["harmonic_energy"] = SystemValidator.validate_energy_conservation(oscillator, k=1.0)

        print("\n" + "-"*70)
        print("Test 3: Logistic growth")
        print("-"*70)
        r, K, p0 = 1.0, 10.0, 0.5
        logistic = solve("dP/dt = r*P*(1 - P/K)", {"P": p0}, 0.0, 10.0, 0.01,
                         method=Method.RK4, parameters={"r": r, "K": K})
        results["logistic"] = SystemValidator.validate_against_analytical(
            logistic, lambda t: K / (1 + (K / p0 - 1) * np.exp(-r * t)), tolerance=1e-6,
            label="Logistic vs closed form")

        print("\n" + "-"*70)
        print("Test 4: Lotka-Volterra against an adaptive reference")
        print("-"*70)
        example = EXAMPLE_SYSTEMS["lotka_volterra"]
        compiler = DiffEqCompiler()
        compiler.compile(example["equation"])
        lv = compiler.simulate(example["initial_conditions"], example["parameters"], (0.0, 10.0), 0.01)
        results["lotka_volterra"] = SystemValidator.compare_with_reference(
            compiler.system, lv, example["parameters"], tolerance=1e-4, label="Lotka-Volterra vs DOP853")

        print("\n" + "="*70)
        print("VALIDATION SUMMARY")
        print("="*70)
        for name, passed in results.items():
            print(f"  {'✓' if passed else '✗'} {name}")

        passed_count = sum(results.values())
        print(f"\n{passed_count}/{len(results)} tests passed")
        return passed_count == len(results)


# ============================================================================
# EXAMPLE SYSTEMS
# ============================================================================

EXAMPLE_SYSTEMS: Dict[str, Dict[str, Any]] = {
    "exponential_growth": {
        "equation": "dy/dt = r*y",
        "parameters": {"r": 0.5},
        "initial_conditions": {"y": 1.0},
        "t_span": (0.0, 5.0),
    },
    "logistic_growth": {
        "equation": "dP/dt = r*P*(1 - P/K)",
        "parameters": {"r": 1.0, "K": 10.0},
        "initial_conditions": {"P": 0.5},
        "t_span": (0.0, 10.0),
    },
    "harmonic_oscillator": {
        "equation": "d^2x/dt^2 + ω^2*x = 0",
        "parameters": {"ω": 1.0},
        "initial_conditions": {"x": 1.0, "x_dot": 0.0},
        "t_span": (0.0, 20.0),
    },
    "damped_oscillator": {
        "equation": "d²y/dt² = -k*y - c*dy/dt",
        "parameters": {"k": 1.0, "c": 0.2},
        "initial_conditions": {"y": 1.0, "y_dot": 0.0},
        "t_span": (0.0, 20.0),
    },
    "pendulum": {
        "equation": "d^2θ/dt^2 + (g/L)*sin(θ) = 0",
        "parameters": {"g": 9.8, "L": 1.0},
        "initial_conditions": {"θ": 0.5, "θ_dot": 0.0},
        "t_span": (0.0, 10.0),
    },
    "lotka_volterra": {
        "equation": "dx/dt = α*x - β*x*y\ndy/dt = δ*x*y - γ*y",
        "parameters": {"α": 1.0, "β": 0.1, "δ": 0.1, "γ": 1.0},
        "initial_conditions": {"x": 10.0, "y": 5.0},
        "t_span": (0.0, 20.0),
    },
}


def run_example(example_name: str = "harmonic_oscillator", t_span: Optional[Tuple[float, float]] = None,
                step_size: float = DEFAULT_STEP_SIZE, method: Optional[Union[str, Method]] = None,
                use_specialized: bool = True) -> dict:
    """
    Compile and simulate one of the bundled examples

    Returns:
        {'compiler': DiffEqCompiler, 'solution': Trajectory or None, 'result': compile result}
    """
    if example_name not in EXAMPLE_SYSTEMS:
        raise ValueError(f"Unknown example: {example_name}. Available: {list(EXAMPLE_SYSTEMS.keys())}")

    example = EXAMPLE_SYSTEMS[example_name]
    compiler = DiffEqCompiler()
    result = compiler.compile(example["equation"])

    if not result['success']:
        print(f"Compilation failed: {result['error']}")
        return {'compiler': compiler, 'solution': None, 'result': result}

    compiler.print_equations()
    solution = compiler.simulate(example["initial_conditions"], example["parameters"],
                                 t_span or example["t_span"], step_size, method,
                                 use_specialized=use_specialized)

    print(f"Simulated {len(solution)} samples with {solution.method.value}")
    for name, value in zip(solution.state_names, solution.final_state):
        print(f"  {name}({solution.t[-1]:g}) = {value:.6f}")

    return {'compiler': compiler, 'solution': solution, 'result': result}


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def _parse_assignments(items: Optional[List[str]], option: str) -> Dict[str, float]:
    values = {}
    for item in items or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"{option} expects NAME=VALUE, got '{item}'")
        try:
            values[name.strip()] = float(value)
        except ValueError:
            raise ValueError(f"{option} value for '{name.strip()}' is not a number: '{value}'") from None
    return values


def main(argv: Optional[List[str]] = None) -> int:
    """Command line interface"""
    import argparse

    parser = argparse.ArgumentParser(description="DiffEqDSL - analyse and integrate differential equations")
    parser.add_argument('--example', '-e', choices=list(EXAMPLE_SYSTEMS.keys()), help='Run a bundled example')
    parser.add_argument('--equation', help='Equation text; separate system equations with "\\n" or ";"')
    parser.add_argument('--param', '-p', action='append', metavar='NAME=VALUE', help='Parameter value')
    parser.add_argument('--initial', '-i', action='append', metavar='KEY=VALUE',
                        help="Initial condition, e.g. y=1, y_dot=0 or y'=0")
    parser.add_argument('--start', type=float, default=DEFAULT_TIME_SPAN[0], help='Start time')
    parser.add_argument('--time', '-t', type=float, default=DEFAULT_TIME_SPAN[1], help='End time')
    parser.add_argument('--step', '-s', type=float, default=DEFAULT_STEP_SIZE, help='Step size')
    parser.add_argument('--method', '-m', choices=[m.value for m in STEPPERS],
                        help='Integration method (default: recommended)')
    parser.add_argument('--generic', action='store_true', help='Do not use specialized right-hand sides')
    parser.add_argument('--skip-failed-steps', action='store_true', help='Skip failing steps instead of aborting')
    parser.add_argument('--analyze', '-a', action='store_true', help='Only print the analysis')
    parser.add_argument('--export', metavar='FILE.json', help='Write the trajectory as JSON')
    parser.add_argument('--test', action='store_true', help='Run the validation suite')

    args = parser.parse_args(argv)

    if args.test:
        return 0 if SystemValidator.run_all_tests() else 1

    if args.example:
        example = EXAMPLE_SYSTEMS[args.example]
        equation = example["equation"]
        parameters = dict(example["parameters"])
        initial = dict(example["initial_conditions"])
    elif args.equation:
        equation = args.equation.replace("\\n", "\n").replace(";", "\n")
        parameters, initial = {}, {}
    else:
        parser.print_help()
        return 1

    try:
        parameters.update(_parse_assignments(args.param, "--param"))
        initial.update(_parse_assignments(args.initial, "--initial"))
    except ValueError as e:
        print(f"✗ {e}")
        return 1

    compiler = DiffEqCompiler()
    result = compiler.compile(equation)
    compiler.print_equations()

    if args.analyze:
        return 0 if compiler.analysis.valid else 1
    if not result['success']:
        print(f"✗ Compilation failed: {result['error']}")
        return 1

    try:
        solution = compiler.simulate(
            initial, parameters, (args.start, args.time), args.step, args.method,
            use_specialized=not args.generic,
            on_failure=FailurePolicy.SKIP if args.skip_failed_steps else FailurePolicy.ABORT,
        )
    except (DiffEqError, ValueError) as e:
        print(f"✗ Simulation failed: {e}")
        return 1

    print(f"✓ {len(solution)} samples with {solution.method.value} (step {args.step:g})")
    for name, value in zip(solution.state_names, solution.final_state):
        print(f"  {name}({solution.t[-1]:g}) = {value:.6f}")

    if args.export:
        with open(args.export, 'w', encoding='utf-8') as f:
            json.dump(solution.to_dict(), f, indent=2)
        print(f"✓ Trajectory written to {args.export}")

    return 0


__all__ = [
    # Errors
    'DiffEqError', 'MissingEqualsSignError', 'InvalidDifferentialNotationError',
    'UnsupportedExpressionError', 'EvaluationError', 'UnknownSymbolError', 'ExpressionSyntaxError',
    'UnsupportedOrderError', 'MissingInitialConditionError', 'SolverFailedError', 'DiffEqWarning',
    # Expressions
    'Token', 'tokenize', 'ExpressionParser', 'CompiledExpression', 'parse_expression', 'evaluate_expression',
    'derivative_name', 'SymbolicEngine',
    # Parsing and analysis
    'EquationKind', 'ParsedEquation', 'ParseResult', 'parse', 'parse_equation_line',
    'Stiffness', 'Archetype', 'Method', 'ArchetypeMatch', 'Analysis', 'analyze',
    'detect_archetype', 'recommend_method',
    # Reduction and integration
    'FirstOrderSystem', 'reduce_order', 'InitialConditions',
    'SpecializedEquation', 'SPECIALIZED_EQUATIONS', 'get_specialized',
    'exponential_growth', 'logistic_growth', 'harmonic_oscillator', 'damped_oscillator',
    'pendulum', 'pendulum_small_angle', 'lotka_volterra',
    'FailurePolicy', 'SolverConfig', 'Trajectory', 'integrate',
    # Facade
    'DiffEqCompiler', 'solve', 'SimulationState', 'reduce_state',
    'SetEquation', 'SetParameter', 'RemoveParameter', 'SetInitialCondition',
    'SetTimeRange', 'SetMethod', 'SetStepSize', 'Reset',
    'SystemValidator', 'EXAMPLE_SYSTEMS', 'run_example', 'main',
]


if __name__ == '__main__':
    raise SystemExit(main())
