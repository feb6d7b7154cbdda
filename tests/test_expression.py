"""
Expression evaluator: tokenizer, precedence, functions, errors.
"""

import math

import pytest
import sympy as sp

from diffeq_dsl import (
    CompiledExpression,
    DerivativeRefExpr,
    EvaluationError,
    ExpressionSyntaxError,
    SymbolicEngine,
    UnknownSymbolError,
    evaluate_expression,
    parse_expression,
    tokenize,
)


class TestTokenizer:

    def test_derivative_is_single_token(self):
        tokens = tokenize("-k*y - c*dy/dt")
        assert [t.type for t in tokens] == ["MINUS", "IDENT", "MULTIPLY", "IDENT", "MINUS",
                                            "IDENT", "MULTIPLY", "DERIVATIVE"]
        assert tokens[-1].value == "dy/dt"

    def test_identifier_starting_with_d(self):
        tokens = tokenize("delta*x - d*y")
        assert [t.value for t in tokens if t.type == "IDENT"] == ["delta", "x", "d", "y"]

    def test_name_starting_with_d_before_slash_dt(self):
        assert [t.type for t in tokenize("dist/dt")] == ["DERIVATIVE"]
        assert parse_expression("dist/dt").derivative_refs == {("ist", 1)}
        expr = parse_expression("(dist)/dt")
        assert expr.symbols == {"dist", "dt"}
        assert expr.evaluate({"dist": 6.0, "dt": 2.0}) == 3.0

    def test_double_star_is_power(self):
        assert [t.type for t in tokenize("y**2")] == ["IDENT", "POWER", "NUMBER"]

    def test_unexpected_character(self):
        with pytest.raises(ExpressionSyntaxError, match="column 3"):
            tokenize("y $ 2")


class TestPrecedence:

    @pytest.mark.parametrize("source, expected", [
        ("1 + 2*3", 7.0),
        ("(1 + 2)*3", 9.0),
        ("2^3^2", 512.0),
        ("-2^2", -4.0),
        ("2**3", 8.0),
        ("8/2/2", 2.0),
        ("2(3 + 1)", 8.0),
        ("3²", 9.0),
        ("1e-3*1000", 1.0),
        (".5 + .5", 1.0),
    ])
    def test_arithmetic(self, source, expected):
        assert evaluate_expression(source, {}) == pytest.approx(expected)

    def test_unary_minus_binds_looser_than_power(self):
        assert evaluate_expression("-y^2", {"y": 3.0}) == -9.0

    def test_constants(self):
        assert evaluate_expression("pi", {}) == pytest.approx(math.pi)
        assert evaluate_expression("e", {}) == pytest.approx(math.e)


class TestFunctions:

    @pytest.mark.parametrize("name, arg, expected", [
        ("sin", 0.5, math.sin(0.5)),
        ("cos", 0.5, math.cos(0.5)),
        ("tan", 0.5, math.tan(0.5)),
        ("exp", 1.0, math.e),
        ("log", math.e, 1.0),
        ("ln", math.e, 1.0),
        ("sqrt", 16.0, 4.0),
        ("abs", -2.5, 2.5),
        ("tanh", 0.3, math.tanh(0.3)),
    ])
    def test_builtin(self, name, arg, expected):
        assert evaluate_expression(f"{name}(a)", {"a": arg}) == pytest.approx(expected)

    def test_function_name_is_not_a_symbol(self):
        expr = parse_expression("r*sin(θ)")
        assert expr.symbols == {"r", "θ"}
        assert expr.functions == {"sin"}

    def test_function_without_arguments(self):
        with pytest.raises(ExpressionSyntaxError):
            parse_expression("sin + 1")

    def test_function_with_two_arguments(self):
        with pytest.raises(ExpressionSyntaxError, match="exactly one argument"):
            parse_expression("sin(1, 2)")


class TestEvaluation:

    def test_scope_lookup(self):
        expr = CompiledExpression("r*y*(1 - y/K)")
        assert expr.evaluate({"r": 1.0, "y": 5.0, "K": 10.0}) == pytest.approx(2.5)

    def test_repeated_evaluation_is_pure(self):
        expr = CompiledExpression("a*x + 1")
        assert expr.evaluate({"a": 2.0, "x": 1.0}) == 3.0
        assert expr.evaluate({"a": 3.0, "x": 1.0}) == 4.0
        assert expr.evaluate({"a": 2.0, "x": 1.0}) == 3.0

    def test_unknown_symbol(self):
        with pytest.raises(UnknownSymbolError) as info:
            evaluate_expression("k*y", {"y": 1.0})
        assert info.value.name == "k"

    def test_division_by_zero(self):
        with pytest.raises(EvaluationError, match="Division by zero"):
            evaluate_expression("1/y", {"y": 0.0})

    def test_domain_error(self):
        with pytest.raises(EvaluationError):
            evaluate_expression("sqrt(y)", {"y": -1.0})

    def test_overflow(self):
        with pytest.raises(EvaluationError):
            evaluate_expression("exp(y)", {"y": 1000.0})

    @pytest.mark.parametrize("source, scope", [
        ("y^2.5", {"y": -1.0}),
        ("sqrt(-1)", {}),
        ("log(y)", {"y": 0.0}),
    ])
    def test_complex_or_singular_results(self, source, scope):
        with pytest.raises(EvaluationError):
            evaluate_expression(source, scope)

    def test_cancelled_symbols_are_still_required(self):
        expr = CompiledExpression("y - y + 1")
        assert expr.sympy_expr == 1
        with pytest.raises(UnknownSymbolError) as info:
            expr.evaluate({})
        assert info.value.name == "y"
        assert expr.evaluate({"y": 3.0}) == 1.0

    def test_evaluates_the_sympy_form(self):
        expr = CompiledExpression("-k*y - c*dy/dt")
        k, y, c, y_dot = sp.symbols("k y c y_dot", real=True)
        assert sp.simplify(expr.sympy_expr - (-k * y - c * y_dot)) == 0

    @pytest.mark.parametrize("source", ["1 +", "(1 + 2", "1 2", "*3", ""])
    def test_malformed(self, source):
        with pytest.raises(ExpressionSyntaxError):
            parse_expression(source)

    def test_derivative_reference_reads_state_name(self):
        expr = CompiledExpression("-k*y - c*dy/dt")
        assert expr.derivative_refs == {("y", 1)}
        assert expr.evaluate({"k": 1.0, "c": 2.0, "y": 1.0, "y_dot": 0.5}) == pytest.approx(-2.0)

    def test_prime_reference(self):
        expr = CompiledExpression("-y'")
        assert isinstance(expr.tree.operand, DerivativeRefExpr)
        assert expr.evaluate({"y_dot": 2.0}) == -2.0


class TestSymbolicConversion:

    def test_literals_become_rationals(self):
        engine = SymbolicEngine()
        expr = engine.ast_to_sympy(parse_expression("0.5*y").tree)
        y = engine.get_symbol("y")
        assert expr == y / 2

    def test_state_monomials(self):
        engine = SymbolicEngine()
        y = engine.get_symbol("y")
        r, K = engine.get_symbol("r"), engine.get_symbol("K")
        expr = engine.ast_to_sympy(parse_expression("r*y*(1 - y/K)").tree)
        assert engine.state_monomials(expr, [y]) == {y: r, y ** 2: -r / K}

    def test_linearity(self):
        engine = SymbolicEngine()
        y = engine.get_symbol("y")
        assert engine.is_linear(engine.ast_to_sympy(parse_expression("-k*y + sin(t)").tree), [y])
        assert not engine.is_linear(engine.ast_to_sympy(parse_expression("sin(y)").tree), [y])
