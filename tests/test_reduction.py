"""
Order reduction to first-order vector form and initial-condition layout.
"""

import numpy as np
import pytest

from diffeq_dsl import (
    InitialConditions,
    MissingInitialConditionError,
    UnsupportedExpressionError,
    UnsupportedOrderError,
    parse,
    reduce_order,
)


class TestReduceOrder:

    def test_second_order_layout(self):
        system = reduce_order("d^2y/dt^2 = -k*y")
        assert system.state_layout == (("y", 0), ("y", 1))
        assert system.state_names == ("y", "y_dot")
        np.testing.assert_allclose(system(0.0, [2.0, 3.0], {"k": 4.0}), [3.0, -8.0])

    def test_velocity_feeds_rhs(self):
        system = reduce_order("d^2y/dt^2 = -k*y - c*dy/dt")
        np.testing.assert_allclose(system(0.0, [1.0, 2.0], {"k": 1.0, "c": 0.5}), [2.0, -2.0])

    def test_first_order_passthrough(self):
        system = reduce_order("dx/dt = -x")
        assert system.state_layout == (("x", 0),)
        np.testing.assert_allclose(system(0.0, [3.0], {}), [-3.0])

    def test_independent_variable_in_scope(self):
        system = reduce_order("dy/dx = x*y")
        assert system.independent_var == "x"
        np.testing.assert_allclose(system(2.0, [3.0]), [6.0])

    def test_system_layout_follows_equation_order(self):
        system = reduce_order("dx/dt = v\ndv/dt = -x")
        assert system.state_names == ("x", "v")
        np.testing.assert_allclose(system(0.0, [1.0, 2.0]), [2.0, -1.0])

    def test_accepts_parse_result(self):
        system = reduce_order(parse("y'' = -y"), "y")
        assert system.state_names == ("y", "y_dot")

    def test_wrong_dependent_variable(self):
        with pytest.raises(ValueError):
            reduce_order("dy/dt = -y", "z")

    def test_third_order_unsupported(self):
        with pytest.raises(UnsupportedOrderError):
            reduce_order("d^3y/dt^3 = -y")

    def test_algebraic_unsupported(self):
        with pytest.raises(UnsupportedOrderError):
            reduce_order("y = 2*x")

    def test_partial_not_solved(self):
        with pytest.raises(UnsupportedExpressionError):
            reduce_order("∂u/∂t = k*∂^2u/∂x^2")

    def test_missing_parameters(self):
        system = reduce_order("d^2y/dt^2 = -k*y - c*dy/dt")
        assert system.missing_parameters({"k": 1.0}) == ["c"]


class TestInitialConditions:

    @pytest.mark.parametrize("key, expected", [
        ("y", ("y", 0)),
        ("y_dot", ("y", 1)),
        ("y_ddot", ("y", 2)),
        ("y_d3", ("y", 3)),
        ("y'", ("y", 1)),
        ("θ_dot", ("θ", 1)),
        (("x", 1), ("x", 1)),
    ])
    def test_key_forms(self, key, expected):
        assert InitialConditions.parse_key(key) == expected

    def test_vector_in_layout_order(self):
        ics = InitialConditions({"y_dot": 0.5, "y": 1.0})
        np.testing.assert_allclose(ics.vector([("y", 0), ("y", 1)]), [1.0, 0.5])

    def test_missing_entries_are_listed(self):
        ics = InitialConditions({"y": 1.0})
        with pytest.raises(MissingInitialConditionError, match="y_dot") as info:
            ics.vector([("y", 0), ("y", 1)])
        assert info.value.missing == (("y", 1),)

    def test_with_value_does_not_mutate(self):
        ics = InitialConditions({"y": 1.0})
        updated = ics.with_value("y", 1, 0.0)
        assert ("y", 1) not in ics
        assert updated["y_dot"] == 0.0

    def test_restricted_to(self):
        ics = InitialConditions({"x": 1.0, "y": 2.0, "y_dot": 3.0})
        assert ics.restricted_to({"y"}) == InitialConditions({"y": 2.0, "y'": 3.0})
