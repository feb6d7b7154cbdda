"""
Compiler facade, solve(), session state, validator, examples and CLI.
"""

import json
import math
import warnings

import numpy as np
import pytest

from diffeq_dsl import (
    EXAMPLE_SYSTEMS,
    DiffEqCompiler,
    DiffEqWarning,
    InitialConditions,
    InvalidDifferentialNotationError,
    Method,
    MissingEqualsSignError,
    MissingInitialConditionError,
    RemoveParameter,
    Reset,
    SetEquation,
    SetInitialCondition,
    SetMethod,
    SetParameter,
    SetStepSize,
    SetTimeRange,
    SimulationState,
    SystemValidator,
    UnknownSymbolError,
    UnsupportedOrderError,
    main,
    reduce_state,
    run_example,
    solve,
)


@pytest.fixture
def compiler():
    return DiffEqCompiler()


@pytest.fixture
def damped_state():
    state = SimulationState()
    for action in (
        SetEquation("d^2y/dt^2 = -k*y - c*dy/dt"),
        SetParameter("k", 1.0),
        SetParameter("c", 0.5),
        SetInitialCondition("y", 0, 1.0),
        SetInitialCondition("y", 1, 0.0),
    ):
        state = reduce_state(state, action)
    return state


class TestCompiler:

    def test_compile_success(self, compiler):
        result = compiler.compile("d^2y/dt^2 = -k*y")
        assert result['success']
        assert result['archetype'] == "Harmonic Oscillator"
        assert result['state_names'] == ["y", "y_dot"]
        assert result['parameters'] == ["k"]
        assert result['compilation_time'] >= 0

    def test_compile_failure_is_reported(self, compiler):
        result = compiler.compile("dy/dt y")
        assert not result['success']
        assert result['error_type'] is MissingEqualsSignError

    def test_algebraic_does_not_compile(self, compiler):
        result = compiler.compile("y = 2*x")
        assert not result['success']
        assert result['error_type'] is UnsupportedOrderError
        assert result['analysis'].recommended_method is Method.ANALYTICAL

    def test_simulate_before_compile(self, compiler):
        with pytest.raises(RuntimeError):
            compiler.simulate({"y": 1.0})

    def test_missing_parameter(self, compiler):
        compiler.compile("dy/dt = -k*y")
        with pytest.raises(UnknownSymbolError, match="k"):
            compiler.simulate({"y": 1.0})

    def test_missing_initial_condition(self, compiler):
        compiler.compile("d^2y/dt^2 = -k*y")
        with pytest.raises(MissingInitialConditionError, match="y_dot"):
            compiler.simulate({"y": 1.0}, {"k": 1.0})

    def test_recommended_method_is_used(self, compiler):
        compiler.compile("dy/dt = -y")
        traj = compiler.simulate({"y": 1.0}, t_span=(0.0, 1.0), step_size=0.1)
        assert traj.method is Method.MIDPOINT

    def test_stiff_equation_warns(self, compiler):
        compiler.compile("d^2y/dt^2 = -k*y - c*dy/dt")
        with pytest.warns(DiffEqWarning, match="stiff"):
            compiler.simulate({"y": 1.0, "y_dot": 0.0}, {"k": 1.0, "c": 20.0}, (0.0, 1.0), 0.001)

    def test_get_info(self, compiler):
        compiler.compile("dx/dt = α*x - β*x*y\ndy/dt = δ*x*y - γ*y")
        info = compiler.get_info()
        assert info['kind'] == "System"
        assert info['specialized'] == "lotka_volterra"
        assert info['required_initial_conditions'] == 2

    def test_print_equations(self, compiler, capsys):
        compiler.compile("d^2y/dt^2 = -k*y")
        compiler.print_equations()
        out = capsys.readouterr().out
        assert "d(y)/dt = y_dot" in out
        assert "d(y_dot)/dt = -k*y" in out


class TestSolve:

    def test_text_equation(self):
        traj = solve("dy/dt = -k*y", {"y": 1.0}, 0.0, 5.0, 0.01, "rk4", {"k": 1.0})
        assert traj.y[-1, 0] == pytest.approx(math.exp(-traj.t[-1]), abs=1e-8)

    def test_invalid_text_raises_typed_error(self):
        with pytest.raises(InvalidDifferentialNotationError):
            solve("d/dt = y", {"y": 1.0})

    def test_system(self):
        example = EXAMPLE_SYSTEMS["lotka_volterra"]
        traj = solve(example["equation"], example["initial_conditions"], 0.0, 5.0, 0.01,
                     parameters=example["parameters"])
        assert traj.state_names == ("x", "y")
        assert np.all(traj.y > 0)

    def test_generic_path_with_time_forcing(self):
        traj = solve("dy/dt = cos(t)", {"y": 0.0}, 0.0, math.pi / 2, 0.001, "rk4")
        assert traj.y[-1, 0] == pytest.approx(math.sin(traj.t[-1]), abs=1e-9)


class TestSessionState:

    def test_defaults(self):
        state = SimulationState()
        assert state.equation == "dy/dt = y"
        assert state.method is Method.RK4
        assert state.step_size == 0.1
        assert (state.time_start, state.time_end) == (0.0, 10.0)

    def test_actions_do_not_mutate(self, damped_state):
        updated = reduce_state(damped_state, SetParameter("k", 4.0))
        assert damped_state.parameters["k"] == 1.0
        assert updated.parameters["k"] == 4.0

    def test_set_equation_prunes_without_defaults(self, damped_state):
        state = reduce_state(damped_state, SetEquation("dy/dt = -k*y + u"))
        assert dict(state.parameters) == {"k": 1.0}
        assert state.initial_conditions == InitialConditions({"y": 1.0})
        assert "u" not in state.parameters

    def test_set_equation_rejects_invalid(self, damped_state):
        with pytest.raises(MissingEqualsSignError):
            reduce_state(damped_state, SetEquation("dy/dt -y"))

    def test_remove_parameter(self, damped_state):
        state = reduce_state(damped_state, RemoveParameter("c"))
        assert "c" not in state.parameters

    def test_solver_settings(self, damped_state):
        state = reduce_state(damped_state, SetMethod("heun"))
        state = reduce_state(state, SetStepSize(0.05))
        state = reduce_state(state, SetTimeRange(1.0, 2.0))
        assert state.method is Method.HEUN
        assert state.step_size == 0.05
        traj = state.solve()
        assert traj.t[0] == 1.0
        assert traj.method is Method.HEUN

    @pytest.mark.parametrize("action", [SetStepSize(0.0), SetTimeRange(2.0, 1.0), SetMethod("leapfrog")])
    def test_invalid_settings(self, damped_state, action):
        with pytest.raises(ValueError):
            reduce_state(damped_state, action)

    def test_reset(self, damped_state):
        assert reduce_state(damped_state, Reset()) == SimulationState()

    def test_unknown_action(self):
        with pytest.raises(TypeError):
            reduce_state(SimulationState(), "RESET")

    def test_default_state_solves(self):
        traj = SimulationState().solve()
        assert traj.y[-1, 0] == pytest.approx(math.exp(traj.t[-1]), rel=1e-4)


class TestValidator:

    def test_analytical_comparison(self, capsys):
        traj = solve("dy/dt = -y", {"y": 1.0}, 0.0, 2.0, 0.01, "rk4")
        assert SystemValidator.validate_against_analytical(traj, lambda t: np.exp(-t))
        assert "PASSED" in capsys.readouterr().out

    def test_energy_conservation_detects_euler_drift(self):
        rk4 = solve("d^2y/dt^2 = -y", {"y": 1.0, "y_dot": 0.0}, 0.0, 20.0, 0.01, "rk4")
        euler = solve("d^2y/dt^2 = -y", {"y": 1.0, "y_dot": 0.0}, 0.0, 20.0, 0.01, "euler")
        assert SystemValidator.validate_energy_conservation(rk4)
        assert not SystemValidator.validate_energy_conservation(euler)

    def test_reference_solution(self, compiler):
        example = EXAMPLE_SYSTEMS["pendulum"]
        compiler.compile(example["equation"])
        traj = compiler.simulate(example["initial_conditions"], example["parameters"], (0.0, 2.0), 0.01)
        assert SystemValidator.compare_with_reference(compiler.system, traj, example["parameters"])

    def test_run_all_tests(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DiffEqWarning)
            assert SystemValidator.run_all_tests()


class TestExamplesAndCli:

    @pytest.mark.parametrize("name", list(EXAMPLE_SYSTEMS))
    def test_every_example_runs(self, name):
        outcome = run_example(name, step_size=0.01)
        assert outcome['result']['success']
        assert outcome['solution'] is not None
        assert np.all(np.isfinite(outcome['solution'].y))

    def test_unknown_example(self):
        with pytest.raises(ValueError):
            run_example("double_pendulum")

    def test_cli_equation_and_export(self, tmp_path, capsys):
        out_file = tmp_path / "traj.json"
        code = main(["--equation", "dy/dt = -k*y", "--param", "k=2", "--initial", "y=1",
                     "--time", "1", "--step", "0.1", "--method", "euler", "--export", str(out_file)])
        assert code == 0
        data = json.loads(out_file.read_text(encoding="utf-8"))
        assert data["y"][1] == pytest.approx([0.8])
        assert "✓" in capsys.readouterr().out

    def test_cli_system_separator(self):
        code = main(["--equation", "dx/dt = y; dy/dt = -x", "--initial", "x=1", "--initial", "y=0",
                     "--time", "1"])
        assert code == 0

    def test_cli_analyze_only(self, capsys):
        assert main(["--equation", "dy/dt = y^2", "--analyze"]) == 0
        assert "non-linear" in capsys.readouterr().out

    def test_cli_reports_failures(self, capsys):
        assert main(["--equation", "d^2y/dt^2 = -y", "--initial", "y=1"]) == 1
        assert "y_dot" in capsys.readouterr().out

    def test_cli_bad_assignment(self):
        assert main(["--equation", "dy/dt = -y", "--param", "k"]) == 1

    def test_cli_example(self):
        assert main(["--example", "logistic_growth", "--time", "2"]) == 0

    def test_cli_without_arguments(self):
        assert main([]) == 1
