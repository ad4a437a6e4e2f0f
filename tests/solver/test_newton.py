"""
Tests for the Newton step orchestrator.
"""
import logging

import numpy as np
import pandas as pd
import pytest

from hydronewton.core.config import ConvergenceTolerances, RefinementStrategy, SolverConfig
from hydronewton.core.exceptions import (
    ConfigurationError,
    ConstraintError,
    EvaluatorError,
    InfeasibleStateError,
    JacobianError,
    RefinementNotImplementedError,
    SizeMismatchError,
)
from hydronewton.core.types import JacobianResult, LayerState, StateEntry, StateIndex, StateType
from hydronewton.solver.newton import NewtonStepSolver
from hydronewton.solver.problem import Brackets, SolveContext


class DiagonalUpdatingBuilder:
    """Fixed full Jacobian; adds one to the diagonal term and records the context flags it saw"""

    def __init__(self, matrix):
        self.matrix = np.asarray(matrix, dtype=float)
        self.flags = None

    def build(self, context, layout, diagonal):
        self.flags = (context.first_sub_step, context.compute_veg_flux)
        return JacobianResult(matrix=layout.from_full(self.matrix), diagonal=diagonal + 1.0)


def _step_inputs(evaluator, state):
    """Residual and objective at the trial state, as the caller would hold them"""
    evaluation = evaluator.evaluate(state, True)
    evaluator.calls.clear()
    return evaluation.residual, evaluation.objective


class TestNewtonStepSolver:
    """Test suite for NewtonStepSolver"""

    @pytest.fixture
    def state(self):
        return np.array([280.0, 280.0])

    def test_linear_problem_converges_in_one_step(self, linear_evaluator, make_builder, two_state_matrix,
                                                  two_state_context, two_state_root, state):
        solver = NewtonStepSolver(linear_evaluator, make_builder(two_state_matrix))
        residual, f_old = _step_inputs(linear_evaluator, state)

        result = solver.step(state, residual, f_old, np.ones(2), np.ones(2), two_state_context,
                             diagonal=np.zeros(2))

        assert result.converged
        assert result.path == "line_search"
        np.testing.assert_allclose(result.state, two_state_root)
        np.testing.assert_allclose(result.residual, 0.0, atol=1e-9)
        np.testing.assert_array_equal(result.sink, np.zeros(2))
        assert linear_evaluator.calls[0][1] is True
        assert two_state_context.first_flux_call is False

    def test_scaling_does_not_change_newton_increment(self, linear_evaluator, two_state_matrix,
                                                      two_state_context, two_state_root, state):
        solver = NewtonStepSolver(linear_evaluator)
        residual, f_old = _step_inputs(linear_evaluator, state)

        result = solver.step(state, residual, f_old, np.array([10.0, 0.1]), np.array([2.0, 0.5]),
                             two_state_context, jacobian=two_state_matrix)

        np.testing.assert_allclose(result.state, two_state_root)

    def test_banded_solve(self, make_linear_evaluator, make_builder, tridiagonal_matrix, banded_layout,
                          soil_context):
        root = np.array([280.2, 280.4, 279.9])
        evaluator = make_linear_evaluator(tridiagonal_matrix, root)
        context = soil_context(3, layout=banded_layout)
        state = np.full(3, 280.0)
        residual, f_old = _step_inputs(evaluator, state)

        solver = NewtonStepSolver(evaluator, make_builder(tridiagonal_matrix))
        result = solver.step(state, residual, f_old, np.ones(3), np.ones(3), context, diagonal=np.zeros(3))

        assert result.converged
        np.testing.assert_allclose(result.state, root)

    def test_falls_back_to_full_newton_step(self, make_constant_evaluator, soil_context, state, caplog):
        evaluator = make_constant_evaluator([1.0, 1.0], objective=100.0)
        solver = NewtonStepSolver(evaluator)

        with caplog.at_level(logging.INFO, logger="hydronewton"):
            result = solver.step(state, np.array([-0.5, -0.5]), 0.25, np.ones(2), np.ones(2),
                                 soil_context(2), jacobian=np.eye(2))

        assert result.path == "full_newton"
        assert not result.converged
        np.testing.assert_allclose(result.state, [280.5, 280.5])
        # five backtracking attempts, then one full step
        assert evaluator.calls == 6
        assert solver.history[-1].fell_back
        assert any("full Newton step" in record.getMessage() for record in caplog.records)

    def test_single_state_uses_scalar_solver(self, make_linear_evaluator, soil_context):
        evaluator = make_linear_evaluator(np.eye(1), [280.3])
        solver = NewtonStepSolver(evaluator)
        state = np.array([280.0])

        result = solver.step(state, state - 280.3, 0.045, np.ones(1), np.ones(1), soil_context(1),
                             jacobian=np.eye(1))

        assert result.path == "newton"
        assert result.converged
        assert solver.brackets.x_min == pytest.approx(280.0)

    def test_caller_owned_brackets(self, make_linear_evaluator, soil_context):
        evaluator = make_linear_evaluator(np.eye(1), [280.3])
        solver = NewtonStepSolver(evaluator)
        brackets = Brackets()

        solver.step(np.array([280.0]), np.array([-0.3]), 0.045, np.ones(1), np.ones(1), soil_context(1),
                    brackets=brackets, jacobian=np.eye(1))

        assert brackets.x_min == pytest.approx(280.0)
        assert np.isnan(solver.brackets.x_min)

    def test_fatal_error_carries_component_chain(self, make_linear_evaluator, soil_context):
        evaluator = make_linear_evaluator(np.eye(1), [280.3], feasible=False)
        solver = NewtonStepSolver(evaluator)

        with pytest.raises(InfeasibleStateError) as exc_info:
            solver.step(np.array([280.0]), np.array([-0.3]), 0.045, np.ones(1), np.ones(1),
                        soil_context(1), jacobian=np.eye(1))

        assert exc_info.value.message.startswith("newton_step/scalar/")

    def test_constraint_error_carries_component_chain(self, make_constant_evaluator):
        entries = [StateEntry(StateType.LIQ_LAYER, layer=0), StateEntry(StateType.LIQ_LAYER, layer=1)]
        index = StateIndex.from_entries(entries, n_snow=2, n_soil=1)
        index.state_types[0] = StateType.MAT_LAYER
        layers = LayerState(
            layer_depth=np.full(3, 0.1),
            layer_temp=np.full(3, 270.0),
            layer_matric_head=np.full(1, -1.0),
        )
        context = SolveContext(iteration=1, index=index, layers=layers)
        solver = NewtonStepSolver(make_constant_evaluator([0.01, 0.01]))

        with pytest.raises(ConstraintError) as exc_info:
            solver.step(np.array([0.1, 0.1]), np.array([0.01, 0.01]), 1e-4, np.ones(2), np.ones(2),
                        context, jacobian=np.eye(2))

        assert exc_info.value.message.startswith("newton_step/line_search/constraints/")

    def test_size_mismatch_detected_eagerly(self, linear_evaluator, two_state_context, state):
        solver = NewtonStepSolver(linear_evaluator)

        with pytest.raises(SizeMismatchError) as exc_info:
            solver.step(state, np.zeros(3), 0.0, np.ones(2), np.ones(2), two_state_context,
                        jacobian=np.eye(2))
        assert exc_info.value.message.startswith("newton_step/")

        with pytest.raises(SizeMismatchError):
            solver.step(state, np.zeros(2), 0.0, np.ones(2), np.ones(2), two_state_context,
                        jacobian=np.eye(3))

        assert linear_evaluator.n_calls == 0

    def test_trust_region_not_implemented(self, linear_evaluator, two_state_matrix, two_state_context, state):
        config = SolverConfig(refinement=RefinementStrategy.TRUST_REGION)
        solver = NewtonStepSolver(linear_evaluator, config=config)
        residual, f_old = _step_inputs(linear_evaluator, state)

        with pytest.raises(RefinementNotImplementedError) as exc_info:
            solver.step(state, residual, f_old, np.ones(2), np.ones(2), two_state_context,
                        jacobian=two_state_matrix)

        assert exc_info.value.message == "newton_step/trust_region/routine not implemented yet"

    def test_configured_tolerances_decide_convergence(self, make_constant_evaluator, soil_context, state):
        evaluator = make_constant_evaluator([1.0, 1.0], objective=0.0)
        loose = SolverConfig(tolerances=ConvergenceTolerances(energy=1000.0))

        strict_result = NewtonStepSolver(evaluator).step(
            state, np.array([-0.5, -0.5]), 0.25, np.ones(2), np.ones(2), soil_context(2), jacobian=np.eye(2)
        )
        loose_result = NewtonStepSolver(evaluator, config=loose).step(
            state, np.array([-0.5, -0.5]), 0.25, np.ones(2), np.ones(2), soil_context(2), jacobian=np.eye(2)
        )

        assert not strict_result.converged
        assert loose_result.converged
        assert loose_result.report.energy_max == pytest.approx(1.0)

    def test_context_tolerances_override_config(self, make_constant_evaluator, soil_context, state):
        evaluator = make_constant_evaluator([1.0, 1.0], objective=0.0)
        solver = NewtonStepSolver(evaluator, config=SolverConfig(tolerances=ConvergenceTolerances(energy=1000.0)))
        context = soil_context(2, tolerances=ConvergenceTolerances(energy=0.5))

        result = solver.step(state, np.array([-0.5, -0.5]), 0.25, np.ones(2), np.ones(2), context,
                             jacobian=np.eye(2))

        assert not result.converged

    def test_tolerances_from_environment(self, make_constant_evaluator, soil_context, state, monkeypatch):
        monkeypatch.setenv("HYDRONEWTON_TOLERANCES__ENERGY", "1000")
        solver = NewtonStepSolver(make_constant_evaluator([1.0, 1.0], objective=0.0), config=SolverConfig())

        result = solver.step(state, np.array([-0.5, -0.5]), 0.25, np.ones(2), np.ones(2), soil_context(2),
                             jacobian=np.eye(2))

        assert result.converged

    def test_updated_diagonal_returned(self, linear_evaluator, two_state_matrix, two_state_context, state):
        builder = DiagonalUpdatingBuilder(two_state_matrix)
        solver = NewtonStepSolver(linear_evaluator, builder)
        residual, f_old = _step_inputs(linear_evaluator, state)

        # an int list cannot be updated in place
        result = solver.step(state, residual, f_old, np.ones(2), np.ones(2), two_state_context,
                             diagonal=[0, 0])
        np.testing.assert_array_equal(result.diagonal, [1.0, 1.0])

        diagonal = np.zeros(2)
        solver.step(state, residual, f_old, np.ones(2), np.ones(2), two_state_context, diagonal=diagonal)
        np.testing.assert_array_equal(diagonal, [1.0, 1.0])

    def test_builder_receives_context_flags(self, linear_evaluator, two_state_matrix, soil_context, state):
        builder = DiagonalUpdatingBuilder(two_state_matrix)
        context = soil_context(2, first_sub_step=False, compute_veg_flux=False)
        residual, f_old = _step_inputs(linear_evaluator, state)

        NewtonStepSolver(linear_evaluator, builder).step(state, residual, f_old, np.ones(2), np.ones(2),
                                                         context, diagonal=np.zeros(2))

        assert builder.flags == (False, False)

    def test_band_check_without_builder_is_configuration_error(self, linear_evaluator, two_state_matrix,
                                                               two_state_context, state):
        solver = NewtonStepSolver(linear_evaluator, config=SolverConfig(check_band_matrix=True))

        with pytest.raises(ConfigurationError) as exc_info:
            solver.step(state, np.zeros(2), 0.0, np.ones(2), np.ones(2), two_state_context,
                        jacobian=two_state_matrix, diagonal=np.zeros(2))

        assert exc_info.value.message.startswith("newton_step/")
        assert linear_evaluator.n_calls == 0

    def test_missing_jacobian(self, linear_evaluator, two_state_context, state):
        solver = NewtonStepSolver(linear_evaluator)

        with pytest.raises(JacobianError):
            solver.step(state, np.zeros(2), 0.0, np.ones(2), np.ones(2), two_state_context)

    def test_evaluator_errors_enter_hierarchy(self, two_state_context, state):
        class FailingEvaluator:
            def evaluate(self, state_vector, first_flux_call):
                raise ValueError("negative snow depth")

        solver = NewtonStepSolver(FailingEvaluator())

        with pytest.raises(EvaluatorError, match="negative snow depth") as exc_info:
            solver.step(state, np.array([-0.1, -0.1]), 0.01, np.ones(2), np.ones(2), two_state_context,
                        jacobian=np.eye(2))

        assert exc_info.value.message.startswith("newton_step/line_search/")
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_numerical_jacobian_mismatch_is_logged(self, linear_evaluator, make_builder, two_state_matrix,
                                                   two_state_context, state, caplog):
        wrong = two_state_matrix.copy()
        wrong[0, 1] = 0.6
        solver = NewtonStepSolver(linear_evaluator, make_builder(wrong), config=SolverConfig(numerical_jacobian=True))
        residual, f_old = _step_inputs(linear_evaluator, state)

        with caplog.at_level(logging.WARNING, logger="hydronewton"):
            result = solver.step(state, residual, f_old, np.ones(2), np.ones(2), two_state_context,
                                 diagonal=np.zeros(2))

        assert result is not None
        assert any("differ" in record.getMessage() for record in caplog.records)

    def test_band_check_requires_banded_layout(self, linear_evaluator, make_builder, two_state_matrix,
                                               two_state_context, state):
        solver = NewtonStepSolver(linear_evaluator, make_builder(two_state_matrix),
                                  config=SolverConfig(check_band_matrix=True))

        with pytest.raises(JacobianError) as exc_info:
            solver.step(state, np.zeros(2), 0.0, np.ones(2), np.ones(2), two_state_context,
                        diagonal=np.zeros(2))

        assert exc_info.value.message.startswith("newton_step/check_band_matrix/")


class TestStepHistory:

    def test_statistics_and_frame(self, make_linear_evaluator, make_constant_evaluator, soil_context):
        solver = NewtonStepSolver(make_linear_evaluator(np.eye(2), [280.3, 280.3]))
        state = np.array([280.0, 280.0])
        solver.step(state, np.array([-0.3, -0.3]), 0.09, np.ones(2), np.ones(2), soil_context(2),
                    jacobian=np.eye(2))

        solver.evaluator = make_constant_evaluator([1.0, 1.0], objective=100.0)
        solver.step(state, np.array([-0.5, -0.5]), 0.25, np.ones(2), np.ones(2), soil_context(2, iteration=2),
                    jacobian=np.eye(2))

        stats = solver.get_statistics()
        assert stats['n_steps'] == 2
        assert stats['n_fallbacks'] == 1
        assert stats['converged_fraction'] == pytest.approx(0.5)

        frame = solver.history_frame()
        assert isinstance(frame, pd.DataFrame)
        assert list(frame['path']) == ["line_search", "full_newton"]
        assert list(frame['iteration']) == [1, 2]

    def test_empty_and_reset(self, linear_evaluator):
        solver = NewtonStepSolver(linear_evaluator)

        assert solver.get_statistics() == {}
        assert solver.history_frame().empty

        solver.brackets.x_min = 1.0
        solver.reset()
        assert np.isnan(solver.brackets.x_min)
