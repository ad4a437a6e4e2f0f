"""
Shared fixtures: small analytic problems with known Jacobians.
"""
import numpy as np
import pytest

from hydronewton.core.config import SolverConfig
from hydronewton.core.types import (
    Evaluation,
    JacobianResult,
    LayerState,
    MatrixForm,
    MatrixLayout,
    StateEntry,
    StateIndex,
    StateType,
)
from hydronewton.solver.problem import SolveContext


class LinearEvaluator:
    """
    r(x) = A (x - x_root), flux = -A x / dt

    Counts evaluations and records the first_flux_call flag it received.
    """

    def __init__(self, matrix, x_root, dt=3600.0, feasible=True):
        self.matrix = np.asarray(matrix, dtype=float)
        self.x_root = np.asarray(x_root, dtype=float)
        self.dt = dt
        self.feasible = feasible
        self.calls = []

    def evaluate(self, state_vector, first_flux_call):
        self.calls.append((np.array(state_vector, dtype=float), first_flux_call))
        residual = self.matrix @ (state_vector - self.x_root)
        flux = -self.matrix @ state_vector / self.dt
        return Evaluation(
            flux=flux,
            residual=residual,
            objective=0.5 * float(residual @ residual),
            feasible=self.feasible,
            sink=np.zeros_like(residual),
        )

    @property
    def n_calls(self):
        return len(self.calls)


class ConstantEvaluator:
    """Residual and objective that do not depend on the state"""

    def __init__(self, residual, objective=100.0, feasible=True):
        self.residual = np.asarray(residual, dtype=float)
        self.objective = objective
        self.feasible = feasible
        self.calls = 0

    def evaluate(self, state_vector, first_flux_call):
        self.calls += 1
        return Evaluation(
            flux=np.zeros_like(self.residual),
            residual=self.residual.copy(),
            objective=self.objective,
            feasible=self.feasible,
        )


class MatrixBuilder:
    """Returns a fixed full Jacobian in whatever layout is requested"""

    def __init__(self, matrix):
        self.matrix = np.asarray(matrix, dtype=float)
        self.calls = 0

    def build(self, context, layout, diagonal):
        self.calls += 1
        return JacobianResult(matrix=layout.from_full(self.matrix), diagonal=diagonal)


def soil_energy_context(n_soil, iteration=1, layout=None, matric_head=-1.0, **kwargs):
    """Context whose states are the temperatures of n_soil soil layers"""
    entries = [StateEntry(StateType.NRG_LAYER, layer=i) for i in range(n_soil)]
    index = StateIndex.from_entries(entries, n_snow=0, n_soil=n_soil)
    layers = LayerState(
        layer_depth=np.full(n_soil, 0.1),
        layer_temp=np.full(n_soil, 280.0),
        layer_matric_head=np.full(n_soil, matric_head),
    )
    return SolveContext(
        iteration=iteration,
        index=index,
        layers=layers,
        layout=layout or MatrixLayout(),
        **kwargs,
    )


@pytest.fixture
def solver_config():
    """Configuration isolated from the environment"""
    return SolverConfig()


@pytest.fixture
def two_state_matrix():
    return np.array([[2.0, 0.5], [0.5, 3.0]])


@pytest.fixture
def two_state_root():
    return np.array([280.5, 280.7])


@pytest.fixture
def two_state_context():
    return soil_energy_context(2)


@pytest.fixture
def linear_evaluator(two_state_matrix, two_state_root):
    return LinearEvaluator(two_state_matrix, two_state_root)


@pytest.fixture
def tridiagonal_matrix():
    return np.array([
        [4.0, -1.0, 0.0],
        [-1.0, 4.0, -1.0],
        [0.0, -1.0, 4.0],
    ])


@pytest.fixture
def banded_layout():
    return MatrixLayout(MatrixForm.BANDED, kl=1, ku=1)


@pytest.fixture
def mixed_context():
    """
    Canopy, one snow layer, two soil layers with matric head, and an aquifer.

    State order: canopy energy, canopy water, snow energy, snow liquid water,
    soil energy x2, soil matric head x2, aquifer storage.
    """
    entries = [
        StateEntry(StateType.NRG_CANOPY),
        StateEntry(StateType.WAT_CANOPY),
        StateEntry(StateType.NRG_LAYER, layer=0),
        StateEntry(StateType.LIQ_LAYER, layer=0),
        StateEntry(StateType.NRG_LAYER, layer=1),
        StateEntry(StateType.NRG_LAYER, layer=2),
        StateEntry(StateType.MAT_LAYER, layer=1),
        StateEntry(StateType.MAT_LAYER, layer=2),
        StateEntry(StateType.WAT_AQUIFER),
    ]
    index = StateIndex.from_entries(entries, n_snow=1, n_soil=2)
    layers = LayerState(
        layer_depth=np.array([0.2, 0.1, 0.3]),
        layer_temp=np.array([270.0, 275.0, 276.0]),
        layer_matric_head=np.array([-1.0, -2.0]),
    )
    return SolveContext(iteration=1, index=index, layers=layers)


@pytest.fixture
def mixed_state():
    return np.array([280.0, 0.2, 270.0, 0.05, 275.0, 276.0, -1.0, -2.0, 1.5])


@pytest.fixture
def soil_context():
    """Factory for contexts over soil-layer temperatures"""
    return soil_energy_context


@pytest.fixture
def make_linear_evaluator():
    return LinearEvaluator


@pytest.fixture
def make_constant_evaluator():
    return ConstantEvaluator


@pytest.fixture
def make_builder():
    return MatrixBuilder
