"""
Shared problem objects for one Newton iteration.

``SolveContext`` carries the flags, index arena and layer state of the solve
and wraps evaluator calls; ``NewtonSystem`` is the scaled linear system handed
to the refinement strategies, which return a ``StepResult``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from hydronewton.core.config import ConvergenceTolerances
from hydronewton.core.exceptions import (
    EvaluatorError,
    HydroNewtonError,
    SizeMismatchError,
    handle_exception,
)
from hydronewton.core.types import (
    Evaluation,
    FluxEvaluator,
    LayerState,
    MatrixLayout,
    StateIndex,
)


@dataclass
class SolveContext:
    """Control flags and model state for one Newton iteration.

    ``first_flux_call`` is owned by the caller across the sub-step; the solver
    passes it to the evaluator and clears it after the first evaluation.
    ``print_flag`` switches on debug dumps for this solve only.
    ``tolerances`` left as None means the configured ones apply.

    ``first_sub_step`` and ``compute_veg_flux`` are read-only inputs for the
    Jacobian builder, which receives the whole context.
    """

    iteration: int
    index: StateIndex
    layers: LayerState
    layout: MatrixLayout = field(default_factory=MatrixLayout)
    tolerances: Optional[ConvergenceTolerances] = None
    dt: float = 3600.0
    first_sub_step: bool = True
    first_flux_call: bool = True
    compute_veg_flux: bool = True
    scalar_solution: bool = False
    print_flag: bool = False

    @property
    def n_state(self) -> int:
        return self.index.n_state

    @property
    def n_snow(self) -> int:
        return self.index.n_snow

    @property
    def n_soil(self) -> int:
        return self.index.n_soil

    def evaluate(self, evaluator: FluxEvaluator, state_vector: np.ndarray) -> Evaluation:
        """Evaluate a trial state, passing through and then clearing the first-call flag."""
        try:
            result = evaluator.evaluate(state_vector, self.first_flux_call)
        except HydroNewtonError:
            raise
        except Exception as exc:  # collaborator errors enter the hierarchy here
            raise handle_exception(exc) from exc
        self.first_flux_call = False

        if result is None:
            raise EvaluatorError("evaluator returned no result")
        residual = np.asarray(result.residual, dtype=float)
        if residual.shape != (self.n_state,):
            raise SizeMismatchError(
                f"evaluator returned {residual.shape[0] if residual.ndim else 0} residuals "
                f"for {self.n_state} states"
            )
        return result


@dataclass
class Brackets:
    """Bounds on the root of a scalar problem; NaN while undefined.

    A negative residual at x means the root lies above x, so x becomes the
    lower bound; a non-negative residual makes x the upper bound.
    """

    x_min: float = np.nan
    x_max: float = np.nan

    def reset(self) -> None:
        self.x_min = np.nan
        self.x_max = np.nan

    def update(self, x: float, residual: float) -> None:
        if residual < 0.0:
            self.x_min = float(x)
        else:
            self.x_max = float(x)

    @property
    def defined(self) -> bool:
        return not (np.isnan(self.x_min) or np.isnan(self.x_max))

    @property
    def midpoint(self) -> float:
        return 0.5 * (self.x_min + self.x_max)


@dataclass
class NewtonSystem:
    """The scaled linear system shared by the refinement strategies"""

    state_trial: np.ndarray
    residual: np.ndarray  # unscaled
    residual_scaled: np.ndarray
    jacobian_scaled: np.ndarray
    newton_step_scaled: np.ndarray
    f_scale: np.ndarray
    x_scale: np.ndarray
    f_old: float

    @property
    def n_state(self) -> int:
        return self.state_trial.shape[0]

    @property
    def newton_increment(self) -> np.ndarray:
        """Full Newton step in physical units"""
        return self.newton_step_scaled * self.x_scale


@dataclass
class StepResult:
    """Candidate state produced by one Newton iteration"""

    state: np.ndarray
    evaluation: Evaluation
    converged: bool
    path: str  # line_search | full_newton | newton | bisection
    step_length: float = 1.0
    n_evaluations: int = 1
    report: Optional[object] = None  # ConvergenceReport
    diagonal: Optional[np.ndarray] = None  # Jacobian diagonal after the build

    @property
    def flux(self) -> np.ndarray:
        return self.evaluation.flux

    @property
    def residual(self) -> np.ndarray:
        return self.evaluation.residual

    @property
    def sink(self) -> Optional[np.ndarray]:
        return self.evaluation.sink

    @property
    def objective(self) -> float:
        return self.evaluation.objective

    @property
    def feasible(self) -> bool:
        return self.evaluation.feasible
