"""
Newton step orchestrator.

One call to ``NewtonStepSolver.step`` performs one iteration of the coupled
Newton solve for a time sub-step:

    J_s · dx_s = -r_s,   J_s = diag(f_scale) · J · diag(x_scale),   r_s = f_scale · r

followed by globalization of the step. Multi-state problems use the
configured refinement strategy (line search by default), single-state
problems use the safeguarded scalar solver with persistent brackets.

When the line search backtracks all the way to the trial point the step is
repeated once with refinement disabled, so the full Newton step is accepted.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from hydronewton.core.config import RefinementStrategy, SolverConfig
from hydronewton.core.exceptions import (
    BacktrackExhausted,
    ConfigurationError,
    ErrorContext,
    HydroNewtonError,
    JacobianError,
    SizeMismatchError,
)
from hydronewton.core.types import FluxEvaluator, JacobianBuilder, LinearAlgebraBackend
from hydronewton.solver.constraints import ConstraintEnforcer
from hydronewton.solver.line_search import LineSearchRefinement
from hydronewton.solver.linalg import ScipyLinearAlgebra
from hydronewton.solver.numerical_jacobian import (
    check_band_matrix,
    compare_jacobians,
    numerical_jacobian,
)
from hydronewton.solver.problem import Brackets, NewtonSystem, SolveContext, StepResult
from hydronewton.solver.scalar import SafeguardedScalarSolver
from hydronewton.solver.trust_region import TrustRegionRefinement

logger = logging.getLogger(__name__)


@dataclass
class StepRecord:
    """Diagnostics of one Newton step"""
    iteration: int
    n_state: int
    path: str
    step_length: float
    n_evaluations: int
    converged: bool
    objective: float
    fell_back: bool


class NewtonStepSolver:
    """
    Computes one Newton iteration for a heterogeneous state vector.

    Args:
        evaluator: Flux/residual evaluator
        jacobian_builder: Analytic Jacobian builder; optional when the
            Jacobian is passed to ``step`` directly
        backend: Linear algebra backend (scipy by default)
        config: Solver configuration (process default when omitted)
    """

    name = "newton_step"

    def __init__(
        self,
        evaluator: FluxEvaluator,
        jacobian_builder: Optional[JacobianBuilder] = None,
        backend: Optional[LinearAlgebraBackend] = None,
        config: Optional[SolverConfig] = None
    ):
        self.config = config or SolverConfig()
        self.evaluator = evaluator
        self.jacobian_builder = jacobian_builder
        self.backend = backend or ScipyLinearAlgebra()

        self.constraints = ConstraintEnforcer(self.config)
        self.line_search = LineSearchRefinement(self.backend, self.constraints, self.config)
        self.trust_region = TrustRegionRefinement(self.backend, self.config)
        self.scalar = SafeguardedScalarSolver(self.constraints, self.config)

        # used when the caller does not own the brackets
        self.brackets = Brackets()
        self.history: List[StepRecord] = []

    def step(
        self,
        state_trial: np.ndarray,
        residual: np.ndarray,
        f_old: float,
        f_scale: np.ndarray,
        x_scale: np.ndarray,
        context: SolveContext,
        brackets: Optional[Brackets] = None,
        diagonal: Optional[np.ndarray] = None,
        jacobian: Optional[np.ndarray] = None
    ) -> StepResult:
        """
        Compute one Newton iteration.

        Args:
            state_trial: Trial state vector
            residual: Residual vector at the trial state (unscaled)
            f_old: Objective at the trial state
            f_scale: Function scaling vector
            x_scale: Variable scaling vector
            context: Solve context for this iteration
            brackets: Brackets for a single-state solve, owned by the caller
                across iterations of the sub-step
            diagonal: Diagonal (mass matrix) term passed to the Jacobian builder;
                a float ndarray is updated in place, and the updated term is
                always returned as ``StepResult.diagonal``
            jacobian: Precomputed Jacobian in the layout of ``context.layout``

        Returns:
            StepResult with the new state, fluxes, residuals, objective and
            convergence flag

        Raises:
            SolverError: any fatal failure, with "newton_step/" leading the
                message chain
            ConfigurationError: a diagnostic is enabled without the
                collaborator it needs
        """
        try:
            return self._step(
                state_trial, residual, f_old, f_scale, x_scale,
                context, brackets, diagonal, jacobian,
            )
        except HydroNewtonError as exc:
            raise exc.add_prefix(self.name)

    def _step(self, state_trial, residual, f_old, f_scale, x_scale,
              context, brackets, diagonal, jacobian):
        n_state = context.n_state
        layout = context.layout

        state_trial = np.asarray(state_trial, dtype=float)
        residual = np.asarray(residual, dtype=float)
        f_scale = np.asarray(f_scale, dtype=float)
        x_scale = np.asarray(x_scale, dtype=float)

        for label, vector in (("state", state_trial), ("residual", residual),
                              ("function scaling", f_scale), ("variable scaling", x_scale)):
            if vector.shape != (n_state,):
                raise SizeMismatchError(
                    f"unexpected size of {label} vector: {vector.shape}, expected ({n_state},)",
                    ErrorContext(component=self.name, iteration=context.iteration),
                )
        if diagonal is not None:
            diagonal = np.asarray(diagonal, dtype=float)
            if diagonal.shape != (n_state,):
                raise SizeMismatchError("unexpected size of Jacobian diagonal")

        jacobian, diagonal = self._get_jacobian(context, diagonal, jacobian)

        if self.config.numerical_jacobian:
            numerical = numerical_jacobian(
                self.evaluator, state_trial, context,
                dx=self.config.numerical_jacobian_dx,
                form=self.config.numerical_jacobian_form,
                diagonal=diagonal,
            )
            compare_jacobians(jacobian, numerical, layout, self.config.jacobian_mismatch_rtol)

        if self.config.check_band_matrix:
            if self.jacobian_builder is None:
                raise ConfigurationError("check_band_matrix is enabled but no Jacobian builder is configured")
            if diagonal is None:
                raise JacobianError("band matrix check needs the Jacobian diagonal")
            check_band_matrix(self.jacobian_builder, context, diagonal, self.config.jacobian_mismatch_rtol)

        # scale the system
        residual_scaled = f_scale * residual
        jacobian_scaled = self.backend.scale_matrix(layout, jacobian, f_scale, x_scale)
        newton_step_scaled = self.backend.solve(layout, jacobian_scaled, -residual_scaled)

        if context.print_flag:
            logger.debug("scaled Jacobian (%s):\n%s", layout.form.value, jacobian_scaled)
            logger.debug("scaled residual: %s", residual_scaled)
            logger.debug("scaled Newton step: %s", newton_step_scaled)

        system = NewtonSystem(
            state_trial=state_trial,
            residual=residual,
            residual_scaled=residual_scaled,
            jacobian_scaled=jacobian_scaled,
            newton_step_scaled=newton_step_scaled,
            f_scale=f_scale,
            x_scale=x_scale,
            f_old=float(f_old),
        )

        fell_back = False
        if n_state == 1:
            result = self.scalar.solve(
                system, context, self.evaluator,
                brackets if brackets is not None else self.brackets,
            )
        else:
            try:
                result = self._refine(system, context)
            except BacktrackExhausted as exc:
                logger.info("%s; accepting the full Newton step (iteration %d)", exc.message, context.iteration)
                result = self.line_search.refine(system, context, self.evaluator, do_refine=False)
                fell_back = True

        result.diagonal = diagonal
        self._record(context, result, fell_back)
        return result

    def _get_jacobian(self, context, diagonal, jacobian):
        n_state = context.n_state
        layout = context.layout

        if jacobian is None:
            if self.jacobian_builder is None:
                raise JacobianError("no Jacobian supplied and no Jacobian builder configured")
            if diagonal is None:
                raise SizeMismatchError("Jacobian builder needs the diagonal term")
            try:
                built = self.jacobian_builder.build(context, layout, diagonal)
            except HydroNewtonError:
                raise
            except Exception as exc:
                raise JacobianError(f"Jacobian builder failed: {exc}") from exc
            jacobian = built.matrix
            diagonal[:] = built.diagonal

        jacobian = np.asarray(jacobian, dtype=float)
        expected = (layout.n_lead(n_state), n_state)
        if jacobian.shape != expected:
            raise SizeMismatchError(
                f"unexpected size of Jacobian matrix: {jacobian.shape}, expected {expected}"
            )
        return jacobian, diagonal

    def _refine(self, system: NewtonSystem, context: SolveContext) -> StepResult:
        if self.config.refinement == RefinementStrategy.TRUST_REGION:
            return self.trust_region.refine(system, context, self.evaluator)
        return self.line_search.refine(system, context, self.evaluator)

    def _record(self, context: SolveContext, result: StepResult, fell_back: bool) -> None:
        self.history.append(StepRecord(
            iteration=context.iteration,
            n_state=context.n_state,
            path=result.path,
            step_length=result.step_length,
            n_evaluations=result.n_evaluations,
            converged=bool(result.converged),
            objective=float(result.objective),
            fell_back=fell_back,
        ))

    def get_statistics(self) -> Dict[str, float]:
        """Get solver statistics"""
        if not self.history:
            return {}

        evaluations = np.array([r.n_evaluations for r in self.history])
        step_lengths = np.array([r.step_length for r in self.history])
        return {
            'n_steps': len(self.history),
            'mean_evaluations': float(np.mean(evaluations)),
            'max_evaluations': int(np.max(evaluations)),
            'mean_step_length': float(np.mean(step_lengths)),
            'converged_fraction': sum(r.converged for r in self.history) / len(self.history),
            'n_fallbacks': sum(r.fell_back for r in self.history),
            'n_bisections': sum(r.path == "bisection" for r in self.history),
        }

    def history_frame(self) -> pd.DataFrame:
        """Step history as a DataFrame, one row per Newton step"""
        columns = list(StepRecord.__dataclass_fields__)
        return pd.DataFrame([asdict(r) for r in self.history], columns=columns)

    def reset(self) -> None:
        """Clear brackets and history before a new sub-step"""
        self.brackets.reset()
        self.history = []
