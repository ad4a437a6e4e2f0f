"""
Trust-region refinement of the Newton step.

Selectable through ``RefinementStrategy.TRUST_REGION`` but not implemented:
after validating its inputs it always raises ``RefinementNotImplementedError``.
"""
from typing import Optional

from hydronewton.core.config import SolverConfig
from hydronewton.core.exceptions import (
    ErrorContext,
    HydroNewtonError,
    RefinementNotImplementedError,
    SizeMismatchError,
)
from hydronewton.core.types import FluxEvaluator, LinearAlgebraBackend
from hydronewton.solver.problem import NewtonSystem, SolveContext, StepResult


class TrustRegionRefinement:
    """Refine the iteration increment using trust regions"""

    name = "trust_region"

    def __init__(self, backend: LinearAlgebraBackend, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()
        self.backend = backend

    def refine(
        self,
        system: NewtonSystem,
        context: SolveContext,
        evaluator: FluxEvaluator,
        do_refine: bool = True
    ) -> StepResult:
        try:
            return self._refine(system, context, evaluator, do_refine)
        except HydroNewtonError as exc:
            raise exc.add_prefix(self.name)

    def _refine(self, system, context, evaluator, do_refine):
        n_state = context.n_state

        if do_refine:
            if (system.state_trial.shape != (n_state,)
                    or system.newton_step_scaled.shape != (n_state,)
                    or system.residual_scaled.shape != (n_state,)):
                raise SizeMismatchError("unexpected size of input vectors")

            expected = (context.layout.n_lead(n_state), n_state)
            if system.jacobian_scaled.shape != expected:
                raise SizeMismatchError("unexpected size of Jacobian matrix")

        # TODO: dogleg step acceptance against the quadratic model ½‖r + J·dx‖²
        raise RefinementNotImplementedError(
            "routine not implemented yet",
            ErrorContext(component=self.name, iteration=context.iteration),
        )
