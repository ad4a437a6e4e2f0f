"""
Damped Newton refinement with quadratic/cubic backtracking.

The step length λ starts at 1. A candidate is accepted when it converges,
when refinement is disabled, or when it satisfies the sufficient-decrease
condition

    f_new < f_old + α · slope_init · λ

Otherwise λ shrinks: a quadratic model on the first backtrack, a cubic
through the two latest (λ, f) pairs afterwards, always kept within
[0.1 λ, 0.5 λ].

References:
- Dennis, J.E. and Schnabel, R.B. (1996). Numerical Methods for Unconstrained
  Optimization and Nonlinear Equations. SIAM, Algorithm A6.3.1.
- Press, W.H. et al. (1992). Numerical Recipes, section 9.7.
"""
import logging
from typing import Optional

import numpy as np

from hydronewton.core.config import SolverConfig
from hydronewton.core.constants import MAX_LAMBDA_FRACTION, MIN_LAMBDA_FRACTION
from hydronewton.core.exceptions import BacktrackExhausted, ErrorContext, HydroNewtonError
from hydronewton.core.types import FluxEvaluator, LinearAlgebraBackend
from hydronewton.solver.constraints import ConstraintEnforcer
from hydronewton.solver.convergence import check_convergence
from hydronewton.solver.problem import NewtonSystem, SolveContext, StepResult

logger = logging.getLogger(__name__)


def backtrack_step_length(
    i_line: int,
    step_length: float,
    f_new: float,
    f_old: float,
    slope_init: float,
    step_length_prev: Optional[float] = None,
    f_prev: Optional[float] = None
) -> float:
    """
    Next damping factor after a rejected step.

    Args:
        i_line: 1-based index of the attempt that was just rejected
        step_length: λ of the rejected attempt
        f_new: Objective at the rejected attempt
        f_old: Objective at the trial point (λ = 0)
        slope_init: Directional derivative of f at λ = 0
        step_length_prev: λ of the attempt before, needed when i_line > 1
        f_prev: Objective of the attempt before, needed when i_line > 1

    Returns:
        New λ in [0.1 λ, 0.5 λ]
    """
    upper = MAX_LAMBDA_FRACTION * step_length

    if i_line == 1 or step_length_prev is None or f_prev is None:
        # quadratic through f_old, slope_init and f_new
        curvature = f_new - f_old - step_length * slope_init
        lambda_temp = (-slope_init * step_length**2 / (2.0 * curvature)
                       if curvature != 0.0 else upper)
    else:
        rhs1 = f_new - f_old - step_length * slope_init
        rhs2 = f_prev - f_old - step_length_prev * slope_init
        denom = step_length - step_length_prev
        a_coef = (rhs1 / step_length**2 - rhs2 / step_length_prev**2) / denom
        b_coef = (-step_length_prev * rhs1 / step_length**2
                  + step_length * rhs2 / step_length_prev**2) / denom

        if a_coef == 0.0:
            lambda_temp = -slope_init / (2.0 * b_coef) if b_coef != 0.0 else upper
        else:
            disc = b_coef * b_coef - 3.0 * a_coef * slope_init
            if disc < 0.0:
                lambda_temp = upper
            else:
                lambda_temp = (-b_coef + np.sqrt(disc)) / (3.0 * a_coef)

    if not np.isfinite(lambda_temp) or lambda_temp > upper:
        lambda_temp = upper

    return max(lambda_temp, MIN_LAMBDA_FRACTION * step_length)


class LineSearchRefinement:
    """Refine the iteration increment using line searches"""

    name = "line_search"

    def __init__(
        self,
        backend: LinearAlgebraBackend,
        constraints: Optional[ConstraintEnforcer] = None,
        config: Optional[SolverConfig] = None
    ):
        self.config = config or SolverConfig()
        self.backend = backend
        self.constraints = constraints or ConstraintEnforcer(self.config)

    def refine(
        self,
        system: NewtonSystem,
        context: SolveContext,
        evaluator: FluxEvaluator,
        do_refine: bool = True
    ) -> StepResult:
        """
        Backtrack along the Newton direction until a candidate is accepted.

        Args:
            system: Scaled Newton system
            context: Solve context
            evaluator: Flux/residual evaluator
            do_refine: False to accept the full Newton step after one evaluation

        Returns:
            StepResult for the accepted candidate

        Raises:
            BacktrackExhausted: the attempt cap was reached without acceptance
        """
        try:
            return self._refine(system, context, evaluator, do_refine)
        except HydroNewtonError as exc:
            raise exc.add_prefix(self.name)

    def _refine(self, system, context, evaluator, do_refine):
        alpha = self.config.armijo_alpha
        max_line_search = self.config.max_line_search if do_refine else 1
        newton_increment = system.newton_increment

        slope_init = 0.0
        if do_refine:
            grad_scaled = self.backend.gradient(
                context.layout, system.jacobian_scaled, system.residual_scaled
            )
            slope_init = float(np.dot(grad_scaled, system.newton_step_scaled))

        step_length = 1.0
        step_length_prev: Optional[float] = None
        f_prev: Optional[float] = None

        for i_line in range(1, max_line_search + 1):
            x_inc = step_length * system.newton_step_scaled * system.x_scale
            x_inc = self.constraints.impose(system.state_trial, x_inc, context)
            state_new = system.state_trial + x_inc

            evaluation = context.evaluate(evaluator, state_new)
            f_new = evaluation.objective

            if context.print_flag:
                logger.debug(
                    "iLine=%d lambda=%.10e fOld=%.10e fNew=%.10e armijo=%.10e",
                    i_line, step_length, system.f_old, f_new,
                    system.f_old + alpha * slope_init * step_length,
                )

            if not evaluation.feasible:
                if not do_refine:
                    logger.warning("Full Newton step is infeasible")
                    return StepResult(state_new, evaluation, False, "full_newton", step_length, i_line)
                # infeasible points carry no usable objective: halve and retry
                step_length *= MAX_LAMBDA_FRACTION
                continue

            report = check_convergence(
                evaluation.residual, newton_increment, state_new, context, self.config
            )
            result = StepResult(
                state_new, evaluation, report.converged,
                self.name if do_refine else "full_newton", step_length, i_line, report,
            )

            if report.converged or not do_refine:
                return result

            if f_new < system.f_old + alpha * slope_init * step_length:
                return result

            if i_line == max_line_search:
                break

            lambda_temp = backtrack_step_length(
                i_line, step_length, f_new, system.f_old, slope_init,
                step_length_prev, f_prev,
            )
            step_length_prev, f_prev = step_length, f_new
            step_length = lambda_temp

        raise BacktrackExhausted(
            "backtracked all the way back to the original value",
            ErrorContext(component=self.name, iteration=context.iteration),
        )
