"""
Safeguarded root finder for single-state problems.

Combines the Newton increment with bisection inside brackets that persist
across the Newton iterations of one sub-step. Bisection is used when the
Newton increment points the wrong way (same sign as the residual) or when the
Newton candidate lands within a small band of either bracket.

Precondition: the residual is monotone along the trial direction. Bracket
acquisition steps away from the residual's sign until the sign flips and
relies on that to terminate.
"""
import logging
from typing import Optional

import numpy as np

from hydronewton.core.config import SolverConfig
from hydronewton.core.exceptions import (
    BracketError,
    ErrorContext,
    HydroNewtonError,
    InfeasibleStateError,
    SizeMismatchError,
)
from hydronewton.core.types import FluxEvaluator
from hydronewton.solver.constraints import ConstraintEnforcer
from hydronewton.solver.convergence import check_convergence
from hydronewton.solver.problem import Brackets, NewtonSystem, SolveContext, StepResult

logger = logging.getLogger(__name__)


class SafeguardedScalarSolver:
    """Refine the 1-d iteration increment using brackets"""

    name = "scalar"

    def __init__(
        self,
        constraints: Optional[ConstraintEnforcer] = None,
        config: Optional[SolverConfig] = None
    ):
        self.config = config or SolverConfig()
        self.constraints = constraints or ConstraintEnforcer(self.config)

    def solve(
        self,
        system: NewtonSystem,
        context: SolveContext,
        evaluator: FluxEvaluator,
        brackets: Brackets
    ) -> StepResult:
        """
        Produce a safeguarded candidate for a scalar problem.

        Args:
            system: Scaled Newton system with a single state
            context: Solve context; brackets are reset when iteration == 1
            evaluator: Flux/residual evaluator
            brackets: Brackets of the root, updated in place

        Returns:
            StepResult for the candidate

        Raises:
            InfeasibleStateError: evaluator rejected the projected candidate
            BracketError: brackets could not be established
        """
        try:
            return self._solve(system, context, evaluator, brackets)
        except HydroNewtonError as exc:
            raise exc.add_prefix(self.name)

    def _solve(self, system, context, evaluator, brackets):
        if (system.state_trial.shape != (1,) or system.residual_scaled.shape != (1,)
                or system.newton_step_scaled.shape != (1,)):
            raise SizeMismatchError("unexpected size of input vectors")

        if context.iteration == 1:
            brackets.reset()

        residual = float(system.residual[0])
        brackets.update(system.state_trial[0], residual)

        x_inc = system.newton_increment
        n_evaluations = 0

        if x_inc[0] * residual > 0.0:
            # Newton step points the wrong way
            if not brackets.defined:
                n_evaluations += self.acquire_brackets(system, context, evaluator, brackets)
            state_new = np.array([brackets.midpoint])
            path = "bisection"
        else:
            x_inc = self.constraints.impose(system.state_trial, x_inc, context)
            state_new = system.state_trial + x_inc
            path = "newton"

        if brackets.defined:
            x_tolerance = self.config.bisection_rel_tolerance * (brackets.x_max - brackets.x_min)
            if (state_new[0] < brackets.x_min + x_tolerance
                    or state_new[0] > brackets.x_max - x_tolerance):
                state_new = np.array([brackets.midpoint])
                path = "bisection"

        evaluation = context.evaluate(evaluator, state_new)
        n_evaluations += 1

        # constraint enforcement guarantees feasibility of the candidate
        if not evaluation.feasible:
            raise InfeasibleStateError(
                "infeasible solution",
                ErrorContext(component=self.name, iteration=context.iteration),
            )

        report = check_convergence(evaluation.residual, x_inc, state_new, context, self.config)

        if context.print_flag:
            logger.debug(
                "path=%s xMin=%.8e xMax=%.8e trial=%.8e new=%.8e xInc=%.8e",
                path, brackets.x_min, brackets.x_max, system.state_trial[0], state_new[0], x_inc[0],
            )

        return StepResult(state_new, evaluation, report.converged, path, 1.0, n_evaluations, report)

    def acquire_brackets(
        self,
        system: NewtonSystem,
        context: SolveContext,
        evaluator: FluxEvaluator,
        brackets: Brackets
    ) -> int:
        """
        Step away from the trial point until both brackets are defined.

        The trial increment has unit magnitude and the sign opposite to the
        residual at the trial point; it is re-projected through the
        constraints on every attempt.

        Returns:
            Number of evaluations made
        """
        try:
            return self._acquire_brackets(system, context, evaluator, brackets)
        except HydroNewtonError as exc:
            raise exc.add_prefix("brackets")

    def _acquire_brackets(self, system, context, evaluator, brackets):
        state_new = system.state_trial.copy()
        x_increment = -np.sign(system.residual) * self.config.bracket_trial_increment
        # sign(0) == 0 would never move; a zero residual counts as non-negative
        x_increment[system.residual == 0.0] = -self.config.bracket_trial_increment

        for i_check in range(1, self.config.bracket_max_checks + 1):
            x_increment = self.constraints.impose(state_new, x_increment, context)
            state_new = state_new + x_increment

            evaluation = context.evaluate(evaluator, state_new)
            if not evaluation.feasible:
                raise InfeasibleStateError("state vector is not feasible")

            brackets.update(state_new[0], float(evaluation.residual[0]))
            if brackets.defined:
                logger.debug("Brackets [%.6g, %.6g] found after %d checks",
                             brackets.x_min, brackets.x_max, i_check)
                return i_check

        raise BracketError(
            "could not fix the problem where residual and iteration increment are of the same sign",
            ErrorContext(component="brackets", iteration=context.iteration,
                         details={'checks': self.config.bracket_max_checks}),
        )
