"""
Custom exception hierarchy for the hydronewton solver.

Fatal errors derive from ``SolverError`` and carry a component chain
(``newton_step/line_search/constraints/...``) that grows as the error unwinds.
``BacktrackExhausted`` is the soft signal raised when a refinement strategy
backtracks all the way to the unmodified trial point.
"""
from typing import Optional, Any, Dict
from dataclasses import dataclass

import numpy as np


@dataclass
class ErrorContext:
    """Context information for errors"""
    component: Optional[str] = None
    operation: Optional[str] = None
    iteration: Optional[int] = None
    details: Optional[Dict[str, Any]] = None


class HydroNewtonError(Exception):
    """Base exception for all hydronewton errors"""

    def __init__(self, message: str, context: Optional[ErrorContext] = None):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()

    def __str__(self) -> str:
        context_str = ""
        if self.context.component:
            context_str += f" [Component: {self.context.component}]"
        if self.context.iteration is not None:
            context_str += f" [Iteration: {self.context.iteration}]"

        return f"{self.__class__.__name__}: {self.message}{context_str}"

    def add_prefix(self, component: str) -> "HydroNewtonError":
        """Prefix the message chain with the name of the unwinding component."""
        self.message = f"{component}/{self.message}"
        self.args = (self.message,)
        return self


# Configuration errors
class ConfigurationError(HydroNewtonError):
    """Configuration error"""
    pass


# Fatal solver errors
class SolverError(HydroNewtonError):
    """Base class for fatal solver errors"""
    pass


class SizeMismatchError(SolverError):
    """Input vector or matrix does not match the state dimension"""
    pass


class InfeasibleStateError(SolverError):
    """Evaluator rejected a state that should have been feasible"""
    pass


class BracketError(SolverError):
    """Could not bracket the root of a scalar problem"""
    pass


class ConstraintError(SolverError):
    """Constraint enforcement could not interpret the state subset"""
    pass


class JacobianError(SolverError):
    """Jacobian construction or consistency check failed"""
    pass


class LinearSolveError(SolverError):
    """Factorization or solution of the linear system failed"""
    pass


class EvaluatorError(SolverError):
    """Flux/residual evaluation failed"""
    pass


class RefinementNotImplementedError(SolverError):
    """Selected refinement strategy has no implementation"""
    pass


# Soft signal
class BacktrackExhausted(HydroNewtonError):
    """Line search backtracked all the way to the original value"""
    pass


def handle_exception(exc: Exception, context: Optional[ErrorContext] = None) -> HydroNewtonError:
    """
    Wrap generic exceptions in the HydroNewtonError hierarchy.
    Used where collaborators (evaluator, Jacobian builder, LAPACK) raise
    third-party exceptions.
    """
    if isinstance(exc, HydroNewtonError):
        return exc

    error_map = {
        np.linalg.LinAlgError: LinearSolveError,
        FloatingPointError: LinearSolveError,
        ValueError: EvaluatorError,
        KeyError: EvaluatorError,
        RuntimeError: SolverError,
    }

    for exc_type, solver_exc_type in error_map.items():
        if isinstance(exc, exc_type):
            return solver_exc_type(str(exc), context)

    return SolverError(str(exc), context)
