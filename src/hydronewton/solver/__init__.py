"""Newton step solver: orchestrator, refinement strategies and diagnostics."""
from hydronewton.solver.problem import (
    SolveContext,
    Brackets,
    NewtonSystem,
    StepResult,
)
from hydronewton.solver.linalg import ScipyLinearAlgebra
from hydronewton.solver.constraints import ConstraintEnforcer
from hydronewton.solver.convergence import ConvergenceReport, check_convergence
from hydronewton.solver.line_search import LineSearchRefinement, backtrack_step_length
from hydronewton.solver.trust_region import TrustRegionRefinement
from hydronewton.solver.scalar import SafeguardedScalarSolver
from hydronewton.solver.numerical_jacobian import (
    numerical_jacobian,
    compare_jacobians,
    check_band_matrix,
)
from hydronewton.solver.newton import NewtonStepSolver, StepRecord

__all__ = [
    "SolveContext",
    "Brackets",
    "NewtonSystem",
    "StepResult",
    "ScipyLinearAlgebra",
    "ConstraintEnforcer",
    "ConvergenceReport",
    "check_convergence",
    "LineSearchRefinement",
    "backtrack_step_length",
    "TrustRegionRefinement",
    "SafeguardedScalarSolver",
    # Diagnostics
    "numerical_jacobian",
    "compare_jacobians",
    "check_band_matrix",
    "NewtonStepSolver",
    "StepRecord",
]
