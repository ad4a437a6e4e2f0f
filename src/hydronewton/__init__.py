"""Newton iteration core for coupled snow, soil, canopy and aquifer states."""
from hydronewton.core.config import SolverConfig, RefinementStrategy, get_config, configure_logging
from hydronewton.core.types import (
    StateType,
    StateEntry,
    StateIndex,
    LayerState,
    MatrixForm,
    MatrixLayout,
    Evaluation,
    JacobianResult,
)
from hydronewton.solver import NewtonStepSolver, SolveContext, Brackets, StepResult

__version__ = "0.1.0"

__all__ = [
    "SolverConfig",
    "RefinementStrategy",
    "get_config",
    "configure_logging",
    "StateType",
    "StateEntry",
    "StateIndex",
    "LayerState",
    "MatrixForm",
    "MatrixLayout",
    "Evaluation",
    "JacobianResult",
    "NewtonStepSolver",
    "SolveContext",
    "Brackets",
    "StepResult",
]
