"""
Physical constants and numerical defaults shared by the solver.
"""
from typing import Final

# Physical constants
TFREEZE: Final[float] = 273.16  # K, freezing point of pure water
IDEN_WATER: Final[float] = 1000.0  # kg/m³, intrinsic density of liquid water
GRAVITY: Final[float] = 9.80616  # m/s²
LH_FUSION: Final[float] = 333700.0  # J/kg, latent heat of fusion

# Line search
MAX_LINE_SEARCH: Final[int] = 5
ARMIJO_ALPHA: Final[float] = 1e-4
MIN_LAMBDA_FRACTION: Final[float] = 0.1
MAX_LAMBDA_FRACTION: Final[float] = 0.5

# Constraint enforcement
MAX_TEMP_INCREMENT: Final[float] = 1.0  # K
MAX_MATRIC_INCREMENT: Final[float] = 1.0  # m
CROSSING_OFFSET: Final[float] = 1e-7  # K

# Scalar solver
BISECTION_REL_TOLERANCE: Final[float] = 0.005
BRACKET_MAX_CHECKS: Final[int] = 100
BRACKET_TRIAL_INCREMENT: Final[float] = 1.0

# Convergence
MATRIC_SCALE_OFFSET: Final[float] = 1.0  # m
SCALAR_TIGHTEN: Final[float] = 0.1
DEFAULT_TOL_LIQUID: Final[float] = 1e-5  # -
DEFAULT_TOL_MATRIC: Final[float] = 1e-6  # m
DEFAULT_TOL_ENERGY: Final[float] = 1e-2  # J/m³

# Finite-difference Jacobian
NUMERICAL_JACOBIAN_DX: Final[float] = 1e-8
JACOBIAN_MISMATCH_RTOL: Final[float] = 1e-3
